from datetime import datetime, timedelta

from sqlalchemy import select

from lineage.audit import group_detail, list_groups, snapshot, undo_group
from lineage.batch import BatchRequest, Operation, OperationKind, execute_batch
from lineage.errors import AlreadyUndone, NotFound, PermissionDenied, ResourceBusy, ValidationFailed, VersionConflict
from lineage.models import AuditLogEntry, OperationGroup, Person
from lineage.partial import Patch

from tree_fixtures import TreeTestCase


class TestUndoGroup(TreeTestCase):
    def _batch(self, operations, expected_version=1, actor=None, parent_id=None):
        request = BatchRequest(
            actor_id=actor or self.parent_id,
            parent_id=parent_id or self.parent_id,
            expected_version=expected_version,
            operations=operations,
        )
        with self.Session() as s:
            return execute_batch(s, request, locks=self.locks)

    def _undo(self, group_id, actor=None, **kwargs):
        with self.Session() as s:
            return undo_group(s, group_id, actor or self.parent_id, locks=self.locks, **kwargs)

    def _mixed(self):
        self._set_version(self.parent_id, 5)
        return self._batch(
            [
                Operation(OperationKind.CREATE, fields=Patch({"name": "حسن", "gender": "male"})),
                Operation(OperationKind.CREATE, fields=Patch({"name": "مريم", "gender": "female"})),
                Operation(OperationKind.UPDATE, self.sara_id, Patch({"nickname": "سوسو", "bio": "نبذة"}), 1),
                Operation(OperationKind.DELETE, self.omar_id, Patch(), 1),
            ],
            expected_version=5,
        )

    def test_undo_restores_pre_batch_state(self):
        sara_before = snapshot(self._get(self.sara_id))
        omar_before = snapshot(self._get(self.omar_id))
        result = self._mixed()

        undone = self._undo(result.operation_group_id, reason="خطأ في الإدخال")
        self.assertEqual(undone.restored, 4)
        self.assertEqual(undone.parent_version, 7)

        self.assertEqual(snapshot(self._get(self.sara_id)), sara_before)
        self.assertEqual(snapshot(self._get(self.omar_id)), omar_before)
        for created_id in result.created_ids:
            self.assertIsNotNone(self._get(created_id).deleted_at)
        # versions move forward, never back
        self.assertEqual(self._get(self.sara_id).version, 3)

        with self.Session() as s:
            group = s.get(OperationGroup, result.operation_group_id)
            self.assertEqual(group.undo_state, "undone")
            self.assertEqual(group.undone_by, self.parent_id)
            self.assertEqual(group.undo_reason, "خطأ في الإدخال")
            self.assertTrue(all(e.undone_at is not None for e in group.entries))
            undo_entries = s.execute(
                select(AuditLogEntry).where(AuditLogEntry.action_type == "undo")
            ).scalars().all()
            self.assertEqual(len(undo_entries), 4)
            self.assertTrue(all(not e.is_undoable and e.undo_of_id for e in undo_entries))

    def test_second_undo_reports_already_undone(self):
        result = self._mixed()
        self._undo(result.operation_group_id)
        with self.assertRaises(AlreadyUndone):
            self._undo(result.operation_group_id)

    def test_record_edited_after_batch_blocks_undo(self):
        result = self._mixed()
        self._batch([Operation(OperationKind.UPDATE, self.sara_id, Patch({"nickname": "جديد"}), 2)], expected_version=6)
        with self.assertRaises(VersionConflict):
            self._undo(result.operation_group_id)
        self.assertEqual(self._get(self.sara_id).nickname, "جديد")
        with self.Session() as s:
            self.assertEqual(s.get(OperationGroup, result.operation_group_id).undo_state, "active")

    def test_undo_of_create_refused_when_it_gained_children(self):
        result = self._batch([Operation(OperationKind.CREATE, fields=Patch({"name": "حسن", "gender": "male"}))])
        with self.Session() as s:
            s.add(Person(name="حفيد", gender="male", father_id=result.created_ids[0]))
            s.commit()
        with self.assertRaises(ValidationFailed) as ctx:
            self._undo(result.operation_group_id)
        self.assertEqual(ctx.exception.details["field"], "children")

    def test_only_creator_or_admin_may_undo(self):
        result = self._mixed()
        # Yousef is Khalid's brother: he may edit, but did not make this batch
        with self.assertRaises(PermissionDenied):
            self._undo(result.operation_group_id, actor=self.uncle_id)
        undone = self._undo(result.operation_group_id, actor=self.admin_id)
        self.assertEqual(undone.restored, 4)

    def test_undo_window_expires_for_creator_but_not_admin(self):
        result = self._mixed()
        later = datetime.utcnow() + timedelta(days=31)
        with self.assertRaises(PermissionDenied):
            self._undo(result.operation_group_id, now=later)
        self._undo(result.operation_group_id, actor=self.admin_id, now=later)

    def test_undo_waits_for_no_one(self):
        result = self._mixed()
        holder = self.Session()
        try:
            self.locks.lock_aggregate(holder, self.parent_id)
            with self.assertRaises(ResourceBusy):
                self._undo(result.operation_group_id)
        finally:
            holder.rollback()
            holder.close()

    def test_unknown_group(self):
        with self.assertRaises(NotFound):
            self._undo("no-such-group")

    def test_listing_and_detail(self):
        first = self._mixed()
        self._batch(
            [Operation(OperationKind.UPDATE, self.sara_id, Patch({"nickname": "x"}), 2)],
            expected_version=6,
        )
        with self.Session() as s:
            groups = list_groups(s, actor_id=self.parent_id)
            self.assertEqual(len(groups), 2)
            self.assertEqual(list_groups(s, actor_id=self.admin_id), [])
            detail = group_detail(s, first.operation_group_id, self.parent_id)
            with self.assertRaises(PermissionDenied):
                group_detail(s, first.operation_group_id, self.uncle_id)
        self.assertEqual(detail["operation_count"], 4)
        self.assertEqual([e["action"] for e in detail["entries"]], ["create", "create", "update", "delete"])
        self.assertIsNone(detail["entries"][0]["old_data"])
        self.assertIsNone(detail["entries"][3]["new_data"])
