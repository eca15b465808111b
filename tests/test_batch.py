import unittest

from sqlalchemy import func, select

from lineage.audit import snapshot
from lineage.batch import (
    BatchRequest,
    Operation,
    OperationKind,
    execute_batch,
    parse_batch_request,
    reorder_children,
)
from lineage.errors import (
    BatchTooLarge,
    NotFound,
    PermissionDenied,
    ResourceBusy,
    ValidationFailed,
    VersionConflict,
)
from lineage.models import AuditLogEntry, BranchModerator, Marriage, OperationGroup, Person, SuggestionBlock
from lineage.partial import Patch

from tree_fixtures import TreeTestCase


def create(**fields):
    return Operation(OperationKind.CREATE, fields=Patch(fields))


def update(target_id, version, **fields):
    return Operation(OperationKind.UPDATE, target_id, Patch(fields), version)


def delete(target_id, version):
    return Operation(OperationKind.DELETE, target_id, Patch(), version)


class TestExecuteBatch(TreeTestCase):
    def _run(self, operations, expected_version=1, actor=None, **kwargs):
        request = BatchRequest(
            actor_id=self.parent_id if actor is None else actor,
            parent_id=kwargs.pop("parent_id", self.parent_id),
            expected_version=expected_version,
            operations=operations,
            selected_mother_id=kwargs.pop("selected_mother_id", None),
            description=kwargs.pop("description", None),
        )
        with self.Session() as s:
            return execute_batch(s, request, locks=self.locks, **kwargs)

    def _mixed_ops(self):
        return [
            create(name="حسن", gender="male"),
            create(name="مريم", gender="female"),
            update(self.sara_id, 1, nickname="سوسو"),
            delete(self.omar_id, 1),
        ]

    def _counts(self):
        with self.Session() as s:
            return (
                s.execute(select(func.count(Person.id))).scalar_one(),
                s.execute(select(func.count(OperationGroup.id))).scalar_one(),
                s.execute(select(func.count(AuditLogEntry.id))).scalar_one(),
            )

    def test_mixed_batch_commits_atomically(self):
        self._set_version(self.parent_id, 5)
        result = self._run(self._mixed_ops(), expected_version=5)

        self.assertEqual((result.created, result.updated, result.deleted), (2, 1, 1))
        self.assertEqual(result.parent_version, 6)
        self.assertEqual(self._get(self.parent_id).version, 6)

        with self.Session() as s:
            group = s.get(OperationGroup, result.operation_group_id)
            self.assertEqual(group.operation_count, 4)
            self.assertEqual(group.group_type, "batch_update")
            self.assertEqual([e.action_type for e in group.entries], ["create", "create", "update", "delete"])

            hasan, maryam = (s.get(Person, pid) for pid in result.created_ids)
            self.assertEqual((hasan.hid, maryam.hid), ("1.1.3", "1.1.4"))
            self.assertEqual(hasan.generation, 3)
            self.assertEqual(hasan.father_id, self.parent_id)
            self.assertEqual(hasan.version, 1)

            sara = s.get(Person, self.sara_id)
            self.assertEqual(sara.nickname, "سوسو")
            self.assertEqual(sara.version, 2)
            self.assertIsNotNone(s.get(Person, self.omar_id).deleted_at)

    def test_pre_image_is_captured_before_the_write(self):
        before = snapshot(self._get(self.sara_id))
        result = self._run([update(self.sara_id, 1, nickname="سوسو")])
        with self.Session() as s:
            entry = s.execute(
                select(AuditLogEntry).where(AuditLogEntry.operation_group_id == result.operation_group_id)
            ).scalar_one()
            self.assertEqual(entry.old_data, before)
            self.assertEqual(entry.new_data["nickname"], "سوسو")
            self.assertEqual(entry.version_after, 2)

    def test_resubmitting_the_same_version_conflicts(self):
        self._set_version(self.parent_id, 5)
        self._run([update(self.sara_id, 1, nickname="أ")], expected_version=5)
        with self.assertRaises(VersionConflict) as ctx:
            self._run([update(self.sara_id, 2, nickname="ب")], expected_version=5)
        self.assertEqual(ctx.exception.details["actual"], 6)
        self.assertEqual(self._get(self.sara_id).nickname, "أ")

    def test_stale_child_version_conflicts_before_any_write(self):
        counts = self._counts()
        with self.assertRaises(VersionConflict):
            self._run([create(name="حسن", gender="male"), update(self.sara_id, 7, nickname="x")])
        self.assertEqual(self._counts(), counts)
        self.assertEqual(self._get(self.parent_id).version, 1)

    def test_held_lock_reports_busy(self):
        holder = self.Session()
        try:
            self.locks.lock_aggregate(holder, self.parent_id)
            with self.assertRaises(ResourceBusy):
                self._run([update(self.sara_id, 1, nickname="x")])
        finally:
            holder.rollback()
            holder.close()
        result = self._run([update(self.sara_id, 1, nickname="x")])
        self.assertEqual(result.updated, 1)

    def test_invalid_operation_leaves_data_unchanged(self):
        counts = self._counts()
        with self.assertRaises(ValidationFailed) as ctx:
            self._run([create(name="حسن", gender="male"), update(self.sara_id, 1, gender="x")])
        self.assertEqual(ctx.exception.details["op_index"], 1)
        self.assertEqual(ctx.exception.details["field"], "gender")
        self.assertEqual(self._counts(), counts)
        self.assertEqual(self.locks.held_keys(), set())

    def test_create_requires_name_and_gender(self):
        with self.assertRaises(ValidationFailed) as ctx:
            self._run([create(name="حسن")])
        self.assertEqual(ctx.exception.details["field"], "gender")

    def test_unknown_field_rejected(self):
        with self.assertRaises(ValidationFailed) as ctx:
            self._run([update(self.sara_id, 1, shoe_size=42)])
        self.assertEqual(ctx.exception.details["field"], "shoe_size")

    def test_partial_update_keeps_absent_fields_and_clears_explicit_none(self):
        with self.Session() as s:
            sara = s.get(Person, self.sara_id)
            sara.nickname = "سوسو"
            sara.bio = "نبذة"
            s.commit()
        self._run([update(self.sara_id, 2, nickname=None)])
        sara = self._get(self.sara_id)
        self.assertIsNone(sara.nickname)
        self.assertEqual(sara.bio, "نبذة")

    def test_target_must_be_a_child_of_the_parent(self):
        with self.assertRaises(ValidationFailed) as ctx:
            self._run([update(self.cousin_id, 1, nickname="x")])
        self.assertEqual(ctx.exception.details["field"], "target_id")

    def test_target_may_appear_once(self):
        with self.assertRaises(ValidationFailed):
            self._run([update(self.sara_id, 1, nickname="x"), delete(self.sara_id, 1)])

    def test_deleted_target_is_not_found(self):
        self._run([delete(self.omar_id, 1)])
        with self.assertRaises(NotFound):
            self._run([update(self.omar_id, 2, nickname="x")], expected_version=2)

    def test_delete_refused_while_child_has_descendants(self):
        with self.Session() as s:
            s.add(Person(name="حفيد", gender="male", hid="1.1.2.1", father_id=self.omar_id))
            s.commit()
        with self.assertRaises(ValidationFailed) as ctx:
            self._run([delete(self.omar_id, 1)])
        self.assertEqual(ctx.exception.details["field"], "children")

    def test_permission_denied_outside_edit_levels(self):
        with self.assertRaises(PermissionDenied):
            self._run([update(self.sara_id, 1, nickname="x")], actor=self.stranger_id)
        with self.assertRaises(PermissionDenied):
            self._run([update(self.sara_id, 1, nickname="x")], actor=self.cousin_id)

    def test_blocked_actor_denied(self):
        with self.Session() as s:
            s.add(SuggestionBlock(blocked_user_id=self.parent_id, blocked_by=self.admin_id))
            s.commit()
        with self.assertRaises(PermissionDenied):
            self._run([update(self.sara_id, 1, nickname="x")])

    def test_admin_may_edit_any_branch(self):
        result = self._run([update(self.sara_id, 1, nickname="x")], actor=self.admin_id)
        self.assertEqual(result.updated, 1)

    def test_batch_too_large_rejected_before_any_work(self):
        ops = [create(name=f"ابن {i}", gender="male") for i in range(51)]
        with self.assertRaises(BatchTooLarge) as ctx:
            self._run(ops, parent_id=424242)
        self.assertEqual(ctx.exception.details, {"limit": 50, "size": 51})

    def test_configurable_batch_limit(self):
        with self.assertRaises(BatchTooLarge):
            self._run([create(name="أ", gender="male"), create(name="ب", gender="male")], max_batch_size=1)

    def test_empty_batch_is_a_no_op(self):
        result = self._run([])
        self.assertEqual(result.total, 0)
        self.assertIsNone(result.operation_group_id)
        self.assertEqual(self._get(self.parent_id).version, 1)

    def test_empty_batch_still_checks_permission_and_version(self):
        with self.Session() as s:
            s.add(SuggestionBlock(blocked_user_id=self.stranger_id, blocked_by=self.admin_id))
            s.commit()
        with self.assertRaises(PermissionDenied):
            self._run([], expected_version=999, actor=self.stranger_id)
        with self.assertRaises(VersionConflict):
            self._run([], expected_version=999)

    def test_description_must_be_text(self):
        with self.assertRaises(ValidationFailed) as ctx:
            self._run([update(self.sara_id, 1, nickname="x")], description={"a": 1})
        self.assertEqual(ctx.exception.details["field"], "description")
        self.assertIsNone(self._get(self.sara_id).nickname)

        result = self._run([update(self.sara_id, 1, nickname="x")], description="تعديل")
        with self.Session() as s:
            self.assertEqual(s.get(OperationGroup, result.operation_group_id).description, "تعديل")

    def test_update_cannot_move_child_to_another_father(self):
        with self.assertRaises(ValidationFailed) as ctx:
            self._run([update(self.sara_id, 1, father_id=self.stranger_id)])
        self.assertEqual(ctx.exception.details, {"field": "father_id", "op_index": 0})
        self.assertEqual(self._get(self.sara_id).father_id, self.parent_id)

    def test_mother_can_be_repointed_to_a_wife(self):
        result = self._run([update(self.omar_id, 1, mother_id=self.wife_id)])
        self.assertEqual(result.updated, 1)
        omar = self._get(self.omar_id)
        self.assertEqual((omar.father_id, omar.mother_id), (self.parent_id, self.wife_id))
        self.assertEqual((omar.hid, omar.generation), ("1.1.2", 3))

        result = self._run([update(self.omar_id, 2, mother_id=None)], expected_version=2)
        self.assertIsNone(self._get(self.omar_id).mother_id)

    def test_mother_must_be_a_wife_of_the_parent(self):
        with self.Session() as s:
            layla = Person(name="ليلى", gender="female", family_origin="الشمري")
            s.add(layla)
            s.commit()
            layla_id = layla.id
        with self.assertRaises(ValidationFailed) as ctx:
            self._run([update(self.omar_id, 1, mother_id=layla_id)])
        self.assertEqual(ctx.exception.details["field"], "mother_id")
        self.assertIsNone(self._get(self.omar_id).mother_id)

    def test_mother_link_is_fixed_under_a_mother_parent(self):
        with self.assertRaises(ValidationFailed) as ctx:
            self._run([update(self.sara_id, 1, mother_id=None)], actor=self.wife_id, parent_id=self.wife_id)
        self.assertEqual(ctx.exception.details["field"], "mother_id")
        self.assertEqual(self._get(self.sara_id).mother_id, self.wife_id)

    def test_mother_cannot_be_a_descendant_of_the_child(self):
        with self.Session() as s:
            granddaughter = Person(name="هند", gender="female", hid="1.1.2.1", father_id=self.omar_id, generation=4)
            s.add(granddaughter)
            s.flush()
            s.add(Marriage(husband_id=self.parent_id, wife_id=granddaughter.id, munasib=None))
            s.commit()
            granddaughter_id = granddaughter.id
        with self.assertRaises(ValidationFailed) as ctx:
            self._run([update(self.omar_id, 1, mother_id=granddaughter_id)])
        self.assertEqual(ctx.exception.details["field"], "mother_id")
        self.assertIsNone(self._get(self.omar_id).mother_id)

    def test_mother_change_needs_edit_rights_on_the_mother(self):
        # a moderator of branch 1.1 may edit Khalid's children but not Fatima
        with self.Session() as s:
            s.add(BranchModerator(user_id=self.stranger_id, branch_hid="1.1", assigned_by=self.admin_id))
            s.commit()
        self._run([update(self.sara_id, 1, nickname="x")], actor=self.stranger_id)
        with self.assertRaises(PermissionDenied):
            self._run([update(self.omar_id, 1, mother_id=self.wife_id)], expected_version=2, actor=self.stranger_id)
        self.assertIsNone(self._get(self.omar_id).mother_id)

    def test_mother_is_locked_with_the_aggregate(self):
        holder = self.Session()
        try:
            self.locks.lock_aggregate(holder, self.wife_id)
            with self.assertRaises(ResourceBusy):
                self._run([update(self.omar_id, 1, mother_id=self.wife_id)])
        finally:
            holder.rollback()
            holder.close()

    def test_gender_fixed_once_married_or_a_parent(self):
        with self.Session() as s:
            layla = Person(name="ليلى", gender="female", family_origin="الشمري")
            s.add(layla)
            s.flush()
            s.add(Marriage(husband_id=self.omar_id, wife_id=layla.id, munasib="الشمري"))
            s.commit()
        with self.assertRaises(ValidationFailed) as ctx:
            self._run([update(self.omar_id, 1, gender="female")])
        self.assertEqual(ctx.exception.details["field"], "gender")
        self.assertEqual(self._get(self.omar_id).gender, "male")

        result = self._run([update(self.sara_id, 1, gender="male")])
        self.assertEqual(result.updated, 1)

    def test_missing_parent_is_not_found(self):
        with self.assertRaises(NotFound):
            self._run([create(name="أ", gender="male")], parent_id=424242)

    def test_selected_mother_is_linked_on_create(self):
        result = self._run([create(name="حسن", gender="male")], selected_mother_id=self.wife_id)
        child = self._get(result.created_ids[0])
        self.assertEqual((child.father_id, child.mother_id), (self.parent_id, self.wife_id))

    def test_selected_mother_must_be_female(self):
        with self.assertRaises(ValidationFailed) as ctx:
            self._run([create(name="حسن", gender="male")], selected_mother_id=self.omar_id)
        self.assertEqual(ctx.exception.details["field"], "selected_mother_id")

    def test_mother_as_parent_inherits_father_hid(self):
        request = BatchRequest(
            actor_id=self.wife_id,
            parent_id=self.wife_id,
            expected_version=1,
            operations=[create(name="زينب", gender="female")],
            selected_father_id=self.parent_id,
        )
        with self.Session() as s:
            result = execute_batch(s, request, locks=self.locks)
        child = self._get(result.created_ids[0])
        self.assertEqual((child.father_id, child.mother_id), (self.parent_id, self.wife_id))
        self.assertEqual(child.hid, "1.1.3")

    def test_hid_skips_numbers_held_by_deleted_children(self):
        self._run([delete(self.omar_id, 1)])
        result = self._run([create(name="حسن", gender="male")], expected_version=2)
        self.assertEqual(self._get(result.created_ids[0]).hid, "1.1.3")


class TestReorder(TreeTestCase):
    def _reorder(self, moves, expected_version=1):
        with self.Session() as s:
            return reorder_children(s, self.parent_id, self.parent_id, expected_version, moves, locks=self.locks)

    def test_swaps_sibling_order(self):
        result = self._reorder([
            {"id": self.sara_id, "new_sibling_order": 1, "version": 1},
            {"id": self.omar_id, "new_sibling_order": 0, "version": 1},
        ])
        self.assertEqual(result.updated, 2)
        self.assertEqual(self._get(self.sara_id).sibling_order, 1)
        self.assertEqual(self._get(self.omar_id).sibling_order, 0)
        with self.Session() as s:
            group = s.get(OperationGroup, result.operation_group_id)
            self.assertEqual(group.group_type, "batch_reorder")

    def test_rejects_empty_duplicate_and_negative_orders(self):
        with self.assertRaises(ValidationFailed):
            self._reorder([])
        with self.assertRaises(ValidationFailed):
            self._reorder([
                {"id": self.sara_id, "new_sibling_order": 0, "version": 1},
                {"id": self.omar_id, "new_sibling_order": 0, "version": 1},
            ])
        with self.assertRaises(ValidationFailed):
            self._reorder([{"id": self.sara_id, "new_sibling_order": -1, "version": 1}])

    def test_rejects_foreign_children(self):
        with self.assertRaises(ValidationFailed):
            self._reorder([{"id": self.cousin_id, "new_sibling_order": 0, "version": 1}])


class TestParseBatchRequest(unittest.TestCase):
    def test_operations_payload(self):
        request = parse_batch_request(1, 2, {
            "expected_version": 3,
            "operations": [
                {"kind": "create", "fields": {"name": "أ", "gender": "male"}},
                {"kind": "delete", "target_id": 9, "expected_version": 1},
            ],
        })
        self.assertEqual(request.expected_version, 3)
        self.assertEqual([op.kind for op in request.operations], [OperationKind.CREATE, OperationKind.DELETE])
        self.assertEqual(request.operations[1].target_id, 9)

    def test_three_list_payload_keeps_create_update_delete_order(self):
        request = parse_batch_request(1, 2, {
            "parent_version": 4,
            "children_to_delete": [{"id": 7, "version": 2}],
            "children_to_update": [{"id": 8, "version": 1, "nickname": None}],
            "children_to_create": [{"name": "أ", "gender": "female"}],
        })
        self.assertEqual(request.expected_version, 4)
        self.assertEqual([op.kind.value for op in request.operations], ["create", "update", "delete"])
        self.assertEqual(request.operations[1].fields, Patch({"nickname": None}))

    def test_bad_kind_is_a_validation_error(self):
        with self.assertRaises(ValidationFailed) as ctx:
            parse_batch_request(1, 2, {"operations": [{"kind": "rename"}]})
        self.assertEqual(ctx.exception.details["op_index"], 0)

    def test_body_must_be_an_object(self):
        with self.assertRaises(ValidationFailed):
            parse_batch_request(1, 2, None)
