"""Profiles, marriages, moderation and audit tables

Revision ID: 3f7a9c2d1e40
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "3f7a9c2d1e40"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "profiles",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("hid", sa.String(length=255), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("gender", sa.String(length=10), nullable=False),
        sa.Column("generation", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("father_id", sa.Integer(), sa.ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True),
        sa.Column("mother_id", sa.Integer(), sa.ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True),
        sa.Column("sibling_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="alive"),
        sa.Column("kunya", sa.String(length=255), nullable=True),
        sa.Column("nickname", sa.String(length=255), nullable=True),
        sa.Column("bio", sa.Text(), nullable=True),
        sa.Column("birth_place", sa.String(length=255), nullable=True),
        sa.Column("current_residence", sa.String(length=255), nullable=True),
        sa.Column("occupation", sa.String(length=255), nullable=True),
        sa.Column("education", sa.String(length=255), nullable=True),
        sa.Column("phone", sa.String(length=50), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("photo_url", sa.String(length=500), nullable=True),
        sa.Column("dob_data", sa.JSON(), nullable=True),
        sa.Column("dod_data", sa.JSON(), nullable=True),
        sa.Column("profile_visibility", sa.String(length=20), nullable=False, server_default="family"),
        sa.Column("family_origin", sa.String(length=255), nullable=True),
        sa.Column("role", sa.String(length=20), nullable=False, server_default="user"),
        sa.Column("user_id", sa.String(length=64), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_profiles_hid", "profiles", ["hid"], unique=True)
    op.create_index("ix_profiles_user_id", "profiles", ["user_id"], unique=True)
    op.create_index("idx_profiles_father", "profiles", ["father_id"])
    op.create_index("idx_profiles_mother", "profiles", ["mother_id"])
    op.create_index("idx_profiles_deleted", "profiles", ["deleted_at"])

    op.create_table(
        "marriages",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("husband_id", sa.Integer(), sa.ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False),
        sa.Column("wife_id", sa.Integer(), sa.ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False),
        sa.Column("munasib", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="married"),
        sa.Column("start_date", sa.Date(), nullable=True),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
    )
    op.create_index("idx_marriages_husband", "marriages", ["husband_id"])
    op.create_index("idx_marriages_wife", "marriages", ["wife_id"])

    op.create_table(
        "branch_moderators",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False),
        sa.Column("branch_hid", sa.String(length=255), nullable=False),
        sa.Column("assigned_by", sa.Integer(), sa.ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("assigned_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_branch_moderators_user_id", "branch_moderators", ["user_id"])
    op.create_index("ix_branch_moderators_branch_hid", "branch_moderators", ["branch_hid"])

    op.create_table(
        "suggestion_blocks",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("blocked_user_id", sa.Integer(), sa.ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False),
        sa.Column("blocked_by", sa.Integer(), sa.ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("blocked_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_suggestion_blocks_blocked_user_id", "suggestion_blocks", ["blocked_user_id"])

    op.create_table(
        "operation_groups",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("created_by", sa.Integer(), sa.ForeignKey("profiles.id"), nullable=False),
        sa.Column("parent_id", sa.Integer(), sa.ForeignKey("profiles.id"), nullable=False),
        sa.Column("group_type", sa.String(length=50), nullable=False),
        sa.Column("operation_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("undo_state", sa.String(length=20), nullable=False, server_default="active"),
        sa.Column("undone_at", sa.DateTime(), nullable=True),
        sa.Column("undone_by", sa.Integer(), sa.ForeignKey("profiles.id"), nullable=True),
        sa.Column("undo_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_operation_groups_created_by", "operation_groups", ["created_by"])
    op.create_index("ix_operation_groups_parent_id", "operation_groups", ["parent_id"])
    op.create_index("ix_operation_groups_undo_state", "operation_groups", ["undo_state"])
    op.create_index("ix_operation_groups_created_at", "operation_groups", ["created_at"])

    op.create_table(
        "audit_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("operation_group_id", sa.String(length=36), sa.ForeignKey("operation_groups.id"), nullable=True),
        sa.Column("actor_id", sa.Integer(), sa.ForeignKey("profiles.id"), nullable=False),
        sa.Column("table_name", sa.String(length=50), nullable=False),
        sa.Column("record_id", sa.Integer(), nullable=False),
        sa.Column("action_type", sa.String(length=20), nullable=False),
        sa.Column("old_data_json", sa.Text(), nullable=True),
        sa.Column("new_data_json", sa.Text(), nullable=True),
        sa.Column("version_after", sa.Integer(), nullable=True),
        sa.Column("is_undoable", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("undo_of_id", sa.Integer(), sa.ForeignKey("audit_log.id"), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("undone_at", sa.DateTime(), nullable=True),
        sa.Column("undone_by", sa.Integer(), sa.ForeignKey("profiles.id"), nullable=True),
    )
    op.create_index("idx_audit_log_group", "audit_log", ["operation_group_id"])
    op.create_index("idx_audit_log_record", "audit_log", ["table_name", "record_id"])
    op.create_index("ix_audit_log_action_type", "audit_log", ["action_type"])
    op.create_index("ix_audit_log_created_at", "audit_log", ["created_at"])


def downgrade() -> None:
    op.drop_table("audit_log")
    op.drop_table("operation_groups")
    op.drop_table("suggestion_blocks")
    op.drop_table("branch_moderators")
    op.drop_table("marriages")
    op.drop_table("profiles")
