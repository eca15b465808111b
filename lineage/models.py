from __future__ import annotations
from datetime import datetime, date
from typing import List, Optional
from sqlalchemy import String, Integer, Text, DateTime, Date, ForeignKey, Index, Boolean, JSON
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
import enum
import json
import uuid

class Base(DeclarativeBase):
    pass

GENDERS = ("male", "female")
LIFE_STATUSES = ("alive", "deceased", "unknown")
VISIBILITIES = ("public", "family", "private")
MARRIAGE_STATUSES = ("married", "divorced", "widowed")
ADMIN_ROLES = ("admin", "super_admin")

class AuditAction(enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    UNDO = "undo"

class UndoState(enum.Enum):
    ACTIVE = "active"
    UNDONE = "undone"

class Person(Base):
    __tablename__ = 'profiles'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Dotted lineage path ("1.2.3"); NULL for spouses from outside the family
    hid: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    gender: Mapped[str] = mapped_column(String(10), nullable=False)
    generation: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    father_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('profiles.id', ondelete='SET NULL'), nullable=True)
    mother_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('profiles.id', ondelete='SET NULL'), nullable=True)
    sibling_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="alive")

    kunya: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    nickname: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    bio: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    birth_place: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    current_residence: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    occupation: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    education: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    photo_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    dob_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    dod_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    profile_visibility: Mapped[str] = mapped_column(String(20), nullable=False, default="family")

    # External family name for munasib spouses
    family_origin: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="user")
    user_id: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True, index=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index('idx_profiles_father', 'father_id'),
        Index('idx_profiles_mother', 'mother_id'),
        Index('idx_profiles_deleted', 'deleted_at'),
    )

    @property
    def is_live(self) -> bool:
        return self.deleted_at is None

class Marriage(Base):
    __tablename__ = 'marriages'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    husband_id: Mapped[int] = mapped_column(Integer, ForeignKey('profiles.id', ondelete='CASCADE'), nullable=False)
    wife_id: Mapped[int] = mapped_column(Integer, ForeignKey('profiles.id', ondelete='CASCADE'), nullable=False)
    # External-family marker; set whenever a spouse has no hid
    munasib: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="married")
    start_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    end_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    husband: Mapped["Person"] = relationship("Person", foreign_keys=[husband_id])
    wife: Mapped["Person"] = relationship("Person", foreign_keys=[wife_id])

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index('idx_marriages_husband', 'husband_id'),
        Index('idx_marriages_wife', 'wife_id'),
    )

    @property
    def is_current(self) -> bool:
        return self.deleted_at is None and self.status == "married"

class BranchModerator(Base):
    __tablename__ = 'branch_moderators'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey('profiles.id', ondelete='CASCADE'), nullable=False, index=True)
    branch_hid: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    assigned_by: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('profiles.id', ondelete='SET NULL'), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    assigned_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

class SuggestionBlock(Base):
    __tablename__ = 'suggestion_blocks'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    blocked_user_id: Mapped[int] = mapped_column(Integer, ForeignKey('profiles.id', ondelete='CASCADE'), nullable=False, index=True)
    blocked_by: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('profiles.id', ondelete='SET NULL'), nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    blocked_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

class OperationGroup(Base):
    __tablename__ = 'operation_groups'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    created_by: Mapped[int] = mapped_column(Integer, ForeignKey('profiles.id'), nullable=False, index=True)
    parent_id: Mapped[int] = mapped_column(Integer, ForeignKey('profiles.id'), nullable=False, index=True)
    group_type: Mapped[str] = mapped_column(String(50), nullable=False)  # 'batch_update', 'batch_reorder', 'marriage_create'
    operation_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    undo_state: Mapped[str] = mapped_column(String(20), nullable=False, default=UndoState.ACTIVE.value, index=True)
    undone_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    undone_by: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('profiles.id'), nullable=True)
    undo_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, index=True)

    entries: Mapped[List["AuditLogEntry"]] = relationship(
        "AuditLogEntry", back_populates="group", order_by="AuditLogEntry.id"
    )

class AuditLogEntry(Base):
    __tablename__ = 'audit_log'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    operation_group_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey('operation_groups.id'), nullable=True)
    actor_id: Mapped[int] = mapped_column(Integer, ForeignKey('profiles.id'), nullable=False)
    table_name: Mapped[str] = mapped_column(String(50), nullable=False)
    record_id: Mapped[int] = mapped_column(Integer, nullable=False)
    action_type: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    old_data_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # pre-image, NULL for create
    new_data_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # post-image, NULL for delete
    version_after: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    is_undoable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    undo_of_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('audit_log.id'), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    undone_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    undone_by: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('profiles.id'), nullable=True)

    group: Mapped[Optional["OperationGroup"]] = relationship("OperationGroup", back_populates="entries")

    __table_args__ = (
        Index('idx_audit_log_group', 'operation_group_id'),
        Index('idx_audit_log_record', 'table_name', 'record_id'),
    )

    @property
    def old_data(self) -> Optional[dict]:
        return json.loads(self.old_data_json) if self.old_data_json else None

    @property
    def new_data(self) -> Optional[dict]:
        return json.loads(self.new_data_json) if self.new_data_json else None
