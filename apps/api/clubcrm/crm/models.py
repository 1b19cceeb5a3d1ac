from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import DateTime, ForeignKey, Index, Integer, Numeric, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from clubcrm.core.database import Base
from clubcrm.crm.constants import INTEREST_NOT_REPORTED, ProspectStage, TaskStatus
from clubcrm.crm.sensitive import SensitiveText


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CRMProspect(Base):
    __tablename__ = "crm_prospect"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    phone: Mapped[str] = mapped_column(String(64), nullable=False, default="", server_default="")
    email: Mapped[str] = mapped_column(String(320), nullable=False, default="", server_default="")
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    interest: Mapped[str] = mapped_column(
        String(64), nullable=False, default=INTEREST_NOT_REPORTED, server_default=INTEREST_NOT_REPORTED
    )
    stage: Mapped[str] = mapped_column(
        String(16), nullable=False, default=ProspectStage.NEW.value, server_default=ProspectStage.NEW.value
    )
    assigned_to: Mapped[str] = mapped_column(String(128), nullable=False)
    # Snapshot of the assignee's branch at write time, not a live relation.
    branch: Mapped[str] = mapped_column(String(32), nullable=False)
    dni: Mapped[str] = mapped_column(SensitiveText, nullable=False, default="", server_default="")
    address: Mapped[str] = mapped_column(SensitiveText, nullable=False, default="", server_default="")
    notes: Mapped[str] = mapped_column(SensitiveText, nullable=False, default="", server_default="")
    next_action_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[str] = mapped_column(String(128), nullable=False)
    updated_by: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")

    __table_args__ = (
        Index("ix_crm_prospect_scope", "branch", "assigned_to", "stage"),
        Index("ix_crm_prospect_phone", "phone"),
        Index("ix_crm_prospect_email", "email"),
    )


class CRMMember(Base):
    __tablename__ = "crm_member"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    phone: Mapped[str] = mapped_column(String(64), nullable=False, default="", server_default="")
    plan: Mapped[str] = mapped_column(String(64), nullable=False)
    fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    duration_months: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    last_action_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    original_seller: Mapped[str] = mapped_column(String(128), nullable=False)
    branch: Mapped[str] = mapped_column(String(32), nullable=False)
    dni: Mapped[str] = mapped_column(SensitiveText, nullable=False, default="", server_default="")
    address: Mapped[str] = mapped_column(SensitiveText, nullable=False, default="", server_default="")
    notes: Mapped[str] = mapped_column(SensitiveText, nullable=False, default="", server_default="")
    converted_from_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_prospect.id", ondelete="RESTRICT"),
        nullable=True,
        unique=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    # Set explicitly by member edits; task completion only touches last_action_date.
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")

    __table_args__ = (Index("ix_crm_member_scope", "branch", "original_seller"),)


class CRMTask(Base):
    __tablename__ = "crm_task"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    task_type: Mapped[str] = mapped_column(String(16), nullable=False)
    due_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=TaskStatus.PENDING.value, server_default=TaskStatus.PENDING.value
    )
    related_type: Mapped[str] = mapped_column(String(16), nullable=False)
    related_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    assigned_to: Mapped[str] = mapped_column(String(128), nullable=False)
    result: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str] = mapped_column(String(128), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    __table_args__ = (
        Index("ix_crm_task_related", "related_type", "related_id"),
        Index("ix_crm_task_assignee_status", "assigned_to", "status", "due_at"),
    )


class CRMInteraction(Base):
    """Append-only contact log. Rows are never updated or deleted."""

    __tablename__ = "crm_interaction"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    interaction_type: Mapped[str] = mapped_column(String(16), nullable=False)
    summary: Mapped[str] = mapped_column(Text, nullable=False)
    result: Mapped[str] = mapped_column(Text, nullable=False, default="", server_default="")
    done_by: Mapped[str] = mapped_column(String(128), nullable=False)
    related_type: Mapped[str] = mapped_column(String(16), nullable=False)
    related_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (Index("ix_crm_interaction_related", "related_type", "related_id", "occurred_at"),)


class CRMGoal(Base):
    __tablename__ = "crm_goal"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    scope_type: Mapped[str] = mapped_column(String(16), nullable=False)
    scope_id: Mapped[str] = mapped_column(String(128), nullable=False)
    period: Mapped[str] = mapped_column(String(16), nullable=False)
    target: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_by: Mapped[str] = mapped_column(String(128), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    __table_args__ = (UniqueConstraint("scope_type", "scope_id", "period", name="uq_crm_goal_key"),)


class CRMSyncState(Base):
    __tablename__ = "crm_sync_state"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )


class CRMIdempotencyKey(Base):
    __tablename__ = "crm_idempotency_key"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    endpoint: Mapped[str] = mapped_column(String(128), nullable=False)
    key: Mapped[str] = mapped_column(String(255), nullable=False)
    request_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    response_json: Mapped[str] = mapped_column(Text, nullable=False, default=lambda: json.dumps({}))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("endpoint", "key", name="uq_crm_idempotency_endpoint_key"),
    )
