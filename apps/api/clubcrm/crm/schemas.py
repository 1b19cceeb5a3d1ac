from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator

from clubcrm.crm.constants import (
    INTEREST_NOT_REPORTED,
    Branch,
    GoalPeriod,
    GoalScope,
    ProspectSource,
    ProspectStage,
    RelatedType,
    Role,
    TaskStatus,
    TaskType,
)


class ActorRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    email: str
    role: Role
    branch: Branch


class ActorUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    role: Role | None = None
    branch: Branch | None = None


class ProspectCreate(BaseModel):
    name: str = Field(min_length=1)
    phone: str = ""
    email: EmailStr | None = None
    source: ProspectSource = ProspectSource.WALK_IN
    interest: str = INTEREST_NOT_REPORTED
    stage: ProspectStage = ProspectStage.NEW
    assigned_to: str = Field(min_length=1)
    dni: str = ""
    address: str = ""
    notes: str = ""
    next_action_date: datetime | None = None

    @model_validator(mode="after")
    def _require_contact(self) -> "ProspectCreate":
        if not self.phone.strip() and self.email is None:
            raise ValueError("phone or email is required")
        return self


class ProspectUpdate(BaseModel):
    row_version: int = Field(ge=1)
    name: str | None = Field(default=None, min_length=1)
    phone: str | None = None
    email: EmailStr | None = None
    source: ProspectSource | None = None
    interest: str | None = None
    stage: ProspectStage | None = None
    assigned_to: str | None = Field(default=None, min_length=1)
    dni: str | None = None
    address: str | None = None
    notes: str | None = None
    next_action_date: datetime | None = None


class ProspectRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    phone: str
    email: str
    source: str
    interest: str
    stage: str
    assigned_to: str
    branch: str
    dni: str
    address: str
    notes: str
    next_action_date: datetime | None
    created_by: str
    updated_by: str
    created_at: datetime
    updated_at: datetime
    row_version: int


class ProspectReassignRequest(BaseModel):
    prospect_ids: list[UUID] = Field(min_length=1)
    mode: Literal["single", "round_robin"] = "single"
    seller_ids: list[str] = Field(min_length=1)

    @model_validator(mode="after")
    def _single_needs_one_seller(self) -> "ProspectReassignRequest":
        if self.mode == "single" and len(self.seller_ids) != 1:
            raise ValueError("single reassignment takes exactly one seller")
        return self


class BulkOutcome(BaseModel):
    requested: int
    updated: int = 0
    created: int = 0
    failed: int


class MemberRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    phone: str
    plan: str
    fee: Decimal
    duration_months: int
    start_date: datetime
    last_action_date: datetime | None
    original_seller: str
    branch: str
    dni: str
    address: str
    notes: str
    converted_from_id: UUID | None
    created_at: datetime
    updated_at: datetime
    row_version: int


class MemberUpdate(BaseModel):
    row_version: int = Field(ge=1)
    name: str | None = Field(default=None, min_length=1)
    phone: str | None = None
    plan: str | None = None
    fee: Decimal | None = Field(default=None, ge=0)
    dni: str | None = None
    address: str | None = None
    notes: str | None = None


class ConversionRead(BaseModel):
    member: MemberRead
    prospect: ProspectRead


class TaskCreate(BaseModel):
    title: str = Field(min_length=1)
    task_type: TaskType
    due_at: datetime
    related_type: RelatedType
    related_id: UUID
    assigned_to: str = Field(min_length=1)


class TaskTarget(BaseModel):
    related_type: RelatedType
    related_id: UUID


class TaskBulkCreate(BaseModel):
    title: str = Field(min_length=1)
    task_type: TaskType
    due_at: datetime
    assigned_to: str = Field(min_length=1)
    targets: list[TaskTarget] = Field(min_length=1)


class TaskStatusUpdate(BaseModel):
    status: TaskStatus
    result: str | None = None


class TaskRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    task_type: str
    due_at: datetime
    status: str
    related_type: str
    related_id: UUID
    assigned_to: str
    result: str | None
    created_by: str
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime


class TaskBulkRead(BaseModel):
    requested: int
    created: int
    failed: int
    tasks: list[TaskRead]


class InteractionCreate(BaseModel):
    interaction_type: TaskType
    summary: str = Field(min_length=1)
    result: str = ""
    related_type: RelatedType
    related_id: UUID


class InteractionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    occurred_at: datetime
    interaction_type: str
    summary: str
    result: str
    done_by: str
    related_type: str
    related_id: UUID


class InteractionLogged(BaseModel):
    interaction: InteractionRead
    task: TaskRead


class ActivityItem(BaseModel):
    kind: Literal["task", "interaction"]
    id: UUID
    occurred_at: datetime
    activity_type: str
    summary: str
    result: str | None
    actor_id: str


class ImportRead(BaseModel):
    total: int
    created: int
    duplicate: int
    incomplete: int
    failed: int
    created_prospects: list[ProspectRead] = Field(default_factory=list)


class LeadFeedSyncRead(BaseModel):
    status: Literal["completed", "skipped", "failed"]
    last_run_at: datetime | None
    result: ImportRead | None = None
    error: str | None = None


class GoalWrite(BaseModel):
    scope_type: GoalScope
    scope_id: str = Field(min_length=1)
    period: GoalPeriod
    target: int = Field(ge=0)

    @model_validator(mode="after")
    def _company_goal_is_percentage(self) -> "GoalWrite":
        if self.scope_type == GoalScope.COMPANY and self.target > 100:
            raise ValueError("company conversion goal is a percentage")
        return self


class GoalRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    scope_type: str
    scope_id: str
    period: str
    target: int
    updated_by: str
    updated_at: datetime


class GoalProgressRead(BaseModel):
    scope_type: str
    scope_id: str
    period: str
    actual: float
    goal: int
    met: bool
