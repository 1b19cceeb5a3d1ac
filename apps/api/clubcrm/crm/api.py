from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, File, Form, Header, HTTPException, Query, Request, UploadFile, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from clubcrm import audit
from clubcrm.context import get_correlation_id
from clubcrm.core.auth import AuthUser, get_current_user as get_auth_user
from clubcrm.core.config import get_settings
from clubcrm.core.database import get_db
from clubcrm.crm.constants import ProspectSource, RelatedType
from clubcrm.crm.directory import DirectoryClient, DirectoryError, find_user, get_directory_client
from clubcrm.crm.feed import FeedFormatError, FeedUnavailableError, HttpLeadFeedClient, LeadFeedClient
from clubcrm.crm.import_export import Assignment, ImportValidationError, LeadImportService
from clubcrm.crm.quota import GoalService
from clubcrm.crm.schemas import (
    ActivityItem,
    ActorRead,
    ActorUpdate,
    BulkOutcome,
    ConversionRead,
    GoalProgressRead,
    GoalRead,
    GoalWrite,
    ImportRead,
    InteractionCreate,
    InteractionLogged,
    InteractionRead,
    LeadFeedSyncRead,
    MemberRead,
    MemberUpdate,
    ProspectCreate,
    ProspectReassignRequest,
    ProspectRead,
    ProspectUpdate,
    TaskBulkCreate,
    TaskBulkRead,
    TaskCreate,
    TaskRead,
    TaskStatusUpdate,
)
from clubcrm.crm.service import ActorService, InteractionService, MemberService, ProspectService, TaskService, enforce
from clubcrm.crm.sync import LeadFeedSyncService
from clubcrm.platform.security.context import Actor
from clubcrm.platform.security.visibility import IMPORT, require_manager

actors_router = APIRouter(prefix="/api/crm", tags=["crm.actors"])
prospects_router = APIRouter(prefix="/api/crm", tags=["crm.prospects"])
members_router = APIRouter(prefix="/api/crm", tags=["crm.members"])
tasks_router = APIRouter(prefix="/api/crm", tags=["crm.tasks"])
interactions_router = APIRouter(prefix="/api/crm", tags=["crm.interactions"])
import_router = APIRouter(prefix="/api/crm", tags=["crm.import"])
goals_router = APIRouter(prefix="/api/crm", tags=["crm.goals"])
audit_router = APIRouter(prefix="/api/crm", tags=["crm.audit"])
actor_service = ActorService()
prospect_service = ProspectService()
member_service = MemberService()
task_service = TaskService()
interaction_service = InteractionService()
import_service = LeadImportService()
sync_service = LeadFeedSyncService(import_service=import_service, prospect_service=prospect_service)
goal_service = GoalService()


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or request.headers.get("x-correlation-id")
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def get_lead_feed_client() -> LeadFeedClient:
    settings = get_settings()
    return HttpLeadFeedClient(settings.lead_feed_url, timeout=settings.lead_feed_timeout_seconds)


def get_current_user(
    auth_user: AuthUser = Depends(get_auth_user),
    directory: DirectoryClient = Depends(get_directory_client),
) -> Actor:
    """Resolve the token subject against the directory; role and branch come from there."""
    if auth_user.is_anonymous:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="authentication required")
    try:
        actor = find_user(directory, auth_user.sub)
    except DirectoryError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="directory unavailable") from exc
    if actor is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unknown user")
    return actor.with_correlation_id(get_correlation_id())


def _parse_ids(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


def _parse_manual_assignments(raw: str | None) -> dict[int, str]:
    if not raw:
        raise ImportValidationError("manual_assignments is required for manual mode")
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ImportValidationError("manual_assignments must be a JSON object") from exc
    if not isinstance(payload, dict):
        raise ImportValidationError("manual_assignments must be a JSON object")
    try:
        return {int(key): str(value) for key, value in payload.items() if value}
    except ValueError as exc:
        raise ImportValidationError("manual_assignments keys must be row numbers") from exc


@actors_router.get("/actors", response_model=list[ActorRead])
def list_actors(
    request: Request,
    user: Actor = Depends(get_current_user),
    directory: DirectoryClient = Depends(get_directory_client),
) -> list[ActorRead] | JSONResponse:
    try:
        return actor_service.list_actors(user, directory=directory)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_actor_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@actors_router.patch("/actors/{user_id}", response_model=ActorRead)
def patch_actor(
    request: Request,
    user_id: str,
    dto: ActorUpdate,
    user: Actor = Depends(get_current_user),
    directory: DirectoryClient = Depends(get_directory_client),
) -> ActorRead | JSONResponse:
    try:
        return actor_service.update_actor(user, user_id, dto, directory=directory)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_actor_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@prospects_router.get("/prospects", response_model=list[ProspectRead])
def list_prospects(
    request: Request,
    stage: str | None = Query(default=None),
    source: str | None = Query(default=None),
    assigned_to: str | None = Query(default=None),
    branch: str | None = Query(default=None),
    q: str | None = Query(default=None),
    cursor: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: Actor = Depends(get_current_user),
) -> list[ProspectRead] | JSONResponse:
    try:
        return prospect_service.list_prospects(
            db,
            user,
            filters={"stage": stage, "source": source, "assigned_to": assigned_to, "branch": branch, "q": q},
            cursor=cursor,
            limit=limit,
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_prospect_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@prospects_router.post("/prospects", response_model=ProspectRead, status_code=status.HTTP_201_CREATED)
def create_prospect(
    request: Request,
    dto: ProspectCreate,
    db: Session = Depends(get_db),
    user: Actor = Depends(get_current_user),
    directory: DirectoryClient = Depends(get_directory_client),
) -> ProspectRead | JSONResponse:
    try:
        return prospect_service.create_prospect(db, user, dto, directory=directory)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_prospect_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@prospects_router.post("/prospects/reassign", response_model=BulkOutcome)
def reassign_prospects(
    request: Request,
    dto: ProspectReassignRequest,
    db: Session = Depends(get_db),
    user: Actor = Depends(get_current_user),
    directory: DirectoryClient = Depends(get_directory_client),
) -> BulkOutcome | JSONResponse:
    try:
        return prospect_service.reassign_prospects(db, user, dto, directory=directory)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_prospect_reassign_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@prospects_router.get("/prospects/{prospect_id}", response_model=ProspectRead)
def get_prospect(
    request: Request,
    prospect_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: Actor = Depends(get_current_user),
) -> ProspectRead | JSONResponse:
    try:
        return prospect_service.get_prospect(db, user, prospect_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_prospect_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@prospects_router.patch("/prospects/{prospect_id}", response_model=ProspectRead)
def patch_prospect(
    request: Request,
    prospect_id: uuid.UUID,
    dto: ProspectUpdate,
    db: Session = Depends(get_db),
    user: Actor = Depends(get_current_user),
    directory: DirectoryClient = Depends(get_directory_client),
) -> ProspectRead | JSONResponse:
    try:
        return prospect_service.update_prospect(db, user, prospect_id, dto, directory=directory)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_prospect_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@prospects_router.post("/prospects/{prospect_id}/convert", response_model=ConversionRead)
def convert_prospect(
    request: Request,
    prospect_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: Actor = Depends(get_current_user),
    directory: DirectoryClient = Depends(get_directory_client),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
) -> ConversionRead | JSONResponse:
    try:
        return prospect_service.convert_prospect(
            db,
            user,
            prospect_id,
            directory=directory,
            idempotency_key=idempotency_key,
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_prospect_convert_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@members_router.get("/members", response_model=list[MemberRead])
def list_members(
    request: Request,
    plan: str | None = Query(default=None),
    branch: str | None = Query(default=None),
    q: str | None = Query(default=None),
    cursor: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: Actor = Depends(get_current_user),
) -> list[MemberRead] | JSONResponse:
    try:
        return member_service.list_members(
            db,
            user,
            filters={"plan": plan, "branch": branch, "q": q},
            cursor=cursor,
            limit=limit,
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_member_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@members_router.get("/members/{member_id}", response_model=MemberRead)
def get_member(
    request: Request,
    member_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: Actor = Depends(get_current_user),
) -> MemberRead | JSONResponse:
    try:
        return member_service.get_member(db, user, member_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_member_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@members_router.patch("/members/{member_id}", response_model=MemberRead)
def patch_member(
    request: Request,
    member_id: uuid.UUID,
    dto: MemberUpdate,
    db: Session = Depends(get_db),
    user: Actor = Depends(get_current_user),
) -> MemberRead | JSONResponse:
    try:
        return member_service.update_member(db, user, member_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_member_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@tasks_router.get("/tasks", response_model=list[TaskRead])
def list_tasks(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    assigned_to: str | None = Query(default=None),
    related_type: str | None = Query(default=None),
    related_id: uuid.UUID | None = Query(default=None),
    due_before: datetime | None = Query(default=None),
    cursor: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    user: Actor = Depends(get_current_user),
) -> list[TaskRead] | JSONResponse:
    try:
        return task_service.list_tasks(
            db,
            user,
            filters={
                "status": status_filter,
                "assigned_to": assigned_to,
                "related_type": related_type,
                "related_id": related_id,
                "due_before": due_before,
            },
            cursor=cursor,
            limit=limit,
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_task_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@tasks_router.post("/tasks", response_model=TaskRead, status_code=status.HTTP_201_CREATED)
def create_task(
    request: Request,
    dto: TaskCreate,
    db: Session = Depends(get_db),
    user: Actor = Depends(get_current_user),
    directory: DirectoryClient = Depends(get_directory_client),
) -> TaskRead | JSONResponse:
    try:
        return task_service.create_task(db, user, dto, directory=directory)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_task_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@tasks_router.post("/tasks/bulk", response_model=TaskBulkRead)
def create_bulk_tasks(
    request: Request,
    dto: TaskBulkCreate,
    db: Session = Depends(get_db),
    user: Actor = Depends(get_current_user),
    directory: DirectoryClient = Depends(get_directory_client),
) -> TaskBulkRead | JSONResponse:
    try:
        return task_service.create_bulk_tasks(db, user, dto, directory=directory)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_task_bulk_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@tasks_router.post("/tasks/{task_id}/status", response_model=TaskRead)
def set_task_status(
    request: Request,
    task_id: uuid.UUID,
    dto: TaskStatusUpdate,
    db: Session = Depends(get_db),
    user: Actor = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        return task_service.set_task_status(db, user, task_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_task_status_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@interactions_router.post("/interactions", response_model=InteractionLogged, status_code=status.HTTP_201_CREATED)
def log_interaction(
    request: Request,
    dto: InteractionCreate,
    db: Session = Depends(get_db),
    user: Actor = Depends(get_current_user),
) -> InteractionLogged | JSONResponse:
    try:
        return interaction_service.log_interaction(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_interaction_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@interactions_router.get("/interactions", response_model=list[InteractionRead])
def list_interactions(
    request: Request,
    related_type: RelatedType = Query(...),
    related_id: uuid.UUID = Query(...),
    db: Session = Depends(get_db),
    user: Actor = Depends(get_current_user),
) -> list[InteractionRead] | JSONResponse:
    try:
        return interaction_service.list_interactions(db, user, related_type, related_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_interaction_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@interactions_router.get("/activity/{related_type}/{related_id}", response_model=list[ActivityItem])
def activity_history(
    request: Request,
    related_type: RelatedType,
    related_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: Actor = Depends(get_current_user),
) -> list[ActivityItem] | JSONResponse:
    try:
        return interaction_service.activity_history(db, user, related_type, related_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_activity_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@import_router.post("/import/sync", response_model=ImportRead)
def sync_lead_feed(
    request: Request,
    seller_ids: str | None = Query(default=None),
    db: Session = Depends(get_db),
    user: Actor = Depends(get_current_user),
    directory: DirectoryClient = Depends(get_directory_client),
    feed: LeadFeedClient = Depends(get_lead_feed_client),
) -> ImportRead | JSONResponse:
    try:
        result = import_service.import_from_feed(
            db,
            user,
            feed=feed,
            directory=directory,
            prospect_service=prospect_service,
            seller_ids=_parse_ids(seller_ids),
        )
        return result.to_read()
    except FeedUnavailableError as exc:
        return error_response(
            request,
            status_code=status.HTTP_502_BAD_GATEWAY,
            code="crm_import_feed_unavailable",
            message=str(exc),
        )
    except (FeedFormatError, ImportValidationError) as exc:
        return error_response(
            request,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            code="crm_import_rejected",
            message=str(exc),
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_import_sync_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@import_router.post("/import/auto-sync", response_model=LeadFeedSyncRead)
def auto_sync_lead_feed(
    request: Request,
    db: Session = Depends(get_db),
    user: Actor = Depends(get_current_user),
    directory: DirectoryClient = Depends(get_directory_client),
    feed: LeadFeedClient = Depends(get_lead_feed_client),
) -> LeadFeedSyncRead | JSONResponse:
    if not get_settings().auto_sync_enabled:
        return error_response(
            request,
            status_code=status.HTTP_404_NOT_FOUND,
            code="crm_import_auto_sync_disabled",
            message="auto sync is disabled",
        )
    try:
        with enforce():
            require_manager(user, resource=IMPORT, action="auto_sync")
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_import_auto_sync_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    return sync_service.run_if_due(db, feed=feed, directory=directory)


@import_router.post("/import/upload", response_model=ImportRead)
def upload_leads(
    request: Request,
    file: UploadFile = File(...),
    mode: str = Form(default="round_robin"),
    seller_ids: str | None = Form(default=None),
    seller_id: str | None = Form(default=None),
    manual_assignments: str | None = Form(default=None),
    source: ProspectSource = Form(default=ProspectSource.UPLOAD),
    db: Session = Depends(get_db),
    user: Actor = Depends(get_current_user),
    directory: DirectoryClient = Depends(get_directory_client),
) -> ImportRead | JSONResponse:
    try:
        assignment: Assignment | None = None
        if mode == "single":
            if not seller_id:
                raise ImportValidationError("seller_id is required for single mode")
            assignment = Assignment(single=seller_id)
        elif mode == "manual":
            assignment = Assignment(per_row=_parse_manual_assignments(manual_assignments))
        elif mode != "round_robin":
            raise ImportValidationError(f"unknown assignment mode '{mode}'")

        content = file.file.read()
        result = import_service.import_from_upload(
            db,
            user,
            filename=file.filename,
            content=content,
            directory=directory,
            prospect_service=prospect_service,
            assignment=assignment,
            seller_ids=_parse_ids(seller_ids),
            source=source,
        )
        return result.to_read()
    except (FeedFormatError, ImportValidationError) as exc:
        return error_response(
            request,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            code="crm_import_rejected",
            message=str(exc),
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_import_upload_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@goals_router.get("/goals", response_model=list[GoalRead])
def list_goals(
    request: Request,
    db: Session = Depends(get_db),
    user: Actor = Depends(get_current_user),
    directory: DirectoryClient = Depends(get_directory_client),
) -> list[GoalRead] | JSONResponse:
    try:
        return goal_service.get_goals(db, user, directory=directory)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_goal_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@goals_router.put("/goals", response_model=GoalRead)
def set_goal(
    request: Request,
    dto: GoalWrite,
    db: Session = Depends(get_db),
    user: Actor = Depends(get_current_user),
    directory: DirectoryClient = Depends(get_directory_client),
) -> GoalRead | JSONResponse:
    try:
        return goal_service.set_goal(db, user, dto, directory=directory)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_goal_set_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@goals_router.get("/goals/progress", response_model=list[GoalProgressRead])
def goal_progress(
    request: Request,
    db: Session = Depends(get_db),
    user: Actor = Depends(get_current_user),
    directory: DirectoryClient = Depends(get_directory_client),
) -> list[GoalProgressRead] | JSONResponse:
    try:
        return goal_service.progress(db, user, directory=directory)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_goal_progress_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@audit_router.get("/audit", response_model=list[dict[str, Any]])
def list_audit_entries(
    request: Request,
    entity_type: str | None = Query(default=None),
    entity_id: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    user: Actor = Depends(get_current_user),
) -> list[dict[str, Any]] | JSONResponse:
    if not user.is_admin:
        return error_response(
            request,
            status_code=status.HTTP_403_FORBIDDEN,
            code="crm_audit_list_failed",
            message="admin role required",
        )
    entries = audit.audit_entries
    if entity_type:
        entries = [entry for entry in entries if entry["entity_type"] == entity_type]
    if entity_id:
        entries = [entry for entry in entries if entry["entity_id"] == entity_id]
    return list(reversed(entries))[:limit]
