from __future__ import annotations

import hashlib
import json
import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from fastapi import HTTPException, status
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from sqlalchemy import Select, and_, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from clubcrm import audit, events
from clubcrm.crm.constants import (
    CONVERSION_NOTE_PREFIX,
    INTERACTION_TASK_RESULT,
    INTEREST_NOT_REPORTED,
    TASK_DONE_PLACEHOLDER,
    TERMINAL_STAGES,
    Branch,
    ProspectStage,
    RelatedType,
    Role,
    TaskStatus,
    plan_terms_for,
)
from clubcrm.crm.directory import DirectoryClient, DirectoryError, find_user, resolve_assignee
from clubcrm.crm.models import CRMIdempotencyKey, CRMInteraction, CRMMember, CRMProspect, CRMTask, utcnow
from clubcrm.crm.schemas import (
    ActivityItem,
    ActorRead,
    ActorUpdate,
    BulkOutcome,
    ConversionRead,
    InteractionCreate,
    InteractionLogged,
    InteractionRead,
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
from clubcrm.metrics import observe_conversion, observe_task_transition
from clubcrm.platform.security.context import Actor
from clubcrm.platform.security.errors import AuthorizationError
from clubcrm.platform.security.visibility import (
    ACTOR,
    INTERACTION,
    MEMBER,
    PROSPECT,
    TASK,
    can_view,
    require_admin,
    require_assignable,
    require_branch,
    require_manager,
    require_writer,
    visible,
)


logger = logging.getLogger("clubcrm.crm")
tracer = trace.get_tracer("clubcrm.crm")

SENSITIVE_FIELDS = ("dni", "address", "notes")


@contextmanager
def enforce() -> Iterator[None]:
    """Translate authorization failures into HTTP 403."""
    try:
        yield
    except AuthorizationError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc


def _audit_view(payload: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in payload.items() if key not in SENSITIVE_FIELDS}


def _publish(event_type: str, actor: Actor, payload: dict[str, Any]) -> None:
    events.publish(
        {
            "event_id": str(uuid.uuid4()),
            "event_type": event_type,
            "occurred_at": utcnow().isoformat(),
            "actor_user_id": actor.id,
            "version": 1,
            "payload": payload,
            "correlation_id": actor.correlation_id,
        }
    )


def _page(stmt: Select[Any], cursor: str | None, limit: int) -> Select[Any]:
    offset = int(cursor) if cursor and cursor.isdigit() else 0
    return stmt.offset(offset).limit(limit)


class ProspectService:
    entity_type = PROSPECT

    def create_prospect(
        self,
        session: Session,
        actor: Actor,
        dto: ProspectCreate,
        *,
        directory: DirectoryClient,
    ) -> ProspectRead:
        with enforce():
            require_writer(actor, resource=PROSPECT, action="create")
        assignee = resolve_assignee(directory, dto.assigned_to)
        with enforce():
            require_assignable(actor, assignee, resource=PROSPECT, action="create")

        prospect = CRMProspect(
            name=dto.name.strip(),
            phone=dto.phone.strip(),
            email=str(dto.email) if dto.email is not None else "",
            source=dto.source.value,
            interest=dto.interest.strip() or INTEREST_NOT_REPORTED,
            stage=dto.stage.value,
            assigned_to=assignee.id,
            branch=assignee.branch.value,
            dni=dto.dni,
            address=dto.address,
            notes=dto.notes,
            next_action_date=dto.next_action_date,
            created_by=actor.id,
            updated_by=actor.id,
        )
        session.add(prospect)
        session.flush()
        created = self._to_read(prospect)

        audit.record(
            actor_user_id=actor.id,
            entity_type=self.entity_type,
            entity_id=str(prospect.id),
            action="create",
            before=None,
            after=_audit_view(created.model_dump(mode="json")),
            correlation_id=actor.correlation_id,
        )
        _publish(
            "crm.prospect.created",
            actor,
            {
                "prospect_id": str(prospect.id),
                "stage": prospect.stage,
                "source": prospect.source,
                "assigned_to": prospect.assigned_to,
                "branch": prospect.branch,
            },
        )
        session.commit()
        logger.info("prospect.created", extra={"prospect_id": str(created.id), "actor_id": actor.id})
        return created

    def list_prospects(
        self,
        session: Session,
        actor: Actor,
        filters: dict[str, Any],
        cursor: str | None = None,
        limit: int = 50,
    ) -> list[ProspectRead]:
        stmt: Select[tuple[CRMProspect]] = select(CRMProspect)
        stmt = self._scope_query(stmt, actor)
        if filters.get("stage"):
            stmt = stmt.where(CRMProspect.stage == filters["stage"])
        if filters.get("source"):
            stmt = stmt.where(CRMProspect.source == filters["source"])
        if filters.get("assigned_to"):
            stmt = stmt.where(CRMProspect.assigned_to == filters["assigned_to"])
        if filters.get("branch"):
            stmt = stmt.where(CRMProspect.branch == filters["branch"])
        if filters.get("q"):
            q = f"%{filters['q']}%"
            stmt = stmt.where(
                or_(CRMProspect.name.ilike(q), CRMProspect.phone.ilike(q), CRMProspect.email.ilike(q))
            )

        rows = session.scalars(_page(stmt.order_by(CRMProspect.created_at.desc()), cursor, limit)).all()
        return [self._to_read(item) for item in visible(actor, rows, resource=PROSPECT)]

    def get_prospect(self, session: Session, actor: Actor, prospect_id: uuid.UUID) -> ProspectRead:
        return self._to_read(self._load_visible(session, actor, prospect_id))

    def update_prospect(
        self,
        session: Session,
        actor: Actor,
        prospect_id: uuid.UUID,
        dto: ProspectUpdate,
        *,
        directory: DirectoryClient,
    ) -> ProspectRead:
        prospect = self._load_visible(session, actor, prospect_id)
        with enforce():
            require_writer(actor, resource=PROSPECT, action="update")

        payload = dto.model_dump(exclude_unset=True, exclude={"row_version"})
        requested_assignee = payload.pop("assigned_to", None)
        if requested_assignee is not None and requested_assignee != prospect.assigned_to:
            with enforce():
                require_manager(actor, resource=PROSPECT, action="reassign")
            assignee = resolve_assignee(directory, requested_assignee)
            with enforce():
                require_assignable(actor, assignee, resource=PROSPECT, action="reassign")
            # both columns move in the same statement
            payload["assigned_to"] = assignee.id
            payload["branch"] = assignee.branch.value

        for key in ("stage", "source"):
            if payload.get(key) is not None:
                payload[key] = payload[key].value
        if "email" in payload:
            payload["email"] = str(payload["email"]) if payload["email"] else ""
        for key in ("phone", "dni", "address", "notes"):
            if key in payload and payload[key] is None:
                payload[key] = ""
        for key in ("name", "source", "interest", "stage"):
            if key in payload and payload[key] is None:
                payload.pop(key)
        if not payload:
            return self._to_read(prospect)

        before = self._to_read(prospect)
        payload["updated_by"] = actor.id
        payload["updated_at"] = utcnow()
        payload["row_version"] = CRMProspect.row_version + 1
        result = session.execute(
            update(CRMProspect)
            .where(and_(CRMProspect.id == prospect.id, CRMProspect.row_version == dto.row_version))
            .values(**payload)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="row_version conflict")
        session.commit()

        updated = self._to_read(self._load(session, prospect_id))
        audit.record(
            actor_user_id=actor.id,
            entity_type=self.entity_type,
            entity_id=str(prospect_id),
            action="update",
            before=_audit_view(before.model_dump(mode="json")),
            after=_audit_view(updated.model_dump(mode="json")),
            correlation_id=actor.correlation_id,
        )
        _publish(
            "crm.prospect.updated",
            actor,
            {"prospect_id": str(prospect_id), "stage": updated.stage, "assigned_to": updated.assigned_to},
        )
        if before.stage != updated.stage:
            _publish(
                "crm.prospect.stage_changed",
                actor,
                {"prospect_id": str(prospect_id), "from_stage": before.stage, "to_stage": updated.stage},
            )
        return updated

    def reassign_prospects(
        self,
        session: Session,
        actor: Actor,
        dto: ProspectReassignRequest,
        *,
        directory: DirectoryClient,
    ) -> BulkOutcome:
        with enforce():
            require_manager(actor, resource=PROSPECT, action="reassign")
        sellers = [resolve_assignee(directory, seller_id) for seller_id in dto.seller_ids]
        with enforce():
            for seller in sellers:
                require_assignable(actor, seller, resource=PROSPECT, action="reassign")

        updated = 0
        failed = 0
        for index, prospect_id in enumerate(dto.prospect_ids):
            seller = sellers[index % len(sellers)]
            try:
                prospect = self._load_visible(session, actor, prospect_id)
                previous_assignee = prospect.assigned_to
                session.execute(
                    update(CRMProspect)
                    .where(CRMProspect.id == prospect_id)
                    .values(
                        assigned_to=seller.id,
                        branch=seller.branch.value,
                        updated_by=actor.id,
                        updated_at=utcnow(),
                        row_version=CRMProspect.row_version + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
                session.commit()
            except HTTPException:
                session.rollback()
                failed += 1
                continue
            except SQLAlchemyError as exc:
                session.rollback()
                failed += 1
                logger.error("prospect.reassign_failed", extra={"prospect_id": str(prospect_id), "error": str(exc)})
                continue

            updated += 1
            audit.record(
                actor_user_id=actor.id,
                entity_type=self.entity_type,
                entity_id=str(prospect_id),
                action="reassign",
                before={"assigned_to": previous_assignee},
                after={"assigned_to": seller.id, "branch": seller.branch.value},
                correlation_id=actor.correlation_id,
            )

        logger.info(
            "prospect.reassigned",
            extra={"actor_id": actor.id, "requested": len(dto.prospect_ids), "updated": updated, "failed": failed},
        )
        return BulkOutcome(requested=len(dto.prospect_ids), updated=updated, failed=failed)

    def convert_prospect(
        self,
        session: Session,
        actor: Actor,
        prospect_id: uuid.UUID,
        *,
        directory: DirectoryClient,
        idempotency_key: str | None = None,
    ) -> ConversionRead:
        endpoint = f"crm.prospect.convert:{prospect_id}"
        request_hash = hashlib.sha256(f"{prospect_id}:{actor.id}".encode("utf-8")).hexdigest()
        if idempotency_key:
            stored = self._load_idempotent(session, endpoint, idempotency_key, request_hash)
            if stored is not None:
                return stored

        with tracer.start_as_current_span("crm.prospect.convert") as span:
            span.set_attribute("prospect_id", str(prospect_id))
            span.set_attribute("correlation_id", actor.correlation_id or "")
            with enforce():
                require_writer(actor, resource=PROSPECT, action="convert")

            # state captured by the caller may be stale, so read the row again now
            prospect = session.scalar(
                select(CRMProspect).where(CRMProspect.id == prospect_id).execution_options(populate_existing=True)
            )
            if prospect is None or not can_view(actor, prospect, resource=PROSPECT):
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="prospect not found")
            if prospect.stage in TERMINAL_STAGES:
                observe_conversion("rejected")
                span.set_status(Status(StatusCode.ERROR, "terminal stage"))
                raise HTTPException(
                    status_code=status.HTTP_409_CONFLICT,
                    detail=f"prospect already closed as {prospect.stage}",
                )

            now = utcnow()
            member = session.scalar(select(CRMMember).where(CRMMember.converted_from_id == prospect.id))
            if member is None:
                terms = plan_terms_for(prospect.interest)
                member = CRMMember(
                    name=prospect.name,
                    phone=prospect.phone,
                    plan=prospect.interest,
                    fee=terms.fee,
                    duration_months=terms.duration_months,
                    start_date=now,
                    last_action_date=now,
                    original_seller=prospect.assigned_to,
                    branch=self._seller_branch(directory, prospect),
                    dni=prospect.dni,
                    address=prospect.address,
                    notes=CONVERSION_NOTE_PREFIX + prospect.notes,
                    converted_from_id=prospect.id,
                    created_at=now,
                    updated_at=now,
                )
                session.add(member)
                try:
                    # the member is committed before the prospect is closed
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    observe_conversion("rejected")
                    raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="prospect conversion conflict")
            else:
                logger.warning(
                    "prospect.conversion_resumed",
                    extra={"prospect_id": str(prospect_id), "member_id": str(member.id)},
                )

            result = session.execute(
                update(CRMProspect)
                .where(and_(CRMProspect.id == prospect_id, CRMProspect.stage.notin_([s.value for s in TERMINAL_STAGES])))
                .values(
                    stage=ProspectStage.WON.value,
                    updated_by=actor.id,
                    updated_at=now,
                    row_version=CRMProspect.row_version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                session.rollback()
                observe_conversion("rejected")
                raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="prospect conversion conflict")

            member_id = member.id
            session.commit()
            conversion = ConversionRead(
                member=MemberRead.model_validate(session.get(CRMMember, member_id)),
                prospect=self._to_read(self._load(session, prospect_id)),
            )
            if idempotency_key:
                self._store_idempotent(session, endpoint, idempotency_key, request_hash, conversion)

            span.set_attribute("member_id", str(member_id))
            observe_conversion("converted")
            audit.record(
                actor_user_id=actor.id,
                entity_type=self.entity_type,
                entity_id=str(prospect_id),
                action="convert",
                before={"stage": "open"},
                after={"stage": ProspectStage.WON.value, "member_id": str(member_id)},
                correlation_id=actor.correlation_id,
            )
            _publish(
                "crm.prospect.converted",
                actor,
                {
                    "prospect_id": str(prospect_id),
                    "member_id": str(member_id),
                    "plan": conversion.member.plan,
                    "fee": str(conversion.member.fee),
                },
            )
            logger.info(
                "prospect.converted",
                extra={"prospect_id": str(prospect_id), "member_id": str(member_id), "actor_id": actor.id},
            )
            return conversion

    def _seller_branch(self, directory: DirectoryClient, prospect: CRMProspect) -> str:
        try:
            seller = find_user(directory, prospect.assigned_to)
        except DirectoryError:
            seller = None
        if seller is None:
            return prospect.branch or Branch.GENERAL.value
        return seller.branch.value

    def _load_idempotent(
        self,
        session: Session,
        endpoint: str,
        key: str,
        request_hash: str,
    ) -> ConversionRead | None:
        existing = session.scalar(
            select(CRMIdempotencyKey).where(and_(CRMIdempotencyKey.endpoint == endpoint, CRMIdempotencyKey.key == key))
        )
        if existing is None:
            return None
        if existing.request_hash != request_hash:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="idempotency key payload mismatch")
        return ConversionRead.model_validate(json.loads(existing.response_json))

    def _store_idempotent(
        self,
        session: Session,
        endpoint: str,
        key: str,
        request_hash: str,
        conversion: ConversionRead,
    ) -> None:
        session.add(
            CRMIdempotencyKey(
                endpoint=endpoint,
                key=key,
                request_hash=request_hash,
                response_json=json.dumps(conversion.model_dump(mode="json")),
            )
        )
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            logger.warning("prospect.idempotency_key_exists", extra={"error": endpoint})

    def _scope_query(self, stmt: Select[tuple[CRMProspect]], actor: Actor) -> Select[tuple[CRMProspect]]:
        if actor.role == Role.ADMIN:
            return stmt
        if actor.role == Role.SELLER:
            return stmt.where(CRMProspect.assigned_to == actor.id)
        return stmt.where(CRMProspect.branch == actor.branch.value)

    def _load(self, session: Session, prospect_id: uuid.UUID) -> CRMProspect:
        prospect = session.get(CRMProspect, prospect_id, populate_existing=True)
        if prospect is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="prospect not found")
        return prospect

    def _load_visible(self, session: Session, actor: Actor, prospect_id: uuid.UUID) -> CRMProspect:
        prospect = session.get(CRMProspect, prospect_id)
        if prospect is None or not can_view(actor, prospect, resource=PROSPECT):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="prospect not found")
        return prospect

    def _to_read(self, prospect: CRMProspect) -> ProspectRead:
        return ProspectRead.model_validate(prospect)


class MemberService:
    entity_type = MEMBER

    def list_members(
        self,
        session: Session,
        actor: Actor,
        filters: dict[str, Any],
        cursor: str | None = None,
        limit: int = 50,
    ) -> list[MemberRead]:
        stmt: Select[tuple[CRMMember]] = select(CRMMember)
        if actor.role == Role.SELLER:
            stmt = stmt.where(CRMMember.original_seller == actor.id)
        elif actor.role != Role.ADMIN:
            stmt = stmt.where(CRMMember.branch == actor.branch.value)
        if filters.get("plan"):
            stmt = stmt.where(CRMMember.plan == filters["plan"])
        if filters.get("branch"):
            stmt = stmt.where(CRMMember.branch == filters["branch"])
        if filters.get("q"):
            q = f"%{filters['q']}%"
            stmt = stmt.where(or_(CRMMember.name.ilike(q), CRMMember.phone.ilike(q)))

        rows = session.scalars(_page(stmt.order_by(CRMMember.start_date.desc()), cursor, limit)).all()
        return [MemberRead.model_validate(item) for item in visible(actor, rows, resource=MEMBER)]

    def get_member(self, session: Session, actor: Actor, member_id: uuid.UUID) -> MemberRead:
        return MemberRead.model_validate(self._load_visible(session, actor, member_id))

    def update_member(self, session: Session, actor: Actor, member_id: uuid.UUID, dto: MemberUpdate) -> MemberRead:
        member = self._load_visible(session, actor, member_id)
        with enforce():
            require_writer(actor, resource=MEMBER, action="update")

        payload = dto.model_dump(exclude_unset=True, exclude={"row_version"})
        for key in ("phone", "dni", "address", "notes"):
            if key in payload and payload[key] is None:
                payload[key] = ""
        for key in ("name", "plan", "fee"):
            if key in payload and payload[key] is None:
                payload.pop(key)
        if not payload:
            return MemberRead.model_validate(member)

        before = MemberRead.model_validate(member).model_dump(mode="json")
        now = utcnow()
        payload["updated_at"] = now
        payload["last_action_date"] = now
        payload["row_version"] = CRMMember.row_version + 1
        result = session.execute(
            update(CRMMember)
            .where(and_(CRMMember.id == member_id, CRMMember.row_version == dto.row_version))
            .values(**payload)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="row_version conflict")
        session.commit()

        updated = MemberRead.model_validate(session.get(CRMMember, member_id, populate_existing=True))
        audit.record(
            actor_user_id=actor.id,
            entity_type=self.entity_type,
            entity_id=str(member_id),
            action="update",
            before=_audit_view(before),
            after=_audit_view(updated.model_dump(mode="json")),
            correlation_id=actor.correlation_id,
        )
        _publish("crm.member.updated", actor, {"member_id": str(member_id)})
        return updated

    def _load_visible(self, session: Session, actor: Actor, member_id: uuid.UUID) -> CRMMember:
        member = session.get(CRMMember, member_id)
        if member is None or not can_view(actor, member, resource=MEMBER):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="member not found")
        return member


def load_related(session: Session, related_type: str, related_id: uuid.UUID) -> CRMProspect | CRMMember | None:
    if related_type == RelatedType.PROSPECT:
        return session.get(CRMProspect, related_id)
    if related_type == RelatedType.MEMBER:
        return session.get(CRMMember, related_id)
    return None


def load_visible_related(
    session: Session,
    actor: Actor,
    related_type: str,
    related_id: uuid.UUID,
) -> CRMProspect | CRMMember:
    related = load_related(session, related_type, related_id)
    resource = PROSPECT if related_type == RelatedType.PROSPECT else MEMBER
    if related is None or not can_view(actor, related, resource=resource):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{related_type} not found")
    return related


def related_branches(session: Session, records: list[Any]) -> dict[uuid.UUID, str]:
    """Branch of every prospect or member referenced by ``records``."""
    prospect_ids = {item.related_id for item in records if item.related_type == RelatedType.PROSPECT}
    member_ids = {item.related_id for item in records if item.related_type == RelatedType.MEMBER}
    branches: dict[uuid.UUID, str] = {}
    if prospect_ids:
        rows = session.execute(select(CRMProspect.id, CRMProspect.branch).where(CRMProspect.id.in_(prospect_ids)))
        branches.update({row.id: row.branch for row in rows})
    if member_ids:
        rows = session.execute(select(CRMMember.id, CRMMember.branch).where(CRMMember.id.in_(member_ids)))
        branches.update({row.id: row.branch for row in rows})
    return branches


def related_in_branch(model: Any, branch: str) -> Any:
    """SQL form of the related-record branch check, applied before paging."""
    return or_(
        and_(
            model.related_type == RelatedType.PROSPECT.value,
            model.related_id.in_(select(CRMProspect.id).where(CRMProspect.branch == branch)),
        ),
        and_(
            model.related_type == RelatedType.MEMBER.value,
            model.related_id.in_(select(CRMMember.id).where(CRMMember.branch == branch)),
        ),
    )


def touch_member(session: Session, related_type: str, related_id: uuid.UUID, when: datetime) -> None:
    if related_type != RelatedType.MEMBER:
        return
    session.execute(
        update(CRMMember)
        .where(CRMMember.id == related_id)
        .values(last_action_date=when)
        .execution_options(synchronize_session=False)
    )


class TaskService:
    entity_type = TASK

    def create_task(
        self,
        session: Session,
        actor: Actor,
        dto: TaskCreate,
        *,
        directory: DirectoryClient,
    ) -> TaskRead:
        with enforce():
            require_writer(actor, resource=TASK, action="create")
        assignee = resolve_assignee(directory, dto.assigned_to)
        with enforce():
            require_assignable(actor, assignee, resource=TASK, action="create")
        load_visible_related(session, actor, dto.related_type, dto.related_id)

        task = self._new_task(actor, assignee.id, dto.title, dto.task_type.value, dto.due_at, dto.related_type, dto.related_id)
        session.add(task)
        session.commit()
        created = TaskRead.model_validate(task)
        self._record_created(actor, created)
        return created

    def create_bulk_tasks(
        self,
        session: Session,
        actor: Actor,
        dto: TaskBulkCreate,
        *,
        directory: DirectoryClient,
    ) -> TaskBulkRead:
        with enforce():
            require_writer(actor, resource=TASK, action="create")
        assignee = resolve_assignee(directory, dto.assigned_to)
        with enforce():
            require_assignable(actor, assignee, resource=TASK, action="create")

        created: list[TaskRead] = []
        failed = 0
        for target in dto.targets:
            try:
                load_visible_related(session, actor, target.related_type, target.related_id)
                task = self._new_task(
                    actor,
                    assignee.id,
                    dto.title,
                    dto.task_type.value,
                    dto.due_at,
                    target.related_type,
                    target.related_id,
                )
                session.add(task)
                session.commit()
            except HTTPException:
                session.rollback()
                failed += 1
                continue
            except SQLAlchemyError as exc:
                session.rollback()
                failed += 1
                logger.error("task.bulk_create_failed", extra={"related_id": str(target.related_id), "error": str(exc)})
                continue
            read = TaskRead.model_validate(task)
            created.append(read)
            self._record_created(actor, read)

        logger.info(
            "task.bulk_created",
            extra={"actor_id": actor.id, "requested": len(dto.targets), "tasks_created": len(created), "failed": failed},
        )
        return TaskBulkRead(requested=len(dto.targets), created=len(created), failed=failed, tasks=created)

    def list_tasks(
        self,
        session: Session,
        actor: Actor,
        filters: dict[str, Any],
        cursor: str | None = None,
        limit: int = 100,
    ) -> list[TaskRead]:
        stmt: Select[tuple[CRMTask]] = select(CRMTask)
        if actor.role == Role.SELLER:
            stmt = stmt.where(CRMTask.assigned_to == actor.id)
        elif actor.role != Role.ADMIN:
            stmt = stmt.where(related_in_branch(CRMTask, actor.branch.value))
        if filters.get("status"):
            stmt = stmt.where(CRMTask.status == filters["status"])
        if filters.get("assigned_to"):
            stmt = stmt.where(CRMTask.assigned_to == filters["assigned_to"])
        if filters.get("related_type"):
            stmt = stmt.where(CRMTask.related_type == filters["related_type"])
        if filters.get("related_id"):
            stmt = stmt.where(CRMTask.related_id == filters["related_id"])
        if filters.get("due_before"):
            stmt = stmt.where(CRMTask.due_at <= filters["due_before"])

        rows = list(session.scalars(_page(stmt.order_by(CRMTask.due_at.asc()), cursor, limit)).all())
        branches = related_branches(session, rows)
        return [TaskRead.model_validate(item) for item in visible(actor, rows, resource=TASK, related_branches=branches)]

    def set_task_status(
        self,
        session: Session,
        actor: Actor,
        task_id: uuid.UUID,
        dto: TaskStatusUpdate,
    ) -> TaskRead:
        task = session.get(CRMTask, task_id)
        if task is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="task not found")
        branches = related_branches(session, [task])
        if not can_view(actor, task, resource=TASK, related_branch=branches.get(task.related_id)):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="task not found")
        with enforce():
            require_writer(actor, resource=TASK, action="update_status")

        before_status = task.status
        now = utcnow()
        if dto.status == TaskStatus.DONE:
            task.status = TaskStatus.DONE.value
            task.result = (dto.result or "").strip() or TASK_DONE_PLACEHOLDER
            task.completed_at = now
            touch_member(session, task.related_type, task.related_id, now)
        else:
            task.status = TaskStatus.PENDING.value
            task.completed_at = None
            if dto.result is not None:
                task.result = dto.result
        task.updated_at = now
        session.commit()

        updated = TaskRead.model_validate(task)
        observe_task_transition(updated.status)
        audit.record(
            actor_user_id=actor.id,
            entity_type=self.entity_type,
            entity_id=str(task_id),
            action="status",
            before={"status": before_status},
            after={"status": updated.status, "result": updated.result},
            correlation_id=actor.correlation_id,
        )
        event_type = "crm.task.completed" if updated.status == TaskStatus.DONE else "crm.task.reopened"
        _publish(
            event_type,
            actor,
            {"task_id": str(task_id), "related_type": updated.related_type, "related_id": str(updated.related_id)},
        )
        return updated

    def _new_task(
        self,
        actor: Actor,
        assigned_to: str,
        title: str,
        task_type: str,
        due_at: datetime,
        related_type: str,
        related_id: uuid.UUID,
    ) -> CRMTask:
        return CRMTask(
            title=title.strip(),
            task_type=task_type,
            due_at=due_at,
            status=TaskStatus.PENDING.value,
            related_type=str(related_type),
            related_id=related_id,
            assigned_to=assigned_to,
            created_by=actor.id,
        )

    def _record_created(self, actor: Actor, task: TaskRead) -> None:
        audit.record(
            actor_user_id=actor.id,
            entity_type=self.entity_type,
            entity_id=str(task.id),
            action="create",
            before=None,
            after=task.model_dump(mode="json"),
            correlation_id=actor.correlation_id,
        )
        _publish(
            "crm.task.created",
            actor,
            {"task_id": str(task.id), "related_type": task.related_type, "related_id": str(task.related_id)},
        )


class InteractionService:
    entity_type = INTERACTION

    def log_interaction(self, session: Session, actor: Actor, dto: InteractionCreate) -> InteractionLogged:
        """Record a contact: a done task and an interaction entry, committed together."""
        with enforce():
            require_writer(actor, resource=INTERACTION, action="create")
        load_visible_related(session, actor, dto.related_type, dto.related_id)

        now = utcnow()
        task = CRMTask(
            title=dto.summary.strip(),
            task_type=dto.interaction_type.value,
            due_at=now,
            status=TaskStatus.DONE.value,
            related_type=dto.related_type.value,
            related_id=dto.related_id,
            assigned_to=actor.id,
            result=INTERACTION_TASK_RESULT,
            created_by=actor.id,
            completed_at=now,
        )
        interaction = CRMInteraction(
            occurred_at=now,
            interaction_type=dto.interaction_type.value,
            summary=dto.summary.strip(),
            result=dto.result.strip(),
            done_by=actor.id,
            related_type=dto.related_type.value,
            related_id=dto.related_id,
        )
        session.add_all([task, interaction])
        touch_member(session, dto.related_type, dto.related_id, now)
        session.commit()

        logged = InteractionLogged(
            interaction=InteractionRead.model_validate(interaction),
            task=TaskRead.model_validate(task),
        )
        audit.record(
            actor_user_id=actor.id,
            entity_type=self.entity_type,
            entity_id=str(interaction.id),
            action="create",
            before=None,
            after=logged.interaction.model_dump(mode="json"),
            correlation_id=actor.correlation_id,
        )
        _publish(
            "crm.interaction.logged",
            actor,
            {
                "interaction_id": str(interaction.id),
                "task_id": str(task.id),
                "related_type": dto.related_type.value,
                "related_id": str(dto.related_id),
            },
        )
        return logged

    def list_interactions(
        self,
        session: Session,
        actor: Actor,
        related_type: RelatedType,
        related_id: uuid.UUID,
    ) -> list[InteractionRead]:
        load_visible_related(session, actor, related_type, related_id)
        rows = list(
            session.scalars(
                select(CRMInteraction)
                .where(and_(CRMInteraction.related_type == related_type.value, CRMInteraction.related_id == related_id))
                .order_by(CRMInteraction.occurred_at.desc())
            ).all()
        )
        branches = related_branches(session, rows)
        return [
            InteractionRead.model_validate(item)
            for item in visible(actor, rows, resource=INTERACTION, related_branches=branches)
        ]

    def activity_history(
        self,
        session: Session,
        actor: Actor,
        related_type: RelatedType,
        related_id: uuid.UUID,
    ) -> list[ActivityItem]:
        """Completed tasks and interactions for one record, newest first.

        Display-only merge; the two stores stay independent.
        """
        interactions = self.list_interactions(session, actor, related_type, related_id)
        tasks = list(
            session.scalars(
                select(CRMTask).where(
                    and_(
                        CRMTask.related_type == related_type.value,
                        CRMTask.related_id == related_id,
                        CRMTask.status == TaskStatus.DONE.value,
                    )
                )
            ).all()
        )
        branches = related_branches(session, tasks)
        items = [
            ActivityItem(
                kind="task",
                id=task.id,
                occurred_at=task.completed_at or task.due_at,
                activity_type=task.task_type,
                summary=task.title,
                result=task.result,
                actor_id=task.assigned_to,
            )
            for task in visible(actor, tasks, resource=TASK, related_branches=branches)
        ]
        items.extend(
            ActivityItem(
                kind="interaction",
                id=item.id,
                occurred_at=item.occurred_at,
                activity_type=item.interaction_type,
                summary=item.summary,
                result=item.result,
                actor_id=item.done_by,
            )
            for item in interactions
        )
        return sorted(items, key=lambda item: item.occurred_at, reverse=True)


class ActorService:
    entity_type = ACTOR

    def list_actors(self, actor: Actor, *, directory: DirectoryClient) -> list[ActorRead]:
        users = self._users(directory)
        if actor.role != Role.ADMIN:
            users = [user for user in users if user.branch == actor.branch]
        return [ActorRead.model_validate(user) for user in sorted(users, key=lambda user: user.name.lower())]

    def update_actor(
        self,
        actor: Actor,
        user_id: str,
        dto: ActorUpdate,
        *,
        directory: DirectoryClient,
    ) -> ActorRead:
        with enforce():
            require_manager(actor, resource=ACTOR, action="update")
        target = next((user for user in self._users(directory) if user.id == user_id), None)
        if target is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="user not found")
        with enforce():
            require_branch(actor, target.branch, resource=ACTOR, action="update")
            if dto.branch is not None:
                require_branch(actor, dto.branch, resource=ACTOR, action="update")
            if dto.role == Role.ADMIN or target.role == Role.ADMIN:
                require_admin(actor, resource=ACTOR, action="grant_admin")

        updated = Actor(
            id=target.id,
            name=dto.name.strip() if dto.name else target.name,
            email=target.email,
            role=dto.role or target.role,
            branch=dto.branch or target.branch,
        )
        try:
            saved = directory.update_user(updated)
        except DirectoryError as exc:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="directory unavailable") from exc

        audit.record(
            actor_user_id=actor.id,
            entity_type=self.entity_type,
            entity_id=target.id,
            action="update",
            before={"name": target.name, "role": target.role.value, "branch": target.branch.value},
            after={"name": saved.name, "role": saved.role.value, "branch": saved.branch.value},
            correlation_id=actor.correlation_id,
        )
        return ActorRead.model_validate(saved)

    def _users(self, directory: DirectoryClient) -> list[Actor]:
        try:
            return directory.get_users()
        except DirectoryError as exc:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="directory unavailable") from exc
