from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone

from fastapi import HTTPException, status
from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from clubcrm import audit
from clubcrm.crm.constants import GoalPeriod, GoalScope, ProspectStage, Role
from clubcrm.crm.directory import DirectoryClient, DirectoryError
from clubcrm.crm.models import CRMGoal, CRMProspect, utcnow
from clubcrm.crm.schemas import GoalProgressRead, GoalRead, GoalWrite
from clubcrm.crm.service import enforce
from clubcrm.platform.security.context import Actor
from clubcrm.platform.security.visibility import GOAL, PROSPECT, require_admin, require_branch, require_manager, visible


logger = logging.getLogger("clubcrm.crm.quota")

COMPANY_SCOPE_ID = "company"


@dataclass(frozen=True, slots=True)
class GoalKey:
    scope_type: GoalScope
    scope_id: str
    period: GoalPeriod


@dataclass(slots=True)
class GoalProgress:
    key: GoalKey
    actual: float
    goal: int

    @property
    def met(self) -> bool:
        return self.actual >= self.goal


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def window_start(period: GoalPeriod, now: datetime) -> datetime:
    now = _as_utc(now)
    start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == GoalPeriod.MONTHLY:
        start = start.replace(day=1)
    return start


def compute_progress(goals: dict[GoalKey, int], prospects: Iterable[CRMProspect], now: datetime) -> list[GoalProgress]:
    """Measure each goal against the prospects in its current day or month.

    Seller and branch goals count prospects closed as Won in the window.
    The company goal is a conversion percentage: Won over created in the window.
    """
    rows = list(prospects)
    output: list[GoalProgress] = []
    for key, target in goals.items():
        start = window_start(key.period, now)
        won = [
            item
            for item in rows
            if item.stage == ProspectStage.WON and start <= _as_utc(item.updated_at) <= _as_utc(now)
        ]
        if key.scope_type == GoalScope.SELLER:
            actual = float(sum(1 for item in won if item.assigned_to == key.scope_id))
        elif key.scope_type == GoalScope.BRANCH:
            actual = float(sum(1 for item in won if item.branch == key.scope_id))
        else:
            created = sum(1 for item in rows if start <= _as_utc(item.created_at) <= _as_utc(now))
            actual = round(len(won) * 100 / created, 1) if created else 0.0
        output.append(GoalProgress(key=key, actual=actual, goal=target))
    return output


class GoalService:
    entity_type = GOAL

    def set_goal(self, session: Session, actor: Actor, dto: GoalWrite, *, directory: DirectoryClient) -> GoalRead:
        scope_id = COMPANY_SCOPE_ID if dto.scope_type == GoalScope.COMPANY else dto.scope_id
        with enforce():
            require_manager(actor, resource=GOAL, action="set")
            if dto.scope_type == GoalScope.COMPANY:
                require_admin(actor, resource=GOAL, action="set_company")
            elif dto.scope_type == GoalScope.BRANCH:
                require_branch(actor, scope_id, resource=GOAL, action="set")
            else:
                seller = self._seller(directory, scope_id)
                require_branch(actor, seller.branch, resource=GOAL, action="set")

        goal = session.scalar(
            select(CRMGoal).where(
                and_(
                    CRMGoal.scope_type == dto.scope_type.value,
                    CRMGoal.scope_id == scope_id,
                    CRMGoal.period == dto.period.value,
                )
            )
        )
        before = None if goal is None else {"target": goal.target}
        if goal is None:
            goal = CRMGoal(scope_type=dto.scope_type.value, scope_id=scope_id, period=dto.period.value, target=dto.target)
            session.add(goal)
        goal.target = dto.target
        goal.updated_by = actor.id
        goal.updated_at = utcnow()
        session.commit()

        audit.record(
            actor_user_id=actor.id,
            entity_type=self.entity_type,
            entity_id=f"{goal.scope_type}:{goal.scope_id}:{goal.period}",
            action="set",
            before=before,
            after={"target": goal.target},
            correlation_id=actor.correlation_id,
        )
        logger.info("goal.set", extra={"actor_id": actor.id, "related_id": f"{goal.scope_type}:{goal.scope_id}"})
        return GoalRead.model_validate(goal)

    def get_goals(self, session: Session, actor: Actor, *, directory: DirectoryClient) -> list[GoalRead]:
        goals = session.scalars(select(CRMGoal).order_by(CRMGoal.scope_type, CRMGoal.scope_id, CRMGoal.period)).all()
        if actor.role == Role.ADMIN:
            return [GoalRead.model_validate(goal) for goal in goals]

        if actor.role == Role.SELLER:
            sellers = {actor.id}
        else:
            sellers = {user.id for user in self._users(directory) if user.branch == actor.branch}
        allowed = [
            goal
            for goal in goals
            if goal.scope_type == GoalScope.COMPANY
            or (goal.scope_type == GoalScope.BRANCH and goal.scope_id == actor.branch)
            or (goal.scope_type == GoalScope.SELLER and goal.scope_id in sellers)
        ]
        return [GoalRead.model_validate(goal) for goal in allowed]

    def progress(
        self,
        session: Session,
        actor: Actor,
        *,
        directory: DirectoryClient,
        now: datetime | None = None,
    ) -> list[GoalProgressRead]:
        goals = {
            GoalKey(GoalScope(goal.scope_type), goal.scope_id, GoalPeriod(goal.period)): goal.target
            for goal in self.get_goals(session, actor, directory=directory)
        }
        prospects = visible(actor, session.scalars(select(CRMProspect)).all(), resource=PROSPECT)
        return [
            GoalProgressRead(
                scope_type=item.key.scope_type.value,
                scope_id=item.key.scope_id,
                period=item.key.period.value,
                actual=item.actual,
                goal=item.goal,
                met=item.met,
            )
            for item in compute_progress(goals, prospects, now or utcnow())
        ]

    def _users(self, directory: DirectoryClient) -> list[Actor]:
        try:
            return directory.get_users()
        except DirectoryError as exc:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="directory unavailable") from exc

    def _seller(self, directory: DirectoryClient, seller_id: str) -> Actor:
        for user in self._users(directory):
            if user.id == seller_id:
                return user
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"unknown seller '{seller_id}'")
