"""Role and branch scoping for CRM records.

Reads go through :func:`visible` / :func:`can_view`, which never raise.
Mutations go through the ``require_*`` checks, which raise
:class:`AuthorizationError` and leave a metric and an audit entry behind.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable, Mapping
from typing import Any, TypeVar

from clubcrm import audit
from clubcrm.crm.constants import Role
from clubcrm.metrics import observe_visibility_denied
from clubcrm.platform.security.context import Actor
from clubcrm.platform.security.errors import AuthorizationError


PROSPECT = "crm.prospect"
MEMBER = "crm.member"
TASK = "crm.task"
INTERACTION = "crm.interaction"
ACTOR = "crm.actor"
GOAL = "crm.goal"
IMPORT = "crm.import"

_OWNER_FIELDS = {
    PROSPECT: "assigned_to",
    MEMBER: "original_seller",
    TASK: "assigned_to",
    INTERACTION: "done_by",
}
_RELATED_RESOURCES = frozenset({TASK, INTERACTION})

RecordT = TypeVar("RecordT")


def _owner_of(record: Any, resource: str) -> str | None:
    field_name = _OWNER_FIELDS.get(resource)
    if field_name is None:
        return None
    return getattr(record, field_name, None)


def can_view(actor: Actor, record: Any, *, resource: str, related_branch: str | None = None) -> bool:
    """Single-record form of :func:`visible`.

    For tasks and interactions ``related_branch`` is the branch of the prospect
    or member the record points at; ``None`` means it could not be resolved.
    """
    if actor.role == Role.ADMIN:
        return True

    owner = _owner_of(record, resource)
    if actor.role == Role.SELLER:
        return owner is not None and owner == actor.id

    if actor.role in {Role.MANAGER, Role.VIEWER}:
        if resource in _RELATED_RESOURCES:
            return related_branch is not None and related_branch == actor.branch
        return getattr(record, "branch", None) == actor.branch

    return False


def visible(
    actor: Actor,
    records: Iterable[RecordT],
    *,
    resource: str,
    related_branches: Mapping[uuid.UUID, str] | None = None,
) -> list[RecordT]:
    """Return the subset of ``records`` the actor may see, in input order."""
    branches = related_branches or {}
    output: list[RecordT] = []
    for record in records:
        related_branch = None
        if resource in _RELATED_RESOURCES:
            related_branch = branches.get(getattr(record, "related_id", None))
        if can_view(actor, record, resource=resource, related_branch=related_branch):
            output.append(record)
    return output


def require_writer(actor: Actor, *, resource: str, action: str) -> None:
    if actor.role == Role.VIEWER:
        _deny(actor, resource=resource, action=action, reason="viewers are read-only")


def require_manager(actor: Actor, *, resource: str, action: str) -> None:
    if not actor.is_manager:
        _deny(actor, resource=resource, action=action, reason="admin or manager role required")


def require_admin(actor: Actor, *, resource: str, action: str) -> None:
    if not actor.is_admin:
        _deny(actor, resource=resource, action=action, reason="admin role required")


def require_assignable(actor: Actor, assignee: Actor, *, resource: str, action: str) -> None:
    """Check that ``actor`` may hand a record to ``assignee``."""
    require_writer(actor, resource=resource, action=action)
    if actor.role == Role.ADMIN:
        return
    if actor.role == Role.SELLER and assignee.id != actor.id:
        _deny(actor, resource=resource, action=action, reason="sellers may only assign to themselves")
    if actor.role == Role.MANAGER and assignee.branch != actor.branch:
        _deny(actor, resource=resource, action=action, reason="assignee outside manager branch")


def require_branch(actor: Actor, branch: str, *, resource: str, action: str) -> None:
    if actor.role != Role.ADMIN and branch != actor.branch:
        _deny(actor, resource=resource, action=action, reason="branch outside actor scope")


def _deny(actor: Actor, *, resource: str, action: str, reason: str) -> None:
    observe_visibility_denied(resource=resource, action=action)
    audit.record(
        actor_user_id=actor.id,
        entity_type="security.visibility",
        entity_id=resource,
        action="visibility.denied",
        before=None,
        after={
            "resource": resource,
            "action": action,
            "reason": reason,
            "role": actor.role.value,
            "branch": actor.branch.value,
        },
        correlation_id=actor.correlation_id,
    )
    raise AuthorizationError(resource=resource, action=action, reason=reason)
