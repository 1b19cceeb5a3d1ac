from __future__ import annotations

import logging
from threading import Lock
from typing import Any, Protocol

import requests
from fastapi import HTTPException, status
from opentelemetry import trace

from clubcrm.context import get_correlation_id
from clubcrm.crm.constants import Branch, Role
from clubcrm.platform.security.context import Actor


logger = logging.getLogger("clubcrm.crm.directory")
tracer = trace.get_tracer("clubcrm.crm.directory")

UNNAMED_ACTOR = "Unnamed"

# Role labels still emitted by older directory records.
_LEGACY_ROLE_ALIASES = {
    "gerente": Role.MANAGER,
    "vendedor": Role.SELLER,
    "visor": Role.VIEWER,
}


class DirectoryError(Exception):
    """The directory service could not be reached or answered with an error."""


class DirectoryClient(Protocol):
    def get_users(self) -> list[Actor]: ...

    def update_user(self, user: Actor) -> Actor: ...


def sanitize_user(raw: dict[str, Any]) -> Actor | None:
    """Coerce a directory record into an :class:`Actor`.

    Unknown roles degrade to viewer and unknown branches to General. The id
    falls back to the email. Records with neither are dropped.
    """
    email = str(raw.get("email") or "").strip()
    user_id = str(raw.get("id") or email).strip()
    if not user_id:
        return None

    raw_role = str(raw.get("role") or "").strip().lower()
    try:
        role = Role(raw_role)
    except ValueError:
        role = _LEGACY_ROLE_ALIASES.get(raw_role, Role.VIEWER)

    try:
        branch = Branch(str(raw.get("branch") or "").strip())
    except ValueError:
        branch = Branch.GENERAL

    return Actor(
        id=user_id,
        name=str(raw.get("name") or "").strip() or UNNAMED_ACTOR,
        email=email,
        role=role,
        branch=branch,
    )


def _to_payload(user: Actor) -> dict[str, str]:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "role": user.role.value,
        "branch": user.branch.value,
    }


class HttpDirectoryClient:
    """Directory backed by the remote user service's JSON API."""

    def __init__(self, base_url: str, *, timeout: float = 10.0, session: requests.Session | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.http = session or requests.Session()

    def get_users(self) -> list[Actor]:
        with tracer.start_as_current_span("directory.get_users") as span:
            span.set_attribute("correlation_id", get_correlation_id() or "")
            body = self._request("GET", "/users")
            rows = body.get("users", body) if isinstance(body, dict) else body
            if not isinstance(rows, list):
                raise DirectoryError("unexpected directory payload")
            users = [user for user in (sanitize_user(row) for row in rows if isinstance(row, dict)) if user]
            span.set_attribute("user_count", len(users))
            return users

    def update_user(self, user: Actor) -> Actor:
        with tracer.start_as_current_span("directory.update_user") as span:
            span.set_attribute("actor_id", user.id)
            body = self._request("PUT", f"/users/{user.id}", json=_to_payload(user))
            updated = sanitize_user(body) if isinstance(body, dict) else None
            return updated or user

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        headers = {"x-correlation-id": get_correlation_id() or ""}
        try:
            response = self.http.request(method, f"{self.base_url}{path}", timeout=self.timeout, headers=headers, **kwargs)
            response.raise_for_status()
            return response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.error("directory.request_failed", extra={"path": path, "error": str(exc)})
            raise DirectoryError(str(exc)) from exc


class InMemoryDirectoryClient:
    """Directory kept in process memory; used locally and in tests."""

    def __init__(self, users: list[Actor] | None = None) -> None:
        self._users: dict[str, Actor] = {user.id: user for user in users or []}
        self._lock = Lock()

    def get_users(self) -> list[Actor]:
        with self._lock:
            return list(self._users.values())

    def update_user(self, user: Actor) -> Actor:
        with self._lock:
            self._users[user.id] = user
        return user


def find_user(directory: DirectoryClient, user_id: str) -> Actor | None:
    for user in directory.get_users():
        if user.id == user_id:
            return user
    return None


def resolve_assignee(directory: DirectoryClient, user_id: str) -> Actor:
    try:
        user = find_user(directory, user_id)
    except DirectoryError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="directory unavailable") from exc
    if user is None:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"unknown assignee '{user_id}'")
    return user


_DIRECTORY: DirectoryClient = InMemoryDirectoryClient()
_DIRECTORY_LOCK = Lock()


def get_directory_client() -> DirectoryClient:
    """Get the active directory client (also used as a FastAPI dependency)."""

    return _DIRECTORY


def set_directory_client(client: DirectoryClient) -> None:
    global _DIRECTORY
    with _DIRECTORY_LOCK:
        _DIRECTORY = client


def directory_from_settings(settings: Any) -> DirectoryClient:
    if settings.directory_url:
        return HttpDirectoryClient(settings.directory_url, timeout=settings.directory_timeout_seconds)
    return get_directory_client()
