from __future__ import annotations

from collections.abc import Generator
from typing import Any

import pytest
import requests
from fastapi.testclient import TestClient

from clubcrm.core.auth import issue_token
from clubcrm.core.config import get_settings
from clubcrm.crm.constants import Branch, Role
from clubcrm.crm.directory import (
    UNNAMED_ACTOR,
    DirectoryError,
    HttpDirectoryClient,
    InMemoryDirectoryClient,
    get_directory_client,
    sanitize_user,
)
from clubcrm.main import app
from clubcrm.platform.security.context import Actor


class _FakeResponse:
    def __init__(self, payload: Any, status_code: int = 200) -> None:
        self.payload = payload
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self) -> Any:
        return self.payload


class _FakeSession:
    def __init__(self, response: _FakeResponse | Exception) -> None:
        self.response = response
        self.calls: list[tuple[str, str, dict[str, Any]]] = []

    def request(self, method: str, url: str, **kwargs: Any) -> _FakeResponse:
        self.calls.append((method, url, kwargs))
        if isinstance(self.response, Exception):
            raise self.response
        return self.response


def test_sanitize_user_defaults() -> None:
    user = sanitize_user({"email": "nuevo@club.test", "role": "Gerente", "branch": "Narnia"})
    assert user is not None
    assert user.id == "nuevo@club.test"
    assert user.name == UNNAMED_ACTOR
    assert user.role == Role.MANAGER
    assert user.branch == Branch.GENERAL

    assert sanitize_user({"id": "u-1", "role": "superuser", "branch": "Tribunales"}).role == Role.VIEWER
    assert sanitize_user({"name": "Nobody"}) is None


def test_http_directory_lists_and_sanitizes_users() -> None:
    session = _FakeSession(
        _FakeResponse(
            {
                "users": [
                    {"id": "seller-1", "name": "Sol", "email": "sol@club.test", "role": "seller", "branch": "Paraguay"},
                    {"name": "no id"},
                    "garbage",
                ]
            }
        )
    )
    client = HttpDirectoryClient("https://directory.test/api/", session=session)  # type: ignore[arg-type]
    users = client.get_users()
    assert [(user.id, user.role, user.branch) for user in users] == [("seller-1", Role.SELLER, Branch.PARAGUAY)]
    method, url, kwargs = session.calls[0]
    assert (method, url) == ("GET", "https://directory.test/api/users")
    assert "x-correlation-id" in kwargs["headers"]


def test_http_directory_update_sends_payload() -> None:
    session = _FakeSession(
        _FakeResponse({"id": "seller-1", "name": "Sol R.", "email": "sol@club.test", "role": "manager", "branch": "Diagonal"})
    )
    client = HttpDirectoryClient("https://directory.test", session=session)  # type: ignore[arg-type]
    saved = client.update_user(
        Actor(id="seller-1", name="Sol R.", email="sol@club.test", role=Role.MANAGER, branch=Branch.DIAGONAL)
    )
    assert saved.branch == Branch.DIAGONAL
    method, url, kwargs = session.calls[0]
    assert (method, url) == ("PUT", "https://directory.test/users/seller-1")
    assert kwargs["json"]["role"] == "manager"


@pytest.mark.parametrize("failure", [requests.ConnectionError("refused"), _FakeResponse({}, status_code=503)])
def test_http_directory_failures_raise_directory_error(failure: Any) -> None:
    session = _FakeSession(failure)
    client = HttpDirectoryClient("https://directory.test", session=session)  # type: ignore[arg-type]
    with pytest.raises(DirectoryError):
        client.get_users()


def test_http_directory_accepts_bare_list_payload() -> None:
    session = _FakeSession(_FakeResponse([{"id": "viewer-1", "role": "visor"}, "garbage"]))
    client = HttpDirectoryClient("https://directory.test", session=session)  # type: ignore[arg-type]
    [user] = client.get_users()
    assert (user.id, user.role) == ("viewer-1", Role.VIEWER)


@pytest.fixture()
def client() -> Generator[TestClient, None, None]:
    get_settings.cache_clear()
    directory = InMemoryDirectoryClient(
        [Actor(id="seller-1", name="Sol", email="sol@club.test", role=Role.SELLER, branch=Branch.PARAGUAY)]
    )
    app.dependency_overrides[get_directory_client] = lambda: directory
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    get_settings.cache_clear()


def test_me_resolves_role_and_branch_from_directory(client: TestClient) -> None:
    token = issue_token("seller-1", email="sol@club.test")
    response = client.get("/me", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 200
    assert response.json() == {
        "id": "seller-1",
        "name": "Sol",
        "email": "sol@club.test",
        "role": "seller",
        "branch": "Paraguay",
    }


def test_missing_or_unknown_identity_is_unauthorized(client: TestClient) -> None:
    assert client.get("/me").status_code == 401
    assert client.get("/me", headers={"Authorization": "Bearer not-a-jwt"}).status_code == 401
    stranger = issue_token("someone-else")
    assert client.get("/api/crm/prospects", headers={"Authorization": f"Bearer {stranger}"}).status_code == 401


def test_health_is_public(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
