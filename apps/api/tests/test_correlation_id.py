from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from clubcrm import audit, events
from clubcrm.core.config import get_settings
from clubcrm.core.database import Base, get_db
from clubcrm.crm.api import get_current_user as crm_get_current_user
from clubcrm.crm.constants import Branch, Role
from clubcrm.crm.directory import InMemoryDirectoryClient, get_directory_client
from clubcrm.main import app
from clubcrm.middleware.correlation_id import resolve_correlation_id
from clubcrm.platform.security.context import Actor


ADMIN = Actor(id="admin-1", name="Ada Admin", email="admin@club.test", role=Role.ADMIN, branch=Branch.GENERAL)
SELLER = Actor(id="seller-1", name="Sol Seller", email="sol@club.test", role=Role.SELLER, branch=Branch.PARAGUAY)


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    directory = InMemoryDirectoryClient([ADMIN, SELLER])

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> Actor:
        return ADMIN.with_correlation_id(getattr(request.state, "correlation_id", None))

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    app.dependency_overrides[get_directory_client] = lambda: directory
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_prospect(client: TestClient, correlation_id: str) -> dict:
    response = client.post(
        "/api/crm/prospects",
        json={"name": "Corr Prospect", "phone": "1100000000", "assigned_to": "seller-1"},
        headers={"X-Correlation-Id": correlation_id},
    )
    assert response.status_code == 201
    return response.json()


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/api/crm/prospects/{uuid.uuid4()}")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(f"/api/crm/prospects/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_malformed_correlation_id_is_replaced() -> None:
    assert resolve_correlation_id("ok-id_1:2") == "ok-id_1:2"
    replaced = resolve_correlation_id("bad id with spaces")
    assert replaced != "bad id with spaces"
    assert uuid.UUID(replaced)


def test_audit_uses_request_correlation_id(client: TestClient) -> None:
    _create_prospect(client, "corr-audit-1")

    prospect_audits = [entry for entry in audit.audit_entries if entry.get("entity_type") == "crm.prospect"]
    assert prospect_audits
    assert prospect_audits[-1]["correlation_id"] == "corr-audit-1"


def test_event_envelope_includes_correlation_id(client: TestClient) -> None:
    prospect = _create_prospect(client, "corr-event-1")
    converted = client.post(
        f"/api/crm/prospects/{prospect['id']}/convert",
        headers={"X-Correlation-Id": "corr-event-2"},
    )
    assert converted.status_code == 200

    created_events = [item for item in events.published_events if item.get("event_type") == "crm.prospect.created"]
    assert created_events[-1].get("correlation_id") == "corr-event-1"
    converted_events = [item for item in events.published_events if item.get("event_type") == "crm.prospect.converted"]
    assert converted_events[-1].get("correlation_id") == "corr-event-2"
    assert converted_events[-1]["version"] == 1
    assert converted_events[-1]["actor_user_id"] == "admin-1"
