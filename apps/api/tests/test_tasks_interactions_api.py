from __future__ import annotations

import uuid
from collections.abc import Callable, Generator
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, update
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from clubcrm import audit, events
from clubcrm.core.config import get_settings
from clubcrm.core.database import Base, get_db
from clubcrm.crm.api import get_current_user
from clubcrm.crm.constants import INTERACTION_TASK_RESULT, TASK_DONE_PLACEHOLDER, Branch, Role
from clubcrm.crm.directory import InMemoryDirectoryClient, get_directory_client
from clubcrm.crm.models import CRMMember
from clubcrm.main import app
from clubcrm.platform.security.context import Actor


USERS = {
    "admin": Actor(id="admin-1", name="Ada Admin", email="admin@club.test", role=Role.ADMIN, branch=Branch.GENERAL),
    "manager": Actor(id="manager-1", name="Mara Manager", email="mara@club.test", role=Role.MANAGER, branch=Branch.PARAGUAY),
    "seller1": Actor(id="seller-1", name="Sol Seller", email="sol@club.test", role=Role.SELLER, branch=Branch.PARAGUAY),
    "seller2": Actor(id="seller-2", name="Santi Seller", email="santi@club.test", role=Role.SELLER, branch=Branch.PARAGUAY),
    "seller3": Actor(id="seller-3", name="Bruno Seller", email="bruno@club.test", role=Role.SELLER, branch=Branch.BARRACAS),
    "viewer": Actor(id="viewer-1", name="Vera Viewer", email="vera@club.test", role=Role.VIEWER, branch=Branch.PARAGUAY),
}


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
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    directory = InMemoryDirectoryClient(list(USERS.values()))

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    state = {"current": "admin"}

    def override_get_current_user(request: Request) -> Actor:
        return USERS[state["current"]].with_correlation_id(getattr(request.state, "correlation_id", None))

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[get_directory_client] = lambda: directory
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def _create_prospect(test_client: TestClient, assigned_to: str = "seller-1", phone: str = "1122334455") -> dict:
    response = test_client.post(
        "/api/crm/prospects",
        json={"name": "Tomas Ruiz", "phone": phone, "assigned_to": assigned_to, "interest": "Plus"},
    )
    assert response.status_code == 201, response.text
    return response.json()


def _create_member(test_client: TestClient, assigned_to: str = "seller-1") -> dict:
    prospect = _create_prospect(test_client, assigned_to=assigned_to, phone="1199887766")
    response = test_client.post(f"/api/crm/prospects/{prospect['id']}/convert")
    assert response.status_code == 200, response.text
    return response.json()["member"]


def _task_payload(related_type: str, related_id: str, assigned_to: str = "seller-1") -> dict[str, str]:
    return {
        "title": "Follow-up call",
        "task_type": "call",
        "due_at": (datetime.now(timezone.utc) + timedelta(days=1)).isoformat(),
        "related_type": related_type,
        "related_id": related_id,
        "assigned_to": assigned_to,
    }


def test_create_task_for_prospect(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    prospect = _create_prospect(test_client)

    set_actor("seller1")
    response = test_client.post("/api/crm/tasks", json=_task_payload("prospect", prospect["id"]))
    assert response.status_code == 201, response.text
    task = response.json()
    assert task["status"] == "pending"
    assert task["result"] is None
    assert task["created_by"] == "seller-1"
    assert any(event["event_type"] == "crm.task.created" for event in events.published_events)


def test_create_task_for_missing_record_is_not_found(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    response = test_client.post("/api/crm/tasks", json=_task_payload("member", str(uuid.uuid4())))
    assert response.status_code == 404
    assert response.json()["code"] == "crm_task_create_failed"


def test_completing_member_task_touches_last_action_only(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    member = _create_member(test_client)
    member_id = uuid.UUID(member["id"])
    db_session.execute(
        update(CRMMember)
        .where(CRMMember.id == member_id)
        .values(last_action_date=datetime(2020, 1, 1, tzinfo=timezone.utc))
    )
    db_session.commit()
    updated_before = db_session.get(CRMMember, member_id).updated_at

    task = test_client.post("/api/crm/tasks", json=_task_payload("member", member["id"])).json()
    done = test_client.post(f"/api/crm/tasks/{task['id']}/status", json={"status": "done"})
    assert done.status_code == 200, done.text
    assert done.json()["status"] == "done"
    assert done.json()["result"] == TASK_DONE_PLACEHOLDER
    assert done.json()["completed_at"] is not None

    db_session.expire_all()
    refreshed = db_session.get(CRMMember, member_id)
    assert refreshed.last_action_date.year > 2020
    assert refreshed.updated_at == updated_before


def test_reopen_clears_completion(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    prospect = _create_prospect(test_client)
    task = test_client.post("/api/crm/tasks", json=_task_payload("prospect", prospect["id"])).json()

    done = test_client.post(
        f"/api/crm/tasks/{task['id']}/status",
        json={"status": "done", "result": "Booked a trial class"},
    )
    assert done.json()["result"] == "Booked a trial class"

    reopened = test_client.post(f"/api/crm/tasks/{task['id']}/status", json={"status": "pending"})
    assert reopened.status_code == 200
    assert reopened.json()["status"] == "pending"
    assert reopened.json()["completed_at"] is None
    assert [event["event_type"] for event in events.published_events][-2:] == ["crm.task.completed", "crm.task.reopened"]


def test_bulk_tasks_count_invalid_targets(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    first = _create_prospect(test_client, phone="1")
    second = _create_prospect(test_client, phone="2")
    response = test_client.post(
        "/api/crm/tasks/bulk",
        json={
            "title": "Welcome call",
            "task_type": "whatsapp",
            "due_at": datetime.now(timezone.utc).isoformat(),
            "assigned_to": "seller-1",
            "targets": [
                {"related_type": "prospect", "related_id": first["id"]},
                {"related_type": "prospect", "related_id": str(uuid.uuid4())},
                {"related_type": "prospect", "related_id": second["id"]},
            ],
        },
    )
    assert response.status_code == 200, response.text
    body = response.json()
    assert (body["requested"], body["created"], body["failed"]) == (3, 2, 1)
    assert {task["related_id"] for task in body["tasks"]} == {first["id"], second["id"]}


def test_seller_sees_only_assigned_tasks(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    prospect = _create_prospect(test_client)
    test_client.post("/api/crm/tasks", json=_task_payload("prospect", prospect["id"], assigned_to="seller-1"))
    test_client.post("/api/crm/tasks", json=_task_payload("prospect", prospect["id"], assigned_to="seller-2"))

    set_actor("seller1")
    own = test_client.get("/api/crm/tasks").json()
    assert [task["assigned_to"] for task in own] == ["seller-1"]

    set_actor("manager")
    assert len(test_client.get("/api/crm/tasks").json()) == 2

    set_actor("seller3")
    assert test_client.get("/api/crm/tasks").json() == []


def test_branch_task_page_skips_other_branches(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    barracas = _create_prospect(test_client, assigned_to="seller-3", phone="1100000003")
    soon = datetime.now(timezone.utc) + timedelta(hours=1)
    for _ in range(5):
        payload = _task_payload("prospect", barracas["id"], assigned_to="seller-3")
        payload["due_at"] = soon.isoformat()
        assert test_client.post("/api/crm/tasks", json=payload).status_code == 201

    paraguay = _create_prospect(test_client, assigned_to="seller-1", phone="1100000001")
    member = _create_member(test_client, assigned_to="seller-2")
    test_client.post("/api/crm/tasks", json=_task_payload("prospect", paraguay["id"]))
    test_client.post("/api/crm/tasks", json=_task_payload("member", member["id"], assigned_to="seller-2"))

    set_actor("manager")
    page = test_client.get("/api/crm/tasks", params={"limit": 2}).json()
    assert {task["related_id"] for task in page} == {paraguay["id"], member["id"]}

    set_actor("viewer")
    assert len(test_client.get("/api/crm/tasks", params={"limit": 1}).json()) == 1


def test_manager_cannot_complete_task_outside_branch(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    prospect = _create_prospect(test_client, assigned_to="seller-3")
    task = test_client.post("/api/crm/tasks", json=_task_payload("prospect", prospect["id"], assigned_to="seller-3")).json()

    set_actor("manager")
    response = test_client.post(f"/api/crm/tasks/{task['id']}/status", json={"status": "done"})
    assert response.status_code == 404


def test_log_interaction_records_done_task(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, set_actor = client
    member = _create_member(test_client)
    member_id = uuid.UUID(member["id"])
    db_session.execute(
        update(CRMMember)
        .where(CRMMember.id == member_id)
        .values(last_action_date=datetime(2020, 1, 1, tzinfo=timezone.utc))
    )
    db_session.commit()

    set_actor("seller1")
    response = test_client.post(
        "/api/crm/interactions",
        json={
            "interaction_type": "whatsapp",
            "summary": "Sent renewal reminder",
            "result": "Will pay Friday",
            "related_type": "member",
            "related_id": member["id"],
        },
    )
    assert response.status_code == 201, response.text
    body = response.json()
    assert body["interaction"]["done_by"] == "seller-1"
    assert body["task"]["status"] == "done"
    assert body["task"]["assigned_to"] == "seller-1"
    assert body["task"]["result"] == INTERACTION_TASK_RESULT

    db_session.expire_all()
    assert db_session.get(CRMMember, member_id).last_action_date.year > 2020

    listed = test_client.get("/api/crm/interactions", params={"related_type": "member", "related_id": member["id"]})
    assert [item["summary"] for item in listed.json()] == ["Sent renewal reminder"]


def test_viewer_cannot_log_interaction(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    prospect = _create_prospect(test_client)
    set_actor("viewer")
    response = test_client.post(
        "/api/crm/interactions",
        json={
            "interaction_type": "call",
            "summary": "Called",
            "related_type": "prospect",
            "related_id": prospect["id"],
        },
    )
    assert response.status_code == 403


def test_activity_history_merges_tasks_and_interactions(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    prospect = _create_prospect(test_client)
    task = test_client.post("/api/crm/tasks", json=_task_payload("prospect", prospect["id"])).json()
    test_client.post(f"/api/crm/tasks/{task['id']}/status", json={"status": "done", "result": "No answer"})
    test_client.post("/api/crm/tasks", json=_task_payload("prospect", prospect["id"]))
    test_client.post(
        "/api/crm/interactions",
        json={
            "interaction_type": "visit",
            "summary": "Toured the gym",
            "related_type": "prospect",
            "related_id": prospect["id"],
        },
    )

    response = test_client.get(f"/api/crm/activity/prospect/{prospect['id']}")
    assert response.status_code == 200
    items = response.json()
    # pending tasks are excluded; the interaction brings its own done task
    assert sorted(item["kind"] for item in items) == ["interaction", "task", "task"]
    occurred = [datetime.fromisoformat(item["occurred_at"]) for item in items]
    assert occurred == sorted(occurred, reverse=True)
