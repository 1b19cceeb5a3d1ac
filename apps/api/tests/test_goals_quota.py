from __future__ import annotations

from collections.abc import Callable, Generator
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from clubcrm import audit, events
from clubcrm.core.config import get_settings
from clubcrm.core.database import Base, get_db
from clubcrm.crm.api import get_current_user
from clubcrm.crm.constants import Branch, GoalPeriod, GoalScope, Role
from clubcrm.crm.directory import InMemoryDirectoryClient, get_directory_client
from clubcrm.crm.quota import COMPANY_SCOPE_ID, GoalKey, compute_progress, window_start
from clubcrm.main import app
from clubcrm.platform.security.context import Actor


USERS = {
    "admin": Actor(id="admin-1", name="Ada Admin", email="admin@club.test", role=Role.ADMIN, branch=Branch.GENERAL),
    "manager": Actor(id="manager-1", name="Mara Manager", email="mara@club.test", role=Role.MANAGER, branch=Branch.PARAGUAY),
    "seller1": Actor(id="seller-1", name="Sol Seller", email="sol@club.test", role=Role.SELLER, branch=Branch.PARAGUAY),
    "seller3": Actor(id="seller-3", name="Bruno Seller", email="bruno@club.test", role=Role.SELLER, branch=Branch.BARRACAS),
}

NOW = datetime(2026, 10, 17, 15, 30, tzinfo=timezone.utc)


def _prospect(stage: str, assigned_to: str, branch: str, created: datetime, updated: datetime) -> SimpleNamespace:
    return SimpleNamespace(stage=stage, assigned_to=assigned_to, branch=branch, created_at=created, updated_at=updated)


def test_window_start_daily_and_monthly() -> None:
    assert window_start(GoalPeriod.DAILY, NOW) == datetime(2026, 10, 17, tzinfo=timezone.utc)
    assert window_start(GoalPeriod.MONTHLY, NOW) == datetime(2026, 10, 1, tzinfo=timezone.utc)
    # naive values from SQLite are read as UTC
    assert window_start(GoalPeriod.DAILY, NOW.replace(tzinfo=None)) == datetime(2026, 10, 17, tzinfo=timezone.utc)


def test_compute_progress_counts_won_in_window() -> None:
    today = datetime(2026, 10, 17, 10, 0, tzinfo=timezone.utc)
    earlier_this_month = datetime(2026, 10, 3, 10, 0, tzinfo=timezone.utc)
    last_month = datetime(2026, 9, 28, 10, 0, tzinfo=timezone.utc)
    prospects = [
        _prospect("Won", "seller-1", "Paraguay", earlier_this_month, today),
        _prospect("Won", "seller-1", "Paraguay", earlier_this_month, earlier_this_month),
        _prospect("Won", "seller-3", "Barracas", last_month, last_month),
        _prospect("Trial", "seller-1", "Paraguay", today, today),
        _prospect("Lost", "seller-3", "Barracas", today, today),
    ]
    goals = {
        GoalKey(GoalScope.SELLER, "seller-1", GoalPeriod.DAILY): 1,
        GoalKey(GoalScope.SELLER, "seller-1", GoalPeriod.MONTHLY): 3,
        GoalKey(GoalScope.BRANCH, "Barracas", GoalPeriod.MONTHLY): 1,
        GoalKey(GoalScope.COMPANY, COMPANY_SCOPE_ID, GoalPeriod.MONTHLY): 50,
    }
    results = {item.key: item for item in compute_progress(goals, prospects, NOW)}

    daily = results[GoalKey(GoalScope.SELLER, "seller-1", GoalPeriod.DAILY)]
    assert (daily.actual, daily.met) == (1.0, True)
    monthly = results[GoalKey(GoalScope.SELLER, "seller-1", GoalPeriod.MONTHLY)]
    assert (monthly.actual, monthly.met) == (2.0, False)
    branch = results[GoalKey(GoalScope.BRANCH, "Barracas", GoalPeriod.MONTHLY)]
    assert branch.actual == 0.0
    company = results[GoalKey(GoalScope.COMPANY, COMPANY_SCOPE_ID, GoalPeriod.MONTHLY)]
    # 2 won out of 4 created this month
    assert (company.actual, company.met) == (50.0, True)


def test_company_rate_without_new_prospects_is_zero() -> None:
    goals = {GoalKey(GoalScope.COMPANY, COMPANY_SCOPE_ID, GoalPeriod.DAILY): 10}
    [progress] = compute_progress(goals, [], NOW)
    assert progress.actual == 0.0
    assert not progress.met


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


def test_set_goal_upserts_by_scope_and_period(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    first = test_client.put(
        "/api/crm/goals",
        json={"scope_type": "seller", "scope_id": "seller-1", "period": "daily", "target": 3},
    )
    assert first.status_code == 200, first.text
    second = test_client.put(
        "/api/crm/goals",
        json={"scope_type": "seller", "scope_id": "seller-1", "period": "daily", "target": 5},
    )
    assert second.json()["target"] == 5

    goals = test_client.get("/api/crm/goals").json()
    assert [(goal["scope_id"], goal["target"]) for goal in goals] == [("seller-1", 5)]
    assert audit.audit_entries[-1]["before"] == {"target": 3}


def test_company_goal_is_a_percentage_set_by_admin(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    too_high = test_client.put(
        "/api/crm/goals",
        json={"scope_type": "company", "scope_id": "anything", "period": "monthly", "target": 120},
    )
    assert too_high.status_code == 422

    stored = test_client.put(
        "/api/crm/goals",
        json={"scope_type": "company", "scope_id": "anything", "period": "monthly", "target": 30},
    )
    assert stored.json()["scope_id"] == COMPANY_SCOPE_ID

    set_actor("manager")
    denied = test_client.put(
        "/api/crm/goals",
        json={"scope_type": "company", "scope_id": "company", "period": "monthly", "target": 40},
    )
    assert denied.status_code == 403


def test_manager_goals_limited_to_own_branch(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    set_actor("manager")
    own = test_client.put(
        "/api/crm/goals",
        json={"scope_type": "branch", "scope_id": "Paraguay", "period": "monthly", "target": 20},
    )
    assert own.status_code == 200
    other_branch = test_client.put(
        "/api/crm/goals",
        json={"scope_type": "branch", "scope_id": "Barracas", "period": "monthly", "target": 20},
    )
    assert other_branch.status_code == 403
    other_seller = test_client.put(
        "/api/crm/goals",
        json={"scope_type": "seller", "scope_id": "seller-3", "period": "daily", "target": 2},
    )
    assert other_seller.status_code == 403
    unknown = test_client.put(
        "/api/crm/goals",
        json={"scope_type": "seller", "scope_id": "ghost", "period": "daily", "target": 2},
    )
    assert unknown.status_code == 422

    set_actor("seller1")
    denied = test_client.put(
        "/api/crm/goals",
        json={"scope_type": "seller", "scope_id": "seller-1", "period": "daily", "target": 9},
    )
    assert denied.status_code == 403


def test_progress_reflects_conversions(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    test_client.put(
        "/api/crm/goals",
        json={"scope_type": "seller", "scope_id": "seller-1", "period": "daily", "target": 1},
    )
    test_client.put(
        "/api/crm/goals",
        json={"scope_type": "seller", "scope_id": "seller-3", "period": "daily", "target": 1},
    )
    prospect = test_client.post(
        "/api/crm/prospects",
        json={"name": "Julia Vega", "phone": "1160000000", "assigned_to": "seller-1"},
    ).json()
    test_client.post(f"/api/crm/prospects/{prospect['id']}/convert")

    set_actor("seller1")
    rows = test_client.get("/api/crm/goals/progress").json()
    assert [(row["scope_id"], row["actual"], row["met"]) for row in rows] == [("seller-1", 1.0, True)]
