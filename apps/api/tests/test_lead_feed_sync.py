from __future__ import annotations

from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from clubcrm import audit, events
from clubcrm.core.config import get_settings
from clubcrm.core.database import Base
from clubcrm.crm.constants import Branch, Role
from clubcrm.crm.directory import InMemoryDirectoryClient
from clubcrm.crm.feed import HttpLeadFeedClient, StaticLeadFeedClient
from clubcrm.crm.models import CRMProspect, CRMSyncState
from clubcrm.crm.sync import LAST_AUTO_IMPORT_KEY, LeadFeedSyncService, sync_lead_feed
from clubcrm.platform.security.context import Actor


SELLERS = [
    Actor(id="seller-1", name="Sol Seller", email="sol@club.test", role=Role.SELLER, branch=Branch.PARAGUAY),
    Actor(id="seller-2", name="Bruno Seller", email="bruno@club.test", role=Role.SELLER, branch=Branch.BARRACAS),
]
FEED_CSV = "Nombre,Celular\nAna,1100\nBeto,1101\nCarla,1102\n"
NOW = datetime(2026, 10, 17, 9, 0, tzinfo=timezone.utc)


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


def _count(session: Session) -> int:
    return int(session.scalar(select(func.count()).select_from(CRMProspect)) or 0)


def test_first_run_imports_and_records_timestamp(db_session: Session) -> None:
    service = LeadFeedSyncService()
    outcome = service.run_if_due(
        db_session,
        feed=StaticLeadFeedClient(FEED_CSV),
        directory=InMemoryDirectoryClient(SELLERS),
        now=NOW,
        interval=timedelta(hours=12),
    )
    assert outcome.status == "completed"
    assert outcome.result is not None and outcome.result.created == 3
    assert service.last_run(db_session) == NOW

    owners = [p.assigned_to for p in db_session.scalars(select(CRMProspect).order_by(CRMProspect.name)).all()]
    assert owners == ["seller-1", "seller-2", "seller-1"]
    created = [entry for entry in audit.audit_entries if entry["entity_type"] == "crm.prospect"]
    assert {entry["actor_user_id"] for entry in created} == {"system"}


def test_run_within_interval_is_skipped(db_session: Session) -> None:
    service = LeadFeedSyncService()
    directory = InMemoryDirectoryClient(SELLERS)
    service.run_if_due(db_session, feed=StaticLeadFeedClient(FEED_CSV), directory=directory, now=NOW)

    later = service.run_if_due(
        db_session,
        feed=StaticLeadFeedClient("Nombre,Celular\nDiego,1200\n"),
        directory=directory,
        now=NOW + timedelta(hours=11, minutes=59),
        interval=timedelta(hours=12),
    )
    assert later.status == "skipped"
    assert later.last_run_at == NOW
    assert _count(db_session) == 3

    due = service.run_if_due(
        db_session,
        feed=StaticLeadFeedClient("Nombre,Celular\nDiego,1200\n"),
        directory=directory,
        now=NOW + timedelta(hours=12),
        interval=timedelta(hours=12),
    )
    assert due.status == "completed"
    assert _count(db_session) == 4


def test_failed_fetch_still_holds_the_interval(db_session: Session) -> None:
    service = LeadFeedSyncService()
    directory = InMemoryDirectoryClient(SELLERS)
    failed = service.run_if_due(db_session, feed=HttpLeadFeedClient(""), directory=directory, now=NOW)
    assert failed.status == "failed"
    assert failed.error
    assert db_session.get(CRMSyncState, LAST_AUTO_IMPORT_KEY) is not None

    retry = service.run_if_due(
        db_session,
        feed=StaticLeadFeedClient(FEED_CSV),
        directory=directory,
        now=NOW + timedelta(minutes=30),
    )
    assert retry.status == "skipped"
    assert _count(db_session) == 0


def test_html_feed_reported_as_failure(db_session: Session) -> None:
    outcome = LeadFeedSyncService().run_if_due(
        db_session,
        feed=StaticLeadFeedClient("<html><body>login</body></html>"),
        directory=InMemoryDirectoryClient(SELLERS),
        now=NOW,
    )
    assert outcome.status == "failed"
    assert _count(db_session) == 0


def test_unreadable_state_counts_as_never_run(db_session: Session) -> None:
    db_session.add(CRMSyncState(key=LAST_AUTO_IMPORT_KEY, value="yesterday", updated_at=NOW))
    db_session.commit()
    service = LeadFeedSyncService()
    assert service.last_run(db_session) is None


def test_celery_task_disabled_by_default(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("AUTO_SYNC_ENABLED", raising=False)
    get_settings.cache_clear()
    assert sync_lead_feed.run() == {"status": "disabled"}
