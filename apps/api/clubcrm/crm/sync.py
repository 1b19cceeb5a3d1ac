from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from fastapi import HTTPException
from sqlalchemy.orm import Session

from clubcrm.core.celery_app import celery_app
from clubcrm.core.config import get_settings
from clubcrm.crm.constants import SYSTEM_ACTOR_ID, Branch, Role
from clubcrm.crm.directory import DirectoryClient, directory_from_settings
from clubcrm.crm.feed import FeedError, HttpLeadFeedClient, LeadFeedClient
from clubcrm.crm.import_export import ImportValidationError, LeadImportService
from clubcrm.crm.models import CRMSyncState, utcnow
from clubcrm.crm.schemas import LeadFeedSyncRead
from clubcrm.crm.service import ProspectService
from clubcrm.metrics import observe_lead_feed_sync
from clubcrm.platform.security.context import Actor


logger = logging.getLogger("clubcrm.crm.sync")

LAST_AUTO_IMPORT_KEY = "last_auto_import"

SYSTEM_ACTOR = Actor(
    id=SYSTEM_ACTOR_ID,
    name="Lead feed sync",
    email="",
    role=Role.ADMIN,
    branch=Branch.GENERAL,
)


def _parse_timestamp(raw: str | None) -> datetime | None:
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        logger.warning("lead_feed.bad_sync_state", extra={"error": raw[:64]})
        return None


class LeadFeedSyncService:
    """Periodic lead feed import guarded by a persisted last-run timestamp."""

    def __init__(self, import_service: LeadImportService | None = None, prospect_service: Any = None) -> None:
        self.import_service = import_service or LeadImportService()
        self.prospect_service = prospect_service or ProspectService()

    def last_run(self, session: Session) -> datetime | None:
        state = session.get(CRMSyncState, LAST_AUTO_IMPORT_KEY)
        return _parse_timestamp(state.value if state is not None else None)

    def run_if_due(
        self,
        session: Session,
        *,
        feed: LeadFeedClient,
        directory: DirectoryClient,
        now: datetime | None = None,
        interval: timedelta | None = None,
    ) -> LeadFeedSyncRead:
        now = now or utcnow()
        interval = interval or timedelta(hours=get_settings().auto_sync_interval_hours)
        last_run = self.last_run(session)
        if last_run is not None and now - last_run < interval:
            observe_lead_feed_sync("skipped")
            logger.info("lead_feed.sync_skipped", extra={"sync_status": "skipped"})
            return LeadFeedSyncRead(status="skipped", last_run_at=last_run)

        # committed before the fetch; a slow or failing run must not be retried by the next tick
        state = session.get(CRMSyncState, LAST_AUTO_IMPORT_KEY)
        if state is None:
            state = CRMSyncState(key=LAST_AUTO_IMPORT_KEY, value=now.isoformat())
            session.add(state)
        state.value = now.isoformat()
        state.updated_at = now
        session.commit()

        actor = SYSTEM_ACTOR.with_correlation_id(None)
        try:
            result = self.import_service.import_from_feed(
                session,
                actor,
                feed=feed,
                directory=directory,
                prospect_service=self.prospect_service,
            )
        except (FeedError, ImportValidationError, HTTPException) as exc:
            error = str(exc.detail) if isinstance(exc, HTTPException) else str(exc)
            observe_lead_feed_sync("failed")
            logger.error("lead_feed.sync_failed", extra={"sync_status": "failed", "error": error})
            return LeadFeedSyncRead(status="failed", last_run_at=now, error=error)

        observe_lead_feed_sync("completed")
        logger.info(
            "lead_feed.sync_completed",
            extra={"sync_status": "completed", "import_total": result.total, "import_created": result.created},
        )
        return LeadFeedSyncRead(status="completed", last_run_at=now, result=result.to_read())


@celery_app.task(name="clubcrm.crm.sync_lead_feed")
def sync_lead_feed() -> dict[str, Any]:
    from clubcrm.core.database import SessionLocal

    settings = get_settings()
    if not settings.auto_sync_enabled:
        return {"status": "disabled"}

    feed = HttpLeadFeedClient(settings.lead_feed_url, timeout=settings.lead_feed_timeout_seconds)
    with SessionLocal() as session:
        outcome = LeadFeedSyncService().run_if_due(session, feed=feed, directory=directory_from_settings(settings))
    return outcome.model_dump(mode="json")
