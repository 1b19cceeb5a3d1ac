from celery import Celery

from clubcrm.core.config import get_settings

settings = get_settings()

celery_app = Celery("clubcrm_api", broker=settings.redis_url, backend=settings.redis_url, include=["clubcrm.crm.sync"])

celery_app.conf.beat_schedule = {
    "lead-feed-auto-sync": {
        "task": "clubcrm.crm.sync_lead_feed",
        "schedule": settings.auto_sync_check_minutes * 60.0,
    },
}
