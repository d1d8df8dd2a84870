import logging

from celery import Celery

from stagegate.core.config import get_settings
from stagegate.core.database import SessionLocal
from stagegate.transitions.notifications import dispatch_pending

settings = get_settings()
logger = logging.getLogger("stagegate.tasks")

celery_app = Celery("stagegate_api", broker=settings.redis_url, backend=settings.redis_url)


@celery_app.task(name="stagegate.tasks.ping")
def ping_task() -> str:
    return "pong"


@celery_app.task(name="stagegate.tasks.dispatch_notifications")
def dispatch_notifications_task(limit: int | None = None) -> int:
    session = SessionLocal()
    try:
        dispatched = dispatch_pending(session, limit=limit or get_settings().notification_batch_size)
    except Exception:
        session.rollback()
        logger.exception("notifications.dispatch_failed")
        raise
    finally:
        session.close()
    return dispatched
