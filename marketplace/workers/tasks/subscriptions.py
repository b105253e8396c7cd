"""
Celery beat task: expire subscriptions past their end date.
"""
import logging

from marketplace.core.celery_app import celery_app
from marketplace.db.session import SessionLocal
from marketplace.workers.wiring import build_subscription_service

logger = logging.getLogger(__name__)


@celery_app.task(
    name="marketplace.workers.tasks.subscriptions.expire_subscriptions",
    time_limit=120,
    soft_time_limit=110,
)
def expire_subscriptions() -> dict:
    db = SessionLocal()
    try:
        expired = build_subscription_service(db).expire_due()
        return {"ok": True, "expired": expired}
    except Exception:
        db.rollback()
        logger.exception("expire_subscriptions_error")
        return {"ok": False, "expired": 0, "error": "exception"}
    finally:
        db.close()
