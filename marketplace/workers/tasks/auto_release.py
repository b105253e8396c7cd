"""
Celery beat task: release escrow for transactions whose hold period has elapsed.
Runs every auto_release_interval_minutes; a run that overlaps a slow previous
run is skipped via a Redis lock.
"""
import logging

from marketplace.core.celery_app import celery_app
from marketplace.core.config import settings
from marketplace.db.session import SessionLocal
from marketplace.escrow.sweeper import EscrowSweeper
from marketplace.services.locks import skip_if_running
from marketplace.workers.wiring import build_escrow_service

logger = logging.getLogger(__name__)

LOCK_KEY = "lock:auto_release"


@celery_app.task(
    name="marketplace.workers.tasks.auto_release.release_due_escrows",
    time_limit=settings.auto_release_lock_ttl_seconds,
    soft_time_limit=max(1, settings.auto_release_lock_ttl_seconds - 10),
)
def release_due_escrows() -> dict:
    with skip_if_running(LOCK_KEY, settings.auto_release_lock_ttl_seconds) as acquired:
        if not acquired:
            return {"ok": True, "skipped_run": True}

        db = SessionLocal()
        try:
            result = EscrowSweeper(build_escrow_service(db)).run()
            return {"ok": True, **result.as_dict()}
        except Exception:
            db.rollback()
            logger.exception("release_due_escrows_error")
            return {"ok": False, "error": "exception"}
        finally:
            db.close()
