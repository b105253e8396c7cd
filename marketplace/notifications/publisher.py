"""
Publishes notification events as Celery messages by task name; a separate
notifications worker (email/SMS/push) consumes the queue.
"""
import logging
from typing import Any

from marketplace.collaborators import Notifier
from marketplace.core.celery_app import celery_app
from marketplace.core.config import settings

logger = logging.getLogger(__name__)


class NotificationEvent:
    PAYMENT_HELD = "payment_held"
    PAYMENT_RECEIVED = "payment_received"
    ESCROW_RELEASED = "escrow_released"
    PAYMENT_REFUNDED = "payment_refunded"
    DISPUTE_RAISED = "dispute_raised"
    DISPUTE_RESOLVED = "dispute_resolved"
    PURCHASE_CANCELLED = "purchase_cancelled"
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_EXPIRED = "subscription_expired"


class CeleryNotifier(Notifier):
    def __init__(self, app=None, task_name: str | None = None, queue: str | None = None) -> None:
        self.app = app or celery_app
        self.task_name = task_name or settings.notification_task_name
        self.queue = queue or settings.notification_queue

    def notify(self, user_id: str, event: str, payload: dict[str, Any]) -> None:
        try:
            self.app.send_task(
                self.task_name,
                args=[user_id, event, payload],
                queue=self.queue,
            )
        except Exception as e:
            # best-effort: the financial state is already committed
            logger.warning(
                "notification_publish_failed",
                extra={"user_id": user_id, "event": event, "error": str(e)},
            )
