"""
Builds services for Celery workers. Listing and user collaborators come from
configure() (called at worker startup) or from the dotted paths in settings.
"""
import logging

from celery.utils.imports import symbol_by_name
from sqlalchemy.orm import Session

from marketplace.collaborators import ListingService, Notifier, UserDirectory
from marketplace.core.config import settings
from marketplace.escrow.service import EscrowService
from marketplace.gateways.factory import GatewayFactory
from marketplace.notifications.publisher import CeleryNotifier
from marketplace.subscriptions.service import SubscriptionService

logger = logging.getLogger(__name__)

_collaborators: dict = {}


def configure(
    listings: ListingService | None = None,
    users: UserDirectory | None = None,
    notifier: Notifier | None = None,
) -> None:
    if listings is not None:
        _collaborators["listings"] = listings
    if users is not None:
        _collaborators["users"] = users
    if notifier is not None:
        _collaborators["notifier"] = notifier


def reset() -> None:
    _collaborators.clear()


def _resolve(key: str, setting: str):
    if key not in _collaborators:
        path = getattr(settings, setting)
        if not path:
            raise RuntimeError(
                f"No {key} collaborator: call marketplace.workers.wiring.configure() or set {setting.upper()}"
            )
        _collaborators[key] = symbol_by_name(path)()
        logger.info("collaborator_loaded", extra={"operation": path})
    return _collaborators[key]


def get_notifier() -> Notifier:
    if "notifier" not in _collaborators:
        _collaborators["notifier"] = CeleryNotifier()
    return _collaborators["notifier"]


def build_escrow_service(db: Session) -> EscrowService:
    return EscrowService(
        db,
        GatewayFactory.build_all(settings),
        _resolve("listings", "listing_service_path"),
        _resolve("users", "user_directory_path"),
        get_notifier(),
    )


def build_subscription_service(db: Session) -> SubscriptionService:
    return SubscriptionService(db, GatewayFactory.build_all(settings), get_notifier())
