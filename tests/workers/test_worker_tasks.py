"""Periodic Celery tasks, the skip-if-running lock and worker wiring."""
from contextlib import contextmanager
from unittest.mock import MagicMock, patch

import pytest
from redis.exceptions import LockError

from fakes import InMemoryListingService, InMemoryUserDirectory, RecordingNotifier
from marketplace.escrow.service import EscrowService
from marketplace.escrow.sweeper import SweepResult
from marketplace.services.locks import skip_if_running
from marketplace.workers import wiring
from marketplace.workers.tasks.auto_release import release_due_escrows
from marketplace.workers.tasks.subscriptions import expire_subscriptions


@contextmanager
def _lock(acquired):
    yield acquired


@pytest.fixture(autouse=True)
def _reset_wiring():
    wiring.reset()
    yield
    wiring.reset()


class TestSkipIfRunning:
    def test_holds_and_releases(self):
        client = MagicMock()
        client.lock.return_value.acquire.return_value = True

        with skip_if_running("lock:job", 60, client=client) as acquired:
            assert acquired is True

        client.lock.assert_called_once_with("lock:job", timeout=60)
        client.lock.return_value.acquire.assert_called_once_with(blocking=False)
        client.lock.return_value.release.assert_called_once()

    def test_skips_when_taken(self):
        client = MagicMock()
        client.lock.return_value.acquire.return_value = False

        with skip_if_running("lock:job", 60, client=client) as acquired:
            assert acquired is False

        client.lock.return_value.release.assert_not_called()

    def test_expired_lock_on_release_is_tolerated(self):
        client = MagicMock()
        client.lock.return_value.acquire.return_value = True
        client.lock.return_value.release.side_effect = LockError("expired")

        with skip_if_running("lock:job", 60, client=client) as acquired:
            assert acquired

    def test_lock_released_when_job_raises(self):
        client = MagicMock()
        client.lock.return_value.acquire.return_value = True

        with pytest.raises(RuntimeError):
            with skip_if_running("lock:job", 60, client=client):
                raise RuntimeError("boom")

        client.lock.return_value.release.assert_called_once()


class TestReleaseDueEscrows:
    def test_skipped_when_previous_run_active(self):
        with patch("marketplace.workers.tasks.auto_release.skip_if_running", return_value=_lock(False)), patch(
            "marketplace.workers.tasks.auto_release.SessionLocal"
        ) as session_local:
            result = release_due_escrows()

        assert result == {"ok": True, "skipped_run": True}
        session_local.assert_not_called()

    def test_runs_sweep(self):
        session = MagicMock()
        with patch("marketplace.workers.tasks.auto_release.skip_if_running", return_value=_lock(True)), patch(
            "marketplace.workers.tasks.auto_release.SessionLocal", return_value=session
        ), patch("marketplace.workers.tasks.auto_release.build_escrow_service") as build, patch(
            "marketplace.workers.tasks.auto_release.EscrowSweeper"
        ) as sweeper_cls:
            sweeper_cls.return_value.run.return_value = SweepResult(released=2, skipped=1, failed=0)
            result = release_due_escrows()

        assert result == {"ok": True, "released": 2, "skipped": 1, "failed": 0}
        build.assert_called_once_with(session)
        session.close.assert_called_once()

    def test_error_is_reported_not_raised(self):
        session = MagicMock()
        with patch("marketplace.workers.tasks.auto_release.skip_if_running", return_value=_lock(True)), patch(
            "marketplace.workers.tasks.auto_release.SessionLocal", return_value=session
        ), patch(
            "marketplace.workers.tasks.auto_release.build_escrow_service",
            side_effect=RuntimeError("no listing collaborator"),
        ):
            result = release_due_escrows()

        assert result == {"ok": False, "error": "exception"}
        session.rollback.assert_called_once()
        session.close.assert_called_once()


class TestExpireSubscriptions:
    def test_reports_count(self):
        session = MagicMock()
        with patch("marketplace.workers.tasks.subscriptions.SessionLocal", return_value=session), patch(
            "marketplace.workers.tasks.subscriptions.build_subscription_service"
        ) as build:
            build.return_value.expire_due.return_value = 3
            result = expire_subscriptions()

        assert result == {"ok": True, "expired": 3}
        session.close.assert_called_once()


class TestWiring:
    def test_configured_collaborators_are_used(self, db):
        listings, users, notifier = InMemoryListingService(), InMemoryUserDirectory(), RecordingNotifier()
        wiring.configure(listings=listings, users=users, notifier=notifier)

        escrow = wiring.build_escrow_service(db)

        assert isinstance(escrow, EscrowService)
        assert escrow.listings is listings
        assert escrow.users is users
        assert escrow.notifier is notifier

    def test_missing_collaborator(self, db):
        with patch.object(wiring.settings, "listing_service_path", ""):
            with pytest.raises(RuntimeError, match="LISTING_SERVICE_PATH"):
                wiring.build_escrow_service(db)

    def test_loaded_from_dotted_path(self, db):
        with patch.object(wiring.settings, "listing_service_path", "fakes:InMemoryListingService"), patch.object(
            wiring.settings, "user_directory_path", "fakes:InMemoryUserDirectory"
        ):
            escrow = wiring.build_escrow_service(db)

        assert isinstance(escrow.listings, InMemoryListingService)
        assert isinstance(escrow.users, InMemoryUserDirectory)

    def test_default_notifier_publishes_to_celery(self):
        from marketplace.notifications.publisher import CeleryNotifier

        assert isinstance(wiring.get_notifier(), CeleryNotifier)
