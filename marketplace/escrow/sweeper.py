"""
Auto-release sweep: release every held transaction whose hold period has elapsed.
One bad row never blocks the rest; failures are retried on the next sweep.
"""
import logging
import time
from dataclasses import dataclass
from datetime import datetime

from marketplace.core.errors import InvalidStateTransition
from marketplace.escrow import config as escrow_config
from marketplace.escrow.service import AUTO_RELEASE_NOTE, EscrowService
from marketplace.utils.metrics import auto_release_results_total, auto_release_sweep_duration_seconds

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    released: int = 0
    skipped: int = 0
    failed: int = 0

    def as_dict(self) -> dict[str, int]:
        return {"released": self.released, "skipped": self.skipped, "failed": self.failed}


class EscrowSweeper:
    def __init__(self, escrow: EscrowService, batch_size: int | None = None) -> None:
        self.escrow = escrow
        self.batch_size = batch_size or escrow_config.get_auto_release_batch_size()

    def run(self, now: datetime | None = None) -> SweepResult:
        now = now or self.escrow.clock()
        start = time.monotonic()
        result = SweepResult()

        due = self.escrow.ledger.due_for_release(now, self.batch_size)
        # release the read snapshot before any gateway call
        self.escrow.db.rollback()

        for transaction_id in due:
            try:
                self.escrow.release_escrow(transaction_id, None, AUTO_RELEASE_NOTE)
            except InvalidStateTransition as e:
                # released, refunded or disputed since we listed it
                result.skipped += 1
                auto_release_results_total.labels(result="skipped").inc()
                logger.info(
                    "auto_release_skipped",
                    extra={"transaction_id": transaction_id, "old_state": e.current},
                )
            except Exception as e:
                self.escrow.db.rollback()
                result.failed += 1
                auto_release_results_total.labels(result="failed").inc()
                logger.exception(
                    "auto_release_failed",
                    extra={"transaction_id": transaction_id, "error": str(e)},
                )
            else:
                result.released += 1
                auto_release_results_total.labels(result="released").inc()

        auto_release_sweep_duration_seconds.observe(time.monotonic() - start)
        logger.info("auto_release_sweep_done", extra=result.as_dict())
        return result
