import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from marketplace.models.reconciliation import ReconciliationIssue
from marketplace.utils.metrics import reconciliation_issues_total

logger = logging.getLogger(__name__)


class ReconciliationService:
    """Records gateway money movements that the ledger could not follow."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def record(
        self,
        transaction_id: str,
        gateway: str,
        operation: str,
        provider_reference: str | None,
        ledger_state: str | None,
        detail: dict[str, Any] | None = None,
    ) -> str | None:
        """Write the issue in its own DB transaction. Returns the issue id, or None if even that failed."""
        # whatever the caller had in flight is already broken
        self.db.rollback()
        issue = ReconciliationIssue(
            transaction_id=transaction_id,
            gateway=gateway,
            operation=operation,
            provider_reference=provider_reference,
            ledger_state=ledger_state,
            detail=detail or {},
        )
        reconciliation_issues_total.labels(operation=operation).inc()
        try:
            self.db.add(issue)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception(
                "reconciliation_record_failed",
                extra={
                    "transaction_id": transaction_id,
                    "gateway": gateway,
                    "operation": operation,
                    "payment_id": provider_reference,
                },
            )
            return None

        logger.error(
            "reconciliation_needed",
            extra={
                "transaction_id": transaction_id,
                "gateway": gateway,
                "operation": operation,
                "payment_id": provider_reference,
                "old_state": ledger_state,
                "issue_id": issue.id,
            },
        )
        return issue.id

    def open_issues(self, limit: int = 100) -> list[ReconciliationIssue]:
        return (
            self.db.query(ReconciliationIssue)
            .filter(ReconciliationIssue.status == "open")
            .order_by(ReconciliationIssue.created_at.asc())
            .limit(limit)
            .all()
        )

    def resolve(self, issue_id: str, note: str) -> ReconciliationIssue | None:
        issue = self.db.query(ReconciliationIssue).filter(ReconciliationIssue.id == issue_id).one_or_none()
        if issue is None or issue.status == "resolved":
            return issue
        issue.status = "resolved"
        issue.resolution_note = note
        issue.resolved_at = datetime.now(timezone.utc)
        self.db.add(issue)
        self.db.commit()
        self.db.refresh(issue)
        logger.info("reconciliation_resolved", extra={"transaction_id": issue.transaction_id, "issue_id": issue.id})
        return issue
