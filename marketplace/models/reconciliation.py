from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, String, Text

from marketplace.db.base import Base, JSONType


class ReconciliationIssue(Base):
    """A gateway money movement the ledger failed to record. Worked off manually or by a repair job."""

    __tablename__ = "reconciliation_issues"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    transaction_id = Column(String, nullable=False, index=True)
    gateway = Column(String, nullable=False)
    operation = Column(String, nullable=False)               # capture / refund / verify
    provider_reference = Column(String, nullable=True)       # payment or refund id at the provider
    ledger_state = Column(String, nullable=True)             # state the ledger was left in
    detail = Column(JSONType, nullable=False, default=dict)
    status = Column(String, nullable=False, default="open", index=True)  # open / resolved
    resolution_note = Column(Text, nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    resolved_at = Column(DateTime(timezone=True), nullable=True)
