from marketplace.escrow.fees import FeeBreakdown, compute_fees
from marketplace.escrow.service import DisputeResolution, EscrowService, PurchaseOrder
from marketplace.escrow.state_machine import ALLOWED_TRANSITIONS, TransactionLedger, TransactionState
from marketplace.escrow.sweeper import EscrowSweeper, SweepResult

__all__ = [
    "ALLOWED_TRANSITIONS",
    "DisputeResolution",
    "EscrowService",
    "EscrowSweeper",
    "FeeBreakdown",
    "PurchaseOrder",
    "SweepResult",
    "TransactionLedger",
    "TransactionState",
    "compute_fees",
]
