"""
Error taxonomy for the escrow and quota subsystems.

Validation errors (InvalidAmount, ListingUnavailable, QuotaExceeded) go straight
back to the caller. GatewayUnavailable is retried at the call site and then
surfaced. InvalidStateTransition means a race or a duplicate delivery.
ReconciliationNeeded is raised only after the mismatch has been recorded.
"""
from typing import Any


class MarketplaceError(Exception):
    """Base error; `detail` is for logs, `user_message` is safe to show."""

    code = "marketplace_error"
    user_message = "Something went wrong. Please try again."

    def __init__(self, message: str, detail: dict[str, Any] | None = None):
        super().__init__(message)
        self.detail = detail or {}


class InvalidAmount(MarketplaceError):
    code = "invalid_amount"
    user_message = "The amount must be a positive value."


class TransactionNotFound(MarketplaceError):
    code = "transaction_not_found"
    user_message = "Transaction not found."


class InvalidStateTransition(MarketplaceError):
    code = "invalid_state_transition"
    user_message = "This transaction was updated by another request. Please refresh."

    def __init__(self, transaction_id: str, current: str | None, target: str):
        super().__init__(
            f"Transaction {transaction_id}: cannot move {current} -> {target}",
            detail={"transaction_id": transaction_id, "current": current, "target": target},
        )
        self.transaction_id = transaction_id
        self.current = current
        self.target = target


class GatewayError(MarketplaceError):
    """Provider rejected the request; not worth retrying."""

    code = "gateway_error"
    user_message = "The payment provider could not process this request."


class GatewayUnavailable(GatewayError):
    """Network failure, timeout, auth failure, 5xx or open circuit breaker."""

    code = "gateway_unavailable"
    user_message = "The payment provider is temporarily unavailable. Please try again."


class RefundFailed(GatewayError):
    code = "refund_failed"
    user_message = "The refund could not be processed."


class PaymentVerificationFailed(MarketplaceError):
    code = "payment_verification_failed"
    user_message = "Payment could not be verified."


class ListingUnavailable(MarketplaceError):
    code = "listing_unavailable"
    user_message = "This listing is not available for purchase."


class SelfPurchaseRejected(ListingUnavailable):
    code = "self_purchase"
    user_message = "You cannot buy your own listing."


class NotTransactionParty(MarketplaceError):
    code = "not_transaction_party"
    user_message = "Only the buyer or the seller can do this."


class SubscriptionError(MarketplaceError):
    code = "subscription_error"
    user_message = "The subscription request could not be completed."


class QuotaExceeded(MarketplaceError):
    code = "quota_exceeded"

    def __init__(
        self,
        kind: str,
        plan: str | None,
        limit: int,
        used: int,
        upgrade_plans: list[str] | None = None,
    ):
        super().__init__(
            f"{kind} quota exceeded for plan {plan}: {used}/{limit}",
            detail={"kind": kind, "plan": plan, "limit": limit, "used": used},
        )
        self.kind = kind
        self.plan = plan
        self.limit = limit
        self.used = used
        self.upgrade_plans = upgrade_plans or []

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)

    @property
    def user_message(self) -> str:  # type: ignore[override]
        if self.plan is None:
            return f"An active subscription is required to create {self.kind}s."
        return (
            f"You have used {self.used} of {self.limit} {self.kind}s this month "
            f"({self.remaining} remaining). Upgrade your plan to continue."
        )


class ReconciliationNeeded(MarketplaceError):
    code = "reconciliation_needed"
    user_message = "Your payment is being reviewed. No further action is needed."

    def __init__(self, transaction_id: str, operation: str, issue_id: str | None, reason: str):
        super().__init__(
            f"Ledger/gateway mismatch on {transaction_id} during {operation}: {reason}",
            detail={"transaction_id": transaction_id, "operation": operation, "issue_id": issue_id},
        )
        self.transaction_id = transaction_id
        self.operation = operation
        self.issue_id = issue_id
