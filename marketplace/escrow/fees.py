"""
Fee calculator: platform + gateway fees for a purchase, in integer minor units.
Pure: same (amount, method, rates) always yields the same breakdown.
"""
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from marketplace.core.errors import InvalidAmount
from marketplace.escrow import config as escrow_config
from marketplace.gateways.base import PaymentMethod


@dataclass(frozen=True)
class FeeBreakdown:
    platform_fee: int
    gateway_fee: int
    total: int

    def charge_amount(self, base_amount: int) -> int:
        """What the buyer is charged: the agreed price plus all fees."""
        return base_amount + self.total


def _round_minor(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_fees(
    base_amount: int,
    payment_method: PaymentMethod | str = PaymentMethod.CARD,
    *,
    platform_rate: Decimal | None = None,
    gateway_rate: Decimal | None = None,
    surcharges: dict[str, Decimal] | None = None,
) -> FeeBreakdown:
    """
    Platform fee = base * platform rate.
    Gateway fee = base * (gateway rate + surcharge for the payment method).
    Each fee is rounded half-up to a whole minor unit independently.
    """
    if isinstance(base_amount, bool) or not isinstance(base_amount, int) or base_amount <= 0:
        raise InvalidAmount(
            f"base_amount must be a positive integer, got {base_amount!r}",
            detail={"amount": base_amount},
        )
    method = PaymentMethod(payment_method).value

    platform_rate = escrow_config.get_platform_fee_rate() if platform_rate is None else platform_rate
    gateway_rate = escrow_config.get_gateway_fee_rate() if gateway_rate is None else gateway_rate
    surcharges = escrow_config.get_method_surcharge_rates() if surcharges is None else surcharges

    base = Decimal(base_amount)
    platform_fee = _round_minor(base * platform_rate)
    gateway_fee = _round_minor(base * (gateway_rate + surcharges.get(method, Decimal("0"))))
    return FeeBreakdown(
        platform_fee=platform_fee,
        gateway_fee=gateway_fee,
        total=platform_fee + gateway_fee,
    )
