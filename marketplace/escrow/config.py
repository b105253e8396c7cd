"""
Escrow policy config: typed wrappers over marketplace.core.config.settings.
"""
from __future__ import annotations

import json
from decimal import Decimal

from marketplace.core.config import settings


def get_platform_fee_rate() -> Decimal:
    return Decimal(settings.escrow_platform_fee_rate)


def get_gateway_fee_rate() -> Decimal:
    return Decimal(settings.escrow_gateway_fee_rate)


def get_method_surcharge_rates() -> dict[str, Decimal]:
    """Return {payment_method: surcharge rate} added on top of the gateway rate."""
    raw = json.loads(settings.escrow_method_surcharge_rates)
    return {str(k): Decimal(str(v)) for k, v in raw.items()}


def get_hold_period_days() -> int:
    return settings.escrow_hold_period_days


def get_default_currency() -> str:
    return settings.escrow_default_currency


def get_cas_retries() -> int:
    return settings.escrow_state_cas_retries


def get_auto_release_batch_size() -> int:
    return settings.auto_release_batch_size
