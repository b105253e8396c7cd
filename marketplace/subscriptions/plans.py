from dataclasses import dataclass, field

from marketplace.core.errors import SubscriptionError
from marketplace.models.subscription import UNLIMITED


@dataclass(frozen=True)
class Plan:
    name: str
    display_name: str
    rank: int
    price: int              # minor units per period
    currency: str
    duration_days: int
    max_listings: int       # UNLIMITED (-1) = no limit
    max_ads: int
    features: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_free(self) -> bool:
        return self.price == 0


PLANS: dict[str, Plan] = {
    "basic": Plan(
        "basic", "Basic Plan", 1, 0, "INR", 30, 10, 10,
        ("Up to 10 listings per month", "Up to 10 ads per month", "Email support"),
    ),
    "premium": Plan(
        "premium", "Premium Plan", 2, 99900, "INR", 30, UNLIMITED, 10,
        (
            "Unlimited listings",
            "Up to 10 premium ads per month",
            "Priority support",
            "Listing analytics",
            "Featured listings",
        ),
    ),
    "unlimited": Plan(
        "unlimited", "Unlimited Plan", 3, 199900, "INR", 30, UNLIMITED, UNLIMITED,
        (
            "Unlimited listings and ads",
            "24/7 priority support",
            "Advanced analytics",
            "All listings featured",
            "Listing management API",
            "Custom branding",
        ),
    ),
}


def get_plan(plan_name: str) -> Plan:
    plan = PLANS.get((plan_name or "").strip().lower())
    if plan is None:
        raise SubscriptionError(
            f"Unknown subscription plan: {plan_name}",
            detail={"plan": plan_name, "available": list(PLANS)},
        )
    return plan


def upgrade_options(plan_name: str | None) -> list[str]:
    """Plans ranked above `plan_name`; every paid plan when there is none."""
    current = PLANS.get(plan_name or "")
    floor = current.rank if current else 1
    return [p.name for p in sorted(PLANS.values(), key=lambda p: p.rank) if p.rank > floor]
