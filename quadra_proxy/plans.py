from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from quadra_proxy.errors import UnknownPlan

DEFAULT_PLAN_KEY = "FREE"


@dataclass(frozen=True, slots=True)
class Plan:
    key: str
    name: str
    price: int
    token_limit: int
    features: tuple[str, ...]

    @property
    def price_minor_units(self) -> int:
        return self.price * 100

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "name": self.name,
            "price": self.price,
            "tokenLimit": self.token_limit,
            "features": list(self.features),
        }


PLANS: dict[str, Plan] = {
    plan.key: plan
    for plan in (
        Plan(
            key="FREE",
            name="Free Pack",
            price=0,
            token_limit=100_000,
            features=("Basic chat functionality",),
        ),
        Plan(
            key="COLLEGE",
            name="College Pack",
            price=99,
            token_limit=500_000,
            features=("Enhanced chat functionality", "Priority support"),
        ),
        Plan(
            key="LITE",
            name="Lite Pack",
            price=299,
            token_limit=2_000_000,
            features=(
                "Advanced chat functionality",
                "Priority support",
                "Extended history",
            ),
        ),
        Plan(
            key="PRO",
            name="Pro Pack",
            price=599,
            token_limit=10_000_000,
            features=(
                "Premium chat functionality",
                "24/7 support",
                "Unlimited history",
                "Custom models",
            ),
        ),
    )
}


def get_plan(plan_key: str) -> Plan:
    plan = PLANS.get(plan_key)
    if plan is None:
        raise UnknownPlan(plan_key)
    return plan


def is_known_plan(plan_key: Any) -> bool:
    return isinstance(plan_key, str) and plan_key in PLANS
