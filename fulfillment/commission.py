"""
Commission engine.

Computes the commission an agent earns on an order at the moment its
payment is verified:

    commission = sum(quantity × unit_price) × rate + shipping_cut

where shipping_cut is nothing, a fixed amount, or a percentage of the
order's shipping cost, depending on the agent's policy. The result is
rounded half-up to cents. Nothing here touches the database; the workflow
persists the returned amount.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from .config import DEFAULT_COMMISSION_RATE

CENT = Decimal("0.01")

SHIPPING_NONE = "none"
SHIPPING_FIXED = "fixed"
SHIPPING_PERCENTAGE = "percentage"


def _money(value) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


@dataclass(frozen=True)
class CommissionPolicy:
    """
    Commission terms for one agent.

    Attributes:
        rate: Fraction of the merchandise subtotal (0.10 = 10%)
        shipping_mode: "none", "fixed" or "percentage"
        shipping_value: Fixed amount, or fraction of shipping cost
    """
    rate: Decimal = DEFAULT_COMMISSION_RATE
    shipping_mode: str = SHIPPING_NONE
    shipping_value: Decimal = Decimal("0")


def policy_from_profile(profile) -> CommissionPolicy:
    """Build a policy from an AgentProfile row, or the default when there is none."""
    if profile is None:
        return CommissionPolicy()
    return CommissionPolicy(
        rate=_money(profile.commission_rate),
        shipping_mode=profile.shipping_commission_mode or SHIPPING_NONE,
        shipping_value=_money(profile.shipping_commission_value),
    )


def merchandise_total(items) -> Decimal:
    return sum((_money(item.unit_price) * item.quantity for item in items), Decimal("0"))


def shipping_cut(shipping_cost, policy: CommissionPolicy) -> Decimal:
    if policy.shipping_mode == SHIPPING_FIXED:
        return policy.shipping_value
    if policy.shipping_mode == SHIPPING_PERCENTAGE:
        return _money(shipping_cost) * policy.shipping_value
    return Decimal("0")


def accrue(order, policy: Optional[CommissionPolicy] = None) -> Decimal:
    """
    Compute the commission for an order.

    Args:
        order: Anything with `items` (each with quantity and unit_price)
            and `shipping_cost`
        policy: The agent's commission policy; defaults to the house rate

    Returns:
        The commission amount, rounded to cents
    """
    policy = policy or CommissionPolicy()
    amount = merchandise_total(order.items) * _money(policy.rate)
    amount += shipping_cut(getattr(order, "shipping_cost", None), policy)
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)
