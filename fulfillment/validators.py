"""
Validation utilities for the Fulfillment service.

Business-rule validation of workflow input beyond schema validation. Each
check raises ValidationError or PreconditionError instead of returning a
status tuple so the workflow can stop at the first failure.
"""
from typing import List, Optional
from decimal import Decimal
from . import schemas
from .errors import PreconditionError, ValidationError

MAX_ITEMS = 100
MAX_QUANTITY = 10000
MAX_PRICE = Decimal("1000000")


def validate_draft_items(items: List[schemas.OrderItemCreate]) -> None:
    """
    Validate draft line items.

    Args:
        items: List of order items

    Raises:
        ValidationError: if the list is empty or any item is out of range
    """
    if not items:
        raise ValidationError("Order must contain at least one item")

    if len(items) > MAX_ITEMS:
        raise ValidationError(f"Order cannot contain more than {MAX_ITEMS} items")

    for item in items:
        if item.quantity <= 0:
            raise ValidationError(
                f"Item for product {item.product_id}: quantity must be positive",
                details={"product_id": item.product_id, "quantity": item.quantity},
            )

        if item.quantity > MAX_QUANTITY:
            raise ValidationError(
                f"Item for product {item.product_id}: quantity exceeds maximum ({MAX_QUANTITY})",
                details={"product_id": item.product_id, "quantity": item.quantity},
            )

        if item.unit_price is not None:
            if item.unit_price < 0:
                raise ValidationError(f"Item for product {item.product_id}: price cannot be negative")
            if item.unit_price > MAX_PRICE:
                raise ValidationError(f"Item for product {item.product_id}: price exceeds maximum (1,000,000)")


def validate_customer_ref(customer_ref: Optional[str]) -> str:
    if customer_ref is None or not customer_ref.strip():
        raise ValidationError("Customer reference is required")
    return customer_ref.strip()


def validate_payment_evidence(bank_ref: Optional[str], evidence_ref: Optional[str]) -> None:
    """
    Check the payment evidence an agent must attach before verification.

    Raises:
        PreconditionError: if the bank reference is blank or no receipt is attached
    """
    if bank_ref is None or not bank_ref.strip():
        raise PreconditionError("Bank reference is required to submit for verification",
                                details={"field": "bank_ref"})

    if evidence_ref is None or not evidence_ref.strip():
        raise PreconditionError("Payment evidence is required to submit for verification",
                                details={"field": "evidence_ref"})


def validate_shipping_cost(shipping_cost: Decimal) -> None:
    if shipping_cost is None or shipping_cost < 0:
        raise ValidationError("Shipping cost cannot be negative",
                              details={"shipping_cost": str(shipping_cost)})
