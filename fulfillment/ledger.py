"""
Inventory ledger for the Fulfillment service.

The ledger is the only code allowed to change InventoryLevel rows. It knows
nothing about orders beyond the reference id it writes into the movement
log. None of these functions commit: the caller owns the transaction, so a
verification that fails after the decrement rolls the stock back with it.

Allocation policy: a product's demand is taken from the warehouse holding
the largest balance first, ties broken by the lowest warehouse id. Restock
returns each allocation to the warehouse it came from.
"""
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple
from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models
from .database import utcnow
from .errors import ConflictError, InsufficientStockError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

REASON_ORDER_VERIFIED = "order_verified"
REASON_ORDER_CANCELLED = "order_cancelled"
REFERENCE_ORDER = "order"
REFERENCE_MANUAL = "manual_adjustment"


@dataclass(frozen=True)
class Allocation:
    """Quantity taken from (or returned to) one warehouse for one product."""
    product_id: int
    warehouse_id: int
    amount: int


def _lock_levels(db: Session, product_id: int) -> List[models.InventoryLevel]:
    """Load a product's levels, row-locked where the backend supports it."""
    return (
        db.query(models.InventoryLevel)
        .filter(models.InventoryLevel.product_id == product_id)
        .order_by(models.InventoryLevel.id)
        .populate_existing()
        .with_for_update()
        .all()
    )


def plan_allocation(levels: Iterable[models.InventoryLevel], quantity: int) -> List[Tuple[models.InventoryLevel, int]]:
    """
    Split a quantity across warehouse levels, largest balance first.

    Args:
        levels: Current levels of a single product
        quantity: Units to take

    Returns:
        List of (level, amount) pairs; empty amounts are omitted
    """
    plan = []
    remaining = quantity
    for level in sorted(levels, key=lambda lvl: (-lvl.current_stock, lvl.warehouse_id)):
        if remaining <= 0:
            break
        take = min(level.current_stock, remaining)
        if take > 0:
            plan.append((level, take))
            remaining -= take
    return plan


def _record_movement(
    db: Session,
    product_id: int,
    warehouse_id: int,
    quantity_change: int,
    reason: Optional[str],
    reference_type: Optional[str],
    reference_id: Optional[str],
    user_id: Optional[str],
) -> models.InventoryMovement:
    movement = models.InventoryMovement(
        product_id=product_id,
        warehouse_id=warehouse_id,
        quantity_change=quantity_change,
        reason=reason,
        reference_type=reference_type,
        reference_id=reference_id,
        user_id=user_id,
    )
    db.add(movement)
    return movement


def _apply_change(db: Session, level_id: int, quantity_change: int) -> None:
    """
    Conditionally apply a signed change to one level.

    A decrement only matches while the level still holds enough stock, so a
    level can never be driven below zero even if the rows were not locked.
    """
    stmt = (
        update(models.InventoryLevel)
        .where(models.InventoryLevel.id == level_id)
        .values(
            current_stock=models.InventoryLevel.current_stock + quantity_change,
            last_updated=utcnow(),
        )
    )
    if quantity_change < 0:
        stmt = stmt.where(models.InventoryLevel.current_stock >= -quantity_change)

    result = db.execute(stmt.execution_options(synchronize_session=False))
    if result.rowcount != 1:
        raise ConflictError(
            f"Inventory level {level_id} changed concurrently",
            details={"inventory_level_id": level_id},
        )


def stock_on_hand(db: Session, product_id: int) -> int:
    """Sum of a product's stock across all warehouses."""
    total = (
        db.query(func.coalesce(func.sum(models.InventoryLevel.current_stock), 0))
        .filter(models.InventoryLevel.product_id == product_id)
        .scalar()
    )
    return int(total or 0)


def levels_for_product(db: Session, product_id: int) -> List[models.InventoryLevel]:
    return (
        db.query(models.InventoryLevel)
        .filter(models.InventoryLevel.product_id == product_id)
        .order_by(models.InventoryLevel.warehouse_id)
        .all()
    )


def reserve_and_decrement_many(
    db: Session,
    demands: Dict[int, int],
    reference_id: Optional[str] = None,
    user_id: Optional[str] = None,
) -> List[Allocation]:
    """
    Take stock for several products as one all-or-nothing step.

    Every product is locked and checked before any level is touched, so an
    InsufficientStockError leaves the session unmodified.

    Args:
        db: Database session (not committed here)
        demands: Mapping of product id to total quantity
        reference_id: Order id written to the movement log
        user_id: Acting user written to the movement log

    Returns:
        The allocations actually applied, for a symmetric restock

    Raises:
        ValidationError: if any quantity is not positive
        InsufficientStockError: if any product's aggregate stock is short
    """
    plans = []
    # Lock products in a fixed order so concurrent verifications cannot deadlock
    for product_id in sorted(demands):
        quantity = demands[product_id]
        if quantity <= 0:
            raise ValidationError(f"Quantity for product {product_id} must be positive")

        levels = _lock_levels(db, product_id)
        available = sum(level.current_stock for level in levels)
        if available < quantity:
            logger.warning(
                f"Insufficient stock for product {product_id}: available {available}, requested {quantity}"
            )
            raise InsufficientStockError(product_id, quantity, available)
        plans.append((product_id, plan_allocation(levels, quantity)))

    allocations = []
    for product_id, plan in plans:
        for level, amount in plan:
            _apply_change(db, level.id, -amount)
            _record_movement(db, product_id, level.warehouse_id, -amount,
                             REASON_ORDER_VERIFIED, REFERENCE_ORDER, reference_id, user_id)
            allocations.append(Allocation(product_id, level.warehouse_id, amount))
            logger.info(f"Decremented {amount} units of product {product_id} in warehouse {level.warehouse_id}")

    db.flush()
    return allocations


def reserve_and_decrement(
    db: Session,
    product_id: int,
    quantity: int,
    reference_id: Optional[str] = None,
    user_id: Optional[str] = None,
) -> List[Allocation]:
    """Take stock for a single product; see reserve_and_decrement_many."""
    return reserve_and_decrement_many(db, {product_id: quantity}, reference_id, user_id)


def _get_or_create_level(db: Session, product_id: int, warehouse_id: int) -> models.InventoryLevel:
    level = (
        db.query(models.InventoryLevel)
        .filter(
            models.InventoryLevel.product_id == product_id,
            models.InventoryLevel.warehouse_id == warehouse_id,
        )
        .populate_existing()
        .with_for_update()
        .first()
    )
    if level is not None:
        return level

    level = models.InventoryLevel(product_id=product_id, warehouse_id=warehouse_id, current_stock=0)
    db.add(level)
    try:
        db.flush()
    except IntegrityError:
        raise ConflictError(
            f"Inventory level for product {product_id} in warehouse {warehouse_id} was created concurrently",
            details={"product_id": product_id, "warehouse_id": warehouse_id},
        )
    return level


def restock(
    db: Session,
    allocations: Iterable[Allocation],
    reference_id: Optional[str] = None,
    user_id: Optional[str] = None,
    reason: str = REASON_ORDER_CANCELLED,
) -> None:
    """
    Return previously decremented allocations to their warehouses.

    Args:
        db: Database session (not committed here)
        allocations: Allocations returned by reserve_and_decrement
        reference_id: Order id written to the movement log
        user_id: Acting user written to the movement log
        reason: Movement reason
    """
    allocations = sorted(allocations, key=lambda a: (a.product_id, a.warehouse_id))
    # Same lock order as reserve_and_decrement_many: products ascending, levels by id
    for product_id in sorted({a.product_id for a in allocations}):
        _lock_levels(db, product_id)

    for allocation in allocations:
        level = _get_or_create_level(db, allocation.product_id, allocation.warehouse_id)
        _apply_change(db, level.id, allocation.amount)
        _record_movement(db, allocation.product_id, allocation.warehouse_id, allocation.amount,
                         reason, REFERENCE_ORDER, reference_id, user_id)
        logger.info(
            f"Restocked {allocation.amount} units of product {allocation.product_id} "
            f"in warehouse {allocation.warehouse_id}"
        )
    db.flush()


def adjust_stock(
    db: Session,
    product_id: int,
    warehouse_id: int,
    quantity_change: int,
    reason: Optional[str] = None,
    reference_id: Optional[str] = None,
    user_id: Optional[str] = None,
) -> models.InventoryLevel:
    """
    Apply a manual stock movement (receiving, shrinkage, counts).

    Args:
        db: Database session (not committed here)
        product_id: Product to move
        warehouse_id: Warehouse to move it in
        quantity_change: Positive to add stock, negative to remove it
        reason: Free-text reason for the movement log
        reference_id: External reference (invoice, count sheet)
        user_id: Acting user

    Returns:
        The updated InventoryLevel

    Raises:
        NotFoundError: if the product or warehouse does not exist
        InsufficientStockError: if a removal exceeds the warehouse's stock
    """
    if quantity_change == 0:
        raise ValidationError("Quantity change cannot be zero")
    if db.get(models.Product, product_id) is None:
        raise NotFoundError(f"Product {product_id} not found", details={"product_id": product_id})
    if db.get(models.Warehouse, warehouse_id) is None:
        raise NotFoundError(f"Warehouse {warehouse_id} not found", details={"warehouse_id": warehouse_id})

    level = _get_or_create_level(db, product_id, warehouse_id)
    if quantity_change < 0 and level.current_stock < -quantity_change:
        raise InsufficientStockError(product_id, -quantity_change, level.current_stock)

    _apply_change(db, level.id, quantity_change)
    _record_movement(db, product_id, warehouse_id, quantity_change,
                     reason, REFERENCE_MANUAL, reference_id, user_id)
    db.flush()
    db.refresh(level)
    logger.info(f"Adjusted product {product_id} in warehouse {warehouse_id} by {quantity_change}")
    return level
