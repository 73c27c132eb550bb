"""
Order fulfillment workflow.

    draft -> pending_verification -> processing_fulfillment
          -> ready_for_pickup -> completed

Any non-terminal order can also move to cancelled. Every transition:

- runs inside one database transaction (see database.transaction),
- writes the new status with `UPDATE ... WHERE status = <status read>`
  and raises ConflictError when another transition got there first,
- appends an OrderEvent to the order's timeline.

verify_payment is the only transition with side effects beyond the order
row: it decrements stock through the ledger and records the agent's
commission in the same transaction, so either all three effects are
committed or none are. cancel undoes both for verified orders.
"""
import logging
import uuid
from collections import OrderedDict
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Dict, List, Optional, TypeVar
from sqlalchemy import update
from sqlalchemy.orm import Session

from . import cache, commission, crud, ledger, models, schemas, validators
from .config import MAX_TRANSITION_RETRIES
from .database import transaction, utcnow
from .errors import (
    ConflictError, NotFoundError, PermissionDeniedError, PreconditionError,
)
from .models import OrderStatus, TERMINAL_STATUSES, VERIFIED_STATUSES

logger = logging.getLogger(__name__)

T = TypeVar("T")

CENT = Decimal("0.01")

ALLOWED_TRANSITIONS = {
    OrderStatus.DRAFT.value: {OrderStatus.PENDING_VERIFICATION.value, OrderStatus.CANCELLED.value},
    OrderStatus.PENDING_VERIFICATION.value: {OrderStatus.PROCESSING_FULFILLMENT.value, OrderStatus.CANCELLED.value},
    OrderStatus.PROCESSING_FULFILLMENT.value: {OrderStatus.READY_FOR_PICKUP.value, OrderStatus.CANCELLED.value},
    OrderStatus.READY_FOR_PICKUP.value: {OrderStatus.COMPLETED.value, OrderStatus.CANCELLED.value},
    OrderStatus.COMPLETED.value: set(),
    OrderStatus.CANCELLED.value: set(),
}


def new_order_id() -> str:
    return f"ORD-{uuid.uuid4().hex[:12].upper()}"


def log_order_event(
    db: Session,
    order_id: str,
    event_type: str,
    description: str,
    old_value: Optional[str] = None,
    new_value: Optional[str] = None,
    user_id: Optional[str] = None,
) -> None:
    """
    Append an event to the order timeline (committed with the transition).

    Args:
        db: Database session
        order_id: Order identifier
        event_type: Type of event (e.g., "created", "status_changed")
        description: Human-readable description
        old_value: Previous value (optional)
        new_value: New value (optional)
        user_id: User who triggered the event (optional)
    """
    db.add(models.OrderEvent(
        order_id=order_id,
        event_type=event_type,
        description=description,
        old_value=old_value,
        new_value=new_value,
        user_id=user_id,
    ))


def _load_order(db: Session, order_id: str) -> models.Order:
    """Read the order's current state, locking its row where supported."""
    order = (
        db.query(models.Order)
        .filter(models.Order.id == order_id)
        .populate_existing()
        .with_for_update()
        .first()
    )
    if order is None:
        raise NotFoundError(f"Order {order_id} not found", details={"order_id": order_id})
    return order


def _require_auditor(actor: schemas.Actor, action: str) -> None:
    if not actor.is_auditor:
        raise PermissionDeniedError(
            f"Only auditors can {action}",
            details={"user_id": actor.id, "role": actor.role},
        )


def _require_owner(order: models.Order, actor: schemas.Actor, action: str) -> None:
    if order.agent_id != actor.id:
        raise PermissionDeniedError(
            f"Only the owning agent can {action}",
            details={"order_id": order.id, "user_id": actor.id},
        )


def _require_status(order: models.Order, expected: str, action: str) -> None:
    if order.status != expected:
        raise PreconditionError(
            f"Cannot {action} order {order.id} in status '{order.status}'",
            details={"order_id": order.id, "status": order.status, "expected_status": expected},
        )


def _transition(
    db: Session,
    order: models.Order,
    new_status: str,
    actor: schemas.Actor,
    description: str,
    **values,
) -> None:
    """
    Move an order to a new status, conditioned on the status just read.

    Raises:
        PreconditionError: if the graph does not allow the move
        ConflictError: if the stored status changed since it was read
    """
    old_status = order.status
    if new_status not in ALLOWED_TRANSITIONS.get(old_status, set()):
        raise PreconditionError(
            f"Invalid status transition: {old_status} -> {new_status}",
            details={"order_id": order.id, "status": old_status, "requested_status": new_status},
        )

    now = utcnow()
    result = db.execute(
        update(models.Order)
        .where(models.Order.id == order.id, models.Order.status == old_status)
        .values(status=new_status, updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.warning(f"Order {order.id} left status '{old_status}' concurrently")
        raise ConflictError(
            f"Order {order.id} was modified concurrently; re-read and retry",
            details={"order_id": order.id, "expected_status": old_status},
        )

    log_order_event(
        db=db,
        order_id=order.id,
        event_type="status_changed",
        description=description,
        old_value=old_status,
        new_value=new_status,
        user_id=actor.id,
    )
    logger.info(f"Order {order.id}: {old_status} -> {new_status} by {actor.id}")


def _finish(db: Session, order_id: str) -> models.Order:
    cache.invalidate_dashboard()
    order = crud.get_order(db, order_id)
    db.refresh(order)
    return order


def create_draft(
    db: Session,
    agent: schemas.Actor,
    customer_ref: str,
    items: List[schemas.OrderItemCreate],
) -> models.Order:
    """
    Create a new order in draft.

    Unit prices are frozen here: an explicit quoted price wins, otherwise
    the product's current list price is copied onto the line.

    Args:
        db: Database session
        agent: Agent creating (and owning) the draft
        customer_ref: Customer reference
        items: Line items (product, quantity, optional unit price)

    Returns:
        Created Order object

    Raises:
        ValidationError: if items is empty or any quantity is not positive
        NotFoundError: if a product does not exist
    """
    validators.validate_draft_items(items)
    customer_ref = validators.validate_customer_ref(customer_ref)

    with transaction(db):
        order = models.Order(
            id=new_order_id(),
            agent_id=agent.id,
            customer_ref=customer_ref,
            status=OrderStatus.DRAFT.value,
            shipping_cost=Decimal("0"),
        )
        subtotal = Decimal("0")
        for item in items:
            product = crud.require_product(db, item.product_id)
            unit_price = item.unit_price if item.unit_price is not None else product.price
            unit_price = Decimal(str(unit_price)).quantize(CENT, rounding=ROUND_HALF_UP)
            order.items.append(models.OrderItem(
                product_id=product.id,
                quantity=item.quantity,
                unit_price=unit_price,
            ))
            subtotal += unit_price * item.quantity
        order.subtotal = subtotal
        db.add(order)
        db.flush()

        log_order_event(
            db=db,
            order_id=order.id,
            event_type="created",
            description=f"Draft created with {len(items)} item(s)",
            new_value=order.status,
            user_id=agent.id,
        )

    logger.info(f"Agent {agent.id} created draft {order.id} (subtotal {subtotal})")
    return _finish(db, order.id)


def submit_for_verification(
    db: Session,
    order_id: str,
    agent: schemas.Actor,
    bank_ref: Optional[str],
    evidence_ref: Optional[str],
    shipping_address: Optional[str] = None,
    shipping_cost: Decimal = Decimal("0"),
) -> models.Order:
    """
    Attach payment evidence to a draft and queue it for the auditor.

    No stock or commission changes happen here; the payment is unconfirmed.

    Raises:
        PreconditionError: if bank_ref is blank, evidence is missing, or the
            order is not a draft
        PermissionDeniedError: if the agent does not own the order
        ValidationError: if shipping_cost is negative
    """
    validators.validate_payment_evidence(bank_ref, evidence_ref)
    shipping_cost = Decimal(str(shipping_cost if shipping_cost is not None else 0))
    validators.validate_shipping_cost(shipping_cost)

    with transaction(db):
        order = _load_order(db, order_id)
        _require_status(order, OrderStatus.DRAFT.value, "submit")
        _require_owner(order, agent, "submit this order")
        _transition(
            db, order, OrderStatus.PENDING_VERIFICATION.value, agent,
            f"Submitted for verification with bank reference '{bank_ref.strip()}'",
            bank_ref=bank_ref.strip(),
            evidence_ref=evidence_ref.strip(),
            shipping_address=shipping_address,
            shipping_cost=shipping_cost.quantize(CENT, rounding=ROUND_HALF_UP),
        )

    return _finish(db, order_id)


def _demand_by_product(items) -> Dict[int, int]:
    demands = OrderedDict()
    for item in items:
        demands[item.product_id] = demands.get(item.product_id, 0) + item.quantity
    return demands


def _is_verified(order: models.Order) -> bool:
    return (
        order.status in VERIFIED_STATUSES
        and order.commission is not None
        and not order.commission.voided
    )


def verify_payment(db: Session, order_id: str, auditor: schemas.Actor) -> models.Order:
    """
    Confirm the payment and commit inventory and commission atomically.

    Verifying an order that is already verified returns it unchanged.

    Raises:
        PermissionDeniedError: if the actor is not an auditor
        PreconditionError: if the order is not pending verification
        InsufficientStockError: if any product's aggregate stock is short;
            the order stays in pending_verification
        ConflictError: if another transition changed the order first
    """
    _require_auditor(auditor, "verify payments")

    with transaction(db):
        order = _load_order(db, order_id)
        if _is_verified(order):
            logger.info(f"Order {order_id} already verified; returning existing result")
            return order
        _require_status(order, OrderStatus.PENDING_VERIFICATION.value, "verify payment for")

        _transition(
            db, order, OrderStatus.PROCESSING_FULFILLMENT.value, auditor,
            f"Payment verified (bank reference '{order.bank_ref}')",
        )

        allocations = ledger.reserve_and_decrement_many(
            db, _demand_by_product(order.items), reference_id=order.id, user_id=auditor.id,
        )
        for allocation in allocations:
            db.add(models.OrderAllocation(
                order_id=order.id,
                product_id=allocation.product_id,
                warehouse_id=allocation.warehouse_id,
                amount=allocation.amount,
            ))

        policy = crud.get_commission_policy(db, order.agent_id)
        amount = commission.accrue(order, policy)
        db.add(models.CommissionAccrual(
            order_id=order.id,
            agent_id=order.agent_id,
            amount=amount,
            rate=policy.rate,
        ))
        db.flush()
        logger.info(f"Accrued commission {amount} to agent {order.agent_id} for order {order.id}")

    return _finish(db, order_id)


def reject_payment(
    db: Session,
    order_id: str,
    auditor: schemas.Actor,
    reason: Optional[str] = None,
) -> models.Order:
    """
    Reject the payment evidence; the order is cancelled with no stock effect.
    """
    _require_auditor(auditor, "reject payments")

    with transaction(db):
        order = _load_order(db, order_id)
        _require_status(order, OrderStatus.PENDING_VERIFICATION.value, "reject payment for")
        _transition(
            db, order, OrderStatus.CANCELLED.value, auditor,
            f"Payment rejected: {reason or 'no reason given'}",
            status_reason=reason,
        )

    return _finish(db, order_id)


def mark_ready(db: Session, order_id: str, actor: schemas.Actor) -> models.Order:
    """processing_fulfillment -> ready_for_pickup."""
    _require_auditor(actor, "mark orders ready")

    with transaction(db):
        order = _load_order(db, order_id)
        _require_status(order, OrderStatus.PROCESSING_FULFILLMENT.value, "mark ready")
        _transition(db, order, OrderStatus.READY_FOR_PICKUP.value, actor, "Order packed and ready for pickup")

    return _finish(db, order_id)


def mark_shipped(db: Session, order_id: str, actor: schemas.Actor) -> models.Order:
    """ready_for_pickup -> completed."""
    _require_auditor(actor, "mark orders shipped")

    with transaction(db):
        order = _load_order(db, order_id)
        _require_status(order, OrderStatus.READY_FOR_PICKUP.value, "mark shipped")
        _transition(db, order, OrderStatus.COMPLETED.value, actor, "Order dispatched")

    return _finish(db, order_id)


def cancel(
    db: Session,
    order_id: str,
    actor: schemas.Actor,
    reason: Optional[str] = None,
) -> models.Order:
    """
    Cancel a non-terminal order.

    A verified order gets its allocations restocked and its commission
    voided in the same transaction as the status change. Only the owning
    agent may cancel a draft; anything later needs an auditor.

    Raises:
        PreconditionError: if the order is already completed or cancelled
        PermissionDeniedError: if the actor may not cancel this order
    """
    with transaction(db):
        order = _load_order(db, order_id)
        if order.status in TERMINAL_STATUSES:
            raise PreconditionError(
                f"Cannot cancel order {order.id} in status '{order.status}'",
                details={"order_id": order.id, "status": order.status},
            )
        if order.status == OrderStatus.DRAFT.value:
            _require_owner(order, actor, "cancel this draft")
        else:
            _require_auditor(actor, "cancel submitted orders")

        was_verified = order.status in VERIFIED_STATUSES
        _transition(
            db, order, OrderStatus.CANCELLED.value, actor,
            f"Order cancelled: {reason or 'no reason given'}",
            status_reason=reason,
        )

        if was_verified:
            ledger.restock(
                db,
                [ledger.Allocation(a.product_id, a.warehouse_id, a.amount) for a in order.allocations],
                reference_id=order.id,
                user_id=actor.id,
            )
            accrual = order.commission
            if accrual is not None and not accrual.voided:
                accrual.voided = True
                accrual.voided_at = utcnow()
                logger.info(f"Voided commission {accrual.amount} of agent {accrual.agent_id} on order {order.id}")
            db.flush()

    return _finish(db, order_id)


def get_order_timeline(db: Session, order_id: str) -> List[models.OrderEvent]:
    if crud.get_order(db, order_id) is None:
        raise NotFoundError(f"Order {order_id} not found", details={"order_id": order_id})
    return crud.get_order_events(db, order_id)


def run_with_retry(operation: Callable[..., T], *args, attempts: int = MAX_TRANSITION_RETRIES, **kwargs) -> T:
    """
    Call a transition, retrying a bounded number of times on ConflictError.

    Each retry re-reads the order, so a transition that lost a race either
    succeeds against the new state or fails with the error that state implies.
    """
    for attempt in range(1, attempts + 1):
        try:
            return operation(*args, **kwargs)
        except ConflictError:
            if attempt >= attempts:
                raise
            logger.warning(f"{operation.__name__} conflicted (attempt {attempt}/{attempts}); retrying")
