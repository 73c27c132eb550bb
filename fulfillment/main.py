"""
Fulfillment Service API

This module implements a FastAPI-based service for the order fulfillment
pipeline: agents build drafts and attach payment evidence, auditors verify
payments (which commits stock and commission), and the warehouse moves
orders through pickup and dispatch.

Each workflow operation is one endpoint. Failures are returned with a
distinct status code and a machine-readable `error` field:

    400 validation_error      malformed input
    403 permission_denied     role or ownership check failed
    404 not_found             order, product or warehouse absent
    409 conflict              concurrent transition; re-read and retry
    409 insufficient_stock    stock short; order stays pending_verification
    412 precondition_failed   wrong status or missing payment evidence

Endpoints:
    POST /orders: Create a draft
    POST /orders/{order_id}/evidence: Upload a payment receipt
    POST /orders/{order_id}/submit: Submit a draft for verification
    POST /orders/{order_id}/verify: Verify payment (auditor)
    POST /orders/{order_id}/reject: Reject payment (auditor)
    POST /orders/{order_id}/ready: Mark ready for pickup (auditor)
    POST /orders/{order_id}/ship: Mark shipped (auditor)
    POST /orders/{order_id}/cancel: Cancel an order
    GET /dashboard: Today's sales, low stock and lost demand
    GET /healthz: Health check endpoint for orchestration systems

Attributes:
    app (FastAPI): The FastAPI application instance configured with the title "fulfillment-service"
"""
from typing import List, Optional
import csv
import io
import json
import logging
import httpx
from fastapi import FastAPI, Depends, HTTPException, Query, Request, status, UploadFile, File
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.orm import Session

from . import auth, cache, crud, dashboard, ledger, models, schemas, workflow
from .clients import evidence_client
from .config import LOG_LEVEL
from .database import engine, get_db, transaction
from .errors import FulfillmentError, NotFoundError, PermissionDeniedError, PreconditionError

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

# Create database tables
models.Base.metadata.create_all(bind=engine)

app = FastAPI(title="fulfillment-service")


@app.exception_handler(FulfillmentError)
async def fulfillment_error_handler(request: Request, exc: FulfillmentError):
    """Render workflow errors with their status code and structured details."""
    logger.info(f"{request.method} {request.url.path} -> {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def _order_out(order: models.Order) -> schemas.Order:
    return schemas.Order.model_validate(order)


def _get_visible_order(db: Session, order_id: str, current_user: auth.CurrentUser) -> models.Order:
    """Load an order the current user may see (owner or auditor)."""
    db_order = crud.get_order(db, order_id=order_id)
    if db_order is None:
        raise NotFoundError(f"Order {order_id} not found", details={"order_id": order_id})

    if not current_user.is_auditor and db_order.agent_id != current_user.id:
        raise PermissionDeniedError(
            "Not authorized to access this order",
            details={"order_id": order_id, "user_id": current_user.id},
        )
    return db_order


@app.get("/healthz", response_model=dict)
def health():
    """
    Health check endpoint for the fulfillment service.

    Returns:
        dict: {"status": "healthy"} when the service is operational.
    """
    return {"status": "healthy"}


@app.get("/orders", response_model=List[schemas.Order])
def list_orders(
    status_filter: Optional[str] = Query(None, alias="status"),
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    List orders with pagination (agents see their own, auditors see all).

    Args:
        status_filter: Only orders in this status (optional)
        skip: Number of records to skip (default: 0)
        limit: Maximum number of records to return (default: 100)
    """
    agent_id = None if current_user.is_auditor else current_user.id
    orders = crud.get_orders(db, agent_id=agent_id, status=status_filter, skip=skip, limit=limit)
    return [_order_out(order) for order in orders]


@app.post("/orders", response_model=schemas.Order, status_code=status.HTTP_201_CREATED)
def create_draft(
    draft: schemas.DraftCreate,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Create a draft order owned by the current user.

    Raises:
        400 if there are no items or a quantity is not positive
        404 if a product does not exist
    """
    order = workflow.create_draft(db, current_user, draft.customer_ref, draft.items)
    return _order_out(order)


@app.get("/orders/export/csv")
def export_orders_csv(
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Export orders to CSV (agents see their own, auditors see all).

    Returns:
        CSV file with columns: id, agent_id, customer_ref, status, subtotal,
        shipping_cost, total, bank_ref, items_json, created_at
        items_json is a JSON-encoded array of order items
    """
    agent_id = None if current_user.is_auditor else current_user.id
    orders = crud.get_orders(db, agent_id=agent_id, skip=0, limit=10000)

    output = io.StringIO()
    writer = csv.writer(output)

    writer.writerow(['id', 'agent_id', 'customer_ref', 'status', 'subtotal',
                     'shipping_cost', 'total', 'bank_ref', 'items_json', 'created_at'])

    for order in orders:
        items_json = json.dumps([
            {
                'product_id': item.product_id,
                'quantity': item.quantity,
                'unit_price': str(item.unit_price)
            }
            for item in order.items
        ])
        writer.writerow([
            order.id,
            order.agent_id,
            order.customer_ref,
            order.status,
            str(order.subtotal),
            str(order.shipping_cost),
            str(order.total),
            order.bank_ref or '',
            items_json,
            order.created_at.isoformat()
        ])

    output.seek(0)
    return StreamingResponse(
        iter([output.getvalue()]),
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=orders.csv"}
    )


@app.get("/orders/{order_id}", response_model=schemas.Order)
def get_order(
    order_id: str,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Get a single order by ID (owner or auditor).

    Raises:
        403 if not authorized
        404 if order not found
    """
    return _order_out(_get_visible_order(db, order_id, current_user))


@app.get("/orders/{order_id}/timeline", response_model=List[schemas.OrderEvent])
def get_order_timeline(
    order_id: str,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Get the timeline of events for an order (owner or auditor), oldest first.
    """
    _get_visible_order(db, order_id, current_user)
    return [schemas.OrderEvent.model_validate(e) for e in workflow.get_order_timeline(db, order_id)]


@app.post("/orders/{order_id}/evidence", response_model=schemas.EvidenceUploaded)
async def upload_payment_evidence(
    order_id: str,
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Upload a payment receipt for a draft to the evidence store.

    The returned `evidence_ref` is what the agent passes to submit.

    Raises:
        403 if the current user does not own the order
        412 if the order is no longer a draft
        503 if the evidence store is unavailable
    """
    db_order = _get_visible_order(db, order_id, current_user)
    if db_order.agent_id != current_user.id:
        raise PermissionDeniedError("Only the owning agent can attach evidence",
                                    details={"order_id": order_id})
    if db_order.status != models.OrderStatus.DRAFT.value:
        raise PreconditionError(
            f"Cannot attach evidence to order {order_id} in status '{db_order.status}'",
            details={"order_id": order_id, "status": db_order.status},
        )

    content = await file.read()
    try:
        url = await evidence_client.upload_evidence(
            file.filename or f"{order_id}-receipt", content, file.content_type, token=current_user.token
        )
    except httpx.HTTPError as e:
        logger.error(f"Evidence upload for order {order_id} failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Evidence store error: {str(e)}"
        )
    return schemas.EvidenceUploaded(order_id=order_id, evidence_ref=url)


@app.post("/orders/{order_id}/submit", response_model=schemas.Order)
def submit_for_verification(
    order_id: str,
    payload: schemas.SubmitForVerification,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Submit a draft with its bank reference and receipt for payment verification.

    Raises:
        403 if the current user does not own the order
        412 if the bank reference or evidence is missing, or the order is not a draft
    """
    order = workflow.run_with_retry(
        workflow.submit_for_verification, db, order_id, current_user,
        payload.bank_ref, payload.evidence_ref, payload.shipping_address, payload.shipping_cost,
    )
    return _order_out(order)


@app.post("/orders/{order_id}/verify", response_model=schemas.Order)
def verify_payment(
    order_id: str,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_auditor)
):
    """
    Verify the payment: decrement stock, accrue commission, start fulfillment.

    Idempotent: verifying an already verified order returns it unchanged.

    Raises:
        409 insufficient_stock if stock cannot cover the order
        412 if the order is not pending verification
    """
    order = workflow.run_with_retry(workflow.verify_payment, db, order_id, current_user)
    return _order_out(order)


@app.post("/orders/{order_id}/reject", response_model=schemas.Order)
def reject_payment(
    order_id: str,
    payload: schemas.TransitionReason,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_auditor)
):
    """Reject the payment evidence and cancel the order (auditor only)."""
    order = workflow.run_with_retry(workflow.reject_payment, db, order_id, current_user, payload.reason)
    return _order_out(order)


@app.post("/orders/{order_id}/ready", response_model=schemas.Order)
def mark_ready(
    order_id: str,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_auditor)
):
    """Mark a verified order as packed and ready for pickup."""
    order = workflow.run_with_retry(workflow.mark_ready, db, order_id, current_user)
    return _order_out(order)


@app.post("/orders/{order_id}/ship", response_model=schemas.Order)
def mark_shipped(
    order_id: str,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_auditor)
):
    """Mark a ready order as dispatched, completing it."""
    order = workflow.run_with_retry(workflow.mark_shipped, db, order_id, current_user)
    return _order_out(order)


@app.post("/orders/{order_id}/cancel", response_model=schemas.Order)
def cancel_order(
    order_id: str,
    payload: schemas.TransitionReason,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Cancel an order. Verified orders get their stock restocked and their
    commission voided.
    """
    order = workflow.run_with_retry(workflow.cancel, db, order_id, current_user, payload.reason)
    return _order_out(order)


@app.get("/products", response_model=List[schemas.Product])
def list_products(
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    products = db.query(models.Product).order_by(models.Product.id).offset(skip).limit(limit).all()
    return [schemas.Product.model_validate(p) for p in products]


@app.post("/products", response_model=schemas.Product, status_code=status.HTTP_201_CREATED)
def create_product(
    product: schemas.ProductCreate,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    """
    Create a catalog product (admin only).

    Raises:
        HTTPException: 400 if SKU already exists
    """
    if crud.get_product_by_sku(db, sku=product.sku):
        raise HTTPException(status_code=400, detail="SKU already exists")
    return schemas.Product.model_validate(crud.create_product(db=db, product=product))


@app.post("/warehouses", response_model=schemas.Warehouse, status_code=status.HTTP_201_CREATED)
def create_warehouse(
    warehouse: schemas.WarehouseCreate,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    """
    Create a warehouse (admin only).

    Raises:
        HTTPException: 400 if the name already exists
    """
    if crud.get_warehouse_by_name(db, name=warehouse.name):
        raise HTTPException(status_code=400, detail="Warehouse already exists")
    return schemas.Warehouse.model_validate(crud.create_warehouse(db=db, warehouse=warehouse))


@app.post("/inventory/movements", response_model=schemas.InventoryLevel, status_code=status.HTTP_201_CREATED)
def record_inventory_movement(
    movement: schemas.InventoryMovementCreate,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_auditor)
):
    """
    Record a manual stock movement (receiving, shrinkage, counts).

    Raises:
        404 if the product or warehouse does not exist
        409 insufficient_stock if an OUT movement exceeds the warehouse's stock
    """
    quantity_change = movement.quantity if movement.type == "IN" else -movement.quantity
    with transaction(db):
        level = ledger.adjust_stock(
            db,
            movement.product_id,
            movement.warehouse_id,
            quantity_change,
            reason=movement.reason,
            reference_id=movement.reference,
            user_id=current_user.id,
        )
    cache.invalidate_dashboard()
    db.refresh(level)
    return schemas.InventoryLevel.model_validate(level)


@app.get("/inventory/{product_id}", response_model=schemas.ProductStock)
def get_product_stock(
    product_id: int,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """Per-warehouse stock and total for a product."""
    crud.require_product(db, product_id)
    levels = ledger.levels_for_product(db, product_id)
    return schemas.ProductStock(
        product_id=product_id,
        total_stock=sum(level.current_stock for level in levels),
        levels=[schemas.InventoryLevel.model_validate(level) for level in levels],
    )


@app.get("/inventory/{product_id}/movements", response_model=List[schemas.InventoryMovement])
def get_product_movements(
    product_id: int,
    limit: int = 100,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_auditor)
):
    """Most recent ledger movements for a product (auditor only)."""
    crud.require_product(db, product_id)
    return [schemas.InventoryMovement.model_validate(m) for m in crud.get_movements(db, product_id, limit)]


@app.put("/agents/{agent_id}/commission", response_model=schemas.AgentProfile)
def update_agent_commission(
    agent_id: str,
    settings: schemas.AgentCommissionUpdate,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    """Set an agent's commission rate and shipping cut (admin only)."""
    return schemas.AgentProfile.model_validate(crud.upsert_agent_profile(db, agent_id, settings))


@app.post("/lost-demand", response_model=schemas.LostDemand, status_code=status.HTTP_201_CREATED)
def record_lost_demand(
    event: schemas.LostDemandCreate,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """Log a customer search that matched no product."""
    db_event = crud.record_lost_demand(db, event, user_id=current_user.id)
    cache.invalidate_dashboard()
    return schemas.LostDemand.model_validate(db_event)


@app.get("/dashboard", response_model=schemas.DashboardSummary)
def get_dashboard(
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Today's sales, low-stock alerts and the top five lost-demand searches.
    """
    return dashboard.summary(db)


@app.get("/dashboard/agent", response_model=schemas.AgentDailyStats)
def get_agent_dashboard(
    agent_id: Optional[str] = None,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Today's stats for an agent. Agents always get their own; auditors may
    pass `agent_id`.
    """
    if agent_id is None or not current_user.is_auditor:
        agent_id = current_user.id
    return dashboard.agent_daily_stats(db, agent_id)


@app.get("/dashboard/commissions", response_model=List[schemas.AgentCommissionSummary])
def get_commission_dashboard(
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """Earned commission per agent (auditors see all agents, agents their own)."""
    agent_id = None if current_user.is_auditor else current_user.id
    return dashboard.commission_summary(db, agent_id=agent_id)
