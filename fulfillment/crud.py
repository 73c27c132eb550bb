"""
CRUD (Create, Read, Update, Delete) operations for the Fulfillment service.

This module contains the plain database operations around the workflow:
order reads, catalog and warehouse setup, agent commission settings and
the lost-demand log. Order state changes live in workflow.py and stock
changes in ledger.py.
"""
import logging
from typing import List, Optional
from sqlalchemy.orm import Session
from . import models, schemas
from .commission import CommissionPolicy, policy_from_profile
from .errors import NotFoundError, ValidationError

# Set up logging
logger = logging.getLogger(__name__)


def get_order(db: Session, order_id: str) -> Optional[models.Order]:
    """
    Retrieve a single order by ID.

    Args:
        db: Database session
        order_id: ID of the order to retrieve

    Returns:
        Order object or None if not found
    """
    return db.query(models.Order).filter(models.Order.id == order_id).first()


def get_orders(
    db: Session,
    agent_id: Optional[str] = None,
    status: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
) -> List[models.Order]:
    """
    Retrieve a list of orders with pagination, newest first.

    Args:
        db: Database session
        agent_id: Only orders owned by this agent (optional)
        status: Only orders in this status (optional)
        skip: Number of records to skip (offset)
        limit: Maximum number of records to return

    Returns:
        List of Order objects
    """
    query = db.query(models.Order)
    if agent_id is not None:
        query = query.filter(models.Order.agent_id == agent_id)
    if status is not None:
        query = query.filter(models.Order.status == status)
    return query.order_by(models.Order.created_at.desc(), models.Order.id).offset(skip).limit(limit).all()


def get_order_events(db: Session, order_id: str) -> List[models.OrderEvent]:
    return (
        db.query(models.OrderEvent)
        .filter(models.OrderEvent.order_id == order_id)
        .order_by(models.OrderEvent.created_at.asc(), models.OrderEvent.id.asc())
        .all()
    )


def get_product(db: Session, product_id: int) -> Optional[models.Product]:
    return db.get(models.Product, product_id)


def get_product_by_sku(db: Session, sku: str) -> Optional[models.Product]:
    """
    Retrieve a product by SKU.

    Args:
        db: Database session
        sku: SKU to search for

    Returns:
        Product object or None if not found
    """
    return db.query(models.Product).filter(models.Product.sku == sku).first()


def create_product(db: Session, product: schemas.ProductCreate) -> models.Product:
    """
    Create a new catalog product.

    Args:
        db: Database session
        product: Product data to create

    Returns:
        Created Product object
    """
    db_product = models.Product(
        sku=product.sku,
        name=product.name,
        price=product.price,
        min_stock_threshold=product.min_stock_threshold,
    )
    db.add(db_product)
    db.commit()
    db.refresh(db_product)
    logger.info(f"Created product {db_product.id} ({db_product.sku})")
    return db_product


def get_warehouse_by_name(db: Session, name: str) -> Optional[models.Warehouse]:
    return db.query(models.Warehouse).filter(models.Warehouse.name == name).first()


def create_warehouse(db: Session, warehouse: schemas.WarehouseCreate) -> models.Warehouse:
    db_warehouse = models.Warehouse(name=warehouse.name)
    db.add(db_warehouse)
    db.commit()
    db.refresh(db_warehouse)
    return db_warehouse


def get_movements(db: Session, product_id: int, limit: int = 100) -> List[models.InventoryMovement]:
    return (
        db.query(models.InventoryMovement)
        .filter(models.InventoryMovement.product_id == product_id)
        .order_by(models.InventoryMovement.id.desc())
        .limit(limit)
        .all()
    )


def get_agent_profile(db: Session, agent_id: str) -> Optional[models.AgentProfile]:
    return db.get(models.AgentProfile, agent_id)


def get_commission_policy(db: Session, agent_id: str) -> CommissionPolicy:
    """Commission policy for an agent; the house default when none is configured."""
    return policy_from_profile(get_agent_profile(db, agent_id))


def upsert_agent_profile(db: Session, agent_id: str, settings: schemas.AgentCommissionUpdate) -> models.AgentProfile:
    """
    Create or replace an agent's commission settings.

    Args:
        db: Database session
        agent_id: Agent identifier from the identity provider
        settings: New commission settings

    Returns:
        The stored AgentProfile
    """
    profile = get_agent_profile(db, agent_id)
    if profile is None:
        profile = models.AgentProfile(agent_id=agent_id)
        db.add(profile)

    for key, value in settings.model_dump().items():
        setattr(profile, key, value)

    db.commit()
    db.refresh(profile)
    logger.info(f"Commission settings for agent {agent_id}: rate {profile.commission_rate}")
    return profile


def record_lost_demand(
    db: Session,
    event: schemas.LostDemandCreate,
    user_id: Optional[str] = None,
) -> models.DemandMissEvent:
    """
    Append a search that matched no product to the lost-demand log.

    Args:
        db: Database session
        event: Search text and optional customer details
        user_id: Agent who recorded the miss

    Returns:
        Created DemandMissEvent

    Raises:
        ValidationError: if the search text is blank
    """
    if not event.search_text or not event.search_text.strip():
        raise ValidationError("Search text is required")

    db_event = models.DemandMissEvent(
        search_text=event.search_text,
        customer_name=event.customer_name,
        customer_contact=event.customer_contact,
        notes=event.notes,
        user_id=user_id,
    )
    db.add(db_event)
    db.commit()
    db.refresh(db_event)
    return db_event


def require_product(db: Session, product_id: int) -> models.Product:
    product = get_product(db, product_id)
    if product is None:
        raise NotFoundError(f"Product {product_id} not found", details={"product_id": product_id})
    return product
