"""
SQLAlchemy ORM models for the Fulfillment service.

Defines the database schema for orders, the inventory ledger, commission
accruals and the lost-demand log.
"""
import enum
from sqlalchemy import (
    Boolean, CheckConstraint, Column, DateTime, ForeignKey, Integer, Numeric,
    String, Text, UniqueConstraint,
)
from sqlalchemy.orm import relationship
from .database import Base, utcnow


class OrderStatus(str, enum.Enum):
    DRAFT = "draft"
    PENDING_VERIFICATION = "pending_verification"
    PROCESSING_FULFILLMENT = "processing_fulfillment"
    READY_FOR_PICKUP = "ready_for_pickup"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = {OrderStatus.COMPLETED.value, OrderStatus.CANCELLED.value}

# Statuses that mean payment was verified and inventory committed
VERIFIED_STATUSES = (
    OrderStatus.PROCESSING_FULFILLMENT.value,
    OrderStatus.READY_FOR_PICKUP.value,
    OrderStatus.COMPLETED.value,
)


class Product(Base):
    """
    Catalog product.

    Attributes:
        id (int): Primary key
        sku (str): Stock Keeping Unit (unique)
        name (str): Display name
        price (Decimal): Current list price
        min_stock_threshold (int): Low-stock alert threshold (optional)
        created_at (datetime): Timestamp when the product was created
    """
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    sku = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=False)
    price = Column(Numeric(12, 2), nullable=False, default=0)
    min_stock_threshold = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class Warehouse(Base):
    """Physical stock location."""
    __tablename__ = "warehouses"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, unique=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)


class InventoryLevel(Base):
    """
    Stock count of one product in one warehouse.

    Mutated exclusively through the inventory ledger.
    """
    __tablename__ = "inventory_levels"
    __table_args__ = (
        UniqueConstraint("product_id", "warehouse_id", name="uq_inventory_product_warehouse"),
        CheckConstraint("current_stock >= 0", name="ck_inventory_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    warehouse_id = Column(Integer, ForeignKey("warehouses.id"), nullable=False)
    current_stock = Column(Integer, nullable=False, default=0)
    last_updated = Column(DateTime, default=utcnow, nullable=False)


class InventoryMovement(Base):
    """
    Append-only log of every ledger mutation.

    Attributes:
        quantity_change (int): Signed change applied to the level
        reason (str): Why the stock moved (e.g. "order_verified", "restock")
        reference_type (str): What caused it ("order", "manual_adjustment")
        reference_id (str): Order id or free-form reference
    """
    __tablename__ = "inventory_movements"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    warehouse_id = Column(Integer, ForeignKey("warehouses.id"), nullable=False)
    quantity_change = Column(Integer, nullable=False)
    reason = Column(String, nullable=True)
    reference_type = Column(String, nullable=True)
    reference_id = Column(String, nullable=True)
    user_id = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class AgentProfile(Base):
    """Per-agent commission configuration."""
    __tablename__ = "agent_profiles"

    agent_id = Column(String, primary_key=True)
    commission_rate = Column(Numeric(6, 4), nullable=False)
    shipping_commission_mode = Column(String, nullable=False, default="none")
    shipping_commission_value = Column(Numeric(12, 4), nullable=False, default=0)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Order(Base):
    """
    Order model representing a sale moving through the fulfillment pipeline.

    Attributes:
        id (str): Primary key, order ID (e.g., "ORD-3F9A01C2B7DE")
        agent_id (str): Sales agent who owns the order
        customer_ref (str): Customer reference
        status (str): One of OrderStatus
        subtotal (Decimal): Sum of line item subtotals
        shipping_cost (Decimal): Shipping charged to the customer
        bank_ref (str): Bank transfer reference, set on submission
        evidence_ref (str): Payment receipt URL, set on submission
        created_at (datetime): Timestamp when the order was created
        updated_at (datetime): Timestamp of the last status transition
    """
    __tablename__ = "orders"

    id = Column(String, primary_key=True, index=True)
    agent_id = Column(String, nullable=False, index=True)
    customer_ref = Column(String, nullable=False)
    status = Column(String, nullable=False, default=OrderStatus.DRAFT.value, index=True)
    subtotal = Column(Numeric(12, 2), nullable=False, default=0)
    shipping_cost = Column(Numeric(12, 2), nullable=False, default=0)
    shipping_address = Column(Text, nullable=True)
    bank_ref = Column(String, nullable=True)
    evidence_ref = Column(String, nullable=True)
    status_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    items = relationship(
        "OrderItem", back_populates="order", cascade="all, delete-orphan",
        order_by="OrderItem.id",
    )
    allocations = relationship(
        "OrderAllocation", back_populates="order", cascade="all, delete-orphan",
        order_by="OrderAllocation.id",
    )
    commission = relationship("CommissionAccrual", uselist=False, back_populates="order")

    @property
    def total(self):
        return self.subtotal + (self.shipping_cost or 0)


class OrderItem(Base):
    """Order line item; the unit price is frozen at draft creation."""
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)

    order = relationship("Order", back_populates="items")

    @property
    def subtotal(self):
        return self.unit_price * self.quantity


class OrderAllocation(Base):
    """Stock taken from one warehouse when the order's payment was verified."""
    __tablename__ = "order_allocations"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    warehouse_id = Column(Integer, ForeignKey("warehouses.id"), nullable=False)
    amount = Column(Integer, nullable=False)

    order = relationship("Order", back_populates="allocations")


class CommissionAccrual(Base):
    """
    Commission earned by an agent on a verified order.

    Created exactly once per order; voided if the order is later cancelled.
    """
    __tablename__ = "commission_accruals"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.id"), unique=True, nullable=False)
    agent_id = Column(String, nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    rate = Column(Numeric(6, 4), nullable=False)
    voided = Column(Boolean, nullable=False, default=False)
    voided_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    order = relationship("Order", back_populates="commission")


class DemandMissEvent(Base):
    """A customer search that matched no product. Never updated or deleted."""
    __tablename__ = "lost_demand"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    search_text = Column(String, nullable=False)
    customer_name = Column(String, nullable=True)
    customer_contact = Column(String, nullable=True)
    notes = Column(Text, nullable=True)
    user_id = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)


class OrderEvent(Base):
    """
    OrderEvent model representing historical events in an order's lifecycle.

    Attributes:
        id (int): Primary key, auto-incrementing event ID
        order_id (str): Foreign key to the order
        event_type (str): Type of event (e.g., "created", "status_changed")
        description (str): Human-readable description of the event
        old_value (str): Previous value (for changes, optional)
        new_value (str): New value (for changes, optional)
        user_id (str): ID of the user who triggered the event (optional)
        created_at (datetime): Timestamp when the event occurred
    """
    __tablename__ = "order_events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    event_type = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    old_value = Column(String, nullable=True)
    new_value = Column(String, nullable=True)
    user_id = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
