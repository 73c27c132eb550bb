"""
Pydantic schemas for request/response validation in the Fulfillment service.

These schemas define the structure of data for API requests and responses.
"""
from datetime import datetime
from typing import Optional, List
from decimal import Decimal
from pydantic import BaseModel, Field


ROLE_AGENT = "agent"
ROLE_AUDITOR = "auditor"
ROLE_ADMIN = "admin"
AUDITOR_ROLES = (ROLE_AUDITOR, ROLE_ADMIN)


class Actor(BaseModel):
    """The user performing an operation, as reported by the identity provider."""
    id: str
    role: str = ROLE_AGENT

    @property
    def is_auditor(self) -> bool:
        return self.role in AUDITOR_ROLES


class OrderItemCreate(BaseModel):
    """Schema for a draft line item."""
    product_id: int = Field(..., description="Catalog product ID")
    quantity: int = Field(..., description="Quantity ordered")
    unit_price: Optional[Decimal] = Field(
        None, description="Quoted unit price; defaults to the product's current price"
    )


class DraftCreate(BaseModel):
    """Schema for creating a new draft order."""
    customer_ref: str
    items: List[OrderItemCreate] = Field(default_factory=list, description="Order line items")


class SubmitForVerification(BaseModel):
    """Payment evidence attached by the agent when submitting a draft."""
    bank_ref: Optional[str] = None
    evidence_ref: Optional[str] = None
    shipping_address: Optional[str] = None
    shipping_cost: Decimal = Decimal("0")


class TransitionReason(BaseModel):
    """Optional free-text reason for a rejection or cancellation."""
    reason: Optional[str] = None


class OrderItem(BaseModel):
    """Schema for an order line item response."""
    product_id: int
    quantity: int
    unit_price: Decimal
    subtotal: Decimal

    class Config:
        from_attributes = True


class CommissionAccrual(BaseModel):
    """Schema for a commission accrual."""
    order_id: str
    agent_id: str
    amount: Decimal
    rate: Decimal
    voided: bool
    voided_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class Order(BaseModel):
    """
    Schema for order responses, includes all database fields.

    Attributes:
        id (str): Order's unique identifier
        agent_id (str): Sales agent who owns the order
        status (str): Order status
        subtotal (Decimal): Sum of item subtotals
        total (Decimal): Subtotal plus shipping
        items (List[OrderItem]): Order line items
        commission (CommissionAccrual): Accrual, once payment is verified
    """
    id: str
    agent_id: str
    customer_ref: str
    status: str
    subtotal: Decimal
    shipping_cost: Decimal
    total: Decimal
    shipping_address: Optional[str] = None
    bank_ref: Optional[str] = None
    evidence_ref: Optional[str] = None
    status_reason: Optional[str] = None
    items: List[OrderItem] = Field(default_factory=list)
    commission: Optional[CommissionAccrual] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class OrderEvent(BaseModel):
    """
    Schema for order timeline events.

    Attributes:
        id (int): Event ID
        order_id (str): Order identifier
        event_type (str): Type of event (created, status_changed)
        description (str): Human-readable event description
        old_value (str): Previous value (optional)
        new_value (str): New value (optional)
        user_id (str): User who triggered the event (optional)
        created_at (datetime): When the event occurred
    """
    id: int
    order_id: str
    event_type: str
    description: str
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    user_id: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class EvidenceUploaded(BaseModel):
    """Reference returned by the evidence store for an uploaded receipt."""
    order_id: str
    evidence_ref: str


class ProductCreate(BaseModel):
    """Schema for creating a catalog product."""
    sku: str
    name: str
    price: Decimal = Field(..., ge=0)
    min_stock_threshold: Optional[int] = None


class Product(ProductCreate):
    id: int
    created_at: datetime

    class Config:
        from_attributes = True


class WarehouseCreate(BaseModel):
    name: str


class Warehouse(WarehouseCreate):
    id: int

    class Config:
        from_attributes = True


class InventoryLevel(BaseModel):
    """Stock of one product in one warehouse."""
    product_id: int
    warehouse_id: int
    current_stock: int
    last_updated: datetime

    class Config:
        from_attributes = True


class ProductStock(BaseModel):
    """Per-warehouse levels plus the aggregate for a product."""
    product_id: int
    total_stock: int
    levels: List[InventoryLevel]


class InventoryMovementCreate(BaseModel):
    """Manual stock movement; IN adds stock, OUT removes it."""
    product_id: int
    warehouse_id: int
    quantity: int = Field(..., gt=0)
    type: str = Field("IN", pattern="^(IN|OUT)$")
    reason: Optional[str] = None
    reference: Optional[str] = None


class InventoryMovement(BaseModel):
    id: int
    product_id: int
    warehouse_id: int
    quantity_change: int
    reason: Optional[str] = None
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None
    user_id: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class AgentCommissionUpdate(BaseModel):
    """Commission configuration for one agent."""
    commission_rate: Decimal = Field(..., ge=0, le=1)
    shipping_commission_mode: str = Field("none", pattern="^(none|fixed|percentage)$")
    shipping_commission_value: Decimal = Field(Decimal("0"), ge=0)


class AgentProfile(AgentCommissionUpdate):
    agent_id: str

    class Config:
        from_attributes = True


class LostDemandCreate(BaseModel):
    """A search that produced no matching product."""
    search_text: str
    customer_name: Optional[str] = None
    customer_contact: Optional[str] = None
    notes: Optional[str] = None


class LostDemand(LostDemandCreate):
    id: int
    user_id: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class LostDemandTerm(BaseModel):
    term: str
    count: int


class LowStockItem(BaseModel):
    product_id: int
    sku: str
    name: str
    total_stock: int
    threshold: int


class DashboardSummary(BaseModel):
    todays_sales: Decimal
    low_stock_count: int
    low_stock_items: List[LowStockItem]
    top_lost_demand: List[LostDemandTerm]


class AgentDailyStats(BaseModel):
    agent_id: str
    total_orders: int
    total_items_sold: int
    total_sales_revenue: Decimal
    total_commission: Decimal


class AgentCommissionSummary(BaseModel):
    agent_id: str
    total_orders: int
    total_sales: Decimal
    earned_commission: Decimal
