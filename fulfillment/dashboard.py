"""
Dashboard aggregates for the Fulfillment service.

Read-only computations over persisted orders, inventory levels, commission
accruals and the lost-demand log, recomputed on each request. The summary
can be cached in Redis for a short TTL (see cache.py).
"""
import logging
from datetime import datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo
from sqlalchemy import func
from sqlalchemy.orm import Session

from . import cache, models, schemas
from .config import DEFAULT_MIN_STOCK_THRESHOLD, LOCAL_TIMEZONE
from .models import VERIFIED_STATUSES

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
TOP_LOST_DEMAND = 5


def _money(value) -> Decimal:
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value)).quantize(CENT)


def local_day_bounds(now: Optional[datetime] = None, tz_name: str = LOCAL_TIMEZONE) -> Tuple[datetime, datetime]:
    """
    Start and end of the local calendar day containing `now`, as naive UTC.

    Args:
        now: Reference instant (aware, or naive UTC); defaults to the current time
        tz_name: IANA timezone of the business

    Returns:
        (start, end) with start inclusive and end exclusive
    """
    tz = ZoneInfo(tz_name)
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    local_date = now.astimezone(tz).date()
    start = datetime.combine(local_date, time.min, tzinfo=tz)
    end = datetime.combine(local_date + timedelta(days=1), time.min, tzinfo=tz)
    return (
        start.astimezone(timezone.utc).replace(tzinfo=None),
        end.astimezone(timezone.utc).replace(tzinfo=None),
    )


def effective_threshold(min_stock_threshold: Optional[int]) -> int:
    """Configured minimum, the default when unset or zero, never below 1."""
    threshold = min_stock_threshold or DEFAULT_MIN_STOCK_THRESHOLD
    return max(1, threshold)


def todays_sales(db: Session, now: Optional[datetime] = None) -> Decimal:
    """
    Sum of order totals (subtotal plus shipping) for verified sales created today.

    Args:
        db: Database session
        now: Reference instant (defaults to the current time)

    Returns:
        Total sales for the local calendar day
    """
    start, end = local_day_bounds(now)
    total = (
        db.query(func.sum(models.Order.subtotal + models.Order.shipping_cost))
        .filter(
            models.Order.status.in_(VERIFIED_STATUSES),
            models.Order.created_at >= start,
            models.Order.created_at < end,
        )
        .scalar()
    )
    return _money(total)


def low_stock_items(db: Session) -> List[schemas.LowStockItem]:
    """
    Products whose stock summed across warehouses is at or below threshold.

    Products with no inventory rows count as zero stock.
    """
    stock = (
        db.query(
            models.InventoryLevel.product_id.label("product_id"),
            func.sum(models.InventoryLevel.current_stock).label("total_stock"),
        )
        .group_by(models.InventoryLevel.product_id)
        .subquery()
    )
    rows = (
        db.query(models.Product, func.coalesce(stock.c.total_stock, 0))
        .outerjoin(stock, stock.c.product_id == models.Product.id)
        .order_by(models.Product.id)
        .all()
    )

    items = []
    for product, total_stock in rows:
        threshold = effective_threshold(product.min_stock_threshold)
        if int(total_stock) <= threshold:
            items.append(schemas.LowStockItem(
                product_id=product.id,
                sku=product.sku,
                name=product.name,
                total_stock=int(total_stock),
                threshold=threshold,
            ))
    return items


def low_stock_count(db: Session) -> int:
    return len(low_stock_items(db))


def normalize_search_text(text: str) -> str:
    return " ".join(text.split()).upper()


def top_lost_demand(db: Session, limit: int = TOP_LOST_DEMAND) -> List[schemas.LostDemandTerm]:
    """
    Most frequent searches that matched no product.

    Searches are grouped case-insensitively (whitespace collapsed), sorted
    by count descending; equal counts keep the order they were first seen.
    """
    rows = (
        db.query(models.DemandMissEvent.search_text)
        .order_by(models.DemandMissEvent.created_at, models.DemandMissEvent.id)
        .all()
    )

    counts: Dict[str, int] = {}
    for (search_text,) in rows:
        term = normalize_search_text(search_text or "")
        if term:
            counts[term] = counts.get(term, 0) + 1

    # sorted() is stable, so ties stay in first-seen order
    ranked = sorted(counts.items(), key=lambda entry: -entry[1])
    return [schemas.LostDemandTerm(term=term, count=count) for term, count in ranked[:limit]]


def summary(db: Session, now: Optional[datetime] = None) -> schemas.DashboardSummary:
    """Today's sales, low-stock alerts and top lost demand in one payload."""
    cache_key = f"{cache.DASHBOARD_PREFIX}:summary:{local_day_bounds(now)[0].isoformat()}"
    cached = cache.get_cache(cache_key)
    if cached is not None:
        return schemas.DashboardSummary.model_validate(cached)

    low_stock = low_stock_items(db)
    result = schemas.DashboardSummary(
        todays_sales=todays_sales(db, now),
        low_stock_count=len(low_stock),
        low_stock_items=low_stock,
        top_lost_demand=top_lost_demand(db),
    )
    cache.set_cache(cache_key, result.model_dump(mode="json"))
    return result


def agent_daily_stats(db: Session, agent_id: str, now: Optional[datetime] = None) -> schemas.AgentDailyStats:
    """
    Today's verified sales for one agent.

    Revenue includes shipping; commission counts only accruals that were
    not voided.
    """
    start, end = local_day_bounds(now)
    orders = (
        db.query(models.Order)
        .filter(
            models.Order.agent_id == agent_id,
            models.Order.status.in_(VERIFIED_STATUSES),
            models.Order.created_at >= start,
            models.Order.created_at < end,
        )
        .all()
    )

    items_sold = 0
    revenue = Decimal("0")
    earned = Decimal("0")
    for order in orders:
        items_sold += sum(item.quantity for item in order.items)
        revenue += _money(order.subtotal) + _money(order.shipping_cost)
        if order.commission is not None and not order.commission.voided:
            earned += _money(order.commission.amount)

    return schemas.AgentDailyStats(
        agent_id=agent_id,
        total_orders=len(orders),
        total_items_sold=items_sold,
        total_sales_revenue=_money(revenue),
        total_commission=_money(earned),
    )


def commission_summary(db: Session, agent_id: Optional[str] = None) -> List[schemas.AgentCommissionSummary]:
    """
    Live (non-voided) commission per agent, highest earner first.

    Args:
        db: Database session
        agent_id: Restrict to one agent (optional)
    """
    query = (
        db.query(models.CommissionAccrual, models.Order)
        .join(models.Order, models.Order.id == models.CommissionAccrual.order_id)
        .filter(models.CommissionAccrual.voided.is_(False))
    )
    if agent_id is not None:
        query = query.filter(models.CommissionAccrual.agent_id == agent_id)

    aggregated: Dict[str, Dict] = {}
    for accrual, order in query.order_by(models.CommissionAccrual.id).all():
        entry = aggregated.setdefault(accrual.agent_id, {
            "agent_id": accrual.agent_id,
            "total_orders": 0,
            "total_sales": Decimal("0"),
            "earned_commission": Decimal("0"),
        })
        entry["total_orders"] += 1
        entry["total_sales"] += _money(order.subtotal) + _money(order.shipping_cost)
        entry["earned_commission"] += _money(accrual.amount)

    results = [schemas.AgentCommissionSummary(**entry) for entry in aggregated.values()]
    results.sort(key=lambda entry: entry.earned_commission, reverse=True)
    return results
