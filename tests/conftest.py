"""Shared fixtures: a throwaway SQLite database, a small catalog and actors."""

import os
import tempfile

_TMP_DIR = tempfile.mkdtemp(prefix="fulfillment-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP_DIR, 'fulfillment.db')}"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["DASHBOARD_CACHE_TTL"] = "0"
os.environ["LOCAL_TIMEZONE"] = "UTC"

from decimal import Decimal

import pytest
from jose import jwt

from fulfillment import config, crud, ledger, models, schemas, workflow
from fulfillment.database import Base, SessionLocal, engine, transaction


@pytest.fixture(autouse=True)
def _tables():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def agent() -> schemas.Actor:
    return schemas.Actor(id="agent-1", role=schemas.ROLE_AGENT)


@pytest.fixture
def other_agent() -> schemas.Actor:
    return schemas.Actor(id="agent-2", role=schemas.ROLE_AGENT)


@pytest.fixture
def auditor() -> schemas.Actor:
    return schemas.Actor(id="auditor-1", role=schemas.ROLE_AUDITOR)


@pytest.fixture
def product(db) -> models.Product:
    return crud.create_product(db, schemas.ProductCreate(sku="HELMET-01", name="Casco integral", price=Decimal("10.00")))


@pytest.fixture
def second_product(db) -> models.Product:
    return crud.create_product(db, schemas.ProductCreate(sku="GLOVES-01", name="Guantes", price=Decimal("5.00")))


@pytest.fixture
def warehouse(db) -> models.Warehouse:
    return crud.create_warehouse(db, schemas.WarehouseCreate(name="W1"))


@pytest.fixture
def second_warehouse(db) -> models.Warehouse:
    return crud.create_warehouse(db, schemas.WarehouseCreate(name="W2"))


@pytest.fixture
def add_stock(db):
    """Receive stock into a warehouse through the ledger."""
    def _add(product_id: int, warehouse_id: int, quantity: int) -> None:
        with transaction(db):
            ledger.adjust_stock(db, product_id, warehouse_id, quantity, reason="receiving")
    return _add


@pytest.fixture
def submitted_order(db):
    """Create a draft for an agent and submit it with payment evidence."""
    def _submit(agent, lines, shipping_cost=Decimal("0")) -> models.Order:
        items = [
            schemas.OrderItemCreate(product_id=product_id, quantity=quantity, unit_price=unit_price)
            for product_id, quantity, unit_price in lines
        ]
        order = workflow.create_draft(db, agent, "CUST-001", items)
        return workflow.submit_for_verification(
            db, order.id, agent, "TRX-0001", "https://evidence.local/receipt.png",
            shipping_address="Calle 1 #2-3", shipping_cost=shipping_cost,
        )
    return _submit


@pytest.fixture
def token_for():
    def _token(user_id: str, role: str = schemas.ROLE_AGENT) -> dict:
        token = jwt.encode({"sub": user_id, "role": role}, config.SECRET_KEY, algorithm=config.ALGORITHM)
        return {"Authorization": f"Bearer {token}"}
    return _token
