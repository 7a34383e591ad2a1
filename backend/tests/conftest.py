import os
import tempfile

# Set test environment variables (before cardshop is imported)
_db_dir = tempfile.mkdtemp(prefix="cardshop-test-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_db_dir}/test.db"
os.environ["CARD_SECRET"] = "test_card_secret_for_pytest"
os.environ["ADMIN_USERNAME"] = "admin"
os.environ["ADMIN_PASSWORD"] = "test-admin-password"
os.environ["PAYMENT_WEBHOOK_SECRET"] = "whsec_test"
os.environ["RESERVE_MINUTES"] = "30"

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select, update

from cardshop.core.database import Base, engine, async_session, init_db
from cardshop.models import CardKey, CardKeyStatus, Order
from cardshop.services import key_store, products


@pytest.fixture
async def database():
    """Create the schema for each test and drop it afterwards."""
    await init_db()
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
async def db(database):
    async with async_session() as session:
        yield session


@pytest.fixture
def make_product(db):
    """Factory: create a product and import its codes."""
    async def _make(codes=(), price_cents=1000, name="Game key", is_active=True):
        product = await products.create_product(
            db, name=name, price_cents=price_cents, is_active=is_active
        )
        if codes:
            await key_store.import_keys(db, product.id, list(codes))
        return product
    return _make


@pytest.fixture
def lapse(db):
    """Move an order's reservation deadline into the past."""
    async def _lapse(order_no, minutes=1):
        past = datetime.now() - timedelta(minutes=minutes)
        order_id = (
            await db.execute(select(Order.id).where(Order.order_no == order_no))
        ).scalar_one()
        await db.execute(
            update(Order).where(Order.id == order_id).values(reserved_expires_at=past)
        )
        await db.execute(
            update(CardKey)
            .where(CardKey.order_id == order_id, CardKey.status == CardKeyStatus.RESERVED.value)
            .values(reserved_until=past)
        )
        await db.commit()
    return _lapse


async def key_rows(product_id):
    """(id, status, order_id, reserved_until) for every key of a product, read in a fresh session."""
    async with async_session() as session:
        result = await session.execute(
            select(CardKey.id, CardKey.status, CardKey.order_id, CardKey.reserved_until)
            .where(CardKey.product_id == product_id)
            .order_by(CardKey.id)
        )
        return result.all()


async def order_status(order_no):
    async with async_session() as session:
        result = await session.execute(select(Order.status).where(Order.order_no == order_no))
        return result.scalar_one()
