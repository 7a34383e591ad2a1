import asyncio
from datetime import datetime, timedelta

import pytest

from cardshop.core.exceptions import OutOfStock
from cardshop.services import allocator, orders, scheduler

from conftest import key_rows, order_status


async def test_reaper_returns_stock_to_the_pool(db, make_product, lapse):
    product_id = (await make_product(codes=["A1", "A2"])).id
    out = await orders.reserve(db, product_id, 2, "buyer@example.com")

    with pytest.raises(OutOfStock):
        await orders.reserve(db, product_id, 1, "other@example.com")

    await lapse(out.order_no)
    result = await scheduler.release_expired_reservations(db)
    assert (result.released_keys, result.expired_orders) == (2, 1)
    assert await order_status(out.order_no) == "expired"

    rows = await key_rows(product_id)
    assert all(r.status == "available" and r.order_id is None for r in rows)

    again = await orders.reserve(db, product_id, 2, "other@example.com")
    assert again.order_no != out.order_no


async def test_reaper_leaves_live_and_paid_orders_alone(db, make_product, lapse):
    product = await make_product(codes=["A1", "A2", "A3"])
    live = await orders.reserve(db, product.id, 1, "live@example.com")
    paid = await orders.reserve(db, product.id, 1, "paid@example.com")
    await orders.confirm_payment_and_deliver(db, paid.order_no)
    await lapse(paid.order_no)

    result = await scheduler.release_expired_reservations(db)
    assert (result.released_keys, result.expired_orders) == (0, 0)
    assert await order_status(live.order_no) == "pending"
    assert await order_status(paid.order_no) == "delivered"
    assert [r.status for r in await key_rows(product.id)] == ["reserved", "sold", "available"]


async def test_reaper_uses_given_clock(db, make_product):
    product = await make_product(codes=["A1"])
    out = await orders.reserve(db, product.id, 1, "buyer@example.com")

    future = datetime.now() + timedelta(hours=1)
    result = await scheduler.release_expired_reservations(db, now=future)
    assert (result.released_keys, result.expired_orders) == (1, 1)
    assert await order_status(out.order_no) == "expired"


async def test_expired_order_cannot_be_paid_without_force(db, make_product, lapse):
    product = await make_product(codes=["A1"])
    out = await orders.reserve(db, product.id, 1, "buyer@example.com")
    await lapse(out.order_no)
    await scheduler.release_expired_reservations(db)

    result = await orders.confirm_payment_and_deliver(db, out.order_no)
    assert result.status == "expired"
    assert [r.status for r in await key_rows(product.id)] == ["available"]


async def test_scheduled_job_runs_in_its_own_session(db, make_product, lapse):
    product = await make_product(codes=["A1"])
    out = await orders.reserve(db, product.id, 1, "buyer@example.com")
    await lapse(out.order_no)

    await scheduler.cleanup_expired_reservations()
    assert await order_status(out.order_no) == "expired"
    assert [r.status for r in await key_rows(product.id)] == ["available"]


async def test_scheduled_job_logs_failures(monkeypatch, caplog):
    async def boom(db, now=None):
        raise RuntimeError("database is gone")

    monkeypatch.setattr(scheduler, "release_expired_reservations", boom)
    await scheduler.cleanup_expired_reservations()
    assert "清理过期预留时发生错误" in caplog.text


async def test_sweep_expires_orders_before_releasing_keys(db, make_product, lapse, monkeypatch):
    product = await make_product(codes=["A1"])
    out = await orders.reserve(db, product.id, 1, "buyer@example.com")
    await lapse(out.order_no)

    calls = []
    expire_orders = orders.expire_lapsed_orders
    release_keys = allocator.release_lapsed

    async def record_orders(session, now=None):
        calls.append("orders")
        return await expire_orders(session, now)

    async def record_keys(session, now=None):
        calls.append("card_keys")
        return await release_keys(session, now)

    monkeypatch.setattr(orders, "expire_lapsed_orders", record_orders)
    monkeypatch.setattr(allocator, "release_lapsed", record_keys)

    result = await scheduler.release_expired_reservations(db)
    assert calls == ["orders", "card_keys"]
    assert (result.released_keys, result.expired_orders) == (1, 1)


async def test_scheduler_sweeps_once_at_startup(monkeypatch):
    ran = asyncio.Event()

    async def sweep():
        ran.set()

    monkeypatch.setattr(scheduler, "cleanup_expired_reservations", sweep)

    started_at = datetime.now()
    scheduler.start_scheduler()
    try:
        job = scheduler.scheduler.get_job("cleanup_expired_reservations")
        assert job.trigger.interval == timedelta(seconds=scheduler.settings.reaper_interval_seconds)
        first_run = job.next_run_time.replace(tzinfo=None)
        assert abs(first_run - started_at) < timedelta(seconds=5)

        await asyncio.wait_for(ran.wait(), timeout=5)
    finally:
        scheduler.stop_scheduler()
