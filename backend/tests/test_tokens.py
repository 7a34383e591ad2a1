import itertools

import pytest

from cardshop.core.exceptions import CollisionExhausted
from cardshop.services import orders, tokens


async def test_identifiers_are_distinct_18_digit_strings(db):
    order_no, token = await tokens.issue_order_identifiers(db)
    assert len(order_no) == 18 and order_no.isdigit()
    assert len(token) == 18 and token.isdigit()
    assert order_no != token


async def test_collision_is_retried(db, make_product, monkeypatch):
    product = await make_product(codes=["A1", "A2"])
    values = iter(["111111111111111111", "222222222222222222"])
    monkeypatch.setattr(tokens, "numeric18", lambda: next(values))
    first = await orders.reserve(db, product.id, 1, "buyer@example.com")
    assert (first.order_no, first.access_token) == ("111111111111111111", "222222222222222222")

    # first pair clashes with the existing order, second pair equal to each other, third is free
    values = iter([
        "222222222222222222", "333333333333333333",
        "444444444444444444", "444444444444444444",
        "555555555555555555", "666666666666666666",
    ])
    second = await orders.reserve(db, product.id, 1, "buyer@example.com")
    assert (second.order_no, second.access_token) == ("555555555555555555", "666666666666666666")


async def test_collision_exhausted(db, make_product, monkeypatch):
    product = await make_product(codes=["A1", "A2"])
    await orders.reserve(db, product.id, 1, "buyer@example.com")
    existing = (await orders.list_orders(db))[0].order

    clashing = itertools.cycle([existing.order_no, existing.access_token])
    monkeypatch.setattr(tokens, "numeric18", lambda: next(clashing))

    with pytest.raises(CollisionExhausted):
        await orders.reserve(db, product.id, 1, "buyer@example.com")
    assert len(await orders.list_orders(db)) == 1
