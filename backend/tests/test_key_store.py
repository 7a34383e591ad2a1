import pytest
from sqlalchemy import select, update

from cardshop.core.exceptions import (
    CardKeyNotFound,
    CorruptCiphertext,
    DuplicateKey,
    NotEditable,
    ProductNotFound,
    ValidationError,
)
from cardshop.models import CardKey, CardKeyStatus
from cardshop.services import key_store, orders

from conftest import key_rows


async def _key_ids(db, product_id):
    result = await db.execute(
        select(CardKey.id).where(CardKey.product_id == product_id).order_by(CardKey.id)
    )
    return list(result.scalars().all())


async def test_import_counts_inserted(db, make_product):
    product = await make_product()
    result = await key_store.import_keys(db, product.id, ["A1", "A2", "A3"])
    assert (result.inserted, result.skipped) == (3, 0)

    rows = await key_rows(product.id)
    assert [r.status for r in rows] == ["available"] * 3
    assert all(r.order_id is None and r.reserved_until is None for r in rows)


async def test_import_same_code_twice_is_skipped(db, make_product):
    product = await make_product()
    first = await key_store.import_keys(db, product.id, ["DUP-1"])
    second = await key_store.import_keys(db, product.id, ["DUP-1", "NEW-1"])
    assert (first.inserted, first.skipped) == (1, 0)
    assert (second.inserted, second.skipped) == (1, 1)


async def test_import_duplicate_within_one_batch(db, make_product):
    product = await make_product()
    result = await key_store.import_keys(db, product.id, ["X", "X", "Y"])
    assert (result.inserted, result.skipped) == (2, 1)


async def test_same_code_for_two_products(db, make_product):
    p1 = await make_product(name="one")
    p2 = await make_product(name="two")
    r1 = await key_store.import_keys(db, p1.id, ["SHARED"])
    r2 = await key_store.import_keys(db, p2.id, ["SHARED"])
    assert r1.inserted == 1 and r2.inserted == 1


async def test_import_ignores_blank_lines_and_strips(db, make_product):
    product = await make_product()
    result = await key_store.import_keys(db, product.id, ["  K1  ", "", "   ", "K1"])
    assert (result.inserted, result.skipped) == (1, 1)

    key_id = (await _key_ids(db, product.id))[0]
    assert await key_store.reveal_key(db, key_id) == "K1"


async def test_import_unknown_product(db):
    with pytest.raises(ProductNotFound):
        await key_store.import_keys(db, 9999, ["A1"])


async def test_stored_payload_is_not_plaintext(db, make_product):
    product = await make_product(codes=["PLAIN-CODE-1"])
    stored = (await db.execute(select(CardKey.code_encrypted))).scalar_one()
    assert "PLAIN-CODE-1" not in stored
    assert len(stored.split(".")) == 3


async def test_reveal_round_trip(db, make_product):
    codes = ["A1", "代码-2", "C3"]
    product = await make_product(codes=codes)
    ids = await _key_ids(db, product.id)
    assert [await key_store.reveal_key(db, i) for i in ids] == codes


async def test_reveal_missing_key(db):
    with pytest.raises(CardKeyNotFound):
        await key_store.reveal_key(db, 12345)


async def test_reveal_corrupt_payload_is_not_not_found(db, make_product):
    product = await make_product(codes=["A1"])
    key_id = (await _key_ids(db, product.id))[0]
    await db.execute(update(CardKey).where(CardKey.id == key_id).values(code_encrypted="garbage"))
    await db.commit()
    db.expire_all()

    with pytest.raises(CorruptCiphertext):
        await key_store.reveal_key(db, key_id)


async def test_edit_available_key(db, make_product):
    product = await make_product(codes=["OLD"])
    key_id = (await _key_ids(db, product.id))[0]

    await key_store.edit_key(db, key_id, "NEW")
    assert await key_store.reveal_key(db, key_id) == "NEW"

    # the old code is free again, the new one is taken
    result = await key_store.import_keys(db, product.id, ["OLD", "NEW"])
    assert (result.inserted, result.skipped) == (1, 1)


async def test_edit_to_existing_code_is_duplicate(db, make_product):
    product = await make_product(codes=["K1", "K2"])
    k1, _ = await _key_ids(db, product.id)
    with pytest.raises(DuplicateKey):
        await key_store.edit_key(db, k1, "K2")
    assert await key_store.reveal_key(db, k1) == "K1"


async def test_edit_empty_code_rejected(db, make_product):
    product = await make_product(codes=["K1"])
    key_id = (await _key_ids(db, product.id))[0]
    with pytest.raises(ValidationError):
        await key_store.edit_key(db, key_id, "   ")


async def test_reserved_and_sold_keys_are_not_editable(db, make_product):
    product = await make_product(codes=["K1", "K2"])
    k1, k2 = await _key_ids(db, product.id)

    out = await orders.reserve(db, product.id, 1, "buyer@example.com")
    with pytest.raises(NotEditable):
        await key_store.edit_key(db, k1, "CHANGED")
    with pytest.raises(NotEditable):
        await key_store.delete_key(db, k1)

    await orders.confirm_payment_and_deliver(db, out.order_no)
    with pytest.raises(NotEditable):
        await key_store.delete_key(db, k1)

    # the untouched key is still editable
    await key_store.edit_key(db, k2, "K2-NEW")


async def test_delete_available_key(db, make_product):
    product = await make_product(codes=["K1", "K2"])
    k1, _ = await _key_ids(db, product.id)
    await key_store.delete_key(db, k1)
    assert len(await key_rows(product.id)) == 1

    with pytest.raises(CardKeyNotFound):
        await key_store.delete_key(db, k1)


async def test_list_keys_and_stats(db, make_product):
    product = await make_product(codes=["K1", "K2", "K3"])
    await orders.reserve(db, product.id, 1, "buyer@example.com")

    available = await key_store.list_keys(db, product.id, CardKeyStatus.AVAILABLE.value)
    assert sorted(k.code for k in available) == ["K2", "K3"]
    reserved = await key_store.list_keys(db, product.id, CardKeyStatus.RESERVED.value)
    assert [k.code for k in reserved] == ["K1"]

    stats = await key_store.inventory_stats(db, product.id)
    assert stats == {"available": 2, "reserved": 1, "sold": 0}
