"""
管理端 API（HTTP Basic Auth）
商品维护、卡密导入与管理、订单查看 / 手动发货 / 取消
"""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel
from datetime import datetime
from typing import Dict, List, Optional
from cardshop.core.database import get_db
from cardshop.core.exceptions import ValidationError
from cardshop.core.formatting import format_money
from cardshop.core.security import get_current_admin
from cardshop.models import CardKeyStatus
from cardshop.services import key_store, orders, products
from cardshop.api.shop import DeliveryOut, OrderLineOut
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/admin", tags=["管理端"], dependencies=[Depends(get_current_admin)])


class ProductIn(BaseModel):
    name: str
    price_cents: int
    description: Optional[str] = None
    is_active: bool = True


class ProductAdminOut(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    price_cents: int
    price: str
    is_active: bool


class ProductInventoryOut(ProductAdminOut):
    available_count: int
    reserved_count: int
    sold_count: int


class ActiveIn(BaseModel):
    is_active: bool


class ImportKeysRequest(BaseModel):
    """导入卡密：codes 与 text（每行一个）任选其一或同时提供"""
    codes: List[str] = []
    text: Optional[str] = None


class ImportKeysResponse(BaseModel):
    inserted: int
    skipped: int


class CardKeyOut(BaseModel):
    id: int
    product_id: int
    status: str
    code: str
    order_id: Optional[int] = None
    sold_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class EditKeyRequest(BaseModel):
    code: str


class OrderSummaryOut(BaseModel):
    order_no: str
    status: str
    customer_contact: str
    total_cents: int
    total: str
    total_qty: int
    created_at: Optional[datetime] = None


class ReservedKeyOut(BaseModel):
    id: int
    product_id: int
    reserved_until: Optional[datetime] = None


class OrderDetailOut(BaseModel):
    order_no: str
    access_token: str
    status: str
    customer_contact: str
    customer_note: Optional[str] = None
    total_cents: int
    total: str
    reserved_expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    items: List[OrderLineOut]
    reserved_keys: List[ReservedKeyOut]
    sold_codes: List[str]


def _product_out(p) -> ProductAdminOut:
    return ProductAdminOut(
        id=p.id,
        name=p.name,
        description=p.description,
        price_cents=p.price_cents,
        price=format_money(p.price_cents),
        is_active=p.is_active,
    )


def _inventory_out(inv: products.ProductInventory) -> ProductInventoryOut:
    return ProductInventoryOut(
        **_product_out(inv.product).model_dump(),
        available_count=inv.available_count,
        reserved_count=inv.reserved_count,
        sold_count=inv.sold_count,
    )


# ---- 商品 ----

@router.get("/products", response_model=List[ProductInventoryOut])
async def list_products(db: AsyncSession = Depends(get_db)):
    """全部商品（含已下架）及库存统计"""
    return [_inventory_out(inv) for inv in await products.list_products_admin(db)]


@router.get("/products/{product_id}", response_model=ProductInventoryOut)
async def get_product(product_id: int, db: AsyncSession = Depends(get_db)):
    return _inventory_out(await products.get_product_admin(db, product_id))


@router.post("/products", response_model=ProductAdminOut)
async def create_product(request: ProductIn, db: AsyncSession = Depends(get_db)):
    product = await products.create_product(
        db,
        name=request.name,
        price_cents=request.price_cents,
        description=request.description,
        is_active=request.is_active,
    )
    return _product_out(product)


@router.put("/products/{product_id}", response_model=ProductAdminOut)
async def update_product(product_id: int, request: ProductIn, db: AsyncSession = Depends(get_db)):
    product = await products.update_product(
        db,
        product_id,
        name=request.name,
        price_cents=request.price_cents,
        description=request.description,
        is_active=request.is_active,
    )
    return _product_out(product)


@router.post("/products/{product_id}/active", response_model=ProductAdminOut)
async def set_product_active(product_id: int, request: ActiveIn, db: AsyncSession = Depends(get_db)):
    return _product_out(await products.set_product_active(db, product_id, request.is_active))


# ---- 卡密 ----

@router.post("/products/{product_id}/keys", response_model=ImportKeysResponse)
async def import_keys(product_id: int, request: ImportKeysRequest, db: AsyncSession = Depends(get_db)):
    """批量导入卡密（重复的计为跳过）"""
    codes = list(request.codes)
    if request.text:
        codes.extend(request.text.splitlines())
    if not key_store.normalize_codes(codes):
        raise ValidationError("请至少输入一条卡密")

    result = await key_store.import_keys(db, product_id, codes)
    return ImportKeysResponse(inserted=result.inserted, skipped=result.skipped)


@router.get("/products/{product_id}/keys", response_model=List[CardKeyOut])
async def list_keys(
    product_id: int,
    status: CardKeyStatus = CardKeyStatus.AVAILABLE,
    q: str = "",
    db: AsyncSession = Depends(get_db)
):
    """按状态列出卡密，q 为明文包含匹配（不区分大小写）"""
    keys = await key_store.list_keys(db, product_id, status.value)
    if q.strip():
        needle = q.strip().lower()
        keys = [k for k in keys if needle in k.code.lower()]
    return [CardKeyOut(**k.__dict__) for k in keys]


@router.get("/products/{product_id}/stats")
async def inventory_stats(product_id: int, db: AsyncSession = Depends(get_db)) -> Dict[str, int]:
    return await key_store.inventory_stats(db, product_id)


@router.get("/keys/{key_id}")
async def reveal_key(key_id: int, db: AsyncSession = Depends(get_db)):
    return {"id": key_id, "code": await key_store.reveal_key(db, key_id)}


@router.put("/keys/{key_id}")
async def edit_key(key_id: int, request: EditKeyRequest, db: AsyncSession = Depends(get_db)):
    card = await key_store.edit_key(db, key_id, request.code)
    return {"id": card.id, "product_id": card.product_id}


@router.delete("/keys/{key_id}")
async def delete_key(key_id: int, db: AsyncSession = Depends(get_db)):
    await key_store.delete_key(db, key_id)
    return {"ok": True}


# ---- 订单 ----

@router.get("/orders", response_model=List[OrderSummaryOut])
async def list_orders(
    status: Optional[str] = None,
    q: Optional[str] = None,
    db: AsyncSession = Depends(get_db)
):
    summaries = await orders.list_orders(db, status=status, query=q)
    return [
        OrderSummaryOut(
            order_no=s.order.order_no,
            status=s.order.status,
            customer_contact=s.order.customer_contact,
            total_cents=s.order.total_cents,
            total=format_money(s.order.total_cents),
            total_qty=s.total_qty,
            created_at=s.order.created_at,
        )
        for s in summaries
    ]


@router.get("/orders/{order_no}", response_model=OrderDetailOut)
async def get_order(order_no: str, db: AsyncSession = Depends(get_db)):
    detail = await orders.get_order_detail(db, order_no)
    o = detail.order
    return OrderDetailOut(
        order_no=o.order_no,
        access_token=o.access_token,
        status=o.status,
        customer_contact=o.customer_contact,
        customer_note=o.customer_note,
        total_cents=o.total_cents,
        total=format_money(o.total_cents),
        reserved_expires_at=o.reserved_expires_at,
        created_at=o.created_at,
        paid_at=o.paid_at,
        delivered_at=o.delivered_at,
        items=[OrderLineOut(**line.__dict__) for line in detail.items],
        reserved_keys=[
            ReservedKeyOut(id=k.id, product_id=k.product_id, reserved_until=k.reserved_until)
            for k in detail.reserved_keys
        ],
        sold_codes=detail.sold_codes,
    )


@router.post("/orders/{order_no}/deliver", response_model=DeliveryOut)
async def force_deliver(
    order_no: str,
    admin: str = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db)
):
    """手动确认收款并发货（强制，过期订单会补发新卡密）"""
    out = await orders.confirm_payment_and_deliver(db, order_no, force=True)
    logger.info(f"管理员 {admin} 手动发货订单 {order_no}: {out.status}")
    return DeliveryOut(status=out.status, message=out.message)


@router.post("/orders/{order_no}/cancel")
async def cancel_order(
    order_no: str,
    admin: str = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db)
):
    await orders.cancel(db, order_no)
    logger.info(f"管理员 {admin} 取消订单 {order_no}")
    return {"ok": True}
