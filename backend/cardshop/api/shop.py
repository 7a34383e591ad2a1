"""
前台 API
商品浏览、下单、凭证查单、演示支付、支付回调
"""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError
from datetime import datetime
from typing import List, Optional
import json
from cardshop.core.database import get_db
from cardshop.core.config import get_settings
from cardshop.core.exceptions import ValidationError
from cardshop.core.formatting import format_money
from cardshop.core.security import RateLimiter, verify_payment_signature
from cardshop.models import OrderStatus
from cardshop.services import orders, products
import logging

logger = logging.getLogger(__name__)
settings = get_settings()
router = APIRouter(prefix="/shop", tags=["前台"])

order_limiter = RateLimiter("下单", settings.order_rate_limit)
lookup_limiter = RateLimiter("查单", settings.lookup_rate_limit)


class ProductOut(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    price_cents: int
    price: str
    available_count: int


class CreateOrderRequest(BaseModel):
    """下单请求体"""
    product_id: int
    qty: int
    customer_contact: str
    customer_note: Optional[str] = None


class CreateOrderResponse(BaseModel):
    order_no: str
    access_token: str
    reserved_until: datetime
    total_cents: int
    total: str


class OrderLineOut(BaseModel):
    product_id: int
    product_name: str
    qty: int
    unit_price_cents: int


class OrderOut(BaseModel):
    order_no: str
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
    delivered_codes: List[str]


class LookupRequest(BaseModel):
    """订单查询：订单号或联系方式任填一个"""
    order_no: Optional[str] = None
    customer_contact: Optional[str] = None


class DeliveryOut(BaseModel):
    status: str
    message: str


class PaymentWebhookPayload(BaseModel):
    order_no: str = Field(..., min_length=1)
    status: Optional[str] = None


def _product_out(stock: products.ProductStock) -> ProductOut:
    p = stock.product
    return ProductOut(
        id=p.id,
        name=p.name,
        description=p.description,
        price_cents=p.price_cents,
        price=format_money(p.price_cents),
        available_count=stock.available_count,
    )


def order_out(view: orders.OrderView) -> OrderOut:
    o = view.order
    return OrderOut(
        order_no=o.order_no,
        status=o.status,
        customer_contact=o.customer_contact,
        customer_note=o.customer_note,
        total_cents=o.total_cents,
        total=format_money(o.total_cents),
        reserved_expires_at=o.reserved_expires_at,
        created_at=o.created_at,
        paid_at=o.paid_at,
        delivered_at=o.delivered_at,
        items=[OrderLineOut(**line.__dict__) for line in view.items],
        delivered_codes=view.delivered_codes,
    )


@router.get("/products", response_model=List[ProductOut])
async def list_products(db: AsyncSession = Depends(get_db)):
    """上架商品列表"""
    return [_product_out(s) for s in await products.list_active_products(db)]


@router.get("/products/{product_id}", response_model=ProductOut)
async def get_product(product_id: int, db: AsyncSession = Depends(get_db)):
    return _product_out(await products.get_product_public(db, product_id))


@router.post("/orders", response_model=CreateOrderResponse)
async def create_order(
    request: CreateOrderRequest,
    db: AsyncSession = Depends(get_db),
    _: bool = Depends(order_limiter)
):
    """
    下单并预留卡密
    返回的 access_token 是查看订单的唯一凭证，请妥善保存
    """
    out = await orders.reserve(
        db,
        product_id=request.product_id,
        quantity=request.qty,
        contact=request.customer_contact,
        note=request.customer_note,
    )
    return CreateOrderResponse(
        order_no=out.order_no,
        access_token=out.access_token,
        reserved_until=out.reserved_until,
        total_cents=out.total_cents,
        total=format_money(out.total_cents),
    )


@router.get("/orders/{order_no}/{token}", response_model=OrderOut)
async def get_order(
    order_no: str,
    token: str,
    db: AsyncSession = Depends(get_db),
    _: bool = Depends(lookup_limiter)
):
    """凭证查单（含已发货卡密）"""
    return order_out(await orders.lookup_by_token(db, order_no, token))


@router.post("/orders/lookup", response_model=List[OrderOut])
async def lookup_orders(
    request: LookupRequest,
    db: AsyncSession = Depends(get_db),
    _: bool = Depends(lookup_limiter)
):
    """按订单号或下单联系方式精确查询"""
    views = await orders.lookup_by_contact_or_number(
        db,
        order_no=request.order_no,
        contact=request.customer_contact,
    )
    return [order_out(v) for v in views]


@router.post("/pay/{order_no}/{token}/confirm", response_model=DeliveryOut)
async def demo_confirm_payment(
    order_no: str,
    token: str,
    db: AsyncSession = Depends(get_db),
    _: bool = Depends(lookup_limiter)
):
    """演示支付：仅待支付订单可确认，不强制"""
    view = await orders.lookup_by_token(db, order_no, token)
    if view.order.status != OrderStatus.PENDING.value:
        return DeliveryOut(
            status=view.order.status,
            message=f"订单当前状态为 {view.order.status}，无法进行演示支付",
        )

    out = await orders.confirm_payment_and_deliver(db, order_no, force=False)
    return DeliveryOut(status=out.status, message=out.message)


@router.post("/webhook/payment")
async def payment_webhook(
    body: bytes = Depends(verify_payment_signature),
    db: AsyncSession = Depends(get_db)
):
    """
    支付回调（HMAC-SHA256 签名）
    - Header: X-Fakan-Signature: <hex>
    - Body: { "order_no": "...", "status": "success" }
    """
    try:
        payload = PaymentWebhookPayload(**json.loads(body or b"{}"))
    except (json.JSONDecodeError, TypeError, PydanticValidationError) as e:
        raise ValidationError("order_no required") from e

    if payload.status != "success":
        return {"ok": True, "ignored": True}

    out = await orders.confirm_payment_and_deliver(db, payload.order_no, force=True)
    logger.info(f"支付回调处理完成: {payload.order_no} -> {out.status}")
    return {"ok": True, "result": DeliveryOut(status=out.status, message=out.message)}
