"""
订单状态机

状态流转：
    pending  -> paid / expired / canceled
    paid     -> delivered / delivery_failed
    expired  -> paid（仅强制确认）
其余均为终态（delivery_failed 需要人工处理）

订单行的所有修改都在行锁（SELECT ... FOR UPDATE）内完成，
同一订单的并发确认 / 取消会串行化，后到的请求看到的是已经转换后的状态。
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional
from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession
from cardshop.core.config import get_settings
from cardshop.core.crypto import timing_safe_equal
from cardshop.core.exceptions import (
    AlreadyDelivered,
    InsufficientStock,
    OrderCanceled,
    OrderNotFound,
    OutOfStock,
    ProductUnavailable,
    ValidationError,
)
from cardshop.models import CardKey, CardKeyStatus, Order, OrderItem, OrderStatus, Product
from cardshop.services import allocator
from cardshop.services.key_store import reveal_codes
from cardshop.services.tokens import issue_order_identifiers
import logging

logger = logging.getLogger(__name__)

MAX_QUANTITY = 100
CONTACT_MIN_LENGTH = 3
CONTACT_MAX_LENGTH = 200
NOTE_MAX_LENGTH = 500
CONTACT_LOOKUP_LIMIT = 20
ADMIN_LIST_LIMIT = 200


@dataclass
class Reservation:
    order_no: str
    access_token: str
    reserved_until: datetime
    total_cents: int


@dataclass
class DeliveryResult:
    status: str
    message: str


@dataclass
class OrderLine:
    product_id: int
    product_name: str
    qty: int
    unit_price_cents: int


@dataclass
class OrderView:
    """订单 + 明细 + 已发货卡密明文"""
    order: Order
    items: List[OrderLine]
    delivered_codes: List[str] = field(default_factory=list)


@dataclass
class OrderSummary:
    order: Order
    total_qty: int


@dataclass
class OrderDetail:
    """管理端订单详情"""
    order: Order
    items: List[OrderLine]
    reserved_keys: List[CardKey]
    sold_codes: List[str]


# ------------------------------------------------------------------------------
# 下单预留
# ------------------------------------------------------------------------------


def _validate_reserve_input(product_id, quantity, contact, note):
    if isinstance(product_id, bool) or not isinstance(product_id, int) or product_id <= 0:
        raise ValidationError("商品参数错误")
    if isinstance(quantity, bool) or not isinstance(quantity, int) or not 1 <= quantity <= MAX_QUANTITY:
        raise ValidationError(f"购买数量错误（1-{MAX_QUANTITY}）")

    contact = str(contact or "").strip()
    if len(contact) < CONTACT_MIN_LENGTH:
        raise ValidationError("联系方式不能为空")
    if len(contact) > CONTACT_MAX_LENGTH:
        raise ValidationError(f"联系方式不能超过 {CONTACT_MAX_LENGTH} 个字符")

    note = str(note).strip() if note else ""
    if len(note) > NOTE_MAX_LENGTH:
        raise ValidationError(f"备注不能超过 {NOTE_MAX_LENGTH} 个字符")

    return contact, (note or None)


async def reserve(
    db: AsyncSession,
    product_id: int,
    quantity: int,
    contact: str,
    note: Optional[str] = None,
) -> Reservation:
    """
    创建订单并立即预留卡密（防止超卖）

    订单、明细与卡密预留在同一个事务内完成；库存不足时整体回滚，不会留下半成品订单。
    """
    contact, note = _validate_reserve_input(product_id, quantity, contact, note)

    product = await db.get(Product, product_id)
    if product is None or not product.is_active:
        raise ProductUnavailable()

    # 下单时快照单价，之后改价不影响本订单
    unit_price = int(product.price_cents)
    total_cents = unit_price * quantity

    order_no, access_token = await issue_order_identifiers(db)
    reserved_until = datetime.now() + timedelta(minutes=get_settings().reserve_minutes)

    try:
        order = Order(
            order_no=order_no,
            access_token=access_token,
            customer_contact=contact,
            customer_note=note,
            status=OrderStatus.PENDING.value,
            total_cents=total_cents,
            reserved_expires_at=reserved_until,
        )
        db.add(order)
        await db.flush()

        db.add(OrderItem(
            order_id=order.id,
            product_id=product_id,
            qty=quantity,
            unit_price_cents=unit_price,
        ))

        key_ids = await allocator.claim(db, product_id, quantity)
        await allocator.bind_to_order(db, key_ids, order.id, reserved_until)
        await db.commit()
    except InsufficientStock as e:
        await db.rollback()
        logger.info(f"商品 {product_id} 库存不足，下单失败（数量 {quantity}）")
        raise OutOfStock() from e
    except Exception:
        await db.rollback()
        raise

    logger.info(f"订单 {order_no} 已创建，预留卡密 {quantity} 张，截止 {reserved_until:%Y-%m-%d %H:%M:%S}")
    return Reservation(
        order_no=order_no,
        access_token=access_token,
        reserved_until=reserved_until,
        total_cents=total_cents,
    )


# ------------------------------------------------------------------------------
# 支付确认与发货
# ------------------------------------------------------------------------------


class _StaleOrder(Exception):
    """读取订单后，状态已被其他事务修改"""


async def _lock_order(db: AsyncSession, order_no: str) -> Order:
    stmt = (
        select(Order)
        .where(Order.order_no == order_no)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    result = await db.execute(stmt)
    order = result.scalar_one_or_none()
    if order is None:
        raise OrderNotFound()
    return order


async def _transition(db: AsyncSession, order: Order, new_status: OrderStatus, **values) -> None:
    """
    按读取到的状态做条件更新（compare-and-set）

    SQLite 会忽略 FOR UPDATE，这里的 WHERE status = 读取值 才是真正的串行化点：
    条件不成立说明其他事务已经提交了新的状态，抛出 _StaleOrder 由调用方重新读取。
    """
    stmt = (
        update(Order)
        .where(Order.id == order.id, Order.status == order.status)
        .values(status=new_status.value, **values)
    )
    result = await db.execute(stmt)
    if result.rowcount != 1:
        raise _StaleOrder()


async def _deliver(db: AsyncSession, order: Order, force: bool) -> DeliveryResult:
    status = order.status

    if status == OrderStatus.DELIVERED.value:
        # 重复回调不能重复发货
        return DeliveryResult(OrderStatus.DELIVERED.value, "订单已发货（幂等处理）")
    if status == OrderStatus.CANCELED.value:
        raise OrderCanceled()
    if status == OrderStatus.EXPIRED.value and not force:
        return DeliveryResult(OrderStatus.EXPIRED.value, "订单已过期，请重新下单")

    now = datetime.now()

    if (
        status == OrderStatus.PENDING.value
        and order.reserved_expires_at is not None
        and order.reserved_expires_at < now
        and not force
    ):
        await _transition(db, order, OrderStatus.EXPIRED)
        released = await allocator.release(db, order.id)
        logger.info(f"订单 {order.order_no} 支付时已超时，释放卡密 {released} 张")
        return DeliveryResult(OrderStatus.EXPIRED.value, "订单已超时未支付，已释放库存，请重新下单")

    if status == OrderStatus.DELIVERY_FAILED.value:
        logger.warning(f"订单 {order.order_no} 处于发货失败状态，再次尝试发货，请人工核查")

    # 第一次写入必须是状态的条件更新，之后本事务独占该订单
    await _transition(db, order, OrderStatus.PAID, paid_at=order.paid_at or now)

    result = await db.execute(
        select(OrderItem).where(OrderItem.order_id == order.id).order_by(OrderItem.id)
    )
    items = result.scalars().all()

    # 1) 预留转售出
    await allocator.promote_to_sold(db, order.id, now)

    # 2) 逐行核对已售数量；过期后被强制确认的订单，预留可能已被释放，需要补发新卡密
    for item in items:
        sold = await allocator.count_sold(db, order.id, item.product_id)
        missing = item.qty - sold
        if missing <= 0:
            continue
        try:
            await allocator.top_up(db, item.product_id, order.id, missing, now)
        except InsufficientStock:
            order.status = OrderStatus.DELIVERY_FAILED.value
            logger.warning(
                f"订单 {order.order_no} 已支付但库存不足，发货失败（商品 {item.product_id} 缺 {missing} 张）"
            )
            return DeliveryResult(
                OrderStatus.DELIVERY_FAILED.value,
                "已支付但库存不足，发货失败，请联系商家处理",
            )

    order.status = OrderStatus.DELIVERED.value
    order.delivered_at = now
    return DeliveryResult(OrderStatus.DELIVERED.value, "支付成功，已自动发货")


async def confirm_payment_and_deliver(
    db: AsyncSession,
    order_no: str,
    force: bool = False,
) -> DeliveryResult:
    """
    标记订单已支付并发货

    演示支付、支付回调、管理员手动确认都调用这里，本函数不区分调用方，
    调用方需要自行完成签名 / 身份校验。
    force=True 时跳过过期检查，过期订单会用新的可用卡密补发。
    """
    if not order_no:
        raise ValidationError("缺少订单号")

    # 状态只会向前推进，每次 _StaleOrder 都意味着别的事务已提交了新状态，重试必然终止
    while True:
        try:
            order = await _lock_order(db, order_no)
            result = await _deliver(db, order, force)
            await db.commit()
            break
        except _StaleOrder:
            await db.rollback()
            logger.info(f"订单 {order_no} 状态已被并发修改，重新读取")
        except Exception:
            await db.rollback()
            raise

    logger.info(f"订单 {order_no} 支付确认完成: {result.status} (force={force})")
    return result


async def cancel(db: AsyncSession, order_no: str) -> None:
    """取消订单并释放预留；已发货订单不能取消，已取消订单直接返回"""
    while True:
        try:
            order = await _lock_order(db, order_no)
            if order.status == OrderStatus.DELIVERED.value:
                raise AlreadyDelivered()
            if order.status == OrderStatus.CANCELED.value:
                await db.commit()
                return

            await _transition(db, order, OrderStatus.CANCELED)
            released = await allocator.release(db, order.id)
            await db.commit()
            break
        except _StaleOrder:
            await db.rollback()
            logger.info(f"订单 {order_no} 状态已被并发修改，重新读取")
        except Exception:
            await db.rollback()
            raise

    logger.info(f"订单 {order_no} 已取消，释放卡密 {released} 张")


async def expire_lapsed_orders(db: AsyncSession, now: Optional[datetime] = None) -> int:
    """把超过预留截止时间的 pending 订单标记为 expired（不提交）"""
    stmt = (
        update(Order)
        .where(
            Order.status == OrderStatus.PENDING.value,
            Order.reserved_expires_at < (now or datetime.now()),
        )
        .values(status=OrderStatus.EXPIRED.value)
    )
    result = await db.execute(stmt)
    return result.rowcount


# ------------------------------------------------------------------------------
# 查询
# ------------------------------------------------------------------------------


async def _load_lines(db: AsyncSession, order_id: int) -> List[OrderLine]:
    stmt = (
        select(OrderItem, Product.name)
        .join(Product, Product.id == OrderItem.product_id)
        .where(OrderItem.order_id == order_id)
        .order_by(OrderItem.id)
    )
    result = await db.execute(stmt)
    return [
        OrderLine(
            product_id=item.product_id,
            product_name=name,
            qty=item.qty,
            unit_price_cents=item.unit_price_cents,
        )
        for item, name in result.all()
    ]


async def _load_keys(db: AsyncSession, order_id: int, status: CardKeyStatus) -> List[CardKey]:
    stmt = (
        select(CardKey)
        .where(CardKey.order_id == order_id, CardKey.status == status.value)
        .order_by(CardKey.id.asc())
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def _build_view(db: AsyncSession, order: Order) -> OrderView:
    sold = await _load_keys(db, order.id, CardKeyStatus.SOLD)
    return OrderView(
        order=order,
        items=await _load_lines(db, order.id),
        delivered_codes=reveal_codes(sold),
    )


async def lookup_by_token(db: AsyncSession, order_no: str, token: str) -> OrderView:
    """凭订单号 + 访问凭证查看订单（免登录）"""
    result = await db.execute(select(Order).where(Order.order_no == str(order_no or "")))
    order = result.scalar_one_or_none()
    if order is None or not timing_safe_equal(order.access_token, token or ""):
        raise OrderNotFound("订单不存在或访问凭证错误")
    return await _build_view(db, order)


async def lookup_by_contact_or_number(
    db: AsyncSession,
    order_no: Optional[str] = None,
    contact: Optional[str] = None,
) -> List[OrderView]:
    """按订单号或下单联系方式查询（精确匹配，不做模糊搜索）"""
    order_no = str(order_no or "").strip()
    contact = str(contact or "").strip()

    if not order_no and not contact:
        raise ValidationError("请输入订单号或下单联系方式任意一个")

    if order_no:
        stmt = select(Order).where(Order.order_no == order_no).limit(1)
    else:
        if len(contact) < CONTACT_MIN_LENGTH:
            return []
        stmt = (
            select(Order)
            .where(Order.customer_contact == contact)
            .order_by(Order.id.desc())
            .limit(CONTACT_LOOKUP_LIMIT)
        )

    result = await db.execute(stmt)
    return [await _build_view(db, order) for order in result.scalars().all()]


async def list_orders(
    db: AsyncSession,
    status: Optional[str] = None,
    query: Optional[str] = None,
) -> List[OrderSummary]:
    """管理端订单列表：按状态筛选，订单号 / 联系方式模糊搜索"""
    total_qty = (
        select(func.coalesce(func.sum(OrderItem.qty), 0))
        .where(OrderItem.order_id == Order.id)
        .scalar_subquery()
    )
    stmt = select(Order, total_qty)
    if status:
        stmt = stmt.where(Order.status == status)
    if query:
        pattern = f"%{query.strip()}%"
        stmt = stmt.where(Order.order_no.ilike(pattern) | Order.customer_contact.ilike(pattern))
    stmt = stmt.order_by(Order.id.desc()).limit(ADMIN_LIST_LIMIT)

    result = await db.execute(stmt)
    return [OrderSummary(order=order, total_qty=int(qty or 0)) for order, qty in result.all()]


async def get_order_detail(db: AsyncSession, order_no: str) -> OrderDetail:
    """管理端订单详情：明细、仍在预留的卡密、已售出的卡密明文"""
    result = await db.execute(select(Order).where(Order.order_no == order_no))
    order = result.scalar_one_or_none()
    if order is None:
        raise OrderNotFound()

    sold = await _load_keys(db, order.id, CardKeyStatus.SOLD)
    return OrderDetail(
        order=order,
        items=await _load_lines(db, order.id),
        reserved_keys=await _load_keys(db, order.id, CardKeyStatus.RESERVED),
        sold_codes=reveal_codes(sold),
    )
