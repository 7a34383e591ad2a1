"""
库存分配
卡密状态的唯一修改入口，所有函数都在调用方的事务内执行，不提交

claim 使用 FOR UPDATE SKIP LOCKED：并发下单时每个事务只挑选未被其他事务锁定的行，
热门商品的抢购不会排成一条阻塞队列，同时同一张卡密不可能被分配两次。
"""
from datetime import datetime
from typing import List, Optional
from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession
from cardshop.core.exceptions import InsufficientStock
from cardshop.models import CardKey, CardKeyStatus
import logging

logger = logging.getLogger(__name__)


async def claim(db: AsyncSession, product_id: int, quantity: int) -> List[int]:
    """
    锁定指定商品的 quantity 张可用卡密，返回卡密 ID
    不足时整体失败（不做部分预留），调用方需回滚事务
    """
    stmt = (
        select(CardKey.id)
        .where(
            CardKey.product_id == product_id,
            CardKey.status == CardKeyStatus.AVAILABLE.value,
        )
        .order_by(CardKey.id.asc())
        .limit(quantity)
        .with_for_update(skip_locked=True)
    )
    result = await db.execute(stmt)
    key_ids = list(result.scalars().all())

    if len(key_ids) < quantity:
        raise InsufficientStock(f"可用库存不足：需要 {quantity}，可分配 {len(key_ids)}")
    return key_ids


async def _take_available(db: AsyncSession, key_ids: List[int], **values) -> None:
    """
    把 claim 得到的卡密从 available 改为其他状态
    条件更新：不支持 SKIP LOCKED 的数据库（如 SQLite）上，
    若某行已被其他事务抢先占用，受影响行数会变少，此时整体失败
    """
    stmt = (
        update(CardKey)
        .where(
            CardKey.id.in_(key_ids),
            CardKey.status == CardKeyStatus.AVAILABLE.value,
        )
        .values(**values)
    )
    result = await db.execute(stmt)
    if result.rowcount != len(key_ids):
        raise InsufficientStock("卡密已被其他订单占用，请重试")


async def bind_to_order(
    db: AsyncSession,
    key_ids: List[int],
    order_id: int,
    reserved_until: datetime,
) -> None:
    """将已锁定的卡密标记为 reserved，记录占用订单与截止时间"""
    await _take_available(
        db,
        key_ids,
        status=CardKeyStatus.RESERVED.value,
        order_id=order_id,
        reserved_until=reserved_until,
    )


async def release(db: AsyncSession, order_id: int) -> int:
    """释放订单预留的卡密（幂等，没有预留时什么也不做）"""
    stmt = (
        update(CardKey)
        .where(
            CardKey.order_id == order_id,
            CardKey.status == CardKeyStatus.RESERVED.value,
        )
        .values(
            status=CardKeyStatus.AVAILABLE.value,
            order_id=None,
            reserved_until=None,
        )
    )
    result = await db.execute(stmt)
    return result.rowcount


async def promote_to_sold(db: AsyncSession, order_id: int, now: Optional[datetime] = None) -> int:
    """预留转售出（幂等）"""
    stmt = (
        update(CardKey)
        .where(
            CardKey.order_id == order_id,
            CardKey.status == CardKeyStatus.RESERVED.value,
        )
        .values(
            status=CardKeyStatus.SOLD.value,
            reserved_until=None,
            sold_at=now or datetime.now(),
        )
    )
    result = await db.execute(stmt)
    return result.rowcount


async def count_sold(db: AsyncSession, order_id: int, product_id: int) -> int:
    stmt = select(func.count(CardKey.id)).where(
        CardKey.order_id == order_id,
        CardKey.product_id == product_id,
        CardKey.status == CardKeyStatus.SOLD.value,
    )
    result = await db.execute(stmt)
    return result.scalar_one()


async def top_up(
    db: AsyncSession,
    product_id: int,
    order_id: int,
    quantity: int,
    now: Optional[datetime] = None,
) -> List[int]:
    """
    补发：直接把新的可用卡密标记为已售出并归属订单
    仅用于过期订单被强制确认支付的场景
    """
    key_ids = await claim(db, product_id, quantity)
    await _take_available(
        db,
        key_ids,
        status=CardKeyStatus.SOLD.value,
        order_id=order_id,
        reserved_until=None,
        sold_at=now or datetime.now(),
    )
    logger.info(f"订单 {order_id} 补发卡密 {len(key_ids)} 张（商品 {product_id}）")
    return key_ids


async def release_lapsed(db: AsyncSession, now: Optional[datetime] = None) -> int:
    """释放所有超过截止时间的预留卡密（不区分订单）"""
    stmt = (
        update(CardKey)
        .where(
            CardKey.status == CardKeyStatus.RESERVED.value,
            CardKey.reserved_until < (now or datetime.now()),
        )
        .values(
            status=CardKeyStatus.AVAILABLE.value,
            order_id=None,
            reserved_until=None,
        )
    )
    result = await db.execute(stmt)
    return result.rowcount
