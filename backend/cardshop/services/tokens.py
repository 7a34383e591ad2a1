"""
订单号 / 访问凭证生成

两者都是 18 位数字（时间前缀 + 随机后缀），相互独立生成。
访问凭证是免登录查单的唯一依据，等同于持有者凭证，不绑定任何会话。
"""
from typing import Tuple
from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession
from cardshop.core.exceptions import CollisionExhausted
from cardshop.core.formatting import numeric18
from cardshop.models import Order
import logging

logger = logging.getLogger(__name__)

# 同一秒内撞号概率极低，重试只是兜底
MAX_ATTEMPTS = 5


async def _already_used(db: AsyncSession, order_no: str, access_token: str) -> bool:
    stmt = select(Order.id).where(
        or_(
            Order.order_no.in_([order_no, access_token]),
            Order.access_token.in_([order_no, access_token]),
        )
    ).limit(1)
    result = await db.execute(stmt)
    return result.first() is not None


async def issue_order_identifiers(db: AsyncSession) -> Tuple[str, str]:
    """生成未被占用的 (订单号, 访问凭证)"""
    for attempt in range(1, MAX_ATTEMPTS + 1):
        order_no = numeric18()
        access_token = numeric18()
        if order_no == access_token:
            continue
        if await _already_used(db, order_no, access_token):
            logger.warning(f"订单号碰撞，重试第 {attempt} 次")
            continue
        return order_no, access_token

    logger.error(f"连续 {MAX_ATTEMPTS} 次生成订单号均发生碰撞")
    raise CollisionExhausted()
