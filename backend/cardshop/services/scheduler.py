"""
定时任务模块
负责回收过期预留：释放超时卡密、把超时未支付的订单标记为过期

这里只是兜底，订单状态机在支付确认时会自己检查是否超时；
定时清理用于回收那些下单后再也没人访问的订单所占的库存。
"""
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import AsyncSession
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from cardshop.core.database import async_session
from cardshop.core.config import get_settings
from cardshop.services import allocator, orders
import logging

logger = logging.getLogger(__name__)
settings = get_settings()

scheduler = AsyncIOScheduler()


@dataclass
class ReapResult:
    released_keys: int
    expired_orders: int


async def release_expired_reservations(db: AsyncSession, now: Optional[datetime] = None) -> ReapResult:
    """
    释放过期预留（单个事务）
    - 所有超过截止时间的 pending 订单标记为 expired
    - 所有超过截止时间的 reserved 卡密恢复为 available（不区分订单）
    已支付 / 发货失败的订单不受影响

    先订单后卡密，与支付确认的加锁顺序一致
    """
    now = now or datetime.now()
    try:
        expired = await orders.expire_lapsed_orders(db, now)
        released = await allocator.release_lapsed(db, now)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return ReapResult(released_keys=released, expired_orders=expired)


async def cleanup_expired_reservations():
    """定时任务入口：失败只记录日志，不影响下一次执行"""
    async with async_session() as db:
        try:
            result = await release_expired_reservations(db)
            if result.released_keys or result.expired_orders:
                logger.info(
                    f"过期预留清理完成，释放卡密 {result.released_keys} 张，"
                    f"过期订单 {result.expired_orders} 个"
                )
        except Exception:
            logger.exception("清理过期预留时发生错误")


def start_scheduler():
    """启动定时任务调度器（启动时立即执行一次，之后按固定间隔执行）"""
    scheduler.add_job(
        cleanup_expired_reservations,
        trigger=IntervalTrigger(seconds=settings.reaper_interval_seconds),
        id="cleanup_expired_reservations",
        name="释放过期预留",
        replace_existing=True,
        next_run_time=datetime.now(),
    )

    scheduler.start()
    logger.info("定时任务调度器已启动")


def stop_scheduler():
    """停止定时任务调度器"""
    scheduler.shutdown()
    logger.info("定时任务调度器已停止")
