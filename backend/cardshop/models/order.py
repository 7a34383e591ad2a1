"""
订单数据模型
orders / order_items 表，创建后只会修改状态字段，不会删除
"""
from sqlalchemy import Column, Integer, String, DateTime, Text, ForeignKey
from sqlalchemy.sql import func
from cardshop.core.database import Base
import enum


class OrderStatus(str, enum.Enum):
    """
    订单状态枚举

    pending -> paid -> delivered 是唯一的成功路径
    delivered / canceled 为终态；delivery_failed 需要人工处理
    """
    PENDING = "pending"
    PAID = "paid"
    DELIVERED = "delivered"
    DELIVERY_FAILED = "delivery_failed"
    EXPIRED = "expired"
    CANCELED = "canceled"


class Order(Base):
    """订单表"""
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # 公开订单号，18 位数字（时间前缀）
    order_no = Column(String(32), unique=True, index=True, nullable=False)

    # 访问凭证（免登录查单），与订单号同格式但相互独立
    access_token = Column(String(32), unique=True, nullable=False)

    customer_contact = Column(String(200), nullable=False, index=True)

    customer_note = Column(Text, nullable=True)

    status = Column(String(20), default=OrderStatus.PENDING.value, nullable=False, index=True)

    # 订单总额（分）
    total_cents = Column(Integer, nullable=False)

    # 预留截止时间，过期未支付则释放库存
    reserved_expires_at = Column(DateTime, nullable=True, index=True)

    paid_at = Column(DateTime, nullable=True)

    delivered_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())

    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<Order(order_no={self.order_no}, status={self.status})>"


class OrderItem(Base):
    """订单明细表（下单时快照单价）"""
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)

    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)

    qty = Column(Integer, nullable=False)

    unit_price_cents = Column(Integer, nullable=False)

    created_at = Column(DateTime, server_default=func.now())
