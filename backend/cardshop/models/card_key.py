"""
卡密数据模型
对应 card_keys 表：密文存储 + 指纹去重
"""
from sqlalchemy import Column, Integer, String, DateTime, Text, ForeignKey, UniqueConstraint, Index
from sqlalchemy.sql import func
from cardshop.core.database import Base
import enum


class CardKeyStatus(str, enum.Enum):
    """卡密状态枚举"""
    AVAILABLE = "available"   # 可售
    RESERVED = "reserved"     # 已预留（待支付订单占用）
    SOLD = "sold"             # 已售出（发货记录，永久保留）


class CardKey(Base):
    """卡密表"""
    __tablename__ = "card_keys"
    __table_args__ = (
        # 同一商品下同一卡密只能导入一次
        UniqueConstraint("product_id", "code_fingerprint", name="uq_card_keys_product_fingerprint"),
        Index("ix_card_keys_product_status", "product_id", "status"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)

    # nonce.tag.ciphertext（均为 base64）
    code_encrypted = Column(Text, nullable=False)

    # HMAC-SHA256 指纹（hex）
    code_fingerprint = Column(String(64), nullable=False)

    status = Column(String(16), default=CardKeyStatus.AVAILABLE.value, nullable=False)

    # available 时为空；reserved / sold 时指向占用订单
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True, index=True)

    reserved_until = Column(DateTime, nullable=True, index=True)

    sold_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())

    def __repr__(self):
        return f"<CardKey(id={self.id}, product_id={self.product_id}, status={self.status})>"
