"""
商品数据模型
"""
from sqlalchemy import Column, Integer, String, DateTime, Text, Boolean
from sqlalchemy.sql import func
from cardshop.core.database import Base


class Product(Base):
    """商品表（由管理端维护，订单流程只读）"""
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    name = Column(String(200), nullable=False)

    description = Column(Text, nullable=True)

    # 单价（分）
    price_cents = Column(Integer, nullable=False)

    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, server_default=func.now())

    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<Product(id={self.id}, name={self.name}, price_cents={self.price_cents})>"
