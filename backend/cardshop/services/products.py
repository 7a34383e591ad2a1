"""
商品服务
商品由管理端维护；订单流程只读取价格与上架状态
"""
from dataclasses import dataclass
from typing import List, Optional
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from cardshop.core.exceptions import ProductNotFound, ValidationError
from cardshop.models import CardKey, CardKeyStatus, Product
import logging

logger = logging.getLogger(__name__)


@dataclass
class ProductStock:
    product: Product
    available_count: int


@dataclass
class ProductInventory:
    """管理端商品（含下架商品）及各状态卡密数量"""
    product: Product
    available_count: int
    reserved_count: int
    sold_count: int


def _count_keys(status: CardKeyStatus):
    return (
        select(func.count(CardKey.id))
        .where(
            CardKey.product_id == Product.id,
            CardKey.status == status.value,
        )
        .scalar_subquery()
    )


def _available_count():
    return _count_keys(CardKeyStatus.AVAILABLE)


def _inventory_query():
    return select(
        Product,
        _count_keys(CardKeyStatus.AVAILABLE),
        _count_keys(CardKeyStatus.RESERVED),
        _count_keys(CardKeyStatus.SOLD),
    )


def _inventory(row) -> ProductInventory:
    product, available, reserved, sold = row
    return ProductInventory(
        product=product,
        available_count=available,
        reserved_count=reserved,
        sold_count=sold,
    )


def _validate(name: str, price_cents: int) -> str:
    name = (name or "").strip()
    if not name:
        raise ValidationError("商品名称不能为空")
    if isinstance(price_cents, bool) or not isinstance(price_cents, int) or price_cents < 0:
        raise ValidationError("价格必须是非负整数（分）")
    return name


async def list_active_products(db: AsyncSession) -> List[ProductStock]:
    """前台商品列表（含可售库存）"""
    stmt = (
        select(Product, _available_count())
        .where(Product.is_active.is_(True))
        .order_by(Product.id.desc())
    )
    result = await db.execute(stmt)
    return [ProductStock(product=p, available_count=c) for p, c in result.all()]


async def get_product_public(db: AsyncSession, product_id: int) -> ProductStock:
    stmt = (
        select(Product, _available_count())
        .where(Product.id == product_id, Product.is_active.is_(True))
    )
    row = (await db.execute(stmt)).first()
    if row is None:
        raise ProductNotFound("商品不存在或已下架")
    return ProductStock(product=row[0], available_count=row[1])


async def list_products_admin(db: AsyncSession) -> List[ProductInventory]:
    """管理端商品列表：包含已下架商品，方便重新上架或管理卡密"""
    result = await db.execute(_inventory_query().order_by(Product.id.desc()))
    return [_inventory(row) for row in result.all()]


async def get_product_admin(db: AsyncSession, product_id: int) -> ProductInventory:
    row = (await db.execute(_inventory_query().where(Product.id == product_id))).first()
    if row is None:
        raise ProductNotFound()
    return _inventory(row)


async def create_product(
    db: AsyncSession,
    name: str,
    price_cents: int,
    description: Optional[str] = None,
    is_active: bool = True,
) -> Product:
    name = _validate(name, price_cents)
    product = Product(
        name=name,
        description=description or None,
        price_cents=price_cents,
        is_active=is_active,
    )
    db.add(product)
    await db.commit()
    await db.refresh(product)
    logger.info(f"商品已创建: {product.id} {product.name}")
    return product


async def update_product(
    db: AsyncSession,
    product_id: int,
    name: str,
    price_cents: int,
    description: Optional[str] = None,
    is_active: bool = True,
) -> Product:
    """修改商品；已下单的订单使用快照单价，不受影响"""
    name = _validate(name, price_cents)
    product = await db.get(Product, product_id)
    if product is None:
        raise ProductNotFound()
    product.name = name
    product.description = description or None
    product.price_cents = price_cents
    product.is_active = is_active
    await db.commit()
    await db.refresh(product)
    return product


async def set_product_active(db: AsyncSession, product_id: int, is_active: bool) -> Product:
    product = await db.get(Product, product_id)
    if product is None:
        raise ProductNotFound()
    product.is_active = is_active
    await db.commit()
    await db.refresh(product)
    logger.info(f"商品 {product_id} {'上架' if is_active else '下架'}")
    return product
