"""
卡密库
导入（按指纹去重）、解密查看、修改、删除
只负责存储与唯一性，不包含订单业务规则
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional
from sqlalchemy import select, delete, func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from cardshop.core.crypto import encrypt_text, decrypt_text, fingerprint
from cardshop.core.exceptions import (
    CardKeyNotFound,
    CorruptCiphertext,
    DuplicateKey,
    NotEditable,
    ProductNotFound,
    ValidationError,
)
from cardshop.models import CardKey, CardKeyStatus, Product
import logging

logger = logging.getLogger(__name__)


@dataclass
class ImportResult:
    inserted: int
    skipped: int


@dataclass
class CardKeyView:
    """管理端展示用（含明文）"""
    id: int
    product_id: int
    status: str
    code: str
    order_id: Optional[int] = None
    sold_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


def _insert_ignore_duplicates(db: AsyncSession, **values):
    """按方言构造 INSERT ... ON CONFLICT (product_id, code_fingerprint) DO NOTHING"""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        insert = postgresql.insert
    elif dialect == "sqlite":
        insert = sqlite.insert
    else:
        raise NotImplementedError(f"不支持的数据库: {dialect}")
    return insert(CardKey.__table__).values(**values).on_conflict_do_nothing(
        index_elements=["product_id", "code_fingerprint"]
    )


def normalize_codes(raw: Iterable[str]) -> List[str]:
    """去掉首尾空白，丢弃空行"""
    return [c.strip() for c in raw if c and c.strip()]


async def import_keys(db: AsyncSession, product_id: int, codes: Iterable[str]) -> ImportResult:
    """
    批量导入卡密
    已存在（同商品同指纹）的卡密计为跳过，不报错；整批在一个事务内提交
    """
    product = await db.get(Product, product_id)
    if product is None:
        raise ProductNotFound()

    inserted = 0
    skipped = 0
    try:
        for code in normalize_codes(codes):
            stmt = _insert_ignore_duplicates(
                db,
                product_id=product_id,
                code_encrypted=encrypt_text(code),
                code_fingerprint=fingerprint(code),
                status=CardKeyStatus.AVAILABLE.value,
            )
            result = await db.execute(stmt)
            if result.rowcount == 1:
                inserted += 1
            else:
                skipped += 1
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(f"商品 {product_id} 导入卡密: 新增 {inserted}, 跳过 {skipped}")
    return ImportResult(inserted=inserted, skipped=skipped)


def _reveal(card: CardKey) -> str:
    try:
        return decrypt_text(card.code_encrypted)
    except CorruptCiphertext:
        logger.exception(f"卡密 {card.id} 解密失败（商品 {card.product_id}）")
        raise


async def reveal_key(db: AsyncSession, key_id: int) -> str:
    """解密读取卡密明文；无法解密时抛出 CorruptCiphertext，不会当作不存在"""
    card = await db.get(CardKey, key_id)
    if card is None:
        raise CardKeyNotFound()
    return _reveal(card)


def reveal_codes(cards: Iterable[CardKey]) -> List[str]:
    """批量解密（任一失败即抛出 CorruptCiphertext）"""
    return [_reveal(card) for card in cards]


async def _get_editable(db: AsyncSession, key_id: int) -> CardKey:
    stmt = (
        select(CardKey)
        .where(CardKey.id == key_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    result = await db.execute(stmt)
    card = result.scalar_one_or_none()
    if card is None:
        raise CardKeyNotFound()
    if card.status != CardKeyStatus.AVAILABLE.value:
        # 已预留 / 已售出的卡密是交易记录的一部分
        raise NotEditable()
    return card


async def edit_key(db: AsyncSession, key_id: int, new_code: str) -> CardKey:
    """修改卡密内容（仅限 available）"""
    new_code = (new_code or "").strip()
    if not new_code:
        raise ValidationError("卡密内容不能为空")
    try:
        card = await _get_editable(db, key_id)
        new_fp = fingerprint(new_code)

        stmt = select(CardKey.id).where(
            CardKey.product_id == card.product_id,
            CardKey.code_fingerprint == new_fp,
            CardKey.id != card.id,
        )
        if (await db.execute(stmt)).first() is not None:
            raise DuplicateKey()

        card.code_encrypted = encrypt_text(new_code)
        card.code_fingerprint = new_fp
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        raise DuplicateKey() from e
    except Exception:
        await db.rollback()
        raise

    logger.info(f"卡密 {key_id} 已更新")
    return card


async def delete_key(db: AsyncSession, key_id: int) -> None:
    """删除卡密（仅限 available）"""
    try:
        await _get_editable(db, key_id)
        await db.execute(
            delete(CardKey).where(
                CardKey.id == key_id,
                CardKey.status == CardKeyStatus.AVAILABLE.value,
            )
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(f"卡密 {key_id} 已删除")


async def list_keys(db: AsyncSession, product_id: int, status: str = CardKeyStatus.AVAILABLE.value) -> List[CardKeyView]:
    """管理端列表：按状态列出某商品的卡密（含明文，最新在前）"""
    stmt = (
        select(CardKey)
        .where(CardKey.product_id == product_id, CardKey.status == status)
        .order_by(CardKey.id.desc())
    )
    result = await db.execute(stmt)
    return [
        CardKeyView(
            id=card.id,
            product_id=card.product_id,
            status=card.status,
            code=_reveal(card),
            order_id=card.order_id,
            sold_at=card.sold_at,
            created_at=card.created_at,
        )
        for card in result.scalars().all()
    ]


async def inventory_stats(db: AsyncSession, product_id: int) -> Dict[str, int]:
    """各状态库存数量"""
    stmt = (
        select(CardKey.status, func.count(CardKey.id))
        .where(CardKey.product_id == product_id)
        .group_by(CardKey.status)
    )
    result = await db.execute(stmt)
    stats = {s.value: 0 for s in CardKeyStatus}
    for status, count in result.all():
        stats[status] = count
    return stats
