"""
业务异常
每个错误都有固定的 ErrorCode，调用方按类型（或 code）匹配，不解析文案
"""
import enum
from typing import Optional


class ErrorCode(str, enum.Enum):
    """错误类型（封闭枚举）"""
    VALIDATION_ERROR = "validation_error"
    PRODUCT_UNAVAILABLE = "product_unavailable"
    OUT_OF_STOCK = "out_of_stock"
    INSUFFICIENT_STOCK = "insufficient_stock"
    PRODUCT_NOT_FOUND = "product_not_found"
    CARD_KEY_NOT_FOUND = "card_key_not_found"
    ORDER_NOT_FOUND = "order_not_found"
    NOT_EDITABLE = "not_editable"
    DUPLICATE_KEY = "duplicate_key"
    ORDER_CANCELED = "order_canceled"
    ALREADY_DELIVERED = "already_delivered"
    CORRUPT_CIPHERTEXT = "corrupt_ciphertext"
    COLLISION_EXHAUSTED = "collision_exhausted"


class ShopError(Exception):
    """所有业务异常的基类"""
    code: ErrorCode
    default_message: str = "操作失败"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


# --- 输入校验 ---

class ValidationError(ShopError):
    code = ErrorCode.VALIDATION_ERROR
    default_message = "参数错误"


# --- 卡密库存 ---

class ProductNotFound(ShopError):
    code = ErrorCode.PRODUCT_NOT_FOUND
    default_message = "商品不存在"


class CardKeyNotFound(ShopError):
    code = ErrorCode.CARD_KEY_NOT_FOUND
    default_message = "卡密不存在"


class NotEditable(ShopError):
    code = ErrorCode.NOT_EDITABLE
    default_message = "卡密已预留或已售出，不能修改"


class DuplicateKey(ShopError):
    code = ErrorCode.DUPLICATE_KEY
    default_message = "该卡密已存在"


class CorruptCiphertext(ShopError):
    code = ErrorCode.CORRUPT_CIPHERTEXT
    default_message = "卡密数据无法解密"


class InsufficientStock(ShopError):
    code = ErrorCode.INSUFFICIENT_STOCK
    default_message = "可用库存不足"


# --- 订单 ---

class ProductUnavailable(ShopError):
    code = ErrorCode.PRODUCT_UNAVAILABLE
    default_message = "商品不存在或已下架"


class OutOfStock(ShopError):
    code = ErrorCode.OUT_OF_STOCK
    default_message = "库存不足，请减少数量或稍后再试"


class OrderNotFound(ShopError):
    code = ErrorCode.ORDER_NOT_FOUND
    default_message = "订单不存在"


class OrderCanceled(ShopError):
    code = ErrorCode.ORDER_CANCELED
    default_message = "订单已取消，无法支付"


class AlreadyDelivered(ShopError):
    code = ErrorCode.ALREADY_DELIVERED
    default_message = "已发货订单不能取消"


class CollisionExhausted(ShopError):
    code = ErrorCode.COLLISION_EXHAUSTED
    default_message = "订单号生成失败，请重试"
