from cardshop.models.product import Product
from cardshop.models.card_key import CardKey, CardKeyStatus
from cardshop.models.order import Order, OrderItem, OrderStatus

__all__ = [
    "Product",
    "CardKey",
    "CardKeyStatus",
    "Order",
    "OrderItem",
    "OrderStatus",
]
