"""
金额与编号格式化
"""
from datetime import datetime
from typing import Optional
import secrets


def timestamp14(now: Optional[datetime] = None) -> str:
    """14 位时间前缀：YYYYMMDDHHmmss"""
    return (now or datetime.now()).strftime("%Y%m%d%H%M%S")


def random_digits(length: int) -> str:
    """密码学安全的随机数字串"""
    return "".join(str(secrets.randbelow(10)) for _ in range(length))


def numeric18(now: Optional[datetime] = None) -> str:
    """18 位纯数字编号：时间前缀（便于排序）+ 4 位随机后缀"""
    return f"{timestamp14(now)}{random_digits(4)}"


def format_money(cents: Optional[int]) -> str:
    """分 -> 元，保留两位小数"""
    cents = int(cents or 0)
    sign = "-" if cents < 0 else ""
    yuan, fen = divmod(abs(cents), 100)
    return f"{sign}{yuan}.{fen:02d}"
