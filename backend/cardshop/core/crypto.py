"""
卡密加密模块

存储格式: base64(nonce).base64(tag).base64(ciphertext)
- AES-256-GCM，密钥为 SHA-256(CARD_SECRET)
- nonce 12 字节随机，tag 16 字节
去重指纹使用独立派生的 HMAC-SHA256 密钥，查重时无需解密
"""
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cardshop.core.config import get_settings
from cardshop.core.exceptions import CorruptCiphertext
import base64
import binascii
import hashlib
import hmac
import os
import secrets
from typing import Optional

NONCE_SIZE = 12
TAG_SIZE = 16


def key_from_secret(secret: str) -> bytes:
    """从任意长度的密钥串派生 32 字节 AES 密钥"""
    return hashlib.sha256(str(secret).encode("utf-8")).digest()


def fingerprint_key_from_secret(secret: str) -> bytes:
    return hashlib.sha256(b"fingerprint:" + str(secret).encode("utf-8")).digest()


def encrypt_text(plain_text: str, secret: Optional[str] = None) -> str:
    """加密明文卡密，返回 nonce.tag.ciphertext"""
    key = key_from_secret(secret or get_settings().card_secret)
    nonce = os.urandom(NONCE_SIZE)
    sealed = AESGCM(key).encrypt(nonce, plain_text.encode("utf-8"), None)
    # cryptography 把 tag 追加在密文末尾
    ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
    return ".".join(
        base64.b64encode(part).decode("ascii")
        for part in (nonce, tag, ciphertext)
    )


def decrypt_text(payload: str, secret: Optional[str] = None) -> str:
    """
    解密卡密
    任何格式错误或 tag 校验失败都抛出 CorruptCiphertext（不会返回空值）
    """
    parts = str(payload).split(".")
    if len(parts) != 3:
        raise CorruptCiphertext("加密数据格式错误")

    try:
        nonce, tag, ciphertext = (base64.b64decode(p, validate=True) for p in parts)
    except (binascii.Error, ValueError) as e:
        raise CorruptCiphertext("加密数据不是合法的 base64") from e

    if len(nonce) != NONCE_SIZE or len(tag) != TAG_SIZE:
        raise CorruptCiphertext("加密数据长度错误")

    key = key_from_secret(secret or get_settings().card_secret)
    try:
        plain = AESGCM(key).decrypt(nonce, ciphertext + tag, None)
    except InvalidTag as e:
        raise CorruptCiphertext("卡密校验失败（密钥错误或数据被篡改）") from e

    try:
        return plain.decode("utf-8")
    except UnicodeDecodeError as e:
        raise CorruptCiphertext("卡密不是合法的 UTF-8 文本") from e


def fingerprint(code: str, secret: Optional[str] = None) -> str:
    """卡密去重指纹（hex）"""
    key = fingerprint_key_from_secret(secret or get_settings().card_secret)
    return hmac.new(key, str(code).encode("utf-8"), hashlib.sha256).hexdigest()


def hmac_sha256_hex(secret: str, body: bytes) -> str:
    if isinstance(body, str):
        body = body.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def timing_safe_equal(a: str, b: str) -> bool:
    """常量时间比较，防止时序攻击"""
    return secrets.compare_digest(str(a).encode("utf-8"), str(b).encode("utf-8"))
