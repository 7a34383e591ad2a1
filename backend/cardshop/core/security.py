"""
安全防护模块
用于处理限流、管理员认证、支付回调签名等安全逻辑
"""
from fastapi import Request, HTTPException, status
import time
import logging

logger = logging.getLogger(__name__)

# 限流时间窗口（秒）
LIMIT_WINDOW = 60


class RateLimiter:
    """
    内存限流依赖
    结构: { "ip_address": [timestamp1, timestamp2, ...] }
    窗口内没有请求的 IP 会被移除，字典大小只取决于最近一个窗口内的访问者
    注意: 在多进程/分布式部署中需要改用 Redis，当前单进程部署使用内存足够
    """

    def __init__(self, name: str, max_attempts: int, window: int = LIMIT_WINDOW):
        self.name = name
        self.max_attempts = max_attempts
        self.window = window
        self._records = {}
        self._last_sweep = 0.0

    def _sweep(self, now: float):
        """清理整个窗口内都没有请求的 IP"""
        cutoff = now - self.window
        for ip in [ip for ip, history in self._records.items() if not history or history[-1] < cutoff]:
            del self._records[ip]
        self._last_sweep = now

    async def __call__(self, request: Request):
        # 获取真实 IP (如果有 Nginx 代理，需从 X-Forwarded-For 获取，这里简化取 direct remote)
        client_ip = request.client.host if request.client else "unknown"

        now = time.time()
        if now - self._last_sweep >= self.window:
            self._sweep(now)

        # 1. 清理窗口期的旧记录
        history = self._records.pop(client_ip, [])
        while history and history[0] < now - self.window:
            history.pop(0)

        # 2. 检查是否超限
        if len(history) >= self.max_attempts:
            self._records[client_ip] = history
            logger.warning(f"安全警告: IP {client_ip} 触发 {self.name} 限流")
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail=f"请求过于频繁，请休息 {self.window} 秒后再试"
            )

        # 3. 记录本次请求
        history.append(now)
        self._records[client_ip] = history
        return True

    def reset(self):
        self._records.clear()
        self._last_sweep = 0.0


# --- 管理员认证 ---
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from fastapi import Depends, Header
import secrets
from cardshop.core.config import get_settings
from cardshop.core.crypto import hmac_sha256_hex, timing_safe_equal

security = HTTPBasic()

def get_current_admin(credentials: HTTPBasicCredentials = Depends(security)):
    """
    管理员认证依赖
    使用 HTTP Basic Auth
    """
    settings = get_settings()

    # 使用 secrets.compare_digest 防止时序攻击
    is_username_correct = secrets.compare_digest(
        credentials.username.encode("utf-8"), settings.admin_username.encode("utf-8")
    )
    is_password_correct = secrets.compare_digest(
        credentials.password.encode("utf-8"), settings.admin_password.encode("utf-8")
    )

    if not (is_username_correct and is_password_correct):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="管理员认证失败",
            headers={"WWW-Authenticate": "Basic"},
        )
    return credentials.username


# --- 支付回调签名 ---

async def verify_payment_signature(
    request: Request,
    x_fakan_signature: str = Header("", description="HMAC-SHA256(原始请求体) 的 hex"),
) -> bytes:
    """
    校验支付回调签名，返回原始请求体
    未配置 PAYMENT_WEBHOOK_SECRET 时回调接口不可用
    """
    settings = get_settings()
    if not settings.payment_webhook_secret:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="PAYMENT_WEBHOOK_SECRET not set"
        )

    body = await request.body()
    expected = hmac_sha256_hex(settings.payment_webhook_secret, body)
    if not timing_safe_equal(x_fakan_signature, expected):
        logger.warning("支付回调签名校验失败")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid signature"
        )
    return body
