"""
应用配置模块
使用 pydantic-settings 从环境变量加载配置
"""
from pydantic import field_validator
from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import List


class Settings(BaseSettings):
    """应用配置类"""

    # 数据库（生产环境建议 postgresql+asyncpg://，才能真正使用 SKIP LOCKED）
    database_url: str = "sqlite+aiosqlite:///./data/cardshop.db"

    # 卡密加密密钥（派生 AES-256 密钥与去重指纹密钥）
    card_secret: str = "change_me"

    # 库存预留时长（分钟）
    reserve_minutes: int = 30

    # 过期预留清理间隔（秒）
    reaper_interval_seconds: int = 60

    # 支付回调签名密钥，为空时回调接口关闭
    payment_webhook_secret: str = ""

    # 服务器
    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False
    enable_docs: bool = False  # 生产环境默认关闭 API 文档

    # CORS
    cors_origins: str = "http://localhost:5173,http://localhost:3000"

    # 限流：每个 IP 在 60 秒内允许的次数
    order_rate_limit: int = 30
    lookup_rate_limit: int = 20

    # 管理员配置 (HTTP Basic Auth)
    admin_username: str = "admin"
    admin_password: str = "admin888"  # 生产环境请修改！

    @field_validator("card_secret")
    @classmethod
    def _check_card_secret(cls, v: str) -> str:
        if not v or len(v) < 8:
            raise ValueError("CARD_SECRET must be set and >= 8 chars")
        return v

    @property
    def cors_origins_list(self) -> List[str]:
        """将逗号分隔的 CORS 源转换为列表"""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """获取配置单例（带缓存）"""
    return Settings()
