"""
Order Service — 設定

すべての設定は環境変数から読み込む。
"""

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    database_url: str
    auth_service_url: str
    cart_service_url: str
    redis_url: str = "redis://localhost:6379"
    persist_timeout: float = 5.0
    http_timeout: float = 10.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.environ["DATABASE_URL"],
            auth_service_url=os.environ["AUTH_SERVICE_URL"],
            cart_service_url=os.environ["CART_SERVICE_URL"],
            redis_url=os.environ.get("REDIS_URL", "redis://localhost:6379"),
            persist_timeout=float(os.environ.get("PERSIST_TIMEOUT_SECONDS", "5.0")),
            http_timeout=float(os.environ.get("HTTP_TIMEOUT_SECONDS", "10.0")),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        )
