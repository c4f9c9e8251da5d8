"""
Order Service — 設定

環境変数から設定を読み込む。テストでは Settings を直接組み立てて
create_app() に渡す。
"""

import logging
import os
from dataclasses import dataclass, field


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite+aiosqlite:///./pizzacraft.db"
    redis_url: str = "redis://localhost:6379"
    jwt_secret: str = "change-me"
    jwt_algorithm: str = "HS256"
    notification_service_url: str | None = None
    log_level: str = "INFO"

    # ステータス遷移ポリシー: スタッフによる巻き戻しを許可するか
    allow_backward_transitions: bool = False
    estimated_delivery_minutes: int = 45

    # Cross-Client Sync Bridge
    sync_poll_interval: float = 1.5
    sync_snapshot_limit: int = 200
    sync_poller_enabled: bool = True

    # Realtime: "local" (プロセス内) または "redis" (複数ワーカー)
    realtime_relay: str = "local"
    realtime_queue_size: int = 100

    cors_origins: list[str] = field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls) -> "Settings":
        origins = os.environ.get("CORS_ORIGINS", "*")
        return cls(
            database_url=os.environ.get("DATABASE_URL", cls.database_url),
            redis_url=os.environ.get("REDIS_URL", cls.redis_url),
            jwt_secret=os.environ.get("JWT_SECRET", cls.jwt_secret),
            jwt_algorithm=os.environ.get("JWT_ALGORITHM", cls.jwt_algorithm),
            notification_service_url=os.environ.get("NOTIFICATION_SERVICE_URL") or None,
            log_level=os.environ.get("LOG_LEVEL", cls.log_level),
            allow_backward_transitions=_env_bool("ALLOW_BACKWARD_TRANSITIONS"),
            estimated_delivery_minutes=int(
                os.environ.get("ESTIMATED_DELIVERY_MINUTES", cls.estimated_delivery_minutes)
            ),
            sync_poll_interval=float(
                os.environ.get("SYNC_POLL_INTERVAL", cls.sync_poll_interval)
            ),
            sync_snapshot_limit=int(
                os.environ.get("SYNC_SNAPSHOT_LIMIT", cls.sync_snapshot_limit)
            ),
            sync_poller_enabled=_env_bool("SYNC_POLLER_ENABLED", True),
            realtime_relay=os.environ.get("REALTIME_RELAY", cls.realtime_relay).lower(),
            realtime_queue_size=int(
                os.environ.get("REALTIME_QUEUE_SIZE", cls.realtime_queue_size)
            ),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] [order-service] %(name)s: %(message)s",
    )
