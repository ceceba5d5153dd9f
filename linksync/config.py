from __future__ import annotations
from functools import lru_cache
from typing import List
from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # ── App ──────────────────────────────────────────────────────────────────
    APP_NAME: str = "Link Sync Engine"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "production"

    # ── Authentication ───────────────────────────────────────────────────────
    API_KEY: str  # required, no default
    CRON_SECRET: str = ""  # bearer secret for the external scheduler

    # ── CORS ─────────────────────────────────────────────────────────────────
    CORS_ORIGINS: List[str] = ["http://localhost:3000"]

    # ── Database ─────────────────────────────────────────────────────────────
    DB_USER: str  # required, no default
    DB_PASSWORD: str  # required, no default
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_NAME: str = "linksync"
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20

    # ── Redis ────────────────────────────────────────────────────────────────
    REDIS_PASSWORD: str = ""
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_POOL_SIZE: int = 10
    REDIS_SOCKET_TIMEOUT: float = 2.0
    REDIS_CONNECT_TIMEOUT: float = 2.0

    @property
    def REDIS_URL(self) -> str:
        from urllib.parse import quote_plus
        if self.REDIS_PASSWORD:
            return f"redis://:{quote_plus(self.REDIS_PASSWORD)}@{self.REDIS_HOST}:{self.REDIS_PORT}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}"

    # ── Cache TTLs (seconds) ─────────────────────────────────────────────────
    CACHE_TTL_LISTING: int = 120     # link listings with totals
    CACHE_TTL_ANALYTICS: int = 900   # snapshot ranges, only change on sync

    # ── Provider (Bitly v4) ──────────────────────────────────────────────────
    BITLY_API_BASE: str = "https://api-ssl.bitly.com/v4"
    BITLY_ACCESS_TOKEN: str = ""
    BITLY_ORGANIZATION_GUID: str = ""
    BITLY_GROUP_GUID: str = ""
    SHORT_DOMAINS: List[str] = ["bit.ly"]
    DEFAULT_SHORT_DOMAIN: str = "bit.ly"
    PROVIDER_TIMEOUT: float = 15.0
    PROVIDER_MAX_ATTEMPTS: int = 3
    PROVIDER_BACKOFF_MULTIPLIER: float = 1.0
    PROVIDER_BACKOFF_MAX: float = 8.0

    # ── Sync engine ──────────────────────────────────────────────────────────
    SYNC_CONCURRENCY: int = 4
    SYNC_WINDOW_DAYS: int = 2          # yesterday (finalized) + today
    SYNC_LINK_TIMEOUT: float = 30.0    # per attempt, all calls for one link
    SYNC_PERSIST_TIMEOUT: float = 10.0
    SYNC_LOCK_STALE_SECONDS: int = 900
    SYNC_HEARTBEAT_SECONDS: float = 60.0
    IMPORT_LIMIT: int = 100

    # ── Assignments ──────────────────────────────────────────────────────────
    ASSIGNMENT_POLICY: str = "many"    # many | single

    # ── Scheduler ────────────────────────────────────────────────────────────
    SCHEDULER_ENABLED: bool = True
    SYNC_CRON_HOUR: int = 3            # UTC
    SYNC_CRON_MINUTE: int = 0

    @property
    def DATABASE_URL(self) -> str:
        from urllib.parse import quote_plus
        return (
            f"postgresql+asyncpg://{quote_plus(self.DB_USER)}:{quote_plus(self.DB_PASSWORD)}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
        )

    @field_validator("ENVIRONMENT")
    @classmethod
    def validate_env(cls, v: str) -> str:
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"ENVIRONMENT must be one of {allowed}")
        return v

    @field_validator("ASSIGNMENT_POLICY")
    @classmethod
    def validate_policy(cls, v: str) -> str:
        if v not in {"many", "single"}:
            raise ValueError("ASSIGNMENT_POLICY must be 'many' or 'single'")
        return v

    @field_validator("SYNC_CONCURRENCY")
    @classmethod
    def validate_concurrency(cls, v: int) -> int:
        if not 1 <= v <= 16:
            raise ValueError("SYNC_CONCURRENCY must be between 1 and 16")
        return v

    @field_validator("SYNC_WINDOW_DAYS", "PROVIDER_MAX_ATTEMPTS")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator("DEFAULT_SHORT_DOMAIN")
    @classmethod
    def lower_domain(cls, v: str) -> str:
        return v.strip().lower()

    model_config = {"env_file": ".env", "extra": "ignore"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
