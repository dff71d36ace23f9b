from __future__ import annotations
from functools import lru_cache
from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # ── App ──────────────────────────────────────────────────────────────────
    APP_NAME: str = "Catalog Sync"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "production"

    # ── Authentication ───────────────────────────────────────────────────────
    API_KEY: str  # required, no default

    # ── Database ─────────────────────────────────────────────────────────────
    DB_USER: str  # required
    DB_PASSWORD: str  # required
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_NAME: str = "catalog"
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10

    # ── Redis (run lease only) ───────────────────────────────────────────────
    REDIS_PASSWORD: str = ""
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_POOL_SIZE: int = 5
    REDIS_SOCKET_TIMEOUT: float = 2.0
    REDIS_CONNECT_TIMEOUT: float = 2.0

    @property
    def REDIS_URL(self) -> str:
        from urllib.parse import quote_plus
        if self.REDIS_PASSWORD:
            return f"redis://:{quote_plus(self.REDIS_PASSWORD)}@{self.REDIS_HOST}:{self.REDIS_PORT}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}"

    # ── Billetweb upstream ───────────────────────────────────────────────────
    BILLETWEB_API_URL: str = "https://www.billetweb.fr/api"
    BILLETWEB_API_KEY: str = ""      # empty disables the scheduler
    BILLETWEB_PAGE_SIZE: int = 50
    BILLETWEB_HTTP_TIMEOUT: float = 10.0
    BILLETWEB_MAX_ATTEMPTS: int = 3
    BILLETWEB_BACKOFF_BASE_SECONDS: float = 0.5
    BILLETWEB_BACKOFF_FACTOR: float = 2.0
    BILLETWEB_BACKOFF_MAX_SECONDS: float = 8.0

    # ── Scheduler / runs ─────────────────────────────────────────────────────
    SCHEDULER_ENABLED: bool = True
    SYNC_INTERVAL_SECONDS: int = 900         # 15 minutes
    SYNC_JITTER_SECONDS: int = 30
    SYNC_RUN_TIMEOUT_SECONDS: float = 120.0
    SYNC_PARTIAL_FETCH_POLICY: str = "abort"  # abort | apply_prefix
    SYNC_DEFAULT_ENTITY_TYPE: str = "stage"
    SYNC_HISTORY_LIMIT: int = 10
    SYNC_LEASE_BACKEND: str = "none"          # none | redis

    @property
    def DATABASE_URL(self) -> str:
        from urllib.parse import quote_plus
        return (
            f"postgresql+asyncpg://{quote_plus(self.DB_USER)}:{quote_plus(self.DB_PASSWORD)}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
        )

    @property
    def billetweb_configured(self) -> bool:
        return bool(self.BILLETWEB_API_KEY)

    @field_validator("ENVIRONMENT")
    @classmethod
    def validate_env(cls, v: str) -> str:
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"ENVIRONMENT must be one of {allowed}")
        return v

    @field_validator("SYNC_PARTIAL_FETCH_POLICY")
    @classmethod
    def validate_partial_policy(cls, v: str) -> str:
        allowed = {"abort", "apply_prefix"}
        if v not in allowed:
            raise ValueError(f"SYNC_PARTIAL_FETCH_POLICY must be one of {allowed}")
        return v

    @field_validator("SYNC_DEFAULT_ENTITY_TYPE")
    @classmethod
    def validate_entity_type(cls, v: str) -> str:
        allowed = {"animation", "formation", "stage"}
        if v not in allowed:
            raise ValueError(f"SYNC_DEFAULT_ENTITY_TYPE must be one of {allowed}")
        return v

    @field_validator("SYNC_LEASE_BACKEND")
    @classmethod
    def validate_lease_backend(cls, v: str) -> str:
        allowed = {"none", "redis"}
        if v not in allowed:
            raise ValueError(f"SYNC_LEASE_BACKEND must be one of {allowed}")
        return v

    model_config = {"env_file": ".env", "extra": "ignore"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
