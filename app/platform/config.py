from pathlib import Path
from typing import Literal, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # ── App ─────────────────────────────────────
    APP_NAME: str = "Referral Rewards Engine"
    ENVIRONMENT: Literal["local", "test", "staging", "production"] = "local"
    DEBUG: bool = True

    # ── Database ────────────────────────────────
    DATABASE_URL: str = "sqlite+aiosqlite:///./rewards.db"
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 30  # (burst capacity)
    DB_POOL_TIMEOUT: int = 30

    # ── Logging ─────────────────────────────────
    LOG_LEVEL: str = "INFO"
    LOG_DIR: Optional[str] = None  # defaults to ./logs
    LOG_TO_FILE: bool = False

    # ── Codes ───────────────────────────────────
    REFERRAL_CODE_PREFIX: str = "REF"
    REFERRAL_CODE_LENGTH: int = 8
    DISCOUNT_CODE_PREFIX: str = "PROMO"
    REWARD_CODE_PREFIX: str = "SAVE"
    DISCOUNT_CODE_LENGTH: int = 8
    CODE_GENERATION_MAX_ATTEMPTS: int = 10

    # ── Referral program defaults ───────────────
    # Used for referrals that are not attached to any season
    DEFAULT_CONVERSION_WINDOW_DAYS: int = 30

    # ── Discount cache ──────────────────────────
    DISCOUNT_CACHE_MAX_ENTRIES: int = 1024

    class Config:
        env_file = str(Path(__file__).parent.parent.parent / ".env")
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"


settings = Settings()
