"""Configuration management for the short-link service.

This module provides centralized configuration management using Pydantic BaseSettings
with environment variable support and caching for performance.

Flow Diagram — get_settings()
=============================
::
    ┌─────────────┐
    │  Call get_  │
    │  settings() │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ Check cache  │
    │ (lru_cache)  │
    └──────┬──────┘
    HIT?  │
    ┌─────┴─────┐
    │ NO         │ YES
    ▼            ▼
┌─────────┐  ┌─────────┐
│ Create  │  │ Return  │
│ Settings│  │ cached  │
│ instance│  │ value   │
└─────────┘  └─────────┘

How to Use
===========
**Step 1 — Import**::
    from shortlinks.config import get_settings

**Step 2 — Get settings**::
    settings = get_settings()
    db_url = settings.DATABASE_URL

Key Behaviours
===============
- Settings are cached after first access for performance.
- Environment variables override defaults automatically.
- ALLOWED_PROTOCOLS and CORS_ORIGINS accept comma separated strings.
- Store retry/backoff defaults: 5 retries, 5s base delay, 30s cap.

Classes:
    Settings:  Pydantic model for all configuration values.

"""

__all__ = ["Settings", "get_settings"]

import json
from functools import lru_cache
from typing import Annotated

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    APP_NAME: str = "shortlinks"
    APP_ENV: str = "development"
    BASE_URL: str = "http://localhost:8000"
    LOG_LEVEL: str = "INFO"

    # Store
    DATABASE_URL: str = "postgresql+asyncpg://shortlinks:shortlinks@db:5432/shortlinks"
    STORE_MAX_RETRIES: int = 5
    STORE_RETRY_BASE_DELAY_SECONDS: float = 5.0
    STORE_RETRY_MAX_DELAY_SECONDS: float = 30.0
    STORE_CONNECT_TIMEOUT_SECONDS: float = 10.0
    STORE_TIMEOUT_SECONDS: float = 10.0
    # 0 disables the background ping monitor
    STORE_HEALTH_CHECK_INTERVAL_SECONDS: float = 5.0
    STORE_DNS_PRECHECK: bool = True

    # Short code policy
    SHORT_CODE_LENGTH: int = 10
    CUSTOM_CODE_MIN_LENGTH: int = 3
    CUSTOM_CODE_MAX_LENGTH: int = 20
    CODE_ALLOCATION_MAX_ATTEMPTS: int = 5
    MAX_URL_LENGTH: int = 2048
    ALLOWED_PROTOCOLS: Annotated[list[str], NoDecode] = ["http", "https"]
    MAX_EXPIRY_DAYS: int = 365
    EXPIRED_SWEEP_INTERVAL_SECONDS: int = 3600

    # Rate limiting (Redis fixed window)
    REDIS_URL: str = "redis://redis:6379/0"
    RATE_LIMIT_ENABLED: bool = False
    RATE_LIMIT_WINDOW_SECONDS: int = 900
    RATE_LIMIT_MAX_REQUESTS: int = 100

    # Auth
    JWT_SECRET: str = "change-me"
    JWT_ALGORITHM: str = "HS256"
    AUTH_REQUIRED: bool = False

    CORS_ORIGINS: Annotated[list[str], NoDecode] = ["*"]

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
    )

    @field_validator("ALLOWED_PROTOCOLS", "CORS_ORIGINS", mode="before")
    @classmethod
    def split_csv(cls, v: object) -> object:
        if isinstance(v, str):
            if v.lstrip().startswith("["):
                return json.loads(v)
            return [item.strip() for item in v.split(",") if item.strip()]
        return v

    @field_validator("ALLOWED_PROTOCOLS")
    @classmethod
    def normalize_protocols(cls, v: list[str]) -> list[str]:
        # accept "https:" as well as "https"
        return [p.lower().rstrip(":") for p in v]

    @property
    def is_development(self) -> bool:
        return self.APP_ENV == "development"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
