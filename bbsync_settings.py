from __future__ import annotations

import os

from dotenv import load_dotenv
from pydantic import BaseModel

# Load .env at import so env vars are available early
load_dotenv()


class RawSettings(BaseModel):
    # Bubble Data API
    BUBBLE_API_BASE: str | None = None
    BUBBLE_API_KEY: str | None = None

    # Local Postgres
    DATABASE_URL: str | None = None

    # File storage
    STORAGE_ROOT: str = "/storage"
    FILE_BASE_URL: str = "https://admin.atap.solar"

    # Optional / tuning
    PAGE_SIZE_DEFAULT: int = 100
    HTTP_TIMEOUT: int = 30
    DOWNLOAD_TIMEOUT: int = 120
    SYNC_LOG_FILE: str | None = None
    CONFIG_PATH: str | None = None


class SettingsStrict(BaseModel):
    BUBBLE_API_BASE: str
    BUBBLE_API_KEY: str
    DATABASE_URL: str

    STORAGE_ROOT: str = "/storage"
    FILE_BASE_URL: str = "https://admin.atap.solar"

    PAGE_SIZE_DEFAULT: int = 100
    HTTP_TIMEOUT: int = 30
    DOWNLOAD_TIMEOUT: int = 120
    SYNC_LOG_FILE: str | None = None
    CONFIG_PATH: str | None = None


_cache: RawSettings | None = None

REQUIRED_ENV = ["BUBBLE_API_BASE", "BUBBLE_API_KEY", "DATABASE_URL"]


def _read_env_dict() -> dict:
    return {
        # Bubble
        "BUBBLE_API_BASE": os.getenv("BUBBLE_API_BASE"),
        "BUBBLE_API_KEY": os.getenv("BUBBLE_API_KEY"),
        # DB
        "DATABASE_URL": os.getenv("DATABASE_URL"),
        # Storage
        "STORAGE_ROOT": os.getenv("STORAGE_ROOT", "/storage"),
        "FILE_BASE_URL": os.getenv("FILE_BASE_URL", "https://admin.atap.solar"),
        # Tuning
        "PAGE_SIZE_DEFAULT": int(os.getenv("BUBBLE_PAGE_SIZE", "100")),
        "HTTP_TIMEOUT": int(os.getenv("BUBBLE_HTTP_TIMEOUT", "30")),
        "DOWNLOAD_TIMEOUT": int(os.getenv("BUBBLE_DOWNLOAD_TIMEOUT", "120")),
        "SYNC_LOG_FILE": os.getenv("SYNC_LOG_FILE") or None,
        "CONFIG_PATH": os.getenv("BBSYNC_CONFIG") or None,
    }


def get_settings() -> RawSettings:
    global _cache
    if _cache is None:
        _cache = RawSettings(**_read_env_dict())
    return _cache


def require_settings() -> SettingsStrict:
    """Return validated settings; raises ValidationError if any required are missing."""
    data = _read_env_dict()
    return SettingsStrict(**data)


def missing_required_keys() -> list[str]:
    """Return list of missing required env keys for user-friendly errors."""
    return [k for k in REQUIRED_ENV if os.getenv(k) in (None, "")]
