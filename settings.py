"""
Centralized configuration: owner scoping and pipeline tuning knobs.
"""
from __future__ import annotations

import os
from typing import Any, Optional

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


NODE_ENV: str = os.getenv("NODE_ENV", "production")
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

MAX_CSV_SIZE_MB: int = _env_int("MAX_CSV_SIZE_MB", 50)
MAX_CSV_SIZE_BYTES: int = MAX_CSV_SIZE_MB * 1024 * 1024

# Ids per bulk read / rows per upsert statement
RECONCILE_CHUNK_SIZE: int = max(1, _env_int("RECONCILE_CHUNK_SIZE", 500))
RECONCILE_MAX_RETRIES: int = max(0, _env_int("RECONCILE_MAX_RETRIES", 3))

CORS_ORIGINS: list[str] = [
    o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()
]

INIT_DB_ON_STARTUP: bool = _env_bool("INIT_DB_ON_STARTUP", True)

OWNER_HEADER: str = "X-Owner-Id"


def sanitize_owner_id(value: Optional[Any]) -> Optional[str]:
    """Normalize raw owner ids (strip whitespace, lower-case)."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        value = str(value)
    text = str(value).strip()
    if not text:
        return None
    return text.lower()


def require_owner_id(value: Optional[Any]) -> str:
    """Sanitized owner id; every stored record is scoped by it, so blank is an error."""
    normalized = sanitize_owner_id(value)
    if not normalized:
        raise ValueError("Owner id is required")
    return normalized
