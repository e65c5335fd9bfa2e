from __future__ import annotations

import logging
import os

_TRUTHY = {"1", "true", "yes", "on"}

DEFAULT_CORS_ORIGINS = ["http://localhost:5173", "http://127.0.0.1:5173"]


def env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in _TRUTHY


def auto_provision_users() -> bool:
    return env_flag("AUTH_AUTO_PROVISION", "1")


def log_level() -> int:
    raw = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    level = logging.getLevelName(raw)
    return level if isinstance(level, int) else logging.INFO


def export_max_rows() -> int:
    raw = os.getenv("CASH_EXPORT_MAX_ROWS", "50000")
    try:
        value = int(raw)
    except ValueError:
        return 50000
    return max(value, 1)
