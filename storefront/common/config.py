import os
from dataclasses import dataclass
from pathlib import Path
import json
from typing import Optional


@dataclass
class AppConfig:
    database_url: str
    secret_key: str
    log_level: str
    currency: str
    adjust_max_attempts: int = 5
    adjust_backoff_seconds: float = 0.02
    transition_max_attempts: int = 5
    admin_role: str = "admin"


def validate_currency(value: Optional[str]) -> str:
    v = (value or "LKR").strip().upper()
    if len(v) != 3:
        raise ValueError("Invalid currency code: expected ISO4217 length 3")
    return v


def _positive_int(value, default: int) -> int:
    try:
        v = int(value)
    except (TypeError, ValueError):
        return default
    return v if v > 0 else default


def _non_negative_float(value, default: float) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError):
        return default
    return v if v >= 0 else default


def _load_settings_file() -> dict:
    path = Path(os.getenv("STOREFRONT_SETTINGS", "data/settings.json"))
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return {}
    return data if isinstance(data, dict) else {}


def load_env() -> AppConfig:
    # data/settings.json wins over the environment
    s = _load_settings_file()

    def pick(key: str, default=None):
        return s.get(key) or os.getenv(key) or default

    return AppConfig(
        database_url=pick("DATABASE_URL", "sqlite:///data/store.db"),
        secret_key=pick("SECRET_KEY", "dev_secret"),
        log_level=str(pick("LOG_LEVEL", "INFO")).upper(),
        currency=validate_currency(pick("CURRENCY")),
        adjust_max_attempts=_positive_int(pick("ADJUST_MAX_ATTEMPTS"), 5),
        adjust_backoff_seconds=_non_negative_float(pick("ADJUST_BACKOFF_SECONDS"), 0.02),
        transition_max_attempts=_positive_int(pick("TRANSITION_MAX_ATTEMPTS"), 5),
        admin_role=str(pick("ADMIN_ROLE", "admin")).lower(),
    )

