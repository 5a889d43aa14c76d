import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import FrozenSet, List

DEFAULT_DB_PATH = str(Path(__file__).resolve().parents[1] / "data" / "marketplace.sqlite3")


def _parse_csv_env(name: str, default: str) -> List[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def _parse_bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes"}


def _parse_positive_int_env(name: str, default: int, *, allow_zero: bool = False) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    if value < 0 or (value == 0 and not allow_zero):
        return default
    return value


@dataclass(frozen=True)
class Settings:
    db_path: str = DEFAULT_DB_PATH
    auth_secret: str = "dev-insecure-secret-change-me"
    token_ttl_hours: int = 24
    auth_required: bool = False
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    trusted_hosts: List[str] = field(default_factory=lambda: ["*"])
    review_window_days: int = 7
    review_edit_hours: int = 24
    sweep_interval_seconds: int = 300
    notification_workers: int = 4
    eligible_tiers: FrozenSet[str] = frozenset({"basic", "premium"})
    firebase_credentials_path: str = ""
    local_timezone: str = "UTC"
    log_level: str = "INFO"


def load_settings() -> Settings:
    return Settings(
        db_path=os.getenv("MARKETPLACE_DB_PATH", DEFAULT_DB_PATH),
        auth_secret=os.getenv("AUTH_SECRET", "dev-insecure-secret-change-me"),
        token_ttl_hours=_parse_positive_int_env("AUTH_TOKEN_TTL_HOURS", 24),
        auth_required=_parse_bool_env("AUTH_REQUIRED", False),
        cors_origins=_parse_csv_env("CORS_ORIGINS", "*"),
        trusted_hosts=_parse_csv_env("TRUSTED_HOSTS", "*"),
        review_window_days=_parse_positive_int_env("REVIEW_WINDOW_DAYS", 7),
        review_edit_hours=_parse_positive_int_env("REVIEW_EDIT_HOURS", 24),
        sweep_interval_seconds=_parse_positive_int_env("SWEEP_INTERVAL_SECONDS", 300, allow_zero=True),
        notification_workers=_parse_positive_int_env("NOTIFICATION_WORKERS", 4),
        eligible_tiers=frozenset(tier.lower() for tier in _parse_csv_env("ELIGIBLE_SUBSCRIPTION_TIERS", "basic,premium")),
        firebase_credentials_path=os.getenv("FIREBASE_CREDENTIALS_PATH", "").strip(),
        local_timezone=os.getenv("MARKETPLACE_TIMEZONE", "UTC").strip() or "UTC",
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )


settings = load_settings()
