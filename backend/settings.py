from __future__ import annotations

from dataclasses import dataclass
import logging
import os

from backend.currency_conversion import normalize_currency

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


@dataclass(frozen=True)
class Settings:
    database_url: str
    frontend_origin: str
    default_currency: str
    exchange_rate_source: str
    exchange_rate_cache_hours: int
    exchange_rate_retention_days: int
    log_level: str

    @classmethod
    def from_env(cls) -> "Settings":
        source = os.getenv("EXCHANGE_RATE_SOURCE", "frankfurter").strip().lower()
        if source not in {"frankfurter", "static"}:
            source = "frankfurter"
        return cls(
            database_url=os.getenv("DATABASE_URL", "sqlite:///./ledgerly.db"),
            frontend_origin=os.getenv("FRONTEND_ORIGIN", "http://localhost:3000"),
            default_currency=get_system_default_currency(),
            exchange_rate_source=source,
            exchange_rate_cache_hours=_int_env("EXCHANGE_RATE_CACHE_HOURS", 1),
            exchange_rate_retention_days=_int_env("EXCHANGE_RATE_RETENTION_DAYS", 30),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


def get_system_default_currency() -> str:
    raw = os.getenv("DEFAULT_CURRENCY", "USD")
    try:
        return normalize_currency(raw)
    except ValueError:
        return "USD"


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger("ledgerly")
    if root.handlers:
        root.setLevel(level)
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(level)
