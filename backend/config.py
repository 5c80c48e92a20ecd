from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import field_validator
from pydantic_settings import BaseSettings

# backend/ holds this file; the project root is its parent.
_BACKEND_DIR = Path(__file__).parent.resolve()
_PROJECT_ROOT = _BACKEND_DIR.parent.resolve()
_DEFAULT_DB_PATH = (_PROJECT_ROOT / "data" / "trading_agent.db").resolve()
_SQLITE_PREFIXES = ("sqlite+aiosqlite:///", "sqlite:///")


def _clean(value: object) -> str:
    return str(value).strip().strip('"').strip("'")


class Settings(BaseSettings):
    # Database - canonical path under project-root data directory
    DATABASE_URL: str = f"sqlite+aiosqlite:///{_DEFAULT_DB_PATH}"

    # Production Settings
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True
    LOG_FILE: Optional[str] = None
    CORS_ORIGINS: list[str] = ["*"]

    # Proposal lifecycle
    PROPOSAL_TTL_MINUTES: int = 60  # Fixed lifetime, not a per-policy setting

    # Scan Scheduler
    SCAN_LOCK_TTL_SECONDS: int = 120  # Crashed worker claims become reclaimable after this
    SCHEDULER_TICK_INTERVAL_SECONDS: int = 60
    SCHEDULER_MAX_JOBS_PER_TICK: int = 50
    SCHEDULER_TICK_SECRET: Optional[str] = None  # Tick endpoint refuses every call when unset
    SCAN_DAY_TIMEZONE: str = "UTC"  # Midnight in this zone resets daily counters

    # Execution / reconciliation
    SUBMITTING_TTL_SECONDS: int = 30  # Younger SUBMITTING rows are treated as in flight
    MAX_RECONCILE_ATTEMPTS: int = 12
    CLIENT_ORDER_ID_PREFIX: str = "IV"

    # Exchange Gateway (read and trade keys are kept separate)
    EXCHANGE_API_URL: str = "https://api.bitvavo.com/v2"
    EXCHANGE_READ_API_KEY: Optional[str] = None
    EXCHANGE_READ_API_SECRET: Optional[str] = None
    EXCHANGE_TRADE_API_KEY: Optional[str] = None
    EXCHANGE_TRADE_API_SECRET: Optional[str] = None
    EXCHANGE_TIMEOUT_SECONDS: float = 10.0
    EXCHANGE_QUOTE_CURRENCY: str = "EUR"

    # Signal Generator (external, untrusted)
    SIGNAL_GENERATOR_URL: Optional[str] = None
    SIGNAL_GENERATOR_API_KEY: Optional[str] = None
    SIGNAL_GENERATOR_TIMEOUT_SECONDS: float = 45.0

    # Preflight defaults not carried by policies
    ANTI_FLIP_MINUTES: int = 120
    DEFAULT_MAX_TRADES_PER_HOUR: int = 2

    # Exchange read retries
    MAX_RETRY_ATTEMPTS: int = 4
    RETRY_BASE_DELAY: float = 1.0

    @field_validator("EXCHANGE_API_URL", "SIGNAL_GENERATOR_URL", mode="before")
    @classmethod
    def _normalize_url_field(cls, value: object) -> object:
        """Trim accidental quotes/whitespace from URL env vars."""
        if value is None:
            return value
        text = _clean(value)
        return text.rstrip("/") if text else None

    @field_validator("SCAN_DAY_TIMEZONE", mode="before")
    @classmethod
    def _validate_timezone(cls, value: object) -> str:
        name = _clean(value or "UTC")
        try:
            ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {name}") from exc
        return name

    @field_validator("CLIENT_ORDER_ID_PREFIX", mode="before")
    @classmethod
    def _validate_order_prefix(cls, value: object) -> str:
        # The venue caps clientOrderId length; prefix + dash + 20 hex chars must fit.
        prefix = _clean(value or "").upper()
        if not prefix.isalnum() or len(prefix) > 8:
            raise ValueError("CLIENT_ORDER_ID_PREFIX must be 1-8 alphanumeric characters")
        return prefix

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def _normalize_database_url(cls, value: object) -> object:
        """Pin relative SQLite paths to the project root so API and worker share one file."""
        if value is None:
            return value
        text = _clean(value)
        for prefix in _SQLITE_PREFIXES:
            if not text.startswith(prefix):
                continue
            path_part = text[len(prefix) :]
            if not path_part or path_part in {":memory:", "/:memory:"}:
                return f"{prefix}:memory:" if path_part else text
            absolute = Path(path_part) if path_part.startswith("/") else _PROJECT_ROOT / path_part
            absolute = absolute.resolve()
            absolute.parent.mkdir(parents=True, exist_ok=True)
            return f"{prefix}{absolute}"
        return text

    class Config:
        # Project-root .env first, backend/.env overrides
        env_file = (
            str(_PROJECT_ROOT / ".env"),
            str(_BACKEND_DIR / ".env"),
        )
        env_file_encoding = "utf-8"


settings = Settings()
