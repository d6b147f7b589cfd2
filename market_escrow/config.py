from __future__ import annotations

import os
from collections.abc import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker


def _get_int(name: str, default: int) -> int:
    val = os.getenv(name)
    if val is None or val == "":
        return default
    return int(val)


def _get_float(name: str, default: float) -> float:
    val = os.getenv(name)
    if val is None or val == "":
        return default
    return float(val)


def _get_bool(name: str, default: bool) -> bool:
    val = os.getenv(name)
    if val is None or val == "":
        return default
    return val.strip().lower() in {"1", "true", "yes", "y", "on"}


def _get_currencies(name: str, default: str) -> dict[str, int]:
    """Parse ``CODE:decimals`` pairs, e.g. ``USD:2,USDC:6``."""
    raw = os.getenv(name) or default
    currencies: dict[str, int] = {}
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        code, _, decimals = part.partition(":")
        currencies[code.strip().upper()] = int(decimals or 2)
    return currencies


class Settings:
    database_url: str = os.getenv("DATABASE_URL") or os.getenv(
        "MARKET_ESCROW_DATABASE_URL", "sqlite:///./market_escrow.db"
    )

    auto_create_schema: bool = _get_bool("MARKET_ESCROW_AUTO_CREATE_SCHEMA", True)

    host: str = os.getenv("MARKET_ESCROW_HOST", "127.0.0.1")
    port: int = _get_int("MARKET_ESCROW_PORT", 3000)

    api_key_salt_rounds: int = _get_int("MARKET_ESCROW_API_KEY_SALT_ROUNDS", 10)
    key_rotation_grace_minutes: int = _get_int("MARKET_ESCROW_KEY_ROTATION_GRACE_MINUTES", 5)
    require_signatures: bool = _get_bool("MARKET_ESCROW_REQUIRE_SIGNATURES", False)
    signature_max_age_seconds: int = _get_int("MARKET_ESCROW_SIGNATURE_MAX_AGE", 300)
    # Registering with this token creates an admin account; empty disables it.
    admin_token: str = os.getenv("MARKET_ESCROW_ADMIN_TOKEN", "")

    # Escrow policy
    currencies: dict[str, int] = _get_currencies("MARKET_ESCROW_CURRENCIES", "USD:2,USDC:6,EUR:2,SOL:9")
    max_escrow_amount: int = _get_int("MARKET_ESCROW_MAX_AMOUNT", 10**15)
    release_after_days: int = _get_int("MARKET_ESCROW_RELEASE_AFTER_DAYS", 7)
    funding_ttl_hours: int = _get_int("MARKET_ESCROW_FUNDING_TTL_HOURS", 48)
    default_required_signatures: int = _get_int("MARKET_ESCROW_REQUIRED_SIGNATURES", 2)
    default_auto_resolve_days: int = _get_int("MARKET_ESCROW_AUTO_RESOLVE_DAYS", 7)
    max_auto_resolve_days: int = _get_int("MARKET_ESCROW_MAX_AUTO_RESOLVE_DAYS", 30)
    max_unlock_days: int = _get_int("MARKET_ESCROW_MAX_UNLOCK_DAYS", 365)
    reputation_floor: float = _get_float("MARKET_ESCROW_REPUTATION_FLOOR", 3.0)
    reputation_tie_margin: float = _get_float("MARKET_ESCROW_REPUTATION_TIE_MARGIN", 1.0)

    # Funds movement
    provider: str = os.getenv("MARKET_ESCROW_PROVIDER", "ledger")
    provider_timeout_seconds: float = _get_float("MARKET_ESCROW_PROVIDER_TIMEOUT", 15.0)
    circle_api_url: str = os.getenv("CIRCLE_API_URL", "https://api-sandbox.circle.com/v1")
    circle_api_key: str = os.getenv("CIRCLE_API_KEY", "")
    circle_escrow_wallet_id: str = os.getenv("CIRCLE_ESCROW_WALLET_ID", "")

    # Sweeps
    sweeps_enabled: bool = _get_bool("MARKET_ESCROW_SWEEPS_ENABLED", False)
    time_lock_interval_seconds: int = _get_int("MARKET_ESCROW_TIME_LOCK_INTERVAL", 300)
    auto_resolve_interval_seconds: int = _get_int("MARKET_ESCROW_AUTO_RESOLVE_INTERVAL", 900)
    funding_timeout_interval_seconds: int = _get_int("MARKET_ESCROW_FUNDING_TIMEOUT_INTERVAL", 600)
    reconcile_interval_seconds: int = _get_int("MARKET_ESCROW_RECONCILE_INTERVAL", 60)
    reconcile_after_seconds: int = _get_int("MARKET_ESCROW_RECONCILE_AFTER", 120)
    sweep_batch_size: int = _get_int("MARKET_ESCROW_SWEEP_BATCH_SIZE", 100)
    split_alert_attempts: int = _get_int("MARKET_ESCROW_SPLIT_ALERT_ATTEMPTS", 3)

    idempotency_ttl_hours: int = _get_int("MARKET_ESCROW_IDEMPOTENCY_TTL_HOURS", 24)

    # Webhooks
    webhook_timeout_seconds: int = _get_int("MARKET_ESCROW_WEBHOOK_TIMEOUT", 10)
    webhook_max_retries: int = _get_int("MARKET_ESCROW_WEBHOOK_MAX_RETRIES", 3)


settings = Settings()


def _connect_args(database_url: str) -> dict:
    if database_url.startswith("sqlite:"):
        return {"check_same_thread": False}
    return {}


engine = create_engine(
    settings.database_url,
    future=True,
    pool_pre_ping=True,
    connect_args=_connect_args(settings.database_url),
)

SessionLocal = sessionmaker(
    bind=engine,
    class_=Session,
    expire_on_commit=False,
    autoflush=False,
    autobegin=False,
)


def get_session() -> Generator[Session, None, None]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
