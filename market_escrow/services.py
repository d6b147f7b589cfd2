from __future__ import annotations

import logging

from fastapi import Depends

from market_escrow.config import SessionLocal, settings
from market_escrow.disputes import DisputeEngine
from market_escrow.engine import EscrowEngine
from market_escrow.notifications import DatabaseNotificationSink
from market_escrow.providers.base import FundsMovementProvider, build_provider
from market_escrow.reputation import AccountReputationOracle
from market_escrow.store import EscrowStore

logger = logging.getLogger(__name__)

_provider: FundsMovementProvider | None = None


def get_provider() -> FundsMovementProvider:
    """The process-wide funds movement provider selected by configuration."""
    global _provider
    if _provider is None:
        _provider = build_provider(settings.provider)
        logger.info("Using %s funds movement provider", _provider.name)
    return _provider


def build_escrow_engine(provider: FundsMovementProvider) -> EscrowEngine:
    return EscrowEngine(
        store=EscrowStore(SessionLocal),
        provider=provider,
        oracle=AccountReputationOracle(SessionLocal),
        notifier=DatabaseNotificationSink(SessionLocal),
    )


def get_escrow_engine(provider: FundsMovementProvider = Depends(get_provider)) -> EscrowEngine:
    return build_escrow_engine(provider)


def get_dispute_engine(escrows: EscrowEngine = Depends(get_escrow_engine)) -> DisputeEngine:
    return DisputeEngine(escrows.store, escrows)
