"""Funds movement capability used by the escrow engine.

A provider moves value between custodial handles (user wallets and
per-escrow custody accounts) and reports the authoritative status of each
transfer. Implementations must deduplicate on ``idempotency_key``: a second
``transfer`` call with a key the provider has already seen returns the
original transfer instead of moving funds again.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Protocol, runtime_checkable


class TransferStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class TransferHandle:
    id: str
    idempotency_key: str
    status: TransferStatus
    failure_reason: str | None = None


class ProviderError(Exception):
    """The provider rejected the transfer; no funds moved."""

    def __init__(self, message: str, *, response: object | None = None) -> None:
        super().__init__(message)
        self.response = response


class ProviderTimeout(ProviderError):
    """The transfer outcome is unknown: the call timed out or its answer was lost."""


@runtime_checkable
class FundsMovementProvider(Protocol):
    name: str

    def open_custody(self, escrow_id: str) -> str:
        """Return the custody handle that will hold this escrow's funds."""
        ...

    def transfer(
        self,
        source: str,
        destination: str,
        amount: int,
        currency: str,
        idempotency_key: str,
    ) -> TransferHandle: ...

    def get_status(self, handle: TransferHandle) -> TransferStatus: ...


def build_provider(name: str) -> FundsMovementProvider:
    """Construct the provider selected by configuration."""
    from market_escrow.config import SessionLocal, settings

    if name == "ledger":
        from market_escrow.providers.ledger import LedgerProvider

        return LedgerProvider(SessionLocal)
    if name == "circle":
        from market_escrow.providers.circle import CircleProvider

        return CircleProvider(
            base_url=settings.circle_api_url,
            api_key=settings.circle_api_key,
            escrow_wallet_id=settings.circle_escrow_wallet_id,
            timeout_s=settings.provider_timeout_seconds,
        )
    raise ValueError(f"Unknown funds movement provider: {name!r}")
