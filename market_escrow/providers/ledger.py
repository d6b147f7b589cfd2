from __future__ import annotations

import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from market_escrow.models import LedgerBalance, LedgerTransfer
from market_escrow.providers.base import ProviderError, TransferHandle, TransferStatus

logger = logging.getLogger(__name__)


def _lock(stmt):
    return stmt.with_for_update()


def _to_handle(row: LedgerTransfer) -> TransferHandle:
    return TransferHandle(
        id=row.id,
        idempotency_key=row.idempotency_key,
        status=TransferStatus(row.status),
        failure_reason=row.failure_reason,
    )


class LedgerProvider:
    """Custodial ledger kept in the service database.

    Wallets and escrow custody accounts are rows in ``ledger_balances``; every
    transfer is recorded once per idempotency key in ``ledger_transfers``.
    """

    name = "ledger"

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def open_custody(self, escrow_id: str) -> str:
        return f"escrow:{escrow_id}"

    def deposit(self, handle: str, amount: int, currency: str) -> int:
        """Credit external funds to a wallet. Returns the new available balance."""
        if amount <= 0:
            raise ProviderError("Deposit amount must be positive")
        session = self._session_factory()
        try:
            with session.begin():
                bal = self._credit(session, handle, amount, currency)
                return int(bal.available)
        finally:
            session.close()

    def balance(self, handle: str, currency: str) -> int:
        session = self._session_factory()
        try:
            with session.begin():
                bal = session.get(LedgerBalance, (handle, currency.upper()))
                return int(bal.available) if bal is not None else 0
        finally:
            session.close()

    def transfer(
        self,
        source: str,
        destination: str,
        amount: int,
        currency: str,
        idempotency_key: str,
    ) -> TransferHandle:
        if amount <= 0:
            raise ProviderError("Transfer amount must be positive")
        currency = currency.upper()

        session = self._session_factory()
        try:
            try:
                with session.begin():
                    record = LedgerTransfer(
                        idempotency_key=idempotency_key,
                        source=source,
                        destination=destination,
                        amount=amount,
                        currency=currency,
                        status=TransferStatus.PENDING.value,
                    )
                    session.add(record)
                    # Claim the key before touching balances.
                    session.flush()

                    debited = session.execute(
                        update(LedgerBalance)
                        .where(
                            LedgerBalance.handle == source,
                            LedgerBalance.currency == currency,
                            LedgerBalance.available >= amount,
                        )
                        .values(available=LedgerBalance.available - amount)
                    ).rowcount
                    if debited:
                        self._credit(session, destination, amount, currency)
                        record.status = TransferStatus.COMPLETED.value
                    else:
                        record.status = TransferStatus.FAILED.value
                        record.failure_reason = f"Insufficient {currency} balance in {source}"
                        logger.warning(
                            "Ledger transfer %s failed: insufficient balance in %s (amount=%d %s)",
                            idempotency_key,
                            source,
                            amount,
                            currency,
                        )
                    session.add(record)
                return _to_handle(record)
            except IntegrityError:
                session.rollback()
                # Same key already recorded (possibly by a concurrent call).
                with session.begin():
                    existing = session.execute(
                        select(LedgerTransfer).where(LedgerTransfer.idempotency_key == idempotency_key)
                    ).scalar_one()
                    return _to_handle(existing)
        finally:
            session.close()

    def get_status(self, handle: TransferHandle) -> TransferStatus:
        session = self._session_factory()
        try:
            with session.begin():
                row = session.execute(
                    select(LedgerTransfer).where(LedgerTransfer.idempotency_key == handle.idempotency_key)
                ).scalar_one_or_none()
                if row is None:
                    raise ProviderError(f"Unknown transfer {handle.id}")
                return TransferStatus(row.status)
        finally:
            session.close()

    def _credit(self, session: Session, handle: str, amount: int, currency: str) -> LedgerBalance:
        bal = session.execute(
            _lock(
                select(LedgerBalance).where(
                    LedgerBalance.handle == handle,
                    LedgerBalance.currency == currency.upper(),
                )
            )
        ).scalar_one_or_none()
        if bal is None:
            bal = LedgerBalance(handle=handle, currency=currency.upper(), available=0)
        bal.available = int(bal.available) + amount
        session.add(bal)
        session.flush()
        return bal
