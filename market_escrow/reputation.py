from __future__ import annotations

from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from market_escrow.models import Account


class ReputationOracle(Protocol):
    def score(self, user_id: str) -> float:
        """Reputation on a 0..5 scale."""
        ...


class AccountReputationOracle:
    """Reads the score kept on the account record; unknown users score 0."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def score(self, user_id: str) -> float:
        session = self._session_factory()
        try:
            with session.begin():
                value = session.execute(
                    select(Account.reputation).where(Account.id == user_id)
                ).scalar_one_or_none()
        finally:
            session.close()
        if value is None:
            return 0.0
        return max(0.0, min(5.0, float(value)))
