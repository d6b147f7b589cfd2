"""Persistence for escrows and disputes.

Every status change is a conditional ``UPDATE ... WHERE status IN (...)``;
callers learn whether they won the transition from the returned boolean and
never write a status they only read earlier.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta

from sqlalchemy import Integer, and_, cast, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from market_escrow.enums import (
    TERMINAL_STATUSES,
    UNFUNDED_STATUSES,
    DisputeResolutionMode,
    DisputeStatus,
    EscrowStatus,
    ListingStatus,
    SignerRole,
    Transition,
)
from market_escrow.models import Account, Dispute, Escrow, Listing

logger = logging.getLogger(__name__)

_SIGNATURE_COLUMNS = {
    SignerRole.BUYER: Escrow.buyer_signed,
    SignerRole.SELLER: Escrow.seller_signed,
    SignerRole.ADMIN: Escrow.admin_signed,
}

_SPLIT_LEG_COLUMNS = {
    "buyer": Escrow.split_buyer_transfer,
    "seller": Escrow.split_seller_transfer,
}

UNRESOLVED_DISPUTE_STATUSES = (DisputeStatus.OPEN, DisputeStatus.IN_REVIEW)


class EscrowStore:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            with session.begin():
                yield session
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Accounts and listings
    # ------------------------------------------------------------------

    def get_account(self, user_id: str) -> Account | None:
        with self._transaction() as session:
            return session.get(Account, user_id)

    def get_listing(self, listing_id: str) -> Listing | None:
        with self._transaction() as session:
            return session.get(Listing, listing_id)

    def mark_listing_sold(self, listing_id: str) -> bool:
        with self._transaction() as session:
            result = session.execute(
                update(Listing)
                .where(Listing.id == listing_id, Listing.status == ListingStatus.ACTIVE)
                .values(status=ListingStatus.SOLD)
            )
            return result.rowcount == 1

    def reopen_listing(self, listing_id: str) -> bool:
        with self._transaction() as session:
            result = session.execute(
                update(Listing)
                .where(Listing.id == listing_id, Listing.status == ListingStatus.SOLD)
                .values(status=ListingStatus.ACTIVE)
            )
            return result.rowcount == 1

    def wallet_handle(self, user_id: str) -> str:
        """Provider-side wallet of a user; ledger wallets default to ``wallet:<id>``."""
        with self._transaction() as session:
            handle = session.execute(
                select(Account.wallet_handle).where(Account.id == user_id)
            ).scalar_one_or_none()
        return handle or f"wallet:{user_id}"

    # ------------------------------------------------------------------
    # Escrow reads
    # ------------------------------------------------------------------

    def insert(self, escrow: Escrow) -> Escrow:
        with self._transaction() as session:
            session.add(escrow)
            session.flush()
        return escrow

    def get(self, escrow_id: str) -> Escrow | None:
        with self._transaction() as session:
            return session.get(Escrow, escrow_id)

    def list_for_user(
        self,
        user_id: str | None,
        *,
        role: str | None = None,
        status: EscrowStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Escrow], int]:
        stmt = select(Escrow)
        if user_id is not None:
            if role == "buyer":
                stmt = stmt.where(Escrow.buyer_id == user_id)
            elif role == "seller":
                stmt = stmt.where(Escrow.seller_id == user_id)
            else:
                stmt = stmt.where(or_(Escrow.buyer_id == user_id, Escrow.seller_id == user_id))
        if status is not None:
            stmt = stmt.where(Escrow.status == status)

        with self._transaction() as session:
            total = session.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
            rows = (
                session.execute(stmt.order_by(Escrow.created_at.desc()).limit(limit).offset(offset))
                .scalars()
                .all()
            )
        return list(rows), int(total)

    # ------------------------------------------------------------------
    # Conditional transitions
    # ------------------------------------------------------------------

    def compare_and_set_status(
        self,
        escrow_id: str,
        expected: EscrowStatus | Iterable[EscrowStatus],
        next_status: EscrowStatus,
        **values,
    ) -> bool:
        """Move ``expected -> next_status`` unless a transfer is in flight."""
        if isinstance(expected, EscrowStatus):
            expected = (expected,)
        with self._transaction() as session:
            result = session.execute(
                update(Escrow)
                .where(
                    Escrow.id == escrow_id,
                    Escrow.status.in_(list(expected)),
                    Escrow.pending_transition.is_(None),
                )
                .values(status=next_status, **values)
            )
            return result.rowcount == 1

    def claim_transition(
        self,
        escrow_id: str,
        expected: Iterable[EscrowStatus],
        transition: Transition,
        target: EscrowStatus,
        now: datetime,
        actor_id: str | None = None,
    ) -> bool:
        """Reserve the escrow for one fund-moving transition.

        Re-claiming a transition already held for the same target succeeds so
        that retries can re-drive an in-flight transfer with the same key. The
        first claimant is kept as ``pending_actor``.
        """
        with self._transaction() as session:
            result = session.execute(
                update(Escrow)
                .where(
                    Escrow.id == escrow_id,
                    Escrow.status.in_(list(expected)),
                    or_(
                        Escrow.pending_transition.is_(None),
                        and_(Escrow.pending_transition == transition, Escrow.pending_target == target),
                    ),
                )
                .values(
                    pending_transition=transition,
                    pending_target=target,
                    pending_since=func.coalesce(Escrow.pending_since, now),
                    pending_actor=func.coalesce(Escrow.pending_actor, actor_id),
                )
            )
            return result.rowcount == 1

    def complete_transition(
        self,
        escrow_id: str,
        transition: Transition,
        target: EscrowStatus,
        **values,
    ) -> bool:
        with self._transaction() as session:
            result = session.execute(
                update(Escrow)
                .where(Escrow.id == escrow_id, Escrow.pending_transition == transition)
                .values(
                    status=target,
                    pending_transition=None,
                    pending_target=None,
                    pending_since=None,
                    pending_actor=None,
                    **values,
                )
            )
            return result.rowcount == 1

    def release_claim(self, escrow_id: str, transition: Transition, *, bump_attempt: bool) -> bool:
        values: dict = {
            "pending_transition": None,
            "pending_target": None,
            "pending_since": None,
            "pending_actor": None,
        }
        if bump_attempt:
            values["transfer_attempt"] = Escrow.transfer_attempt + 1
        with self._transaction() as session:
            result = session.execute(
                update(Escrow)
                .where(Escrow.id == escrow_id, Escrow.pending_transition == transition)
                .values(**values)
            )
            return result.rowcount == 1

    def bump_transfer_attempt(self, escrow_id: str, transition: Transition) -> bool:
        """Move a held claim onto a fresh idempotency key after a failed leg."""
        with self._transaction() as session:
            result = session.execute(
                update(Escrow)
                .where(Escrow.id == escrow_id, Escrow.pending_transition == transition)
                .values(transfer_attempt=Escrow.transfer_attempt + 1)
            )
            return result.rowcount == 1

    def record_split_leg(self, escrow_id: str, leg: str, transfer_id: str) -> bool:
        column = _SPLIT_LEG_COLUMNS[leg]
        with self._transaction() as session:
            result = session.execute(
                update(Escrow)
                .where(
                    Escrow.id == escrow_id,
                    Escrow.pending_transition == Transition.SPLIT,
                    column.is_(None),
                )
                .values({column: transfer_id, Escrow.transaction_signature: transfer_id})
            )
            return result.rowcount == 1

    def set_signature(self, escrow_id: str, role: SignerRole) -> bool:
        """Set one signer flag; false when the flag was already set or signing is closed."""
        column = _SIGNATURE_COLUMNS[role]
        with self._transaction() as session:
            result = session.execute(
                update(Escrow)
                .where(
                    Escrow.id == escrow_id,
                    Escrow.status == EscrowStatus.AWAITING_SIGNATURES,
                    column.is_(False),
                )
                .values({column: True})
            )
            return result.rowcount == 1

    def set_time_lock(self, escrow_id: str, unlock_time: datetime) -> bool:
        return self.compare_and_set_status(
            escrow_id,
            EscrowStatus.CREATED,
            EscrowStatus.TIME_LOCKED,
            is_time_locked=True,
            unlock_time=unlock_time,
            auto_release_at=unlock_time,
        )

    def set_resolution_mode(
        self,
        escrow_id: str,
        mode: DisputeResolutionMode,
        auto_resolve_after_days: int | None,
    ) -> bool:
        with self._transaction() as session:
            escrow = session.execute(
                select(Escrow).where(Escrow.id == escrow_id).with_for_update()
            ).scalar_one_or_none()
            if escrow is None or escrow.status in TERMINAL_STATUSES:
                return False
            escrow.dispute_resolution_mode = mode
            escrow.auto_resolve_after_days = auto_resolve_after_days
            escrow.auto_resolve_at = _auto_resolve_at(escrow.disputed_at, mode, auto_resolve_after_days)
            session.add(escrow)
            return True

    # ------------------------------------------------------------------
    # Sweep queries
    # ------------------------------------------------------------------

    def find_eligible_for_auto_release(self, now: datetime, limit: int = 100) -> list[Escrow]:
        with self._transaction() as session:
            rows = session.execute(
                select(Escrow)
                .where(
                    Escrow.status.in_([EscrowStatus.FUNDED, EscrowStatus.TIME_LOCKED]),
                    Escrow.auto_release_at <= now,
                    Escrow.pending_transition.is_(None),
                )
                .order_by(Escrow.auto_release_at)
                .limit(limit)
            ).scalars().all()
        return list(rows)

    def find_eligible_for_auto_resolve(self, now: datetime, limit: int = 100) -> list[Escrow]:
        with self._transaction() as session:
            rows = session.execute(
                select(Escrow)
                .where(
                    Escrow.status == EscrowStatus.DISPUTED,
                    Escrow.dispute_resolution_mode != DisputeResolutionMode.MANUAL,
                    Escrow.auto_resolve_at.isnot(None),
                    Escrow.auto_resolve_at <= now,
                )
                .order_by(Escrow.auto_resolve_at)
                .limit(limit)
            ).scalars().all()
        return list(rows)

    def find_expired_unfunded(self, now: datetime, limit: int = 100) -> list[Escrow]:
        with self._transaction() as session:
            rows = session.execute(
                select(Escrow)
                .where(
                    Escrow.status.in_(list(UNFUNDED_STATUSES)),
                    Escrow.funding_expires_at < now,
                    Escrow.pending_transition.is_(None),
                )
                .order_by(Escrow.funding_expires_at)
                .limit(limit)
            ).scalars().all()
        return list(rows)

    def find_signed_unfunded(self, limit: int = 100) -> list[Escrow]:
        """Multi-sig escrows whose threshold is met but whose funding never completed."""
        signatures = (
            cast(Escrow.buyer_signed, Integer) + cast(Escrow.seller_signed, Integer) + cast(Escrow.admin_signed, Integer)
        )
        with self._transaction() as session:
            rows = session.execute(
                select(Escrow)
                .where(
                    Escrow.status == EscrowStatus.AWAITING_SIGNATURES,
                    Escrow.pending_transition.is_(None),
                    signatures >= Escrow.required_signatures,
                )
                .order_by(Escrow.created_at)
                .limit(limit)
            ).scalars().all()
        return list(rows)

    def find_stale_claims(self, before: datetime, limit: int = 100) -> list[Escrow]:
        with self._transaction() as session:
            rows = session.execute(
                select(Escrow)
                .where(Escrow.pending_transition.isnot(None), Escrow.pending_since <= before)
                .order_by(Escrow.pending_since)
                .limit(limit)
            ).scalars().all()
        return list(rows)

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    def open_dispute(
        self,
        escrow_id: str,
        raised_by: str,
        respondent_id: str,
        reason: str,
        details: str | None,
        now: datetime,
    ) -> Dispute | None:
        """Atomically move the escrow to DISPUTED and record the dispute.

        Returns None, leaving both tables untouched, when the escrow is not
        FUNDED or an unresolved dispute already exists.
        """
        session = self._session_factory()
        try:
            with session.begin():
                moved = session.execute(
                    update(Escrow)
                    .where(
                        Escrow.id == escrow_id,
                        Escrow.status == EscrowStatus.FUNDED,
                        Escrow.pending_transition.is_(None),
                    )
                    .values(status=EscrowStatus.DISPUTED, disputed_at=now)
                ).rowcount
                if moved != 1:
                    return None

                escrow = session.execute(
                    select(Escrow).where(Escrow.id == escrow_id).with_for_update()
                ).scalar_one()
                escrow.auto_resolve_at = _auto_resolve_at(
                    now, escrow.dispute_resolution_mode, escrow.auto_resolve_after_days
                )
                session.add(escrow)

                dispute = Dispute(
                    escrow_id=escrow_id,
                    raised_by=raised_by,
                    respondent_id=respondent_id,
                    reason=reason,
                    details=details,
                    status=DisputeStatus.OPEN,
                )
                session.add(dispute)
                session.flush()
            return dispute
        except IntegrityError:
            logger.info("Dispute for escrow %s rejected: an unresolved dispute already exists", escrow_id)
            return None
        finally:
            session.close()

    def get_dispute(self, dispute_id: str) -> Dispute | None:
        with self._transaction() as session:
            return session.get(Dispute, dispute_id)

    def find_unresolved_dispute(self, escrow_id: str) -> Dispute | None:
        with self._transaction() as session:
            return session.execute(
                select(Dispute).where(
                    Dispute.escrow_id == escrow_id,
                    Dispute.status.in_(UNRESOLVED_DISPUTE_STATUSES),
                )
            ).scalar_one_or_none()

    def list_disputes(
        self,
        user_id: str | None,
        *,
        status: DisputeStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Dispute], int]:
        stmt = select(Dispute)
        if user_id is not None:
            stmt = stmt.where(or_(Dispute.raised_by == user_id, Dispute.respondent_id == user_id))
        if status is not None:
            stmt = stmt.where(Dispute.status == status)
        with self._transaction() as session:
            total = session.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
            rows = (
                session.execute(stmt.order_by(Dispute.created_at.desc()).limit(limit).offset(offset))
                .scalars()
                .all()
            )
        return list(rows), int(total)

    def set_dispute_status(
        self,
        dispute_id: str,
        expected: Iterable[DisputeStatus],
        next_status: DisputeStatus,
        **values,
    ) -> bool:
        with self._transaction() as session:
            result = session.execute(
                update(Dispute)
                .where(Dispute.id == dispute_id, Dispute.status.in_(list(expected)))
                .values(status=next_status, **values)
            )
            return result.rowcount == 1


def _auto_resolve_at(
    disputed_at: datetime | None,
    mode: DisputeResolutionMode,
    auto_resolve_after_days: int | None,
) -> datetime | None:
    if disputed_at is None or mode is DisputeResolutionMode.MANUAL or auto_resolve_after_days is None:
        return None
    return disputed_at + timedelta(days=auto_resolve_after_days)
