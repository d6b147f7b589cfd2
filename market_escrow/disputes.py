from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone

from market_escrow.engine import EscrowEngine
from market_escrow.enums import DisputeStatus, NotificationType, Outcome
from market_escrow.errors import ErrorCode, Result
from market_escrow.models import Dispute
from market_escrow.store import UNRESOLVED_DISPUTE_STATUSES, EscrowStore

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class DisputeEngine:
    """Dispute records on top of the escrow state machine.

    Fund movement for a resolution always goes through
    ``EscrowEngine.resolve_dispute``; the dispute row is marked resolved only
    after the escrow has settled.
    """

    def __init__(
        self,
        store: EscrowStore,
        escrows: EscrowEngine,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.escrows = escrows
        self._clock = clock or _now

    def create_dispute(
        self,
        escrow_id: str,
        actor_id: str,
        reason: str,
        details: str | None = None,
    ) -> Result[Dispute]:
        if not reason or not reason.strip():
            return Result.fail(ErrorCode.MISSING_FIELD, "A reason is required to open a dispute")

        escrow = self.store.get(escrow_id)
        if escrow is None:
            return Result.fail(ErrorCode.ESCROW_NOT_FOUND, "Escrow not found")
        if actor_id == escrow.buyer_id:
            respondent_id = escrow.seller_id
        elif actor_id == escrow.seller_id:
            respondent_id = escrow.buyer_id
        else:
            return Result.fail(ErrorCode.FORBIDDEN, "Only the buyer or seller can open a dispute")

        dispute = self.store.open_dispute(
            escrow.id, actor_id, respondent_id, reason.strip(), details, self._clock()
        )
        if dispute is None:
            return self._rejection(escrow.id)

        logger.info("Dispute %s opened on escrow %s by %s", dispute.id, escrow.id, actor_id)
        self.escrows.notify_parties(
            self.store.get(escrow.id),
            "escrow.disputed",
            f"Dispute opened: {dispute.reason}",
            kind=NotificationType.DISPUTE,
        )
        return Result.ok(dispute)

    def _rejection(self, escrow_id: str) -> Result[Dispute]:
        if self.store.find_unresolved_dispute(escrow_id) is not None:
            return Result.fail(ErrorCode.DISPUTE_EXISTS, "An open dispute already exists for this escrow")
        current = self.store.get(escrow_id)
        if current is not None and current.pending_transition is not None:
            return Result.fail(
                ErrorCode.TRANSITION_IN_PROGRESS,
                f"A {current.pending_transition.value} transfer is already in progress",
            )
        status = current.status.value if current is not None else "missing"
        return Result.fail(ErrorCode.INVALID_STATE, f"Only a funded escrow can be disputed (escrow is {status})")

    def mark_in_review(self, dispute_id: str, admin_id: str) -> Result[Dispute]:
        if not self.escrows.is_admin(admin_id):
            return Result.fail(ErrorCode.FORBIDDEN, "Only an admin can review disputes")
        dispute = self.store.get_dispute(dispute_id)
        if dispute is None:
            return Result.fail(ErrorCode.DISPUTE_NOT_FOUND, "Dispute not found")
        if dispute.status.is_resolved:
            return Result.fail(ErrorCode.DISPUTE_ALREADY_RESOLVED, "Dispute is already resolved")

        moved = self.store.set_dispute_status(dispute.id, (DisputeStatus.OPEN,), DisputeStatus.IN_REVIEW)
        dispute = self.store.get_dispute(dispute.id)
        if moved:
            escrow = self.store.get(dispute.escrow_id)
            self.escrows.notify_parties(
                escrow, "dispute.in_review", "Dispute is under review", kind=NotificationType.DISPUTE
            )
        return Result.ok(dispute)

    def resolve_dispute(
        self,
        dispute_id: str,
        outcome: Outcome | str,
        resolution: str | None,
        admin_id: str,
    ) -> Result[Dispute]:
        """Settle the escrow for ``outcome``, then mark the dispute resolved.

        A provider failure leaves the dispute open so the admin can retry; a
        partially paid split is retried with the same outcome.
        """
        if not self.escrows.is_admin(admin_id):
            return Result.fail(ErrorCode.FORBIDDEN, "Only an admin can resolve disputes")
        try:
            outcome = Outcome(outcome)
        except ValueError:
            return Result.fail(ErrorCode.INVALID_OUTCOME, f"Unknown outcome: {outcome}")

        dispute = self.store.get_dispute(dispute_id)
        if dispute is None:
            return Result.fail(ErrorCode.DISPUTE_NOT_FOUND, "Dispute not found")
        if dispute.status.is_resolved:
            return Result.fail(ErrorCode.DISPUTE_ALREADY_RESOLVED, "Dispute is already resolved")

        settled = self.escrows.resolve_dispute(dispute.escrow_id, outcome, admin_id)
        if not settled.is_ok:
            return Result(error=settled.error)

        escrow = settled.value
        if escrow.resolution_outcome is not None and escrow.resolution_outcome is not outcome:
            # The escrow was already settled differently, e.g. by the auto-resolution sweep.
            return Result.fail(
                ErrorCode.INVALID_STATE,
                f"Escrow was already settled in favour of {escrow.resolution_outcome.value}",
            )

        text = resolution or f"Resolved in favour of {outcome.value}"
        if not self.store.set_dispute_status(
            dispute.id,
            UNRESOLVED_DISPUTE_STATUSES,
            outcome.dispute_status,
            resolution=text,
            resolved_by=admin_id,
            resolved_at=self._clock(),
        ):
            current = self.store.get_dispute(dispute.id)
            if current.status is not outcome.dispute_status:
                return Result.fail(ErrorCode.DISPUTE_ALREADY_RESOLVED, "Dispute is already resolved")
        logger.info(
            "Dispute %s resolved (%s) by %s; escrow %s is %s",
            dispute.id,
            outcome.value,
            admin_id,
            escrow.id,
            escrow.status.value,
        )
        return Result.ok(self.store.get_dispute(dispute.id))

    def get_dispute(self, dispute_id: str, actor_id: str) -> Result[Dispute]:
        dispute = self.store.get_dispute(dispute_id)
        if dispute is None:
            return Result.fail(ErrorCode.DISPUTE_NOT_FOUND, "Dispute not found")
        if actor_id not in (dispute.raised_by, dispute.respondent_id) and not self.escrows.is_admin(actor_id):
            return Result.fail(ErrorCode.FORBIDDEN, "Not a party to this dispute")
        return Result.ok(dispute)

    def list_for_user(
        self,
        actor_id: str,
        *,
        status: DisputeStatus | str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Result[tuple[list[Dispute], int]]:
        if status is not None:
            try:
                status = DisputeStatus(status)
            except ValueError:
                return Result.fail(ErrorCode.INVALID_ARGUMENT, f"Unknown dispute status: {status}")
        user_id = None if self.escrows.is_admin(actor_id) else actor_id
        return Result.ok(self.store.list_disputes(user_id, status=status, limit=limit, offset=offset))
