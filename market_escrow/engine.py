"""Escrow lifecycle state machine.

Fund-moving transitions follow one protocol:

1. claim the transition on the escrow row (``pending_transition``),
2. ask the provider to move the funds under a deterministic idempotency key,
3. on a completed transfer, compare-and-set the status and clear the claim.

A definitive provider failure releases the claim and bumps the key salt so
the next attempt is a fresh transfer. An unknown outcome (timeout or a
pending transfer) keeps the claim; only a retry of the same transition, or
the reconciliation sweep, can finish it, and both reuse the same key.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

from market_escrow.config import settings
from market_escrow.enums import (
    UNFUNDED_STATUSES,
    DisputeResolutionMode,
    EscrowStatus,
    ListingStatus,
    NotificationType,
    Outcome,
    SignerRole,
    Transition,
)
from market_escrow.errors import ErrorCode, Result
from market_escrow.models import Escrow
from market_escrow.money import MoneyError, split_shares, to_minor
from market_escrow.notifications import NotificationSink
from market_escrow.providers.base import (
    FundsMovementProvider,
    ProviderError,
    ProviderTimeout,
    TransferHandle,
    TransferStatus,
)
from market_escrow.reputation import ReputationOracle
from market_escrow.store import UNRESOLVED_DISPUTE_STATUSES, EscrowStore

logger = logging.getLogger(__name__)

_KEY_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "market-escrow/transfers")

_AUTO_OUTCOMES = {
    DisputeResolutionMode.AUTO_BUYER: Outcome.BUYER,
    DisputeResolutionMode.AUTO_SELLER: Outcome.SELLER,
    DisputeResolutionMode.AUTO_SPLIT: Outcome.SPLIT,
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def transfer_key(escrow_id: str, transition: Transition, attempt: int, leg: str | None = None) -> str:
    """Idempotency key for one transfer of one transition attempt."""
    name = f"{escrow_id}:{transition.value}:{attempt}"
    if leg:
        name = f"{name}:{leg}"
    return str(uuid.uuid5(_KEY_NAMESPACE, name))


@dataclass
class SweepReport:
    processed: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "failed": self.failed,
        }


@dataclass(frozen=True)
class _Move:
    """One single-leg fund-moving transition."""

    transition: Transition
    expected: tuple[EscrowStatus, ...]
    target: EscrowStatus
    source: str
    destination: str
    event: str
    message: str
    outcome: Outcome | None = None
    actor_id: str | None = None


class EscrowEngine:
    def __init__(
        self,
        store: EscrowStore,
        provider: FundsMovementProvider,
        oracle: ReputationOracle,
        notifier: NotificationSink,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.provider = provider
        self.oracle = oracle
        self.notifier = notifier
        self._clock = clock or _now

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_escrow(
        self,
        buyer_id: str,
        *,
        listing_id: str | None = None,
        seller_id: str | None = None,
        amount: Decimal | str | None = None,
        currency: str | None = None,
        is_multi_sig: bool = False,
        required_signatures: int | None = None,
        is_time_locked: bool = False,
        unlock_in_days: int | None = None,
        dispute_resolution_mode: DisputeResolutionMode | str = DisputeResolutionMode.MANUAL,
        auto_resolve_after_days: int | None = None,
    ) -> Result[Escrow]:
        if self.store.get_account(buyer_id) is None:
            return Result.fail(ErrorCode.USER_NOT_FOUND, "Buyer not found")

        if listing_id is not None:
            listing = self.store.get_listing(listing_id)
            if listing is None:
                return Result.fail(ErrorCode.LISTING_NOT_FOUND, "Listing not found")
            if listing.status is not ListingStatus.ACTIVE:
                return Result.fail(ErrorCode.LISTING_UNAVAILABLE, "Listing is not available")
            seller_id = listing.seller_id
            currency = listing.currency
            minor_amount = int(listing.price)
        else:
            if seller_id is None or amount is None or currency is None:
                return Result.fail(
                    ErrorCode.MISSING_FIELD,
                    "listing_id, or seller_id with amount and currency, is required",
                )
            if currency.upper() not in settings.currencies:
                return Result.fail(ErrorCode.UNSUPPORTED_CURRENCY, f"Unsupported currency: {currency}")
            try:
                minor_amount = to_minor(amount, currency)
            except MoneyError as exc:
                return Result.fail(ErrorCode.INVALID_AMOUNT, str(exc))
            currency = currency.upper()

        if seller_id == buyer_id:
            return Result.fail(ErrorCode.SELF_DEALING, "Buyer and seller must be different users")
        if self.store.get_account(seller_id) is None:
            return Result.fail(ErrorCode.USER_NOT_FOUND, "Seller not found")
        if minor_amount <= 0 or minor_amount > settings.max_escrow_amount:
            return Result.fail(ErrorCode.INVALID_AMOUNT, "Amount is out of range")

        if is_multi_sig and is_time_locked:
            return Result.fail(ErrorCode.INVALID_ARGUMENT, "An escrow cannot be both multi-sig and time-locked")
        if is_multi_sig:
            if required_signatures is None:
                required_signatures = settings.default_required_signatures
            if not 2 <= required_signatures <= 3:
                return Result.fail(ErrorCode.INVALID_ARGUMENT, "required_signatures must be 2 or 3")
        else:
            required_signatures = None
        if is_time_locked:
            bad = self._check_unlock_days(unlock_in_days)
            if bad is not None:
                return bad

        mode_result = self._parse_mode(dispute_resolution_mode, auto_resolve_after_days)
        if not mode_result.is_ok:
            return Result(error=mode_result.error)
        mode, days = mode_result.value
        if mode is DisputeResolutionMode.AUTO_REPUTATION:
            low = self._check_reputation_floor(buyer_id, seller_id)
            if low is not None:
                return low

        escrow_id = str(uuid.uuid4())
        try:
            custody = self.provider.open_custody(escrow_id)
        except ProviderError as exc:
            logger.error("Opening custody for escrow %s failed: %s (response=%r)", escrow_id, exc, exc.response)
            return Result.fail(ErrorCode.PROVIDER_ERROR, "Could not open escrow custody")

        if listing_id is not None and not self.store.mark_listing_sold(listing_id):
            return Result.fail(ErrorCode.LISTING_UNAVAILABLE, "Listing is not available")

        now = self._clock()
        release_time = now + timedelta(days=settings.release_after_days)
        unlock_time = now + timedelta(days=unlock_in_days) if is_time_locked else None
        if is_multi_sig:
            status = EscrowStatus.AWAITING_SIGNATURES
        elif is_time_locked:
            status = EscrowStatus.TIME_LOCKED
        else:
            status = EscrowStatus.CREATED

        escrow = self.store.insert(
            Escrow(
                id=escrow_id,
                listing_id=listing_id,
                buyer_id=buyer_id,
                seller_id=seller_id,
                amount=minor_amount,
                currency=currency,
                status=status,
                escrow_address=custody,
                release_time=release_time,
                funding_expires_at=now + timedelta(hours=settings.funding_ttl_hours),
                auto_release_at=unlock_time or release_time,
                is_multi_sig=is_multi_sig,
                required_signatures=required_signatures,
                is_time_locked=is_time_locked,
                unlock_time=unlock_time,
                dispute_resolution_mode=mode,
                auto_resolve_after_days=days,
                transfer_attempt=0,
                created_at=now,
                updated_at=now,
            )
        )
        logger.info(
            "Escrow %s created (%s %d %s, status=%s)",
            escrow.id,
            "listing " + listing_id if listing_id else "direct",
            minor_amount,
            currency,
            status.value,
        )
        self.notify_parties(escrow, "escrow.created", "Escrow created")
        return Result.ok(escrow)

    def make_time_locked(self, escrow_id: str, actor_id: str, unlock_in_days: int) -> Result[Escrow]:
        loaded = self._load_for_party(escrow_id, actor_id, allow_admin=False)
        if not loaded.is_ok:
            return loaded
        escrow = loaded.value
        bad = self._check_unlock_days(unlock_in_days)
        if bad is not None:
            return bad
        unlock_time = self._clock() + timedelta(days=unlock_in_days)
        if not self.store.set_time_lock(escrow.id, unlock_time):
            return self._state_error(escrow.id, "Only a created escrow can be time-locked")
        logger.info("Escrow %s time-locked until %s", escrow.id, unlock_time.isoformat())
        escrow = self.store.get(escrow.id)
        self.notify_parties(
            escrow, "escrow.time_locked", f"Escrow time-locked until {unlock_time:%Y-%m-%d %H:%M} UTC"
        )
        return Result.ok(escrow)

    # ------------------------------------------------------------------
    # Funding and multi-sig
    # ------------------------------------------------------------------

    def fund_escrow(self, escrow_id: str, actor_id: str) -> Result[Escrow]:
        escrow = self.store.get(escrow_id)
        if escrow is None:
            return Result.fail(ErrorCode.ESCROW_NOT_FOUND, "Escrow not found")
        if actor_id != escrow.buyer_id and not self.is_admin(actor_id):
            return Result.fail(ErrorCode.FORBIDDEN, "Only the buyer can fund this escrow")
        if escrow.status is EscrowStatus.AWAITING_SIGNATURES and escrow.completed_signatures < (
            escrow.required_signatures or 0
        ):
            return Result.fail(
                ErrorCode.INVALID_STATE,
                f"Escrow needs {escrow.required_signatures} signatures before funding",
            )
        return self._fund(escrow)

    def sign_multi_sig(self, escrow_id: str, actor_id: str, role: SignerRole | str) -> Result[Escrow]:
        try:
            role = SignerRole(role)
        except ValueError:
            return Result.fail(ErrorCode.INVALID_ARGUMENT, f"Unknown signer role: {role}")

        escrow = self.store.get(escrow_id)
        if escrow is None:
            return Result.fail(ErrorCode.ESCROW_NOT_FOUND, "Escrow not found")
        if not escrow.is_multi_sig:
            return Result.fail(ErrorCode.INVALID_STATE, "Escrow is not a multi-signature escrow")
        if role is SignerRole.BUYER and actor_id != escrow.buyer_id:
            return Result.fail(ErrorCode.FORBIDDEN, "Only the buyer can sign as buyer")
        if role is SignerRole.SELLER and actor_id != escrow.seller_id:
            return Result.fail(ErrorCode.FORBIDDEN, "Only the seller can sign as seller")
        if role is SignerRole.ADMIN and not self.is_admin(actor_id):
            return Result.fail(ErrorCode.FORBIDDEN, "Only an admin can sign as admin")

        if self.store.set_signature(escrow.id, role):
            escrow = self.store.get(escrow.id)
            logger.info(
                "Escrow %s signed by %s (%d/%d)",
                escrow.id,
                role.value,
                escrow.completed_signatures,
                escrow.required_signatures,
            )
            self.notify_parties(
                escrow,
                "escrow.signed",
                f"Escrow signed by {role.value} ({escrow.completed_signatures}/{escrow.required_signatures})",
            )
        else:
            escrow = self.store.get(escrow.id)
            if escrow.status is not EscrowStatus.AWAITING_SIGNATURES and not _signed(escrow, role):
                return Result.fail(ErrorCode.INVALID_STATE, f"Escrow is {escrow.status.value}")

        if (
            escrow.status is EscrowStatus.AWAITING_SIGNATURES
            and escrow.completed_signatures >= (escrow.required_signatures or 0)
        ):
            return self._fund(escrow)
        return Result.ok(escrow)

    def _fund(self, escrow: Escrow, *, recheck: bool = False) -> Result[Escrow]:
        return self._move_funds(
            escrow,
            _Move(
                transition=Transition.FUND,
                expected=tuple(UNFUNDED_STATUSES),
                target=EscrowStatus.FUNDED,
                source=self.store.wallet_handle(escrow.buyer_id),
                destination=escrow.escrow_address,
                event="escrow.funded",
                message="Escrow funded",
            ),
            recheck=recheck,
        )

    # ------------------------------------------------------------------
    # Release and refund
    # ------------------------------------------------------------------

    def release_escrow(self, escrow_id: str, actor_id: str) -> Result[Escrow]:
        escrow = self.store.get(escrow_id)
        if escrow is None:
            return Result.fail(ErrorCode.ESCROW_NOT_FOUND, "Escrow not found")
        if actor_id != escrow.seller_id and not self.is_admin(actor_id):
            return Result.fail(ErrorCode.FORBIDDEN, "Only the seller can release this escrow")
        return self._move_funds(escrow, self._release_move(escrow, "Escrow released to seller"))

    def refund_escrow(self, escrow_id: str, actor_id: str) -> Result[Escrow]:
        escrow = self.store.get(escrow_id)
        if escrow is None:
            return Result.fail(ErrorCode.ESCROW_NOT_FOUND, "Escrow not found")
        if actor_id != escrow.seller_id and not self.is_admin(actor_id):
            return Result.fail(ErrorCode.FORBIDDEN, "Only the seller can refund this escrow")
        return self._move_funds(escrow, self._refund_move(escrow, "Escrow refunded to buyer"))

    def _release_move(
        self,
        escrow: Escrow,
        message: str,
        *,
        outcome: Outcome | None = None,
        target: EscrowStatus = EscrowStatus.RELEASED,
    ) -> _Move:
        return _Move(
            transition=Transition.RELEASE,
            expected=(EscrowStatus.DISPUTED,) if outcome else (EscrowStatus.FUNDED,),
            target=target,
            source=escrow.escrow_address,
            destination=self.store.wallet_handle(escrow.seller_id),
            event="escrow.resolved" if outcome else "escrow.released",
            message=message,
            outcome=outcome,
        )

    def _refund_move(
        self,
        escrow: Escrow,
        message: str,
        *,
        outcome: Outcome | None = None,
        target: EscrowStatus = EscrowStatus.REFUNDED,
    ) -> _Move:
        return _Move(
            transition=Transition.REFUND,
            expected=(EscrowStatus.DISPUTED,) if outcome else (EscrowStatus.FUNDED,),
            target=target,
            source=escrow.escrow_address,
            destination=self.store.wallet_handle(escrow.buyer_id),
            event="escrow.resolved" if outcome else "escrow.refunded",
            message=message,
            outcome=outcome,
        )

    # ------------------------------------------------------------------
    # Dispute policy and resolution
    # ------------------------------------------------------------------

    def set_dispute_resolution_mode(
        self,
        escrow_id: str,
        actor_id: str,
        mode: DisputeResolutionMode | str,
        auto_resolve_after_days: int | None = None,
    ) -> Result[Escrow]:
        loaded = self._load_for_party(escrow_id, actor_id, allow_admin=True)
        if not loaded.is_ok:
            return loaded
        escrow = loaded.value
        if auto_resolve_after_days is None:
            auto_resolve_after_days = escrow.auto_resolve_after_days
        parsed = self._parse_mode(mode, auto_resolve_after_days)
        if not parsed.is_ok:
            return Result(error=parsed.error)
        mode, days = parsed.value

        if escrow.status.is_terminal:
            return Result.fail(ErrorCode.INVALID_STATE, f"Escrow is {escrow.status.value}")

        if mode is DisputeResolutionMode.AUTO_REPUTATION:
            low = self._check_reputation_floor(escrow.buyer_id, escrow.seller_id)
            if low is not None:
                return low

        if not self.store.set_resolution_mode(escrow.id, mode, days):
            return self._state_error(escrow.id, "Escrow no longer accepts policy changes")
        logger.info("Escrow %s dispute resolution mode set to %s (%s days)", escrow.id, mode.value, days)
        return Result.ok(self.store.get(escrow.id))

    def resolve_dispute(
        self,
        escrow_id: str,
        outcome: Outcome | str,
        actor_id: str | None,
        *,
        auto: bool = False,
        recheck: bool = False,
    ) -> Result[Escrow]:
        """Settle a DISPUTED escrow in favour of ``outcome``.

        Manual buyer and seller outcomes end in REFUNDED and RELEASED; splits
        and every automatic outcome end in AUTO_RESOLVED. The dispute record
        itself is left to the caller.
        """
        try:
            outcome = Outcome(outcome)
        except ValueError:
            return Result.fail(ErrorCode.INVALID_OUTCOME, f"Unknown outcome: {outcome}")

        escrow = self.store.get(escrow_id)
        if escrow is None:
            return Result.fail(ErrorCode.ESCROW_NOT_FOUND, "Escrow not found")
        if not auto and not self.is_admin(actor_id):
            return Result.fail(ErrorCode.FORBIDDEN, "Only an admin can resolve disputes")

        if outcome is Outcome.SPLIT:
            return self._split(escrow, recheck=recheck, actor_id=None if auto else actor_id)

        label = "automatically" if auto else "by an admin"
        if outcome is Outcome.BUYER:
            move = self._refund_move(
                escrow,
                f"Dispute resolved {label} in favour of the buyer",
                outcome=outcome,
                target=EscrowStatus.AUTO_RESOLVED if auto else EscrowStatus.REFUNDED,
            )
        else:
            move = self._release_move(
                escrow,
                f"Dispute resolved {label} in favour of the seller",
                outcome=outcome,
                target=EscrowStatus.AUTO_RESOLVED if auto else EscrowStatus.RELEASED,
            )
        if not auto:
            move = replace(move, actor_id=actor_id)
        return self._move_funds(escrow, move, recheck=recheck)

    def _split(self, escrow: Escrow, *, recheck: bool = False, actor_id: str | None = None) -> Result[Escrow]:
        target = EscrowStatus.AUTO_RESOLVED
        if not self.store.claim_transition(
            escrow.id, (EscrowStatus.DISPUTED,), Transition.SPLIT, target, self._clock(), actor_id
        ):
            return self._lost_claim(escrow.id, Transition.SPLIT, target, Outcome.SPLIT)

        escrow = self.store.get(escrow.id)
        buyer_share, seller_share = split_shares(int(escrow.amount))
        legs = (
            ("seller", escrow.seller_id, seller_share, escrow.split_seller_transfer),
            ("buyer", escrow.buyer_id, buyer_share, escrow.split_buyer_transfer),
        )
        paid_any = bool(escrow.split_seller_transfer or escrow.split_buyer_transfer)
        for leg, user_id, share, paid in legs:
            if paid or share == 0:
                continue
            key = transfer_key(escrow.id, Transition.SPLIT, escrow.transfer_attempt, leg)
            try:
                handle = self._transfer(
                    escrow.escrow_address, self.store.wallet_handle(user_id), share, escrow.currency, key, recheck
                )
            except ProviderTimeout as exc:
                logger.warning("Split %s leg for escrow %s timed out (key=%s): %s", leg, escrow.id, key, exc)
                return Result.fail(ErrorCode.PROVIDER_TIMEOUT, "Provider timed out", escrow_id=escrow.id)
            except ProviderError as exc:
                logger.error(
                    "Split %s leg for escrow %s failed: %s (response=%r)", leg, escrow.id, exc, exc.response
                )
                return self._split_leg_failed(escrow, leg, paid_any)

            if handle.status is TransferStatus.PENDING:
                logger.info("Split %s leg for escrow %s pending (transfer %s)", leg, escrow.id, handle.id)
                return Result.fail(ErrorCode.TRANSFER_PENDING, "Transfer pending", escrow_id=escrow.id)
            if handle.status is TransferStatus.FAILED:
                logger.error(
                    "Split %s leg for escrow %s failed: %s", leg, escrow.id, handle.failure_reason
                )
                return self._split_leg_failed(escrow, leg, paid_any)

            self.store.record_split_leg(escrow.id, leg, handle.id)
            paid_any = True
            logger.info("Split %s leg for escrow %s paid %d %s", leg, escrow.id, share, escrow.currency)

        now = self._clock()
        if self.store.complete_transition(
            escrow.id,
            Transition.SPLIT,
            target,
            resolution_outcome=Outcome.SPLIT,
            resolved_at=now,
        ):
            escrow = self.store.get(escrow.id)
            logger.info("Escrow %s settled by split (buyer=%d seller=%d)", escrow.id, buyer_share, seller_share)
            self.notify_parties(
                escrow,
                "escrow.resolved",
                "Dispute resolved with a 50/50 split",
                kind=NotificationType.DISPUTE,
            )
        else:
            escrow = self.store.get(escrow.id)
        return Result.ok(escrow)

    def _split_leg_failed(self, escrow: Escrow, leg: str, paid_any: bool) -> Result[Escrow]:
        if not paid_any:
            self.store.release_claim(escrow.id, Transition.SPLIT, bump_attempt=True)
            return Result.fail(ErrorCode.PROVIDER_ERROR, "Provider rejected the transfer", escrow_id=escrow.id)
        # A paid leg pins the escrow to the split; only the missing leg is retried.
        self.store.bump_transfer_attempt(escrow.id, Transition.SPLIT)
        attempts = escrow.transfer_attempt + 1
        if attempts >= settings.split_alert_attempts:
            logger.error(
                "Split for escrow %s stuck half-paid: %s leg still unpaid after %d attempts",
                escrow.id,
                leg,
                attempts,
            )
        return Result.fail(ErrorCode.PARTIAL_SPLIT, "Split partially paid", escrow_id=escrow.id)

    def auto_outcome(self, escrow: Escrow) -> Outcome | None:
        mode = escrow.dispute_resolution_mode
        if mode in _AUTO_OUTCOMES:
            return _AUTO_OUTCOMES[mode]
        if mode is DisputeResolutionMode.AUTO_REPUTATION:
            buyer_score = self.oracle.score(escrow.buyer_id)
            seller_score = self.oracle.score(escrow.seller_id)
            if abs(buyer_score - seller_score) < settings.reputation_tie_margin:
                return Outcome.SPLIT
            return Outcome.BUYER if buyer_score > seller_score else Outcome.SELLER
        return None

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    def process_time_locked_escrows(self) -> SweepReport:
        report = SweepReport()
        for escrow in self.store.find_eligible_for_auto_release(self._clock(), settings.sweep_batch_size):
            report.processed += 1
            if escrow.status is not EscrowStatus.FUNDED:
                logger.info("Escrow %s is unlocked but unfunded; skipping auto-release", escrow.id)
                report.skipped += 1
                continue
            result = self._move_funds(escrow, self._release_move(escrow, "Escrow automatically released to seller"))
            self._tally(report, result, escrow.id, "auto-release")
        return report

    def process_auto_dispute_resolution(self) -> SweepReport:
        report = SweepReport()
        for escrow in self.store.find_eligible_for_auto_resolve(self._clock(), settings.sweep_batch_size):
            report.processed += 1
            outcome = self.auto_outcome(escrow)
            if outcome is None:
                report.skipped += 1
                continue
            result = self.resolve_dispute(escrow.id, outcome, None, auto=True)
            if result.is_ok:
                self.close_dispute(
                    escrow.id, outcome, f"Auto-resolved ({escrow.dispute_resolution_mode.value})", None
                )
            self._tally(report, result, escrow.id, "auto-resolution")
        return report

    def process_funding_timeouts(self) -> SweepReport:
        report = SweepReport()
        now = self._clock()
        for escrow in self.store.find_expired_unfunded(now, settings.sweep_batch_size):
            report.processed += 1
            if not self.store.compare_and_set_status(
                escrow.id, tuple(UNFUNDED_STATUSES), EscrowStatus.CANCELLED, resolved_at=now
            ):
                report.skipped += 1
                continue
            if escrow.listing_id:
                self.store.reopen_listing(escrow.listing_id)
            logger.info("Escrow %s cancelled: funding window expired", escrow.id)
            self.notify_parties(self.store.get(escrow.id), "escrow.cancelled", "Escrow cancelled: not funded in time")
            report.succeeded += 1
        return report

    def reconcile_pending_transfers(self) -> SweepReport:
        """Re-drive transfers whose outcome was unknown, then retry stalled multi-sig funding."""
        report = SweepReport()
        before = self._clock() - timedelta(seconds=settings.reconcile_after_seconds)
        for escrow in self.store.find_stale_claims(before, settings.sweep_batch_size):
            report.processed += 1
            result = self._redrive(escrow)
            self._tally(report, result, escrow.id, f"reconciliation of {escrow.pending_transition.value}")

        for escrow in self.store.find_signed_unfunded(settings.sweep_batch_size):
            report.processed += 1
            self._tally(report, self._fund(escrow), escrow.id, "multi-sig funding retry")
        return report

    def _redrive(self, escrow: Escrow) -> Result[Escrow]:
        transition = escrow.pending_transition
        target = escrow.pending_target
        adjudicator = escrow.pending_actor
        if transition is Transition.FUND:
            return self._fund(escrow, recheck=True)
        if transition is Transition.SPLIT:
            result = self._split(escrow, recheck=True)
        else:
            disputed = escrow.status is EscrowStatus.DISPUTED
            if transition is Transition.RELEASE:
                move = self._release_move(
                    escrow,
                    "Escrow released to seller",
                    outcome=Outcome.SELLER if disputed else None,
                    target=target,
                )
            else:
                move = self._refund_move(
                    escrow,
                    "Escrow refunded to buyer",
                    outcome=Outcome.BUYER if disputed else None,
                    target=target,
                )
            result = self._move_funds(escrow, move, recheck=True)
            if not disputed:
                return result

        if result.is_ok and result.value.resolution_outcome is not None:
            self.close_dispute(
                escrow.id, result.value.resolution_outcome, "Resolved after transfer reconciliation", adjudicator
            )
        return result

    def close_dispute(self, escrow_id: str, outcome: Outcome, resolution: str, resolved_by: str | None) -> bool:
        dispute = self.store.find_unresolved_dispute(escrow_id)
        if dispute is None:
            return False
        return self.store.set_dispute_status(
            dispute.id,
            UNRESOLVED_DISPUTE_STATUSES,
            outcome.dispute_status,
            resolution=resolution,
            resolved_by=resolved_by,
            resolved_at=self._clock(),
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_escrow(self, escrow_id: str, actor_id: str) -> Result[Escrow]:
        return self._load_for_party(escrow_id, actor_id, allow_admin=True)

    def list_escrows(
        self,
        actor_id: str,
        *,
        role: str | None = None,
        status: EscrowStatus | str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Result[tuple[list[Escrow], int]]:
        if role not in (None, "buyer", "seller"):
            return Result.fail(ErrorCode.INVALID_ARGUMENT, "role must be buyer or seller")
        if status is not None:
            try:
                status = EscrowStatus(status)
            except ValueError:
                return Result.fail(ErrorCode.INVALID_ARGUMENT, f"Unknown escrow status: {status}")
        user_id = None if role is None and self.is_admin(actor_id) else actor_id
        return Result.ok(self.store.list_for_user(user_id, role=role, status=status, limit=limit, offset=offset))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _move_funds(self, escrow: Escrow, move: _Move, *, recheck: bool = False) -> Result[Escrow]:
        if not self.store.claim_transition(
            escrow.id, move.expected, move.transition, move.target, self._clock(), move.actor_id
        ):
            return self._lost_claim(escrow.id, move.transition, move.target, move.outcome)

        claimed = self.store.get(escrow.id)
        key = transfer_key(escrow.id, move.transition, claimed.transfer_attempt)
        try:
            handle = self._transfer(move.source, move.destination, int(claimed.amount), claimed.currency, key, recheck)
        except ProviderTimeout as exc:
            logger.warning(
                "%s transfer for escrow %s timed out (key=%s): %s", move.transition.value, escrow.id, key, exc
            )
            return Result.fail(ErrorCode.PROVIDER_TIMEOUT, "Provider timed out", escrow_id=escrow.id)
        except ProviderError as exc:
            logger.error(
                "%s transfer for escrow %s failed: %s (response=%r)",
                move.transition.value,
                escrow.id,
                exc,
                exc.response,
            )
            self.store.release_claim(escrow.id, move.transition, bump_attempt=True)
            return Result.fail(ErrorCode.PROVIDER_ERROR, "Provider rejected the transfer", escrow_id=escrow.id)

        if handle.status is TransferStatus.FAILED:
            logger.error(
                "%s transfer %s for escrow %s failed: %s",
                move.transition.value,
                handle.id,
                escrow.id,
                handle.failure_reason,
            )
            self.store.release_claim(escrow.id, move.transition, bump_attempt=True)
            return Result.fail(ErrorCode.PROVIDER_ERROR, "Provider rejected the transfer", escrow_id=escrow.id)
        if handle.status is TransferStatus.PENDING:
            logger.info("%s transfer %s for escrow %s pending", move.transition.value, handle.id, escrow.id)
            return Result.fail(ErrorCode.TRANSFER_PENDING, "Transfer pending", escrow_id=escrow.id)

        values: dict[str, Any] = {"transaction_signature": handle.id}
        if move.target.is_terminal:
            values["resolved_at"] = self._clock()
        if move.outcome is not None:
            values["resolution_outcome"] = move.outcome
        if self.store.complete_transition(escrow.id, move.transition, move.target, **values):
            done = self.store.get(escrow.id)
            logger.info(
                "Escrow %s %s -> %s (transfer %s)",
                escrow.id,
                move.transition.value,
                move.target.value,
                handle.id,
            )
            kind = NotificationType.DISPUTE if move.outcome else NotificationType.TRANSACTION
            self.notify_parties(done, move.event, move.message, kind=kind)
            return Result.ok(done)
        # Another caller finished the same transition with the same transfer.
        return Result.ok(self.store.get(escrow.id))

    def _transfer(
        self, source: str, destination: str, amount: int, currency: str, key: str, recheck: bool
    ) -> TransferHandle:
        handle = self.provider.transfer(source, destination, amount, currency, key)
        if recheck and handle.status is TransferStatus.PENDING:
            handle = replace(handle, status=self.provider.get_status(handle))
        return handle

    def _lost_claim(
        self,
        escrow_id: str,
        transition: Transition,
        target: EscrowStatus,
        outcome: Outcome | None = None,
    ) -> Result[Escrow]:
        current = self.store.get(escrow_id)
        if current is None:
            return Result.fail(ErrorCode.ESCROW_NOT_FOUND, "Escrow not found")
        if (
            current.status is target
            and current.pending_transition is None
            and (outcome is None or current.resolution_outcome is outcome)
        ):
            return Result.ok(current)
        if current.pending_transition is not None:
            return Result.fail(
                ErrorCode.TRANSITION_IN_PROGRESS,
                f"A {current.pending_transition.value} transfer is already in progress",
            )
        return Result.fail(
            ErrorCode.INVALID_STATE,
            f"Cannot {transition.value} an escrow that is {current.status.value}",
        )

    def _state_error(self, escrow_id: str, message: str) -> Result[Escrow]:
        current = self.store.get(escrow_id)
        if current is not None and current.pending_transition is not None:
            return Result.fail(
                ErrorCode.TRANSITION_IN_PROGRESS,
                f"A {current.pending_transition.value} transfer is already in progress",
            )
        return Result.fail(ErrorCode.INVALID_STATE, message)

    def _load_for_party(self, escrow_id: str, actor_id: str, *, allow_admin: bool) -> Result[Escrow]:
        escrow = self.store.get(escrow_id)
        if escrow is None:
            return Result.fail(ErrorCode.ESCROW_NOT_FOUND, "Escrow not found")
        if actor_id in (escrow.buyer_id, escrow.seller_id):
            return Result.ok(escrow)
        if allow_admin and self.is_admin(actor_id):
            return Result.ok(escrow)
        return Result.fail(ErrorCode.FORBIDDEN, "Not a party to this escrow")

    def is_admin(self, actor_id: str | None) -> bool:
        if actor_id is None:
            return False
        account = self.store.get_account(actor_id)
        return bool(account is not None and account.is_admin)

    def _parse_mode(
        self, mode: DisputeResolutionMode | str, days: int | None
    ) -> Result[tuple[DisputeResolutionMode, int | None]]:
        try:
            mode = DisputeResolutionMode(mode)
        except ValueError:
            return Result.fail(ErrorCode.INVALID_RESOLUTION_MODE, f"Unknown dispute resolution mode: {mode}")
        if days is None and mode is not DisputeResolutionMode.MANUAL:
            days = settings.default_auto_resolve_days
        if days is not None and not 1 <= days <= settings.max_auto_resolve_days:
            return Result.fail(
                ErrorCode.INVALID_ARGUMENT,
                f"auto_resolve_after_days must be between 1 and {settings.max_auto_resolve_days}",
            )
        return Result.ok((mode, days))

    def _check_reputation_floor(self, buyer_id: str, seller_id: str) -> Result[Escrow] | None:
        buyer_score = self.oracle.score(buyer_id)
        seller_score = self.oracle.score(seller_id)
        if min(buyer_score, seller_score) < settings.reputation_floor:
            return Result.fail(
                ErrorCode.REPUTATION_TOO_LOW,
                f"Both parties need a reputation of at least {settings.reputation_floor:g}",
                buyer_score=buyer_score,
                seller_score=seller_score,
            )
        return None

    @staticmethod
    def _check_unlock_days(unlock_in_days: int | None) -> Result[Escrow] | None:
        if unlock_in_days is None:
            return Result.fail(ErrorCode.MISSING_FIELD, "unlock_in_days is required for a time-locked escrow")
        if not 1 <= unlock_in_days <= settings.max_unlock_days:
            return Result.fail(
                ErrorCode.INVALID_ARGUMENT,
                f"unlock_in_days must be between 1 and {settings.max_unlock_days}",
            )
        return None

    def notify_parties(
        self,
        escrow: Escrow,
        event: str,
        message: str,
        *,
        kind: NotificationType = NotificationType.ESCROW,
    ) -> None:
        metadata = {
            "type": kind.value,
            "event": event,
            "escrow_id": escrow.id,
            "status": escrow.status.value,
        }
        for user_id in (escrow.buyer_id, escrow.seller_id):
            try:
                self.notifier.notify(user_id, message, metadata)
            except Exception:
                logger.warning("Notifying %s about escrow %s failed", user_id, escrow.id, exc_info=True)

    @staticmethod
    def _tally(report: SweepReport, result: Result, escrow_id: str, what: str) -> None:
        if result.is_ok:
            report.succeeded += 1
        elif result.error.code in (ErrorCode.INVALID_STATE, ErrorCode.TRANSITION_IN_PROGRESS):
            report.skipped += 1
            logger.info("Skipped %s for escrow %s: %s", what, escrow_id, result.error.message)
        else:
            report.failed += 1
            logger.warning("%s for escrow %s failed: %s", what.capitalize(), escrow_id, result.error.code.value)


def _signed(escrow: Escrow, role: SignerRole) -> bool:
    return {
        SignerRole.BUYER: escrow.buyer_signed,
        SignerRole.SELLER: escrow.seller_signed,
        SignerRole.ADMIN: escrow.admin_signed,
    }[role]
