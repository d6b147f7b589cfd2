from __future__ import annotations

from enum import Enum


class EscrowStatus(str, Enum):
    CREATED = "created"
    AWAITING_SIGNATURES = "awaiting_signatures"
    TIME_LOCKED = "time_locked"
    FUNDED = "funded"
    RELEASED = "released"
    REFUNDED = "refunded"
    DISPUTED = "disputed"
    AUTO_RESOLVED = "auto_resolved"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        EscrowStatus.RELEASED,
        EscrowStatus.REFUNDED,
        EscrowStatus.AUTO_RESOLVED,
        EscrowStatus.CANCELLED,
    }
)

UNFUNDED_STATUSES = frozenset(
    {
        EscrowStatus.CREATED,
        EscrowStatus.AWAITING_SIGNATURES,
        EscrowStatus.TIME_LOCKED,
    }
)


class DisputeStatus(str, Enum):
    OPEN = "open"
    IN_REVIEW = "in_review"
    RESOLVED_BUYER = "resolved_buyer"
    RESOLVED_SELLER = "resolved_seller"
    RESOLVED_SPLIT = "resolved_split"

    @property
    def is_resolved(self) -> bool:
        return self in RESOLVED_DISPUTE_STATUSES


RESOLVED_DISPUTE_STATUSES = frozenset(
    {
        DisputeStatus.RESOLVED_BUYER,
        DisputeStatus.RESOLVED_SELLER,
        DisputeStatus.RESOLVED_SPLIT,
    }
)


class DisputeResolutionMode(str, Enum):
    MANUAL = "manual"
    AUTO_BUYER = "auto_buyer"
    AUTO_SELLER = "auto_seller"
    AUTO_SPLIT = "auto_split"
    AUTO_REPUTATION = "auto_reputation"


class Outcome(str, Enum):
    """Who a settled dispute favours."""

    BUYER = "buyer"
    SELLER = "seller"
    SPLIT = "split"

    @property
    def dispute_status(self) -> DisputeStatus:
        if self is Outcome.BUYER:
            return DisputeStatus.RESOLVED_BUYER
        if self is Outcome.SELLER:
            return DisputeStatus.RESOLVED_SELLER
        if self is Outcome.SPLIT:
            return DisputeStatus.RESOLVED_SPLIT
        raise AssertionError(f"unhandled outcome {self!r}")

    @classmethod
    def from_dispute_status(cls, status: DisputeStatus) -> Outcome:
        for outcome in cls:
            if outcome.dispute_status is status:
                return outcome
        raise ValueError(f"{status.value} is not a resolved dispute status")


class SignerRole(str, Enum):
    BUYER = "buyer"
    SELLER = "seller"
    ADMIN = "admin"


class Transition(str, Enum):
    """Fund-moving transitions; each one owns a distinct idempotency key space."""

    FUND = "fund"
    RELEASE = "release"
    REFUND = "refund"
    SPLIT = "split"


class ListingStatus(str, Enum):
    ACTIVE = "active"
    SOLD = "sold"
    INACTIVE = "inactive"


class NotificationType(str, Enum):
    ESCROW = "escrow"
    TRANSACTION = "transaction"
    DISPUTE = "dispute"
