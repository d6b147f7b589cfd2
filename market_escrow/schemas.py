from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from market_escrow.enums import DisputeResolutionMode, Outcome, SignerRole
from market_escrow.models import Dispute, Escrow, Listing, Notification
from market_escrow.money import to_major

T = TypeVar("T")


# --- Envelope ---


class Envelope(BaseModel, Generic[T]):
    success: bool = True
    data: T


class ErrorDetail(BaseModel):
    code: str
    message: str
    request_id: str = ""


class ErrorResponse(BaseModel):
    success: bool = False
    error: ErrorDetail


def ok(data) -> dict:
    return {"success": True, "data": data}


# --- Health ---


class HealthResponse(BaseModel):
    status: str = "ok"
    provider: str


# --- Accounts ---


class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=255)
    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    wallet_handle: str | None = Field(default=None, max_length=255)
    admin_token: str | None = None


class AccountOut(BaseModel):
    id: str
    username: str
    email: str
    is_admin: bool
    status: str
    wallet_handle: str | None = None
    reputation: float
    created_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class RegisterResponse(BaseModel):
    message: str = "Account registered. Save your API key - it will not be shown again."
    account: AccountOut
    api_key: str


class RotateKeyResponse(BaseModel):
    api_key: str
    grace_period_minutes: int


class ReputationRequest(BaseModel):
    reputation: float = Field(..., ge=0, le=5)


class DepositRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    currency: str = Field(..., min_length=1, max_length=10)


class BalanceOut(BaseModel):
    wallet: str
    currency: str
    available: Decimal
    available_minor: int


# --- Listings ---


class ListingCreateRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    price: Decimal = Field(..., gt=0)
    currency: str = Field(..., min_length=1, max_length=10)


class ListingOut(BaseModel):
    id: str
    seller_id: str
    title: str
    description: str | None = None
    price: Decimal
    price_minor: int
    currency: str
    status: str
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, listing: Listing) -> ListingOut:
        return cls(
            id=listing.id,
            seller_id=listing.seller_id,
            title=listing.title,
            description=listing.description,
            price=to_major(int(listing.price), listing.currency),
            price_minor=int(listing.price),
            currency=listing.currency,
            status=listing.status.value,
            created_at=listing.created_at,
        )


# --- Escrows ---


class EscrowCreateRequest(BaseModel):
    listing_id: str | None = None
    seller_id: str | None = None
    amount: Decimal | None = Field(default=None, gt=0)
    currency: str | None = None
    is_multi_sig: bool = False
    required_signatures: int | None = None
    is_time_locked: bool = False
    unlock_in_days: int | None = None
    dispute_resolution_mode: DisputeResolutionMode = DisputeResolutionMode.MANUAL
    auto_resolve_after_days: int | None = None


class SignRequest(BaseModel):
    role: SignerRole


class TimeLockRequest(BaseModel):
    unlock_in_days: int


class ResolutionModeRequest(BaseModel):
    mode: DisputeResolutionMode
    auto_resolve_after_days: int | None = None


class MultiSigOut(BaseModel):
    buyer_signed: bool
    seller_signed: bool
    admin_signed: bool
    required_signatures: int | None
    completed_signatures: int


class EscrowOut(BaseModel):
    id: str
    listing_id: str | None = None
    buyer_id: str
    seller_id: str
    amount: Decimal
    amount_minor: int
    currency: str
    status: str
    escrow_address: str
    release_time: datetime
    funding_expires_at: datetime
    is_multi_sig: bool
    multi_sig_signatures: MultiSigOut | None = None
    is_time_locked: bool
    unlock_time: datetime | None = None
    dispute_resolution_mode: str
    auto_resolve_after_days: int | None = None
    disputed_at: datetime | None = None
    resolution_outcome: str | None = None
    transaction_signature: str | None = None
    pending_transition: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    resolved_at: datetime | None = None

    @classmethod
    def from_model(cls, escrow: Escrow) -> EscrowOut:
        signatures = escrow.multi_sig_signatures
        return cls(
            id=escrow.id,
            listing_id=escrow.listing_id,
            buyer_id=escrow.buyer_id,
            seller_id=escrow.seller_id,
            amount=to_major(int(escrow.amount), escrow.currency),
            amount_minor=int(escrow.amount),
            currency=escrow.currency,
            status=escrow.status.value,
            escrow_address=escrow.escrow_address,
            release_time=escrow.release_time,
            funding_expires_at=escrow.funding_expires_at,
            is_multi_sig=escrow.is_multi_sig,
            multi_sig_signatures=MultiSigOut(**signatures) if signatures else None,
            is_time_locked=escrow.is_time_locked,
            unlock_time=escrow.unlock_time,
            dispute_resolution_mode=escrow.dispute_resolution_mode.value,
            auto_resolve_after_days=escrow.auto_resolve_after_days,
            disputed_at=escrow.disputed_at,
            resolution_outcome=escrow.resolution_outcome.value if escrow.resolution_outcome else None,
            transaction_signature=escrow.transaction_signature,
            pending_transition=escrow.pending_transition.value if escrow.pending_transition else None,
            created_at=escrow.created_at,
            updated_at=escrow.updated_at,
            resolved_at=escrow.resolved_at,
        )


class EscrowListOut(BaseModel):
    escrows: list[EscrowOut]
    total: int
    limit: int
    offset: int


# --- Disputes ---


class DisputeCreateRequest(BaseModel):
    escrow_id: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1)
    details: str | None = None


class DisputeResolveRequest(BaseModel):
    outcome: Outcome
    resolution: str | None = None


class DisputeOut(BaseModel):
    id: str
    escrow_id: str
    raised_by: str
    respondent_id: str
    reason: str
    details: str | None = None
    status: str
    resolution: str | None = None
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, dispute: Dispute) -> DisputeOut:
        return cls(
            id=dispute.id,
            escrow_id=dispute.escrow_id,
            raised_by=dispute.raised_by,
            respondent_id=dispute.respondent_id,
            reason=dispute.reason,
            details=dispute.details,
            status=dispute.status.value,
            resolution=dispute.resolution,
            resolved_by=dispute.resolved_by,
            resolved_at=dispute.resolved_at,
            created_at=dispute.created_at,
        )


class DisputeListOut(BaseModel):
    disputes: list[DisputeOut]
    total: int
    limit: int
    offset: int


# --- Notifications ---


class NotificationOut(BaseModel):
    id: str
    type: str
    message: str
    metadata: dict
    read: bool
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, notification: Notification) -> NotificationOut:
        return cls(
            id=notification.id,
            type=notification.type.value,
            message=notification.message,
            metadata=notification.meta or {},
            read=notification.read,
            created_at=notification.created_at,
        )


class NotificationListOut(BaseModel):
    notifications: list[NotificationOut]
    unread: int


# --- Webhooks ---


class WebhookSetRequest(BaseModel):
    url: str = Field(..., min_length=1, pattern=r"^https?://")
    events: list[str] | None = None


class WebhookOut(BaseModel):
    webhook_url: str
    secret: str | None = None
    events: list[str]
    active: bool


class WebhookDeleteOut(BaseModel):
    status: str


# --- Sweeps ---


class SweepOut(BaseModel):
    sweep: str
    processed: int
    succeeded: int
    skipped: int
    failed: int
