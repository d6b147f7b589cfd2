from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, BigInteger, Boolean, DateTime, Enum, ForeignKey, Index, Integer, String, Text, func, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from market_escrow.enums import (
    DisputeResolutionMode,
    DisputeStatus,
    EscrowStatus,
    ListingStatus,
    NotificationType,
    Outcome,
    Transition,
)


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _enum(enum_cls, length: int = 30) -> Enum:
    return Enum(
        enum_cls,
        native_enum=False,
        length=length,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


class Base(DeclarativeBase):
    pass


class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    username: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    api_key_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    previous_api_key_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    key_rotated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_admin: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active", index=True)
    wallet_handle: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reputation: Mapped[float] = mapped_column(nullable=False, default=0.0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


class Listing(Base):
    __tablename__ = "listings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    seller_id: Mapped[str] = mapped_column(String(36), ForeignKey("accounts.id"), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    price: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False)
    status: Mapped[ListingStatus] = mapped_column(
        _enum(ListingStatus), nullable=False, default=ListingStatus.ACTIVE, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class Escrow(Base):
    __tablename__ = "escrows"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    listing_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("listings.id"), nullable=True, index=True)
    buyer_id: Mapped[str] = mapped_column(String(36), ForeignKey("accounts.id"), nullable=False, index=True)
    seller_id: Mapped[str] = mapped_column(String(36), ForeignKey("accounts.id"), nullable=False, index=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False)
    status: Mapped[EscrowStatus] = mapped_column(_enum(EscrowStatus), nullable=False, index=True)
    escrow_address: Mapped[str] = mapped_column(String(255), nullable=False)
    release_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    funding_expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    # unlock_time when time-locked, release_time otherwise
    auto_release_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)

    is_multi_sig: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    required_signatures: Mapped[int | None] = mapped_column(Integer, nullable=True)
    buyer_signed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    seller_signed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    admin_signed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    is_time_locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    unlock_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    dispute_resolution_mode: Mapped[DisputeResolutionMode] = mapped_column(
        _enum(DisputeResolutionMode), nullable=False, default=DisputeResolutionMode.MANUAL
    )
    auto_resolve_after_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    disputed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    auto_resolve_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    resolution_outcome: Mapped[Outcome | None] = mapped_column(_enum(Outcome), nullable=True)

    transaction_signature: Mapped[str | None] = mapped_column(String(255), nullable=True)
    pending_transition: Mapped[Transition | None] = mapped_column(_enum(Transition), nullable=True, index=True)
    pending_target: Mapped[EscrowStatus | None] = mapped_column(_enum(EscrowStatus), nullable=True)
    pending_since: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    pending_actor: Mapped[str | None] = mapped_column(String(36), nullable=True)
    transfer_attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    split_buyer_transfer: Mapped[str | None] = mapped_column(String(255), nullable=True)
    split_seller_transfer: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def completed_signatures(self) -> int:
        return sum(1 for flag in (self.buyer_signed, self.seller_signed, self.admin_signed) if flag)

    @property
    def multi_sig_signatures(self) -> dict | None:
        if not self.is_multi_sig:
            return None
        return {
            "buyer_signed": self.buyer_signed,
            "seller_signed": self.seller_signed,
            "admin_signed": self.admin_signed,
            "required_signatures": self.required_signatures,
            "completed_signatures": self.completed_signatures,
        }


class Dispute(Base):
    __tablename__ = "disputes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    escrow_id: Mapped[str] = mapped_column(String(36), ForeignKey("escrows.id"), nullable=False, index=True)
    raised_by: Mapped[str] = mapped_column(String(36), ForeignKey("accounts.id"), nullable=False, index=True)
    respondent_id: Mapped[str] = mapped_column(String(36), ForeignKey("accounts.id"), nullable=False, index=True)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[DisputeStatus] = mapped_column(
        _enum(DisputeStatus), nullable=False, default=DisputeStatus.OPEN, index=True
    )
    resolution: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)

    __table_args__ = (
        Index(
            "uq_unresolved_dispute_per_escrow",
            "escrow_id",
            unique=True,
            postgresql_where=text("status IN ('open', 'in_review')"),
            sqlite_where=text("status IN ('open', 'in_review')"),
        ),
    )


class LedgerBalance(Base):
    __tablename__ = "ledger_balances"

    handle: Mapped[str] = mapped_column(String(255), primary_key=True)
    currency: Mapped[str] = mapped_column(String(10), primary_key=True)
    available: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)


class LedgerTransfer(Base):
    __tablename__ = "ledger_transfers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    idempotency_key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    source: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    destination: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("accounts.id"), nullable=False, index=True)
    type: Mapped[NotificationType] = mapped_column(_enum(NotificationType, 20), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    meta: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)
    read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class WebhookConfig(Base):
    __tablename__ = "webhook_configs"

    account_id: Mapped[str] = mapped_column(String(36), ForeignKey("accounts.id"), primary_key=True)
    url: Mapped[str] = mapped_column(String(2048), nullable=False)
    secret: Mapped[str] = mapped_column(String(255), nullable=False)
    events: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


class IdempotencyRecord(Base):
    __tablename__ = "idempotency_records"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    request_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    response_body: Mapped[str] = mapped_column(Text, nullable=False)
    status_code: Mapped[int] = mapped_column(nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
