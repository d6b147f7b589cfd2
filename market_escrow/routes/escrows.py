from __future__ import annotations

from fastapi import APIRouter, Depends

from market_escrow.auth import authenticate_user
from market_escrow.engine import EscrowEngine
from market_escrow.schemas import (
    EscrowCreateRequest,
    EscrowListOut,
    EscrowOut,
    Envelope,
    ResolutionModeRequest,
    SignRequest,
    TimeLockRequest,
    ok,
)
from market_escrow.services import get_escrow_engine

router = APIRouter()


@router.post("/escrows", status_code=201, response_model=Envelope[EscrowOut], tags=["Escrows"])
def create_escrow(
    req: EscrowCreateRequest,
    current: dict = Depends(authenticate_user),
    escrows: EscrowEngine = Depends(get_escrow_engine),
) -> dict:
    escrow = escrows.create_escrow(
        current["id"],
        listing_id=req.listing_id,
        seller_id=req.seller_id,
        amount=req.amount,
        currency=req.currency,
        is_multi_sig=req.is_multi_sig,
        required_signatures=req.required_signatures,
        is_time_locked=req.is_time_locked,
        unlock_in_days=req.unlock_in_days,
        dispute_resolution_mode=req.dispute_resolution_mode,
        auto_resolve_after_days=req.auto_resolve_after_days,
    ).unwrap()
    return ok(EscrowOut.from_model(escrow))


@router.get("/escrows", response_model=Envelope[EscrowListOut], tags=["Escrows"])
def list_escrows(
    role: str | None = None,
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
    current: dict = Depends(authenticate_user),
    escrows: EscrowEngine = Depends(get_escrow_engine),
) -> dict:
    limit = max(1, min(limit, 200))
    offset = max(0, offset)
    rows, total = escrows.list_escrows(current["id"], role=role, status=status, limit=limit, offset=offset).unwrap()
    return ok(
        EscrowListOut(
            escrows=[EscrowOut.from_model(row) for row in rows],
            total=total,
            limit=limit,
            offset=offset,
        )
    )


@router.get("/escrows/{escrow_id}", response_model=Envelope[EscrowOut], tags=["Escrows"])
def get_escrow(
    escrow_id: str,
    current: dict = Depends(authenticate_user),
    escrows: EscrowEngine = Depends(get_escrow_engine),
) -> dict:
    return ok(EscrowOut.from_model(escrows.get_escrow(escrow_id, current["id"]).unwrap()))


@router.post("/escrows/{escrow_id}/fund", response_model=Envelope[EscrowOut], tags=["Escrows"])
def fund_escrow(
    escrow_id: str,
    current: dict = Depends(authenticate_user),
    escrows: EscrowEngine = Depends(get_escrow_engine),
) -> dict:
    return ok(EscrowOut.from_model(escrows.fund_escrow(escrow_id, current["id"]).unwrap()))


@router.post("/escrows/{escrow_id}/release", response_model=Envelope[EscrowOut], tags=["Escrows"])
def release_escrow(
    escrow_id: str,
    current: dict = Depends(authenticate_user),
    escrows: EscrowEngine = Depends(get_escrow_engine),
) -> dict:
    return ok(EscrowOut.from_model(escrows.release_escrow(escrow_id, current["id"]).unwrap()))


@router.post("/escrows/{escrow_id}/refund", response_model=Envelope[EscrowOut], tags=["Escrows"])
def refund_escrow(
    escrow_id: str,
    current: dict = Depends(authenticate_user),
    escrows: EscrowEngine = Depends(get_escrow_engine),
) -> dict:
    return ok(EscrowOut.from_model(escrows.refund_escrow(escrow_id, current["id"]).unwrap()))


@router.post("/escrows/{escrow_id}/sign", response_model=Envelope[EscrowOut], tags=["Escrows"])
def sign_escrow(
    escrow_id: str,
    req: SignRequest,
    current: dict = Depends(authenticate_user),
    escrows: EscrowEngine = Depends(get_escrow_engine),
) -> dict:
    return ok(EscrowOut.from_model(escrows.sign_multi_sig(escrow_id, current["id"], req.role).unwrap()))


@router.post("/escrows/{escrow_id}/time-lock", response_model=Envelope[EscrowOut], tags=["Escrows"])
def time_lock_escrow(
    escrow_id: str,
    req: TimeLockRequest,
    current: dict = Depends(authenticate_user),
    escrows: EscrowEngine = Depends(get_escrow_engine),
) -> dict:
    return ok(EscrowOut.from_model(escrows.make_time_locked(escrow_id, current["id"], req.unlock_in_days).unwrap()))


@router.put("/escrows/{escrow_id}/dispute-resolution", response_model=Envelope[EscrowOut], tags=["Escrows"])
def set_dispute_resolution(
    escrow_id: str,
    req: ResolutionModeRequest,
    current: dict = Depends(authenticate_user),
    escrows: EscrowEngine = Depends(get_escrow_engine),
) -> dict:
    escrow = escrows.set_dispute_resolution_mode(
        escrow_id, current["id"], req.mode, req.auto_resolve_after_days
    ).unwrap()
    return ok(EscrowOut.from_model(escrow))
