from __future__ import annotations

from fastapi import APIRouter, Depends

from market_escrow.auth import authenticate_user
from market_escrow.disputes import DisputeEngine
from market_escrow.schemas import (
    DisputeCreateRequest,
    DisputeListOut,
    DisputeOut,
    DisputeResolveRequest,
    Envelope,
    ok,
)
from market_escrow.services import get_dispute_engine

router = APIRouter()


@router.post("/disputes", status_code=201, response_model=Envelope[DisputeOut], tags=["Disputes"])
def create_dispute(
    req: DisputeCreateRequest,
    current: dict = Depends(authenticate_user),
    disputes: DisputeEngine = Depends(get_dispute_engine),
) -> dict:
    dispute = disputes.create_dispute(req.escrow_id, current["id"], req.reason, req.details).unwrap()
    return ok(DisputeOut.from_model(dispute))


@router.get("/disputes", response_model=Envelope[DisputeListOut], tags=["Disputes"])
def list_disputes(
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
    current: dict = Depends(authenticate_user),
    disputes: DisputeEngine = Depends(get_dispute_engine),
) -> dict:
    limit = max(1, min(limit, 200))
    offset = max(0, offset)
    rows, total = disputes.list_for_user(current["id"], status=status, limit=limit, offset=offset).unwrap()
    return ok(
        DisputeListOut(
            disputes=[DisputeOut.from_model(row) for row in rows],
            total=total,
            limit=limit,
            offset=offset,
        )
    )


@router.get("/disputes/{dispute_id}", response_model=Envelope[DisputeOut], tags=["Disputes"])
def get_dispute(
    dispute_id: str,
    current: dict = Depends(authenticate_user),
    disputes: DisputeEngine = Depends(get_dispute_engine),
) -> dict:
    return ok(DisputeOut.from_model(disputes.get_dispute(dispute_id, current["id"]).unwrap()))


@router.post("/disputes/{dispute_id}/review", response_model=Envelope[DisputeOut], tags=["Disputes"])
def review_dispute(
    dispute_id: str,
    current: dict = Depends(authenticate_user),
    disputes: DisputeEngine = Depends(get_dispute_engine),
) -> dict:
    return ok(DisputeOut.from_model(disputes.mark_in_review(dispute_id, current["id"]).unwrap()))


@router.post("/disputes/{dispute_id}/resolve", response_model=Envelope[DisputeOut], tags=["Disputes"])
def resolve_dispute(
    dispute_id: str,
    req: DisputeResolveRequest,
    current: dict = Depends(authenticate_user),
    disputes: DisputeEngine = Depends(get_dispute_engine),
) -> dict:
    dispute = disputes.resolve_dispute(dispute_id, req.outcome, req.resolution, current["id"]).unwrap()
    return ok(DisputeOut.from_model(dispute))
