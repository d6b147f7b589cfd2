from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from market_escrow.auth import require_admin
from market_escrow.engine import EscrowEngine, SweepReport
from market_escrow.schemas import Envelope, SweepOut, ok
from market_escrow.services import get_escrow_engine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/sweeps")


def _report(name: str, report: SweepReport, admin: dict) -> dict:
    logger.info("Sweep %s triggered by %s: %s", name, admin["username"], report.to_dict())
    return ok(SweepOut(sweep=name, **report.to_dict()))


@router.post("/time-locks", response_model=Envelope[SweepOut], tags=["Admin"])
def sweep_time_locks(
    admin: dict = Depends(require_admin),
    escrows: EscrowEngine = Depends(get_escrow_engine),
) -> dict:
    return _report("time-locks", escrows.process_time_locked_escrows(), admin)


@router.post("/disputes", response_model=Envelope[SweepOut], tags=["Admin"])
def sweep_disputes(
    admin: dict = Depends(require_admin),
    escrows: EscrowEngine = Depends(get_escrow_engine),
) -> dict:
    return _report("disputes", escrows.process_auto_dispute_resolution(), admin)


@router.post("/funding-timeouts", response_model=Envelope[SweepOut], tags=["Admin"])
def sweep_funding_timeouts(
    admin: dict = Depends(require_admin),
    escrows: EscrowEngine = Depends(get_escrow_engine),
) -> dict:
    return _report("funding-timeouts", escrows.process_funding_timeouts(), admin)


@router.post("/reconcile", response_model=Envelope[SweepOut], tags=["Admin"])
def sweep_reconcile(
    admin: dict = Depends(require_admin),
    escrows: EscrowEngine = Depends(get_escrow_engine),
) -> dict:
    return _report("reconcile", escrows.reconcile_pending_transfers(), admin)
