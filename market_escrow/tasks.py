from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from starlette.concurrency import run_in_threadpool

from market_escrow.config import settings
from market_escrow.engine import EscrowEngine, SweepReport
from market_escrow.services import build_escrow_engine, get_provider

logger = logging.getLogger(__name__)


def _engine() -> EscrowEngine:
    return build_escrow_engine(get_provider())


def run_time_lock_sweep() -> SweepReport:
    """Release funded escrows whose unlock or release time has passed."""
    return _engine().process_time_locked_escrows()


def run_auto_resolve_sweep() -> SweepReport:
    return _engine().process_auto_dispute_resolution()


def run_funding_timeout_sweep() -> SweepReport:
    return _engine().process_funding_timeouts()


def run_reconcile_sweep() -> SweepReport:
    return _engine().reconcile_pending_transfers()


SWEEPS: dict[str, Callable[[], SweepReport]] = {
    "time-locks": run_time_lock_sweep,
    "disputes": run_auto_resolve_sweep,
    "funding-timeouts": run_funding_timeout_sweep,
    "reconcile": run_reconcile_sweep,
}


async def _sweep_loop(name: str, sweep: Callable[[], SweepReport], interval: int) -> None:
    logger.info("Background %s sweep started (interval=%ds)", name, interval)
    while True:
        await asyncio.sleep(interval)
        try:
            report = await run_in_threadpool(sweep)
            if report.processed:
                logger.info("Background %s sweep: %s", name, report.to_dict())
        except Exception:
            logger.exception("Error in background %s sweep", name)


class SweepWorker:
    """Runs the periodic sweeps as asyncio tasks between ``start`` and ``stop``."""

    def __init__(self) -> None:
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def start(self) -> None:
        if self._tasks:
            return
        intervals = {
            "time-locks": settings.time_lock_interval_seconds,
            "disputes": settings.auto_resolve_interval_seconds,
            "funding-timeouts": settings.funding_timeout_interval_seconds,
            "reconcile": settings.reconcile_interval_seconds,
        }
        for name, sweep in SWEEPS.items():
            self._tasks.append(asyncio.create_task(_sweep_loop(name, sweep, intervals[name])))

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if tasks:
            logger.info("Background sweeps stopped")
