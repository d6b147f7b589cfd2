from __future__ import annotations

import importlib
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

ADMIN_TOKEN = "test-admin-token"

# Modules that bind settings, the engine or SessionLocal at import time, in import order.
_SETTINGS_MODULES = [
    "market_escrow.config",
    "market_escrow.money",
    "market_escrow.webhooks",
    "market_escrow.engine",
    "market_escrow.services",
    "market_escrow.auth",
    "market_escrow.middleware",
    "market_escrow.tasks",
    "market_escrow.routes.accounts",
    "market_escrow.routes.listings",
    "market_escrow.routes.escrows",
    "market_escrow.routes.disputes",
    "market_escrow.routes.notifications",
    "market_escrow.routes.webhooks",
    "market_escrow.routes.admin",
    "market_escrow.app",
]


def _configure(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, db_name: str) -> None:
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("MARKET_ESCROW_DATABASE_URL", f"sqlite:///{tmp_path / db_name}")
    monkeypatch.setenv("MARKET_ESCROW_AUTO_CREATE_SCHEMA", "true")
    monkeypatch.setenv("MARKET_ESCROW_API_KEY_SALT_ROUNDS", "4")
    monkeypatch.setenv("MARKET_ESCROW_ADMIN_TOKEN", ADMIN_TOKEN)
    monkeypatch.setenv("MARKET_ESCROW_PROVIDER", "ledger")
    monkeypatch.setenv("MARKET_ESCROW_SWEEPS_ENABLED", "false")


def _reload_all() -> None:
    for name in _SETTINGS_MODULES:
        module = importlib.import_module(name)
        # Keep exception class identity stable across reloads so tests that imported
        # them at collection time still match what the reloaded code raises.
        previous = {
            attr: value
            for attr, value in vars(module).items()
            if isinstance(value, type) and issubclass(value, BaseException) and value.__module__ == name
        }
        importlib.reload(module)
        for attr, value in previous.items():
            setattr(module, attr, value)


@pytest.fixture()
def escrow_app(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    # Isolated DB per test.
    _configure(tmp_path, monkeypatch, "escrow.db")
    _reload_all()
    import market_escrow.app as app_mod

    return app_mod.create_app()


@pytest.fixture()
def auth_header():
    def _auth(api_key: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {api_key}"}

    return _auth


# ---------------------------------------------------------------------------
# Engine-level harness
# ---------------------------------------------------------------------------


class Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingSink:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict]] = []

    def notify(self, user_id: str, message: str, metadata: dict) -> None:
        self.sent.append((user_id, message, dict(metadata)))

    def events(self) -> list[str]:
        return [meta.get("event") for _user, _msg, meta in self.sent]


class FakeProvider:
    """Scripted provider that deduplicates on idempotency key like a real custodian.

    ``script`` holds the outcome of each new transfer in call order:
    ``completed``, ``pending``, ``failed``, ``error`` (raises ProviderError) or
    ``timeout`` (the transfer is applied, then ProviderTimeout is raised).
    """

    name = "fake"

    def __init__(self) -> None:
        self.script: list[str] = []
        self.handles: dict = {}
        self.moved: list[tuple[str, str, int]] = []
        self.calls: list[str] = []
        self.on_transfer = None

    def open_custody(self, escrow_id: str) -> str:
        return f"custody:{escrow_id}"

    def transfer(self, source, destination, amount, currency, idempotency_key):
        from market_escrow.providers.base import ProviderError, ProviderTimeout, TransferHandle, TransferStatus

        self.calls.append(idempotency_key)
        if idempotency_key in self.handles:
            return self.handles[idempotency_key]

        action = self.script.pop(0) if self.script else "completed"
        if action == "error":
            raise ProviderError("card declined", response={"code": "declined"})
        status = TransferStatus.COMPLETED if action == "timeout" else TransferStatus(action)
        handle = TransferHandle(
            id=f"tx_{len(self.handles) + 1}",
            idempotency_key=idempotency_key,
            status=status,
            failure_reason="insufficient funds" if status is TransferStatus.FAILED else None,
        )
        self.handles[idempotency_key] = handle
        if status is TransferStatus.COMPLETED:
            self.moved.append((source, destination, amount))
        if self.on_transfer is not None:
            hook, self.on_transfer = self.on_transfer, None
            hook()
        if action == "timeout":
            raise ProviderTimeout("provider did not answer")
        return handle

    def get_status(self, handle):
        return self.handles[handle.idempotency_key].status

    def settle(self, idempotency_key: str, source: str, destination: str, amount: int) -> None:
        from dataclasses import replace

        from market_escrow.providers.base import TransferStatus

        self.handles[idempotency_key] = replace(self.handles[idempotency_key], status=TransferStatus.COMPLETED)
        self.moved.append((source, destination, amount))


@pytest.fixture()
def session_factory(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    _configure(tmp_path, monkeypatch, "engine.db")
    _reload_all()
    import market_escrow.config as config_mod
    from market_escrow.models import Base

    Base.metadata.create_all(bind=config_mod.engine)
    return config_mod.SessionLocal


@pytest.fixture()
def harness(session_factory):
    from market_escrow.disputes import DisputeEngine
    from market_escrow.engine import EscrowEngine
    from market_escrow.reputation import AccountReputationOracle
    from market_escrow.store import EscrowStore

    class Harness:
        pass

    h = Harness()
    h.clock = Clock()
    h.provider = FakeProvider()
    h.sink = RecordingSink()
    h.store = EscrowStore(session_factory)
    h.engine = EscrowEngine(h.store, h.provider, AccountReputationOracle(session_factory), h.sink, clock=h.clock)
    h.disputes = DisputeEngine(h.store, h.engine, clock=h.clock)
    h.session_factory = session_factory

    def add_account(username: str, *, reputation: float = 0.0, is_admin: bool = False) -> str:
        from market_escrow.models import Account

        session = session_factory()
        try:
            with session.begin():
                acct = Account(
                    username=username,
                    email=f"{username}@example.com",
                    api_key_hash="unused",
                    reputation=reputation,
                    is_admin=is_admin,
                )
                session.add(acct)
                session.flush()
                return acct.id
        finally:
            session.close()

    h.add_account = add_account
    h.buyer = add_account("buyer", reputation=4.0)
    h.seller = add_account("seller", reputation=4.0)
    h.admin = add_account("admin", is_admin=True)
    return h
