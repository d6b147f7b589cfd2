from __future__ import annotations

import asyncio
import importlib
import json
from unittest.mock import MagicMock, patch

from fastapi.testclient import TestClient
from sqlalchemy import select

from market_escrow.enums import NotificationType
from market_escrow.models import Account, Notification, WebhookConfig


def _register(client, username: str) -> dict:
    resp = client.post("/v1/accounts/register", json={"username": username, "email": f"{username}@example.com"})
    assert resp.status_code == 201, resp.text
    data = resp.json()["data"]
    return {"id": data["account"]["id"], "key": data["api_key"]}


def _add_webhook(session_factory, account_id: str, events: list[str]) -> None:
    session = session_factory()
    try:
        with session.begin():
            session.add(
                WebhookConfig(account_id=account_id, url="https://hooks.example.com/escrow", secret="whsec_test", events=events)
            )
    finally:
        session.close()


# --- sink ---


def test_database_sink_persists_notification(harness):
    from market_escrow.notifications import DatabaseNotificationSink

    sink = DatabaseNotificationSink(harness.session_factory, webhooks=False)
    sink.notify(harness.buyer, "Escrow funded", {"type": "transaction", "event": "escrow.funded", "escrow_id": "e1"})

    session = harness.session_factory()
    try:
        with session.begin():
            rows = session.execute(select(Notification).where(Notification.user_id == harness.buyer)).scalars().all()
    finally:
        session.close()
    assert len(rows) == 1
    assert rows[0].type is NotificationType.TRANSACTION
    assert rows[0].meta["escrow_id"] == "e1"
    assert rows[0].read is False


def test_database_sink_swallows_failures(harness):
    from market_escrow.notifications import DatabaseNotificationSink

    sink = DatabaseNotificationSink(harness.session_factory)
    sink.notify(harness.buyer, "odd", {"type": "carrier-pigeon"})


def test_database_sink_forwards_to_webhook(harness):
    from market_escrow.notifications import DatabaseNotificationSink

    sink = DatabaseNotificationSink(harness.session_factory)
    with patch("market_escrow.notifications.fire_user_webhook") as fire:
        sink.notify(harness.seller, "Escrow released", {"type": "transaction", "event": "escrow.released"})
    fire.assert_called_once()
    assert fire.call_args.args[1:3] == (harness.seller, "escrow.released")


# --- webhooks ---


def test_fire_user_webhook_respects_subscription(harness):
    from market_escrow import webhooks

    assert webhooks.fire_user_webhook(harness.session_factory, harness.buyer, "escrow.funded", "m", {}) is False

    _add_webhook(harness.session_factory, harness.buyer, ["escrow.funded"])
    with patch("market_escrow.webhooks.Thread") as thread:
        assert webhooks.fire_user_webhook(harness.session_factory, harness.buyer, "escrow.funded", "m", {"a": 1})
        assert not webhooks.fire_user_webhook(harness.session_factory, harness.buyer, "escrow.refunded", "m", {})
    thread.assert_called_once()
    kwargs = thread.call_args.kwargs
    assert kwargs["target"] is webhooks._deliver
    url, secret, event, payload = kwargs["args"]
    assert url == "https://hooks.example.com/escrow"
    assert event == "escrow.funded"
    assert payload["user_id"] == harness.buyer
    assert payload["data"] == {"a": 1}


def test_deliver_signs_payload(session_factory):
    from market_escrow import webhooks

    payload = webhooks.build_payload("escrow.funded", "u1", "Escrow funded", {"escrow_id": "e1"})
    with patch("market_escrow.webhooks.httpx.post", return_value=MagicMock(status_code=200)) as post:
        webhooks._deliver("https://hooks.example.com", "whsec_test", "escrow.funded", payload)

    post.assert_called_once()
    body = post.call_args.kwargs["content"]
    headers = post.call_args.kwargs["headers"]
    assert json.loads(body)["event"] == "escrow.funded"
    assert headers["X-Market-Escrow-Signature"] == webhooks._sign_payload("whsec_test", body)
    assert headers["X-Market-Escrow-Event"] == "escrow.funded"


def test_deliver_retries_with_backoff(session_factory):
    from market_escrow import webhooks

    with (
        patch("market_escrow.webhooks.httpx.post", return_value=MagicMock(status_code=503)) as post,
        patch("market_escrow.webhooks.sleep") as sleep,
    ):
        webhooks._deliver("https://hooks.example.com", "whsec_test", "escrow.funded", {"event": "escrow.funded"})
    assert post.call_count == 4
    assert [c.args[0] for c in sleep.call_args_list] == [5, 25, 125]


# --- API ---


def test_notification_inbox(escrow_app, auth_header):
    with TestClient(escrow_app) as client:
        buyer = _register(client, "alice")
        seller = _register(client, "bob")
        escrow = client.post(
            "/v1/escrows",
            headers=auth_header(buyer["key"]),
            json={"seller_id": seller["id"], "amount": "10", "currency": "USD"},
        ).json()["data"]

        inbox = client.get("/v1/notifications", headers=auth_header(seller["key"])).json()["data"]
        assert inbox["unread"] == 1
        note = inbox["notifications"][0]
        assert note["message"] == "Escrow created"
        assert note["type"] == "escrow"
        assert note["metadata"]["escrow_id"] == escrow["id"]
        assert note["metadata"]["event"] == "escrow.created"

        resp = client.post(f"/v1/notifications/{note['id']}/read", headers=auth_header(buyer["key"]))
        assert resp.status_code == 404
        resp = client.post(f"/v1/notifications/{note['id']}/read", headers=auth_header(seller["key"]))
        assert resp.status_code == 200
        assert resp.json()["data"]["read"] is True

        unread = client.get("/v1/notifications?unread_only=true", headers=auth_header(seller["key"])).json()["data"]
        assert unread["notifications"] == []
        assert unread["unread"] == 0

        resp = client.post("/v1/notifications/read-all", headers=auth_header(buyer["key"]))
        assert resp.json()["data"] == {"marked": 1}


def test_webhook_registration(escrow_app, auth_header):
    with TestClient(escrow_app) as client:
        user = _register(client, "alice")

        resp = client.put(
            "/v1/webhooks",
            headers=auth_header(user["key"]),
            json={"url": "https://hooks.example.com", "events": ["escrow.funded", "escrow.exploded"]},
        )
        assert resp.status_code == 400
        assert "escrow.exploded" in resp.json()["error"]["message"]

        resp = client.put("/v1/webhooks", headers=auth_header(user["key"]), json={"url": "ftp://nope"})
        assert resp.status_code == 422

        first = client.put("/v1/webhooks", headers=auth_header(user["key"]), json={"url": "https://hooks.example.com"})
        assert first.status_code == 200, first.text
        data = first.json()["data"]
        assert data["secret"].startswith("whsec_")
        assert "escrow.resolved" in data["events"]

        second = client.put(
            "/v1/webhooks",
            headers=auth_header(user["key"]),
            json={"url": "https://hooks.example.com/v2", "events": ["escrow.released"]},
        )
        assert second.json()["data"]["secret"] is None
        assert second.json()["data"]["events"] == ["escrow.released"]

        assert client.delete("/v1/webhooks", headers=auth_header(user["key"])).json()["data"] == {"status": "removed"}
        assert client.delete("/v1/webhooks", headers=auth_header(user["key"])).status_code == 404


# --- background work ---


def test_sweep_worker_starts_and_stops(session_factory):
    from market_escrow.tasks import SweepWorker

    async def scenario():
        worker = SweepWorker()
        worker.start()
        assert worker.running
        await worker.stop()
        assert not worker.running

    asyncio.run(scenario())


def test_sweeps_run_against_configured_database(session_factory):
    from market_escrow.tasks import SWEEPS

    for name, sweep in SWEEPS.items():
        assert sweep().to_dict() == {"processed": 0, "succeeded": 0, "skipped": 0, "failed": 0}, name


def test_cli_sweep_prints_report(session_factory, capsys):
    from market_escrow.__main__ import main

    assert main(["sweep", "reconcile"]) == 0
    report = json.loads(capsys.readouterr().out)
    assert report == {"sweep": "reconcile", "processed": 0, "succeeded": 0, "skipped": 0, "failed": 0}


def test_seed_creates_demo_market(session_factory):
    import market_escrow.seed as seed_mod
    from market_escrow.providers.ledger import LedgerProvider

    importlib.reload(seed_mod)
    assert seed_mod.main() == 0

    session = session_factory()
    try:
        with session.begin():
            alice = session.execute(select(Account).where(Account.username == "alice")).scalar_one()
            admins = session.execute(select(Account).where(Account.is_admin.is_(True))).scalars().all()
    finally:
        session.close()
    assert [a.username for a in admins] == ["moderator"]
    assert LedgerProvider(session_factory).balance(f"wallet:{alice.id}", "USDC") == 1_000_000_000
