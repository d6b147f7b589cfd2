from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from fastapi.testclient import TestClient

ADMIN_TOKEN = "test-admin-token"


def _register(client, username: str, **extra) -> dict:
    resp = client.post(
        "/v1/accounts/register",
        json={"username": username, "email": f"{username}@example.com", **extra},
    )
    assert resp.status_code == 201, resp.text
    data = resp.json()["data"]
    return {"id": data["account"]["id"], "key": data["api_key"]}


def _setup(client, auth_header):
    buyer = _register(client, "alice")
    seller = _register(client, "bob")
    admin = _register(client, "moderator", admin_token=ADMIN_TOKEN)
    client.post(
        "/v1/accounts/wallet/deposit",
        headers=auth_header(buyer["key"]),
        json={"amount": "1000", "currency": "USD"},
    )
    return buyer, seller, admin


def _create(client, auth_header, buyer, seller, **extra) -> dict:
    resp = client.post(
        "/v1/escrows",
        headers=auth_header(buyer["key"]),
        json={"seller_id": seller["id"], "amount": "100", "currency": "USD", **extra},
    )
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


def _in_days(days: int) -> datetime:
    return datetime.now(timezone.utc) + timedelta(days=days)


def _sweep(client, auth_header, admin, name: str) -> dict:
    resp = client.post(f"/v1/admin/sweeps/{name}", headers=auth_header(admin["key"]))
    assert resp.status_code == 200, resp.text
    return resp.json()["data"]


def test_time_locked_escrow_releases_after_unlock(escrow_app, auth_header):
    with TestClient(escrow_app) as client:
        buyer, seller, admin = _setup(client, auth_header)
        escrow = _create(client, auth_header, buyer, seller, is_time_locked=True, unlock_in_days=3)
        assert escrow["status"] == "time_locked"
        assert escrow["is_time_locked"] is True
        assert escrow["unlock_time"] is not None

        resp = client.post(f"/v1/escrows/{escrow['id']}/fund", headers=auth_header(buyer["key"]))
        assert resp.json()["data"]["status"] == "funded"

        report = _sweep(client, auth_header, admin, "time-locks")
        assert report["processed"] == 0

        with patch("market_escrow.engine._now", return_value=_in_days(4)):
            report = _sweep(client, auth_header, admin, "time-locks")
        assert report == {"sweep": "time-locks", "processed": 1, "succeeded": 1, "skipped": 0, "failed": 0}

        current = client.get(f"/v1/escrows/{escrow['id']}", headers=auth_header(seller["key"])).json()["data"]
        assert current["status"] == "released"
        balance = client.get("/v1/accounts/wallet/balance?currency=USD", headers=auth_header(seller["key"]))
        assert balance.json()["data"]["available_minor"] == 10_000


def test_unfunded_time_lock_is_not_released(escrow_app, auth_header):
    with TestClient(escrow_app) as client:
        buyer, seller, admin = _setup(client, auth_header)
        escrow = _create(client, auth_header, buyer, seller, is_time_locked=True, unlock_in_days=1)

        with patch("market_escrow.engine._now", return_value=_in_days(2)):
            report = _sweep(client, auth_header, admin, "time-locks")
        assert report["processed"] == 1
        assert report["skipped"] == 1
        assert report["succeeded"] == 0

        current = client.get(f"/v1/escrows/{escrow['id']}", headers=auth_header(buyer["key"])).json()["data"]
        assert current["status"] == "time_locked"


def test_funded_escrow_auto_releases_after_release_window(escrow_app, auth_header):
    with TestClient(escrow_app) as client:
        buyer, seller, admin = _setup(client, auth_header)
        escrow = _create(client, auth_header, buyer, seller)
        client.post(f"/v1/escrows/{escrow['id']}/fund", headers=auth_header(buyer["key"]))

        with patch("market_escrow.engine._now", return_value=_in_days(3)):
            assert _sweep(client, auth_header, admin, "time-locks")["processed"] == 0
        with patch("market_escrow.engine._now", return_value=_in_days(8)):
            assert _sweep(client, auth_header, admin, "time-locks")["succeeded"] == 1

        current = client.get(f"/v1/escrows/{escrow['id']}", headers=auth_header(buyer["key"])).json()["data"]
        assert current["status"] == "released"


def test_time_lock_existing_escrow(escrow_app, auth_header):
    with TestClient(escrow_app) as client:
        buyer, seller, admin = _setup(client, auth_header)
        escrow = _create(client, auth_header, buyer, seller)

        resp = client.post(
            f"/v1/escrows/{escrow['id']}/time-lock",
            headers=auth_header(admin["key"]),
            json={"unlock_in_days": 2},
        )
        assert resp.status_code == 403

        resp = client.post(
            f"/v1/escrows/{escrow['id']}/time-lock",
            headers=auth_header(buyer["key"]),
            json={"unlock_in_days": 0},
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "INVALID_ARGUMENT"

        resp = client.post(
            f"/v1/escrows/{escrow['id']}/time-lock",
            headers=auth_header(seller["key"]),
            json={"unlock_in_days": 2},
        )
        assert resp.status_code == 200, resp.text
        locked = resp.json()["data"]
        assert locked["status"] == "time_locked"
        assert locked["is_time_locked"] is True

        for user in (buyer, seller):
            inbox = client.get("/v1/notifications", headers=auth_header(user["key"])).json()["data"]
            events = [n["metadata"]["event"] for n in inbox["notifications"]]
            assert events.count("escrow.time_locked") == 1

        client.post(f"/v1/escrows/{escrow['id']}/fund", headers=auth_header(buyer["key"]))
        resp = client.post(
            f"/v1/escrows/{escrow['id']}/time-lock",
            headers=auth_header(buyer["key"]),
            json={"unlock_in_days": 2},
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "INVALID_STATE"


def test_funding_timeout_cancels_and_reopens_listing(escrow_app, auth_header):
    with TestClient(escrow_app) as client:
        buyer, seller, admin = _setup(client, auth_header)
        listing = client.post(
            "/v1/listings",
            headers=auth_header(seller["key"]),
            json={"title": "Bike", "price": "100", "currency": "USD"},
        ).json()["data"]
        escrow = client.post(
            "/v1/escrows", headers=auth_header(buyer["key"]), json={"listing_id": listing["id"]}
        ).json()["data"]

        with patch("market_escrow.engine._now", return_value=_in_days(1)):
            assert _sweep(client, auth_header, admin, "funding-timeouts")["processed"] == 0
        with patch("market_escrow.engine._now", return_value=_in_days(3)):
            report = _sweep(client, auth_header, admin, "funding-timeouts")
        assert report["succeeded"] == 1

        current = client.get(f"/v1/escrows/{escrow['id']}", headers=auth_header(buyer["key"])).json()["data"]
        assert current["status"] == "cancelled"
        assert client.get(f"/v1/listings/{listing['id']}").json()["data"]["status"] == "active"

        resp = client.post(f"/v1/escrows/{escrow['id']}/fund", headers=auth_header(buyer["key"]))
        assert resp.status_code == 400


def test_sweeps_require_admin(escrow_app, auth_header):
    with TestClient(escrow_app) as client:
        buyer, _seller, _admin = _setup(client, auth_header)
        for name in ("time-locks", "disputes", "funding-timeouts", "reconcile"):
            resp = client.post(f"/v1/admin/sweeps/{name}", headers=auth_header(buyer["key"]))
            assert resp.status_code == 403
