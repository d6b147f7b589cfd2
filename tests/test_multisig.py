from __future__ import annotations

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


def _setup(client, auth_header, deposit: str = "5000"):
    buyer = _register(client, "alice")
    seller = _register(client, "bob")
    admin = _register(client, "moderator", admin_token=ADMIN_TOKEN)
    client.post(
        "/v1/accounts/wallet/deposit",
        headers=auth_header(buyer["key"]),
        json={"amount": deposit, "currency": "USD"},
    )
    return buyer, seller, admin


def _create_multisig(client, auth_header, buyer, seller, required: int = 2) -> dict:
    resp = client.post(
        "/v1/escrows",
        headers=auth_header(buyer["key"]),
        json={
            "seller_id": seller["id"],
            "amount": "2000",
            "currency": "USD",
            "is_multi_sig": True,
            "required_signatures": required,
        },
    )
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


def _sign(client, auth_header, escrow_id: str, user: dict, role: str):
    return client.post(f"/v1/escrows/{escrow_id}/sign", headers=auth_header(user["key"]), json={"role": role})


def test_two_of_three_signatures_fund_the_escrow(escrow_app, auth_header):
    with TestClient(escrow_app) as client:
        buyer, seller, _admin = _setup(client, auth_header)
        escrow = _create_multisig(client, auth_header, buyer, seller)
        assert escrow["status"] == "awaiting_signatures"
        assert escrow["multi_sig_signatures"] == {
            "buyer_signed": False,
            "seller_signed": False,
            "admin_signed": False,
            "required_signatures": 2,
            "completed_signatures": 0,
        }

        resp = client.post(f"/v1/escrows/{escrow['id']}/fund", headers=auth_header(buyer["key"]))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "INVALID_STATE"

        resp = _sign(client, auth_header, escrow["id"], buyer, "buyer")
        assert resp.status_code == 200, resp.text
        signed = resp.json()["data"]
        assert signed["status"] == "awaiting_signatures"
        assert signed["multi_sig_signatures"]["completed_signatures"] == 1

        # Signing twice is a no-op.
        resp = _sign(client, auth_header, escrow["id"], buyer, "buyer")
        assert resp.status_code == 200
        assert resp.json()["data"]["multi_sig_signatures"]["completed_signatures"] == 1

        resp = _sign(client, auth_header, escrow["id"], buyer, "seller")
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "FORBIDDEN"

        resp = _sign(client, auth_header, escrow["id"], seller, "seller")
        assert resp.status_code == 200, resp.text
        funded = resp.json()["data"]
        assert funded["status"] == "funded"
        assert funded["multi_sig_signatures"]["completed_signatures"] == 2

        balance = client.get("/v1/accounts/wallet/balance?currency=USD", headers=auth_header(buyer["key"]))
        assert balance.json()["data"]["available_minor"] == 300_000


def test_three_required_signatures_need_admin(escrow_app, auth_header):
    with TestClient(escrow_app) as client:
        buyer, seller, admin = _setup(client, auth_header)
        escrow = _create_multisig(client, auth_header, buyer, seller, required=3)

        _sign(client, auth_header, escrow["id"], buyer, "buyer")
        resp = _sign(client, auth_header, escrow["id"], seller, "seller")
        assert resp.json()["data"]["status"] == "awaiting_signatures"

        resp = _sign(client, auth_header, escrow["id"], seller, "admin")
        assert resp.status_code == 403

        resp = _sign(client, auth_header, escrow["id"], admin, "admin")
        assert resp.status_code == 200, resp.text
        assert resp.json()["data"]["status"] == "funded"

        resp = _sign(client, auth_header, escrow["id"], admin, "admin")
        assert resp.status_code == 200


def test_signing_after_funding_is_rejected(escrow_app, auth_header):
    with TestClient(escrow_app) as client:
        buyer, seller, admin = _setup(client, auth_header)
        escrow = _create_multisig(client, auth_header, buyer, seller)
        _sign(client, auth_header, escrow["id"], buyer, "buyer")
        _sign(client, auth_header, escrow["id"], seller, "seller")

        resp = _sign(client, auth_header, escrow["id"], admin, "admin")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "INVALID_STATE"


def test_signing_a_plain_escrow_is_rejected(escrow_app, auth_header):
    with TestClient(escrow_app) as client:
        buyer, seller, _admin = _setup(client, auth_header)
        escrow = client.post(
            "/v1/escrows",
            headers=auth_header(buyer["key"]),
            json={"seller_id": seller["id"], "amount": "10", "currency": "USD"},
        ).json()["data"]

        resp = _sign(client, auth_header, escrow["id"], buyer, "buyer")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "INVALID_STATE"

        resp = _sign(client, auth_header, escrow["id"], buyer, "notary")
        assert resp.status_code == 422


def test_resigning_retries_failed_funding(escrow_app, auth_header):
    with TestClient(escrow_app) as client:
        buyer, seller, _admin = _setup(client, auth_header, deposit="100")
        escrow = _create_multisig(client, auth_header, buyer, seller)

        _sign(client, auth_header, escrow["id"], buyer, "buyer")
        resp = _sign(client, auth_header, escrow["id"], seller, "seller")
        assert resp.status_code == 500
        assert resp.json()["error"]["code"] == "PROVIDER_ERROR"

        current = client.get(f"/v1/escrows/{escrow['id']}", headers=auth_header(buyer["key"])).json()["data"]
        assert current["status"] == "awaiting_signatures"
        assert current["multi_sig_signatures"]["completed_signatures"] == 2

        client.post(
            "/v1/accounts/wallet/deposit",
            headers=auth_header(buyer["key"]),
            json={"amount": "1900", "currency": "USD"},
        )
        resp = _sign(client, auth_header, escrow["id"], buyer, "buyer")
        assert resp.status_code == 200, resp.text
        assert resp.json()["data"]["status"] == "funded"
