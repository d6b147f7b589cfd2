from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from market_escrow.money import to_major
from market_escrow.providers.base import ProviderError, ProviderTimeout, TransferHandle, TransferStatus

logger = logging.getLogger(__name__)

_STATUS_MAP = {
    "pending": TransferStatus.PENDING,
    "running": TransferStatus.PENDING,
    "complete": TransferStatus.COMPLETED,
    "completed": TransferStatus.COMPLETED,
    "failed": TransferStatus.FAILED,
}

# Circle settles USDC balances under the USD currency code.
_CIRCLE_CURRENCY = {"USDC": "USD"}


def _join(base_url: str, path: str) -> str:
    return base_url.rstrip("/") + "/" + path.lstrip("/")


@dataclass
class CircleProvider:
    """Stablecoin custodian backed by Circle's wallet transfer API.

    All escrows share the platform escrow wallet; the per-escrow handle is
    that wallet id.
    """

    base_url: str
    api_key: str
    escrow_wallet_id: str
    timeout_s: float = 15.0
    transport: httpx.BaseTransport | None = None

    name = "circle"

    def _client(self) -> httpx.Client:
        return httpx.Client(
            timeout=self.timeout_s,
            transport=self.transport,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
        )

    def _request(self, method: str, path: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        """Call Circle and return the ``data`` object of the response.

        Only a connection failure or a 4xx rejection raises a plain
        ``ProviderError``. Anything that may have reached Circle (5xx, a read
        or protocol error, an unreadable 2xx body) raises ``ProviderTimeout``
        so the caller keeps its idempotency key.
        """
        url = _join(self.base_url, path)
        try:
            with self._client() as c:
                r = c.request(method, url, json=payload)
                r.raise_for_status()
                body = r.json()
        except (httpx.ConnectError, httpx.ConnectTimeout) as exc:
            raise ProviderError(f"Circle {method} {path} unreachable: {exc}") from exc
        except httpx.TimeoutException as exc:
            raise ProviderTimeout(f"Circle {method} {path} timed out") from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            logger.warning("Circle %s %s returned %s: %s", method, path, status, exc.response.text)
            error = ProviderTimeout if status >= 500 else ProviderError
            raise error(f"Circle {method} {path} returned {status}", response=exc.response.text) from exc
        except httpx.HTTPError as exc:
            raise ProviderTimeout(f"Circle {method} {path} failed: {exc}") from exc
        except ValueError as exc:
            raise ProviderTimeout(f"Circle {method} {path} returned an unreadable body") from exc

        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, dict):
            raise ProviderTimeout(f"Circle {method} {path} returned no data", response=body)
        return data

    def open_custody(self, escrow_id: str) -> str:
        if not self.escrow_wallet_id:
            raise ProviderError("CIRCLE_ESCROW_WALLET_ID is not configured")
        return self.escrow_wallet_id

    def transfer(
        self,
        source: str,
        destination: str,
        amount: int,
        currency: str,
        idempotency_key: str,
    ) -> TransferHandle:
        code = currency.upper()
        payload = {
            "idempotencyKey": idempotency_key,
            "source": {"type": "wallet", "id": source},
            "destination": {"type": "wallet", "id": destination},
            "amount": {
                "amount": str(to_major(amount, code)),
                "currency": _CIRCLE_CURRENCY.get(code, code),
            },
        }
        data = self._request("POST", "/transfers", payload)
        return TransferHandle(
            id=str(data["id"]),
            idempotency_key=idempotency_key,
            status=self._status(data),
            failure_reason=data.get("errorCode"),
        )

    def get_status(self, handle: TransferHandle) -> TransferStatus:
        data = self._request("GET", f"/transfers/{handle.id}")
        return self._status(data)

    @staticmethod
    def _status(data: dict[str, Any]) -> TransferStatus:
        raw = str(data.get("status", "")).lower()
        try:
            return _STATUS_MAP[raw]
        except KeyError:
            raise ProviderTimeout(f"Unrecognised Circle transfer status {raw!r}", response=data) from None
