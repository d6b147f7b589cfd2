from __future__ import annotations

import hashlib
import hmac
import json
import logging
import uuid
from datetime import datetime, timezone
from threading import Thread
from time import sleep

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from market_escrow.config import settings
from market_escrow.models import WebhookConfig

logger = logging.getLogger(__name__)

ALL_EVENTS = [
    "escrow.created",
    "escrow.signed",
    "escrow.time_locked",
    "escrow.funded",
    "escrow.released",
    "escrow.refunded",
    "escrow.cancelled",
    "escrow.disputed",
    "escrow.resolved",
    "dispute.in_review",
]

RETRY_BACKOFF = [5, 25, 125]


def _sign_payload(secret: str, body: bytes) -> str:
    sig = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={sig}"


def _deliver(url: str, secret: str, event: str, payload: dict) -> None:
    body = json.dumps(payload).encode("utf-8")
    signature = _sign_payload(secret, body)
    delivery_id = f"evt_{uuid.uuid4().hex[:12]}"
    headers = {
        "Content-Type": "application/json",
        "X-Market-Escrow-Signature": signature,
        "X-Market-Escrow-Event": event,
        "X-Market-Escrow-Delivery": delivery_id,
    }

    retries = settings.webhook_max_retries
    for attempt in range(1 + retries):
        try:
            resp = httpx.post(url, content=body, headers=headers, timeout=settings.webhook_timeout_seconds)
            if 200 <= resp.status_code < 300:
                return
            logger.warning("Webhook delivery to %s returned %s (attempt %d)", url, resp.status_code, attempt + 1)
        except Exception:
            logger.warning("Webhook delivery to %s failed (attempt %d)", url, attempt + 1, exc_info=True)
        if attempt < retries:
            backoff = RETRY_BACKOFF[attempt] if attempt < len(RETRY_BACKOFF) else RETRY_BACKOFF[-1]
            sleep(backoff)


def build_payload(event: str, user_id: str, message: str, data: dict) -> dict:
    return {
        "event": event,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "user_id": user_id,
        "message": message,
        "data": data,
    }


def fire_user_webhook(
    session_factory: sessionmaker[Session],
    user_id: str,
    event: str,
    message: str,
    data: dict,
) -> bool:
    """Deliver an event to the user's webhook in a background thread.

    Returns True when a delivery was started.
    """
    db = session_factory()
    try:
        with db.begin():
            cfg = db.execute(
                select(WebhookConfig).where(
                    WebhookConfig.account_id == user_id,
                    WebhookConfig.active.is_(True),
                )
            ).scalar_one_or_none()
    finally:
        db.close()

    if cfg is None or (cfg.events and event not in cfg.events):
        return False

    payload = build_payload(event, user_id, message, data)
    thread = Thread(target=_deliver, args=(cfg.url, cfg.secret, event, payload), daemon=True)
    thread.start()
    return True
