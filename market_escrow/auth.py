from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone

import bcrypt
from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from market_escrow.config import get_session, settings
from market_escrow.models import Account

API_KEY_PREFIX = "mkt_"


def generate_api_key() -> tuple[str, str]:
    """Return a new ``(api_key, bcrypt_hash)`` pair."""
    api_key = f"{API_KEY_PREFIX}{secrets.token_hex(16)}"
    api_key_hash = bcrypt.hashpw(
        api_key.encode("utf-8"),
        bcrypt.gensalt(rounds=settings.api_key_salt_rounds),
    ).decode("utf-8")
    return api_key, api_key_hash


def _check_api_key(api_key: str, api_key_hash: str) -> bool:
    try:
        return bcrypt.checkpw(api_key.encode("utf-8"), api_key_hash.encode("utf-8"))
    except ValueError:
        return False


def _verify_signature(
    api_key: str,
    method: str,
    path: str,
    body: bytes,
    signature: str,
    timestamp: str,
) -> bool:
    """Verify HMAC-SHA256 signature: sign(timestamp + method + path + body)."""
    try:
        ts = int(timestamp)
    except (ValueError, TypeError):
        return False

    now_ts = int(datetime.now(timezone.utc).timestamp())
    if abs(now_ts - ts) > settings.signature_max_age_seconds:
        return False

    message = f"{timestamp}{method}{path}".encode("utf-8") + body
    expected = hmac.new(api_key.encode("utf-8"), message, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)


def _as_aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes.
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _current(acct: Account) -> dict:
    return {
        "id": acct.id,
        "username": acct.username,
        "is_admin": acct.is_admin,
        "status": acct.status,
    }


async def authenticate_user(
    request: Request,
    authorization: str | None = Header(default=None),
    x_market_signature: str | None = Header(default=None),
    x_market_timestamp: str | None = Header(default=None),
    session: Session = Depends(get_session),
) -> dict:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=401,
            detail=f"Missing or invalid Authorization header. Use: Bearer {API_KEY_PREFIX}<your_api_key>",
        )
    api_key = authorization.split(" ", 1)[1].strip()
    if not api_key.startswith(API_KEY_PREFIX):
        raise HTTPException(status_code=401, detail="Invalid API key format")

    has_signature = x_market_signature is not None and x_market_timestamp is not None
    if settings.require_signatures and not has_signature:
        raise HTTPException(
            status_code=401,
            detail="Request signature required. Provide X-Market-Signature and X-Market-Timestamp headers.",
        )

    if has_signature:
        body = await request.body()
        if not _verify_signature(
            api_key,
            request.method,
            request.url.path,
            body,
            x_market_signature,  # type: ignore[arg-type]
            x_market_timestamp,  # type: ignore[arg-type]
        ):
            raise HTTPException(status_code=401, detail="Invalid request signature")

    with session.begin():
        accounts = session.execute(select(Account).where(Account.status != "suspended")).scalars().all()
        now = datetime.now(timezone.utc)
        grace = timedelta(minutes=settings.key_rotation_grace_minutes)

        for acct in accounts:
            if _check_api_key(api_key, acct.api_key_hash):
                return _current(acct)
            if (
                acct.previous_api_key_hash
                and acct.key_rotated_at
                and (now - _as_aware(acct.key_rotated_at)) < grace
                and _check_api_key(api_key, acct.previous_api_key_hash)
            ):
                return _current(acct)

    raise HTTPException(status_code=401, detail="Invalid API key")


def require_admin(current: dict = Depends(authenticate_user)) -> dict:
    if not current["is_admin"]:
        raise HTTPException(status_code=403, detail="Admin access required")
    return current
