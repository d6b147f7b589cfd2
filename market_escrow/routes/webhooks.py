from __future__ import annotations

import secrets

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from market_escrow.auth import authenticate_user
from market_escrow.config import get_session
from market_escrow.models import WebhookConfig
from market_escrow.schemas import Envelope, WebhookDeleteOut, WebhookOut, WebhookSetRequest, ok
from market_escrow.webhooks import ALL_EVENTS

router = APIRouter()


@router.put("/webhooks", response_model=Envelope[WebhookOut], tags=["Webhooks"])
def set_webhook(
    req: WebhookSetRequest,
    current: dict = Depends(authenticate_user),
    session: Session = Depends(get_session),
) -> dict:
    unknown = sorted(set(req.events or []) - set(ALL_EVENTS))
    if unknown:
        raise HTTPException(status_code=400, detail=f"Unknown events: {', '.join(unknown)}")
    events = req.events or list(ALL_EVENTS)

    with session.begin():
        cfg = session.get(WebhookConfig, current["id"])
        # The signing secret is only revealed when it is first issued.
        secret = None
        if cfg is None:
            secret = f"whsec_{secrets.token_hex(24)}"
            cfg = WebhookConfig(account_id=current["id"], secret=secret)
        cfg.url = req.url
        cfg.events = events
        cfg.active = True
        session.add(cfg)

    return ok(WebhookOut(webhook_url=cfg.url, secret=secret, events=cfg.events, active=True))


@router.delete("/webhooks", response_model=Envelope[WebhookDeleteOut], tags=["Webhooks"])
def delete_webhook(current: dict = Depends(authenticate_user), session: Session = Depends(get_session)) -> dict:
    with session.begin():
        cfg = session.get(WebhookConfig, current["id"])
        if cfg is None:
            raise HTTPException(status_code=404, detail="No webhook configured")
        session.delete(cfg)
    return ok(WebhookDeleteOut(status="removed"))
