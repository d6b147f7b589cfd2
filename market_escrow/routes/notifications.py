from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from market_escrow.auth import authenticate_user
from market_escrow.config import get_session
from market_escrow.models import Notification
from market_escrow.schemas import Envelope, NotificationListOut, NotificationOut, ok

router = APIRouter()


@router.get("/notifications", response_model=Envelope[NotificationListOut], tags=["Notifications"])
def list_notifications(
    unread_only: bool = False,
    limit: int = 50,
    current: dict = Depends(authenticate_user),
    session: Session = Depends(get_session),
) -> dict:
    stmt = select(Notification).where(Notification.user_id == current["id"])
    if unread_only:
        stmt = stmt.where(Notification.read.is_(False))
    with session.begin():
        rows = session.execute(
            stmt.order_by(Notification.created_at.desc()).limit(max(1, min(limit, 200)))
        ).scalars().all()
        unread = session.execute(
            select(func.count(Notification.id)).where(
                Notification.user_id == current["id"],
                Notification.read.is_(False),
            )
        ).scalar_one()
    return ok(NotificationListOut(notifications=[NotificationOut.from_model(n) for n in rows], unread=int(unread)))


@router.post("/notifications/{notification_id}/read", response_model=Envelope[NotificationOut], tags=["Notifications"])
def mark_read(
    notification_id: str,
    current: dict = Depends(authenticate_user),
    session: Session = Depends(get_session),
) -> dict:
    with session.begin():
        notification = session.get(Notification, notification_id)
        if notification is None or notification.user_id != current["id"]:
            raise HTTPException(status_code=404, detail="Notification not found")
        notification.read = True
        session.add(notification)
    return ok(NotificationOut.from_model(notification))


@router.post("/notifications/read-all", response_model=Envelope[dict], tags=["Notifications"])
def mark_all_read(current: dict = Depends(authenticate_user), session: Session = Depends(get_session)) -> dict:
    with session.begin():
        marked = session.execute(
            update(Notification)
            .where(Notification.user_id == current["id"], Notification.read.is_(False))
            .values(read=True)
        ).rowcount
    return ok({"marked": int(marked)})
