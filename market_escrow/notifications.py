from __future__ import annotations

import logging
from typing import Any, Protocol

from sqlalchemy.orm import Session, sessionmaker

from market_escrow.enums import NotificationType
from market_escrow.models import Notification
from market_escrow.webhooks import fire_user_webhook

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    def notify(self, user_id: str, message: str, metadata: dict[str, Any]) -> None: ...


class DatabaseNotificationSink:
    """Persists a notification for the user and forwards it to their webhook.

    Delivery is best-effort: any failure is logged and never reaches the
    caller, so an escrow transition is never undone by a notification.
    """

    def __init__(self, session_factory: sessionmaker[Session], *, webhooks: bool = True) -> None:
        self._session_factory = session_factory
        self._webhooks = webhooks

    def notify(self, user_id: str, message: str, metadata: dict[str, Any]) -> None:
        try:
            kind = NotificationType(metadata.get("type", NotificationType.ESCROW.value))
            session = self._session_factory()
            try:
                with session.begin():
                    session.add(Notification(user_id=user_id, type=kind, message=message, meta=dict(metadata)))
            finally:
                session.close()

            if self._webhooks and metadata.get("event"):
                fire_user_webhook(self._session_factory, user_id, metadata["event"], message, dict(metadata))
        except Exception:
            logger.warning("Notification to user %s failed: %s", user_id, message, exc_info=True)
