# backend/mathbridge/services/notification_service.py
"""
In-app notifications for scheduling events.

``NotificationSender`` is the seam the workflow notifies through after its
transaction has committed. The default ``NotificationService`` stores one
``Notification`` row per call in its own short-lived session, so it never
touches the caller's unit of work. Callers treat delivery as best effort.
"""

from __future__ import annotations

from contextlib import contextmanager
import json
import logging
from typing import Any, Callable, Dict, Generator, Optional, Protocol

from sqlalchemy.orm import Session

from ..database import SessionLocal
from ..models.notification import Notification

logger = logging.getLogger(__name__)

EVENT_TITLES: Dict[str, str] = {
    "reschedule.approved": "Reschedule request approved",
    "reschedule.rejected": "Reschedule request rejected",
    "session.cancelled": "Session cancelled and refunded",
    "session.tutor_changed": "Session tutor changed",
}


class NotificationSender(Protocol):
    def notify(self, event: str, payload: Dict[str, Any]) -> None:
        ...


@contextmanager
def _managed_session(session_factory: Callable[[], Session]) -> Generator[Session, None, None]:
    """Context manager that yields a session and guarantees cleanup."""
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


class NotificationService:
    """
    Notification sender that writes to the notifications table.

    Usage:
        sender = NotificationService()
        sender.notify("reschedule.approved", {"user_id": parent_id, "request_id": ...})
    """

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None) -> None:
        self._session_factory = session_factory or SessionLocal

    def notify(self, event: str, payload: Dict[str, Any]) -> None:
        logger.info(
            "Dispatching notification %s payload=%s",
            event,
            json.dumps(payload, sort_keys=True, default=str)[:500],
        )
        with _managed_session(self._session_factory) as session:
            session.add(
                Notification(
                    user_id=payload.get("user_id"),
                    contract_id=payload.get("contract_id"),
                    session_id=payload.get("session_id"),
                    event=event,
                    title=EVENT_TITLES.get(event, event),
                    message=payload.get("message"),
                    payload=json.loads(json.dumps(payload, default=str)),
                )
            )
