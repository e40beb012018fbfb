"""Notification requests emitted by the core.

Delivery is somebody else's job: the core writes requests to an outbox
table after its own transaction has committed and never lets a failure
there leak back into a lifecycle operation.
"""
from __future__ import annotations
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from .errors import NotFound
from .models import Notification, Role, User

logger = logging.getLogger(__name__)

NOTIFICATION_TYPES = ("info", "success", "warning", "error")


@dataclass(frozen=True)
class NotificationRequest:
    recipient_id: int
    type: str
    message: str
    link: Optional[str] = None
    description: Optional[str] = None


class Notifier(ABC):
    @abstractmethod
    def emit(self, request: NotificationRequest) -> None:
        """Hand one request over for delivery."""

    def emit_many(self, requests: Iterable[NotificationRequest]) -> None:
        for request in requests:
            self.emit(request)


class OutboxNotifier(Notifier):
    """Persists requests in the ``notification`` table using its own session."""

    def __init__(self, bind: Engine | Callable[[], Engine]):
        self._bind = bind

    def _engine(self) -> Engine:
        return self._bind() if callable(self._bind) else self._bind

    def emit(self, request: NotificationRequest) -> None:
        self.emit_many([request])

    def emit_many(self, requests: Iterable[NotificationRequest]) -> None:
        rows = [
            Notification(
                recipient_id=r.recipient_id,
                type=r.type if r.type in NOTIFICATION_TYPES else "info",
                message=r.message,
                description=r.description,
                link=r.link,
            )
            for r in requests
        ]
        if not rows:
            return
        try:
            with Session(self._engine()) as session:
                session.add_all(rows)
                session.commit()
        except SQLAlchemyError:
            logger.exception("could not store %d notification(s)", len(rows))


class MemoryNotifier(Notifier):
    """Keeps requests in a list; handy for tests and dry runs."""

    def __init__(self) -> None:
        self.sent: List[NotificationRequest] = []

    def emit(self, request: NotificationRequest) -> None:
        self.sent.append(request)


def staff_ids(session: Session) -> List[int]:
    rows = session.exec(select(User.id).where(User.role.in_(Role.STAFF))).all()
    return [r for r in rows if r is not None]


def for_staff(session: Session, type: str, message: str, link: Optional[str] = None,
              description: Optional[str] = None) -> List[NotificationRequest]:
    return [
        NotificationRequest(recipient_id=uid, type=type, message=message, link=link, description=description)
        for uid in staff_ids(session)
    ]


def inbox(session: Session, recipient_id: int, unread_only: bool = False) -> List[Notification]:
    stmt = select(Notification).where(Notification.recipient_id == recipient_id)
    if unread_only:
        stmt = stmt.where(Notification.read == False)  # noqa: E712
    return list(session.exec(stmt.order_by(Notification.created_at.desc())).all())


def mark_read(session: Session, notification_id: int, recipient_id: int,
              now: Optional[datetime] = None) -> Notification:
    note = session.get(Notification, notification_id)
    if not note or note.recipient_id != recipient_id:
        raise NotFound("Notification not found")
    if not note.read:
        note.read = True
        note.read_at = now or datetime.utcnow()
        session.add(note)
        session.commit()
        session.refresh(note)
    return note
