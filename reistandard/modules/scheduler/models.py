"""Database model and enums for scheduled notification tasks."""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, Text
from sqlalchemy.types import TypeDecorator

from reistandard.database import Base


class MessageType(StrEnum):
    """How the notification text is produced."""

    FIXED = "fixed"
    PROMPTED = "prompted"
    AUTO = "auto"


class MessageSubtype(StrEnum):
    """Where the client renders the notification."""

    CHAT = "chat"
    FORUM = "forum"
    MOMENT = "moment"


class RecurrenceType(StrEnum):
    """Repeat interval after a successful delivery."""

    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"

    @property
    def interval(self) -> Optional[dt.timedelta]:
        return _RECURRENCE_INTERVALS.get(self)


_RECURRENCE_INTERVALS = {
    RecurrenceType.DAILY: dt.timedelta(days=1),
    RecurrenceType.WEEKLY: dt.timedelta(days=7),
}


class TaskStatus(StrEnum):
    """Persisted task status."""

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


def ensure_utc(value: dt.datetime) -> dt.datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.UTC)
    return value.astimezone(dt.UTC)


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime column that always round-trips as UTC.

    SQLite has no timezone support, so values are stored as naive UTC there and
    re-tagged on load.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[dt.datetime], dialect) -> Optional[dt.datetime]:
        if value is None:
            return None
        value = ensure_utc(value)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: Optional[dt.datetime], dialect) -> Optional[dt.datetime]:
        if value is None:
            return None
        return ensure_utc(value)


class ScheduledMessage(Base):
    """A user-owned notification task.

    ``user_message``, ``api_key`` and ``complete_prompt`` hold at-rest envelopes
    (``ivHex:cipherHex:tagHex``) encrypted with the owner's derived key.
    """

    __tablename__ = "scheduled_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(255), nullable=False, index=True)
    uuid = Column(String(36), nullable=False, default=lambda: str(uuid4()), index=True)

    contact_name = Column(String(255), nullable=False)
    avatar_url = Column(String(500), nullable=True)

    message_type = Column(String(50), nullable=False)
    message_subtype = Column(String(50), nullable=False, default=MessageSubtype.CHAT.value)
    user_message = Column(Text, nullable=True)

    next_send_at = Column(UTCDateTime(), nullable=False)
    recurrence_type = Column(String(50), nullable=False, default=RecurrenceType.NONE.value)

    api_url = Column(String(500), nullable=True)
    api_key = Column(Text, nullable=True)
    primary_model = Column(String(100), nullable=True)
    complete_prompt = Column(Text, nullable=True)

    push_subscription = Column(JSON, nullable=False)

    status = Column(String(50), nullable=False, default=TaskStatus.PENDING.value)
    retry_count = Column(Integer, nullable=False, default=0)
    failure_reason = Column(Text, nullable=True)

    # "metadata" is reserved on declarative classes.
    meta = Column("metadata", JSON, nullable=False, default=dict)

    created_at = Column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_scheduled_messages_status_next_send_at", "status", "next_send_at"),
        Index("ix_scheduled_messages_status_updated_at", "status", "updated_at"),
    )

    def to_summary(self) -> dict[str, Any]:
        """Client-facing view without encrypted fields."""
        return {
            "id": self.id,
            "uuid": self.uuid,
            "contactName": self.contact_name,
            "messageType": self.message_type,
            "messageSubtype": self.message_subtype,
            "nextSendAt": self.next_send_at.isoformat() if self.next_send_at else None,
            "recurrenceType": self.recurrence_type,
            "status": self.status,
            "retryCount": self.retry_count,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self) -> str:
        return (
            f"<ScheduledMessage(id={self.id}, uuid={self.uuid}, "
            f"type={self.message_type}, status={self.status})>"
        )


@dataclass(frozen=True)
class TaskSnapshot:
    """Detached working copy of a due task, owned by one dispatcher worker."""

    id: int
    uuid: str
    user_id: str
    contact_name: str
    message_type: MessageType
    message_subtype: str
    next_send_at: dt.datetime
    recurrence_type: RecurrenceType
    push_subscription: dict[str, Any]
    retry_count: int = 0
    avatar_url: Optional[str] = None
    user_message: Optional[str] = None
    api_url: Optional[str] = None
    api_key: Optional[str] = None
    primary_model: Optional[str] = None
    complete_prompt: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_record(cls, rec: ScheduledMessage) -> "TaskSnapshot":
        return cls(
            id=rec.id,
            uuid=rec.uuid,
            user_id=rec.user_id,
            contact_name=rec.contact_name,
            message_type=MessageType(rec.message_type),
            message_subtype=rec.message_subtype or MessageSubtype.CHAT.value,
            next_send_at=ensure_utc(rec.next_send_at),
            recurrence_type=RecurrenceType(rec.recurrence_type or RecurrenceType.NONE.value),
            push_subscription=dict(rec.push_subscription or {}),
            retry_count=rec.retry_count or 0,
            avatar_url=rec.avatar_url,
            user_message=rec.user_message,
            api_url=rec.api_url,
            api_key=rec.api_key,
            primary_model=rec.primary_model,
            complete_prompt=rec.complete_prompt,
            metadata=dict(rec.meta or {}),
        )
