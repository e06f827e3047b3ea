"""Validate decrypted schedule/update requests.

A schedule request is checked once, in a fixed order, and turned into a
``ScheduleRequest`` whose ``content`` is one of three variants. Everything
downstream works with the variant and never re-checks field combinations.
"""

from __future__ import annotations

import datetime as dt
import re
from dataclasses import dataclass, field
from typing import Any, Optional, Union
from urllib.parse import urlparse

from reistandard.errors import ApiError, invalid_parameters
from reistandard.modules.scheduler.models import (
    MessageSubtype,
    MessageType,
    RecurrenceType,
    ensure_utc,
)

_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)

MESSAGE_TYPES = [t.value for t in MessageType]
RECURRENCE_TYPES = [r.value for r in RecurrenceType]
MESSAGE_SUBTYPES = [s.value for s in MessageSubtype]


# ── Content variants ─────────────────────────────────────────────────


@dataclass(frozen=True)
class FixedContent:
    user_message: str

    message_type = MessageType.FIXED


@dataclass(frozen=True)
class PromptedContent:
    complete_prompt: str
    api_url: str
    api_key: str
    primary_model: str

    message_type = MessageType.PROMPTED


@dataclass(frozen=True)
class AutoContent(PromptedContent):
    message_type = MessageType.AUTO


Content = Union[FixedContent, PromptedContent, AutoContent]


@dataclass(frozen=True)
class ScheduleRequest:
    """A fully validated schedule request, still in plaintext."""

    contact_name: str
    content: Content
    first_send_at: dt.datetime
    push_subscription: dict[str, Any]
    recurrence_type: RecurrenceType = RecurrenceType.NONE
    message_subtype: MessageSubtype = MessageSubtype.CHAT
    avatar_url: Optional[str] = None
    uuid: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def message_type(self) -> MessageType:
        return self.content.message_type


# ── Field helpers ────────────────────────────────────────────────────


def parse_timestamp(value: Any) -> Optional[dt.datetime]:
    """Parse an ISO-8601 string into an aware UTC datetime, or None."""
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = dt.datetime.fromisoformat(value.strip())
    except ValueError:
        return None
    return ensure_utc(parsed)


def is_valid_url(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    parsed = urlparse(value)
    return bool(parsed.scheme and parsed.netloc)


def is_valid_uuid(value: Any) -> bool:
    return isinstance(value, str) and bool(_UUID_RE.match(value))


def _text(payload: dict[str, Any], key: str) -> Optional[str]:
    value = payload.get(key)
    if isinstance(value, str) and value.strip():
        return value
    return None


# ── Schedule ─────────────────────────────────────────────────────────


def validate_schedule_payload(payload: Any, now: dt.datetime) -> ScheduleRequest:
    """Check a decrypted schedule payload and build the request.

    Raises ``ApiError`` with the first failing check's code.
    """
    if not isinstance(payload, dict):
        raise ApiError("INVALID_PAYLOAD_FORMAT", "Decrypted payload must be a JSON object")

    contact_name = _text(payload, "contactName")
    if contact_name is None:
        raise invalid_parameters(missing=["contactName"])

    raw_type = payload.get("messageType")
    if raw_type not in MESSAGE_TYPES:
        raise ApiError(
            "INVALID_MESSAGE_TYPE",
            "Invalid message type",
            details={"providedType": raw_type, "allowedTypes": MESSAGE_TYPES},
        )
    message_type = MessageType(raw_type)

    first_send_at = parse_timestamp(payload.get("firstSendTime"))
    if first_send_at is None:
        raise ApiError(
            "INVALID_TIMESTAMP", "Invalid timestamp format", details={"field": "firstSendTime"}
        )
    if first_send_at <= now:
        raise ApiError(
            "INVALID_TIMESTAMP",
            "firstSendTime must be in the future",
            details={"field": "firstSendTime", "reason": "must be in the future"},
        )

    subscription = payload.get("pushSubscription")
    if not isinstance(subscription, dict) or not subscription:
        raise invalid_parameters(missing=["pushSubscription"])

    raw_recurrence = payload.get("recurrenceType") or RecurrenceType.NONE.value
    if raw_recurrence not in RECURRENCE_TYPES:
        raise invalid_parameters(invalid=["recurrenceType"])

    content = _build_content(message_type, payload)

    avatar_url = payload.get("avatarUrl") or None
    if avatar_url is not None and not is_valid_url(avatar_url):
        raise invalid_parameters(invalid=["avatarUrl (invalid URL format)"])

    task_uuid = payload.get("uuid") or None
    if task_uuid is not None and not is_valid_uuid(task_uuid):
        raise invalid_parameters(invalid=["uuid (invalid UUID format)"])

    raw_subtype = payload.get("messageSubtype") or MessageSubtype.CHAT.value
    if raw_subtype not in MESSAGE_SUBTYPES:
        raise invalid_parameters(invalid=["messageSubtype"])

    metadata = payload.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise invalid_parameters(invalid=["metadata"])

    return ScheduleRequest(
        contact_name=contact_name,
        content=content,
        first_send_at=first_send_at,
        push_subscription=subscription,
        recurrence_type=RecurrenceType(raw_recurrence),
        message_subtype=MessageSubtype(raw_subtype),
        avatar_url=avatar_url,
        uuid=task_uuid.lower() if task_uuid else None,
        metadata=metadata,
    )


def _build_content(message_type: MessageType, payload: dict[str, Any]) -> Content:
    if message_type == MessageType.FIXED:
        user_message = _text(payload, "userMessage")
        if user_message is None:
            raise invalid_parameters(missing=["userMessage (required for fixed type)"])
        return FixedContent(user_message=user_message)

    fields = {
        "completePrompt": _text(payload, "completePrompt"),
        "apiUrl": _text(payload, "apiUrl"),
        "apiKey": _text(payload, "apiKey"),
        "primaryModel": _text(payload, "primaryModel"),
    }
    missing = [name for name, value in fields.items() if value is None]
    if missing:
        raise invalid_parameters(missing=missing)

    variant = AutoContent if message_type == MessageType.AUTO else PromptedContent
    return variant(
        complete_prompt=fields["completePrompt"],
        api_url=fields["apiUrl"],
        api_key=fields["apiKey"],
        primary_model=fields["primaryModel"],
    )


# ── Update ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class UpdateRequest:
    """Recognised update fields, plaintext. Unset fields stay None."""

    complete_prompt: Optional[str] = None
    user_message: Optional[str] = None
    next_send_at: Optional[dt.datetime] = None
    recurrence_type: Optional[RecurrenceType] = None
    avatar_url: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None

    def is_empty(self) -> bool:
        return all(
            value is None
            for value in (
                self.complete_prompt,
                self.user_message,
                self.next_send_at,
                self.recurrence_type,
                self.avatar_url,
                self.metadata,
            )
        )


def _invalid_update(fields: list[str]) -> ApiError:
    return ApiError(
        "INVALID_UPDATE_DATA", "Invalid update data", details={"invalidFields": fields}
    )


def validate_update_payload(payload: Any) -> UpdateRequest:
    """Pick the recognised fields out of an update payload."""
    if not isinstance(payload, dict):
        raise ApiError("INVALID_UPDATE_DATA", "Update payload must be a JSON object")

    next_send_at = None
    if payload.get("nextSendAt"):
        next_send_at = parse_timestamp(payload["nextSendAt"])
        if next_send_at is None:
            raise _invalid_update(["nextSendAt"])

    recurrence_type = None
    if payload.get("recurrenceType"):
        if payload["recurrenceType"] not in RECURRENCE_TYPES:
            raise _invalid_update(["recurrenceType"])
        recurrence_type = RecurrenceType(payload["recurrenceType"])

    avatar_url = payload.get("avatarUrl") or None
    if avatar_url is not None and not is_valid_url(avatar_url):
        raise _invalid_update(["avatarUrl"])

    metadata = payload.get("metadata") or None
    if metadata is not None and not isinstance(metadata, dict):
        raise _invalid_update(["metadata"])

    update = UpdateRequest(
        complete_prompt=_text(payload, "completePrompt"),
        user_message=_text(payload, "userMessage"),
        next_send_at=next_send_at,
        recurrence_type=recurrence_type,
        avatar_url=avatar_url,
        metadata=metadata,
    )
    if update.is_empty():
        raise ApiError("INVALID_UPDATE_DATA", "No valid update fields provided")
    return update
