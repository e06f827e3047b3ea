"""Request-side task operations: schedule, update, cancel and list.

Bodies arrive as transit envelopes encrypted with the caller's derived key.
This layer opens them, validates the plaintext, seals the sensitive fields
for storage and maps every failure to an ``ApiError``.
"""

from __future__ import annotations

import datetime as dt
from typing import Any, Callable, Optional

from reistandard.config import Settings, get_settings
from reistandard.errors import ApiError, ConfigurationError
from reistandard.logging_config import get_logger
from reistandard.modules.scheduler.models import TaskStatus, utcnow
from reistandard.modules.scheduler.store import TaskStore
from reistandard.modules.scheduler.validation import (
    FixedContent,
    ScheduleRequest,
    UpdateRequest,
    validate_schedule_payload,
    validate_update_payload,
)
from reistandard.security.encryption import (
    DecryptionFailed,
    EncryptionError,
    InvalidEnvelope,
    InvalidPayloadFormat,
    TransitEnvelope,
    decrypt_transit,
    derive_user_key,
    encrypt_at_rest,
)

logger = get_logger(__name__)

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 20

_ENVELOPE_FIELDS = ("iv", "authTag", "encryptedData")


def looks_encrypted(body: Any) -> bool:
    """True when ``body`` carries all three envelope fields."""
    return isinstance(body, dict) and all(body.get(name) for name in _ENVELOPE_FIELDS)


class ScheduleService:
    """Owns the request-side lifecycle of scheduled tasks."""

    def __init__(
        self,
        store: Optional[TaskStore] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], dt.datetime] = utcnow,
    ) -> None:
        self._store = store or TaskStore()
        self._settings = settings or get_settings()
        self._clock = clock

    # ── Encryption boundary ──────────────────────────────────────────

    def user_key(self, user_id: str) -> bytes:
        try:
            return derive_user_key(self._settings.encryption_key, user_id)
        except ConfigurationError as exc:
            raise ApiError.from_configuration(exc) from exc

    def open_envelope(self, body: Any, key: bytes) -> Any:
        """Decrypt a transit envelope, translating codec errors to API errors."""
        try:
            envelope = TransitEnvelope.from_mapping(body)
            return decrypt_transit(envelope, key)
        except InvalidEnvelope as exc:
            raise ApiError("INVALID_ENCRYPTED_PAYLOAD", "Encrypted payload is malformed") from exc
        except DecryptionFailed as exc:
            raise ApiError("DECRYPTION_FAILED", "Failed to decrypt request body") from exc
        except InvalidPayloadFormat as exc:
            raise ApiError("INVALID_PAYLOAD_FORMAT", "Decrypted payload is not valid JSON") from exc
        except EncryptionError as exc:
            raise ApiError("DECRYPTION_FAILED", "Failed to decrypt request body") from exc

    # ── Operations ───────────────────────────────────────────────────

    async def schedule(self, user_id: str, body: Any) -> dict[str, Any]:
        key = self.user_key(user_id)
        payload = self.open_envelope(body, key)
        request = validate_schedule_payload(payload, self._clock())

        if request.uuid and await self._store.get_by_uuid(user_id, request.uuid) is not None:
            raise ApiError(
                "TASK_UUID_CONFLICT",
                "A task with this uuid already exists",
                status_code=409,
                details={"uuid": request.uuid},
            )

        record = await self._store.create(**self._columns_for(user_id, request, key))
        return {
            "id": record.id,
            "uuid": record.uuid,
            "contactName": record.contact_name,
            "messageType": record.message_type,
            "nextSendAt": record.next_send_at.isoformat(),
            "status": record.status,
            "createdAt": record.created_at.isoformat(),
        }

    @staticmethod
    def _columns_for(user_id: str, request: ScheduleRequest, key: bytes) -> dict[str, Any]:
        columns: dict[str, Any] = {
            "user_id": user_id,
            "contact_name": request.contact_name,
            "avatar_url": request.avatar_url,
            "message_type": request.message_type.value,
            "message_subtype": request.message_subtype.value,
            "next_send_at": request.first_send_at,
            "recurrence_type": request.recurrence_type.value,
            "push_subscription": request.push_subscription,
            "status": TaskStatus.PENDING.value,
            "retry_count": 0,
            "meta": request.metadata,
        }
        if request.uuid:
            columns["uuid"] = request.uuid

        content = request.content
        if isinstance(content, FixedContent):
            columns["user_message"] = encrypt_at_rest(content.user_message, key)
        else:
            columns["api_url"] = content.api_url
            columns["api_key"] = encrypt_at_rest(content.api_key, key)
            columns["primary_model"] = content.primary_model
            columns["complete_prompt"] = encrypt_at_rest(content.complete_prompt, key)
        return columns

    async def update(self, user_id: str, task_uuid: str, body: Any) -> dict[str, Any]:
        key = self.user_key(user_id)
        payload = self.open_envelope(body, key) if looks_encrypted(body) else body
        update = validate_update_payload(payload)
        values = self._update_columns(update, key)

        record = await self._store.update_fields(user_id, task_uuid, values)
        if record is None:
            existing = await self._store.get_by_uuid(user_id, task_uuid)
            if existing is None:
                raise _task_not_found()
            raise ApiError(
                "TASK_ALREADY_COMPLETED",
                "Task has already completed or failed and cannot be updated",
                status_code=409,
            )

        return {
            "uuid": record.uuid,
            "updatedFields": _client_field_names(values),
            "updatedAt": record.updated_at.isoformat(),
        }

    @staticmethod
    def _update_columns(update: UpdateRequest, key: bytes) -> dict[str, Any]:
        values: dict[str, Any] = {}
        if update.complete_prompt is not None:
            values["complete_prompt"] = encrypt_at_rest(update.complete_prompt, key)
        if update.user_message is not None:
            values["user_message"] = encrypt_at_rest(update.user_message, key)
        if update.next_send_at is not None:
            values["next_send_at"] = update.next_send_at
        if update.recurrence_type is not None:
            values["recurrence_type"] = update.recurrence_type.value
        if update.avatar_url is not None:
            values["avatar_url"] = update.avatar_url
        if update.metadata is not None:
            values["meta"] = update.metadata
        return values

    async def cancel(self, user_id: str, task_uuid: str) -> dict[str, Any]:
        if not await self._store.delete_for_user(user_id, task_uuid):
            raise _task_not_found()
        return {
            "uuid": task_uuid,
            "message": "Task cancelled",
            "deletedAt": self._clock().isoformat(),
        }

    async def list_tasks(
        self,
        user_id: str,
        *,
        status: Optional[str] = None,
        contact_name: Optional[str] = None,
        message_subtype: Optional[str] = None,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> dict[str, Any]:
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        offset = max(0, offset)
        records, total = await self._store.list_for_user(
            user_id,
            status=status,
            contact_name=contact_name,
            message_subtype=message_subtype,
            limit=limit,
            offset=offset,
        )
        return {
            "tasks": [record.to_summary() for record in records],
            "pagination": {
                "total": total,
                "limit": limit,
                "offset": offset,
                "hasMore": offset + len(records) < total,
            },
        }


_CLIENT_NAMES = {
    "complete_prompt": "completePrompt",
    "user_message": "userMessage",
    "next_send_at": "nextSendAt",
    "recurrence_type": "recurrenceType",
    "avatar_url": "avatarUrl",
    "meta": "metadata",
}


def _client_field_names(values: dict[str, Any]) -> list[str]:
    return [_CLIENT_NAMES[column] for column in values]


def _task_not_found() -> ApiError:
    return ApiError("TASK_NOT_FOUND", "Task does not exist or has been deleted", status_code=404)
