"""Persistent task store backed by SQLAlchemy.

Each method opens its own transactional session, so concurrent dispatcher
workers never share a session and every write is scoped to a single row.
"""

from __future__ import annotations

import datetime as dt
from typing import Any, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reistandard.database import get_session_factory, session_scope
from reistandard.logging_config import get_logger
from reistandard.modules.scheduler.models import (
    ScheduledMessage,
    TaskSnapshot,
    TaskStatus,
    utcnow,
)

logger = get_logger(__name__)

# Columns an update request may touch.
UPDATABLE_COLUMNS = frozenset(
    {"complete_prompt", "user_message", "next_send_at", "recurrence_type", "avatar_url", "meta"}
)


class TaskStore:
    """Read/write access to ``scheduled_messages``."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None) -> None:
        self._factory = session_factory

    def _session(self):
        if self._factory is None:
            self._factory = get_session_factory()
        return session_scope(self._factory)

    # ── Request-side operations ──────────────────────────────────────

    async def create(self, **fields: Any) -> ScheduledMessage:
        """Insert a new pending task and return it with store-assigned fields."""
        record = ScheduledMessage(**fields)
        async with self._session() as session:
            session.add(record)
            await session.flush()
            await session.refresh(record)
        logger.info("task_created", task_id=record.id, uuid=record.uuid, message_type=record.message_type)
        return record

    async def get_by_uuid(self, user_id: str, task_uuid: str) -> Optional[ScheduledMessage]:
        async with self._session() as session:
            result = await session.execute(
                select(ScheduledMessage).where(
                    ScheduledMessage.user_id == user_id,
                    ScheduledMessage.uuid == task_uuid,
                )
            )
            return result.scalar_one_or_none()

    async def update_fields(
        self, user_id: str, task_uuid: str, values: dict[str, Any]
    ) -> Optional[ScheduledMessage]:
        """Apply ``values`` to the caller's task if it is still pending.

        Returns the updated record, or None when no pending task matched.
        """
        unknown = set(values) - UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"columns not updatable: {sorted(unknown)}")

        async with self._session() as session:
            result = await session.execute(
                select(ScheduledMessage).where(
                    ScheduledMessage.user_id == user_id,
                    ScheduledMessage.uuid == task_uuid,
                    ScheduledMessage.status == TaskStatus.PENDING.value,
                )
            )
            record = result.scalar_one_or_none()
            if record is None:
                return None
            for column, value in values.items():
                setattr(record, column, value)
            record.updated_at = utcnow()
        logger.info("task_updated", uuid=task_uuid, fields=sorted(values))
        return record

    async def delete_for_user(self, user_id: str, task_uuid: str) -> bool:
        async with self._session() as session:
            result = await session.execute(
                delete(ScheduledMessage).where(
                    ScheduledMessage.user_id == user_id,
                    ScheduledMessage.uuid == task_uuid,
                )
            )
        deleted = (result.rowcount or 0) > 0
        if deleted:
            logger.info("task_cancelled", uuid=task_uuid)
        return deleted

    async def list_for_user(
        self,
        user_id: str,
        *,
        status: Optional[str] = None,
        contact_name: Optional[str] = None,
        message_subtype: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[ScheduledMessage], int]:
        """Return one page of the user's tasks and the total match count."""
        conditions = [ScheduledMessage.user_id == user_id]
        if status:
            conditions.append(ScheduledMessage.status == status)
        if contact_name:
            conditions.append(ScheduledMessage.contact_name == contact_name)
        if message_subtype:
            conditions.append(ScheduledMessage.message_subtype == message_subtype)

        async with self._session() as session:
            total = await session.scalar(
                select(func.count()).select_from(ScheduledMessage).where(*conditions)
            )
            result = await session.execute(
                select(ScheduledMessage)
                .where(*conditions)
                .order_by(ScheduledMessage.next_send_at.asc(), ScheduledMessage.id.asc())
                .limit(limit)
                .offset(offset)
            )
            return list(result.scalars().all()), int(total or 0)

    # ── Dispatcher-side operations ───────────────────────────────────

    async def fetch_due(self, now: dt.datetime, limit: int) -> list[TaskSnapshot]:
        """Pending tasks with ``next_send_at <= now``, earliest first."""
        async with self._session() as session:
            result = await session.execute(
                select(ScheduledMessage)
                .where(
                    ScheduledMessage.status == TaskStatus.PENDING.value,
                    ScheduledMessage.next_send_at <= now,
                )
                .order_by(ScheduledMessage.next_send_at.asc(), ScheduledMessage.id.asc())
                .limit(limit)
            )
            return [TaskSnapshot.from_record(rec) for rec in result.scalars().all()]

    async def delete(self, task_id: int) -> bool:
        async with self._session() as session:
            result = await session.execute(
                delete(ScheduledMessage).where(ScheduledMessage.id == task_id)
            )
        return (result.rowcount or 0) > 0

    async def reschedule_recurring(self, task_id: int, next_send_at: dt.datetime) -> None:
        await self._update_pending_row(
            task_id, next_send_at=next_send_at, retry_count=0, failure_reason=None,
        )

    async def schedule_retry(self, task_id: int, next_send_at: dt.datetime, retry_count: int) -> None:
        await self._update_pending_row(task_id, next_send_at=next_send_at, retry_count=retry_count)

    async def mark_failed(self, task_id: int, reason: str) -> None:
        await self._update_pending_row(
            task_id, status=TaskStatus.FAILED.value, failure_reason=reason,
        )

    async def _update_pending_row(self, task_id: int, **values: Any) -> None:
        # A failed row is terminal; the status guard keeps it that way.
        values["updated_at"] = utcnow()
        async with self._session() as session:
            await session.execute(
                update(ScheduledMessage)
                .where(
                    ScheduledMessage.id == task_id,
                    ScheduledMessage.status == TaskStatus.PENDING.value,
                )
                .values(**values)
            )

    async def purge_finished(self, older_than: dt.datetime) -> int:
        """Delete sent/failed tasks last touched before ``older_than``."""
        async with self._session() as session:
            result = await session.execute(
                delete(ScheduledMessage).where(
                    ScheduledMessage.status.in_([TaskStatus.SENT.value, TaskStatus.FAILED.value]),
                    ScheduledMessage.updated_at < older_than,
                )
            )
        purged = result.rowcount or 0
        if purged:
            logger.info("finished_tasks_purged", count=purged)
        return purged
