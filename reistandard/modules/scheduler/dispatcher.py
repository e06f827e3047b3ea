"""Delivery engine: turn a batch of due tasks into push notifications.

One pass fetches up to ``batch_size`` due tasks and runs a worker per task,
never more than ``max_concurrent`` at once. A freed slot is refilled as soon
as any worker finishes. Each worker resolves the text, splits it into
sentences and pushes them in order; the pass then applies the outcome:

* success, one-off task: the row is deleted
* success, recurring task: ``next_send_at`` moves one interval past the
  previous scheduled time and ``retry_count`` resets
* failure below ``max_retries``: retried after ``(retry_count + 1) * retry_step``
* failure at ``max_retries``: the row is marked failed for good

A failure never leaves its own task; other workers are unaffected.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from reistandard.config import Settings, get_settings
from reistandard.errors import ConfigurationError
from reistandard.logging_config import get_logger
from reistandard.modules.llm.generator import ContentError, ContentGenerator
from reistandard.modules.messaging.push import PushSender, VapidConfig, WebPushSender
from reistandard.modules.messaging.splitter import split_sentences
from reistandard.modules.scheduler.models import RecurrenceType, TaskSnapshot, utcnow
from reistandard.modules.scheduler.store import TaskStore
from reistandard.security.encryption import derive_user_key

logger = get_logger(__name__)

PERMANENTLY_FAILED = "permanently_failed"


def _iso(value: dt.datetime) -> str:
    return value.astimezone(dt.UTC).isoformat().replace("+00:00", "Z")


# ── Report ───────────────────────────────────────────────────────────


@dataclass
class FailedTaskRecord:
    task_id: int
    reason: str
    retry_count: int
    next_retry_at: Optional[dt.datetime] = None
    permanently_failed: bool = False

    def to_dict(self) -> dict[str, Any]:
        record: dict[str, Any] = {
            "taskId": self.task_id,
            "reason": self.reason,
            "retryCount": self.retry_count,
        }
        if self.permanently_failed:
            record["status"] = PERMANENTLY_FAILED
        elif self.next_retry_at is not None:
            record["nextRetryAt"] = _iso(self.next_retry_at)
        return record


@dataclass
class RunReport:
    """Summary of one dispatcher pass."""

    total_tasks: int = 0
    success_count: int = 0
    failed_count: int = 0
    deleted_once_off_tasks: int = 0
    updated_recurring_tasks: int = 0
    failed_tasks: list[FailedTaskRecord] = field(default_factory=list)
    processed_at: Optional[dt.datetime] = None
    execution_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalTasks": self.total_tasks,
            "successCount": self.success_count,
            "failedCount": self.failed_count,
            "processedAt": _iso(self.processed_at) if self.processed_at else None,
            "executionTime": self.execution_ms,
            "details": {
                "deletedOnceOffTasks": self.deleted_once_off_tasks,
                "updatedRecurringTasks": self.updated_recurring_tasks,
                "failedTasks": [record.to_dict() for record in self.failed_tasks],
            },
        }


@dataclass
class _Outcome:
    """What one worker did to its task, folded into the report by the pass."""

    task_id: int
    delivered: bool
    deleted: bool = False
    rescheduled: bool = False
    failure: Optional[FailedTaskRecord] = None


# ── Payload ──────────────────────────────────────────────────────────


def build_push_payload(
    task: TaskSnapshot, message: str, index: int, total: int, now: dt.datetime
) -> dict[str, Any]:
    """Notification body for chunk ``index`` (0-based) of ``total``."""
    return {
        "title": f"From {task.contact_name}",
        "message": message,
        "contactName": task.contact_name,
        "messageId": f"msg_{int(now.timestamp() * 1000)}_{task.id}_{index}",
        "messageIndex": index + 1,
        "totalMessages": total,
        "messageType": task.message_type.value,
        "messageSubtype": task.message_subtype,
        "taskId": task.id,
        "timestamp": _iso(now),
        "source": "scheduled",
        "avatarUrl": task.avatar_url,
        "metadata": task.metadata,
    }


# ── Dispatcher ───────────────────────────────────────────────────────


class Dispatcher:
    """Runs delivery passes over the task store."""

    def __init__(
        self,
        store: TaskStore,
        generator: ContentGenerator,
        sender: PushSender,
        master_secret: str,
        *,
        batch_size: int = 50,
        max_concurrent: int = 8,
        chunk_delay: float = 1.5,
        max_retries: int = 3,
        retry_step: dt.timedelta = dt.timedelta(minutes=2),
        retention: Optional[dt.timedelta] = dt.timedelta(days=7),
        clock: Callable[[], dt.datetime] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self._store = store
        self._generator = generator
        self._sender = sender
        self._master_secret = master_secret
        self._batch_size = batch_size
        self._max_concurrent = max_concurrent
        self._chunk_delay = chunk_delay
        self._max_retries = max_retries
        self._retry_step = retry_step
        self._retention = retention
        self._clock = clock
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        *,
        store: Optional[TaskStore] = None,
        generator: Optional[ContentGenerator] = None,
        sender: Optional[PushSender] = None,
    ) -> "Dispatcher":
        """Wire a dispatcher from configuration.

        Raises ConfigurationError when push credentials are missing.
        """
        settings = settings or get_settings()
        vapid = VapidConfig.from_settings(settings)
        return cls(
            store or TaskStore(),
            generator or ContentGenerator(timeout=settings.completion_timeout_seconds),
            sender or WebPushSender(vapid),
            settings.encryption_key,
            batch_size=settings.dispatch_batch_size,
            max_concurrent=settings.dispatch_max_concurrent,
            chunk_delay=settings.chunk_delay_seconds,
            max_retries=settings.max_retries,
            retry_step=dt.timedelta(minutes=settings.retry_step_minutes),
            retention=dt.timedelta(days=settings.cleanup_retention_days),
        )

    async def run(self) -> RunReport:
        """Process every currently due task once and report the results."""
        if not self._master_secret:
            raise ConfigurationError(
                "ENCRYPTION_CONFIG_ERROR",
                "Master encryption secret is not configured",
                missing=["ENCRYPTION_KEY"],
            )

        started = time.monotonic()
        now = self._clock()
        tasks = await self._store.fetch_due(now, self._batch_size)
        logger.info("dispatch_started", due_tasks=len(tasks), max_concurrent=self._max_concurrent)

        report = RunReport(total_tasks=len(tasks))
        for outcome in await self._run_pool(tasks):
            self._fold(report, outcome)

        await self._purge(now)

        report.processed_at = self._clock()
        report.execution_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "dispatch_finished",
            total=report.total_tasks,
            succeeded=report.success_count,
            failed=report.failed_count,
            execution_ms=report.execution_ms,
        )
        return report

    async def _run_pool(self, tasks: list[TaskSnapshot]) -> list[_Outcome]:
        pending = deque(tasks)
        in_flight: set[asyncio.Task] = set()
        outcomes: list[_Outcome] = []

        while pending or in_flight:
            while pending and len(in_flight) < self._max_concurrent:
                task = pending.popleft()
                in_flight.add(asyncio.create_task(self._process(task), name=f"deliver-{task.id}"))
            done, in_flight = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
            outcomes.extend(worker.result() for worker in done)

        return outcomes

    @staticmethod
    def _fold(report: RunReport, outcome: _Outcome) -> None:
        if outcome.delivered and outcome.failure is None:
            report.success_count += 1
            report.deleted_once_off_tasks += int(outcome.deleted)
            report.updated_recurring_tasks += int(outcome.rescheduled)
            return
        report.failed_count += 1
        if outcome.failure is not None:
            report.failed_tasks.append(outcome.failure)

    # ── Worker ───────────────────────────────────────────────────────

    async def _process(self, task: TaskSnapshot) -> _Outcome:
        try:
            await self._deliver(task)
        except Exception as exc:
            logger.warning(
                "task_delivery_failed",
                task_id=task.id,
                error_type=type(exc).__name__,
                error=str(exc),
                retry_count=task.retry_count,
            )
            return await self._on_failure(task, exc)
        return await self._on_success(task)

    async def _deliver(self, task: TaskSnapshot) -> None:
        key = derive_user_key(self._master_secret, task.user_id)
        text = await self._generator.resolve(task, key)
        chunks = split_sentences(text)
        if not chunks:
            raise ContentError("empty message content")

        total = len(chunks)
        for index, chunk in enumerate(chunks):
            payload = build_push_payload(task, chunk, index, total, self._clock())
            await self._sender.send(task.push_subscription, payload)
            logger.debug("chunk_sent", task_id=task.id, index=index + 1, total=total)
            if index < total - 1:
                await self._sleep(self._chunk_delay)

    async def _on_success(self, task: TaskSnapshot) -> _Outcome:
        interval = task.recurrence_type.interval
        try:
            if task.recurrence_type == RecurrenceType.NONE or interval is None:
                await self._store.delete(task.id)
                logger.info("task_delivered", task_id=task.id, once_off=True)
                return _Outcome(task.id, delivered=True, deleted=True)

            next_send_at = task.next_send_at + interval
            await self._store.reschedule_recurring(task.id, next_send_at)
            logger.info("task_delivered", task_id=task.id, next_send_at=_iso(next_send_at))
            return _Outcome(task.id, delivered=True, rescheduled=True)
        except Exception as exc:
            logger.error("task_state_write_failed", task_id=task.id, error=str(exc))
            failure = FailedTaskRecord(
                task.id, f"state update failed after delivery: {exc}", task.retry_count
            )
            return _Outcome(task.id, delivered=True, failure=failure)

    async def _on_failure(self, task: TaskSnapshot, error: Exception) -> _Outcome:
        reason = str(error) or type(error).__name__
        try:
            if task.retry_count >= self._max_retries:
                await self._store.mark_failed(task.id, reason)
                logger.error("task_permanently_failed", task_id=task.id, retry_count=task.retry_count)
                failure = FailedTaskRecord(
                    task.id, reason, task.retry_count, permanently_failed=True
                )
                return _Outcome(task.id, delivered=False, failure=failure)

            retry_count = task.retry_count + 1
            next_retry_at = self._clock() + retry_count * self._retry_step
            await self._store.schedule_retry(task.id, next_retry_at, retry_count)
            logger.info(
                "task_retry_scheduled",
                task_id=task.id,
                retry_count=retry_count,
                next_retry_at=_iso(next_retry_at),
            )
            failure = FailedTaskRecord(task.id, reason, retry_count, next_retry_at=next_retry_at)
            return _Outcome(task.id, delivered=False, failure=failure)
        except Exception as exc:
            logger.error("task_state_write_failed", task_id=task.id, error=str(exc))
            failure = FailedTaskRecord(
                task.id, f"{reason}; state update failed: {exc}", task.retry_count
            )
            return _Outcome(task.id, delivered=False, failure=failure)

    async def _purge(self, now: dt.datetime) -> None:
        if self._retention is None:
            return
        try:
            await self._store.purge_finished(now - self._retention)
        except Exception as exc:
            logger.error("finished_task_purge_failed", error=str(exc))
