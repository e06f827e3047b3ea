"""Tests for the SQLAlchemy task store."""

from __future__ import annotations

import datetime as dt

import pytest

from reistandard.modules.scheduler.models import (
    MessageType,
    RecurrenceType,
    TaskStatus,
)

NOW = dt.datetime(2026, 3, 1, 9, 0, tzinfo=dt.UTC)


async def _create(store, subscription, **overrides):
    fields = {
        "user_id": "user-1",
        "contact_name": "Rei",
        "message_type": MessageType.FIXED.value,
        "user_message": "aa:bb:cc",
        "next_send_at": NOW,
        "recurrence_type": RecurrenceType.NONE.value,
        "push_subscription": subscription,
    }
    fields.update(overrides)
    return await store.create(**fields)


class TestCreateAndLookup:
    """Tests for request-side operations."""

    @pytest.mark.asyncio
    async def test_create_assigns_defaults(self, store, subscription) -> None:
        record = await _create(store, subscription)
        assert record.id is not None
        assert len(record.uuid) == 36
        assert record.status == TaskStatus.PENDING
        assert record.retry_count == 0
        assert record.message_subtype == "chat"
        assert record.meta == {}
        assert record.next_send_at == NOW

    @pytest.mark.asyncio
    async def test_get_by_uuid_is_scoped_to_user(self, store, subscription) -> None:
        record = await _create(store, subscription)
        assert (await store.get_by_uuid("user-1", record.uuid)).id == record.id
        assert await store.get_by_uuid("user-2", record.uuid) is None

    @pytest.mark.asyncio
    async def test_update_fields_on_pending_task(self, store, subscription) -> None:
        record = await _create(store, subscription)
        later = NOW + dt.timedelta(hours=3)
        updated = await store.update_fields(
            "user-1", record.uuid, {"next_send_at": later, "meta": {"mood": "happy"}}
        )
        assert updated.next_send_at == later
        assert updated.meta == {"mood": "happy"}

    @pytest.mark.asyncio
    async def test_update_fields_skips_failed_task(self, store, subscription) -> None:
        record = await _create(store, subscription)
        await store.mark_failed(record.id, "boom")
        assert await store.update_fields("user-1", record.uuid, {"avatar_url": "https://x.y/a.png"}) is None

    @pytest.mark.asyncio
    async def test_update_fields_rejects_unknown_columns(self, store, subscription) -> None:
        record = await _create(store, subscription)
        with pytest.raises(ValueError):
            await store.update_fields("user-1", record.uuid, {"status": "sent"})

    @pytest.mark.asyncio
    async def test_delete_for_user(self, store, subscription) -> None:
        record = await _create(store, subscription)
        assert await store.delete_for_user("user-2", record.uuid) is False
        assert await store.delete_for_user("user-1", record.uuid) is True
        assert await store.get_by_uuid("user-1", record.uuid) is None

    @pytest.mark.asyncio
    async def test_list_for_user_filters_and_paginates(self, store, subscription) -> None:
        for hour in range(5):
            await _create(store, subscription, next_send_at=NOW + dt.timedelta(hours=hour))
        await _create(store, subscription, contact_name="Asuka")
        await _create(store, subscription, user_id="user-2")

        page, total = await store.list_for_user("user-1", contact_name="Rei", limit=2, offset=1)
        assert total == 5
        assert [r.next_send_at for r in page] == [
            NOW + dt.timedelta(hours=1),
            NOW + dt.timedelta(hours=2),
        ]

        _, everything = await store.list_for_user("user-1")
        assert everything == 6


class TestDispatcherOperations:
    """Tests for the operations the dispatcher issues."""

    @pytest.mark.asyncio
    async def test_fetch_due_orders_and_limits(self, store, subscription) -> None:
        late = await _create(store, subscription, next_send_at=NOW - dt.timedelta(minutes=1))
        early = await _create(store, subscription, next_send_at=NOW - dt.timedelta(hours=1))
        await _create(store, subscription, next_send_at=NOW + dt.timedelta(minutes=1))
        failed = await _create(store, subscription, next_send_at=NOW - dt.timedelta(days=1))
        await store.mark_failed(failed.id, "gone")

        due = await store.fetch_due(NOW, limit=50)
        assert [t.id for t in due] == [early.id, late.id]
        assert due[0].message_type == MessageType.FIXED
        assert due[0].next_send_at.tzinfo is not None

        assert [t.id for t in await store.fetch_due(NOW, limit=1)] == [early.id]

    @pytest.mark.asyncio
    async def test_fetch_due_includes_exact_now(self, store, subscription) -> None:
        record = await _create(store, subscription, next_send_at=NOW)
        assert [t.id for t in await store.fetch_due(NOW, limit=10)] == [record.id]

    @pytest.mark.asyncio
    async def test_reschedule_recurring_resets_retries(self, store, subscription) -> None:
        record = await _create(store, subscription, recurrence_type="daily", retry_count=2)
        next_time = NOW + dt.timedelta(days=1)
        await store.reschedule_recurring(record.id, next_time)

        reloaded = await store.get_by_uuid("user-1", record.uuid)
        assert reloaded.next_send_at == next_time
        assert reloaded.retry_count == 0
        assert reloaded.status == TaskStatus.PENDING

    @pytest.mark.asyncio
    async def test_schedule_retry(self, store, subscription) -> None:
        record = await _create(store, subscription)
        retry_at = NOW + dt.timedelta(minutes=2)
        await store.schedule_retry(record.id, retry_at, 1)

        reloaded = await store.get_by_uuid("user-1", record.uuid)
        assert reloaded.next_send_at == retry_at
        assert reloaded.retry_count == 1

    @pytest.mark.asyncio
    async def test_failed_is_terminal(self, store, subscription) -> None:
        record = await _create(store, subscription, retry_count=3)
        await store.mark_failed(record.id, "AI API error: 500")
        await store.schedule_retry(record.id, NOW, 1)

        reloaded = await store.get_by_uuid("user-1", record.uuid)
        assert reloaded.status == TaskStatus.FAILED
        assert reloaded.failure_reason == "AI API error: 500"
        assert reloaded.retry_count == 3

    @pytest.mark.asyncio
    async def test_delete(self, store, subscription) -> None:
        record = await _create(store, subscription)
        assert await store.delete(record.id) is True
        assert await store.delete(record.id) is False

    @pytest.mark.asyncio
    async def test_purge_finished_keeps_pending(self, store, subscription) -> None:
        pending = await _create(store, subscription)
        failed = await _create(store, subscription)
        await store.mark_failed(failed.id, "gone")

        cutoff = dt.datetime.now(dt.UTC) + dt.timedelta(seconds=5)
        assert await store.purge_finished(cutoff) == 1
        assert await store.get_by_uuid("user-1", pending.uuid) is not None
        assert await store.get_by_uuid("user-1", failed.uuid) is None

    @pytest.mark.asyncio
    async def test_purge_finished_respects_cutoff(self, store, subscription) -> None:
        failed = await _create(store, subscription)
        await store.mark_failed(failed.id, "gone")
        assert await store.purge_finished(dt.datetime.now(dt.UTC) - dt.timedelta(days=7)) == 0
