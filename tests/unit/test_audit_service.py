"""Unit tests for AuditService: recording, failure isolation and paging."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest

from docarchive.models.user import SecurityEventType
from docarchive.services import audit_service
from docarchive.services.audit_service import (
    DEFAULT_PAGE_SIZE,
    AuditService,
    await_pending_audit_writes,
)


class TestRecord:

    async def test_record_persists_event(self, audit, store):
        user_id = uuid4()
        event = await audit.record(
            SecurityEventType.LOGIN,
            success=True,
            user_id=user_id,
            user_email="dave@example.com",
            ip_address="198.51.100.1",
            user_agent="curl/8",
            details={"session_id": "abc"},
        )

        assert store.events == [event]
        assert event.event_type == SecurityEventType.LOGIN
        assert event.user_id == user_id
        assert event.success is True
        assert event.details == {"session_id": "abc"}
        assert event.timestamp.tzinfo is not None

    async def test_record_without_identity(self, audit, store):
        event = await audit.record(SecurityEventType.FAILED_LOGIN, success=False)
        assert event.user_id is None
        assert event.details == {}
        assert len(store.events) == 1

    async def test_storage_failure_is_swallowed(self, audit, store):
        store.fail_event_writes = True
        event = await audit.record(SecurityEventType.LOGOUT, success=True)
        assert event.event_type == SecurityEventType.LOGOUT
        assert store.events == []

    async def test_write_survives_caller_cancellation(self, store):
        gate = asyncio.Event()
        written = []

        async def slow_insert(event):
            await gate.wait()
            written.append(event)

        store.insert_security_event = slow_insert
        audit = AuditService(store)

        caller = asyncio.ensure_future(audit.record(SecurityEventType.LOGIN, success=True))
        await asyncio.sleep(0)
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller

        gate.set()
        await await_pending_audit_writes(timeout=1.0)
        assert len(written) == 1

    async def test_pending_writes_are_tracked_until_done(self, store):
        gate = asyncio.Event()

        async def slow_insert(event):
            await gate.wait()

        store.insert_security_event = slow_insert
        audit = AuditService(store)

        caller = asyncio.ensure_future(audit.record(SecurityEventType.LOGIN, success=True))
        await asyncio.sleep(0)
        assert len(audit_service._pending_writes) == 1

        gate.set()
        await caller
        assert len(audit_service._pending_writes) == 0

    async def test_drain_with_nothing_pending(self):
        await await_pending_audit_writes(timeout=0.1)


class TestListEvents:

    @pytest.fixture
    async def seeded(self, store):
        now = datetime.now(timezone.utc)
        alice, bob = uuid4(), uuid4()
        audit = AuditService(store)
        for i in range(5):
            await audit.record(SecurityEventType.LOGIN, success=True, user_id=alice)
        await audit.record(SecurityEventType.FAILED_LOGIN, success=False, user_id=bob)
        await audit.record(SecurityEventType.LOGOUT, success=True, user_id=alice)
        # spread timestamps so ordering is deterministic
        for offset, event in enumerate(list(store.events)):
            store.events[offset] = event.model_copy(
                update={"timestamp": now - timedelta(minutes=len(store.events) - offset)}
            )
        return {"alice": alice, "bob": bob, "now": now}

    async def test_newest_first(self, audit, seeded):
        page = await audit.list_events()
        timestamps = [e.timestamp for e in page.items]
        assert timestamps == sorted(timestamps, reverse=True)
        assert page.items[0].event_type == SecurityEventType.LOGOUT
        assert page.total_count == 7

    async def test_filters(self, audit, seeded):
        page = await audit.list_events(event_type=SecurityEventType.LOGIN)
        assert page.total_count == 5

        page = await audit.list_events(user_id=seeded["bob"])
        assert [e.event_type for e in page.items] == [SecurityEventType.FAILED_LOGIN]

        page = await audit.list_events(from_date=seeded["now"] - timedelta(minutes=2))
        assert page.total_count == 2

    async def test_paging(self, audit, seeded):
        first = await audit.list_events(page=1, page_size=3)
        second = await audit.list_events(page=2, page_size=3)
        third = await audit.list_events(page=3, page_size=3)

        assert [len(p.items) for p in (first, second, third)] == [3, 3, 1]
        ids = {e.id for p in (first, second, third) for e in p.items}
        assert len(ids) == 7

    @pytest.mark.parametrize("page, page_size", [(0, 10), (-3, 0), (1, 101), (1, -1)])
    async def test_out_of_range_paging_falls_back(self, audit, seeded, page, page_size):
        result = await audit.list_events(page=page, page_size=page_size)
        assert result.page >= 1
        assert 1 <= result.page_size <= 100
        if page_size < 1 or page_size > 100:
            assert result.page_size == DEFAULT_PAGE_SIZE

    async def test_list_user_events(self, audit, seeded):
        events = await audit.list_user_events(seeded["alice"])
        assert len(events) == 6
        assert all(e.user_id == seeded["alice"] for e in events)

    async def test_list_events_passes_offset_to_store(self):
        store = AsyncMock()
        store.count_security_events.return_value = 0
        store.list_security_events.return_value = []

        await AuditService(store).list_events(page=3, page_size=10)

        kwargs = store.list_security_events.call_args.kwargs
        assert kwargs["limit"] == 10
        assert kwargs["offset"] == 20
