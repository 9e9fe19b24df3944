"""Append-only security audit trail.

Writes never fail the calling operation: storage errors are logged and
swallowed. Each write runs as its own task, so a caller that is cancelled
while the write is in flight does not abort it.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID, uuid4

import structlog

from docarchive.models.auth import SecurityEventPage
from docarchive.models.user import SecurityEvent, SecurityEventType
from docarchive.services.credential_store import CredentialStore

logger = structlog.get_logger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100
USER_EVENTS_LIMIT = 1000

# Module-level tracking of in-flight audit writes
_pending_writes: set[asyncio.Task] = set()


async def await_pending_audit_writes(timeout: float = 5.0) -> None:
    """Wait for in-flight audit writes to finish.

    Called during application shutdown.

    Args:
        timeout: Maximum seconds to wait
    """
    if not _pending_writes:
        return

    logger.info("draining_audit_writes", count=len(_pending_writes))
    try:
        await asyncio.wait_for(
            asyncio.gather(*_pending_writes, return_exceptions=True),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        logger.warning("audit_writes_timeout", remaining=len(_pending_writes))


class AuditService:
    """Records SecurityEvents through the credential store."""

    def __init__(self, store: CredentialStore):
        self.store = store

    async def record(
        self,
        event_type: SecurityEventType,
        *,
        success: bool,
        user_id: Optional[UUID] = None,
        user_email: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> SecurityEvent:
        """Build and persist one audit event.

        Returns the event whether or not it could be stored.
        """
        event = SecurityEvent(
            id=uuid4(),
            event_type=event_type,
            user_id=user_id,
            user_email=user_email,
            ip_address=ip_address,
            user_agent=user_agent,
            success=success,
            details=details or {},
            timestamp=datetime.now(timezone.utc),
        )

        task = asyncio.ensure_future(self._write(event))
        _pending_writes.add(task)
        task.add_done_callback(_pending_writes.discard)

        await asyncio.shield(task)
        return event

    async def _write(self, event: SecurityEvent) -> None:
        try:
            await self.store.insert_security_event(event)
        except Exception as e:
            logger.error(
                "security_event_write_failed",
                event_type=event.event_type.value,
                event_id=str(event.id),
                user_id=str(event.user_id) if event.user_id else None,
                error=str(e),
            )
            return

        logger.info(
            "security_event_recorded",
            event_type=event.event_type.value,
            user_id=str(event.user_id) if event.user_id else None,
            success=event.success,
        )

    async def list_events(
        self,
        *,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
        event_type: Optional[SecurityEventType] = None,
        user_id: Optional[UUID] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
    ) -> SecurityEventPage:
        """Return one page of the audit trail, newest first.

        Out-of-range paging falls back to page 1 and the default page size.
        """
        if page < 1:
            page = 1
        if page_size < 1 or page_size > MAX_PAGE_SIZE:
            page_size = DEFAULT_PAGE_SIZE

        filters = dict(
            event_type=event_type,
            user_id=user_id,
            from_date=from_date,
            to_date=to_date,
        )
        total = await self.store.count_security_events(**filters)
        items = await self.store.list_security_events(
            **filters,
            limit=page_size,
            offset=(page - 1) * page_size,
        )
        return SecurityEventPage(
            items=items,
            page=page,
            page_size=page_size,
            total_count=total,
        )

    async def list_user_events(self, user_id: UUID, limit: int = USER_EVENTS_LIMIT) -> list[SecurityEvent]:
        """All recorded events for one identity, newest first."""
        return await self.store.list_security_events(user_id=user_id, limit=limit)
