"""Admin endpoints for reading the security audit trail."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from docarchive.api.dependencies import Principal, get_audit_service, require_permission
from docarchive.models.auth import SecurityEventPage
from docarchive.models.user import SecurityEvent, SecurityEventType
from docarchive.services.audit_service import DEFAULT_PAGE_SIZE, AuditService

router = APIRouter(prefix="/api/admin/audit", tags=["Audit"])

view_audit_logs = require_permission("ViewAuditLogs")


@router.get("")
async def list_audit_logs(
    page: int = Query(default=1),
    page_size: int = Query(default=DEFAULT_PAGE_SIZE),
    event_type: Optional[SecurityEventType] = Query(default=None),
    user_id: Optional[UUID] = Query(default=None),
    from_date: Optional[datetime] = Query(default=None),
    to_date: Optional[datetime] = Query(default=None),
    principal: Principal = Depends(view_audit_logs),
    audit: AuditService = Depends(get_audit_service),
) -> SecurityEventPage:
    """Page through security events, newest first, with optional filters."""
    return await audit.list_events(
        page=page,
        page_size=page_size,
        event_type=event_type,
        user_id=user_id,
        from_date=from_date,
        to_date=to_date,
    )


@router.get("/user/{user_id}")
async def list_user_audit_logs(
    user_id: UUID,
    principal: Principal = Depends(view_audit_logs),
    audit: AuditService = Depends(get_audit_service),
) -> list[SecurityEvent]:
    """All security events recorded for one user, newest first."""
    return await audit.list_user_events(user_id)
