"""Services package exports."""

from docarchive.services.audit_service import AuditService
from docarchive.services.auth_service import AuthService, ClientInfo
from docarchive.services.logging_service import configure_logging, get_logger

__all__ = [
    "AuditService",
    "AuthService",
    "ClientInfo",
    "configure_logging",
    "get_logger",
]
