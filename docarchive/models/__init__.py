"""Models package exports."""

from docarchive.models.auth import AuthTokens, IdentitySummary
from docarchive.models.results import AuthResult, Failure, FailureKind, Ok
from docarchive.models.user import (
    Identity,
    PasswordResetRequest,
    Role,
    SecurityEvent,
    SecurityEventType,
    UserSession,
)

__all__ = [
    "AuthResult",
    "AuthTokens",
    "Failure",
    "FailureKind",
    "Identity",
    "IdentitySummary",
    "Ok",
    "PasswordResetRequest",
    "Role",
    "SecurityEvent",
    "SecurityEventType",
    "UserSession",
]
