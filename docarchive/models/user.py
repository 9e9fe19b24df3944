"""Identity, session and audit records."""

from datetime import date, datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class Identity(BaseModel):
    """A registered archive user."""

    id: UUID
    email: str
    username: str
    password_hash: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    date_of_birth: Optional[date] = None
    phone_number: Optional[str] = None
    is_active: bool = True
    is_deleted: bool = False
    created_at: datetime
    updated_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None

    @property
    def can_authenticate(self) -> bool:
        return self.is_active and not self.is_deleted


class Role(BaseModel):
    """A named bundle of permissions."""

    id: UUID
    name: str
    description: Optional[str] = None


class UserSession(BaseModel):
    """A refresh session. Only the hash of the refresh secret is kept."""

    id: UUID
    user_id: UUID
    refresh_token_hash: str
    created_at: datetime
    expires_at: datetime
    device_info: Optional[str] = None
    ip_address: Optional[str] = None
    is_revoked: bool = False

    def is_active_at(self, moment: datetime) -> bool:
        return not self.is_revoked and self.expires_at > moment


class PasswordResetRequest(BaseModel):
    """A one-time password reset grant."""

    id: UUID
    user_id: UUID
    token_hash: str
    created_at: datetime
    expires_at: datetime
    is_used: bool = False

    def is_open_at(self, moment: datetime) -> bool:
        return not self.is_used and self.expires_at > moment


class SecurityEventType(str, Enum):
    """Kinds of security-relevant actions recorded in the audit trail."""

    LOGIN = "Login"
    FAILED_LOGIN = "FailedLogin"
    LOGOUT = "Logout"
    REGISTER = "Register"
    PASSWORD_CHANGE = "PasswordChange"
    PASSWORD_RESET = "PasswordReset"
    PASSWORD_RESET_REQUESTED = "PasswordResetRequested"
    EMAIL_CONFIRMED = "EmailConfirmed"
    ROLE_ASSIGNED = "RoleAssigned"
    ROLE_REVOKED = "RoleRevoked"
    TOKEN_REFRESH = "TokenRefresh"
    TOKEN_REVOKE = "TokenRevoke"


class SecurityEvent(BaseModel, frozen=True):
    """An immutable audit trail entry."""

    id: UUID
    event_type: SecurityEventType
    user_id: Optional[UUID] = None
    user_email: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    success: bool
    details: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime
