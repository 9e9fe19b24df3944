"""Auth request and response models with validation."""

import re
from datetime import date, datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator

from docarchive.models.user import SecurityEvent

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_]+$")
PHONE_PATTERN = re.compile(r"^\+?[0-9]{10,15}$")

# bcrypt only looks at the first 72 bytes
MAX_PASSWORD_BYTES = 72
MINIMUM_AGE_YEARS = 18


def check_password_strength(value: str) -> str:
    """Apply the archive password policy, returning the password unchanged."""
    if len(value) < 8:
        raise ValueError("Password must be at least 8 characters")
    if len(value.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValueError(f"Password must not exceed {MAX_PASSWORD_BYTES} bytes")
    if not re.search(r"[A-Z]", value):
        raise ValueError("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", value):
        raise ValueError("Password must contain at least one lowercase letter")
    if not re.search(r"[0-9]", value):
        raise ValueError("Password must contain at least one digit")
    if not re.search(r"[^a-zA-Z0-9]", value):
        raise ValueError("Password must contain at least one special character")
    return value


def _years_between(born: date, today: date) -> int:
    years = today.year - born.year
    if (today.month, today.day) < (born.month, born.day):
        years -= 1
    return years


class RegisterRequest(BaseModel):
    """New account registration.

    Attributes:
        email: Unique email address (max 200 chars)
        username: Unique handle (3-50 chars, letters, digits, underscore)
        password: Password satisfying the archive password policy
        confirm_password: Must equal password
    """

    email: str = Field(..., max_length=200)
    username: str = Field(..., min_length=3, max_length=50)
    password: str
    confirm_password: str
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    date_of_birth: Optional[date] = None
    phone_number: Optional[str] = None

    @field_validator("email")
    @classmethod
    def email_format(cls, v: str) -> str:
        if not EMAIL_PATTERN.match(v):
            raise ValueError("Invalid email format")
        return v

    @field_validator("username")
    @classmethod
    def username_valid_chars(cls, v: str) -> str:
        if not USERNAME_PATTERN.match(v):
            raise ValueError(
                "Username can only contain letters, numbers, and underscores"
            )
        return v

    @field_validator("password")
    @classmethod
    def password_policy(cls, v: str) -> str:
        return check_password_strength(v)

    @field_validator("date_of_birth")
    @classmethod
    def adult_and_not_future(cls, v: Optional[date]) -> Optional[date]:
        if v is None:
            return v
        today = date.today()
        if v >= today:
            raise ValueError("Date of birth cannot be in the future")
        if _years_between(v, today) < MINIMUM_AGE_YEARS:
            raise ValueError(f"You must be at least {MINIMUM_AGE_YEARS} years old")
        return v

    @field_validator("phone_number")
    @classmethod
    def phone_format(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        if not PHONE_PATTERN.match(v):
            raise ValueError("Invalid phone number format")
        return v

    @model_validator(mode="after")
    def passwords_match(self) -> "RegisterRequest":
        if self.password != self.confirm_password:
            raise ValueError("Passwords do not match")
        return self


class LoginRequest(BaseModel):
    """Login credentials. Either the email or the username is accepted."""

    email_or_username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class RefreshRequest(BaseModel):
    """Exchange a (possibly expired) access token and a refresh token for a new pair."""

    access_token: str = Field(..., min_length=1)
    refresh_token: str = Field(..., min_length=1)


class RevokeTokenRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class ForgotPasswordRequest(BaseModel):
    email: str = Field(..., min_length=1, max_length=200)


class ResetPasswordRequest(BaseModel):
    """Complete a password reset with the secret received out of band."""

    token: str = Field(..., min_length=1)
    new_password: str
    confirm_new_password: str

    @field_validator("new_password")
    @classmethod
    def password_policy(cls, v: str) -> str:
        return check_password_strength(v)

    @model_validator(mode="after")
    def passwords_match(self) -> "ResetPasswordRequest":
        if self.new_password != self.confirm_new_password:
            raise ValueError("Passwords do not match")
        return self


class ChangePasswordRequest(BaseModel):
    """Change the password of the authenticated user."""

    current_password: str = Field(..., min_length=1)
    new_password: str
    confirm_new_password: str

    @field_validator("new_password")
    @classmethod
    def password_policy(cls, v: str) -> str:
        return check_password_strength(v)

    @model_validator(mode="after")
    def passwords_match(self) -> "ChangePasswordRequest":
        if self.new_password != self.confirm_new_password:
            raise ValueError("Passwords do not match")
        return self


class IdentitySummary(BaseModel):
    """Compact identity representation for API responses."""

    id: UUID
    email: str
    username: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    roles: list[str] = Field(default_factory=list)


class AuthTokens(BaseModel):
    """Successful authentication response with a token pair.

    Attributes:
        access_token: Short-lived signed JWT
        access_token_expires_at: Expiry of the access token (UTC)
        refresh_token: Long-lived opaque secret, shown only once
        refresh_token_expires_at: Expiry of the refresh session (UTC)
        token_type: Always "bearer"
        user: Summary of the authenticated identity
    """

    access_token: str
    access_token_expires_at: datetime
    refresh_token: str
    refresh_token_expires_at: datetime
    token_type: str = "bearer"
    user: IdentitySummary


class MessageResponse(BaseModel):
    message: str


class SecurityEventPage(BaseModel):
    """One page of the security audit trail, newest first."""

    items: list[SecurityEvent]
    page: int
    page_size: int
    total_count: int
