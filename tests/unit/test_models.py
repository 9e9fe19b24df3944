"""Unit tests for Pydantic models, tagged results and settings."""

from datetime import date, datetime, timedelta, timezone
from uuid import uuid4

import pytest
from pydantic import ValidationError

from docarchive.config import Settings, TokenSettings
from docarchive.models.auth import (
    ChangePasswordRequest,
    RegisterRequest,
    ResetPasswordRequest,
    check_password_strength,
)
from docarchive.models.results import (
    Failure,
    FailureKind,
    Ok,
    conflict,
    invalid_or_expired,
    not_found,
    unauthenticated,
)
from docarchive.models.user import Identity, PasswordResetRequest, UserSession

PASSWORD = "Str0ng!Passw0rd"


def _registration(**overrides):
    fields = dict(
        email="lee@example.com",
        username="lee_1",
        password=PASSWORD,
        confirm_password=PASSWORD,
    )
    fields.update(overrides)
    return fields


class TestPasswordPolicy:

    def test_accepts_strong_password(self):
        assert check_password_strength(PASSWORD) == PASSWORD

    @pytest.mark.parametrize(
        "password, message",
        [
            ("Sh0rt!", "at least 8"),
            ("nouppercase1!", "uppercase"),
            ("NOLOWERCASE1!", "lowercase"),
            ("NoDigitsHere!", "digit"),
            ("NoSpecial123", "special"),
            ("Aa1!" + "x" * 69, "72 bytes"),
        ],
    )
    def test_rejects(self, password, message):
        with pytest.raises(ValueError, match=message):
            check_password_strength(password)

    def test_multibyte_characters_count_as_bytes(self):
        password = "Aa1!" + "é" * 35
        assert len(password) < 72
        with pytest.raises(ValueError):
            check_password_strength(password)


class TestRegisterRequest:

    def test_valid(self):
        request = RegisterRequest(
            **_registration(phone_number="+15551234567", date_of_birth="1985-02-03")
        )
        assert request.username == "lee_1"
        assert request.date_of_birth == date(1985, 2, 3)

    def test_blank_phone_becomes_none(self):
        assert RegisterRequest(**_registration(phone_number="  ")).phone_number is None

    def test_passwords_must_match(self):
        with pytest.raises(ValidationError, match="Passwords do not match"):
            RegisterRequest(**_registration(confirm_password="Other!Passw0rd"))

    def test_minor_rejected(self):
        dob = date.today().replace(year=date.today().year - 10)
        with pytest.raises(ValidationError, match="18"):
            RegisterRequest(**_registration(date_of_birth=dob))

    @pytest.mark.parametrize(
        "overrides",
        [
            {"email": "missing-at.example.com"},
            {"email": "a" * 195 + "@x.com"},
            {"username": "xy"},
            {"username": "u" * 51},
            {"username": "bad-dash"},
            {"phone_number": "phone"},
        ],
    )
    def test_invalid_fields(self, overrides):
        with pytest.raises(ValidationError):
            RegisterRequest(**_registration(**overrides))


class TestPasswordChangeModels:

    def test_reset_request_mismatch(self):
        with pytest.raises(ValidationError):
            ResetPasswordRequest(
                token="t", new_password=PASSWORD, confirm_new_password="Other!Passw0rd"
            )

    def test_change_request_policy(self):
        with pytest.raises(ValidationError):
            ChangePasswordRequest(
                current_password="anything", new_password="weak", confirm_new_password="weak"
            )


class TestRecords:

    def test_identity_can_authenticate(self):
        base = dict(
            id=uuid4(),
            email="m@example.com",
            username="m",
            password_hash="h",
            created_at=datetime.now(timezone.utc),
        )
        assert Identity(**base).can_authenticate is True
        assert Identity(**base, is_active=False).can_authenticate is False
        assert Identity(**base, is_deleted=True).can_authenticate is False

    def test_session_activity(self):
        now = datetime.now(timezone.utc)
        session = UserSession(
            id=uuid4(),
            user_id=uuid4(),
            refresh_token_hash="h",
            created_at=now,
            expires_at=now + timedelta(minutes=1),
        )
        assert session.is_active_at(now) is True
        assert session.is_active_at(now + timedelta(minutes=1)) is False
        assert session.model_copy(update={"is_revoked": True}).is_active_at(now) is False

    def test_reset_request_open(self):
        now = datetime.now(timezone.utc)
        request = PasswordResetRequest(
            id=uuid4(),
            user_id=uuid4(),
            token_hash="h",
            created_at=now,
            expires_at=now + timedelta(hours=1),
        )
        assert request.is_open_at(now) is True
        assert request.model_copy(update={"is_used": True}).is_open_at(now) is False


class TestResults:

    def test_ok(self):
        result = Ok(5)
        assert result.ok is True
        assert result.value == 5

    @pytest.mark.parametrize(
        "factory, kind",
        [
            (conflict, FailureKind.CONFLICT),
            (unauthenticated, FailureKind.UNAUTHENTICATED),
            (not_found, FailureKind.NOT_FOUND),
            (invalid_or_expired, FailureKind.INVALID_OR_EXPIRED),
        ],
    )
    def test_failure_factories(self, factory, kind):
        failure = factory("why")
        assert failure == Failure(kind, "why")
        assert failure.ok is False


class TestSettings:

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("JWT_SECRET", raising=False)
        settings = Settings(_env_file=None)
        assert settings.jwt_issuer == "DocumentArchive"
        assert settings.jwt_audience == "DocumentArchiveClients"
        assert settings.access_token_expire_minutes == 15
        assert settings.refresh_token_expire_days == 7
        assert settings.password_reset_expire_hours == 24
        assert settings.default_role == "User"

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30")
        monkeypatch.setenv("JWT_SECRET", "from-env")
        settings = Settings(_env_file=None)
        token_settings = TokenSettings.from_settings(settings)
        assert token_settings.access_token_expire_minutes == 30
        assert token_settings.secret_key == "from-env"
        assert token_settings.algorithm == "HS256"

    def test_token_settings_frozen(self):
        token_settings = TokenSettings(secret_key="k")
        with pytest.raises(ValidationError):
            token_settings.secret_key = "other"
