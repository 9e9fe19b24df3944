"""Credential lifecycle: registration, login, refresh, logout, revocation and passwords.

Every public operation returns an ``Ok`` or a ``Failure`` and records
exactly one security event. Infrastructure faults are raised instead.

Each operation is split in two. The read phase looks things up and can be
cancelled freely because it changes nothing. The mutating tail runs as a
shielded task: once started, its writes and its audit event complete even
if the caller is cancelled.
"""

import asyncio
import secrets
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Coroutine, Optional, Sequence, TypeVar
from uuid import UUID, uuid4

import structlog

from docarchive.models.auth import AuthTokens, IdentitySummary
from docarchive.models.results import (
    AuthResult,
    Ok,
    conflict,
    invalid_or_expired,
    not_found,
    unauthenticated,
)
from docarchive.models.user import (
    Identity,
    PasswordResetRequest,
    Role,
    SecurityEventType,
    UserSession,
)
from docarchive.services.audit_service import AuditService
from docarchive.services.credential_store import CredentialStore
from docarchive.services.email_service import ResetNotifier
from docarchive.services.errors import ConfigurationError, ConstraintViolation
from docarchive.services.hashing import PasswordHasher, SecretHasher
from docarchive.services.session_service import SessionManager
from docarchive.services.token_service import (
    IssuedAccessToken,
    IssuedRefreshToken,
    TokenIssuer,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

INVALID_CREDENTIALS = "Invalid credentials"
INVALID_REFRESH_TOKEN = "Invalid refresh token"
INVALID_RESET_TOKEN = "Invalid or expired token"

RESET_TOKEN_BYTES = 64

# Module-level tracking of in-flight mutating tails
_pending_commits: set[asyncio.Task] = set()


async def await_pending_commits(timeout: float = 5.0) -> None:
    """Wait for in-flight commits to finish.

    Called during application shutdown, before the pool is closed.

    Args:
        timeout: Maximum seconds to wait
    """
    if not _pending_commits:
        return

    logger.info("draining_auth_commits", count=len(_pending_commits))
    try:
        await asyncio.wait_for(
            asyncio.gather(*_pending_commits, return_exceptions=True),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        logger.warning("auth_commits_timeout", remaining=len(_pending_commits))


def _commit_done(task: asyncio.Task) -> None:
    _pending_commits.discard(task)
    if not task.cancelled() and task.exception() is not None:
        logger.error("auth_commit_failed", error=str(task.exception()))


@dataclass(frozen=True)
class ClientInfo:
    """Where a request came from, recorded on sessions and audit events."""

    device_info: Optional[str] = None
    ip_address: Optional[str] = None


class AuthService:
    """Orchestrates the credential and session lifecycle."""

    def __init__(
        self,
        store: CredentialStore,
        issuer: TokenIssuer,
        sessions: SessionManager,
        audit: AuditService,
        password_hasher: PasswordHasher,
        token_hasher: SecretHasher,
        notifier: ResetNotifier,
        *,
        default_role: str = "User",
    ):
        self.store = store
        self.issuer = issuer
        self.sessions = sessions
        self.audit = audit
        self.password_hasher = password_hasher
        self.token_hasher = token_hasher
        self.notifier = notifier
        self.default_role = default_role

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    async def _commit(self, coro: Coroutine[Any, Any, T]) -> T:
        """Run a mutating tail to completion even if the caller is cancelled."""
        task = asyncio.ensure_future(coro)
        _pending_commits.add(task)
        task.add_done_callback(_commit_done)
        return await asyncio.shield(task)

    async def _audit(
        self,
        event_type: SecurityEventType,
        client: ClientInfo,
        *,
        success: bool,
        user_id: Optional[UUID] = None,
        email: Optional[str] = None,
        **details: Any,
    ) -> None:
        await self.audit.record(
            event_type,
            success=success,
            user_id=user_id,
            user_email=email,
            ip_address=client.ip_address,
            user_agent=client.device_info,
            details=details or None,
        )

    async def _hash_password(self, password: str) -> str:
        return await asyncio.to_thread(self.password_hasher.hash, password)

    async def _verify_password(self, password: str, password_hash: str) -> bool:
        return await asyncio.to_thread(self.password_hasher.verify, password, password_hash)

    async def _resolve_access(self, user_id: UUID) -> tuple[list[str], list[str]]:
        """Current role names and the deduplicated union of their permissions."""
        roles = await self.store.get_role_names(user_id)
        permissions = await self.store.get_permission_names(user_id)
        return roles, sorted(set(permissions))

    @staticmethod
    def _summary(identity: Identity, roles: Sequence[str]) -> IdentitySummary:
        return IdentitySummary(
            id=identity.id,
            email=identity.email,
            username=identity.username,
            first_name=identity.first_name,
            last_name=identity.last_name,
            roles=list(roles),
        )

    def _tokens(
        self,
        identity: Identity,
        roles: Sequence[str],
        access: IssuedAccessToken,
        refresh: IssuedRefreshToken,
    ) -> AuthTokens:
        return AuthTokens(
            access_token=access.token,
            access_token_expires_at=access.expires_at,
            refresh_token=refresh.token,
            refresh_token_expires_at=refresh.expires_at,
            token_type="bearer",
            user=self._summary(identity, roles),
        )

    # ------------------------------------------------------------------
    # registration
    # ------------------------------------------------------------------

    async def register(
        self,
        email: str,
        username: str,
        password: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        date_of_birth: Optional[date] = None,
        phone_number: Optional[str] = None,
        client: ClientInfo = ClientInfo(),
    ) -> AuthResult[IdentitySummary]:
        """Create an identity holding the default role.

        Raises:
            ConfigurationError: If the default role has not been seeded
        """
        if await self.store.email_exists(email):
            await self._audit(
                SecurityEventType.REGISTER, client, success=False, email=email,
                reason="email_taken",
            )
            return conflict("Email already registered")

        if await self.store.username_exists(username):
            await self._audit(
                SecurityEventType.REGISTER, client, success=False, email=email,
                reason="username_taken",
            )
            return conflict("Username already taken")

        role = await self.store.get_role_by_name(self.default_role)
        if role is None:
            raise ConfigurationError(
                f"Default role '{self.default_role}' not found. Ensure seed data is present."
            )

        identity = Identity(
            id=uuid4(),
            email=email,
            username=username,
            password_hash=await self._hash_password(password),
            first_name=first_name,
            last_name=last_name,
            date_of_birth=date_of_birth,
            phone_number=phone_number,
            is_active=True,
            is_deleted=False,
            created_at=datetime.now(timezone.utc),
        )
        return await self._commit(self._complete_registration(identity, role, client))

    async def _complete_registration(
        self, identity: Identity, role: Role, client: ClientInfo
    ) -> AuthResult[IdentitySummary]:
        try:
            await self.store.create_identity(identity, [role.id])
        except ConstraintViolation:
            # lost a race with a concurrent registration
            await self._audit(
                SecurityEventType.REGISTER, client, success=False, email=identity.email,
                reason="duplicate",
            )
            return conflict("Email or username already registered")

        logger.info("user_registered", user_id=str(identity.id), username=identity.username)
        await self._audit(
            SecurityEventType.REGISTER, client, success=True,
            user_id=identity.id, email=identity.email,
        )
        return Ok(self._summary(identity, [role.name]))

    # ------------------------------------------------------------------
    # login / refresh / logout / revoke
    # ------------------------------------------------------------------

    async def login(
        self,
        email_or_username: str,
        password: str,
        *,
        client: ClientInfo = ClientInfo(),
    ) -> AuthResult[AuthTokens]:
        """Authenticate with a password and issue an access + refresh pair.

        Unknown, inactive and deleted identities fail exactly like a wrong
        password, and still pay for one bcrypt verification.
        """
        identity = await self.store.get_identity_by_login(email_or_username)

        if identity is None or not identity.can_authenticate:
            await asyncio.to_thread(self.password_hasher.verify_dummy, password)
            await self._audit(
                SecurityEventType.FAILED_LOGIN, client, success=False,
                user_id=identity.id if identity else None,
                email=email_or_username,
                reason="unknown_identity" if identity is None else "inactive",
            )
            return unauthenticated(INVALID_CREDENTIALS)

        if not await self._verify_password(password, identity.password_hash):
            await self._audit(
                SecurityEventType.FAILED_LOGIN, client, success=False,
                user_id=identity.id, email=identity.email, reason="bad_password",
            )
            return unauthenticated(INVALID_CREDENTIALS)

        roles, permissions = await self._resolve_access(identity.id)
        return await self._commit(self._complete_login(identity, roles, permissions, client))

    async def _complete_login(
        self,
        identity: Identity,
        roles: list[str],
        permissions: list[str],
        client: ClientInfo,
    ) -> AuthResult[AuthTokens]:
        access = self.issuer.issue_access_token(identity, roles, permissions)
        refresh = await self.issuer.issue_refresh_session(
            identity.id, client.device_info, client.ip_address
        )

        logger.info("user_logged_in", user_id=str(identity.id), username=identity.username)
        await self._audit(
            SecurityEventType.LOGIN, client, success=True,
            user_id=identity.id, email=identity.email,
            session_id=str(refresh.session_id),
        )
        return Ok(self._tokens(identity, roles, access, refresh))

    async def refresh(
        self,
        access_token: str,
        refresh_token: str,
        *,
        client: ClientInfo = ClientInfo(),
    ) -> AuthResult[AuthTokens]:
        """Rotate a refresh session and issue a new token pair.

        The access token may be expired but its signature must be valid.
        Roles and permissions are re-read here, so changes since the last
        login take effect.
        """
        try:
            claims = self.issuer.decode_access_token(access_token, verify_expiry=False)
            user_id = UUID(str(claims["sub"]))
        except (ValueError, KeyError) as e:
            await self._audit(
                SecurityEventType.TOKEN_REFRESH, client, success=False,
                reason="invalid_access_token", error=str(e),
            )
            return unauthenticated(INVALID_REFRESH_TOKEN)

        identity = await self.store.get_identity(user_id)
        if identity is None or not identity.can_authenticate:
            await self._audit(
                SecurityEventType.TOKEN_REFRESH, client, success=False,
                user_id=user_id, reason="identity_unavailable",
            )
            return unauthenticated(INVALID_REFRESH_TOKEN)

        session = await self.sessions.validate(user_id, refresh_token)
        if session is None:
            await self._audit(
                SecurityEventType.TOKEN_REFRESH, client, success=False,
                user_id=user_id, email=identity.email, reason="invalid_refresh_token",
            )
            return unauthenticated(INVALID_REFRESH_TOKEN)

        return await self._commit(self._complete_refresh(identity, session, client))

    async def _complete_refresh(
        self, identity: Identity, session: UserSession, client: ClientInfo
    ) -> AuthResult[AuthTokens]:
        refresh = await self.sessions.rotate(session, client.device_info, client.ip_address)
        if refresh is None:
            await self._audit(
                SecurityEventType.TOKEN_REFRESH, client, success=False,
                user_id=identity.id, email=identity.email,
                reason="session_already_rotated", session_id=str(session.id),
            )
            return unauthenticated(INVALID_REFRESH_TOKEN)

        roles, permissions = await self._resolve_access(identity.id)
        access = self.issuer.issue_access_token(identity, roles, permissions)

        await self._audit(
            SecurityEventType.TOKEN_REFRESH, client, success=True,
            user_id=identity.id, email=identity.email,
            old_session_id=str(session.id), session_id=str(refresh.session_id),
        )
        return Ok(self._tokens(identity, roles, access, refresh))

    async def logout(
        self, user_id: UUID, *, client: ClientInfo = ClientInfo()
    ) -> AuthResult[int]:
        """Revoke every session of the identity. Returns the number revoked."""
        identity = await self.store.get_identity(user_id)
        if identity is None:
            await self._audit(
                SecurityEventType.LOGOUT, client, success=False,
                user_id=user_id, reason="unknown_identity",
            )
            return not_found("User not found")

        return await self._commit(self._complete_logout(identity, client))

    async def _complete_logout(self, identity: Identity, client: ClientInfo) -> AuthResult[int]:
        revoked = await self.sessions.revoke_all(identity.id)
        await self._audit(
            SecurityEventType.LOGOUT, client, success=True,
            user_id=identity.id, email=identity.email, revoked_sessions=revoked,
        )
        return Ok(revoked)

    async def revoke_token(
        self, refresh_token: str, *, client: ClientInfo = ClientInfo()
    ) -> AuthResult[None]:
        """Revoke the single session a refresh secret belongs to."""
        session = await self.sessions.find(refresh_token)
        if session is None:
            await self._audit(
                SecurityEventType.TOKEN_REVOKE, client, success=False,
                reason="not_found",
            )
            return not_found("Refresh token not found or already expired")

        return await self._commit(self._complete_revoke(session, client))

    async def _complete_revoke(self, session: UserSession, client: ClientInfo) -> AuthResult[None]:
        await self.sessions.revoke(session.id)
        await self._audit(
            SecurityEventType.TOKEN_REVOKE, client, success=True,
            user_id=session.user_id, session_id=str(session.id),
        )
        return Ok(None)

    # ------------------------------------------------------------------
    # passwords
    # ------------------------------------------------------------------

    async def forgot_password(
        self, email: str, *, client: ClientInfo = ClientInfo()
    ) -> AuthResult[None]:
        """Start a password reset.

        Always reports success so the response does not reveal whether the
        email is registered. The reset secret only leaves through the
        notifier.
        """
        identity = await self.store.get_identity_by_email(email)
        if identity is None or not identity.can_authenticate:
            await self._audit(
                SecurityEventType.PASSWORD_RESET_REQUESTED, client, success=False,
                email=email, reason="unknown_email",
            )
            return Ok(None)

        raw_token = secrets.token_urlsafe(RESET_TOKEN_BYTES)
        now = datetime.now(timezone.utc)
        request = PasswordResetRequest(
            id=uuid4(),
            user_id=identity.id,
            token_hash=self.token_hasher.hash(raw_token),
            created_at=now,
            expires_at=now + timedelta(hours=self.issuer.config.password_reset_expire_hours),
        )
        return await self._commit(self._complete_forgot(identity, raw_token, request, client))

    async def _complete_forgot(
        self,
        identity: Identity,
        raw_token: str,
        request: PasswordResetRequest,
        client: ClientInfo,
    ) -> AuthResult[None]:
        superseded = await self.store.replace_reset_request(request)
        delivered = await self.notifier.send_password_reset(
            identity.email, identity.username, raw_token, request.expires_at
        )

        await self._audit(
            SecurityEventType.PASSWORD_RESET_REQUESTED, client, success=True,
            user_id=identity.id, email=identity.email,
            request_id=str(request.id), superseded=superseded, delivered=delivered,
        )
        return Ok(None)

    async def reset_password(
        self,
        reset_token: str,
        new_password: str,
        *,
        client: ClientInfo = ClientInfo(),
    ) -> AuthResult[None]:
        """Set a new password with a one-time reset secret and sign out everywhere."""
        now = datetime.now(timezone.utc)
        requests = await self.store.list_open_reset_requests(now)
        match = next(
            (
                r for r in requests
                if r.is_open_at(now) and self.token_hasher.verify(reset_token, r.token_hash)
            ),
            None,
        )
        if match is None:
            await self._audit(
                SecurityEventType.PASSWORD_RESET, client, success=False,
                reason="invalid_or_expired",
            )
            return invalid_or_expired(INVALID_RESET_TOKEN)

        password_hash = await self._hash_password(new_password)
        return await self._commit(self._complete_reset(match, password_hash, client))

    async def _complete_reset(
        self, request: PasswordResetRequest, password_hash: str, client: ClientInfo
    ) -> AuthResult[None]:
        revoked = await self.store.complete_password_reset(
            request.id, request.user_id, password_hash
        )
        if revoked is None:
            await self._audit(
                SecurityEventType.PASSWORD_RESET, client, success=False,
                user_id=request.user_id, reason="already_used",
            )
            return invalid_or_expired(INVALID_RESET_TOKEN)

        logger.info(
            "password_reset_completed", user_id=str(request.user_id), revoked_sessions=revoked
        )
        await self._audit(
            SecurityEventType.PASSWORD_RESET, client, success=True,
            user_id=request.user_id, revoked_sessions=revoked,
        )
        return Ok(None)

    async def change_password(
        self,
        user_id: UUID,
        current_password: str,
        new_password: str,
        *,
        client: ClientInfo = ClientInfo(),
    ) -> AuthResult[None]:
        """Replace the password after checking the current one; signs out everywhere."""
        identity = await self.store.get_identity(user_id)
        if identity is None or not identity.can_authenticate:
            await self._audit(
                SecurityEventType.PASSWORD_CHANGE, client, success=False,
                user_id=user_id, reason="unknown_identity",
            )
            return not_found("User not found")

        if not await self._verify_password(current_password, identity.password_hash):
            await self._audit(
                SecurityEventType.PASSWORD_CHANGE, client, success=False,
                user_id=identity.id, email=identity.email, reason="bad_password",
            )
            return unauthenticated("Current password is incorrect")

        password_hash = await self._hash_password(new_password)
        return await self._commit(self._complete_change(identity, password_hash, client))

    async def _complete_change(
        self, identity: Identity, password_hash: str, client: ClientInfo
    ) -> AuthResult[None]:
        revoked = await self.store.change_password(identity.id, password_hash)

        logger.info("password_changed", user_id=str(identity.id), revoked_sessions=revoked)
        await self._audit(
            SecurityEventType.PASSWORD_CHANGE, client, success=True,
            user_id=identity.id, email=identity.email, revoked_sessions=revoked,
        )
        return Ok(None)

    # ------------------------------------------------------------------
    # profile
    # ------------------------------------------------------------------

    async def get_profile(self, user_id: UUID) -> AuthResult[IdentitySummary]:
        identity = await self.store.get_identity(user_id)
        if identity is None or not identity.can_authenticate:
            return not_found("User not found")

        roles = await self.store.get_role_names(user_id)
        return Ok(self._summary(identity, roles))
