"""Refresh session validation, rotation and revocation.

A session is Active until it is revoked (rotation, logout, password
change) or its expiry passes. Expiry is never stored; it is checked
against the clock every time a session is looked up. Neither terminal
state can be left.
"""

from datetime import datetime, timezone
from typing import Iterable, Optional
from uuid import UUID

import structlog

from docarchive.models.user import UserSession
from docarchive.services.credential_store import CredentialStore
from docarchive.services.hashing import SecretHasher
from docarchive.services.token_service import IssuedRefreshToken, TokenIssuer

logger = structlog.get_logger(__name__)


class SessionManager:
    """Lifecycle of refresh sessions."""

    def __init__(
        self,
        store: CredentialStore,
        issuer: TokenIssuer,
        token_hasher: SecretHasher,
    ):
        self.store = store
        self.issuer = issuer
        self.token_hasher = token_hasher

    def _match(
        self, sessions: Iterable[UserSession], raw_token: str, now: datetime
    ) -> Optional[UserSession]:
        for session in sessions:
            if not session.is_active_at(now):
                continue
            if self.token_hasher.verify(raw_token, session.refresh_token_hash):
                return session
        return None

    async def validate(self, user_id: UUID, raw_token: str) -> Optional[UserSession]:
        """Find the active session of ``user_id`` whose hash matches the secret.

        Returns None without saying why (no sessions, all expired, wrong
        secret).
        """
        now = datetime.now(timezone.utc)
        sessions = await self.store.list_active_sessions(user_id, now)
        return self._match(sessions, raw_token, now)

    async def find(self, raw_token: str) -> Optional[UserSession]:
        """Find the active session matching the secret across all identities."""
        now = datetime.now(timezone.utc)
        sessions = await self.store.list_all_active_sessions(now)
        return self._match(sessions, raw_token, now)

    async def rotate(
        self,
        session: UserSession,
        device_info: Optional[str],
        ip_address: Optional[str],
    ) -> Optional[IssuedRefreshToken]:
        """Replace ``session`` with a new one.

        The old row is revoked with a compare-and-set before the new row is
        written. Returns None when another request already consumed the
        session, in which case nothing new is issued.
        """
        raw_token, replacement = self.issuer.new_refresh_session(
            session.user_id, device_info, ip_address
        )
        rotated = await self.store.rotate_session(session.id, replacement)

        if not rotated:
            logger.warning(
                "refresh_session_replayed",
                user_id=str(session.user_id),
                session_id=str(session.id),
            )
            return None

        logger.info(
            "refresh_session_rotated",
            user_id=str(session.user_id),
            old_session_id=str(session.id),
            new_session_id=str(replacement.id),
        )
        return IssuedRefreshToken(
            token=raw_token,
            expires_at=replacement.expires_at,
            session_id=replacement.id,
        )

    async def revoke(self, session_id: UUID) -> bool:
        """Revoke one session. Revoking twice is not an error.

        Returns True if this call performed the revocation.
        """
        revoked = await self.store.revoke_session(session_id)
        logger.info("refresh_session_revoked", session_id=str(session_id), changed=revoked)
        return revoked

    async def revoke_all(self, user_id: UUID) -> int:
        """Revoke every non-revoked session of ``user_id``."""
        count = await self.store.revoke_all_sessions(user_id)
        logger.info("all_refresh_sessions_revoked", user_id=str(user_id), count=count)
        return count
