"""Access token signing and refresh session issuance."""

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence
from uuid import UUID, uuid4

import jwt
import structlog

from docarchive.config import TokenSettings
from docarchive.models.user import Identity, UserSession
from docarchive.services.credential_store import CredentialStore
from docarchive.services.errors import ConfigurationError
from docarchive.services.hashing import SecretHasher

logger = structlog.get_logger(__name__)

# 64 random bytes, 512 bits of entropy
REFRESH_TOKEN_BYTES = 64


@dataclass(frozen=True)
class IssuedAccessToken:
    token: str
    expires_at: datetime
    token_id: str


@dataclass(frozen=True)
class IssuedRefreshToken:
    """A freshly minted refresh secret. ``token`` is never stored."""

    token: str
    expires_at: datetime
    session_id: UUID


class TokenIssuer:
    """Signs access tokens and mints refresh sessions.

    Access tokens are validated purely by signature and expiry; the roles
    and permissions they carry are a snapshot taken at issuance.
    """

    def __init__(
        self,
        config: TokenSettings,
        store: CredentialStore,
        token_hasher: SecretHasher,
    ):
        if not config.secret_key:
            raise ConfigurationError("JWT secret key is not configured")
        self.config = config
        self.store = store
        self.token_hasher = token_hasher

    @property
    def access_token_lifetime(self) -> timedelta:
        return timedelta(minutes=self.config.access_token_expire_minutes)

    @property
    def refresh_token_lifetime(self) -> timedelta:
        return timedelta(days=self.config.refresh_token_expire_days)

    def issue_access_token(
        self,
        identity: Identity,
        roles: Sequence[str],
        permissions: Sequence[str],
    ) -> IssuedAccessToken:
        """Create a signed JWT access token.

        Args:
            identity: The authenticated identity ('sub' claim)
            roles: Role names held at issuance
            permissions: Flattened permission names held at issuance

        Returns:
            The encoded token with its expiry and per-issuance id ('jti')
        """
        now = datetime.now(timezone.utc)
        expires_at = now + self.access_token_lifetime
        token_id = str(uuid4())
        payload = {
            "sub": str(identity.id),
            "email": identity.email,
            "unique_name": identity.username,
            "given_name": identity.first_name or "",
            "family_name": identity.last_name or "",
            "jti": token_id,
            "roles": list(roles),
            "permissions": list(permissions),
            "iss": self.config.issuer,
            "aud": self.config.audience,
            "iat": now,
            "exp": expires_at,
        }
        token = jwt.encode(payload, self.config.secret_key, algorithm=self.config.algorithm)
        logger.debug(
            "access_token_created",
            user_id=str(identity.id),
            token_id=token_id,
            roles=len(roles),
            permissions=len(permissions),
        )
        return IssuedAccessToken(
            token=token,
            expires_at=expires_at.replace(microsecond=0),
            token_id=token_id,
        )

    def decode_access_token(self, token: str, verify_expiry: bool = True) -> dict:
        """Decode and validate a JWT access token.

        Signature, issuer and audience are always checked. ``verify_expiry``
        is turned off by the refresh flow, where expired tokens are normal.

        Raises:
            ValueError: If the token is invalid, expired, or malformed
        """
        try:
            return jwt.decode(
                token,
                self.config.secret_key,
                algorithms=[self.config.algorithm],
                audience=self.config.audience,
                issuer=self.config.issuer,
                options={"verify_exp": verify_expiry, "require": ["sub", "exp", "jti"]},
            )
        except jwt.ExpiredSignatureError:
            raise ValueError("Access token has expired")
        except jwt.InvalidTokenError as e:
            raise ValueError(f"Invalid access token: {e}")

    def new_refresh_session(
        self,
        user_id: UUID,
        device_info: Optional[str],
        ip_address: Optional[str],
    ) -> tuple[str, UserSession]:
        """Mint a refresh secret and the unsaved session holding its hash."""
        raw_token = secrets.token_urlsafe(REFRESH_TOKEN_BYTES)
        now = datetime.now(timezone.utc)
        session = UserSession(
            id=uuid4(),
            user_id=user_id,
            refresh_token_hash=self.token_hasher.hash(raw_token),
            created_at=now,
            expires_at=now + self.refresh_token_lifetime,
            device_info=device_info,
            ip_address=ip_address,
        )
        return raw_token, session

    async def issue_refresh_session(
        self,
        user_id: UUID,
        device_info: Optional[str],
        ip_address: Optional[str],
    ) -> IssuedRefreshToken:
        """Persist a new login session and return its secret exactly once.

        The identity's last login is stamped in the same write, so a failed
        insert leaves neither behind.
        """
        raw_token, session = self.new_refresh_session(user_id, device_info, ip_address)
        await self.store.open_session(session, last_login_at=session.created_at)

        logger.info(
            "refresh_session_created",
            user_id=str(user_id),
            session_id=str(session.id),
            expires_at=session.expires_at.isoformat(),
        )
        return IssuedRefreshToken(
            token=raw_token,
            expires_at=session.expires_at,
            session_id=session.id,
        )
