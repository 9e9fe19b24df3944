"""FastAPI dependencies: service wiring, client info and bearer authentication."""

from functools import lru_cache
from typing import Callable
from uuid import UUID

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from docarchive.config import TokenSettings, get_settings
from docarchive.services.audit_service import AuditService
from docarchive.services.auth_service import AuthService, ClientInfo
from docarchive.services.credential_store import CredentialStore, PostgresCredentialStore
from docarchive.services.email_service import PasswordResetMailer
from docarchive.services.hashing import PasswordHasher, TokenHasher
from docarchive.services.session_service import SessionManager
from docarchive.services.token_service import TokenIssuer

bearer_scheme = HTTPBearer()


class Principal(BaseModel):
    """Caller identity taken from a validated access token.

    Nothing here is re-read from storage; it is the snapshot signed into
    the token.
    """

    user_id: UUID
    username: str
    email: str
    roles: list[str]
    permissions: list[str]


@lru_cache
def get_password_hasher() -> PasswordHasher:
    return PasswordHasher(rounds=get_settings().bcrypt_rounds)


@lru_cache
def get_token_hasher() -> TokenHasher:
    return TokenHasher()


def get_store() -> CredentialStore:
    return PostgresCredentialStore()


def get_token_issuer(store: CredentialStore = Depends(get_store)) -> TokenIssuer:
    settings = get_settings()
    return TokenIssuer(TokenSettings.from_settings(settings), store, get_token_hasher())


def get_audit_service(store: CredentialStore = Depends(get_store)) -> AuditService:
    return AuditService(store)


def get_auth_service(
    store: CredentialStore = Depends(get_store),
    issuer: TokenIssuer = Depends(get_token_issuer),
    audit: AuditService = Depends(get_audit_service),
) -> AuthService:
    settings = get_settings()
    token_hasher = get_token_hasher()
    return AuthService(
        store=store,
        issuer=issuer,
        sessions=SessionManager(store, issuer, token_hasher),
        audit=audit,
        password_hasher=get_password_hasher(),
        token_hasher=token_hasher,
        notifier=PasswordResetMailer(settings),
        default_role=settings.default_role,
    )


def get_client_info(request: Request) -> ClientInfo:
    """User agent and remote address of the current request."""
    return ClientInfo(
        device_info=request.headers.get("User-Agent", ""),
        ip_address=request.client.host if request.client else "unknown",
    )


async def get_current_principal(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
    issuer: TokenIssuer = Depends(get_token_issuer),
) -> Principal:
    """Validate the Bearer access token and return its claims.

    Raises:
        HTTPException 401: If the token is invalid, expired, or malformed
    """
    try:
        claims = issuer.decode_access_token(credentials.credentials)
        return Principal(
            user_id=UUID(str(claims["sub"])),
            username=claims.get("unique_name", ""),
            email=claims.get("email", ""),
            roles=list(claims.get("roles", [])),
            permissions=list(claims.get("permissions", [])),
        )
    except (ValueError, KeyError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired access token",
            headers={"WWW-Authenticate": "Bearer"},
        )


def require_permission(permission: str) -> Callable[..., Principal]:
    """Build a dependency that demands ``permission`` in the access token."""

    async def _require(principal: Principal = Depends(get_current_principal)) -> Principal:
        if permission not in principal.permissions:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission '{permission}' required",
            )
        return principal

    return _require
