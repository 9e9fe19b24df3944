"""Authentication API endpoints."""

from typing import NoReturn

import structlog
from fastapi import APIRouter, Depends, HTTPException, status

from docarchive.api.dependencies import (
    Principal,
    get_auth_service,
    get_client_info,
    get_current_principal,
)
from docarchive.models.auth import (
    AuthTokens,
    ChangePasswordRequest,
    ForgotPasswordRequest,
    IdentitySummary,
    LoginRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    RevokeTokenRequest,
)
from docarchive.models.results import Failure, FailureKind
from docarchive.services.auth_service import AuthService, ClientInfo

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1/auth", tags=["Auth"])

FAILURE_STATUS = {
    FailureKind.CONFLICT: status.HTTP_409_CONFLICT,
    FailureKind.UNAUTHENTICATED: status.HTTP_401_UNAUTHORIZED,
    FailureKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    FailureKind.INVALID_OR_EXPIRED: status.HTTP_400_BAD_REQUEST,
}

FORGOT_PASSWORD_MESSAGE = "If the email is registered, a password reset link has been sent"


def raise_for_failure(failure: Failure) -> NoReturn:
    """Translate a business failure into an HTTP error."""
    headers = None
    if failure.kind is FailureKind.UNAUTHENTICATED:
        headers = {"WWW-Authenticate": "Bearer"}
    raise HTTPException(
        status_code=FAILURE_STATUS[failure.kind],
        detail=failure.message,
        headers=headers,
    )


@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register(
    request: RegisterRequest,
    service: AuthService = Depends(get_auth_service),
    client: ClientInfo = Depends(get_client_info),
) -> IdentitySummary:
    """Register a new account with the default role.

    No tokens are issued; the client logs in afterwards.

    Raises:
        HTTPException 409: If the email or username is taken
    """
    result = await service.register(
        request.email,
        request.username,
        request.password,
        first_name=request.first_name,
        last_name=request.last_name,
        date_of_birth=request.date_of_birth,
        phone_number=request.phone_number,
        client=client,
    )
    if isinstance(result, Failure):
        raise_for_failure(result)
    return result.value


@router.post("/login")
async def login(
    request: LoginRequest,
    service: AuthService = Depends(get_auth_service),
    client: ClientInfo = Depends(get_client_info),
) -> AuthTokens:
    """Login with email or username and password.

    Raises:
        HTTPException 401: For any credential problem, with one message
    """
    result = await service.login(request.email_or_username, request.password, client=client)
    if isinstance(result, Failure):
        raise_for_failure(result)
    return result.value


@router.post("/refresh")
async def refresh(
    request: RefreshRequest,
    service: AuthService = Depends(get_auth_service),
    client: ClientInfo = Depends(get_client_info),
) -> AuthTokens:
    """Exchange an access token (expired is fine) and a refresh token for a new pair.

    The old refresh token stops working.

    Raises:
        HTTPException 401: If the refresh token is invalid, expired, revoked or replayed
    """
    result = await service.refresh(request.access_token, request.refresh_token, client=client)
    if isinstance(result, Failure):
        raise_for_failure(result)
    return result.value


@router.post("/logout")
async def logout(
    principal: Principal = Depends(get_current_principal),
    service: AuthService = Depends(get_auth_service),
    client: ClientInfo = Depends(get_client_info),
) -> MessageResponse:
    """Revoke every refresh session of the current user."""
    result = await service.logout(principal.user_id, client=client)
    if isinstance(result, Failure):
        raise_for_failure(result)
    return MessageResponse(message="Logged out")


@router.post("/revoke")
async def revoke(
    request: RevokeTokenRequest,
    principal: Principal = Depends(get_current_principal),
    service: AuthService = Depends(get_auth_service),
    client: ClientInfo = Depends(get_client_info),
) -> MessageResponse:
    """Revoke a single refresh token.

    Raises:
        HTTPException 404: If no active session matches the token
    """
    result = await service.revoke_token(request.refresh_token, client=client)
    if isinstance(result, Failure):
        raise_for_failure(result)
    logger.info("refresh_token_revoked_by_user", user_id=str(principal.user_id))
    return MessageResponse(message="Token revoked")


@router.post("/forgot-password")
async def forgot_password(
    request: ForgotPasswordRequest,
    service: AuthService = Depends(get_auth_service),
    client: ClientInfo = Depends(get_client_info),
) -> MessageResponse:
    """Request a password reset email. The response never reveals whether the email exists."""
    await service.forgot_password(request.email, client=client)
    return MessageResponse(message=FORGOT_PASSWORD_MESSAGE)


@router.post("/reset-password")
async def reset_password(
    request: ResetPasswordRequest,
    service: AuthService = Depends(get_auth_service),
    client: ClientInfo = Depends(get_client_info),
) -> MessageResponse:
    """Set a new password with a reset token.

    Raises:
        HTTPException 400: If the token is invalid, expired or already used
    """
    result = await service.reset_password(request.token, request.new_password, client=client)
    if isinstance(result, Failure):
        raise_for_failure(result)
    return MessageResponse(message="Password has been reset")


@router.post("/change-password")
async def change_password(
    request: ChangePasswordRequest,
    principal: Principal = Depends(get_current_principal),
    service: AuthService = Depends(get_auth_service),
    client: ClientInfo = Depends(get_client_info),
) -> MessageResponse:
    """Change the current user's password. All sessions are signed out.

    Raises:
        HTTPException 401: If the current password is wrong
    """
    result = await service.change_password(
        principal.user_id,
        request.current_password,
        request.new_password,
        client=client,
    )
    if isinstance(result, Failure):
        raise_for_failure(result)
    return MessageResponse(message="Password changed")


@router.get("/profile")
async def get_profile(
    principal: Principal = Depends(get_current_principal),
    service: AuthService = Depends(get_auth_service),
) -> IdentitySummary:
    """Current user's profile with up-to-date roles.

    Raises:
        HTTPException 404: If the account no longer exists or is disabled
    """
    result = await service.get_profile(principal.user_id)
    if isinstance(result, Failure):
        raise_for_failure(result)
    return result.value
