"""Authentication API endpoints.

Registration, login, token refresh, logout, and the current profile.
Only logout and profile require a valid access token.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response, status

from src.scope.api.deps import get_auth_service, get_current_user
from src.scope.models.user import User
from src.scope.schemas.auth import (
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    ProfileResponse,
    RegisterRequest,
    TokenRefreshRequest,
    TokenResponse,
    UserSummary,
)
from src.scope.schemas.common import SuccessResponse
from src.scope.services.auth import AuthService

router = APIRouter(prefix="/api/v1/auth", tags=["auth"])


@router.post("/register", status_code=status.HTTP_201_CREATED, response_model=SuccessResponse[UserSummary])
async def register(body: RegisterRequest, auth: AuthService = Depends(get_auth_service)):
    user = await auth.register(
        email=body.email,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    return SuccessResponse(data=UserSummary.model_validate(user))


@router.post("/login", response_model=LoginResponse)
async def login(body: LoginRequest, auth: AuthService = Depends(get_auth_service)):
    """Authenticate with email and password and return an access/refresh token pair."""
    issued = await auth.login(body.email, body.password)
    return LoginResponse(
        access_token=issued.access_token,
        refresh_token=issued.refresh_token,
        expires_in=issued.expires_in,
        token_type=issued.token_type,
        user=UserSummary.model_validate(issued.user),
    )


@router.post("/refresh", response_model=TokenResponse)
async def refresh(body: TokenRefreshRequest, auth: AuthService = Depends(get_auth_service)):
    """Rotate a refresh token. The presented token cannot be used again."""
    issued = await auth.refresh_token(body.refresh_token)
    return TokenResponse(
        access_token=issued.access_token,
        refresh_token=issued.refresh_token,
        expires_in=issued.expires_in,
        token_type=issued.token_type,
    )


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
async def logout(
    request: Request,
    body: LogoutRequest | None = None,
    user: User = Depends(get_current_user),
    auth: AuthService = Depends(get_auth_service),
):
    """Revoke the presented access token and, if supplied, a refresh token."""
    await auth.logout(request.state.access_token, str(user.id))
    if body is not None and body.refresh_token:
        await auth.logout(body.refresh_token, str(user.id))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/profile", response_model=SuccessResponse[ProfileResponse])
async def profile(user: User = Depends(get_current_user)):
    return SuccessResponse(data=ProfileResponse.model_validate(user))
