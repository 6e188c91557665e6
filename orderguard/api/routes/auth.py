"""
OrderGuard — Authentication API

POST /api/v1/auth/token     → issue JWT token pair (non-production only)
POST /api/v1/auth/refresh   → exchange a refresh token for a new pair
GET  /api/v1/auth/me        → current user info
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, status

from orderguard.config import settings
from orderguard.models.schemas import AuthorizedUser, LoginRequest, RefreshRequest, TokenResponse
from orderguard.services.security import (
    ADMIN_SCOPE,
    DEFAULT_SCOPES,
    create_token_pair,
    get_current_user,
    verify_password,
    verify_token,
)

logger = logging.getLogger("orderguard.api.auth")
router = APIRouter()


def _token_response(tokens: Dict[str, str]) -> TokenResponse:
    return TokenResponse(
        access_token=tokens["access_token"],
        refresh_token=tokens["refresh_token"],
        token_type=tokens["token_type"],
        expires_in=int(settings.jwt_expiration.total_seconds()),
    )


@router.post(
    "/token",
    response_model=TokenResponse,
    summary="Get Access Token",
    description="Issue a JWT access and refresh token.  Disabled in production; use your SSO provider.",
)
async def get_token(credentials: LoginRequest):
    if not credentials.username or not credentials.password:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Username and password required",
        )
    if settings.is_production():
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Token endpoint disabled in production. Use SSO provider.",
        )

    # Shop managers get the default scopes; the admin password adds blocklist rights.
    scopes = list(DEFAULT_SCOPES)
    if settings.ADMIN_PASSWORD_HASH and verify_password(credentials.password, settings.ADMIN_PASSWORD_HASH):
        scopes.append(ADMIN_SCOPE)

    logger.info("Issued token for %s scopes=%s", credentials.username, scopes)
    return _token_response(create_token_pair(subject=credentials.username, scopes=scopes))


@router.post(
    "/refresh",
    response_model=TokenResponse,
    summary="Refresh Access Token",
)
async def refresh_token(payload: RefreshRequest):
    claims = verify_token(payload.refresh_token)
    if claims.get("type") != "refresh":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token is not a refresh token",
        )
    return _token_response(
        create_token_pair(subject=claims.get("sub"), scopes=claims.get("scopes"))
    )


@router.get(
    "/me",
    response_model=AuthorizedUser,
    summary="Get Current User",
)
async def get_current_user_info(
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    return AuthorizedUser(
        sub=current_user.get("sub", "unknown"),
        scopes=current_user.get("scopes", []),
        exp=current_user.get("exp"),
    )
