"""
OrderGuard — Security & Authentication Layer

Provides:
- JWT token generation and validation
- API key validation
- Password hashing
- Scope checks for FastAPI routes
"""

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from passlib.context import CryptContext

from orderguard.config import settings

logger = logging.getLogger("orderguard.security")

DEFAULT_SCOPES = ["checkout", "orders:read", "orders:write"]
ADMIN_SCOPE = "admin"

# ---------------------------------------------------------------------------
# Password hashing context
# ---------------------------------------------------------------------------
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# ---------------------------------------------------------------------------
# Security schemes
# ---------------------------------------------------------------------------
http_bearer = HTTPBearer(
    scheme_name="Bearer",
    description="JWT Bearer token",
    auto_error=False,
)

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


# ---------------------------------------------------------------------------
# JWT Operations
# ---------------------------------------------------------------------------
def create_access_token(
    data: Dict[str, Any],
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a JWT access token.

    Parameters
    ----------
    data          : dict of claims to encode
    expires_delta : custom expiration delta (defaults to config)

    Returns
    -------
    token : str
    """
    now = datetime.now(timezone.utc)
    to_encode = data.copy()
    to_encode.update({
        "exp": now + (expires_delta or settings.jwt_expiration),
        "iat": now,
    })
    return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def verify_token(token: str) -> Dict[str, Any]:
    """
    Verify and decode a JWT token.

    Raises
    ------
    HTTPException
        401 if the token is invalid or expired
    """
    try:
        return jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
        )
    except JWTError as exc:
        logger.warning("JWT verification failed: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc


def create_token_pair(subject: str, scopes: Optional[List[str]] = None) -> Dict[str, str]:
    """Return ``{"access_token", "refresh_token", "token_type"}`` for *subject*."""
    if scopes is None:
        scopes = list(DEFAULT_SCOPES)

    access_token = create_access_token({"sub": subject, "scopes": scopes, "type": "access"})
    refresh_token = create_access_token(
        {"sub": subject, "scopes": scopes, "type": "refresh"},
        expires_delta=settings.jwt_refresh_expiration,
    )
    return {
        "access_token": access_token,
        "refresh_token": refresh_token,
        "token_type": "bearer",
    }


# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------
def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError:
        logger.error("Stored password hash is not a recognised bcrypt hash")
        return False


# ---------------------------------------------------------------------------
# Dependencies for FastAPI route protection
# ---------------------------------------------------------------------------
async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
    api_key: Optional[str] = Depends(api_key_header),
) -> Dict[str, Any]:
    """
    Validate and extract claims from a JWT bearer token or an API key.

    Supports:
    1. JWT Bearer token (``Authorization: Bearer <token>``)
    2. API key (``X-API-Key: <key>``), compared against ``SECRET_KEY``

    Raises
    ------
    HTTPException
        401 if neither credential is valid
    """
    if not settings.AUTH_ENABLED:
        return {"sub": "system", "scopes": ["*"]}

    if credentials:
        claims = verify_token(credentials.credentials)
        if claims.get("type") == "refresh":
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Refresh tokens cannot be used for API access",
                headers={"WWW-Authenticate": "Bearer"},
            )
        return claims

    if settings.API_KEY_ENABLED and api_key:
        if secrets.compare_digest(api_key, settings.SECRET_KEY):
            # Storefront integrations authenticate with the shared key.
            return {"sub": "storefront", "scopes": list(DEFAULT_SCOPES)}
        logger.warning("Invalid API key attempt")

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Not authenticated",
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_admin(
    current_user: Dict[str, Any] = Depends(get_current_user),
) -> Dict[str, Any]:
    """Require the ``admin`` (or wildcard) scope."""
    scopes: list = current_user.get("scopes", [])
    if "*" not in scopes and ADMIN_SCOPE not in scopes:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions for this operation",
        )
    return current_user
