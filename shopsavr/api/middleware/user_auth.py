"""
User authentication for the ShopSavr API.

The extension sends the Google OAuth access token it obtained through the
Chrome identity API; the backend verifies it and keys all savings data on the
Google user id.  Ingest never trusts a user id from the request body.
"""

from __future__ import annotations

from dataclasses import dataclass

import httpx
from cachetools import TTLCache
from fastapi import HTTPException, Request, status

from shopsavr.config import (
    AUTH_CACHE_TTL_SECONDS,
    GOOGLE_OAUTH_CLIENT_ID,
    HTTP_TIMEOUT_SECONDS,
    is_production,
)
from shopsavr.observability.logging import get_logger
from shopsavr.utils.redaction import redact

logger = get_logger(__name__)

GOOGLE_TOKEN_INFO_URL = "https://oauth2.googleapis.com/tokeninfo"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"

_CACHE_MAX_SIZE = 1000


@dataclass
class AuthenticatedUser:
    """Identity of the extension user making the request."""

    id: str  # Google's stable user id; the savings owner key
    email: str
    name: str | None = None

    def __str__(self) -> str:
        return f"User({self.id}, {redact(self.email)})"


# Shorter TTL than Google's token expiry so revoked tokens age out
_token_cache: TTLCache[str, AuthenticatedUser] = TTLCache(
    maxsize=_CACHE_MAX_SIZE, ttl=AUTH_CACHE_TTL_SECONDS
)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _unavailable(detail: str = "Authentication service unavailable") -> HTTPException:
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail)


def _check_audience(token_info: dict) -> None:
    if not GOOGLE_OAUTH_CLIENT_ID:
        if is_production():
            logger.error("GOOGLE_OAUTH_CLIENT_ID not configured in production")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Server misconfiguration: OAuth client ID not set",
            )
        logger.warning("GOOGLE_OAUTH_CLIENT_ID not set - skipping audience check (dev only)")
        return

    aud = token_info.get("aud", "")
    if aud != GOOGLE_OAUTH_CLIENT_ID:
        logger.warning("Token audience mismatch: got=%s", aud)
        raise _unauthorized("Token not issued for this application")


async def verify_google_token(token: str) -> AuthenticatedUser:
    """
    Verify a Google OAuth token and resolve the user.

    Raises:
        HTTPException: 401 for an invalid/expired token, 503 if Google is unreachable
    """
    if token in _token_cache:
        return _token_cache[token]

    async with httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS) as client:
        try:
            token_response = await client.get(
                GOOGLE_TOKEN_INFO_URL, params={"access_token": token}
            )
        except httpx.TimeoutException:
            logger.warning("Token validation timed out")
            raise _unavailable() from None
        except httpx.RequestError as e:
            logger.error("Token validation request failed: %s", e)
            raise _unavailable() from e

        if token_response.status_code != 200:
            logger.warning("Invalid token (status %d)", token_response.status_code)
            raise _unauthorized("Invalid or expired token")

        _check_audience(token_response.json())

        try:
            userinfo_response = await client.get(
                GOOGLE_USERINFO_URL, headers={"Authorization": f"Bearer {token}"}
            )
        except httpx.RequestError as e:
            logger.error("Failed to get user info: %s", e)
            raise _unavailable("Failed to retrieve user information") from e

    if userinfo_response.status_code != 200:
        raise _unauthorized("Failed to retrieve user information")

    userinfo = userinfo_response.json()
    user = AuthenticatedUser(
        id=userinfo["id"],
        email=userinfo.get("email", ""),
        name=userinfo.get("name"),
    )
    _token_cache[token] = user

    logger.info("Authenticated %s (cache size: %d)", user, len(_token_cache))
    return user


def _extract_bearer_token(authorization: str | None) -> str:
    if not authorization:
        raise _unauthorized("Missing authorization header")

    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _unauthorized("Invalid authorization header format. Expected: Bearer <token>")

    return parts[1]


async def get_current_user(request: Request) -> AuthenticatedUser:
    """
    FastAPI dependency resolving the authenticated user.

    Usage:
        @router.get("/summary")
        async def summary(user: AuthenticatedUser = Depends(get_current_user)):
            ...
    """
    token = _extract_bearer_token(request.headers.get("Authorization"))
    return await verify_google_token(token)


def clear_token_cache() -> None:
    """Clear the token cache. Useful for testing."""
    _token_cache.clear()
