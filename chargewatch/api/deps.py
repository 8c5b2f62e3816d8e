"""
FastAPI dependency injection providers.

Provides database sessions, settings, the service-token auth dependency
and the push sender for use with FastAPI's Depends() mechanism.

CHANGELOG:
- 2026-10-03: Initial creation (STORY-102)
- 2026-10-07: Add push sender dependency (STORY-105)

TODO:
- None
"""

from typing import Annotated

from fastapi import Depends, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from chargewatch.auth.bearer import (
    BearerAuth,
    parse_service_tokens,
    verify_bearer_token,
)
from chargewatch.config import Settings, get_settings
from chargewatch.db.session import get_async_session
from chargewatch.errors import ErrorCode, ServiceError
from chargewatch.services.push import PushSender, WebPushSender

# Type alias for injecting an async DB session via FastAPI Depends().
DbSession = Annotated[AsyncSession, Depends(get_async_session)]

AppSettings = Annotated[Settings, Depends(get_settings)]


# ---------------------------------------------------------------------------
# Service token authentication
# ---------------------------------------------------------------------------

_bearer_auth: BearerAuth | None = None

# auto_error=False lets us return 401 ourselves instead of FastAPI's 403.
_bearer_scheme = HTTPBearer(auto_error=False)


def init_bearer_auth() -> BearerAuth:
    """Build BearerAuth from SERVICE_TOKENS.

    Called at startup (via lifespan) so token configuration is validated
    eagerly, and lazily on first request. Cached after first call.

    Returns:
        BearerAuth: Configured Bearer token authenticator.
    """
    global _bearer_auth  # noqa: PLW0603
    if _bearer_auth is None:
        settings = get_settings()
        _bearer_auth = BearerAuth(parse_service_tokens(settings.SERVICE_TOKENS))
    return _bearer_auth


async def get_service_client(
    credentials: HTTPAuthorizationCredentials | None = Security(_bearer_scheme),
) -> str:
    """FastAPI dependency: validate a service Bearer token -> client id.

    Raises:
        HTTPException: 401 if credentials are missing or the token is unknown.
    """
    if credentials is None:
        raise HTTPException(
            status_code=401,
            detail="Missing authorization credentials.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    auth = init_bearer_auth()
    client_id = verify_bearer_token(credentials.credentials, auth.token_map)
    if client_id is None:
        raise HTTPException(
            status_code=401,
            detail="Invalid or expired token.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return client_id


ServiceClient = Annotated[str, Depends(get_service_client)]


# ---------------------------------------------------------------------------
# Push sender
# ---------------------------------------------------------------------------


def get_push_sender(settings: AppSettings) -> PushSender:
    """Build the VAPID Web Push sender from settings.

    Raises:
        ServiceError: 503 when no VAPID private key is configured.
    """
    if not settings.VAPID_PRIVATE_KEY:
        raise ServiceError(
            "Push delivery is not configured",
            code=ErrorCode.INTERNAL_ERROR,
            status_code=503,
        )
    return WebPushSender(
        settings.VAPID_PRIVATE_KEY, settings.VAPID_SUBJECT, settings.PUSH_TIMEOUT_S,
    )


Sender = Annotated[PushSender, Depends(get_push_sender)]
