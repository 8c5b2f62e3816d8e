"""
Bearer token authentication for service-only endpoints.

Service clients (the scraper, the cron sweep, the outbox drainer) send
``Authorization: Bearer <token>``. Tokens come from the SERVICE_TOKENS
setting as comma-separated ``token:client`` pairs; every comparison uses
``secrets.compare_digest`` so a lookup never leaks timing information.

CHANGELOG:
- 2026-10-03: Initial creation (STORY-102)

TODO:
- None
"""

import logging
import secrets

from fastapi import HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)


def parse_service_tokens(raw: str) -> dict[str, str]:
    """Parse ``token:client`` pairs into a token -> client id mapping.

    Whitespace around tokens and client ids is stripped; entries without
    a colon or with an empty side are skipped.

    Args:
        raw: Comma-separated ``token:client`` pairs.

    Returns:
        dict[str, str]: Mapping of token to client id.
    """
    token_map: dict[str, str] = {}
    for entry in raw.split(","):
        if ":" not in entry:
            if entry.strip():
                logger.warning("Ignoring malformed SERVICE_TOKENS entry")
            continue
        token, client_id = (part.strip() for part in entry.split(":", 1))
        if token and client_id:
            token_map[token] = client_id
    return token_map


def verify_bearer_token(token: str, token_map: dict[str, str]) -> str | None:
    """Return the client id owning *token*, or None.

    Every known token is compared in constant time; the loop does not
    stop at the first match.
    """
    if not token:
        return None
    matched: str | None = None
    for known, client_id in token_map.items():
        if secrets.compare_digest(token.encode("utf-8"), known.encode("utf-8")):
            matched = client_id
    return matched


class BearerAuth:
    """FastAPI dependency validating Bearer tokens against a token map.

    Args:
        token_map: Mapping of token -> client id.
    """

    def __init__(self, token_map: dict[str, str]) -> None:
        self.token_map = token_map

    async def verify(
        self,
        credentials: HTTPAuthorizationCredentials | None = Security(_bearer_scheme),
    ) -> str:
        """Validate the request's Bearer token and return its client id.

        Raises:
            HTTPException: 401 if the token is missing or unknown.
        """
        if credentials is None or not credentials.credentials:
            raise HTTPException(
                status_code=401,
                detail="Missing authorization credentials.",
                headers={"WWW-Authenticate": "Bearer"},
            )
        client_id = verify_bearer_token(credentials.credentials, self.token_map)
        if client_id is None:
            raise HTTPException(
                status_code=401,
                detail="Invalid or expired token.",
                headers={"WWW-Authenticate": "Bearer"},
            )
        return client_id
