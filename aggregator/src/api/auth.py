"""
Bearer token authentication for the aggregator API.

Each event source or dashboard gets its own token, configured as
``token:client`` pairs in API_TOKENS. Requests carry
``Authorization: Bearer {token}``; the matching client name is what the
routes log. Tokens are compared in constant time.

CHANGELOG:
- 2026-10-10: Initial creation (STORY-113)

TODO:
- None
"""

import logging
import secrets

from fastapi import HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

logger = logging.getLogger(__name__)


def parse_api_tokens(raw: str) -> dict[str, str]:
    """Build the token -> client map from an API_TOKENS string.

    ``"tok-a:bridge, tok-b:dashboard"`` yields two clients. Entries without
    a colon, or with an empty token or client, are skipped. A token listed
    twice keeps its last client.
    """
    token_map: dict[str, str] = {}
    if not raw:
        return token_map

    for position, pair in enumerate(raw.split(",")):
        pair = pair.strip()
        if not pair:
            continue
        token, sep, client = pair.partition(":")
        token, client = token.strip(), client.strip()
        if not sep or not token or not client:
            logger.warning("Ignoring API_TOKENS entry %d: expected 'token:client'", position)
            continue
        if token in token_map:
            logger.warning("API_TOKENS entry %d repeats a token; last client wins", position)
        token_map[token] = client
    return token_map


def verify_bearer_token(token: str, token_map: dict[str, str]) -> str | None:
    """Return the client owning *token*, or None.

    Every configured token is compared so the time taken does not depend on
    which one matched.
    """
    if not token:
        return None

    presented = token.encode("utf-8")
    owner: str | None = None
    for known, client in token_map.items():
        if secrets.compare_digest(presented, known.encode("utf-8")):
            owner = client
    return owner


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=401,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


class BearerAuth:
    """Validates bearer tokens against the configured clients.

    Attributes:
        token_map: Token -> client name.
        scheme: HTTPBearer scheme, so the routes show up as secured in the
            OpenAPI docs.
    """

    def __init__(self, token_map: dict[str, str]) -> None:
        self.token_map = dict(token_map)
        self.scheme = HTTPBearer(auto_error=False)

    async def verify(self, request: Request) -> str:
        """Return the client name for the request's bearer token.

        Raises:
            HTTPException: 401 when the header is missing or the token unknown.
        """
        credentials: HTTPAuthorizationCredentials | None = await self.scheme(request)
        if credentials is None:
            raise _unauthorized("Missing bearer token.")

        client = verify_bearer_token(credentials.credentials, self.token_map)
        if client is None:
            logger.warning("Rejected request to %s with an unknown token", request.url.path)
            raise _unauthorized("Unknown bearer token.")
        return client
