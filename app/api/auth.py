"""
Bearer-token authentication.

Identity is owned by the external auth service; this middleware only resolves
the presented token through an injected resolver and attaches {id, username}
to the request. Gateway callbacks and health checks are public.
"""
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from aiohttp import web

from app.core.exceptions import AuthError

logger = logging.getLogger(__name__)

IDENTITY_KEY = "identity"

IdentityResolver = Callable[[str], Awaitable[Optional[Dict[str, Any]]]]


def extract_bearer_token(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    token = token.strip()
    if scheme != "Bearer" or not token:
        return None
    return token


def create_auth_middleware(identity_resolver: IdentityResolver, public_paths: Iterable[str] = ()):
    """Build a middleware resolving `Authorization: Bearer <token>` for non-public paths."""
    public = frozenset(public_paths)

    @web.middleware
    async def auth_middleware(request: web.Request, handler):
        if request.path in public:
            return await handler(request)

        token = extract_bearer_token(request.headers.get("Authorization"))
        if token is None:
            raise AuthError("Unauthorized")

        identity = await identity_resolver(token)
        if not identity or identity.get("id") is None:
            logger.info(f"AUTH_REJECTED [path={request.path}]")
            raise AuthError("Unauthorized")

        request[IDENTITY_KEY] = identity
        return await handler(request)

    return auth_middleware


def get_identity(request: web.Request) -> Dict[str, Any]:
    identity = request.get(IDENTITY_KEY)
    if not identity:
        raise AuthError("Unauthorized")
    return identity


def get_client_ip(request: web.Request) -> Optional[str]:
    """First hop of X-Forwarded-For, else the peer address."""
    forwarded = request.headers.get("X-Forwarded-For", "")
    first = forwarded.split(",")[0].strip()
    if first:
        return first
    return request.remote
