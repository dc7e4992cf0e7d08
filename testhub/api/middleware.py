from __future__ import annotations

import functools
import inspect
from typing import Any, Awaitable, Callable, Optional

from fastapi import Depends, Request

from testhub.api.cookies import read_access_token
from testhub.config import Settings
from testhub.logging import get_logger
from testhub.service.auth import Identity, identity_from_claims, role_allows
from testhub.service.errors import ForbiddenError, TokenInvalidError, TokenMissingError
from testhub.service.runtime import get_runtime
from testhub.service.tokens import TokenCodec, TokenError, TokenKind

logger = get_logger(__name__)

_BEARER_PREFIX = "bearer "


def extract_access_token(request: Request, settings: Settings) -> Optional[str]:
    """Cookie first; ``Authorization: Bearer`` for non-browser clients."""
    token = read_access_token(request, settings)
    if token:
        return token
    header = request.headers.get("authorization")
    if header and header[: len(_BEARER_PREFIX)].lower() == _BEARER_PREFIX:
        return header[len(_BEARER_PREFIX):].strip() or None
    return None


def authenticate_request(request: Request, codec: TokenCodec, settings: Settings) -> Identity:
    """Resolve the caller from the access token alone.

    No store lookup happens here, so role or active-status changes only take
    effect once the current access token expires.

    Raises:
        TokenMissingError: no token in the cookie or the Authorization header
        TokenInvalidError: token malformed, expired or signed with another key
    """
    token = extract_access_token(request, settings)
    if not token:
        raise TokenMissingError("access token not provided")
    try:
        claims = codec.verify(token, TokenKind.ACCESS)
    except TokenError as exc:
        logger.info(
            "access_token_rejected",
            path=request.url.path,
            failure=type(exc).__name__,
        )
        raise TokenInvalidError("invalid access token") from exc
    return identity_from_claims(claims)


def _find_request(args: tuple, kwargs: dict) -> Request:
    request = kwargs.get("request")
    if isinstance(request, Request):
        return request
    for arg in args:
        if isinstance(arg, Request):
            return arg
    raise TypeError("with_auth handlers must accept a 'request: Request' argument")


def with_auth(handler: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
    """Wrap a route handler so it only runs for a verified caller.

    The handler must take ``request: Request``; the identity is available as
    ``request.state.identity``.
    """
    if "request" not in inspect.signature(handler).parameters:
        raise TypeError("with_auth handlers must accept a 'request: Request' argument")

    @functools.wraps(handler)
    async def wrapper(*args: Any, **kwargs: Any) -> Any:
        request = _find_request(args, kwargs)
        runtime = get_runtime()
        request.state.identity = authenticate_request(request, runtime.tokens, runtime.settings)
        return await handler(*args, **kwargs)

    return wrapper


async def get_identity(request: Request) -> Identity:
    runtime = get_runtime()
    identity = authenticate_request(request, runtime.tokens, runtime.settings)
    request.state.identity = identity
    return identity


def require_roles(*roles: str) -> Callable[..., Awaitable[Identity]]:
    """Dependency factory gating a route on the caller's role; admins always pass."""
    allowed = list(roles)

    async def _dependency(identity: Identity = Depends(get_identity)) -> Identity:
        if not role_allows(identity.role, allowed):
            raise ForbiddenError(
                "insufficient permissions", detail={"required_roles": allowed}
            )
        return identity

    return _dependency
