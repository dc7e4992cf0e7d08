from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Request, Response

from testhub.api.cookies import clear_auth_cookies, read_refresh_token, set_auth_cookies
from testhub.api.middleware import with_auth
from testhub.api.schemas import (
    AuthResponse,
    CompanyRegistrationResponse,
    CompanyResponse,
    Envelope,
    IdentityResponse,
    MeResponse,
    MessageResponse,
    RefreshTokenRequest,
    RegisterCompanyRequest,
    RegisterRequest,
    SigninRequest,
    TokenPairResponse,
    UserResponse,
)
from testhub.logging import get_logger
from testhub.service.errors import (
    InvalidLogoutTokenError,
    InvalidRefreshTokenError,
    RateLimitedError,
)
from testhub.service.rate_limit import get_client_ip
from testhub.service.runtime import Runtime, get_runtime

logger = get_logger(__name__)

router = APIRouter()


async def _enforce_rate_limit(runtime: Runtime, request: Request, scope: str) -> None:
    """Count one attempt for the caller's IP under ``scope``.

    Raises:
        RateLimitedError: with ``timeLeft`` seconds while the key is locked out
    """
    ip = get_client_ip(request, trust_proxy_headers=runtime.settings.trust_proxy_headers)
    decision = await runtime.rate_limiter.check(f"{scope}:{ip}")
    if not decision.allowed:
        raise RateLimitedError(
            "too many attempts, try again later", time_left=decision.time_left
        )


def _body_or_cookie_token(
    body: Optional[RefreshTokenRequest], request: Request, runtime: Runtime
) -> Optional[str]:
    if body is not None and body.refresh_token:
        return body.refresh_token
    return read_refresh_token(request, runtime.settings)


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, response: Response):
    """Create a tester account and start a session for it.

    Raises:
        400: payload invalid or email already registered
    """
    runtime = get_runtime()
    result = await runtime.auth.register(body.email, body.full_name, body.password)
    set_auth_cookies(
        response, result.tokens.access_token, result.tokens.refresh_token, runtime.settings
    )
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=UserResponse.from_user(result.user),
            access_token=result.tokens.access_token,
            refresh_token=result.tokens.refresh_token,
        ),
    )


@router.post(
    "/auth/register-company", response_model=Envelope, status_code=201, tags=["auth"]
)
async def register_company(body: RegisterCompanyRequest, response: Response):
    """Create a trial company with its first admin and sign that admin in.

    Raises:
        400: payload invalid or admin email already registered
    """
    runtime = get_runtime()
    result = await runtime.auth.register_company(
        name=body.company_name,
        admin_email=body.admin_email,
        admin_full_name=body.admin_name,
        admin_password=body.admin_password,
        business_type=body.business_type,
        trading_name=body.trading_name,
        industry=body.industry,
        city=body.city,
        state=body.state,
    )
    set_auth_cookies(
        response, result.tokens.access_token, result.tokens.refresh_token, runtime.settings
    )
    return Envelope(
        status="ok",
        data=CompanyRegistrationResponse(
            company=CompanyResponse.from_company(result.company),
            user=UserResponse.from_user(result.user),
            access_token=result.tokens.access_token,
            refresh_token=result.tokens.refresh_token,
        ),
    )


@router.post("/auth/signin", response_model=Envelope, tags=["auth"])
async def signin(body: SigninRequest, request: Request, response: Response):
    """Exchange email and password for a fresh token pair.

    Raises:
        400: invalid credentials (same answer for unknown email and wrong password)
        429: too many attempts from this IP; ``details.timeLeft`` holds the seconds left
    """
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, request, "signin")
    result = await runtime.auth.signin(body.email, body.password)
    set_auth_cookies(
        response, result.tokens.access_token, result.tokens.refresh_token, runtime.settings
    )
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=UserResponse.from_user(result.user),
            access_token=result.tokens.access_token,
            refresh_token=result.tokens.refresh_token,
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    request: Request, response: Response, body: Optional[RefreshTokenRequest] = None
):
    """Rotate a refresh token; the presented token stops working immediately.

    The token comes from the body, or from the refresh cookie when the body
    has none.

    Raises:
        401: token unknown, expired, tampered with, or its user is gone
        429: too many attempts from this IP
        500: unexpected failure while rotating
    """
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, request, "refresh")
    token = _body_or_cookie_token(body, request, runtime)
    if not token:
        raise InvalidRefreshTokenError("refresh token not provided")
    tokens = await runtime.auth.refresh_access_token(token)
    set_auth_cookies(response, tokens.access_token, tokens.refresh_token, runtime.settings)
    return Envelope(
        status="ok",
        data=TokenPairResponse(
            access_token=tokens.access_token, refresh_token=tokens.refresh_token
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request, response: Response, body: Optional[RefreshTokenRequest] = None
):
    """End the session that owns the given refresh token and clear the cookies.

    Raises:
        401: token not present in the store (already logged out or rotated)
        429: too many attempts from this IP
    """
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, request, "logout")
    token = _body_or_cookie_token(body, request, runtime)
    if not token:
        raise InvalidLogoutTokenError("refresh token not provided")
    await runtime.auth.logout(token)
    clear_auth_cookies(response, runtime.settings)
    return Envelope(status="ok", data=MessageResponse(message="logged out"))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
@with_auth
async def me(request: Request):
    """Return the caller as seen in the verified access token.

    Raises:
        401: token missing, or present but invalid
    """
    identity = request.state.identity
    return Envelope(
        status="ok",
        data=MeResponse(
            user=IdentityResponse(id=identity.id, email=identity.email, role=identity.role)
        ),
    )
