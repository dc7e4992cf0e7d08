from __future__ import annotations

from typing import Optional

from fastapi import Request, Response

from testhub.config import Settings, get_settings


def _cookie_kwargs(settings: Settings) -> dict:
    return {
        "httponly": True,
        "secure": settings.secure_cookies,
        "samesite": "strict",
        "path": "/",
    }


def set_auth_cookies(
    response: Response,
    access_token: str,
    refresh_token: str,
    settings: Optional[Settings] = None,
) -> None:
    """Attach both session cookies; each lives exactly as long as its token."""
    settings = settings or get_settings()
    response.set_cookie(
        settings.access_cookie_name,
        access_token,
        max_age=settings.access_token_ttl_minutes * 60,
        **_cookie_kwargs(settings),
    )
    response.set_cookie(
        settings.refresh_cookie_name,
        refresh_token,
        max_age=settings.refresh_token_ttl_days * 24 * 60 * 60,
        **_cookie_kwargs(settings),
    )


def read_access_token(request: Request, settings: Optional[Settings] = None) -> Optional[str]:
    settings = settings or get_settings()
    return request.cookies.get(settings.access_cookie_name) or None


def read_refresh_token(request: Request, settings: Optional[Settings] = None) -> Optional[str]:
    settings = settings or get_settings()
    return request.cookies.get(settings.refresh_cookie_name) or None


def has_auth_cookies(request: Request, settings: Optional[Settings] = None) -> bool:
    return bool(read_access_token(request, settings) or read_refresh_token(request, settings))


def clear_auth_cookies(response: Response, settings: Optional[Settings] = None) -> None:
    # Overwrite rather than delete_cookie so the attributes match the originals
    settings = settings or get_settings()
    for name in (settings.access_cookie_name, settings.refresh_cookie_name):
        response.set_cookie(name, "", max_age=0, **_cookie_kwargs(settings))
