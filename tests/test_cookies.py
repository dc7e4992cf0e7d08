"""Tests for the auth cookie adapter."""

from fastapi import FastAPI, Request, Response
from fastapi.testclient import TestClient

from testhub.api.cookies import (
    clear_auth_cookies,
    has_auth_cookies,
    read_access_token,
    read_refresh_token,
    set_auth_cookies,
)
from testhub.config import Settings


def _settings(tmp_path, **overrides) -> Settings:
    values = {
        "jwt_access_secret": "a" * 40,
        "jwt_refresh_secret": "b" * 40,
        "secrets_root": str(tmp_path),
    }
    values.update(overrides)
    return Settings(**values)


def _set_cookie_headers(response: Response) -> list[str]:
    return [
        value.decode()
        for key, value in response.raw_headers
        if key.decode().lower() == "set-cookie"
    ]


class TestSetCookies:
    def test_attributes_and_lifetimes(self, tmp_path):
        response = Response()
        set_auth_cookies(response, "acc", "ref", _settings(tmp_path, app_env="production"))

        access, refresh = _set_cookie_headers(response)
        assert access.startswith("accessToken=acc;")
        assert refresh.startswith("refreshToken=ref;")
        for header in (access, refresh):
            lowered = header.lower()
            assert "httponly" in lowered
            assert "samesite=strict" in lowered
            assert "path=/" in lowered
            assert "secure" in lowered
        assert "Max-Age=900" in access
        assert "Max-Age=604800" in refresh

    def test_not_secure_in_development(self, tmp_path):
        response = Response()
        set_auth_cookies(response, "acc", "ref", _settings(tmp_path, app_env="development"))
        for header in _set_cookie_headers(response):
            assert "secure" not in header.lower()

    def test_explicit_secure_overrides_development(self, tmp_path):
        response = Response()
        settings = _settings(tmp_path, app_env="development", cookie_secure=True)
        set_auth_cookies(response, "acc", "ref", settings)
        for header in _set_cookie_headers(response):
            assert "secure" in header.lower()


class TestClearCookies:
    def test_clear_sets_empty_values_with_zero_max_age(self, tmp_path):
        response = Response()
        clear_auth_cookies(response, _settings(tmp_path))

        access, refresh = _set_cookie_headers(response)
        assert access.startswith('accessToken="";') or access.startswith("accessToken=;")
        assert refresh.startswith('refreshToken="";') or refresh.startswith("refreshToken=;")
        assert "Max-Age=0" in access
        assert "Max-Age=0" in refresh


class TestReadCookies:
    def test_read_helpers(self):
        app = FastAPI()

        @app.get("/peek")
        async def peek(request: Request):
            return {
                "access": read_access_token(request),
                "refresh": read_refresh_token(request),
                "any": has_auth_cookies(request),
            }

        client = TestClient(app)
        assert client.get("/peek").json() == {"access": None, "refresh": None, "any": False}

        client.cookies.set("refreshToken", "ref")
        assert client.get("/peek").json() == {"access": None, "refresh": "ref", "any": True}
