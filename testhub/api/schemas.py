from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from testhub.logging import get_correlation_id
from testhub.storage.models import Company, User

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "email_in_use",
    "invalid_credentials",
    "token_missing",
    "token_invalid",
    "invalid_refresh_token",
    "expired_refresh_token",
    "user_not_found",
    "invalid_logout_token",
    "refresh_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable machine-readable code."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Response envelope shared by every endpoint."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


def _normalize_unicode(value: str) -> str:
    # Drop control characters, then NFKC so look-alike forms compare equal
    cleaned = "".join(ch for ch in value if unicodedata.category(ch) != "Cc")
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_new_password(value: str) -> str:
    if len(value) < 6:
        raise ValueError("password must be at least 6 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


def _strip_required(value: str) -> str:
    stripped = value.strip()
    if not stripped:
        raise ValueError("must not be blank")
    return stripped


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RegisterRequest(_CamelModel):
    email: str
    password: str
    full_name: str = Field(..., alias="fullName", max_length=120)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_new_password(value)

    @field_validator("full_name")
    @classmethod
    def _validate_full_name(cls, value: str) -> str:
        return _strip_required(value)


class SigninRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_signin_email(cls, value: str) -> str:
        return _validate_email(value)


class RefreshTokenRequest(_CamelModel):
    """Body for refresh and logout; the token may instead come from the cookie."""

    refresh_token: Optional[str] = Field(
        default=None, alias="refreshToken", min_length=1, max_length=2048
    )


class RegisterCompanyRequest(_CamelModel):
    company_name: str = Field(..., alias="companyName", min_length=2, max_length=200)
    business_type: Literal["software_house", "tech_department", "consultancy", "other"] = Field(
        default="tech_department", alias="businessType"
    )
    admin_name: str = Field(..., alias="adminName", min_length=2, max_length=120)
    admin_email: str = Field(..., alias="adminEmail")
    admin_password: str = Field(..., alias="adminPassword")
    trading_name: Optional[str] = Field(default=None, alias="tradingName", max_length=200)
    industry: Optional[str] = Field(default=None, max_length=120)
    city: Optional[str] = Field(default=None, max_length=120)
    state: Optional[str] = Field(default=None, max_length=2)

    @field_validator("admin_email")
    @classmethod
    def _validate_admin_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("admin_password")
    @classmethod
    def _validate_admin_password(cls, value: str) -> str:
        return _validate_new_password(value)


class UserResponse(_CamelModel):
    id: int
    email: str
    full_name: str = Field(..., alias="fullName")
    role: str
    is_active: bool = Field(..., alias="isActive")
    company_id: Optional[int] = Field(default=None, alias="companyId")
    last_login_at: Optional[datetime] = Field(default=None, alias="lastLoginAt")
    created_at: datetime = Field(..., alias="createdAt")

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            full_name=user.full_name,
            role=user.role,
            is_active=user.is_active,
            company_id=user.company_id,
            last_login_at=user.last_login_at,
            created_at=user.created_at,
        )


class CompanyResponse(_CamelModel):
    id: int
    name: str
    business_type: str = Field(..., alias="businessType")
    trading_name: Optional[str] = Field(default=None, alias="tradingName")
    plan_type: str = Field(..., alias="planType")
    max_projects: int = Field(..., alias="maxProjects")
    max_users: int = Field(..., alias="maxUsers")
    max_storage_gb: int = Field(..., alias="maxStorageGb")
    trial_ends_at: Optional[datetime] = Field(default=None, alias="trialEndsAt")

    @classmethod
    def from_company(cls, company: Company) -> "CompanyResponse":
        return cls(
            id=company.id,
            name=company.name,
            business_type=company.business_type,
            trading_name=company.trading_name,
            plan_type=company.plan_type,
            max_projects=company.max_projects,
            max_users=company.max_users,
            max_storage_gb=company.max_storage_gb,
            trial_ends_at=company.trial_ends_at,
        )


class TokenPairResponse(_CamelModel):
    access_token: str = Field(..., alias="accessToken")
    refresh_token: str = Field(..., alias="refreshToken")


class AuthResponse(TokenPairResponse):
    user: UserResponse


class CompanyRegistrationResponse(AuthResponse):
    company: CompanyResponse


class IdentityResponse(BaseModel):
    id: int
    email: str
    role: str


class MeResponse(BaseModel):
    user: IdentityResponse


class MessageResponse(BaseModel):
    message: str
