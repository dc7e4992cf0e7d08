from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from testhub.config import Settings
from testhub.logging import get_logger
from testhub.service.errors import (
    CorruptedRefreshTokenError,
    EmailInUseError,
    ExpiredRefreshTokenError,
    InvalidCredentialsError,
    InvalidLogoutTokenError,
    InvalidRefreshTokenError,
    RefreshError,
    RefreshTokenError,
    RefreshUserNotFoundError,
    TokenMismatchError,
)
from testhub.service.tokens import TokenCodec, TokenError, TokenKind
from testhub.storage.errors import ConstraintViolation
from testhub.storage.models import DEFAULT_ROLE, Company, RefreshToken, User

logger = get_logger(__name__)

# Length of the token prefix written to security logs
_LOG_PREFIX_LENGTH = 10


def _log_prefix(token: str) -> str:
    # JWT headers are constant, so take the prefix from the signature segment
    return token.rsplit(".", 1)[-1][:_LOG_PREFIX_LENGTH]


TRIAL_PERIOD_DAYS = 30


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        full_name: str,
        password_hash: str,
        *,
        role: str = DEFAULT_ROLE,
        company_id: Optional[int] = None,
        is_active: bool = True,
    ) -> User: ...

    def get_user(self, user_id: int) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def touch_last_login(self, user_id: int, when: Optional[datetime] = None) -> Optional[User]: ...

    def create_company_with_admin(
        self,
        *,
        name: str,
        business_type: str,
        trading_name: Optional[str],
        industry: Optional[str],
        city: Optional[str],
        state: Optional[str],
        trial_ends_at: Optional[datetime],
        admin_email: str,
        admin_full_name: str,
        admin_password_hash: str,
    ) -> Tuple[Company, User]: ...

    def create_refresh_token(
        self, user_id: int, token: str, expires_at: datetime
    ) -> RefreshToken: ...

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def delete_refresh_token(self, token_id: int) -> bool: ...

    def rotate_refresh_token(
        self, old_token_id: int, user_id: int, token: str, expires_at: datetime
    ) -> Optional[RefreshToken]: ...


@dataclass
class Identity:
    """Who is making a request, as proven by a verified access token."""

    id: int
    email: str
    role: str


@dataclass
class SessionTokens:
    access_token: str
    refresh_token: str


@dataclass
class AuthResult:
    user: User
    tokens: SessionTokens


@dataclass
class CompanyRegistration:
    company: Company
    user: User
    tokens: SessionTokens


class SessionService:
    """Registration, sign-in, refresh-token rotation and logout.

    This is the only component that mints tokens or writes refresh-token
    rows. Access tokens are never persisted; refresh tokens are single-use
    and replaced on every successful refresh.
    """

    def __init__(self, store: AuthStore, codec: TokenCodec, settings: Settings) -> None:
        self.store: AuthStore = store
        self.codec = codec
        self.settings = settings
        self._pwd_hasher = PasswordHasher(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_kib,
            type=Type.ID,
        )
        # Compared against when the email is unknown so both paths do the same work
        self._dummy_hash = self._pwd_hasher.hash("testhub-timing-equalizer")
        self.logger = logger

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_password(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerificationError):
            return False

    def _issue_tokens(self, user: User) -> SessionTokens:
        access_token = self.codec.mint_access_token(user.id, user.email, user.role)
        refresh_token = self.codec.mint_refresh_token(user.id)
        return SessionTokens(access_token=access_token, refresh_token=refresh_token)

    def _refresh_expiry(self) -> datetime:
        return self._now() + timedelta(seconds=self.codec.ttl_seconds(TokenKind.REFRESH))

    def _start_session(self, user: User) -> SessionTokens:
        tokens = self._issue_tokens(user)
        self.store.create_refresh_token(user.id, tokens.refresh_token, self._refresh_expiry())
        return tokens

    async def register(self, email: str, full_name: str, password: str) -> AuthResult:
        if self.store.get_user_by_email(email):
            raise EmailInUseError("email already registered")
        password_hash = self.hash_password(password)
        try:
            user = self.store.create_user(
                email, full_name, password_hash, role=DEFAULT_ROLE, is_active=True
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration for the same email
            if exc.field == "email":
                raise EmailInUseError("email already registered") from exc
            raise
        tokens = self._start_session(user)
        self.logger.info("user_registered", user_id=user.id, role=user.role)
        return AuthResult(user=user, tokens=tokens)

    async def register_company(
        self,
        *,
        name: str,
        admin_email: str,
        admin_full_name: str,
        admin_password: str,
        business_type: str = "tech_department",
        trading_name: Optional[str] = None,
        industry: Optional[str] = None,
        city: Optional[str] = None,
        state: Optional[str] = None,
    ) -> CompanyRegistration:
        """Create a trial company together with its first admin account."""
        if self.store.get_user_by_email(admin_email):
            raise EmailInUseError("email already registered")
        password_hash = self.hash_password(admin_password)
        try:
            company, user = self.store.create_company_with_admin(
                name=name,
                business_type=business_type,
                trading_name=trading_name,
                industry=industry,
                city=city,
                state=state,
                trial_ends_at=self._now() + timedelta(days=TRIAL_PERIOD_DAYS),
                admin_email=admin_email,
                admin_full_name=admin_full_name,
                admin_password_hash=password_hash,
            )
        except ConstraintViolation as exc:
            if exc.field == "email":
                raise EmailInUseError("email already registered") from exc
            raise
        tokens = self._start_session(user)
        self.logger.info("company_registered", company_id=company.id, user_id=user.id)
        return CompanyRegistration(company=company, user=user, tokens=tokens)

    async def signin(self, email: str, password: str) -> AuthResult:
        user = self.store.get_user_by_email(email)
        if user is None:
            # Same hashing work as a real account, then the same failure
            self._verify_password(self._dummy_hash, password)
            raise InvalidCredentialsError("invalid email or password")
        if not self._verify_password(user.password_hash, password) or not user.is_active:
            raise InvalidCredentialsError("invalid email or password")
        user = self.store.touch_last_login(user.id, self._now()) or user
        tokens = self._start_session(user)
        self.logger.info("user_signed_in", user_id=user.id)
        return AuthResult(user=user, tokens=tokens)

    async def refresh_access_token(self, refresh_token: str) -> SessionTokens:
        """Exchange a refresh token for a new access/refresh pair.

        The stored row is looked up before any signature check. Every
        rejection is logged before the row is deleted, since the row is the
        only evidence of why the token died.

        Raises:
            InvalidRefreshTokenError: token unknown, already rotated or logged out
            ExpiredRefreshTokenError: stored row past its expiry
            CorruptedRefreshTokenError: stored row whose signature no longer verifies
            TokenMismatchError: signed user id differs from the stored owner
            RefreshUserNotFoundError: owner missing or deactivated
            RefreshError: anything unexpected
        """
        try:
            return self._rotate(refresh_token)
        except RefreshTokenError:
            raise
        except Exception as exc:
            self.logger.exception(
                "refresh_unexpected_error",
                error_type=type(exc).__name__,
                token_prefix=_log_prefix(refresh_token),
            )
            raise RefreshError("could not refresh session") from exc

    def _discard(self, record: RefreshToken) -> None:
        self.store.delete_refresh_token(record.id)

    def _rotate(self, refresh_token: str) -> SessionTokens:
        prefix = _log_prefix(refresh_token)
        record = self.store.get_refresh_token(refresh_token)
        if record is None:
            self.logger.warning("refresh_token_unknown", token_prefix=prefix)
            raise InvalidRefreshTokenError("invalid refresh token")

        if record.is_expired(self._now()):
            self.logger.warning(
                "refresh_token_expired",
                token_prefix=prefix,
                token_id=record.id,
                user_id=record.user_id,
                expired_at=record.expires_at.isoformat(),
            )
            self._discard(record)
            raise ExpiredRefreshTokenError("refresh token expired")

        try:
            payload = self.codec.verify(refresh_token, TokenKind.REFRESH)
        except TokenError as exc:
            self.logger.error(
                "refresh_token_corrupted",
                token_prefix=prefix,
                token_id=record.id,
                user_id=record.user_id,
                failure=type(exc).__name__,
            )
            self._discard(record)
            raise CorruptedRefreshTokenError("invalid refresh token") from exc

        if payload["user_id"] != record.user_id:
            self.logger.critical(
                "refresh_token_user_mismatch",
                alert=True,
                token_prefix=prefix,
                token_id=record.id,
                stored_user_id=record.user_id,
                signed_user_id=payload["user_id"],
            )
            self._discard(record)
            raise TokenMismatchError("invalid refresh token")

        user = self.store.get_user(payload["user_id"])
        if user is None or not user.is_active:
            self.logger.warning(
                "refresh_token_user_unavailable",
                token_prefix=prefix,
                token_id=record.id,
                user_id=record.user_id,
                user_exists=user is not None,
            )
            self._discard(record)
            raise RefreshUserNotFoundError("user not found or inactive")

        tokens = self._issue_tokens(user)
        successor = self.store.rotate_refresh_token(
            record.id, user.id, tokens.refresh_token, self._refresh_expiry()
        )
        if successor is None:
            # Another request consumed this row between lookup and rotation
            self.logger.warning(
                "refresh_token_concurrent_reuse", token_prefix=prefix, token_id=record.id
            )
            raise InvalidRefreshTokenError("invalid refresh token")
        self.logger.info("refresh_token_rotated", user_id=user.id, token_id=successor.id)
        return tokens

    async def logout(self, refresh_token: str) -> None:
        record = self.store.get_refresh_token(refresh_token)
        if record is None or not self.store.delete_refresh_token(record.id):
            self.logger.info(
                "logout_token_unknown", token_prefix=_log_prefix(refresh_token)
            )
            raise InvalidLogoutTokenError("invalid logout token")
        self.logger.info("user_logged_out", user_id=record.user_id)


def role_allows(role: str, allowed: List[str]) -> bool:
    if role in allowed:
        return True
    return role == "admin"


def identity_from_claims(claims: dict[str, Any]) -> Identity:
    return Identity(id=claims["user_id"], email=claims.get("email", ""), role=claims.get("role", ""))
