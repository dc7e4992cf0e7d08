from __future__ import annotations

import itertools
import threading
from datetime import datetime
from typing import Dict, Optional, Tuple

from testhub.logging import get_logger
from testhub.storage.errors import ConstraintViolation
from testhub.storage.models import DEFAULT_ROLE, ROLES, Company, RefreshToken, User, utcnow


def normalize_email(email: str) -> str:
    return email.strip().lower()


class MemoryStore:
    """In-process credential store for tests and single-node development."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.companies: Dict[int, Company] = {}
        self.refresh_tokens: Dict[int, RefreshToken] = {}
        self._user_ids = itertools.count(1)
        self._company_ids = itertools.count(1)
        self._token_ids = itertools.count(1)
        # RLock so compound operations can call the single-row helpers
        self._data_lock = threading.RLock()

    # -- users -------------------------------------------------------------

    def _insert_user(
        self,
        email: str,
        full_name: str,
        password_hash: str,
        *,
        role: str,
        company_id: Optional[int],
        is_active: bool,
    ) -> User:
        if role not in ROLES:
            raise ConstraintViolation("invalid role", {"field": "role"})
        normalized = normalize_email(email)
        if any(existing.email == normalized for existing in self.users.values()):
            raise ConstraintViolation("email already exists", {"field": "email"})
        user = User(
            id=next(self._user_ids),
            email=normalized,
            full_name=full_name,
            password_hash=password_hash,
            role=role,
            is_active=is_active,
            company_id=company_id,
        )
        self.users[user.id] = user
        return user

    def create_user(
        self,
        email: str,
        full_name: str,
        password_hash: str,
        *,
        role: str = DEFAULT_ROLE,
        company_id: Optional[int] = None,
        is_active: bool = True,
    ) -> User:
        with self._data_lock:
            return self._insert_user(
                email,
                full_name,
                password_hash,
                role=role,
                company_id=company_id,
                is_active=is_active,
            )

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def touch_last_login(self, user_id: int, when: Optional[datetime] = None) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.last_login_at = when or utcnow()
            return user

    def set_user_active(self, user_id: int, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            return user

    def update_user_role(self, user_id: int, role: str) -> Optional[User]:
        if role not in ROLES:
            raise ConstraintViolation("invalid role", {"field": "role"})
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            return user

    # -- companies ---------------------------------------------------------

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
    ) -> Tuple[Company, User]:
        with self._data_lock:
            company = Company(
                id=next(self._company_ids),
                name=name,
                business_type=business_type,
                trading_name=trading_name,
                industry=industry,
                city=city,
                state=state,
                trial_ends_at=trial_ends_at,
            )
            # Insert the admin before publishing the company so a duplicate
            # email leaves no orphaned company behind.
            admin = self._insert_user(
                admin_email,
                admin_full_name,
                admin_password_hash,
                role="admin",
                company_id=company.id,
                is_active=True,
            )
            company.created_by = admin.id
            self.companies[company.id] = company
            return company, admin

    def get_company(self, company_id: int) -> Optional[Company]:
        with self._data_lock:
            return self.companies.get(company_id)

    # -- refresh tokens ----------------------------------------------------

    def _insert_refresh_token(
        self, user_id: int, token: str, expires_at: datetime
    ) -> RefreshToken:
        if user_id not in self.users:
            raise ConstraintViolation("user does not exist", {"field": "user_id"})
        if any(existing.token == token for existing in self.refresh_tokens.values()):
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        record = RefreshToken(
            id=next(self._token_ids),
            user_id=user_id,
            token=token,
            expires_at=expires_at,
        )
        self.refresh_tokens[record.id] = record
        return record

    def create_refresh_token(
        self, user_id: int, token: str, expires_at: datetime
    ) -> RefreshToken:
        with self._data_lock:
            return self._insert_refresh_token(user_id, token, expires_at)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            return next(
                (t for t in self.refresh_tokens.values() if t.token == token), None
            )

    def delete_refresh_token(self, token_id: int) -> bool:
        with self._data_lock:
            return self.refresh_tokens.pop(token_id, None) is not None

    def rotate_refresh_token(
        self, old_token_id: int, user_id: int, token: str, expires_at: datetime
    ) -> Optional[RefreshToken]:
        """Consume ``old_token_id`` and issue its successor as one step.

        Returns ``None`` when the old row is already gone, which means another
        request consumed it first.
        """
        with self._data_lock:
            consumed = self.refresh_tokens.pop(old_token_id, None)
            if consumed is None:
                return None
            try:
                return self._insert_refresh_token(user_id, token, expires_at)
            except ConstraintViolation:
                self.refresh_tokens[consumed.id] = consumed
                raise

    def purge_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        cutoff = now or utcnow()
        with self._data_lock:
            expired = [t.id for t in self.refresh_tokens.values() if t.expires_at <= cutoff]
            for token_id in expired:
                del self.refresh_tokens[token_id]
        if expired:
            self.logger.info("refresh_tokens_purged", count=len(expired))
        return len(expired)

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None
