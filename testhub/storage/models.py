from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

ROLES = ("admin", "manager", "tester", "guest")
DEFAULT_ROLE = "tester"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: int
    email: str
    full_name: str
    password_hash: str
    role: str = DEFAULT_ROLE
    is_active: bool = True
    company_id: Optional[int] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class RefreshToken:
    id: int
    user_id: int
    token: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class Company:
    id: int
    name: str
    business_type: str = "tech_department"
    trading_name: Optional[str] = None
    industry: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    plan_type: str = "trial"
    max_projects: int = 5
    max_users: int = 15
    max_storage_gb: int = 10
    trial_ends_at: Optional[datetime] = None
    created_by: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)
