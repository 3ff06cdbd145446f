from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    name: Optional[str] = None
    role: str = "user"
    permissions: List[str] = field(default_factory=list)
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    meta: Dict | None = None


@dataclass
class Credential:
    """Secret material and brute-force state for one user.

    ``version`` is bumped by every conditional update so concurrent writers
    can detect that they lost a race.
    """

    user_id: str
    password_hash: Optional[str] = None
    password_algo: Optional[str] = None
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    mfa_enabled: bool = False
    mfa_secret: Optional[str] = None
    backup_code_hashes: List[str] = field(default_factory=list)
    reset_token_hash: Optional[str] = None
    reset_expires_at: Optional[datetime] = None
    version: int = 0
    updated_at: datetime = field(default_factory=utcnow)

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and now < self.locked_until


@dataclass
class Session:
    id: str
    user_id: str
    refresh_token_hash: str
    created_at: datetime
    expires_at: datetime
    fingerprint: Optional[str] = None
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    mfa_verified: bool = False
    rotated_at: Optional[datetime] = None
    revoked: bool = False
    revoked_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        refresh_token_hash: str,
        *,
        now: datetime,
        ttl_minutes: int,
        session_id: str | None = None,
        fingerprint: str | None = None,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        mfa_verified: bool = False,
    ) -> "Session":
        return cls(
            id=session_id or str(uuid.uuid4()),
            user_id=user_id,
            refresh_token_hash=refresh_token_hash,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            fingerprint=fingerprint,
            user_agent=user_agent,
            ip_addr=ip_addr,
            mfa_verified=mfa_verified,
        )

    def is_active(self, now: datetime) -> bool:
        return not self.revoked and now < self.expires_at
