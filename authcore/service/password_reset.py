from __future__ import annotations

import hashlib
import secrets
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable

from authcore.logging import get_logger
from authcore.service.errors import (
    ResetCodeExpired,
    ResetCodeInvalid,
    StoreUnavailable,
    ValidationError,
)
from authcore.service.lockout import apply_credential_update
from authcore.service.passwords import PasswordHasher
from authcore.service.retry import call_store
from authcore.service.sessions import SessionStore
from authcore.storage.models import utcnow

if TYPE_CHECKING:
    from authcore.service.auth import AuthStore


def hash_reset_code(raw_code: str) -> str:
    return hashlib.sha256((raw_code or "").strip().encode()).hexdigest()


class PasswordResetFlow:
    """Single-use, time-boxed reset codes.

    Only the sha256 of a code is stored. Redeeming swaps the password hash,
    advances ``password_changed_at`` and clears the lockout in one conditional
    update, then revokes every session of the user.
    """

    def __init__(
        self,
        store: "AuthStore",
        hasher: PasswordHasher,
        sessions: SessionStore,
        *,
        ttl_minutes: int = 10,
        clock: Callable[[], datetime] = utcnow,
        max_cas_attempts: int = 5,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.sessions = sessions
        self.ttl = timedelta(minutes=ttl_minutes)
        self.clock = clock
        self.max_cas_attempts = max_cas_attempts
        self.logger = get_logger(__name__)

    def issue(self, user_id: str) -> str:
        """Create a new code for ``user_id``, replacing any pending one."""
        raw_code = secrets.token_hex(32)
        code_hash = hash_reset_code(raw_code)
        cred = call_store(self.store.get_credential, user_id)
        if cred is None:
            raise ResetCodeInvalid()
        updated = apply_credential_update(
            self.store,
            cred,
            lambda _current: {
                "reset_token_hash": code_hash,
                "reset_expires_at": self.clock() + self.ttl,
            },
            max_attempts=self.max_cas_attempts,
        )
        self.logger.info(
            "password_reset_issued",
            user_id=user_id,
            expires_at=updated.reset_expires_at.isoformat(),
        )
        return raw_code

    def redeem(self, raw_code: str, new_password: str) -> str:
        """Consume ``raw_code`` and set ``new_password``; returns the user id."""
        code_hash = hash_reset_code(raw_code)
        new_hash = None
        for _ in range(self.max_cas_attempts):
            cred = call_store(self.store.find_credential_by_reset_hash, code_hash)
            if cred is None:
                self.logger.warning("password_reset_code_invalid")
                raise ResetCodeInvalid()
            now = self.clock()
            if cred.reset_expires_at is None or now >= cred.reset_expires_at:
                call_store(
                    self.store.update_credential,
                    cred.user_id,
                    cred.version,
                    reset_token_hash=None,
                    reset_expires_at=None,
                )
                self.logger.info("password_reset_code_expired", user_id=cred.user_id)
                raise ResetCodeExpired()
            if self.hasher.verify(new_password, cred.password_hash):
                raise ValidationError(
                    "new password must differ from the current password",
                    detail={"field": "new_password"},
                )
            if new_hash is None:
                new_hash = self.hasher.hash(new_password)
            updated = call_store(
                self.store.update_credential,
                cred.user_id,
                cred.version,
                password_hash=new_hash,
                password_algo=self.hasher.algo,
                password_changed_at=now,
                failed_attempts=0,
                locked_until=None,
                reset_token_hash=None,
                reset_expires_at=None,
            )
            if updated is None:
                continue
            self.sessions.revoke_all(cred.user_id)
            self.logger.info("password_reset_completed", user_id=cred.user_id)
            return cred.user_id
        raise StoreUnavailable("credential update contention")
