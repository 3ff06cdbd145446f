from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional

from authcore.logging import get_logger
from authcore.service.errors import AccountLocked, InvalidCredentials, StoreUnavailable
from authcore.service.retry import call_store
from authcore.storage.models import Credential, utcnow

logger = get_logger(__name__)

if TYPE_CHECKING:
    from authcore.service.auth import AuthStore


class LockoutManager:
    """Brute-force lockout over the credential record.

    States are UNLOCKED and LOCKED(until). Every transition is a conditional
    update on ``Credential.version``; losing a race re-reads and recomputes.
    """

    def __init__(
        self,
        store: "AuthStore",
        *,
        threshold: int = 5,
        lock_minutes: int = 30,
        clock: Callable[[], datetime] = utcnow,
        max_cas_attempts: int = 5,
    ) -> None:
        self.store = store
        self.threshold = threshold
        self.lock_duration = timedelta(minutes=lock_minutes)
        self.clock = clock
        self.max_cas_attempts = max_cas_attempts

    def ensure_unlocked(self, credential: Credential) -> Credential:
        """Raise AccountLocked while the lock holds; clear an expired lock.

        No hash verification happens on the locked path.
        """
        now = self.clock()
        if credential.is_locked(now):
            logger.info(
                "login_rejected_locked",
                user_id=credential.user_id,
                locked_until=credential.locked_until.isoformat(),
            )
            raise AccountLocked(credential.locked_until)
        if credential.locked_until is None:
            return credential

        def _unlock(cred: Credential) -> Optional[Dict[str, Any]]:
            if cred.locked_until is None:
                return None
            if cred.is_locked(self.clock()):
                raise AccountLocked(cred.locked_until)
            return {"failed_attempts": 0, "locked_until": None}

        updated = self._apply(credential, _unlock)
        logger.info("account_lock_expired", user_id=credential.user_id)
        return updated

    def record_failure(self, credential: Credential) -> Credential:
        def _fail(cred: Credential) -> Optional[Dict[str, Any]]:
            now = self.clock()
            if cred.is_locked(now):
                return None
            attempts = cred.failed_attempts + 1
            if cred.locked_until is not None:
                # lock already expired; this failure starts a fresh count
                attempts = 1
            fields: Dict[str, Any] = {"failed_attempts": attempts, "locked_until": None}
            if attempts >= self.threshold:
                fields["locked_until"] = now + self.lock_duration
            return fields

        updated = self._apply(credential, _fail)
        if updated.is_locked(self.clock()):
            logger.warning(
                "account_locked",
                user_id=updated.user_id,
                attempts=updated.failed_attempts,
                locked_until=updated.locked_until.isoformat(),
            )
        return updated

    def record_success(self, credential: Credential) -> Credential:
        def _succeed(cred: Credential) -> Optional[Dict[str, Any]]:
            if cred.failed_attempts == 0 and cred.locked_until is None:
                return None
            return {"failed_attempts": 0, "locked_until": None}

        return self._apply(credential, _succeed)

    def _apply(
        self,
        credential: Credential,
        compute: Callable[[Credential], Optional[Dict[str, Any]]],
    ) -> Credential:
        return apply_credential_update(
            self.store, credential, compute, max_attempts=self.max_cas_attempts
        )


def apply_credential_update(
    store: "AuthStore",
    credential: Credential,
    compute: Callable[[Credential], Optional[Dict[str, Any]]],
    *,
    max_attempts: int = 5,
) -> Credential:
    """Conditionally update a credential, recomputing after each lost race.

    ``compute`` returns the fields to write, or None when no change is needed.
    """
    current = credential
    for _ in range(max_attempts):
        fields = compute(current)
        if fields is None:
            return current
        updated = call_store(
            store.update_credential,
            current.user_id,
            current.version,
            **fields,
        )
        if updated is not None:
            return updated
        refreshed = call_store(store.get_credential, current.user_id)
        if refreshed is None:
            raise InvalidCredentials()
        current = refreshed
    logger.error(
        "credential_update_contention",
        user_id=credential.user_id,
        attempts=max_attempts,
    )
    raise StoreUnavailable("credential update contention")
