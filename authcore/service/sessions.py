from __future__ import annotations

import hashlib
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Optional

from authcore.logging import get_logger
from authcore.service.errors import SessionNotFound, SessionReplay
from authcore.service.retry import call_store, read_with_retry
from authcore.storage.models import Session, utcnow

if TYPE_CHECKING:
    from authcore.service.auth import AuthStore


def session_fingerprint(ip_addr: Optional[str], user_agent: Optional[str]) -> str:
    return hashlib.sha256(f"{ip_addr or ''}|{user_agent or ''}".encode()).hexdigest()


class SessionStore:
    """Refresh-token sessions with compare-and-swap rotation.

    A session's refresh hash can only move forward: a rotation that does not
    present the current hash is a replay, and the session is revoked.

    Lookups are retried with backoff on backend timeouts; writes run once.
    """

    def __init__(
        self,
        store: "AuthStore",
        *,
        ttl_minutes: int,
        replay_revokes_all: bool = True,
        retry_attempts: int = 3,
        retry_backoff: float = 0.05,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.ttl_minutes = ttl_minutes
        self.replay_revokes_all = replay_revokes_all
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff
        self.clock = clock
        self.logger = get_logger(__name__)

    async def _read(self, fn: Callable[..., Any], *args: Any) -> Any:
        return await read_with_retry(
            fn, *args, attempts=self.retry_attempts, base=self.retry_backoff
        )

    def create(
        self,
        user_id: str,
        refresh_token_hash: str,
        *,
        session_id: Optional[str] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
        mfa_verified: bool = False,
    ) -> Session:
        session = Session.new(
            user_id,
            refresh_token_hash,
            now=self.clock(),
            ttl_minutes=self.ttl_minutes,
            session_id=session_id,
            fingerprint=session_fingerprint(ip_addr, user_agent),
            user_agent=user_agent,
            ip_addr=ip_addr,
            mfa_verified=mfa_verified,
        )
        created = call_store(self.store.create_session, session)
        self.logger.info("session_created", user_id=user_id, session_id=created.id)
        return created

    async def find_active(self, user_id: str, refresh_token_hash: str) -> Session:
        session = await self._read(
            self.store.find_active_session, user_id, refresh_token_hash, self.clock()
        )
        if session is None:
            raise SessionNotFound()
        return session

    async def get_active(self, session_id: Optional[str]) -> Session:
        if not session_id:
            raise SessionNotFound()
        session = await self._read(self.store.get_session, session_id)
        if session is None or not session.is_active(self.clock()):
            raise SessionNotFound()
        return session

    async def rotate(
        self,
        session: Session,
        presented_hash: str,
        new_hash: str,
        *,
        expires_at: datetime,
    ) -> Session:
        rotated = call_store(
            self.store.rotate_session,
            session.id,
            presented_hash,
            new_hash,
            rotated_at=self.clock(),
            expires_at=expires_at,
        )
        if rotated is None:
            # a concurrent refresh won the swap; the presented token is now stale
            await self.handle_mismatch(session.id, session.user_id)
        self.logger.info("session_rotated", user_id=session.user_id, session_id=session.id)
        return rotated

    async def handle_mismatch(self, session_id: Optional[str], user_id: str) -> None:
        """React to a refresh token that no longer matches its session.

        Raises SessionReplay after revoking when the session is still live,
        SessionNotFound when it is gone, revoked, or expired.
        """
        session = await self._read(self.store.get_session, session_id) if session_id else None
        if session is None or session.user_id != user_id:
            raise SessionNotFound()
        now = self.clock()
        if not session.is_active(now):
            raise SessionNotFound()
        if self.replay_revokes_all:
            revoked = call_store(
                self.store.revoke_user_sessions, user_id, revoked_at=now
            )
        else:
            revoked = int(
                call_store(self.store.revoke_session, session.id, revoked_at=now)
            )
        self.logger.warning(
            "refresh_token_replay",
            user_id=user_id,
            session_id=session.id,
            sessions_revoked=revoked,
        )
        raise SessionReplay()

    def revoke(self, session_id: str) -> bool:
        revoked = call_store(self.store.revoke_session, session_id, revoked_at=self.clock())
        if revoked:
            self.logger.info("session_revoked", session_id=session_id)
        return revoked

    def revoke_all(self, user_id: str) -> int:
        count = call_store(
            self.store.revoke_user_sessions, user_id, revoked_at=self.clock()
        )
        self.logger.info("sessions_revoked_all", user_id=user_id, count=count)
        return count
