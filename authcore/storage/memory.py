from __future__ import annotations

import json
import os
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence

from authcore.logging import get_logger
from authcore.storage.common import (
    format_datetime,
    generate_uuid,
    normalize_email,
    normalize_permissions,
    normalize_user_meta,
    parse_datetime,
    parse_ip_address,
)
from authcore.storage.errors import BackendUnavailable, ConstraintViolation
from authcore.storage.models import Credential, Session, User, utcnow

_CREDENTIAL_FIELDS = frozenset(
    {
        "password_hash",
        "password_algo",
        "failed_attempts",
        "locked_until",
        "password_changed_at",
        "mfa_enabled",
        "mfa_secret",
        "backup_code_hashes",
        "reset_token_hash",
        "reset_expires_at",
    }
)


class MemoryStore:
    """In-process auth store persisted to a JSON snapshot under ``fs_root``.

    Every public method takes ``_data_lock`` with a bounded wait and returns
    copies, so callers never mutate stored records directly.
    """

    def __init__(
        self,
        fs_root: str = "/tmp/authcore",
        *,
        lock_timeout: float = 5.0,
        session_retention: timedelta = timedelta(days=1),
    ) -> None:
        self.logger = get_logger(__name__)
        # expired or revoked sessions are kept this long, then dropped on write
        self.session_retention = session_retention
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, Credential] = {}
        self.sessions: Dict[str, Session] = {}
        # RLock so helpers can re-enter while a public method holds it
        self._data_lock = threading.RLock()
        self.lock_timeout = lock_timeout
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        if not self._load_state():
            self._persist_state()

    @contextmanager
    def _locked(self) -> Iterator[None]:
        if not self._data_lock.acquire(timeout=self.lock_timeout):
            self.logger.error("memory_store_lock_timeout", timeout=self.lock_timeout)
            raise BackendUnavailable("memory store lock timeout", backend="memory")
        try:
            yield
        finally:
            self._data_lock.release()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    # ------------------------------------------------------------------
    # users
    # ------------------------------------------------------------------
    def create_user(
        self,
        email: str,
        *,
        password_hash: str,
        password_algo: str = "argon2id",
        name: Optional[str] = None,
        role: str = "user",
        permissions: Optional[Sequence[str]] = None,
        is_active: bool = True,
        meta: Optional[Dict] = None,
    ) -> User:
        """Create a user and its credential record in one step."""
        normalized = normalize_email(email)
        with self._locked():
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = utcnow()
            user = User(
                id=generate_uuid(),
                email=normalized,
                name=name,
                role=role,
                permissions=normalize_permissions(permissions),
                is_active=is_active,
                created_at=now,
                meta=normalize_user_meta(meta),
            )
            self.users[user.id] = user
            self.credentials[user.id] = Credential(
                user_id=user.id,
                password_hash=password_hash,
                password_algo=password_algo,
                password_changed_at=None,
                updated_at=now,
            )
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._locked():
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._locked():
            for user in self.users.values():
                if user.email == normalized:
                    return replace(user)
            return None

    def update_user_role(
        self,
        user_id: str,
        role: str,
        permissions: Optional[Sequence[str]] = None,
    ) -> Optional[User]:
        with self._locked():
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            if permissions is not None:
                user.permissions = normalize_permissions(permissions)
            self._persist_state()
            return replace(user)

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._locked():
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            self._persist_state()
            return replace(user)

    # ------------------------------------------------------------------
    # credentials
    # ------------------------------------------------------------------
    def get_credential(self, user_id: str) -> Optional[Credential]:
        with self._locked():
            cred = self.credentials.get(user_id)
            return self._copy_credential(cred) if cred else None

    def update_credential(
        self, user_id: str, expected_version: int, **fields
    ) -> Optional[Credential]:
        """Apply ``fields`` only if the stored version still matches.

        Returns the updated record, or None when the record is missing or
        another writer got there first.
        """
        unknown = set(fields) - _CREDENTIAL_FIELDS
        if unknown:
            raise ValueError(f"unknown credential fields: {sorted(unknown)}")
        with self._locked():
            cred = self.credentials.get(user_id)
            if not cred or cred.version != expected_version:
                return None
            for key, value in fields.items():
                if key == "backup_code_hashes":
                    value = list(value or [])
                setattr(cred, key, value)
            cred.version += 1
            cred.updated_at = utcnow()
            self._persist_state()
            return self._copy_credential(cred)

    def find_credential_by_reset_hash(self, token_hash: str) -> Optional[Credential]:
        if not token_hash:
            return None
        with self._locked():
            for cred in self.credentials.values():
                if cred.reset_token_hash == token_hash:
                    return self._copy_credential(cred)
            return None

    def consume_backup_code(self, user_id: str, code_hash: str) -> bool:
        with self._locked():
            cred = self.credentials.get(user_id)
            if not cred or code_hash not in cred.backup_code_hashes:
                return False
            cred.backup_code_hashes = [
                h for h in cred.backup_code_hashes if h != code_hash
            ]
            cred.version += 1
            cred.updated_at = utcnow()
            self._persist_state()
            return True

    @staticmethod
    def _copy_credential(cred: Credential) -> Credential:
        return replace(cred, backup_code_hashes=list(cred.backup_code_hashes))

    # ------------------------------------------------------------------
    # sessions
    # ------------------------------------------------------------------
    def create_session(self, session: Session) -> Session:
        with self._locked():
            self._prune_sessions(session.created_at)
            if session.id in self.sessions:
                raise ConstraintViolation("session already exists", {"field": "id"})
            for existing in self.sessions.values():
                if (
                    not existing.revoked
                    and existing.refresh_token_hash == session.refresh_token_hash
                ):
                    raise ConstraintViolation(
                        "refresh token already bound", {"field": "refresh_token_hash"}
                    )
            stored = replace(session, ip_addr=parse_ip_address(session.ip_addr))
            self.sessions[stored.id] = stored
            self._persist_state()
            return replace(stored)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._locked():
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._locked():
            return [replace(s) for s in self.sessions.values() if s.user_id == user_id]

    def find_active_session(
        self, user_id: str, refresh_token_hash: str, now: datetime
    ) -> Optional[Session]:
        with self._locked():
            for sess in self.sessions.values():
                if (
                    sess.user_id == user_id
                    and sess.refresh_token_hash == refresh_token_hash
                    and sess.is_active(now)
                ):
                    return replace(sess)
            return None

    def rotate_session(
        self,
        session_id: str,
        expected_hash: str,
        new_hash: str,
        *,
        rotated_at: datetime,
        expires_at: datetime,
    ) -> Optional[Session]:
        """Swap the refresh hash if ``expected_hash`` is still current."""
        with self._locked():
            sess = self.sessions.get(session_id)
            if not sess or sess.revoked or sess.refresh_token_hash != expected_hash:
                return None
            sess.refresh_token_hash = new_hash
            sess.rotated_at = rotated_at
            sess.expires_at = expires_at
            self._prune_sessions(rotated_at)
            self._persist_state()
            return replace(sess)

    def revoke_session(self, session_id: str, *, revoked_at: datetime) -> bool:
        with self._locked():
            sess = self.sessions.get(session_id)
            if not sess or sess.revoked:
                return False
            sess.revoked = True
            sess.revoked_at = revoked_at
            self._prune_sessions(revoked_at)
            self._persist_state()
            return True

    def revoke_user_sessions(self, user_id: str, *, revoked_at: datetime) -> int:
        with self._locked():
            count = 0
            for sess in self.sessions.values():
                if sess.user_id == user_id and not sess.revoked:
                    sess.revoked = True
                    sess.revoked_at = revoked_at
                    count += 1
            pruned = self._prune_sessions(revoked_at)
            if count or pruned:
                self._persist_state()
            return count

    # ------------------------------------------------------------------
    # persistence
    # ------------------------------------------------------------------
    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                self._serialize_credential(c) for c in self.credentials.values()
            ],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
        }
        try:
            path = self._state_path()
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".auth_store")
            with os.fdopen(fd, "w") as handle:
                handle.write(json.dumps(state, indent=2))
            os.replace(tmp_name, path)
        except OSError as exc:
            self.logger.error("memory_store_persist_failed", error=str(exc))
            self._restore_state()
            raise BackendUnavailable(
                f"failed to persist in-memory state: {exc}", backend="memory"
            ) from exc

    def _restore_state(self) -> None:
        """Roll in-memory records back to the last persisted snapshot."""
        try:
            self._load_state()
        except (OSError, ValueError) as exc:
            self.logger.error("memory_store_restore_failed", error=str(exc))

    def _prune_sessions(self, now: datetime) -> int:
        """Drop sessions that expired or were revoked before the retention cutoff."""
        cutoff = now - self.session_retention
        dead = [
            sid
            for sid, sess in self.sessions.items()
            if sess.expires_at <= cutoff
            or (sess.revoked and sess.revoked_at is not None and sess.revoked_at <= cutoff)
        ]
        for sid in dead:
            del self.sessions[sid]
        if dead:
            self.logger.info("memory_store_sessions_pruned", count=len(dead))
        return len(dead)

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            c["user_id"]: self._deserialize_credential(c)
            for c in data.get("credentials", [])
        }
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "role": user.role,
            "permissions": list(user.permissions),
            "is_active": user.is_active,
            "created_at": format_datetime(user.created_at),
            "meta": user.meta,
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=data["id"],
            email=data["email"],
            name=data.get("name"),
            role=data.get("role", "user"),
            permissions=normalize_permissions(data.get("permissions")),
            is_active=data.get("is_active", True),
            created_at=parse_datetime(data.get("created_at")) or utcnow(),
            meta=data.get("meta"),
        )

    def _serialize_credential(self, cred: Credential) -> dict:
        return {
            "user_id": cred.user_id,
            "password_hash": cred.password_hash,
            "password_algo": cred.password_algo,
            "failed_attempts": cred.failed_attempts,
            "locked_until": format_datetime(cred.locked_until),
            "password_changed_at": format_datetime(cred.password_changed_at),
            "mfa_enabled": cred.mfa_enabled,
            "mfa_secret": cred.mfa_secret,
            "backup_code_hashes": list(cred.backup_code_hashes),
            "reset_token_hash": cred.reset_token_hash,
            "reset_expires_at": format_datetime(cred.reset_expires_at),
            "version": cred.version,
            "updated_at": format_datetime(cred.updated_at),
        }

    def _deserialize_credential(self, data: dict) -> Credential:
        return Credential(
            user_id=data["user_id"],
            password_hash=data.get("password_hash"),
            password_algo=data.get("password_algo"),
            failed_attempts=int(data.get("failed_attempts", 0)),
            locked_until=parse_datetime(data.get("locked_until")),
            password_changed_at=parse_datetime(data.get("password_changed_at")),
            mfa_enabled=bool(data.get("mfa_enabled", False)),
            mfa_secret=data.get("mfa_secret"),
            backup_code_hashes=list(data.get("backup_code_hashes") or []),
            reset_token_hash=data.get("reset_token_hash"),
            reset_expires_at=parse_datetime(data.get("reset_expires_at")),
            version=int(data.get("version", 0)),
            updated_at=parse_datetime(data.get("updated_at")) or utcnow(),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "refresh_token_hash": session.refresh_token_hash,
            "fingerprint": session.fingerprint,
            "created_at": format_datetime(session.created_at),
            "expires_at": format_datetime(session.expires_at),
            "rotated_at": format_datetime(session.rotated_at),
            "user_agent": session.user_agent,
            "ip_addr": session.ip_addr,
            "mfa_verified": session.mfa_verified,
            "revoked": session.revoked,
            "revoked_at": format_datetime(session.revoked_at),
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            refresh_token_hash=data["refresh_token_hash"],
            fingerprint=data.get("fingerprint"),
            created_at=parse_datetime(data["created_at"]),
            expires_at=parse_datetime(data["expires_at"]),
            rotated_at=parse_datetime(data.get("rotated_at")),
            user_agent=data.get("user_agent"),
            ip_addr=parse_ip_address(data.get("ip_addr")),
            mfa_verified=data.get("mfa_verified", False),
            revoked=data.get("revoked", False),
            revoked_at=parse_datetime(data.get("revoked_at")),
        )
