from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, List, Optional, Protocol, Sequence

from authcore.config import Settings
from authcore.logging import get_logger, hash_for_log
from authcore.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    InvalidCredentials,
    MFAInvalid,
    MFARequired,
    RateLimited,
    SessionNotFound,
    TokenInvalid,
    ValidationError,
)
from authcore.service.lockout import LockoutManager, apply_credential_update
from authcore.service.mfa import MFAVerifier, SecretCipher, hash_backup_code
from authcore.service.notifications import Notifier
from authcore.service.password_reset import PasswordResetFlow
from authcore.service.passwords import PasswordHasher, validate_password_strength
from authcore.service.rate_limit import RateLimitPolicy, RateLimiter
from authcore.service.retry import call_store, read_with_retry
from authcore.service.revocation import RevocationRegistry
from authcore.service.sessions import SessionStore
from authcore.service.tokens import ACCESS, REFRESH, TokenIssuer, hash_token
from authcore.storage.common import generate_uuid
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import Credential, Session, User, utcnow
from authcore.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class AuthStore(Protocol):
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
        meta: Optional[dict] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user_role(
        self, user_id: str, role: str, permissions: Optional[Sequence[str]] = None
    ) -> Optional[User]: ...

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]: ...

    def get_credential(self, user_id: str) -> Optional[Credential]: ...

    def update_credential(
        self, user_id: str, expected_version: int, **fields: Any
    ) -> Optional[Credential]: ...

    def find_credential_by_reset_hash(self, token_hash: str) -> Optional[Credential]: ...

    def consume_backup_code(self, user_id: str, code_hash: str) -> bool: ...

    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def list_user_sessions(self, user_id: str) -> List[Session]: ...

    def find_active_session(
        self, user_id: str, refresh_token_hash: str, now: datetime
    ) -> Optional[Session]: ...

    def rotate_session(
        self,
        session_id: str,
        expected_hash: str,
        new_hash: str,
        *,
        rotated_at: datetime,
        expires_at: datetime,
    ) -> Optional[Session]: ...

    def revoke_session(self, session_id: str, *, revoked_at: datetime) -> bool: ...

    def revoke_user_sessions(self, user_id: str, *, revoked_at: datetime) -> int: ...


@dataclass
class AuthContext:
    """Authenticated principal returned by :meth:`AuthService.protect`."""

    user_id: str
    role: str
    token_id: str
    expires_at: datetime
    session_id: Optional[str] = None
    permissions: List[str] = field(default_factory=list)
    mfa_verified: bool = False


@dataclass
class AuthResult:
    user: User
    session: Session
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


@dataclass
class MFAEnrollment:
    secret: str
    provisioning_uri: str
    backup_codes: List[str]


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.strip().partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def role_allows(role: str, required: str) -> bool:
    if role == required:
        return True
    return role == "admin"


class AuthService:
    """Signup, login, refresh, logout, password reset and the request gate.

    Each operation mints its tokens before the final session write so an
    interrupted call never leaves a session without tokens.
    """

    def __init__(
        self,
        store: AuthStore,
        cache: Optional[RedisCache],
        settings: Settings,
        *,
        notifier: Optional[Notifier] = None,
        hasher: Optional[PasswordHasher] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store: AuthStore = store
        self.cache = cache
        self.settings = settings
        self.notifier = notifier
        self.clock = clock
        self.hasher = hasher or PasswordHasher()
        self.tokens = TokenIssuer(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl_minutes=settings.access_token_ttl_minutes,
            refresh_ttl_minutes=settings.refresh_token_ttl_minutes,
            leeway_seconds=settings.clock_skew_seconds,
            clock=clock,
        )
        self.sessions = SessionStore(
            store,
            ttl_minutes=settings.refresh_token_ttl_minutes,
            replay_revokes_all=settings.replay_revokes_all_sessions,
            retry_attempts=settings.store_retry_attempts,
            retry_backoff=settings.store_retry_backoff_seconds,
            clock=clock,
        )
        self.lockout = LockoutManager(
            store,
            threshold=settings.lockout_threshold,
            lock_minutes=settings.lockout_minutes,
            clock=clock,
        )
        self.revocation = RevocationRegistry(cache, clock=clock)
        self.limiter = RateLimiter(cache, clock=clock)
        self.mfa = MFAVerifier(issuer=settings.mfa_issuer, clock=clock)
        self.cipher = SecretCipher(settings.mfa_secret_key or settings.jwt_secret)
        self.resets = PasswordResetFlow(
            store,
            self.hasher,
            self.sessions,
            ttl_minutes=settings.reset_code_ttl_minutes,
            clock=clock,
        )
        self.login_policy = RateLimitPolicy(
            settings.login_rate_limit_points, settings.login_rate_limit_window_seconds
        )
        self.reset_policy = RateLimitPolicy(
            settings.reset_rate_limit_points, settings.reset_rate_limit_window_seconds
        )
        self.gate_policy = RateLimitPolicy(
            settings.gate_rate_limit_points, settings.gate_rate_limit_window_seconds
        )
        self.mfa_policy = RateLimitPolicy(
            settings.mfa_rate_limit_points, settings.mfa_rate_limit_window_seconds
        )
        self.password_change_policy = RateLimitPolicy(
            settings.password_change_rate_limit_points,
            settings.password_change_rate_limit_window_seconds,
        )

    async def _read(self, fn: Callable[..., Any], *args: Any) -> Any:
        return await read_with_retry(
            fn,
            *args,
            attempts=self.settings.store_retry_attempts,
            base=self.settings.store_retry_backoff_seconds,
        )

    async def _notify(self, send: Optional[Callable[..., bool]], *args: Any) -> None:
        if send is None:
            return
        delivered = await asyncio.to_thread(send, *args)
        if not delivered:
            logger.warning("notification_not_delivered", kind=send.__name__)

    # ------------------------------------------------------------------
    # signup / login
    # ------------------------------------------------------------------
    async def signup(
        self,
        email: str,
        password: str,
        *,
        name: Optional[str] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        if not self.settings.allow_signup:
            raise ForbiddenError("signup disabled")
        validate_password_strength(password)
        digest = self.hasher.hash(password)
        try:
            user = call_store(
                self.store.create_user,
                email,
                password_hash=digest,
                password_algo=self.hasher.algo,
                name=name,
            )
        except ConstraintViolation as exc:
            logger.info("signup_conflict", email_hash=hash_for_log(email))
            raise ConflictError("email already registered", detail=exc.detail) from exc
        result = self._start_session(
            user, mfa_verified=False, ip_addr=ip_addr, user_agent=user_agent
        )
        logger.info("signup_completed", user_id=user.id)
        await self._notify(
            self.notifier.send_welcome if self.notifier else None, user.email, name
        )
        return result

    async def login(
        self,
        email: str,
        password: str,
        mfa_code: Optional[str] = None,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        await self.limiter.consume(f"login:{ip_addr or 'unknown'}", self.login_policy)

        user = await self._read(self.store.get_user_by_email, email)
        cred = await self._read(self.store.get_credential, user.id) if user else None
        if user is None or cred is None or not user.is_active:
            # equalize timing with the known-account path
            self.hasher.dummy_verify(password)
            logger.warning(
                "login_failed",
                reason="inactive_user" if user is not None else "unknown_user",
                email_hash=hash_for_log(email),
            )
            raise InvalidCredentials()

        cred = self.lockout.ensure_unlocked(cred)
        if not self.hasher.verify(password, cred.password_hash):
            updated = self.lockout.record_failure(cred)
            logger.warning(
                "login_failed",
                reason="bad_password",
                user_id=user.id,
                failed_attempts=updated.failed_attempts,
            )
            raise InvalidCredentials()
        cred = self.lockout.record_success(cred)
        cred = self._maybe_rehash(cred, password)

        mfa_verified = False
        if self.settings.enable_mfa and cred.mfa_enabled:
            await self._verify_second_factor(user, cred, mfa_code)
            mfa_verified = True

        result = self._start_session(
            user, mfa_verified=mfa_verified, ip_addr=ip_addr, user_agent=user_agent
        )
        logger.info("login_succeeded", user_id=user.id, mfa_verified=mfa_verified)
        return result

    def _maybe_rehash(self, cred: Credential, password: str) -> Credential:
        if not cred.password_hash or not self.hasher.needs_rehash(cred.password_hash):
            return cred
        updated = call_store(
            self.store.update_credential,
            cred.user_id,
            cred.version,
            password_hash=self.hasher.hash(password),
            password_algo=self.hasher.algo,
        )
        if updated is None:
            # lost a race; the next login upgrades the hash
            return cred
        logger.info("password_rehashed", user_id=cred.user_id)
        return updated

    async def _verify_second_factor(
        self, user: User, cred: Credential, code: Optional[str]
    ) -> None:
        if not code:
            logger.info("login_mfa_required", user_id=user.id)
            raise MFARequired()
        limit_key = f"mfa:{user.id}"
        retry_after = await self.limiter.blocked_for(limit_key, self.mfa_policy)
        if retry_after:
            logger.warning("mfa_rate_limited", user_id=user.id, retry_after=retry_after)
            raise RateLimited(retry_after)

        secret = self.cipher.decrypt(cred.mfa_secret) if cred.mfa_secret else None
        if self.mfa.verify(secret, code):
            await self.limiter.reset(limit_key)
            return
        if self.mfa.looks_like_backup_code(code) and call_store(
            self.store.consume_backup_code, user.id, hash_backup_code(code)
        ):
            logger.info("mfa_backup_code_used", user_id=user.id)
            await self.limiter.reset(limit_key)
            return

        decision = await self.limiter.hit(limit_key, self.mfa_policy)
        logger.warning(
            "login_failed",
            reason="mfa_invalid",
            user_id=user.id,
            mfa_failures=decision.count,
        )
        raise MFAInvalid()

    def _start_session(
        self,
        user: User,
        *,
        mfa_verified: bool,
        ip_addr: Optional[str],
        user_agent: Optional[str],
    ) -> AuthResult:
        session_id = generate_uuid()
        refresh = self.tokens.issue_refresh_token(user.id, session_id)
        access = self.tokens.issue_access_token(
            user.id, mfa_verified=mfa_verified, session_id=session_id
        )
        session = self.sessions.create(
            user.id,
            hash_token(refresh.token),
            session_id=session_id,
            ip_addr=ip_addr,
            user_agent=user_agent,
            mfa_verified=mfa_verified,
        )
        return AuthResult(
            user=user,
            session=session,
            access_token=access.token,
            refresh_token=refresh.token,
            access_expires_at=access.expires_at,
            refresh_expires_at=refresh.expires_at,
        )

    # ------------------------------------------------------------------
    # refresh / logout
    # ------------------------------------------------------------------
    async def refresh(
        self,
        refresh_token: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        claims = self.tokens.verify(refresh_token, expected_type=REFRESH)
        cred = await self._read(self.store.get_credential, claims.sub)
        if cred is None:
            raise TokenInvalid()
        self.tokens.ensure_not_superseded(claims, cred.password_changed_at)

        presented_hash = hash_token(refresh_token)
        try:
            session = await self.sessions.find_active(claims.sub, presented_hash)
        except SessionNotFound:
            await self.sessions.handle_mismatch(claims.sid, claims.sub)
            raise

        user = await self._read(self.store.get_user, claims.sub)
        if user is None or not user.is_active:
            logger.warning("refresh_rejected_inactive", user_id=claims.sub)
            raise InvalidCredentials()

        new_refresh = self.tokens.issue_refresh_token(user.id, session.id)
        access = self.tokens.issue_access_token(
            user.id, mfa_verified=session.mfa_verified, session_id=session.id
        )
        rotated = await self.sessions.rotate(
            session,
            presented_hash,
            hash_token(new_refresh.token),
            expires_at=new_refresh.expires_at,
        )
        return AuthResult(
            user=user,
            session=rotated,
            access_token=access.token,
            refresh_token=new_refresh.token,
            access_expires_at=access.expires_at,
            refresh_expires_at=new_refresh.expires_at,
        )

    async def logout(self, ctx: AuthContext, *, everywhere: bool = False) -> int:
        """Revoke the caller's access token and session(s); returns sessions revoked."""
        await self.revocation.revoke(
            ctx.token_id, self.tokens.remaining_seconds(ctx.expires_at)
        )
        if everywhere:
            revoked = self.sessions.revoke_all(ctx.user_id)
        elif ctx.session_id:
            revoked = int(self.sessions.revoke(ctx.session_id))
        else:
            revoked = 0
        logger.info(
            "logout", user_id=ctx.user_id, everywhere=everywhere, sessions_revoked=revoked
        )
        return revoked

    # ------------------------------------------------------------------
    # request gate
    # ------------------------------------------------------------------
    async def protect(
        self,
        authorization: Optional[str] = None,
        access_cookie: Optional[str] = None,
        *,
        ip_addr: Optional[str] = None,
        required_roles: Optional[Sequence[str]] = None,
        required_permissions: Optional[Sequence[str]] = None,
    ) -> AuthContext:
        try:
            ctx = await self._authenticate(authorization, access_cookie)
        except AuthenticationError as exc:
            decision = await self.limiter.hit(
                f"gate:{ip_addr or 'unknown'}", self.gate_policy
            )
            if not decision.allowed:
                logger.warning(
                    "gate_rate_limited", ip_addr=ip_addr, failures=decision.count
                )
                raise RateLimited(decision.retry_after) from exc
            raise
        self._authorize(ctx, required_roles, required_permissions)
        return ctx

    async def _authenticate(
        self, authorization: Optional[str], access_cookie: Optional[str]
    ) -> AuthContext:
        token = extract_bearer(authorization) or access_cookie
        if not token:
            raise AuthenticationError("authentication required")
        claims = self.tokens.verify(token, expected_type=ACCESS)
        if await self.revocation.is_revoked(claims.jti):
            raise TokenInvalid("token revoked")
        user = await self._read(self.store.get_user, claims.sub)
        if user is None or not user.is_active:
            raise TokenInvalid("account unavailable")
        cred = await self._read(self.store.get_credential, claims.sub)
        if cred is None:
            raise TokenInvalid()
        self.tokens.ensure_not_superseded(claims, cred.password_changed_at)
        session = await self.sessions.get_active(claims.sid)
        if session.user_id != claims.sub:
            raise SessionNotFound()
        if self.settings.enable_mfa and cred.mfa_enabled and not claims.mfa:
            raise MFARequired("mfa verification required")
        return AuthContext(
            user_id=user.id,
            role=user.role,
            token_id=claims.jti,
            expires_at=claims.expires_at,
            session_id=session.id,
            permissions=list(user.permissions),
            mfa_verified=claims.mfa,
        )

    def _authorize(
        self,
        ctx: AuthContext,
        required_roles: Optional[Sequence[str]],
        required_permissions: Optional[Sequence[str]],
    ) -> None:
        if required_roles and not any(role_allows(ctx.role, r) for r in required_roles):
            logger.info("access_denied", user_id=ctx.user_id, reason="role")
            raise ForbiddenError(
                "insufficient role", detail={"required_roles": list(required_roles)}
            )
        if required_permissions and ctx.role != "admin":
            missing = sorted(set(required_permissions) - set(ctx.permissions))
            if missing:
                logger.info("access_denied", user_id=ctx.user_id, reason="permission")
                raise ForbiddenError(
                    "insufficient permissions", detail={"missing_permissions": missing}
                )

    async def current_user(self, ctx: AuthContext) -> User:
        user = await self._read(self.store.get_user, ctx.user_id)
        if user is None:
            raise SessionNotFound()
        return user

    # ------------------------------------------------------------------
    # password reset
    # ------------------------------------------------------------------
    async def request_password_reset(
        self, email: str, *, ip_addr: Optional[str] = None
    ) -> Optional[str]:
        """Issue and deliver a reset code.

        Unknown emails return None after the same rate-limit accounting, so
        callers cannot tell which accounts exist.
        """
        await self.limiter.consume(f"reset:{ip_addr or 'unknown'}", self.reset_policy)
        user = await self._read(self.store.get_user_by_email, email)
        if user is None or not user.is_active:
            logger.info("password_reset_unknown_email", email_hash=hash_for_log(email))
            return None
        code = self.resets.issue(user.id)
        await self._notify(
            self.notifier.send_password_reset if self.notifier else None,
            user.email,
            code,
            self.settings.reset_code_ttl_minutes,
        )
        return code

    async def reset_password(self, code: str, new_password: str) -> str:
        validate_password_strength(new_password)
        return self.resets.redeem(code, new_password)

    async def change_password(
        self,
        ctx: AuthContext,
        current_password: str,
        new_password: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        """Replace the caller's password after re-verifying the current one.

        Advancing ``password_changed_at`` supersedes every token issued
        before the change, so all sessions are revoked and the caller gets a
        fresh pair on a new session.
        """
        await self.limiter.consume(
            f"password:change:{ctx.user_id}", self.password_change_policy
        )
        validate_password_strength(new_password)
        user = await self.current_user(ctx)
        cred = await self._read(self.store.get_credential, ctx.user_id)
        if cred is None:
            raise SessionNotFound()

        cred = self.lockout.ensure_unlocked(cred)
        if not self.hasher.verify(current_password, cred.password_hash):
            updated = self.lockout.record_failure(cred)
            logger.warning(
                "password_change_failed",
                reason="bad_password",
                user_id=ctx.user_id,
                failed_attempts=updated.failed_attempts,
            )
            raise InvalidCredentials()
        if self.hasher.verify(new_password, cred.password_hash):
            raise ValidationError(
                "new password must differ from the current password",
                detail={"field": "new_password"},
            )

        verified_hash = cred.password_hash
        new_hash = self.hasher.hash(new_password)
        changed_at = self.clock()

        def _swap(current: Credential) -> dict:
            if current.password_hash != verified_hash:
                # changed concurrently; the verified password is stale
                raise InvalidCredentials()
            return {
                "password_hash": new_hash,
                "password_algo": self.hasher.algo,
                "password_changed_at": changed_at,
                "failed_attempts": 0,
                "locked_until": None,
                "reset_token_hash": None,
                "reset_expires_at": None,
            }

        apply_credential_update(self.store, cred, _swap)
        await self.revocation.revoke(
            ctx.token_id, self.tokens.remaining_seconds(ctx.expires_at)
        )
        revoked = self.sessions.revoke_all(ctx.user_id)
        logger.info("password_changed", user_id=ctx.user_id, sessions_revoked=revoked)
        return self._start_session(
            user, mfa_verified=ctx.mfa_verified, ip_addr=ip_addr, user_agent=user_agent
        )

    # ------------------------------------------------------------------
    # mfa enrollment
    # ------------------------------------------------------------------
    async def enroll_mfa(self, ctx: AuthContext) -> MFAEnrollment:
        if not self.settings.enable_mfa:
            raise ValidationError("mfa is disabled")
        user = await self.current_user(ctx)
        cred = await self._read(self.store.get_credential, user.id)
        if cred is None:
            raise SessionNotFound()
        if cred.mfa_enabled:
            raise ConflictError("mfa already enabled")
        secret = self.mfa.generate_secret()
        codes = self.mfa.generate_backup_codes(self.settings.mfa_backup_code_count)
        encrypted = self.cipher.encrypt(secret)
        code_hashes = [hash_backup_code(c) for c in codes]
        apply_credential_update(
            self.store,
            cred,
            lambda _current: {
                "mfa_secret": encrypted,
                "backup_code_hashes": code_hashes,
                "mfa_enabled": False,
            },
        )
        logger.info("mfa_enrollment_started", user_id=user.id)
        await self._notify(
            self.notifier.send_mfa_backup_codes if self.notifier else None,
            user.email,
            codes,
        )
        return MFAEnrollment(
            secret=secret,
            provisioning_uri=self.mfa.provisioning_uri(secret, user.email),
            backup_codes=codes,
        )

    async def confirm_mfa(self, ctx: AuthContext, code: str) -> None:
        """Enable MFA once the user proves possession of the enrolled secret.

        Existing access tokens lack the mfa claim afterwards, so every session
        must log in again with a second factor.
        """
        cred = await self._read(self.store.get_credential, ctx.user_id)
        if cred is None or not cred.mfa_secret:
            raise ValidationError("mfa enrollment not started")
        if cred.mfa_enabled:
            raise ConflictError("mfa already enabled")
        limit_key = f"mfa:{ctx.user_id}"
        retry_after = await self.limiter.blocked_for(limit_key, self.mfa_policy)
        if retry_after:
            raise RateLimited(retry_after)
        if not self.mfa.verify(self.cipher.decrypt(cred.mfa_secret), code):
            await self.limiter.hit(limit_key, self.mfa_policy)
            logger.warning("mfa_confirm_failed", user_id=ctx.user_id)
            raise MFAInvalid()
        apply_credential_update(
            self.store, cred, lambda _current: {"mfa_enabled": True}
        )
        logger.info("mfa_enabled", user_id=ctx.user_id)
