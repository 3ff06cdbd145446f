from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from authcore.logging import get_logger
from authcore.service.errors import TokenExpired, TokenInvalid, TokenSuperseded
from authcore.storage.models import utcnow

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


def hash_token(token: str) -> str:
    """Digest stored in place of a raw refresh token."""
    return hashlib.sha256(token.encode()).hexdigest()


@dataclass(frozen=True)
class IssuedToken:
    token: str
    jti: str
    expires_at: datetime


@dataclass(frozen=True)
class TokenClaims:
    sub: str
    jti: str
    iat: float
    exp: float
    token_type: str
    sid: Optional[str] = None
    mfa: bool = False
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def issued_at(self) -> datetime:
        return datetime.fromtimestamp(self.iat, tz=timezone.utc)

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.exp, tz=timezone.utc)


class TokenIssuer:
    """Mints and verifies HS256 JWTs.

    Verification is pure computation: it either returns claims or raises
    TokenExpired / TokenInvalid.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        access_ttl_minutes: int = 15,
        refresh_ttl_minutes: int = 60 * 24 * 7,
        leeway_seconds: int = 30,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if not secret:
            raise ValueError("token secret must be set")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = timedelta(minutes=access_ttl_minutes)
        self.refresh_ttl = timedelta(minutes=refresh_ttl_minutes)
        self.leeway = timedelta(seconds=leeway_seconds)
        self.clock = clock

    # ------------------------------------------------------------------
    # issuing
    # ------------------------------------------------------------------
    def issue_access_token(
        self,
        user_id: str,
        *,
        mfa_verified: bool,
        session_id: Optional[str] = None,
    ) -> IssuedToken:
        return self._issue(
            user_id, ACCESS, self.access_ttl, session_id=session_id, mfa=mfa_verified
        )

    def issue_refresh_token(self, user_id: str, session_id: str) -> IssuedToken:
        return self._issue(user_id, REFRESH, self.refresh_ttl, session_id=session_id)

    def _issue(
        self,
        user_id: str,
        token_type: str,
        ttl: timedelta,
        *,
        session_id: Optional[str],
        mfa: bool = False,
    ) -> IssuedToken:
        now = self.clock()
        expires_at = now + ttl
        jti = str(uuid.uuid4())
        payload: Dict[str, Any] = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": user_id,
            "jti": jti,
            "iat": now.timestamp(),
            "exp": int(expires_at.timestamp()),
            "token_type": token_type,
        }
        if session_id:
            payload["sid"] = session_id
        if token_type == ACCESS:
            payload["mfa"] = bool(mfa)
        return IssuedToken(token=self._encode_jwt(payload), jti=jti, expires_at=expires_at)

    # ------------------------------------------------------------------
    # verification
    # ------------------------------------------------------------------
    def verify(self, token: str, *, expected_type: Optional[str] = None) -> TokenClaims:
        payload = self._decode_jwt(token)
        now_ts = self.clock().timestamp()
        leeway = self.leeway.total_seconds()

        try:
            exp = float(payload["exp"])
            iat = float(payload["iat"])
        except (KeyError, TypeError, ValueError):
            raise TokenInvalid()
        if exp <= now_ts - leeway:
            raise TokenExpired()
        if iat > now_ts + leeway:
            logger.warning("jwt_issued_in_future", iat=iat, now=now_ts)
            raise TokenInvalid()

        token_type = payload.get("token_type")
        if expected_type and token_type != expected_type:
            raise TokenInvalid(f"expected {expected_type} token")
        sub = payload.get("sub")
        jti = payload.get("jti")
        if not isinstance(sub, str) or not isinstance(jti, str) or not sub or not jti:
            raise TokenInvalid()
        return TokenClaims(
            sub=sub,
            jti=jti,
            iat=iat,
            exp=exp,
            token_type=str(token_type),
            sid=payload.get("sid"),
            mfa=bool(payload.get("mfa", False)),
            raw=payload,
        )

    @staticmethod
    def ensure_not_superseded(
        claims: TokenClaims, password_changed_at: Optional[datetime]
    ) -> None:
        """Reject tokens minted before the latest password change."""
        if password_changed_at is None:
            return
        if password_changed_at.timestamp() > claims.iat:
            raise TokenSuperseded()

    def remaining_seconds(self, expires_at: datetime) -> int:
        """Whole seconds until ``expires_at``, floored at zero."""
        return max(0, int((expires_at - self.clock()).total_seconds()))

    # ------------------------------------------------------------------
    # encoding
    # ------------------------------------------------------------------
    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: Dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Dict[str, Any]:
        if not isinstance(token, str):
            raise TokenInvalid()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalid()

        # reject alg confusion before touching the signature
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalid()
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenInvalid()

        expected_sig = self._sign(f"{header_b64}.{payload_b64}").encode()
        if not hmac.compare_digest(expected_sig, sig_b64.encode("utf-8", "replace")):
            raise TokenInvalid()
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalid()
        if not isinstance(payload, dict):
            raise TokenInvalid()
        if payload.get("iss") != self.issuer:
            raise TokenInvalid()
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            raise TokenInvalid()
        return payload
