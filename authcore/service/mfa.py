from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
from datetime import datetime
from typing import Callable, List, Optional
from urllib.parse import quote, urlencode

from cryptography.fernet import Fernet, InvalidToken

from authcore.logging import get_logger
from authcore.storage.models import utcnow

logger = get_logger(__name__)


def hash_backup_code(code: str) -> str:
    normalized = (code or "").strip().replace("-", "").upper()
    return hashlib.sha256(normalized.encode()).hexdigest()


class SecretCipher:
    """Fernet encryption for TOTP secrets stored on the credential record."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise ValueError("MFA encryption key material must be set")
        self._fernet = Fernet(self._derive_cipher_key(key_material))

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, secret: str) -> str:
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, ciphertext: str) -> Optional[str]:
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except (InvalidToken, ValueError):
            logger.error("mfa_secret_decrypt_failed")
            return None


class MFAVerifier:
    """RFC 6238 TOTP plus single-use backup codes.

    Codes from the adjacent time step on either side are accepted to absorb
    client clock drift.
    """

    def __init__(
        self,
        *,
        issuer: str = "AuthCore",
        interval: int = 30,
        digits: int = 6,
        drift_steps: int = 1,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.issuer = issuer
        self.interval = interval
        self.digits = digits
        self.drift_steps = drift_steps
        self.clock = clock

    @staticmethod
    def generate_secret() -> str:
        return base64.b32encode(secrets.token_bytes(20)).decode("utf-8").rstrip("=")

    def generate_code(self, secret: str, timestamp: Optional[float] = None) -> str:
        if timestamp is None:
            timestamp = self.clock().timestamp()
        padded = secret + "=" * ((8 - len(secret) % 8) % 8)
        try:
            key = base64.b32decode(padded, True)
        except (binascii.Error, ValueError):
            logger.warning("totp_secret_invalid")
            return ""
        counter = int(timestamp // self.interval).to_bytes(8, "big")
        digest = hmac.new(key, counter, hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**self.digits
        )
        return str(code_int).zfill(self.digits)

    def verify(self, secret: Optional[str], candidate: Optional[str]) -> bool:
        if not secret or not candidate:
            return False
        candidate = candidate.strip().replace(" ", "")
        if len(candidate) != self.digits or not candidate.isdigit():
            return False
        now = self.clock().timestamp()
        matched = False
        for offset in range(-self.drift_steps, self.drift_steps + 1):
            generated = self.generate_code(secret, now + offset * self.interval)
            # no early exit: every step is compared
            if generated and hmac.compare_digest(generated, candidate):
                matched = True
        return matched

    def provisioning_uri(self, secret: str, account_name: str) -> str:
        label = quote(f"{self.issuer}:{account_name}")
        query = urlencode(
            {
                "secret": secret,
                "issuer": self.issuer,
                "algorithm": "SHA1",
                "digits": self.digits,
                "period": self.interval,
            }
        )
        return f"otpauth://totp/{label}?{query}"

    @staticmethod
    def generate_backup_codes(count: int = 5) -> List[str]:
        return [secrets.token_hex(4).upper() for _ in range(count)]

    @staticmethod
    def looks_like_backup_code(candidate: str) -> bool:
        normalized = (candidate or "").strip().replace("-", "")
        if len(normalized) != 8:
            return False
        try:
            int(normalized, 16)
        except ValueError:
            return False
        return True
