from __future__ import annotations

from typing import List, Optional

from argon2 import PasswordHasher as Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError

from authcore.service.errors import ValidationError

PASSWORD_ALGO = "argon2id"
MIN_PASSWORD_LENGTH = 12
MAX_PASSWORD_LENGTH = 128


def validate_password_strength(password: str) -> None:
    """Reject passwords that are too short or miss a character class."""
    problems: List[str] = []
    if len(password or "") < MIN_PASSWORD_LENGTH:
        problems.append(f"at least {MIN_PASSWORD_LENGTH} characters")
    if len(password or "") > MAX_PASSWORD_LENGTH:
        problems.append(f"at most {MAX_PASSWORD_LENGTH} characters")
    password = password or ""
    if not any(c.islower() for c in password):
        problems.append("a lowercase letter")
    if not any(c.isupper() for c in password):
        problems.append("an uppercase letter")
    if not any(c.isdigit() for c in password):
        problems.append("a digit")
    if not any(not c.isalnum() for c in password):
        problems.append("a special character")
    if problems:
        raise ValidationError(
            "password must contain " + ", ".join(problems),
            detail={"field": "password", "requirements": problems},
        )


class PasswordHasher:
    """argon2id hashing with a salt embedded in every digest.

    ``verify`` never raises: malformed digests and mismatches both return False.
    """

    algo = PASSWORD_ALGO

    def __init__(self, hasher: Optional[Argon2Hasher] = None) -> None:
        self._hasher = hasher or Argon2Hasher(type=Type.ID)
        self._dummy_digest: Optional[str] = None

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, digest: Optional[str]) -> bool:
        if not digest:
            return False
        try:
            return self._hasher.verify(digest, plaintext)
        except (InvalidHash, VerificationError):
            return False

    def needs_rehash(self, digest: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(digest)
        except InvalidHash:
            return True

    def dummy_verify(self, plaintext: str) -> None:
        """Spend one verification so unknown accounts take as long as known ones."""
        if self._dummy_digest is None:
            self._dummy_digest = self._hasher.hash("authcore-dummy-password")
        self.verify(plaintext, self._dummy_digest)
