from __future__ import annotations

import re
from typing import List

from argon2 import PasswordHasher as Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from adminauth.logging import get_logger

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 12

_WEAK_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"password",
        r"admin",
        r"qwerty",
        r"letmein",
        r"welcome",
        r"123456",
        r"(.)\1{3,}",
    )
]


class PasswordHasher:
    """argon2id hashing with a verify that never raises on bad digests."""

    def __init__(self, hasher: Argon2Hasher | None = None) -> None:
        self._hasher = hasher or Argon2Hasher(type=Type.ID)
        # verified against on unknown login keys to keep timing uniform
        self._dummy_digest = self._hasher.hash("dummy-password-for-timing")

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, digest: str | None) -> bool:
        if not digest:
            return False
        try:
            return self._hasher.verify(digest, plaintext)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def needs_rehash(self, digest: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(digest)
        except InvalidHash:
            return True

    def burn(self, plaintext: str) -> None:
        """Spend one verification on a fixed digest; the result is discarded."""
        self.verify(plaintext, self._dummy_digest)


def validate_password_strength(password: str) -> List[str]:
    """Return the list of strength rules ``password`` fails (empty when strong)."""
    failures: List[str] = []
    if len(password) < MIN_PASSWORD_LENGTH:
        failures.append(f"must be at least {MIN_PASSWORD_LENGTH} characters long")
    if not re.search(r"[A-Z]", password):
        failures.append("must contain an uppercase letter")
    if not re.search(r"[a-z]", password):
        failures.append("must contain a lowercase letter")
    if not re.search(r"\d", password):
        failures.append("must contain a digit")
    if not re.search(r"[^A-Za-z0-9]", password):
        failures.append("must contain a special character")
    if any(pattern.search(password) for pattern in _WEAK_PATTERNS):
        failures.append("must not contain common words or repeated characters")
    return failures
