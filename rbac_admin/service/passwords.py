from __future__ import annotations

import re
import secrets
import string
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from rbac_admin.logging import get_logger

logger = get_logger(__name__)

SPECIAL_CHARACTERS = "!@#$%^&*()_+-=[]{};':\"\\|,.<>/?"
_GENERATED_SPECIALS = "!@#$%^&*"

_STRENGTH_RULES = (
    (re.compile(r"[a-z]"), "Password must contain at least one lowercase letter"),
    (re.compile(r"[A-Z]"), "Password must contain at least one uppercase letter"),
    (re.compile(r"\d"), "Password must contain at least one number"),
    (
        re.compile("[" + re.escape(SPECIAL_CHARACTERS) + "]"),
        "Password must contain at least one special character",
    ),
)


def check_password_strength(password: str, min_length: int = 8) -> Optional[str]:
    """Return the first unmet strength rule, or ``None`` when the password passes.

    Rules are checked in a fixed order: length, lowercase, uppercase, digit,
    special character. All four character classes are mandatory.
    """
    if len(password or "") < min_length:
        return f"Password must be at least {min_length} characters long"
    for pattern, message in _STRENGTH_RULES:
        if not pattern.search(password):
            return message
    return None


def generate_password(length: int = 12) -> str:
    """Random password that always satisfies ``check_password_strength``."""
    if length < 4:
        raise ValueError("generated passwords need at least 4 characters")
    rng = secrets.SystemRandom()
    required = [
        rng.choice(string.ascii_uppercase),
        rng.choice(string.ascii_lowercase),
        rng.choice(string.digits),
        rng.choice(_GENERATED_SPECIALS),
    ]
    alphabet = string.ascii_letters + string.digits + _GENERATED_SPECIALS
    chars = required + [rng.choice(alphabet) for _ in range(length - len(required))]
    rng.shuffle(chars)
    return "".join(chars)


class PasswordManager:
    """argon2id hashing for stored credentials."""

    algorithm = "argon2id"

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password_hash: str, password: str) -> bool:
        if not password_hash:
            return False
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable")
            return False
