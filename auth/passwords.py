"""One-way password hashing (argon2id)."""

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError


class PasswordManager:
    """Hash and verify passwords. The hash format is opaque to callers."""

    def __init__(self, hasher: PasswordHasher | None = None):
        self._hasher = hasher or PasswordHasher(type=Type.ID)

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password_hash: str | None, password: str) -> bool:
        """False for a wrong password, a missing hash or an unreadable one."""
        if not password_hash:
            return False
        try:
            return self._hasher.verify(password_hash, password)
        except (InvalidHashError, VerificationError):
            return False

    def needs_rehash(self, password_hash: str) -> bool:
        """True when the stored hash was made with weaker parameters."""
        return self._hasher.check_needs_rehash(password_hash)
