"""One-way salted hashing for passwords and opaque tokens.

Passwords go through bcrypt. Refresh and reset secrets are long random
strings, so a salted HMAC-SHA256 is enough for them and keeps the
scan-and-verify lookups cheap.
"""

import hashlib
import hmac
import secrets
from typing import Protocol

import bcrypt

TOKEN_HASH_SCHEME = "hmac-sha256"
TOKEN_SALT_BYTES = 16


class SecretHasher(Protocol):
    def hash(self, plaintext: str) -> str: ...

    def verify(self, plaintext: str, digest: str) -> bool: ...


class PasswordHasher:
    """bcrypt hashing for human-chosen passwords."""

    def __init__(self, rounds: int = 12):
        self.rounds = rounds
        self._dummy_hash = self.hash(secrets.token_urlsafe(16))

    def hash(self, plaintext: str) -> str:
        """Hash a password using bcrypt.

        Args:
            plaintext: Plain-text password to hash

        Returns:
            Bcrypt hash string ($2b$...)
        """
        salt = bcrypt.gensalt(rounds=self.rounds)
        hashed = bcrypt.hashpw(plaintext.encode("utf-8"), salt)
        return hashed.decode("utf-8")

    def verify(self, plaintext: str, digest: str) -> bool:
        """Verify a password against a bcrypt hash.

        Returns False for a mismatch and for a malformed digest.
        """
        try:
            return bcrypt.checkpw(
                plaintext.encode("utf-8"),
                digest.encode("utf-8"),
            )
        except (ValueError, TypeError):
            return False

    def verify_dummy(self, plaintext: str) -> bool:
        """Burn one verification against a throwaway hash.

        Used when there is no stored hash to check, so the caller spends
        the same time as a real verification. Always returns False.
        """
        self.verify(plaintext, self._dummy_hash)
        return False


class TokenHasher:
    """Salted HMAC-SHA256 for high-entropy random tokens.

    Digest format: ``hmac-sha256$<salt hex>$<digest hex>``.
    """

    def hash(self, plaintext: str) -> str:
        salt = secrets.token_bytes(TOKEN_SALT_BYTES)
        digest = hmac.new(salt, plaintext.encode("utf-8"), hashlib.sha256).hexdigest()
        return f"{TOKEN_HASH_SCHEME}${salt.hex()}${digest}"

    def verify(self, plaintext: str, digest: str) -> bool:
        try:
            scheme, salt_hex, expected = digest.split("$")
            salt = bytes.fromhex(salt_hex)
        except (ValueError, AttributeError):
            return False
        if scheme != TOKEN_HASH_SCHEME or not salt:
            return False
        actual = hmac.new(salt, plaintext.encode("utf-8"), hashlib.sha256).hexdigest()
        return hmac.compare_digest(actual.encode("ascii"), expected.encode("utf-8", "replace"))
