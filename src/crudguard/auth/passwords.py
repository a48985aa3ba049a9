"""
Password hashing with bcrypt.

Verifiers are bcrypt's self-describing ``$2b$<cost>$<salt+hash>`` strings.
Neither the secret nor the verifier is ever logged.
"""

import bcrypt
from loguru import logger

from ..errors import HashFailedError, PasswordMismatchError

# bcrypt silently ignores input past this length; longer secrets are rejected
MAX_SECRET_BYTES = 72


class PasswordHasher:
    """
    One-way hashing and verification of secrets.

    Safe for concurrent use; holds no mutable state.
    """

    def __init__(self, rounds: int = 12):
        """
        Initialize hasher.

        Args:
            rounds: bcrypt work factor (log2 of the iteration count)
        """
        self.rounds = rounds

    def hash(self, secret: str) -> str:
        """
        Derive a verifier from a secret.

        Args:
            secret: Plain text secret

        Returns:
            bcrypt verifier embedding salt and cost

        Raises:
            HashFailedError: If the secret cannot be hashed
        """
        encoded = secret.encode("utf-8")
        if len(encoded) > MAX_SECRET_BYTES:
            raise HashFailedError("secret exceeds bcrypt input limit")
        try:
            return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")
        except (ValueError, TypeError) as e:
            logger.error(f"Password hashing failed: {type(e).__name__}")
            raise HashFailedError("password hashing failed") from None

    def verify(self, verifier: str, candidate: str) -> None:
        """
        Check a candidate secret against a stored verifier.

        A malformed verifier and a wrong secret are indistinguishable to the
        caller: both raise PasswordMismatchError.

        Args:
            verifier: Stored bcrypt verifier
            candidate: Plain text secret to check

        Raises:
            PasswordMismatchError: If the candidate does not match
        """
        try:
            matched = bcrypt.checkpw(candidate.encode("utf-8"), verifier.encode("utf-8"))
        except (ValueError, TypeError):
            matched = False
        if not matched:
            raise PasswordMismatchError("password mismatch")

    def matches(self, verifier: str, candidate: str) -> bool:
        """Boolean form of verify()."""
        try:
            self.verify(verifier, candidate)
        except PasswordMismatchError:
            return False
        return True
