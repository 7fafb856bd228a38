from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authkeep.logging import get_logger

logger = get_logger(__name__)


class CredentialHasher:
    """Argon2id password hashing with a fixed work factor."""

    algorithm = "argon2id"

    def __init__(self, hasher: PasswordHasher | None = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, digest: str | None) -> bool:
        """Return True when ``plaintext`` matches ``digest``.

        Mismatches and malformed or empty digests report False instead of
        raising, so callers can fold them into one generic credential error.
        """
        if not digest:
            return False
        try:
            return self._hasher.verify(digest, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError) as exc:
            logger.warning("password_digest_unusable", error=str(exc))
            return False
