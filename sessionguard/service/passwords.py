from __future__ import annotations

from typing import Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from sessionguard.logging import get_logger

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class CredentialVerifier:
    """Argon2id hashing and verification of user passwords."""

    def __init__(self, hasher: PasswordHasher | None = None) -> None:
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)

    def hash(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def verify(self, stored_hash: str, password: str, *, algo: str = PASSWORD_ALGO) -> bool:
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False
