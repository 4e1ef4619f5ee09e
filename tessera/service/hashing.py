from __future__ import annotations

import secrets

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tessera.logging import get_logger
from tessera.service.errors import ConfigError, InvalidInput

logger = get_logger(__name__)

MIN_MEMORY_COST_KIB = 64 * 1024
MIN_TIME_COST = 3
MIN_PARALLELISM = 4
MIN_PASSWORD_LENGTH = 8


class CredentialHasher:
    """Argon2id hashing for passwords and server-side token digests.

    The encoded digest carries its own salt and cost parameters, so a digest
    produced under older settings still verifies after the settings change.
    """

    def __init__(
        self,
        *,
        memory_cost_kib: int = MIN_MEMORY_COST_KIB,
        time_cost: int = MIN_TIME_COST,
        parallelism: int = MIN_PARALLELISM,
        hash_len: int = 32,
        salt_len: int = 16,
    ) -> None:
        if memory_cost_kib < MIN_MEMORY_COST_KIB:
            raise ConfigError(
                f"argon2 memory cost must be at least {MIN_MEMORY_COST_KIB} KiB"
            )
        if time_cost < MIN_TIME_COST:
            raise ConfigError(f"argon2 time cost must be at least {MIN_TIME_COST}")
        if parallelism < MIN_PARALLELISM:
            raise ConfigError(f"argon2 parallelism must be at least {MIN_PARALLELISM}")
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost_kib,
            parallelism=parallelism,
            hash_len=hash_len,
            salt_len=salt_len,
            type=Type.ID,
        )

    @classmethod
    def from_settings(cls, settings) -> "CredentialHasher":
        return cls(
            memory_cost_kib=settings.argon2_memory_cost_kib,
            time_cost=settings.argon2_time_cost,
            parallelism=settings.argon2_parallelism,
        )

    def hash_password(self, password: str) -> str:
        if not password:
            raise InvalidInput("password must not be empty")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise InvalidInput(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters"
            )
        return self._hasher.hash(password)

    def hash_token(self, token: str) -> str:
        if not token:
            raise InvalidInput("token must not be empty")
        return self._hasher.hash(token)

    def verify(self, digest: str | None, secret: str | None) -> bool:
        if not digest or not secret:
            return False
        try:
            return self._hasher.verify(digest, secret)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("credential_digest_unverifiable")
            return False

    def needs_rehash(self, digest: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(digest)
        except InvalidHash:
            return True


def generate_secure_token(nbytes: int = 32) -> str:
    """Hex encoding of ``nbytes`` uniformly random bytes."""
    return secrets.token_hex(nbytes)
