from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Literal

import bcrypt
from argon2 import PasswordHasher as Argon2Hasher
from argon2.exceptions import InvalidHashError, VerifyMismatchError


ARGON2_PREFIX = "argon2id$"
BCRYPT_PREFIX = "bcrypt$"
# Hashes imported from the previous user store are bare bcrypt strings ($2a$/$2b$).
RAW_BCRYPT_PREFIXES = ("$2a$", "$2b$", "$2y$")


@dataclass
class PasswordHasher:
    default_scheme: Literal["argon2id", "bcrypt"] = "argon2id"
    argon2_time_cost: int = 3
    argon2_memory_cost: int = 65536
    argon2_parallelism: int = 2
    bcrypt_cost: int = 12

    def __post_init__(self) -> None:
        self._argon2 = Argon2Hasher(
            time_cost=self.argon2_time_cost,
            memory_cost=self.argon2_memory_cost,
            parallelism=self.argon2_parallelism,
            hash_len=32,
            salt_len=16,
        )

    def hash(self, password: str) -> str:
        if not password:
            raise ValueError("password must not be empty")
        if self.default_scheme == "bcrypt":
            return self._hash_bcrypt(password)
        return self._hash_argon2(password)

    def verify(self, password: str, stored_hash: str) -> tuple[bool, str | None]:
        """Check ``password``; the second item is a replacement hash when an upgrade is due."""
        if not stored_hash:
            return False, None
        if stored_hash.startswith(ARGON2_PREFIX):
            return self._verify_argon2(password, stored_hash)
        if stored_hash.startswith(BCRYPT_PREFIX):
            return self._verify_bcrypt(password, stored_hash.removeprefix(BCRYPT_PREFIX))
        if stored_hash.startswith(RAW_BCRYPT_PREFIXES):
            valid, _ = self._verify_bcrypt(password, stored_hash)
            return valid, self.hash(password) if valid else None
        return False, None

    def _hash_argon2(self, password: str) -> str:
        raw = self._argon2.hash(password).lstrip("$")
        return f"{ARGON2_PREFIX}{raw}"

    def _hash_bcrypt(self, password: str) -> str:
        salt = bcrypt.gensalt(rounds=self.bcrypt_cost)
        digest = bcrypt.hashpw(password.encode(), salt).decode().lstrip("$")
        return f"{BCRYPT_PREFIX}{digest}"

    def _verify_argon2(self, password: str, stored_hash: str) -> tuple[bool, str | None]:
        encoded = f"${stored_hash.removeprefix(ARGON2_PREFIX).lstrip('$')}"
        try:
            self._argon2.verify(encoded, password)
        except (VerifyMismatchError, InvalidHashError):
            return False, None
        if self._argon2.check_needs_rehash(encoded):
            return True, self._hash_argon2(password)
        return True, None

    def _verify_bcrypt(self, password: str, encoded: str) -> tuple[bool, str | None]:
        if not encoded.startswith("$"):
            encoded = f"${encoded}"
        try:
            valid = bcrypt.checkpw(password.encode(), encoded.encode())
        except ValueError:
            return False, None
        return valid, None


def password_hasher_from_settings(settings) -> PasswordHasher:
    return PasswordHasher(
        default_scheme=getattr(settings, "password_hash_scheme", "argon2id"),
        argon2_time_cost=getattr(settings, "password_hash_argon2_time_cost", 3),
        argon2_memory_cost=getattr(settings, "password_hash_argon2_memory_cost", 65536),
        argon2_parallelism=getattr(settings, "password_hash_argon2_parallelism", 2),
        bcrypt_cost=getattr(settings, "password_hash_bcrypt_cost", 12),
    )


def token_matches(provided: str | None, expected: str) -> bool:
    """Constant-time comparison of a presented bearer token, safe for any header text."""
    if not provided:
        return False
    return secrets.compare_digest(provided.encode("utf-8", "replace"), expected.encode("utf-8"))
