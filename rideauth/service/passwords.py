from __future__ import annotations

import re
from typing import List

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from rideauth.logging import get_logger
from rideauth.service.errors import InvalidInput

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
_SPECIAL_CHARACTERS = re.compile(r"[!@#$%^&*(),.?\":{}|<>]")


class PasswordHasherService:
    """argon2id password hashing with a tunable work factor.

    ``work_factor`` mirrors the bcrypt cost knob: each step doubles the
    memory cost, with 12 landing on argon2's 64 MiB recommended profile.
    """

    def __init__(self, work_factor: int = 12, *, time_cost: int = 3, parallelism: int = 4) -> None:
        self.work_factor = work_factor
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=2 ** (work_factor + 4),
            parallelism=parallelism,
            type=Type.ID,
        )

    def hash(self, plaintext: str) -> str:
        if not isinstance(plaintext, str) or not plaintext:
            raise InvalidInput("password must be a non-empty string")
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, password_hash: str) -> bool:
        """Return True only when ``plaintext`` matches; never raises."""
        if not isinstance(plaintext, str) or not plaintext or not password_hash:
            return False
        try:
            return self._hasher.verify(password_hash, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError):
            logger.warning("password_hash_unreadable")
            return False

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHashError:
            return True


def password_policy_violations(plaintext: str) -> List[str]:
    problems = []
    if len(plaintext) < MIN_PASSWORD_LENGTH:
        problems.append(f"at least {MIN_PASSWORD_LENGTH} characters")
    if len(plaintext) > MAX_PASSWORD_LENGTH:
        problems.append(f"at most {MAX_PASSWORD_LENGTH} characters")
    if not re.search(r"[A-Z]", plaintext):
        problems.append("an uppercase letter")
    if not re.search(r"[a-z]", plaintext):
        problems.append("a lowercase letter")
    if not re.search(r"\d", plaintext):
        problems.append("a number")
    if not _SPECIAL_CHARACTERS.search(plaintext):
        problems.append("a special character")
    return problems


def validate_password_strength(plaintext: str) -> None:
    if not isinstance(plaintext, str):
        raise InvalidInput("password must be a string")
    problems = password_policy_violations(plaintext)
    if problems:
        raise InvalidInput(
            "password must contain " + ", ".join(problems),
            detail={"violations": problems},
        )
