from __future__ import annotations

import math
import time
from collections import deque
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable, Deque, Dict, Optional, Tuple

import jwt
from argon2 import PasswordHasher
from argon2 import exceptions as argon2_exceptions

ARGON2_TIME_COST = 5
ARGON2_MEMORY_COST_KIB = 65536
ARGON2_PARALLELISM = 1
ARGON2_HASH_LEN = 32
ARGON2_SALT_LEN = 16

BEARER_PREFIX = "Bearer "


def build_password_hasher(
    *,
    time_cost: int = ARGON2_TIME_COST,
    memory_cost_kib: int = ARGON2_MEMORY_COST_KIB,
) -> PasswordHasher:
    return PasswordHasher(
        time_cost=time_cost,
        memory_cost=memory_cost_kib,
        parallelism=ARGON2_PARALLELISM,
        hash_len=ARGON2_HASH_LEN,
        salt_len=ARGON2_SALT_LEN,
    )


class PasswordManager:
    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._hasher = hasher or build_password_hasher()

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password: str, encoded_hash: str) -> bool:
        if not encoded_hash:
            return False
        try:
            return self._hasher.verify(encoded_hash, password)
        except (argon2_exceptions.VerificationError, argon2_exceptions.InvalidHashError):
            return False

    def needs_rehash(self, encoded_hash: str) -> bool:
        if not encoded_hash or not encoded_hash.startswith("$argon2id$"):
            return True
        try:
            return self._hasher.check_needs_rehash(encoded_hash)
        except argon2_exceptions.InvalidHashError:
            return True


class TokenError(Exception):
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class TokenService:
    """Signed bearer tokens carrying ``userId``, ``username`` and ``email`` claims."""

    def __init__(
        self,
        secret: str,
        *,
        algorithm: str = "HS256",
        ttl_seconds: int = 24 * 60 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._secret = secret
        self._algorithm = algorithm
        self._ttl_seconds = ttl_seconds
        self._clock = clock

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    @property
    def expires_in(self) -> str:
        if self._ttl_seconds % 3600 == 0:
            return f"{self._ttl_seconds // 3600}h"
        return f"{self._ttl_seconds}s"

    def issue(self, user: Dict[str, Any]) -> str:
        issued_at = int(self._clock())
        payload = {
            "userId": user["id"],
            "username": user["username"],
            "email": user["email"],
            "iat": issued_at,
            "exp": issued_at + self._ttl_seconds,
        }
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    def decode(self, token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                options={"require": ["exp", "iat"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise TokenError("Token expired") from exc
        except jwt.InvalidTokenError as exc:
            raise TokenError("Invalid token") from exc

    def decode_header(self, authorization: Optional[str]) -> Dict[str, Any]:
        if not authorization:
            raise TokenError("Authentication required")
        if not authorization.startswith(BEARER_PREFIX):
            raise TokenError("Invalid token format")
        token = authorization[len(BEARER_PREFIX):].strip()
        if not token:
            raise TokenError("Invalid token format")
        return self.decode(token)


@dataclass
class _RateBucket:
    failures: Deque[float] = field(default_factory=deque)
    blocked_until: float = 0.0


class LoginRateLimiter:
    """Locks a key out after ``max_failures`` failed attempts inside ``window_seconds``.

    Successful attempts clear the key, so only failures count toward the lockout.
    """

    def __init__(
        self,
        *,
        max_failures: int = 5,
        window_seconds: int = 900,
        lockout_seconds: int = 900,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_failures = max_failures
        self._window_seconds = window_seconds
        self._lockout_seconds = lockout_seconds
        self._clock = clock
        self._buckets: Dict[str, _RateBucket] = {}
        self._lock = Lock()

    def check(self, key: str) -> Tuple[bool, int]:
        now = self._clock()
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                return True, 0
            self._prune(bucket, now)
            if bucket.blocked_until > now:
                return False, max(1, math.ceil(bucket.blocked_until - now))
            return True, 0

    def record_failure(self, key: str) -> None:
        now = self._clock()
        with self._lock:
            bucket = self._buckets.setdefault(key, _RateBucket())
            self._prune(bucket, now)
            bucket.failures.append(now)
            if len(bucket.failures) >= self._max_failures:
                bucket.blocked_until = now + self._lockout_seconds
                bucket.failures.clear()

    def record_success(self, key: str) -> None:
        with self._lock:
            self._buckets.pop(key, None)

    def _prune(self, bucket: _RateBucket, now: float) -> None:
        threshold = now - self._window_seconds
        while bucket.failures and bucket.failures[0] < threshold:
            bucket.failures.popleft()
