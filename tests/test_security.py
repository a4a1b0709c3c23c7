from __future__ import annotations

import time

import jwt
import pytest

from apigateway.security import (
    LoginRateLimiter,
    PasswordManager,
    TokenError,
    TokenService,
    build_password_hasher,
)

SECRET = "unit-test-signing-secret-0123456789abcdef"
USER = {"id": "u-1", "username": "alice", "email": "alice@example.com"}


@pytest.fixture
def passwords() -> PasswordManager:
    return PasswordManager(build_password_hasher(time_cost=1, memory_cost_kib=1024))


def test_password_hash_round_trip(passwords: PasswordManager) -> None:
    encoded = passwords.hash("Secret123")

    assert encoded.startswith("$argon2id$")
    assert passwords.verify("Secret123", encoded)
    assert not passwords.verify("secret123", encoded)
    assert not passwords.verify("Secret123", "")
    assert not passwords.verify("Secret123", "not-a-hash")


def test_rehash_needed_when_parameters_change(passwords: PasswordManager) -> None:
    weak = passwords.hash("Secret123")
    stronger = PasswordManager(build_password_hasher(time_cost=2, memory_cost_kib=2048))

    assert not passwords.needs_rehash(weak)
    assert stronger.needs_rehash(weak)
    assert stronger.needs_rehash("pbkdf2_sha256$1$00$00")
    assert stronger.needs_rehash("")


def test_token_carries_user_claims() -> None:
    tokens = TokenService(SECRET, ttl_seconds=3600)
    claims = tokens.decode(tokens.issue(USER))

    assert claims["userId"] == "u-1"
    assert claims["username"] == "alice"
    assert claims["email"] == "alice@example.com"
    assert claims["exp"] - claims["iat"] == 3600
    assert tokens.expires_in == "1h"
    assert TokenService(SECRET, ttl_seconds=90).expires_in == "90s"


def test_expired_token_is_reported_as_expired() -> None:
    issued_long_ago = TokenService(SECRET, ttl_seconds=60, clock=lambda: time.time() - 3600)
    token = issued_long_ago.issue(USER)

    with pytest.raises(TokenError) as excinfo:
        TokenService(SECRET).decode(token)
    assert excinfo.value.message == "Token expired"


def test_foreign_or_tampered_token_is_invalid() -> None:
    now = int(time.time())
    foreign = jwt.encode(
        {"userId": "u-1", "iat": now, "exp": now + 60},
        "another-signing-secret-0123456789abcdef",
        algorithm="HS256",
    )
    tokens = TokenService(SECRET)
    header, _, signature = tokens.issue(USER).split(".")
    tampered = ".".join([header, foreign.split(".")[1], signature])

    for token in (foreign, tampered, "not.a.jwt"):
        with pytest.raises(TokenError) as excinfo:
            tokens.decode(token)
        assert excinfo.value.message == "Invalid token"


@pytest.mark.parametrize(
    "header, message",
    [
        (None, "Authentication required"),
        ("", "Authentication required"),
        ("Token abc", "Invalid token format"),
        ("Bearer ", "Invalid token format"),
        ("Bearer abc", "Invalid token"),
    ],
)
def test_authorization_header_errors(header, message: str) -> None:
    with pytest.raises(TokenError) as excinfo:
        TokenService(SECRET).decode_header(header)
    assert excinfo.value.message == message


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_login_limiter_locks_after_repeated_failures() -> None:
    clock = FakeClock()
    limiter = LoginRateLimiter(max_failures=3, window_seconds=60, lockout_seconds=120, clock=clock)

    for _ in range(2):
        limiter.record_failure("10.0.0.1")
    assert limiter.check("10.0.0.1") == (True, 0)

    limiter.record_failure("10.0.0.1")
    assert limiter.check("10.0.0.1") == (False, 120)
    assert limiter.check("10.0.0.2") == (True, 0)

    clock.now += 121
    assert limiter.check("10.0.0.1") == (True, 0)


def test_login_limiter_forgets_old_failures_and_successes() -> None:
    clock = FakeClock()
    limiter = LoginRateLimiter(max_failures=2, window_seconds=60, lockout_seconds=120, clock=clock)

    limiter.record_failure("client")
    clock.now += 61
    limiter.record_failure("client")
    assert limiter.check("client") == (True, 0)

    limiter.record_success("client")
    limiter.record_failure("client")
    assert limiter.check("client") == (True, 0)
