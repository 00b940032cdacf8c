"""Unit tests for auth/tokens.py -- token codec and password hashing.

Covers:
- issue/verify round-trip returns the subject and type
- expiry is judged by the injected clock
- tampered, foreign-key and garbage tokens are rejected with distinct types
- expected_type mismatch raises WrongTokenType
- every token gets a unique id
- bcrypt hashing and verification, including corrupt hashes
"""

from datetime import timedelta

import pytest

from auth.models import TokenType
from auth.tokens import TokenCodec, generate_keypair, hash_password, verify_password
from core.errors import InvalidSignature, TokenError, TokenExpired, TokenMalformed, WrongTokenType


@pytest.fixture(scope="module")
def keypair():
    return generate_keypair()


@pytest.fixture
def codec(keypair, clock):
    private_pem, public_pem = keypair
    return TokenCodec(private_pem, public_pem, clock=clock)


def test_round_trip_returns_subject_and_type(codec, clock):
    token = codec.issue("user-1", TokenType.access, timedelta(minutes=15))
    claims = codec.verify(token)
    assert claims.subject == "user-1"
    assert claims.type == TokenType.access
    assert claims.expires_at - claims.issued_at == timedelta(minutes=15)
    assert claims.issued_at == clock().replace(microsecond=0)


def test_token_expires_after_ttl(codec, clock):
    token = codec.issue("user-1", TokenType.refresh, timedelta(minutes=5))
    clock.advance(minutes=4, seconds=59)
    assert codec.verify(token).subject == "user-1"
    clock.advance(seconds=2)
    with pytest.raises(TokenExpired):
        codec.verify(token)


def test_wrong_type_rejected(codec):
    token = codec.issue("user-1", TokenType.refresh, timedelta(minutes=5))
    with pytest.raises(WrongTokenType):
        codec.verify(token, expected_type=TokenType.access)


def test_tampered_payload_fails_signature(codec):
    token = codec.issue("user-1", TokenType.access, timedelta(minutes=5))
    header, payload, signature = token.split(".")
    other = codec.issue("user-2", TokenType.access, timedelta(minutes=5)).split(".")[1]
    with pytest.raises(InvalidSignature):
        codec.verify(f"{header}.{other}.{signature}")


def test_token_from_another_key_fails_signature(codec, clock):
    private_pem, public_pem = generate_keypair()
    foreign = TokenCodec(private_pem, public_pem, clock=clock).issue("user-1", TokenType.access, timedelta(minutes=5))
    with pytest.raises(InvalidSignature):
        codec.verify(foreign)


@pytest.mark.parametrize("garbage", ["", "not-a-token", "a.b", "...."])
def test_garbage_is_malformed(codec, garbage):
    with pytest.raises(TokenMalformed):
        codec.verify(garbage)


def test_all_token_failures_share_public_code(codec):
    with pytest.raises(TokenError) as exc_info:
        codec.verify("not-a-token")
    assert exc_info.value.code == "invalid_token"
    assert exc_info.value.status_code == 401


def test_token_ids_are_unique(codec):
    ids = {codec.verify(codec.issue("u", TokenType.access, timedelta(minutes=1))).id for _ in range(20)}
    assert len(ids) == 20


def test_verify_only_codec_cannot_issue(keypair):
    _, public_pem = keypair
    with pytest.raises(RuntimeError):
        TokenCodec(None, public_pem).issue("u", TokenType.access, timedelta(minutes=1))


# ---------------------------------------------------------------------------
# Passwords
# ---------------------------------------------------------------------------


def test_password_hash_round_trip():
    hashed = hash_password("s3cret-pass")
    assert hashed != "s3cret-pass"
    assert verify_password("s3cret-pass", hashed)
    assert not verify_password("wrong-pass", hashed)


def test_corrupt_hash_does_not_raise():
    assert verify_password("anything", "not-a-bcrypt-hash") is False
