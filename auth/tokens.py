"""
auth/tokens.py -- Signed token codec and password hashing.

Security design decisions:
  Tokens: python-jose JWS/JWT with an asymmetric algorithm (ES256 by default).
       The private key issues, the public key verifies, so a process that only
       validates requests never needs the signing secret. Every token carries
       jti, sub, iat, exp and a type tag (access, refresh, verification,
       password_reset). The signature is checked before any claim is read.

  Token ids: uuid4, never a timestamp. Timestamps collide under concurrent
       issuance; uuid4 does not in practice.

  Expiry: checked against the codec's injected clock rather than jose's
       wall-clock check, so expiry is deterministic under test.

  Revocation: tokens are immutable. Refresh tokens are revoked by deleting
       their session record in the cache (see auth/service.py); a revoked
       refresh token still verifies here, which is why the service must also
       consult the session store for refresh operations.

  Passwords: bcrypt directly (no passlib wrapper). The _DUMMY_HASH constant
       enables timing equalization in AuthService.login() so response time
       does not reveal whether an email is registered.

Layer rule: no imports from api/, cache/, or mail/. Import from core/ is
allowed -- core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timedelta, timezone

import bcrypt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from jose import jws, jwt
from jose.exceptions import JOSEError

from auth.models import TokenClaims, TokenType
from core.clock import Clock, utcnow
from core.errors import InvalidSignature, TokenExpired, TokenMalformed, WrongTokenType

logger = logging.getLogger("authgate.auth")

_REQUIRED_CLAIMS = ("jti", "sub", "iat", "exp", "type")

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are silently truncated by bcrypt. The API
    layer caps password length at 72 characters, which keeps ASCII inputs at
    or under the truncation threshold.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Corrupt or non-bcrypt hash in the store.
        return False


# Computed once at module load so the first login is not measurably slower
# than later ones. Run verify_password() against it whenever the account does
# not exist or has no password.
_DUMMY_HASH: str = hash_password("authgate_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Spend one bcrypt comparison's worth of time without a real hash."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Key helpers
# ---------------------------------------------------------------------------


def generate_keypair() -> tuple[str, str]:
    """Return a fresh (private_pem, public_pem) ES256 keypair.

    For development and tests. Production keys are supplied via
    AUTH_PRIVATE_KEY / AUTH_PUBLIC_KEY.
    """
    key = ec.generate_private_key(ec.SECP256R1())
    private_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("utf-8")
    public_pem = (
        key.public_key()
        .public_bytes(serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo)
        .decode("utf-8")
    )
    return private_pem, public_pem


# ---------------------------------------------------------------------------
# Token codec
# ---------------------------------------------------------------------------


class TokenCodec:
    """Issues and verifies signed, typed, expiring tokens.

    Usage:
        codec = TokenCodec(private_pem, public_pem)
        token = codec.issue(user.id, TokenType.access, timedelta(minutes=15))
        claims = codec.verify(token, expected_type=TokenType.access)

    verify() failure modes, in check order:
        TokenMalformed   -- not a parseable JWS, or a required claim is missing
        InvalidSignature -- parseable but the signature does not verify
        TokenExpired     -- now > expires_at
        WrongTokenType   -- only when expected_type is given and differs
    """

    def __init__(
        self,
        private_key: str | None,
        public_key: str,
        algorithm: str = "ES256",
        clock: Clock = utcnow,
    ) -> None:
        # private_key may be None for verify-only deployments.
        self._private_key = private_key
        self._public_key = public_key
        self._algorithm = algorithm
        self._clock = clock

    def issue(self, subject: str, token_type: TokenType, ttl: timedelta) -> str:
        """Sign a new token for `subject` that expires `ttl` from now."""
        if self._private_key is None:
            raise RuntimeError("TokenCodec was constructed without a private key; cannot issue tokens.")
        now = self._clock()
        claims = {
            "jti": uuid.uuid4().hex,
            "sub": subject,
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
            "type": TokenType(token_type).value,
        }
        return jwt.encode(claims, self._private_key, algorithm=self._algorithm)

    def verify(self, token: str, expected_type: TokenType | None = None) -> TokenClaims:
        """Verify signature, shape and expiry; return the claims.

        Raises a TokenError subclass on any failure (see class docstring).
        """
        try:
            jws.get_unverified_header(token)
        except (JOSEError, TypeError, ValueError) as exc:
            raise TokenMalformed("token could not be parsed") from exc

        try:
            payload = jws.verify(token, self._public_key, algorithms=[self._algorithm])
        except JOSEError as exc:
            raise InvalidSignature("token signature verification failed") from exc

        claims = _parse_claims(payload)

        if self._clock() > claims.expires_at:
            raise TokenExpired(f"token {claims.id} expired at {claims.expires_at.isoformat()}")
        if expected_type is not None and claims.type != expected_type:
            raise WrongTokenType(f"expected {TokenType(expected_type).value} token, got {claims.type.value}")
        return claims


def _parse_claims(payload: bytes) -> TokenClaims:
    try:
        data = json.loads(payload)
    except ValueError as exc:
        raise TokenMalformed("token payload is not JSON") from exc
    if not isinstance(data, dict) or any(k not in data for k in _REQUIRED_CLAIMS):
        raise TokenMalformed("token is missing required claims")
    try:
        return TokenClaims(
            id=str(data["jti"]),
            subject=str(data["sub"]),
            type=TokenType(data["type"]),
            issued_at=datetime.fromtimestamp(int(data["iat"]), tz=timezone.utc),
            expires_at=datetime.fromtimestamp(int(data["exp"]), tz=timezone.utc),
        )
    except (TypeError, ValueError, OverflowError) as exc:
        raise TokenMalformed("token claims have invalid values") from exc
