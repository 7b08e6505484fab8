"""
account/security.py -- Password hashing and opaque token generation.

Security design decisions:
  Passwords: bcrypt directly (no passlib wrapper). Each hash carries its own
       random salt and cost factor, so verify_password() needs nothing but the
       stored string. The cost factor comes from AccountConfig.bcrypt_rounds.

       bcrypt only looks at the first 72 bytes of input and recent releases
       raise on longer input instead of truncating silently. _encode() does
       the truncation explicitly so hashing and verification stay symmetric.

       verify_password() separates a legitimate mismatch (returns False) from
       a broken stored hash (raises HasherError). The engine only counts the
       former as a failed login.

  Tokens: secrets.token_urlsafe(32) gives 256 bits of entropy for session,
       refresh and reset tokens. They are opaque; nothing is encoded in them.

  OTPs: the ten digits are shuffled with a CSPRNG and the first `length`
       are kept. OTPs therefore never repeat a digit.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hmac
import secrets
import string

import bcrypt

_BCRYPT_MAX_BYTES = 72
_OTP_DIGITS = string.digits

_sysrand = secrets.SystemRandom()


class HasherError(Exception):
    """The hashing primitive failed for a reason other than a wrong password."""


def _encode(plain: str) -> bytes:
    return plain.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password(plain: str, rounds: int = 12) -> str:
    """Return a salted bcrypt hash of the given plaintext password."""
    try:
        return bcrypt.hashpw(_encode(plain), bcrypt.gensalt(rounds=rounds)).decode("utf-8")
    except ValueError as exc:
        raise HasherError(str(exc)) from exc


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    Raises HasherError if the stored hash is malformed.
    """
    try:
        return bcrypt.checkpw(_encode(plain), hashed.encode("utf-8"))
    except ValueError as exc:
        raise HasherError(str(exc)) from exc


def generate_token() -> str:
    """Return a new opaque URL-safe token (session, refresh or reset)."""
    return secrets.token_urlsafe(32)


def generate_otp(length: int = 6) -> str:
    """Return a numeric OTP of `length` distinct digits."""
    if not 1 <= length <= len(_OTP_DIGITS):
        raise ValueError(f"OTP length must be between 1 and {len(_OTP_DIGITS)}, got {length}")
    digits = list(_OTP_DIGITS)
    _sysrand.shuffle(digits)
    return "".join(digits[:length])


def tokens_match(presented: str, stored: str) -> bool:
    """Constant-time comparison for bearer secrets."""
    return hmac.compare_digest(presented.encode("utf-8"), stored.encode("utf-8"))
