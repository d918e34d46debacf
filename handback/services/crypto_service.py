"""
Crypto service: one-way hashing for secret answers and handover codes.

Security requirements implemented:
- Secrets are normalized before hashing, so comparison is insensitive to case and whitespace
- Only salted scrypt digests are stored; plaintext is never persisted or returned
- Verification is constant-time
- An optional server-side pepper (HANDBACK_HASH_PEPPER) is mixed in with HMAC-SHA256

Stored format: "scrypt$<n>$<salt_b64>$<digest_b64>"
The cost parameter travels with the digest, so HANDBACK_SCRYPT_N can be raised
without invalidating existing hashes.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import os

from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from .. import config

_SCHEME = 'scrypt'
_SALT_BYTES = 16
_DIGEST_BYTES = 32
_R = 8
_P = 1


class CryptoConfigError(Exception):
    """Raised when crypto configuration is invalid or a stored hash is malformed."""


def normalize_answer(answer: str) -> str:
    """Lowercase, trim and collapse internal whitespace."""
    return ' '.join(str(answer or '').split()).lower()


def _key_material(value: str) -> bytes:
    raw = value.encode('utf-8')
    pepper = config.HASH_PEPPER
    if pepper:
        return hmac.new(pepper.encode('utf-8'), raw, hashlib.sha256).digest()
    return raw


def _kdf(salt: bytes, n: int) -> Scrypt:
    if n < 2 or n & (n - 1):
        raise CryptoConfigError(f'scrypt cost must be a power of two greater than 1, got {n}')
    return Scrypt(salt=salt, length=_DIGEST_BYTES, n=n, r=_R, p=_P)


def hash_secret(value: str) -> str:
    """Hash an already-normalized secret for storage."""
    n = config.SCRYPT_N
    salt = os.urandom(_SALT_BYTES)
    digest = _kdf(salt, n).derive(_key_material(value))
    return '$'.join([
        _SCHEME,
        str(n),
        base64.urlsafe_b64encode(salt).decode('ascii'),
        base64.urlsafe_b64encode(digest).decode('ascii'),
    ])


def verify_secret(value: str, stored: str) -> bool:
    """Constant-time check of a normalized secret against a stored hash."""
    try:
        scheme, n_raw, salt_b64, digest_b64 = str(stored).split('$')
        if scheme != _SCHEME:
            raise ValueError(scheme)
        n = int(n_raw)
        salt = base64.urlsafe_b64decode(salt_b64)
        digest = base64.urlsafe_b64decode(digest_b64)
    except ValueError as e:
        raise CryptoConfigError(f'Malformed secret hash: {e}')
    try:
        _kdf(salt, n).verify(_key_material(value), digest)
        return True
    except InvalidKey:
        return False


def hash_answer(answer: str) -> str:
    return hash_secret(normalize_answer(answer))


def verify_answer(answer: str, stored: str) -> bool:
    return verify_secret(normalize_answer(answer), stored)


def hash_code(code: str) -> str:
    return hash_secret(str(code).strip())


def verify_code(code: str, stored: str) -> bool:
    return verify_secret(str(code).strip(), stored)
