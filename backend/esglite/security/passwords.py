from __future__ import annotations

import os
import hmac
import hashlib
from typing import Optional

from passlib.hash import argon2


# Explicit Argon2id configuration
_argon = argon2.using(type="ID", time_cost=3, memory_cost=65536, parallelism=2)

# Verified against when the account does not exist, so unknown emails cost
# the same time as wrong passwords.
_DUMMY_HASH = _argon.hash("esg-lite-timing-equaliser")


def _pepper_bytes() -> bytes:
    """Return the application-wide secret pepper as bytes.

    Load from env var PASSWORD_PEPPER. Keep this secret outside the DB.
    """
    val = os.getenv("PASSWORD_PEPPER", "")
    return val.encode("utf-8") if val else b""


def _pepperize(password: str) -> str:
    key = _pepper_bytes()
    if not key:
        return password
    # Use HMAC-SHA256 to combine the password with the pepper
    return hmac.new(key, password.encode("utf-8"), hashlib.sha256).hexdigest()


def hash_password(password: str) -> str:
    return _argon.hash(_pepperize(password))


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    if not password_hash:
        _argon.verify(_pepperize(password), _DUMMY_HASH)
        return False
    try:
        return _argon.verify(_pepperize(password), password_hash)
    except ValueError:
        # Malformed or foreign hash format stored for this account.
        return False
