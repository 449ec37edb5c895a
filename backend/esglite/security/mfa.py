from __future__ import annotations

import hashlib
import hmac
import secrets
import time
from typing import List, Optional
from urllib.parse import quote

import pyotp
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.orm import Session

from esglite.core.settings import get_settings
from esglite.db_models import BackupCode, User, utcnow_naive

ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
BACKUP_CODE_LENGTH = 8

# Authenticator apps assume these; they are part of the otpauth contract.
TOTP_ALGORITHM = "SHA1"
TOTP_DIGITS = 6
TOTP_PERIOD = 30


class TotpAlreadyEnabled(Exception):
    pass


class TotpNotEnabled(Exception):
    pass


# ---------------- TOTP ----------------
def generate_secret() -> str:
    return pyotp.random_base32()


def build_otpauth_uri(secret: str, account: Optional[str], issuer: Optional[str] = None) -> str:
    issuer_q = quote(issuer or get_settings().totp_issuer, safe="")
    label_q = quote(account or "user", safe="")
    return (
        f"otpauth://totp/{issuer_q}:{label_q}?secret={secret}&issuer={issuer_q}"
        f"&algorithm={TOTP_ALGORITHM}&digits={TOTP_DIGITS}&period={TOTP_PERIOD}"
    )


def matching_totp_step(secret: Optional[str], code: Optional[str], valid_window: int = 1) -> Optional[int]:
    """Time step (``unix_time // period``) whose code equals ``code``, if any within the window."""
    if not secret or not code:
        return None
    cleaned = code.replace(" ", "").strip()
    if not cleaned.isdigit() or len(cleaned) != TOTP_DIGITS:
        return None
    totp = pyotp.TOTP(secret, digits=TOTP_DIGITS, interval=TOTP_PERIOD)
    current = int(time.time()) // TOTP_PERIOD
    for step in range(current - valid_window, current + valid_window + 1):
        if hmac.compare_digest(totp.generate_otp(step), cleaned):
            return step
    return None


def verify_totp(secret: Optional[str], code: Optional[str], valid_window: int = 1) -> bool:
    return matching_totp_step(secret, code, valid_window) is not None


def accept_totp(db: Session, user: User, code: Optional[str]) -> bool:
    """
    Verify ``code`` for ``user`` and burn its time step.

    The step is recorded with a conditional UPDATE that only moves forward,
    so a code (or an older one from the window) is accepted at most once,
    also when two requests race with the same code.
    """
    step = matching_totp_step(user.totp_secret, code)
    if step is None:
        return False
    result = db.execute(
        update(User)
        .where(
            User.id == user.id,
            User.totp_secret == user.totp_secret,
            or_(User.totp_last_step.is_(None), User.totp_last_step < step),
        )
        .values(totp_last_step=step)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def totp_status(user: User) -> dict:
    return {"enabled": user.totp_enabled}


def setup_totp(db: Session, user: User) -> dict:
    """
    Enroll ``user`` in TOTP and return ``{secret, otpauth}``.

    The secret is write-once: the conditional UPDATE only succeeds while the
    column is still empty, so two concurrent setups cannot both hand out a
    secret.
    """
    if user.totp_secret:
        raise TotpAlreadyEnabled()
    secret = generate_secret()
    result = db.execute(
        update(User)
        .where(User.id == user.id, User.totp_secret.is_(None))
        .values(totp_secret=secret, totp_last_step=None)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise TotpAlreadyEnabled()
    db.commit()
    db.refresh(user)
    return {"secret": secret, "otpauth": build_otpauth_uri(secret, user.email)}


def disable_totp(db: Session, user: User) -> None:
    """Drop the TOTP secret together with every backup code, in one transaction."""
    try:
        db.execute(delete(BackupCode).where(BackupCode.user_id == user.id))
        db.execute(update(User).where(User.id == user.id).values(totp_secret=None, totp_last_step=None))
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(user)


# ---------------- Backup codes ----------------
def normalize_backup_code(code: str) -> str:
    return "".join(ch for ch in (code or "").upper() if ch.isalnum())


def _format_backup_code(raw: str) -> str:
    half = BACKUP_CODE_LENGTH // 2
    return f"{raw[:half]}-{raw[half:]}"


def generate_backup_codes(count: Optional[int] = None) -> List[str]:
    total = count if count is not None else get_settings().backup_codes_count
    seen = set()
    codes: List[str] = []
    while len(codes) < total:
        raw = "".join(secrets.choice(ALPHABET) for _ in range(BACKUP_CODE_LENGTH))
        if raw in seen:
            continue
        seen.add(raw)
        codes.append(_format_backup_code(raw))
    return codes


def hash_backup_code(user_id: str, code: str) -> str:
    """
    Deterministic, per-user hash of a backup code.

    The user id is part of the message, so the same code hashes differently
    for different accounts; the pepper keeps a leaked table from being
    brute-forced offline.
    """
    pepper = get_settings().backup_code_pepper.encode("utf-8")
    message = f"{user_id}:{normalize_backup_code(code)}".encode("utf-8")
    return hmac.new(pepper, message, hashlib.sha256).hexdigest()


def regenerate_backup_codes(db: Session, user: User, count: Optional[int] = None) -> List[str]:
    """
    Replace the user's unused backup codes with a fresh batch.

    The plaintext codes are returned once and never stored. Delete and insert
    share one transaction, and the transaction starts by touching the user
    row, which serialises concurrent regenerations for the same user.
    """
    if not user.totp_secret:
        raise TotpNotEnabled()
    codes = generate_backup_codes(count)
    try:
        db.execute(
            update(User).where(User.id == user.id).values(backup_codes_rotated_at=utcnow_naive())
        )
        db.execute(
            delete(BackupCode).where(BackupCode.user_id == user.id, BackupCode.used.is_(False))
        )
        db.add_all(
            BackupCode(user_id=user.id, code_hash=hash_backup_code(user.id, code), used=False)
            for code in codes
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    return codes


def consume_backup_code(db: Session, user: User, code: Optional[str]) -> bool:
    """Mark a matching unused code as used. A code verifies at most once."""
    if not normalize_backup_code(code or ""):
        return False
    result = db.execute(
        update(BackupCode)
        .where(
            BackupCode.user_id == user.id,
            BackupCode.code_hash == hash_backup_code(user.id, code or ""),
            BackupCode.used.is_(False),
        )
        .values(used=True, used_at=utcnow_naive())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def remaining_backup_codes(db: Session, user: User) -> int:
    stmt = select(func.count()).select_from(BackupCode).where(
        BackupCode.user_id == user.id, BackupCode.used.is_(False)
    )
    return int(db.execute(stmt).scalar_one())


__all__ = [
    "TotpAlreadyEnabled",
    "TotpNotEnabled",
    "accept_totp",
    "build_otpauth_uri",
    "consume_backup_code",
    "disable_totp",
    "generate_backup_codes",
    "generate_secret",
    "hash_backup_code",
    "matching_totp_step",
    "regenerate_backup_codes",
    "remaining_backup_codes",
    "setup_totp",
    "totp_status",
    "verify_totp",
]
