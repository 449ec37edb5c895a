"""
Brute-force guard backed by the ``attempt_records`` table.

Failures are counted per ``(ip, identifier, endpoint)`` triple so that
hammering the sign-in form does not burn the budget of, say, backup-code
entry. Each record moves through three derived states:

* ``allowed``          fewer than ``captcha_threshold`` recent failures
* ``captcha_required`` at least ``captcha_threshold`` failures
* ``blocked``          ``max_attempts`` failures; held for ``lockout_seconds``

Expiry is lazy: a record whose window (or lock) has elapsed is reset the next
time it is read or incremented. ``purge_expired`` exists for a periodic sweep
but nothing depends on it running.

The counter is incremented in SQL (``fails = fails + 1``) rather than read,
modified and written back, so two concurrent failures cannot both observe the
same count and slip past the block threshold.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import and_, delete, insert, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from esglite.core.settings import Settings, get_settings
from esglite.db_models import AttemptRecord, utcnow_naive
from esglite.security.logger import auth_logger as logger, mask_identifier

DEFAULT_ENDPOINT = "auth"
# Reported when the guard itself cannot be evaluated.
SAFE_DEFAULT_REMAINING = 5


def _utcnow() -> datetime:
    return utcnow_naive()


@dataclass(frozen=True)
class AttemptKey:
    ip: str
    identifier: Optional[str] = None
    endpoint: str = DEFAULT_ENDPOINT

    @classmethod
    def build(cls, ip: str, identifier: Optional[str] = None, endpoint: Optional[str] = None) -> "AttemptKey":
        ident = (identifier or "").strip().lower() or None
        tag = (endpoint or "").strip().lower() or DEFAULT_ENDPOINT
        return cls(ip=(ip or "unknown").strip(), identifier=ident, endpoint=tag)

    def storage_key(self) -> str:
        return f"{self.endpoint}:{self.ip}:{self.identifier or '-'}"


@dataclass(frozen=True)
class GuardStatus:
    blocked: bool
    remaining_attempts: int
    requires_captcha: bool
    retry_after: int = 0
    fails: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "blocked": self.blocked,
            "remainingAttempts": self.remaining_attempts,
            "requiresCaptcha": self.requires_captcha,
        }


SAFE_DEFAULT_STATUS = GuardStatus(
    blocked=False, remaining_attempts=SAFE_DEFAULT_REMAINING, requires_captcha=False
)


class BruteForceGuard:
    def __init__(self, db: Session, settings: Optional[Settings] = None) -> None:
        self.db = db
        self.settings = settings or get_settings()

    @property
    def max_attempts(self) -> int:
        return max(1, self.settings.brute_force_max_attempts)

    @property
    def captcha_threshold(self) -> int:
        return max(0, self.settings.brute_force_captcha_threshold)

    def _window(self) -> timedelta:
        return timedelta(seconds=self.settings.brute_force_window_seconds)

    def _lockout(self) -> timedelta:
        return timedelta(seconds=self.settings.brute_force_lockout_seconds)

    def _stale_clause(self, now: datetime):
        # A served lock, or an unlocked record whose window has passed.
        cutoff = now - self._window()
        return or_(
            and_(AttemptRecord.blocked_until.is_not(None), AttemptRecord.blocked_until <= now),
            and_(AttemptRecord.blocked_until.is_(None), AttemptRecord.last_attempt_at < cutoff),
        )

    def _is_stale(self, record: AttemptRecord, now: datetime) -> bool:
        if record.blocked_until is not None:
            return record.blocked_until <= now
        return record.last_attempt_at < now - self._window()

    def _status_for(self, record: Optional[AttemptRecord], now: datetime) -> GuardStatus:
        if record is None:
            return GuardStatus(
                blocked=False,
                remaining_attempts=self.max_attempts,
                requires_captcha=self.captcha_threshold == 0,
            )
        if record.blocked_until is not None and record.blocked_until > now:
            retry_after = max(1, int((record.blocked_until - now).total_seconds()))
            return GuardStatus(
                blocked=True,
                remaining_attempts=0,
                requires_captcha=True,
                retry_after=retry_after,
                fails=record.fails,
            )
        return GuardStatus(
            blocked=False,
            remaining_attempts=max(0, self.max_attempts - record.fails),
            requires_captcha=record.fails >= self.captcha_threshold,
            fails=record.fails,
        )

    def _load(self, key: AttemptKey) -> Optional[AttemptRecord]:
        stmt = select(AttemptRecord).where(AttemptRecord.key == key.storage_key())
        return self.db.execute(stmt).scalar_one_or_none()

    def check(self, key: AttemptKey) -> GuardStatus:
        """
        Classify the next request for ``key``.

        Never raises: if the store cannot be read the guard fails open with
        ``SAFE_DEFAULT_STATUS`` so that a database hiccup does not lock every
        user out.
        """
        try:
            now = _utcnow()
            record = self._load(key)
            if record is not None and self._is_stale(record, now):
                self.db.execute(
                    delete(AttemptRecord)
                    .where(AttemptRecord.key == key.storage_key(), self._stale_clause(now))
                    .execution_options(synchronize_session=False)
                )
                self.db.commit()
                record = None
            return self._status_for(record, now)
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Brute-force check failed for endpoint=%s; failing open", key.endpoint)
            return SAFE_DEFAULT_STATUS

    def report_failure(self, key: AttemptKey) -> GuardStatus:
        """Count one failed attempt for ``key`` and return the resulting status."""
        now = _utcnow()
        storage_key = key.storage_key()
        try:
            self._increment(key, now)
        except IntegrityError:
            # Lost the race to create the row; it exists now, so just bump it.
            self.db.rollback()
            self._increment(key, now)

        # Compare-and-block happens in SQL as well, against the committed count.
        self.db.execute(
            update(AttemptRecord)
            .where(
                AttemptRecord.key == storage_key,
                AttemptRecord.fails >= self.max_attempts,
                AttemptRecord.blocked_until.is_(None),
            )
            .values(blocked_until=now + self._lockout())
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

        record = self._load(key)
        status = self._status_for(record, now)
        if status.blocked:
            logger.warning(
                "Locked %s for ip=%s identifier=%s after %d failures",
                key.endpoint,
                key.ip,
                mask_identifier(key.identifier),
                status.fails,
            )
        return status

    def _increment(self, key: AttemptKey, now: datetime) -> None:
        storage_key = key.storage_key()
        # Reset a stale record first so the increment below starts a new window.
        self.db.execute(
            update(AttemptRecord)
            .where(AttemptRecord.key == storage_key, self._stale_clause(now))
            .values(fails=0, window_started_at=now, blocked_until=None)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(
            update(AttemptRecord)
            .where(AttemptRecord.key == storage_key)
            .values(fails=AttemptRecord.fails + 1, last_attempt_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.db.execute(
                insert(AttemptRecord).values(
                    key=storage_key,
                    ip=key.ip,
                    identifier=key.identifier,
                    endpoint=key.endpoint,
                    fails=1,
                    window_started_at=now,
                    last_attempt_at=now,
                    blocked_until=None,
                )
            )
        self.db.flush()

    def report_success(self, key: AttemptKey) -> None:
        """Forget all failures for ``key`` (successful authentication)."""
        self.db.execute(delete(AttemptRecord).where(AttemptRecord.key == key.storage_key()))
        self.db.commit()

    def purge_expired(self) -> int:
        now = _utcnow()
        result = self.db.execute(
            delete(AttemptRecord)
            .where(self._stale_clause(now))
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount or 0


__all__ = [
    "AttemptKey",
    "BruteForceGuard",
    "DEFAULT_ENDPOINT",
    "GuardStatus",
    "SAFE_DEFAULT_REMAINING",
    "SAFE_DEFAULT_STATUS",
]
