from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import List, Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from esglite.db import Base


def utcnow_naive() -> datetime:
    """Current UTC time as a naive datetime (SQLite drops tzinfo)."""
    return datetime.now(UTC).replace(tzinfo=None)


def _uuid() -> str:
    return str(uuid.uuid4())


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    email: Mapped[str] = mapped_column(String(320), unique=True, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    password_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    # Presence of a secret is what "TOTP enabled" means.
    totp_secret: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    # Last accepted TOTP time step; a code is never accepted twice.
    totp_last_step: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    backup_codes_rotated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow_naive)

    @property
    def totp_enabled(self) -> bool:
        return bool(self.totp_secret)


class UserSession(Base):
    __tablename__ = "user_sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    token_hash: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime)
    ip_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow_naive)


class BackupCode(Base):
    __tablename__ = "backup_codes"
    __table_args__ = (UniqueConstraint("user_id", "code_hash", name="uq_backup_codes_user_hash"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    code_hash: Mapped[str] = mapped_column(String(64))
    used: Mapped[bool] = mapped_column(Boolean, default=False)
    used_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow_naive)


class AttemptRecord(Base):
    """Failed-attempt counter for one (ip, identifier, endpoint) triple."""

    __tablename__ = "attempt_records"

    key: Mapped[str] = mapped_column(String(512), primary_key=True)
    ip: Mapped[str] = mapped_column(String(64))
    identifier: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)
    endpoint: Mapped[str] = mapped_column(String(64))
    fails: Mapped[int] = mapped_column(Integer, default=0)
    window_started_at: Mapped[datetime] = mapped_column(DateTime)
    last_attempt_at: Mapped[datetime] = mapped_column(DateTime)
    blocked_until: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), unique=True)
    name: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    profile: Mapped[Optional["OrganizationProfile"]] = relationship(
        back_populates="organization", uselist=False
    )


class OrganizationProfile(Base):
    __tablename__ = "organization_profiles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    organization_id: Mapped[str] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), unique=True
    )
    inn: Mapped[Optional[str]] = mapped_column(String(12), nullable=True)
    full_name: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    short_name: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    ogrn: Mapped[Optional[str]] = mapped_column(String(15), nullable=True)
    okpo: Mapped[Optional[str]] = mapped_column(String(14), nullable=True)
    oktmo: Mapped[Optional[str]] = mapped_column(String(11), nullable=True)
    legal_address: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    email_for_billing: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)
    director_name: Mapped[Optional[str]] = mapped_column(String(300), nullable=True)
    director_position: Mapped[Optional[str]] = mapped_column(String(300), nullable=True)

    organization: Mapped[Organization] = relationship(back_populates="profile")


class Document(Base):
    __tablename__ = "documents"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    file_name: Mapped[str] = mapped_column(String(500))
    status: Mapped[str] = mapped_column(String(32), default="UPLOADED")
    ocr_processed: Mapped[bool] = mapped_column(Boolean, default=False)
    inn_matches: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow_naive)


__all__: List[str] = [
    "AttemptRecord",
    "BackupCode",
    "Document",
    "Organization",
    "OrganizationProfile",
    "User",
    "UserSession",
    "utcnow_naive",
]
