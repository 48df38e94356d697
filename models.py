from sqlmodel import SQLModel, Field
from typing import Optional
from datetime import datetime, timezone
from enum import Enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Aware UTC. Naive values are taken to already be UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class LicenseStatus(str, Enum):
    pending = "pending"
    active = "active"
    suspended = "suspended"
    revoked = "revoked"
    expired = "expired"


class License(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    license_key: str = Field(unique=True, index=True)
    machine_id_hash: Optional[str] = Field(default=None)
    machine_id_salt: Optional[str] = Field(default=None)
    customer_name: str
    hostel_name: str
    issue_date: datetime = Field(default_factory=utcnow)
    expiry_date: Optional[datetime] = Field(default=None)  # None = perpetual
    status: LicenseStatus = Field(default=LicenseStatus.pending)
    notes: Optional[str] = Field(default=None)
    activated_at: Optional[datetime] = Field(default=None)

    @property
    def is_bound(self) -> bool:
        return bool(self.machine_id_hash and self.machine_id_salt)


class AdminUser(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(unique=True, index=True)
    password_hash: str
    failed_attempts: int = Field(default=0)
    locked_until: Optional[datetime] = Field(default=None)
    # bumped on logout; session tokens carrying an older value are dead
    session_version: int = Field(default=0)
