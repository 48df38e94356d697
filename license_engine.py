"""
Node-locked license activation.

A license key is bound to one machine by storing SHA256(machine_id + salt)
with a per-record random salt. The engine is the only place that decides
whether a (key, machine) pair is authorized.
"""
import hashlib
import hmac
import logging
import os
import secrets
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from license_cache import LicenseCache, LicenseCacheEntry
from license_store import LicenseStore
from machine_identity import normalize_machine_id
from models import License, LicenseStatus, as_utc, utcnow

logger = logging.getLogger(__name__)


class LicenseNotFound(Exception):
    pass


class VerdictReason(str, Enum):
    invalid_key = "invalid_key"
    suspended = "suspended"
    revoked = "revoked"
    expired = "expired"
    activated = "activated"
    already_valid = "already_valid"
    machine_mismatch = "machine_mismatch"


MESSAGES = {
    VerdictReason.invalid_key: "Invalid license key",
    VerdictReason.suspended: "License has been suspended",
    VerdictReason.revoked: "License has been revoked",
    VerdictReason.expired: "License has expired",
    VerdictReason.activated: "License activated successfully",
    VerdictReason.already_valid: "License is already activated on this machine",
    VerdictReason.machine_mismatch: "License is already activated on a different machine",
}


@dataclass(frozen=True)
class Verdict:
    valid: bool
    reason: VerdictReason
    license: Optional[License] = None

    @property
    def message(self) -> str:
        return MESSAGES[self.reason]


_STATUS_REJECTIONS = {
    LicenseStatus.suspended: VerdictReason.suspended,
    LicenseStatus.revoked: VerdictReason.revoked,
    LicenseStatus.expired: VerdictReason.expired,
}


def _status_rejection(lic: License) -> Optional[Verdict]:
    reason = _STATUS_REJECTIONS.get(lic.status)
    return Verdict(False, reason) if reason else None


def generate_license_key(prefix: Optional[str] = None) -> str:
    prefix = prefix or os.getenv("LICENSE_KEY_PREFIX", "HOSTELPRO")
    groups = [secrets.token_hex(4).upper() for _ in range(4)]
    return f"{prefix}-{'-'.join(groups)}"


def generate_salt() -> str:
    return secrets.token_hex(16)


def hash_machine_id(machine_identity: str, salt: str) -> str:
    combined = normalize_machine_id(machine_identity) + salt
    return hashlib.sha256(combined.encode("utf-8")).hexdigest()


def parse_expiry(value: Optional[str]) -> Optional[datetime]:
    """ISO date or datetime -> aware UTC. Raises ValueError on bad input."""
    if not value:
        return None
    return as_utc(datetime.fromisoformat(value))


class LicenseEngine:
    def __init__(
        self,
        store: LicenseStore,
        cache: LicenseCache,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.cache = cache
        self.clock = clock

    def _is_past(self, expiry: Optional[datetime]) -> bool:
        return expiry is not None and as_utc(self.clock()) > as_utc(expiry)

    def _write_cache(self, lic: License, machine_identity: str) -> None:
        entry = LicenseCacheEntry(
            license_key=lic.license_key,
            hostel_name=lic.hostel_name,
            customer_name=lic.customer_name,
            activated_at=lic.activated_at,
            expiry_date=lic.expiry_date,
            machine_id_hash=lic.machine_id_hash,
        )
        try:
            self.cache.write(entry, machine_identity)
        except OSError:
            # the binding is already persisted; the cache is only advisory
            logger.exception("could not write license cache for %s", lic.license_key)

    def validate(self, license_key: str, machine_identity: str) -> Verdict:
        lic = self.store.get(license_key)
        if lic is None:
            logger.warning("validation with unknown license key")
            return Verdict(False, VerdictReason.invalid_key)

        rejected = _status_rejection(lic)
        if rejected:
            return rejected

        if self._is_past(lic.expiry_date):
            self.store.set_status(license_key, LicenseStatus.expired)
            logger.warning("license %s expired, status updated", license_key)
            return Verdict(False, VerdictReason.expired)

        if not lic.machine_id_hash:
            salt = generate_salt()
            if self.store.bind(
                license_key,
                hash_machine_id(machine_identity, salt),
                salt,
                self.clock(),
            ):
                lic = self.store.get(license_key)
                self._write_cache(lic, machine_identity)
                logger.info("license %s activated", license_key)
                return Verdict(True, VerdictReason.activated, lic)
            # lost a concurrent bind or status change; judge against whatever won
            lic = self.store.get(license_key)
            if lic is None:
                return Verdict(False, VerdictReason.invalid_key)
            rejected = _status_rejection(lic)
            if rejected:
                return rejected
            if not lic.is_bound:
                return Verdict(False, VerdictReason.invalid_key)

        expected = hash_machine_id(machine_identity, lic.machine_id_salt)
        if not hmac.compare_digest(expected, lic.machine_id_hash):
            logger.warning("license %s presented from a different machine", license_key)
            return Verdict(False, VerdictReason.machine_mismatch)

        self._write_cache(lic, machine_identity)
        return Verdict(True, VerdictReason.already_valid, lic)

    def deactivate(self, license_key: str, machine_identity: Optional[str] = None) -> None:
        """Unbind a license. The local cache is cleared only if it holds this key.

        Without a machine identity the cache cannot be read, so it is left alone.
        """
        if not self.store.unbind(license_key):
            raise LicenseNotFound(license_key)
        logger.info("license %s deactivated", license_key)

        if machine_identity is None:
            return
        entry = self.cache.read(machine_identity)
        if entry is not None and entry.license_key == license_key:
            self.cache.clear()
            logger.info("license cache cleared for %s", license_key)

    def issue(
        self,
        customer_name: str,
        hostel_name: str,
        expiry_date: Optional[datetime] = None,
        notes: Optional[str] = None,
    ) -> License:
        lic = License(
            license_key=generate_license_key(),
            customer_name=customer_name,
            hostel_name=hostel_name,
            issue_date=self.clock(),
            expiry_date=as_utc(expiry_date),
            status=LicenseStatus.pending,
            notes=notes,
        )
        lic = self.store.create(lic)  # KeyCollision propagates to the caller
        logger.info("issued license %s for %s", lic.license_key, hostel_name)
        return lic

    def set_status(self, license_key: str, status: LicenseStatus) -> None:
        if not self.store.set_status(license_key, status):
            raise LicenseNotFound(license_key)
        logger.info("license %s status set to %s", license_key, status.value)

    def current_license(self) -> Optional[License]:
        """First active, bound, unexpired license; passed-expiry ones are marked expired."""
        for lic in self.store.list_licenses(status=LicenseStatus.active):
            if not lic.is_bound:
                continue
            if self._is_past(lic.expiry_date):
                self.store.set_status(lic.license_key, LicenseStatus.expired)
                logger.warning("license %s expired, status updated", lic.license_key)
                continue
            return lic
        return None

    def cached_license(self, machine_identity: str) -> Optional[LicenseCacheEntry]:
        return self.cache.read(machine_identity)
