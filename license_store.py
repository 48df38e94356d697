from datetime import datetime
from typing import List, Optional, Protocol

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from models import License, LicenseStatus


class KeyCollision(Exception):
    """The store already holds a license with this key."""


class LicenseStore(Protocol):
    def get(self, license_key: str) -> Optional[License]: ...

    def create(self, license: License) -> License: ...

    def bind(
        self,
        license_key: str,
        machine_id_hash: str,
        machine_id_salt: str,
        activated_at: datetime,
    ) -> bool:
        """Bind and activate only if unbound and pending. False if nothing changed."""
        ...

    def unbind(self, license_key: str) -> bool: ...

    def set_status(self, license_key: str, status: LicenseStatus) -> bool: ...

    def list_licenses(self, status: Optional[LicenseStatus] = None) -> List[License]: ...


class SqlLicenseStore:
    def __init__(self, session: Session):
        self.session = session

    def get(self, license_key: str) -> Optional[License]:
        return self.session.exec(
            select(License).where(License.license_key == license_key)
        ).first()

    def create(self, license: License) -> License:
        self.session.add(license)
        try:
            self.session.commit()
        except IntegrityError as e:
            self.session.rollback()
            raise KeyCollision(license.license_key) from e
        self.session.refresh(license)
        return license

    def bind(self, license_key, machine_id_hash, machine_id_salt, activated_at) -> bool:
        # single conditional UPDATE; two racing binds cannot both succeed, and a
        # license suspended or revoked meanwhile stays that way
        stmt = (
            update(License)
            .where(
                col(License.license_key) == license_key,
                col(License.machine_id_hash).is_(None),
                col(License.status) == LicenseStatus.pending,
            )
            .values(
                machine_id_hash=machine_id_hash,
                machine_id_salt=machine_id_salt,
                status=LicenseStatus.active,
                activated_at=activated_at,
            )
        )
        result = self.session.exec(stmt)
        self.session.commit()
        return result.rowcount == 1

    def unbind(self, license_key: str) -> bool:
        stmt = (
            update(License)
            .where(col(License.license_key) == license_key)
            .values(
                machine_id_hash=None,
                machine_id_salt=None,
                status=LicenseStatus.pending,
                activated_at=None,
            )
        )
        result = self.session.exec(stmt)
        self.session.commit()
        return result.rowcount == 1

    def set_status(self, license_key: str, status: LicenseStatus) -> bool:
        stmt = (
            update(License)
            .where(col(License.license_key) == license_key)
            .values(status=status)
        )
        result = self.session.exec(stmt)
        self.session.commit()
        return result.rowcount == 1

    def list_licenses(self, status: Optional[LicenseStatus] = None) -> List[License]:
        query = select(License).order_by(col(License.id))
        if status is not None:
            query = query.where(License.status == status)
        return list(self.session.exec(query).all())
