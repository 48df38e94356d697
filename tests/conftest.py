from typing import Dict, List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

from database import get_session, init_db, make_engine
from license_cache import LicenseCache
from license_engine import LicenseEngine
from license_store import KeyCollision, SqlLicenseStore
from machine_identity import IdentityUnavailable
from main import app
from models import License, LicenseStatus
from routes.license import get_license_cache, get_machine_resolver

ADMIN_SECRET = "test-admin-secret"
FAST_ITERATIONS = 1_000


class InMemoryLicenseStore:
    def __init__(self):
        self.rows: Dict[str, License] = {}
        self._next_id = 1

    def get(self, license_key: str) -> Optional[License]:
        return self.rows.get(license_key)

    def create(self, license: License) -> License:
        if license.license_key in self.rows:
            raise KeyCollision(license.license_key)
        license.id = self._next_id
        self._next_id += 1
        self.rows[license.license_key] = license
        return license

    def bind(self, license_key, machine_id_hash, machine_id_salt, activated_at) -> bool:
        lic = self.rows.get(license_key)
        if lic is None or lic.machine_id_hash is not None:
            return False
        if lic.status != LicenseStatus.pending:
            return False
        lic.machine_id_hash = machine_id_hash
        lic.machine_id_salt = machine_id_salt
        lic.status = LicenseStatus.active
        lic.activated_at = activated_at
        return True

    def unbind(self, license_key: str) -> bool:
        lic = self.rows.get(license_key)
        if lic is None:
            return False
        lic.machine_id_hash = None
        lic.machine_id_salt = None
        lic.status = LicenseStatus.pending
        lic.activated_at = None
        return True

    def set_status(self, license_key: str, status: LicenseStatus) -> bool:
        lic = self.rows.get(license_key)
        if lic is None:
            return False
        lic.status = status
        return True

    def list_licenses(self, status: Optional[LicenseStatus] = None) -> List[License]:
        rows = sorted(self.rows.values(), key=lambda lic: lic.id)
        return [lic for lic in rows if status is None or lic.status == status]


class FakeResolver:
    def __init__(self, machine_id: Optional[str] = "MACHINEA"):
        self.machine_id = machine_id

    def resolve(self) -> str:
        if self.machine_id is None:
            raise IdentityUnavailable("Failed to retrieve machine ID on platform 'Test'")
        return self.machine_id


@pytest.fixture
def db_engine():
    engine = make_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(db_engine):
    with Session(db_engine) as session:
        yield session


@pytest.fixture
def cache(tmp_path):
    return LicenseCache.in_dir(tmp_path / ".license", iterations=FAST_ITERATIONS)


@pytest.fixture(params=["memory", "sql"])
def store(request, session):
    if request.param == "memory":
        return InMemoryLicenseStore()
    return SqlLicenseStore(session)


@pytest.fixture
def license_engine(store, cache):
    return LicenseEngine(store, cache)


@pytest.fixture
def resolver():
    return FakeResolver()


@pytest.fixture
def client(session, cache, resolver, monkeypatch):
    monkeypatch.setenv("ADMIN_SECRET", ADMIN_SECRET)
    app.dependency_overrides[get_session] = lambda: session
    app.dependency_overrides[get_license_cache] = lambda: cache
    app.dependency_overrides[get_machine_resolver] = lambda: resolver
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def issue(client):
    def _issue(**fields) -> dict:
        payload = {
            "customer_name": "Ama Mensah",
            "hostel_name": "Sunrise Hostel",
            "admin_secret": ADMIN_SECRET,
        }
        payload.update(fields)
        response = client.post("/license/generate", json=payload)
        assert response.status_code == 200, response.text
        return response.json()

    return _issue
