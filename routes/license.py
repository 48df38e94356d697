from fastapi import APIRouter, Depends, HTTPException, Header
from sqlmodel import Session
from datetime import datetime
from pydantic import BaseModel, Field, field_validator
from typing import Optional
from database import get_session
from models import License, as_utc
from license_cache import LicenseCache
from license_engine import LicenseEngine, LicenseNotFound, parse_expiry
from license_store import KeyCollision, SqlLicenseStore
from machine_identity import (
    IdentityUnavailable,
    MachineIdentityResolver,
    normalize_machine_id,
)
import logging
import os
import secrets


router = APIRouter(prefix="/license", tags=["license"])
logger = logging.getLogger(__name__)

ISSUE_ATTEMPTS = 3


# --- Admin guard ---
def check_admin_secret(candidate: Optional[str]) -> bool:
    expected = os.getenv("ADMIN_SECRET")
    if not expected or not candidate:
        return False
    return secrets.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8"))


def verify_admin(x_admin_key: str = Header(...)):
    if not check_admin_secret(x_admin_key):
        raise HTTPException(403, "Forbidden")


# --- Dependencies ---
def get_license_cache() -> LicenseCache:
    return LicenseCache.in_dir(os.getenv("LICENSE_CACHE_DIR", ".license"))


def get_machine_resolver() -> MachineIdentityResolver:
    return MachineIdentityResolver()


def get_license_engine(
    session: Session = Depends(get_session),
    cache: LicenseCache = Depends(get_license_cache),
) -> LicenseEngine:
    return LicenseEngine(SqlLicenseStore(session), cache)


# --- Request schemas ---
class ValidateRequest(BaseModel):
    license_key: str = Field(min_length=1)
    machine_id: str

    @field_validator("machine_id")
    @classmethod
    def machine_id_not_blank(cls, v: str) -> str:
        if not normalize_machine_id(v):
            raise ValueError("machine_id must contain letters or digits")
        return v


class GenerateRequest(BaseModel):
    customer_name: str = Field(min_length=1)
    hostel_name: str = Field(min_length=1)
    expiry_date: Optional[str] = None
    notes: Optional[str] = None
    admin_secret: str


class DeactivateRequest(BaseModel):
    license_key: str


# --- Response schemas ---
class LicenseInfo(BaseModel):
    license_key: str
    customer_name: str
    hostel_name: str
    status: str
    issue_date: datetime
    expiry_date: Optional[datetime] = None
    activated_at: Optional[datetime] = None
    notes: Optional[str] = None


class ValidateResponse(BaseModel):
    valid: bool
    message: str
    reason: str
    license_key: Optional[str] = None
    customer_name: Optional[str] = None
    hostel_name: Optional[str] = None
    status: Optional[str] = None
    expiry_date: Optional[datetime] = None
    activated_at: Optional[datetime] = None


class CacheStatusResponse(BaseModel):
    present: bool
    license_key: Optional[str] = None


# --- Helpers ---
def license_info(lic: License) -> LicenseInfo:
    # binding hash and salt never leave the server
    return LicenseInfo(
        license_key=lic.license_key,
        customer_name=lic.customer_name,
        hostel_name=lic.hostel_name,
        status=lic.status.value,
        issue_date=as_utc(lic.issue_date),
        expiry_date=as_utc(lic.expiry_date),
        activated_at=as_utc(lic.activated_at),
        notes=lic.notes,
    )


# --- Routes ---
@router.get("", response_model=LicenseInfo)
def current_license(engine: LicenseEngine = Depends(get_license_engine)):
    lic = engine.current_license()
    if not lic:
        raise HTTPException(404, "No active license")
    return license_info(lic)


@router.get("/cache", response_model=CacheStatusResponse)
def cache_status(
    engine: LicenseEngine = Depends(get_license_engine),
    resolver: MachineIdentityResolver = Depends(get_machine_resolver),
):
    entry = engine.cached_license(resolver.resolve())
    if not entry:
        return CacheStatusResponse(present=False)
    return CacheStatusResponse(present=True, license_key=entry.license_key)


@router.post("/validate", response_model=ValidateResponse)
def validate(req: ValidateRequest, engine: LicenseEngine = Depends(get_license_engine)):
    verdict = engine.validate(req.license_key.strip(), req.machine_id)
    if not verdict.valid:
        return ValidateResponse(
            valid=False, message=verdict.message, reason=verdict.reason.value
        )

    lic = verdict.license
    return ValidateResponse(
        valid=True,
        message=verdict.message,
        reason=verdict.reason.value,
        license_key=lic.license_key,
        customer_name=lic.customer_name,
        hostel_name=lic.hostel_name,
        status=lic.status.value,
        expiry_date=as_utc(lic.expiry_date),
        activated_at=as_utc(lic.activated_at),
    )


@router.post("/generate", response_model=LicenseInfo)
def generate(req: GenerateRequest, engine: LicenseEngine = Depends(get_license_engine)):
    if not check_admin_secret(req.admin_secret):
        raise HTTPException(403, "Forbidden")

    try:
        expiry = parse_expiry(req.expiry_date)
    except ValueError:
        raise HTTPException(400, "expiry_date must be an ISO-8601 date or datetime")

    for attempt in range(1, ISSUE_ATTEMPTS + 1):
        try:
            lic = engine.issue(req.customer_name, req.hostel_name, expiry, req.notes)
        except KeyCollision as e:
            logger.warning("license key collision on %s (attempt %d)", e, attempt)
            continue
        return license_info(lic)

    raise HTTPException(409, "Could not generate a unique license key, try again")


@router.post("/deactivate")
def deactivate(
    req: DeactivateRequest,
    engine: LicenseEngine = Depends(get_license_engine),
    resolver: MachineIdentityResolver = Depends(get_machine_resolver),
):
    try:
        machine_identity = resolver.resolve()
    except IdentityUnavailable as e:
        # the record can still be unbound; the local cache is left as is
        logger.warning("deactivating without machine identity: %s", e)
        machine_identity = None

    try:
        engine.deactivate(req.license_key.strip(), machine_identity)
    except LicenseNotFound:
        raise HTTPException(404, "License not found")
    return {"ok": True, "message": "License deactivated"}
