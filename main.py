from dotenv import load_dotenv

load_dotenv()  # before database reads DATABASE_URL

from fastapi import FastAPI, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlmodel import Session
from database import init_db, get_session
from routes.auth import router as auth_router
from routes.license import (
    router as license_router,
    get_license_engine,
    get_machine_resolver,
    license_info,
    verify_admin,
)
from license_engine import LicenseEngine, LicenseNotFound
from license_store import SqlLicenseStore
from machine_identity import IdentityUnavailable, MachineIdentityResolver
from models import LicenseStatus
from pydantic import BaseModel
from typing import Literal
from fastapi.middleware.cors import CORSMiddleware
import logging
import os


logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="HostelPro License Server")
origins = os.getenv(
    "CORS_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173"
).split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in origins if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup():
    init_db()


@app.exception_handler(IdentityUnavailable)
def identity_unavailable(request: Request, exc: IdentityUnavailable):
    logger.error("machine identity unavailable for %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": str(exc)})


app.include_router(license_router)
app.include_router(auth_router)


# --- Schemas ---
class UpdateStatusPayload(BaseModel):
    status: Literal["suspended", "revoked"]


# --- Machine identity for the activation screen ---
@app.get("/machine-id")
def machine_id(resolver: MachineIdentityResolver = Depends(get_machine_resolver)):
    return {"machine_id": resolver.resolve()}


# --- Admin: Suspend / Revoke License ---
@app.patch("/admin/licenses/{license_key}")
def update_license_status(
    license_key: str,
    payload: UpdateStatusPayload,
    _=Depends(verify_admin),
    engine: LicenseEngine = Depends(get_license_engine),
):
    try:
        engine.set_status(license_key, LicenseStatus(payload.status))
    except LicenseNotFound:
        raise HTTPException(404, "License not found")
    return {"ok": True, "license_key": license_key, "status": payload.status}


# --- Admin: View Licenses Table ---
@app.get("/admin/licenses")
def list_licenses(_=Depends(verify_admin), session: Session = Depends(get_session)):
    licenses = SqlLicenseStore(session).list_licenses()
    return {
        "count": len(licenses),
        "licenses": [
            {**license_info(lic).model_dump(mode="json"), "bound": lic.is_bound}
            for lic in licenses
        ],
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=os.getenv("HOST", "127.0.0.1"), port=int(os.getenv("PORT", "5000")))
