from fastapi import APIRouter, Cookie, Depends, HTTPException, Response
from sqlmodel import Session, select
from datetime import datetime, timedelta, timezone
from jose import jwt, JWTError
from pydantic import BaseModel, Field
from typing import Optional
from werkzeug.security import generate_password_hash, check_password_hash
from database import get_session
from models import AdminUser, as_utc, utcnow
import logging
import os


router = APIRouter(prefix="/auth", tags=["auth"])
logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
SESSION_COOKIE = "hostelpro_session"
MAX_LOGIN_ATTEMPTS = 3
LOCK_DURATION = timedelta(minutes=5)


def _secret() -> str:
    return os.getenv("JWT_SECRET", "change-me-in-production")


# --- Request schemas ---
class Credentials(BaseModel):
    username: str = Field(min_length=3)
    password: str = Field(min_length=6)


# --- Response schemas ---
class AuthStatus(BaseModel):
    has_admin_account: bool
    is_authenticated: bool
    username: Optional[str] = None


# --- Helpers ---
def make_session_token(admin: AdminUser) -> str:
    hours = int(os.getenv("SESSION_HOURS", "12"))
    payload = {
        "sub": str(admin.id),
        "username": admin.username,
        "ver": admin.session_version,
        "exp": datetime.now(timezone.utc) + timedelta(hours=hours),
    }
    return jwt.encode(payload, _secret(), algorithm=ALGORITHM)


def session_admin(token: Optional[str], session: Session) -> Optional[AdminUser]:
    if not token:
        return None
    try:
        payload = jwt.decode(token, _secret(), algorithms=[ALGORITHM])
        admin_id = int(payload.get("sub"))
    except (JWTError, TypeError, ValueError):
        return None
    admin = session.get(AdminUser, admin_id)
    if admin is None or payload.get("ver") != admin.session_version:
        return None
    return admin


def get_admin(session: Session) -> Optional[AdminUser]:
    return session.exec(select(AdminUser)).first()


# --- Routes ---
@router.get("/status", response_model=AuthStatus)
def status(
    hostelpro_session: Optional[str] = Cookie(default=None),
    session: Session = Depends(get_session),
):
    admin = session_admin(hostelpro_session, session)
    return AuthStatus(
        has_admin_account=get_admin(session) is not None,
        is_authenticated=admin is not None,
        username=admin.username if admin else None,
    )


@router.post("/setup", status_code=201)
def setup(creds: Credentials, session: Session = Depends(get_session)):
    if get_admin(session):
        raise HTTPException(409, "Admin account already exists")

    admin = AdminUser(
        username=creds.username,
        password_hash=generate_password_hash(creds.password),
    )
    session.add(admin)
    session.commit()
    logger.info("admin account %s created", creds.username)
    return {"ok": True, "message": "Admin account created"}


@router.post("/login")
def login(
    creds: Credentials, response: Response, session: Session = Depends(get_session)
):
    admin = session.exec(
        select(AdminUser).where(AdminUser.username == creds.username)
    ).first()
    if not admin:
        raise HTTPException(401, "Invalid username or password")

    now = utcnow()
    if admin.locked_until and as_utc(admin.locked_until) > now:
        raise HTTPException(423, "Account locked, try again later")

    if not check_password_hash(admin.password_hash, creds.password):
        admin.failed_attempts += 1
        if admin.failed_attempts >= MAX_LOGIN_ATTEMPTS:
            admin.locked_until = now + LOCK_DURATION
            admin.failed_attempts = 0
            logger.warning("admin %s locked after repeated failures", admin.username)
        else:
            logger.warning("failed login for %s", admin.username)
        session.add(admin)
        session.commit()
        raise HTTPException(401, "Invalid username or password")

    admin.failed_attempts = 0
    admin.locked_until = None
    session.add(admin)
    session.commit()
    session.refresh(admin)

    response.set_cookie(
        SESSION_COOKIE,
        make_session_token(admin),
        httponly=True,
        samesite="lax",
    )
    return {"ok": True, "username": admin.username}


@router.post("/logout")
def logout(
    response: Response,
    hostelpro_session: Optional[str] = Cookie(default=None),
    session: Session = Depends(get_session),
):
    # license and admin account are untouched; issued tokens stop working
    admin = session_admin(hostelpro_session, session)
    if admin:
        admin.session_version += 1
        session.add(admin)
        session.commit()
        logger.info("admin %s logged out", admin.username)
    response.delete_cookie(SESSION_COOKIE)
    return {"ok": True}
