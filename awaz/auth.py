# awaz/auth.py
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional
from jose import jwt, JWTError, ExpiredSignatureError
from passlib.context import CryptContext
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from pydantic import ValidationError
from sqlalchemy.orm import Session
from . import models, database, config, schemas

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# Only election administrators log in, voters identify with their voting ID at the booth
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token")


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


# --- Passwords ---
def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


# --- Tokens ---
def create_access_token(
    subject: str,
    role: str,
    expires_delta: Optional[timedelta] = None,
    admin_id: Optional[int] = None,
) -> str:
    """Signed JWT for an election administrator, `sub` is the admin's email"""
    issued_at = datetime.now(timezone.utc)
    lifetime = expires_delta or timedelta(minutes=config.settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    claims = {
        "sub": str(subject),
        "role": str(role),
        "admin_id": admin_id,
        "iat": issued_at,
        "exp": issued_at + lifetime,
    }
    return jwt.encode(claims, config.settings.SECRET_KEY, algorithm=config.settings.ALGORITHM)


def decode_token(token: str) -> schemas.TokenPayload:
    try:
        claims = jwt.decode(token, config.settings.SECRET_KEY, algorithms=[config.settings.ALGORITHM])
        payload = schemas.TokenPayload(**claims)
    except ExpiredSignatureError:
        raise _unauthorized("Token has expired")
    except (JWTError, ValidationError):
        raise _unauthorized("Could not validate credentials")
    if not payload.sub:
        raise _unauthorized("Invalid token payload")
    return payload


# --- Admin accounts ---
def authenticate_admin(db: Session, email: str, password: str) -> Optional[models.Admin]:
    admin = db.query(models.Admin).filter(models.Admin.email == email).first()
    if admin is None or not verify_password(password, admin.hashed_password):
        return None
    return admin


def ensure_superadmin(db: Session) -> None:
    """Seed the default superadmin on an empty admin table"""
    existing = db.query(models.Admin).filter_by(role=models.AdminRole.superadmin).first()
    if existing:
        logger.info("Superadmin already exists")
        return
    db.add(models.Admin(
        name="Super Admin",
        email=config.settings.FIRST_SUPERADMIN_EMAIL,
        hashed_password=get_password_hash(config.settings.FIRST_SUPERADMIN_PASSWORD),
        role=models.AdminRole.superadmin,
    ))
    db.commit()
    logger.info("Default superadmin created: %s", config.settings.FIRST_SUPERADMIN_EMAIL)


def get_current_admin(
    token: str = Depends(oauth2_scheme),
    db: Session = Depends(database.get_db),
) -> schemas.AdminResponse:
    payload = decode_token(token)
    admin = db.query(models.Admin).filter(models.Admin.email == payload.sub).first()
    if not admin:
        raise _unauthorized("Admin not found")
    return schemas.AdminResponse.model_validate(admin)
