# awaz/routers/auth.py
import logging
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.orm import Session
from .. import auth as auth_utils, schemas
from ..dependencies import get_db

router = APIRouter(prefix="/auth", tags=["Auth"])

logger = logging.getLogger(__name__)


@router.post("/token", response_model=schemas.Token)
def login_for_access_token(
    form_data: OAuth2PasswordRequestForm = Depends(),
    db: Session = Depends(get_db),
):
    """
    Login an election administrator.
    Accepts form-data with `username` (email) and `password`.
    """
    admin = auth_utils.authenticate_admin(db, form_data.username, form_data.password)
    if not admin:
        logger.warning("Failed admin login for %s", form_data.username)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    access_token = auth_utils.create_access_token(
        subject=admin.email,
        role=admin.role.value,
        admin_id=admin.id,
    )
    logger.info("Admin %s logged in", admin.email)

    return schemas.Token(
        access_token=access_token,
        token_type="bearer",
        admin=schemas.AdminResponse.model_validate(admin),
    )
