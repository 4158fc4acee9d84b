from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session
from . import database, auth, schemas
from .models import AdminRole


def get_db():
    yield from database.get_db()


# Extract current admin from JWT (returns Pydantic AdminResponse)
def get_current_admin(
    db: Session = Depends(get_db),
    token: str = Depends(auth.oauth2_scheme),
) -> schemas.AdminResponse:
    return auth.get_current_admin(token=token, db=db)


# Role-based access with multiple roles + superadmin override
def require_role(*roles: str):
    def inner(admin: schemas.AdminResponse = Depends(get_current_admin)) -> schemas.AdminResponse:
        # Always allow superadmin
        if admin.role == AdminRole.superadmin.value:
            return admin

        if admin.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"One of these roles is required: {roles}"
            )
        return admin
    return inner


# Booth context recorded alongside sessions, votes and audit entries
def get_client_info(request: Request) -> dict:
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }
