from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import List, Optional
from .. import models, schemas
from ..dependencies import get_db, require_role
from ..services.activity import get_recent_activity

router = APIRouter(prefix="/audit-logs", tags=["Audit Logs"])


@router.get("/recent", response_model=List[schemas.AuditLogResponse])
def recent_activity(
    limit: int = Query(20, ge=1, le=100),
    action_type: Optional[List[models.AuditAction]] = Query(None),
    db: Session = Depends(get_db),
    current_admin=Depends(require_role("admin", "auditor")),
):
    return get_recent_activity(db, limit=limit, action_types=action_type)
