from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from .. import models

MAX_ACTIVITY_LIMIT = 100


def get_recent_activity(db: Session, limit: int = 20,
                        action_types: Optional[Iterable[models.AuditAction]] = None) -> List[models.AuditLog]:
    """Newest audit entries first, optionally restricted to some action types."""
    limit = max(1, min(limit, MAX_ACTIVITY_LIMIT))
    query = db.query(models.AuditLog)
    if action_types:
        query = query.filter(models.AuditLog.action_type.in_(list(action_types)))
    return query.order_by(models.AuditLog.timestamp.desc(), models.AuditLog.id.desc()).limit(limit).all()
