from fastapi import APIRouter, Depends, Query
from sqlalchemy import func
from sqlalchemy.orm import Session
from .. import models, schemas
from ..config import settings
from ..dependencies import get_db, require_role
from ..services.scheduler import ElectionScheduler

router = APIRouter(prefix="/admin", tags=["Admin"])


# ---------------- Dashboard ----------------
@router.get("/overview", response_model=schemas.OverviewResponse)
def overview(
    db: Session = Depends(get_db),
    current_admin=Depends(require_role("admin", "auditor")),
):
    by_status = dict(
        db.query(models.Election.status, func.count(models.Election.id))
        .group_by(models.Election.status)
        .all()
    )
    return schemas.OverviewResponse(
        totalVotes=db.query(models.Vote).count(),
        totalStudents=db.query(models.Student).filter(models.Student.is_active.is_(True)).count(),
        elections={s.value: by_status.get(s, 0) for s in models.ElectionStatus},
        activeSessions=(
            db.query(models.VotingSession)
            .filter(models.VotingSession.status == models.SessionStatus.active)
            .count()
        ),
    )


# ---------------- Scheduler ----------------
@router.post("/scheduler/run", response_model=schemas.ScheduleRunResponse)
def run_scheduler(
    db: Session = Depends(get_db),
    current_admin=Depends(require_role("admin")),
):
    """On-demand sweep, same as the periodic one. Safe to overlap with it."""
    result = ElectionScheduler(db).run_scheduled_transitions(
        timeout_seconds=settings.SCHEDULER_SWEEP_TIMEOUT_SECONDS
    )
    return schemas.ScheduleRunResponse(started=result.started, completed=result.completed, errors=result.errors)


@router.get("/scheduler/upcoming", response_model=schemas.UpcomingScheduleResponse)
def upcoming_schedule(
    within_hours: float = Query(24, gt=0, le=24 * 30),
    db: Session = Depends(get_db),
    current_admin=Depends(require_role("admin", "auditor")),
):
    return ElectionScheduler(db).preview_upcoming(within_hours=within_hours)
