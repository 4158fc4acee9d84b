import logging
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from typing import List, Optional
from .. import models, schemas
from ..dependencies import get_db, require_role
from ..exceptions import ElectionNotFound, NotFound, PreconditionFailed
from ..services.scheduler import ElectionScheduler
from ..services.voting import VotingService
from ..timeutils import to_utc

router = APIRouter(prefix="/elections", tags=["Elections"])

logger = logging.getLogger(__name__)


# ---------------- Helpers ----------------
def get_election_or_404(db: Session, election_id: int) -> models.Election:
    election = db.query(models.Election).filter(models.Election.id == election_id).first()
    if not election:
        raise HTTPException(status_code=404, detail="Election not found")
    return election


def require_draft(election: models.Election) -> None:
    """Elections and their candidates are frozen once voting has started."""
    if election.status != models.ElectionStatus.draft:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Election is {election.status.value}, only draft elections can be changed",
        )


# ---------------- Election Management ----------------
@router.post("/", response_model=schemas.ElectionResponse, status_code=status.HTTP_201_CREATED)
def create_election(
    election_in: schemas.ElectionCreate,
    db: Session = Depends(get_db),
    current_admin=Depends(require_role("admin")),
):
    election = models.Election(
        title=election_in.title,
        description=election_in.description,
        category=election_in.category,
        start_date=to_utc(election_in.start_date),
        end_date=to_utc(election_in.end_date),
        auto_start=election_in.auto_start,
        auto_end=election_in.auto_end,
        allow_multiple_votes=election_in.allow_multiple_votes,
        voting_instructions=election_in.voting_instructions,
        status=models.ElectionStatus.draft,
    )
    db.add(election)
    db.commit()
    db.refresh(election)
    logger.info("Election %s created by %s", election.id, current_admin.email)
    return election


@router.get("/", response_model=List[schemas.ElectionResponse])
def list_elections(
    status_filter: Optional[schemas.ElectionStatus] = None,
    db: Session = Depends(get_db),
    current_admin=Depends(require_role("admin", "auditor")),
):
    query = db.query(models.Election)
    if status_filter:
        query = query.filter(models.Election.status == status_filter.value)
    return query.order_by(models.Election.start_date.desc()).all()


@router.get("/{election_id}", response_model=schemas.ElectionResponse)
def get_election(
    election_id: int,
    db: Session = Depends(get_db),
    current_admin=Depends(require_role("admin", "auditor")),
):
    return get_election_or_404(db, election_id)


@router.put("/{election_id}", response_model=schemas.ElectionResponse)
def update_election(
    election_id: int,
    election_in: schemas.ElectionUpdate,
    db: Session = Depends(get_db),
    current_admin=Depends(require_role("admin")),
):
    election = get_election_or_404(db, election_id)
    require_draft(election)

    changes = election_in.model_dump(exclude_unset=True, exclude_none=True)
    for key in ("start_date", "end_date"):
        if key in changes:
            changes[key] = to_utc(changes[key])

    start = changes.get("start_date", election.start_date)
    end = changes.get("end_date", election.end_date)
    if end <= start:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                            detail="end_date must be after start_date")

    for key, value in changes.items():
        setattr(election, key, value)
    db.commit()
    db.refresh(election)
    return election


# ---------------- Candidate Management ----------------
@router.post("/{election_id}/candidates", response_model=schemas.CandidateResponse,
             status_code=status.HTTP_201_CREATED)
def add_candidate(
    election_id: int,
    candidate_in: schemas.CandidateCreate,
    db: Session = Depends(get_db),
    current_admin=Depends(require_role("admin")),
):
    election = get_election_or_404(db, election_id)
    require_draft(election)

    candidate = models.Candidate(election_id=election.id, **candidate_in.model_dump())
    db.add(candidate)
    db.commit()
    db.refresh(candidate)
    return candidate


@router.get("/{election_id}/candidates", response_model=List[schemas.CandidateResponse])
def list_candidates(
    election_id: int,
    db: Session = Depends(get_db),
    current_admin=Depends(require_role("admin", "auditor")),
):
    get_election_or_404(db, election_id)
    return (
        db.query(models.Candidate)
        .filter(models.Candidate.election_id == election_id)
        .order_by(models.Candidate.position, models.Candidate.id)
        .all()
    )


@router.delete("/{election_id}/candidates/{candidate_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_candidate(
    election_id: int,
    candidate_id: int,
    db: Session = Depends(get_db),
    current_admin=Depends(require_role("admin")),
):
    election = get_election_or_404(db, election_id)
    require_draft(election)

    candidate = (
        db.query(models.Candidate)
        .filter(models.Candidate.id == candidate_id, models.Candidate.election_id == election_id)
        .first()
    )
    if not candidate:
        raise HTTPException(status_code=404, detail="Candidate not found")
    db.delete(candidate)
    db.commit()
    return None


# ---------------- Lifecycle overrides ----------------
@router.post("/{election_id}/force-start", response_model=schemas.ElectionResponse)
def force_start(
    election_id: int,
    db: Session = Depends(get_db),
    current_admin=Depends(require_role("admin")),
):
    try:
        return ElectionScheduler(db).force_start(election_id, performed_by=current_admin.email)
    except ElectionNotFound:
        raise HTTPException(status_code=404, detail="Election not found")
    except PreconditionFailed as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.post("/{election_id}/force-stop", response_model=schemas.ElectionResponse)
def force_stop(
    election_id: int,
    db: Session = Depends(get_db),
    current_admin=Depends(require_role("admin")),
):
    try:
        return ElectionScheduler(db).force_stop(election_id, performed_by=current_admin.email)
    except ElectionNotFound:
        raise HTTPException(status_code=404, detail="Election not found")
    except PreconditionFailed as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.post("/{election_id}/archive", response_model=schemas.ElectionResponse)
def archive_election(
    election_id: int,
    db: Session = Depends(get_db),
    current_admin=Depends(require_role("admin")),
):
    try:
        return ElectionScheduler(db).archive(election_id, performed_by=current_admin.email)
    except ElectionNotFound:
        raise HTTPException(status_code=404, detail="Election not found")
    except PreconditionFailed as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.delete("/{election_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_election(
    election_id: int,
    db: Session = Depends(get_db),
    current_admin=Depends(require_role("admin")),
):
    """Only elections without votes can be deleted"""
    try:
        ElectionScheduler(db).delete(election_id, performed_by=current_admin.email)
    except ElectionNotFound:
        raise HTTPException(status_code=404, detail="Election not found")
    except PreconditionFailed as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return None


# ---------------- Vote integrity ----------------
@router.post("/{election_id}/votes/{vote_id}/verify", response_model=schemas.VoteVerificationResponse)
def verify_vote(
    election_id: int,
    vote_id: int,
    db: Session = Depends(get_db),
    current_admin=Depends(require_role("admin", "auditor")),
):
    try:
        intact = VotingService(db).verify_vote(election_id, vote_id, performed_by=current_admin.email)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return schemas.VoteVerificationResponse(voteId=vote_id, intact=intact)
