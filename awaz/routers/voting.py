from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from .. import schemas
from ..dependencies import get_db, get_client_info
from ..exceptions import PreconditionFailed, SessionNotFound, ValidationFailed
from ..services.voting import VotingService

router = APIRouter(prefix="/voting", tags=["Voting"])


def _eligibility_response(eligibility) -> schemas.EligibilityResponse:
    return schemas.EligibilityResponse(
        isEligible=eligibility.is_eligible,
        studentName=eligibility.student_name,
        reason=eligibility.reason,
        elections=[
            schemas.BallotElection(
                id=b.id,
                title=b.title,
                category=b.category,
                description=b.description,
                voting_instructions=b.voting_instructions,
                candidates=[schemas.BallotCandidate.model_validate(c) for c in b.candidates],
                hasVoted=b.has_voted,
            )
            for b in eligibility.elections
        ],
    )


@router.post("/eligibility", response_model=schemas.EligibilityResponse)
def check_eligibility(payload: schemas.CredentialRequest, db: Session = Depends(get_db)):
    """Which active elections this voting ID can still vote in"""
    return _eligibility_response(VotingService(db).check_eligibility(payload.voting_id))


@router.post("/sessions", response_model=schemas.VotingSessionResponse, status_code=status.HTTP_201_CREATED)
def start_session(
    payload: schemas.CredentialRequest,
    db: Session = Depends(get_db),
    client: dict = Depends(get_client_info),
):
    try:
        return VotingService(db).start_session(payload.voting_id, **client)
    except ValidationFailed as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.post("/sessions/{session_id}/complete", response_model=schemas.VotingSessionResponse)
def complete_session(session_id: str, db: Session = Depends(get_db)):
    try:
        return VotingService(db).complete_session(session_id)
    except SessionNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except PreconditionFailed as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.post("/votes", response_model=schemas.VoteResult)
def cast_vote(
    payload: schemas.VoteCreate,
    db: Session = Depends(get_db),
    client: dict = Depends(get_client_info),
):
    """Cast one vote. Rejections come back with success=false and a message."""
    result = VotingService(db).cast_vote(
        payload.election_id,
        payload.candidate_id,
        payload.voting_id,
        session_id=payload.session_id,
        **client,
    )
    return schemas.VoteResult(
        success=result.success,
        message=result.message,
        voteId=result.vote_id,
        sessionId=result.session_id,
        remainingElections=result.remaining_elections,
    )
