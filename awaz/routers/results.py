import asyncio
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from .. import schemas
from ..dependencies import get_db
from ..exceptions import ElectionNotFound
from ..services.tally import ElectionTally, compute_tallies

router = APIRouter(prefix="/results", tags=["Results"])

KEEPALIVE_SECONDS = 15


def to_live_results(tally: ElectionTally) -> schemas.LiveResultsResponse:
    return schemas.LiveResultsResponse(
        electionId=tally.election_id,
        title=tally.title,
        status=tally.status,
        totalVotes=tally.total_votes,
        leadingCandidateId=tally.leading_candidate_id,
        candidates=[
            schemas.CandidateResult(
                id=c.id,
                name=c.name,
                position=c.position,
                voteCount=c.vote_count,
                votePercentage=c.vote_percentage,
                profileImageUrl=c.profile_image_url,
            )
            for c in tally.candidates
        ],
        lastUpdated=tally.last_updated,
    )


@router.get("/{election_id}", response_model=schemas.LiveResultsResponse)
def live_results(election_id: int, db: Session = Depends(get_db)):
    """Full recount from the ledger, reflects every vote committed before the call"""
    try:
        return to_live_results(compute_tallies(db, election_id))
    except ElectionNotFound:
        raise HTTPException(status_code=404, detail="Election not found")


@router.get("/{election_id}/stream")
async def stream_results(election_id: int, request: Request):
    """Server-Sent Events feed of tally snapshots for the live results screen"""
    monitor = getattr(request.app.state, "tally_monitor", None)
    if monitor is None:
        raise HTTPException(status_code=503, detail="Live results are disabled")
    try:
        initial = await run_in_threadpool(monitor.load, election_id)
    except ElectionNotFound:
        raise HTTPException(status_code=404, detail="Election not found")

    queue = monitor.subscribe(election_id)

    async def events():
        try:
            yield f"data: {to_live_results(initial).model_dump_json()}\n\n"
            while not await request.is_disconnected():
                try:
                    tally = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield f"data: {to_live_results(tally).model_dump_json()}\n\n"
        finally:
            monitor.unsubscribe(election_id, queue)

    return StreamingResponse(events(), media_type="text/event-stream")
