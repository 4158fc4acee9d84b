"""
Live vote tallies.

`compute_tallies` is the pull path: a full recount from the ledger.
`LiveTallyMonitor` is the push path: it listens to the change feed, applies
each new vote to its cached view and broadcasts after a short debounce, while
a periodic full recount heals anything a missed notification left behind.
"""
import asyncio
import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set

from sqlalchemy import func
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from .. import models
from ..changefeed import INSERT, UPDATE, ChangeEvent, ChangeFeed
from ..exceptions import ElectionNotFound
from ..timeutils import utcnow

logger = logging.getLogger(__name__)

PERCENT_PRECISION = 2


@dataclass(frozen=True)
class CandidateTally:
    id: int
    name: str
    position: int
    vote_count: int
    vote_percentage: float
    profile_image_url: Optional[str] = None


@dataclass(frozen=True)
class ElectionTally:
    election_id: int
    title: str
    status: str
    total_votes: int
    candidates: List[CandidateTally] = field(default_factory=list)
    last_vote_id: int = 0  # highest ledger id already counted
    last_updated: datetime = field(default_factory=utcnow)

    @property
    def leading_candidate_id(self) -> Optional[int]:
        if not self.total_votes or not self.candidates:
            return None
        return self.candidates[0].id


def percentage(count: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(count / total * 100, PERCENT_PRECISION)


def _ranked(candidates) -> List[CandidateTally]:
    # highest count first, ties keep ballot order
    return sorted(candidates, key=lambda c: (-c.vote_count, c.position, c.id))


def build_tally(election, candidates, counts: Dict[int, int], last_vote_id: int = 0) -> ElectionTally:
    total = sum(counts.get(c.id, 0) for c in candidates)
    rows = [
        CandidateTally(
            id=c.id,
            name=c.name,
            position=c.position,
            vote_count=counts.get(c.id, 0),
            vote_percentage=percentage(counts.get(c.id, 0), total),
            profile_image_url=c.profile_image_url,
        )
        for c in candidates
    ]
    status = election.status.value if hasattr(election.status, "value") else election.status
    return ElectionTally(
        election_id=election.id,
        title=election.title,
        status=status,
        total_votes=total,
        candidates=_ranked(rows),
        last_vote_id=last_vote_id,
    )


def compute_tallies(db: Session, election_id: int) -> ElectionTally:
    election = db.query(models.Election).filter(models.Election.id == election_id).first()
    if not election:
        raise ElectionNotFound(election_id)

    candidates = (
        db.query(models.Candidate)
        .filter(models.Candidate.election_id == election_id)
        .order_by(models.Candidate.position, models.Candidate.id)
        .all()
    )
    counts = dict(
        db.query(models.Vote.candidate_id, func.count(models.Vote.id))
        .filter(models.Vote.election_id == election_id)
        .group_by(models.Vote.candidate_id)
        .all()
    )
    last_vote_id = (
        db.query(func.max(models.Vote.id))
        .filter(models.Vote.election_id == election_id)
        .scalar()
    ) or 0
    return build_tally(election, candidates, counts, last_vote_id)


def apply_vote(tally: ElectionTally, candidate_id: int, vote_id: int) -> ElectionTally:
    """
    Incremental recount for one new vote.

    Votes already covered by the last full recount and unknown candidates
    leave the tally untouched.
    """
    if vote_id is None or vote_id <= tally.last_vote_id:
        return tally
    if not any(c.id == candidate_id for c in tally.candidates):
        return tally
    counts = {c.id: c.vote_count + (1 if c.id == candidate_id else 0) for c in tally.candidates}
    total = tally.total_votes + 1
    rows = [
        replace(c, vote_count=counts[c.id], vote_percentage=percentage(counts[c.id], total))
        for c in tally.candidates
    ]
    return replace(tally, total_votes=total, candidates=_ranked(rows),
                   last_vote_id=vote_id, last_updated=utcnow())


class LiveTallyMonitor:
    """Keeps tallies of watched elections current and fans them out to subscribers."""

    def __init__(self, session_factory: Callable[[], Session], change_feed: ChangeFeed,
                 poll_seconds: float = 5.0, debounce_seconds: float = 1.0):
        self._session_factory = session_factory
        self._feed = change_feed
        self.poll_seconds = poll_seconds
        self.debounce_seconds = debounce_seconds

        self._lock = threading.Lock()
        self._tallies: Dict[int, ElectionTally] = {}
        self._dirty: Set[int] = set()
        self._stale: Set[int] = set()
        self._listeners: Dict[int, List[asyncio.Queue]] = {}

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        self._unsubscribe: List[Callable[[], None]] = []

    # ---------------- Lifecycle ----------------
    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._wakeup = asyncio.Event()
        self._unsubscribe = [
            self._feed.subscribe(models.Vote.__tablename__, {INSERT}, self.on_vote_inserted),
            self._feed.subscribe(models.Election.__tablename__, {UPDATE}, self.on_election_updated),
        ]
        self._task = asyncio.create_task(self._run())
        logger.info("Live tally monitor started (poll every %ss)", self.poll_seconds)

    async def stop(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    # ---------------- Change feed handlers (any thread) ----------------
    def on_vote_inserted(self, change: ChangeEvent) -> None:
        election_id = change.record.get("election_id")
        with self._lock:
            tally = self._tallies.get(election_id)
            if tally is None:
                return
            self._tallies[election_id] = apply_vote(
                tally, change.record.get("candidate_id"), change.record.get("id")
            )
            self._dirty.add(election_id)
        self._notify()

    def on_election_updated(self, change: ChangeEvent) -> None:
        election_id = change.record.get("id")
        with self._lock:
            if election_id not in self._tallies:
                return
            self._stale.add(election_id)
        self._notify()

    def _notify(self) -> None:
        if self._loop is not None and self._wakeup is not None:
            self._loop.call_soon_threadsafe(self._wakeup.set)

    # ---------------- Views ----------------
    def snapshot(self, election_id: int) -> Optional[ElectionTally]:
        with self._lock:
            return self._tallies.get(election_id)

    def watch(self, tally: ElectionTally) -> None:
        with self._lock:
            self._tallies.setdefault(tally.election_id, tally)

    def load(self, election_id: int) -> ElectionTally:
        """Start watching an election (blocking, call from a worker thread)."""
        current = self.snapshot(election_id)
        if current is not None:
            return current
        tally = self._recount([election_id]).get(election_id)
        if tally is None:
            raise ElectionNotFound(election_id)
        self.watch(tally)
        return self.snapshot(election_id)

    def subscribe(self, election_id: int) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=16)
        self._listeners.setdefault(election_id, []).append(queue)
        return queue

    def unsubscribe(self, election_id: int, queue: asyncio.Queue) -> None:
        queues = self._listeners.get(election_id, [])
        if queue in queues:
            queues.remove(queue)
        if not queues:
            self._listeners.pop(election_id, None)
            with self._lock:
                self._tallies.pop(election_id, None)

    def _broadcast(self, tally: ElectionTally) -> None:
        for queue in list(self._listeners.get(tally.election_id, [])):
            if queue.full():
                # slow consumer, drop its oldest snapshot
                queue.get_nowait()
            queue.put_nowait(tally)

    # ---------------- Loop ----------------
    def _recount(self, election_ids) -> Dict[int, ElectionTally]:
        fresh = {}
        db = self._session_factory()
        try:
            for election_id in election_ids:
                try:
                    fresh[election_id] = compute_tallies(db, election_id)
                except ElectionNotFound:
                    logger.info("Election %s disappeared, no longer watched", election_id)
        finally:
            db.close()
        return fresh

    async def refresh_all(self) -> None:
        with self._lock:
            watched = list(self._tallies)
            self._stale.difference_update(watched)
        if not watched:
            return
        fresh = await run_in_threadpool(self._recount, watched)
        changed = []
        with self._lock:
            for election_id, tally in fresh.items():
                old = self._tallies.get(election_id)
                if old is None:
                    # unwatched while recounting
                    continue
                if tally.last_vote_id < old.last_vote_id:
                    # the recount read the ledger before a vote the cache already applied
                    if tally.status == old.status:
                        continue
                    tally = replace(old, status=tally.status, last_updated=tally.last_updated)
                self._tallies[election_id] = tally
                if old.total_votes != tally.total_votes or old.status != tally.status:
                    changed.append(tally)
        for tally in changed:
            self._broadcast(tally)

    async def _flush(self) -> None:
        with self._lock:
            dirty = [self._tallies[i] for i in self._dirty if i in self._tallies]
            self._dirty.clear()
            stale = bool(self._stale)
        for tally in dirty:
            self._broadcast(tally)
        if stale:
            await self.refresh_all()

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        next_poll = loop.time() + self.poll_seconds
        while True:
            timeout = max(0.0, next_poll - loop.time())
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
                self._wakeup.clear()
                # debounce: let a burst of votes land before fanning out
                await asyncio.sleep(self.debounce_seconds)
                await self._flush()
            except asyncio.TimeoutError:
                pass
            except Exception:
                logger.exception("Live tally update failed")
            if loop.time() >= next_poll:
                try:
                    await self.refresh_all()
                except Exception:
                    logger.exception("Live tally poll failed")
                next_poll = loop.time() + self.poll_seconds
