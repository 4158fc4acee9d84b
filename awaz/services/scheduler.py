"""
Election lifecycle scheduler.

Moves elections draft -> active and active -> completed once their scheduled
time has passed. Every status change is a guarded update
(``WHERE id = ? AND status = <expected>``), so overlapping runs from the
background loop and from the dashboard's on-demand trigger are safe: only one
of them changes the row and writes the audit entry, the rest update zero rows.
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, NamedTuple, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import models
from ..changefeed import UPDATE, record_change
from ..exceptions import ElectionNotFound, PreconditionFailed
from ..timeutils import utcnow

logger = logging.getLogger(__name__)

MIN_CANDIDATES = 2
SYSTEM_IP = "system"
SCHEDULER_AGENT = "auto-scheduler"


class DueElection(NamedTuple):
    id: int
    title: str
    scheduled: datetime


@dataclass
class ScheduleResult:
    started: int = 0
    completed: int = 0
    errors: List[str] = field(default_factory=list)


class ElectionScheduler:
    """Stateless lifecycle service, build one per call with the session to use."""

    def __init__(self, db: Session, now: Optional[Callable[[], datetime]] = None):
        self.db = db
        self._now = now or utcnow

    # ---------------- Helpers ----------------
    def _candidate_count(self, election_id: int) -> int:
        return (
            self.db.query(func.count(models.Candidate.id))
            .filter(models.Candidate.election_id == election_id)
            .scalar()
        )

    def _guarded_update(self, election_id: int, expected: models.ElectionStatus,
                        new_status: models.ElectionStatus, now: datetime) -> bool:
        changed = (
            self.db.query(models.Election)
            .filter(models.Election.id == election_id, models.Election.status == expected)
            .update({"status": new_status, "updated_at": now}, synchronize_session=False)
        )
        if changed:
            record_change(self.db, models.Election.__tablename__, UPDATE, {
                "id": election_id,
                "old_status": expected.value,
                "status": new_status.value,
            })
        return changed == 1

    def _audit(self, action: models.AuditAction, election, scheduled: datetime, now: datetime, **extra):
        details = {
            "election_title": election.title,
            "scheduled_time": scheduled.isoformat(),
            "actual_time": now.isoformat(),
        }
        details.update(extra)
        self.db.add(models.AuditLog(
            action_type=action,
            election_id=election.id,
            details=details,
            timestamp=now,
            ip_address=SYSTEM_IP,
            user_agent=SCHEDULER_AGENT,
        ))

    def _get_election(self, election_id: int) -> models.Election:
        election = self.db.query(models.Election).filter(models.Election.id == election_id).first()
        if not election:
            raise ElectionNotFound(election_id)
        return election

    # ---------------- Scheduled transitions ----------------
    def run_scheduled_transitions(self, timeout_seconds: Optional[float] = None) -> ScheduleResult:
        """Start and complete due elections. Never raises: problems end up in ``errors``."""
        result = ScheduleResult()
        now = self._now()
        deadline = time.monotonic() + timeout_seconds if timeout_seconds else None

        to_start = self._fetch_due("start", models.ElectionStatus.draft, models.Election.auto_start,
                                   models.Election.start_date, now, result)
        finished = self._run_batch(to_start, "start", self._start_one, now, deadline, result)

        if finished:
            to_complete = self._fetch_due("complete", models.ElectionStatus.active, models.Election.auto_end,
                                          models.Election.end_date, now, result)
            self._run_batch(to_complete, "complete", self._complete_one, now, deadline, result)

        if result.started or result.completed:
            logger.info("Scheduler run: %d started, %d completed", result.started, result.completed)
        for error in result.errors:
            logger.warning("Election scheduler error: %s", error)
        return result

    def _fetch_due(self, action: str, status: models.ElectionStatus, flag, scheduled_column, now: datetime,
                   result: ScheduleResult) -> List[DueElection]:
        try:
            return [
                DueElection(*row) for row in
                self.db.query(models.Election.id, models.Election.title, scheduled_column)
                .filter(
                    models.Election.status == status,
                    flag.is_(True),
                    scheduled_column <= now,
                )
                .order_by(scheduled_column)
                .all()
            ]
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.exception("Failed to fetch elections to %s", action)
            result.errors.append(f"Failed to fetch elections to {action}: {e}")
            return []

    def _run_batch(self, due: List[DueElection], action: str, handler, now: datetime,
                   deadline: Optional[float], result: ScheduleResult) -> bool:
        """Apply `handler` to each due election, False when the deadline cut the batch short."""
        for index, election in enumerate(due):
            if deadline and time.monotonic() > deadline:
                result.errors.append(
                    f"Scheduler sweep timed out, {len(due) - index} election(s) left to {action} on the next run"
                )
                return False
            handler(election, now, result)
        return True

    def _start_one(self, election: DueElection, now: datetime, result: ScheduleResult) -> None:
        try:
            if self._candidate_count(election.id) < MIN_CANDIDATES:
                result.errors.append(
                    f'Cannot auto-start election "{election.title}" - needs at least {MIN_CANDIDATES} candidates'
                )
                return
            if self._guarded_update(election.id, models.ElectionStatus.draft, models.ElectionStatus.active, now):
                self._audit(models.AuditAction.election_auto_started, election, election.scheduled, now)
                self.db.commit()
                result.started += 1
            else:
                self.db.rollback()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.exception("Failed to start election %s", election.id)
            result.errors.append(f'Failed to start election "{election.title}": {e}')

    def _complete_one(self, election: DueElection, now: datetime, result: ScheduleResult) -> None:
        try:
            if self._guarded_update(election.id, models.ElectionStatus.active, models.ElectionStatus.completed, now):
                self._audit(models.AuditAction.election_auto_completed, election, election.scheduled, now)
                self.db.commit()
                result.completed += 1
            else:
                self.db.rollback()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.exception("Failed to complete election %s", election.id)
            result.errors.append(f'Failed to complete election "{election.title}": {e}')

    # ---------------- Lookahead ----------------
    def preview_upcoming(self, within_hours: float = 24) -> dict:
        now = self._now()
        horizon = now + timedelta(hours=within_hours)

        starting = (
            self.db.query(models.Election)
            .filter(
                models.Election.status == models.ElectionStatus.draft,
                models.Election.auto_start.is_(True),
                models.Election.start_date >= now,
                models.Election.start_date <= horizon,
            )
            .order_by(models.Election.start_date)
            .all()
        )
        ending = (
            self.db.query(models.Election)
            .filter(
                models.Election.status == models.ElectionStatus.active,
                models.Election.auto_end.is_(True),
                models.Election.end_date >= now,
                models.Election.end_date <= horizon,
            )
            .order_by(models.Election.end_date)
            .all()
        )
        return {
            "starting": [{"id": e.id, "title": e.title, "start_date": e.start_date} for e in starting],
            "ending": [{"id": e.id, "title": e.title, "end_date": e.end_date} for e in ending],
        }

    # ---------------- Admin overrides ----------------
    def force_start(self, election_id: int, performed_by: Optional[str] = None) -> models.Election:
        election = self._get_election(election_id)
        if election.status != models.ElectionStatus.draft:
            raise PreconditionFailed(f"Only draft elections can be started (current status: {election.status.value})")
        if self._candidate_count(election.id) < MIN_CANDIDATES:
            raise PreconditionFailed(f"Election needs at least {MIN_CANDIDATES} candidates to start")

        now = self._now()
        if not self._guarded_update(election.id, models.ElectionStatus.draft, models.ElectionStatus.active, now):
            self.db.rollback()
            raise PreconditionFailed("Election was changed by another request")
        self._audit(models.AuditAction.election_force_started, election, election.start_date, now,
                    performed_by=performed_by)
        self.db.commit()
        self.db.refresh(election)
        logger.info("Election %s force-started by %s", election.id, performed_by)
        return election

    def force_stop(self, election_id: int, performed_by: Optional[str] = None) -> models.Election:
        election = self._get_election(election_id)
        if election.status != models.ElectionStatus.active:
            raise PreconditionFailed(f"Only active elections can be stopped (current status: {election.status.value})")

        now = self._now()
        if not self._guarded_update(election.id, models.ElectionStatus.active, models.ElectionStatus.completed, now):
            self.db.rollback()
            raise PreconditionFailed("Election was changed by another request")
        self._audit(models.AuditAction.election_force_stopped, election, election.end_date, now,
                    performed_by=performed_by)
        self.db.commit()
        self.db.refresh(election)
        logger.info("Election %s force-stopped by %s", election.id, performed_by)
        return election

    def archive(self, election_id: int, performed_by: Optional[str] = None) -> models.Election:
        """Move a completed election out of the dashboard. Results and votes are kept."""
        election = self._get_election(election_id)
        if election.status != models.ElectionStatus.completed:
            raise PreconditionFailed(
                f"Only completed elections can be archived (current status: {election.status.value})"
            )

        now = self._now()
        if not self._guarded_update(election.id, models.ElectionStatus.completed, models.ElectionStatus.archived,
                                    now):
            self.db.rollback()
            raise PreconditionFailed("Election was changed by another request")
        self._audit(models.AuditAction.election_archived, election, election.end_date, now,
                    performed_by=performed_by)
        self.db.commit()
        self.db.refresh(election)
        logger.info("Election %s archived by %s", election.id, performed_by)
        return election

    def delete(self, election_id: int, performed_by: Optional[str] = None) -> None:
        """Remove an election that never received a vote, together with its candidates."""
        election = self._get_election(election_id)
        if election.status == models.ElectionStatus.active:
            raise PreconditionFailed("Stop the election before deleting it")
        has_votes = (
            self.db.query(models.Vote.id).filter(models.Vote.election_id == election.id).first() is not None
        )
        if has_votes:
            raise PreconditionFailed("Cannot delete election that already has votes")

        self._audit(models.AuditAction.election_deleted, election, election.start_date, self._now(),
                    performed_by=performed_by)
        self.db.delete(election)
        self.db.commit()
        logger.info("Election %s deleted by %s", election_id, performed_by)

    # ---------------- Sessions ----------------
    def expire_stale_sessions(self, timeout_minutes: int) -> int:
        """Mark sessions idle for longer than the timeout as expired. Votes already cast stay valid."""
        now = self._now()
        cutoff = now - timedelta(minutes=timeout_minutes)
        try:
            stale = (
                self.db.query(models.VotingSession)
                .filter(
                    models.VotingSession.status == models.SessionStatus.active,
                    models.VotingSession.last_activity_at < cutoff,
                )
                .all()
            )
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Failed to fetch idle voting sessions")
            return 0
        expired = 0
        for session in stale:
            try:
                changed = (
                    self.db.query(models.VotingSession)
                    .filter(
                        models.VotingSession.id == session.id,
                        models.VotingSession.status == models.SessionStatus.active,
                    )
                    .update({"status": models.SessionStatus.expired, "session_end": now},
                            synchronize_session=False)
                )
                if not changed:
                    self.db.rollback()
                    continue
                self.db.add(models.AuditLog(
                    action_type=models.AuditAction.session_ended,
                    voting_session_id=session.id,
                    details={"reason": "expired", "elections_completed": len(session.elections_voted or [])},
                    timestamp=now,
                    ip_address=session.ip_address,
                    user_agent=session.user_agent,
                ))
                self.db.commit()
                expired += 1
            except SQLAlchemyError:
                self.db.rollback()
                logger.exception("Failed to expire voting session %s", session.id)
        if expired:
            logger.info("Expired %d idle voting session(s)", expired)
        return expired
