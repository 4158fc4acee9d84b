"""
Voter-facing flow: eligibility, voting sessions and casting votes.

Only the salted voter hash is ever written next to a vote or session. The
one-vote-per-election rule is checked here for a friendly message, but the
unique ``ballot_key`` column is what settles two racing requests.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import models
from ..config import settings
from ..exceptions import (
    CandidateNotFound, ElectionNotFound, NotFound, PreconditionFailed, SessionExpired, SessionNotFound,
    ValidationFailed,
)
from ..timeutils import utcnow
from .fraud import RATE_LIMIT_WINDOW_MS, RecentVote, check_rate_limit, detect_fraud_pattern
from .security import (
    create_vote_hash, create_voter_hash, is_valid_booth_ip, is_valid_voting_id, normalize_voting_id,
    verify_vote_hash,
)

logger = logging.getLogger(__name__)


@dataclass
class ElectionBallot:
    id: int
    title: str
    category: str
    description: Optional[str]
    voting_instructions: Optional[str]
    allow_multiple_votes: bool
    candidates: list
    has_voted: bool

    @property
    def can_vote(self) -> bool:
        return not self.has_voted or self.allow_multiple_votes


@dataclass
class Eligibility:
    is_eligible: bool
    elections: List[ElectionBallot] = field(default_factory=list)
    reason: Optional[str] = None
    student_name: Optional[str] = None


@dataclass
class VoteResult:
    success: bool
    message: str
    vote_id: Optional[int] = None
    session_id: Optional[str] = None
    remaining_elections: List[int] = field(default_factory=list)


class VotingService:
    def __init__(self, db: Session, now: Optional[Callable[[], datetime]] = None, salt: Optional[str] = None):
        self.db = db
        self._now = now or utcnow
        self._salt = salt

    # ---------------- Helpers ----------------
    def _voter_hash(self, voting_id: str) -> str:
        return create_voter_hash(voting_id, self._salt)

    def _active_student(self, voting_id: str):
        return (
            self.db.query(models.Student)
            .filter(models.Student.voting_id == voting_id, models.Student.is_active.is_(True))
            .first()
        )

    def _audit(self, action: models.AuditAction, details: dict, session=None, election_id=None,
               ip_address=None, user_agent=None, now=None):
        self.db.add(models.AuditLog(
            action_type=action,
            voting_session_id=session.id if session is not None else None,
            election_id=election_id,
            details=details,
            timestamp=now or self._now(),
            ip_address=ip_address if ip_address is not None else getattr(session, "ip_address", None),
            user_agent=user_agent if user_agent is not None else getattr(session, "user_agent", None),
        ))

    def _log_fraud(self, reason: str, election_id, ip_address, user_agent, session=None, **extra):
        logger.warning("Suspicious vote attempt from %s: %s", ip_address, reason)
        details = {"reason": reason}
        details.update(extra)
        self._audit(models.AuditAction.fraud_attempt, details, session=session, election_id=election_id,
                    ip_address=ip_address, user_agent=user_agent)
        self.db.commit()

    def _recent_votes(self, now: datetime) -> List[RecentVote]:
        since = now - timedelta(minutes=settings.FRAUD_WINDOW_MINUTES)
        rows = (
            self.db.query(models.Vote.ip_address, models.Vote.user_agent, models.Vote.voted_at)
            .filter(models.Vote.voted_at >= since)
            .order_by(models.Vote.voted_at.desc())
            .limit(settings.FRAUD_WINDOW_LIMIT)
            .all()
        )
        return [RecentVote(*row) for row in rows]

    def _within_rate_limit(self, ip_address, now: datetime) -> bool:
        # advisory flags are only audit trail, rejected attempts count against the booth
        since = now - timedelta(milliseconds=RATE_LIMIT_WINDOW_MS)
        rows = (
            self.db.query(models.AuditLog.timestamp, models.AuditLog.details)
            .filter(
                models.AuditLog.action_type == models.AuditAction.fraud_attempt,
                models.AuditLog.ip_address == ip_address,
                models.AuditLog.timestamp >= since,
            )
            .all()
        )
        rejected = [timestamp for timestamp, details in rows if (details or {}).get("blocked")]
        window_ms = (now - min(rejected)).total_seconds() * 1000 if rejected else 0
        return check_rate_limit(len(rejected), window_ms)

    def _has_voted(self, election_id: int, voter_hash: str) -> bool:
        return (
            self.db.query(models.Vote.id)
            .filter(models.Vote.election_id == election_id, models.Vote.encrypted_voter_hash == voter_hash)
            .first()
            is not None
        )

    def _is_idle(self, session, now: datetime) -> bool:
        return now - session.last_activity_at > timedelta(minutes=settings.SESSION_TIMEOUT_MINUTES)

    def _expire(self, session, now: datetime) -> None:
        changed = (
            self.db.query(models.VotingSession)
            .filter(models.VotingSession.id == session.id,
                    models.VotingSession.status == models.SessionStatus.active)
            .update({"status": models.SessionStatus.expired, "session_end": now}, synchronize_session=False)
        )
        if changed:
            self._audit(models.AuditAction.session_ended,
                        {"reason": "expired", "elections_completed": len(session.elections_voted or [])},
                        session=session, now=now)
        self.db.commit()

    def _open_session(self, voter_hash: str, ip_address, user_agent, now: datetime, details: dict):
        session = models.VotingSession(
            encrypted_voter_hash=voter_hash,
            session_start=now,
            last_activity_at=now,
            elections_voted=[],
            ip_address=ip_address,
            user_agent=user_agent,
            status=models.SessionStatus.active,
        )
        self.db.add(session)
        self.db.flush()
        details = dict(details, trusted_booth=is_valid_booth_ip(ip_address))
        self._audit(models.AuditAction.session_started, details, session=session, now=now)
        self.db.commit()
        self.db.refresh(session)
        return session

    def _resolve_session(self, session_id, voter_hash, ip_address, user_agent, now):
        if session_id:
            session = (
                self.db.query(models.VotingSession)
                .filter(models.VotingSession.id == session_id)
                .with_for_update()
                .first()
            )
            if not session or session.encrypted_voter_hash != voter_hash:
                raise SessionNotFound(session_id)
            if session.status != models.SessionStatus.active:
                raise SessionExpired("Voting session is no longer active")
            if self._is_idle(session, now):
                self._expire(session, now)
                raise SessionExpired("Voting session expired, please start again")
            return session

        open_sessions = (
            self.db.query(models.VotingSession)
            .filter(models.VotingSession.encrypted_voter_hash == voter_hash,
                    models.VotingSession.status == models.SessionStatus.active)
            .order_by(models.VotingSession.last_activity_at.desc())
            .all()
        )
        for session in open_sessions:
            if self._is_idle(session, now):
                self._expire(session, now)
            else:
                return session
        return self._open_session(voter_hash, ip_address, user_agent, now, {"implicit": True})

    # ---------------- Eligibility ----------------
    def check_eligibility(self, voting_id: str) -> Eligibility:
        voting_id = normalize_voting_id(voting_id) if isinstance(voting_id, str) else voting_id
        if not is_valid_voting_id(voting_id):
            return Eligibility(False, reason="Invalid voting ID format")

        student = self._active_student(voting_id)
        if not student:
            return Eligibility(False, reason="Student not found or not active for voting")

        now = self._now()
        elections = (
            self.db.query(models.Election)
            .filter(
                models.Election.status == models.ElectionStatus.active,
                models.Election.start_date <= now,
                models.Election.end_date >= now,
            )
            .order_by(models.Election.start_date, models.Election.id)
            .all()
        )
        if not elections:
            return Eligibility(False, reason="No active elections available", student_name=student.name)

        voter_hash = self._voter_hash(voting_id)
        voted_ids = {
            row[0] for row in
            self.db.query(models.Vote.election_id)
            .filter(models.Vote.encrypted_voter_hash == voter_hash)
            .distinct()
        }
        ballots = [
            ElectionBallot(
                id=e.id,
                title=e.title,
                category=e.category,
                description=e.description,
                voting_instructions=e.voting_instructions,
                allow_multiple_votes=e.allow_multiple_votes,
                candidates=sorted(e.candidates, key=lambda c: (c.position, c.id)),
                has_voted=e.id in voted_ids,
            )
            for e in elections
        ]
        available = [b for b in ballots if b.can_vote]
        return Eligibility(
            is_eligible=bool(available),
            elections=ballots,
            reason=None if available else "Already voted in all active elections",
            student_name=student.name,
        )

    # ---------------- Sessions ----------------
    def start_session(self, voting_id: str, ip_address=None, user_agent=None) -> models.VotingSession:
        eligibility = self.check_eligibility(voting_id)
        if not eligibility.is_eligible:
            raise ValidationFailed(eligibility.reason)

        voter_hash = self._voter_hash(normalize_voting_id(voting_id))
        available = [b.id for b in eligibility.elections if b.can_vote]
        session = self._open_session(voter_hash, ip_address, user_agent, self._now(),
                                     {"available_elections": len(available)})
        logger.info("Voting session %s started", session.id)
        return session

    def complete_session(self, session_id: str) -> models.VotingSession:
        session = self.db.query(models.VotingSession).filter(models.VotingSession.id == session_id).first()
        if not session:
            raise SessionNotFound(session_id)

        now = self._now()
        changed = (
            self.db.query(models.VotingSession)
            .filter(models.VotingSession.id == session_id,
                    models.VotingSession.status == models.SessionStatus.active)
            .update({"status": models.SessionStatus.completed, "session_end": now}, synchronize_session=False)
        )
        if not changed:
            self.db.rollback()
            raise PreconditionFailed("Voting session is not active")

        self._audit(models.AuditAction.session_ended, {
            "elections_completed": len(session.elections_voted or []),
            "total_time_seconds": int((now - session.session_start).total_seconds()),
        }, session=session, now=now)
        self.db.commit()
        self.db.refresh(session)
        return session

    # ---------------- Casting ----------------
    def cast_vote(self, election_id: int, candidate_id: int, voting_id: str, session_id: Optional[str] = None,
                  ip_address: Optional[str] = None, user_agent: Optional[str] = None) -> VoteResult:
        """
        Record one vote. Rejections come back as ``success=False`` with a short
        message; store errors propagate so the caller can retry.
        """
        voting_id = normalize_voting_id(voting_id) if isinstance(voting_id, str) else voting_id
        if not is_valid_voting_id(voting_id):
            return VoteResult(False, "Invalid voting ID format")
        if not self._active_student(voting_id):
            return VoteResult(False, "Student not found or not active for voting")

        now = self._now()
        election = self.db.query(models.Election).filter(models.Election.id == election_id).first()
        if not election:
            return VoteResult(False, str(ElectionNotFound(election_id)))
        if election.status != models.ElectionStatus.active or not (election.start_date <= now <= election.end_date):
            return VoteResult(False, "Election is not currently active")

        candidate = (
            self.db.query(models.Candidate)
            .filter(models.Candidate.id == candidate_id, models.Candidate.election_id == election_id)
            .first()
        )
        if not candidate:
            return VoteResult(False, str(CandidateNotFound(candidate_id)))

        voter_hash = self._voter_hash(voting_id)
        try:
            session = self._resolve_session(session_id, voter_hash, ip_address, user_agent, now)
        except (SessionNotFound, SessionExpired) as e:
            return VoteResult(False, str(e))
        ip_address = ip_address if ip_address is not None else session.ip_address
        user_agent = user_agent if user_agent is not None else session.user_agent

        if not election.allow_multiple_votes and (
            election.id in (session.elections_voted or []) or self._has_voted(election.id, voter_hash)
        ):
            return VoteResult(False, "Already voted in this election", session_id=session.id)

        if not self._within_rate_limit(ip_address, now):
            logger.warning("Rate limit reached for %s", ip_address)
            return VoteResult(False, "Too many suspicious attempts from this location, please try again later",
                              session_id=session.id)

        assessment = detect_fraud_pattern(ip_address, user_agent, self._recent_votes(now))
        if assessment.is_suspicious:
            self._log_fraud(assessment.reason, election.id, ip_address, user_agent, session=session,
                            blocked=settings.BLOCK_SUSPICIOUS_VOTES)
            if settings.BLOCK_SUSPICIOUS_VOTES:
                return VoteResult(False, "Vote could not be accepted, please contact an election official",
                                  session_id=session.id)

        vote_hash = create_vote_hash(session.id, now)
        vote = models.Vote(
            election_id=election.id,
            candidate_id=candidate.id,
            voting_session_id=session.id,
            encrypted_voter_hash=voter_hash,
            vote_hash=vote_hash,
            ballot_key=None if election.allow_multiple_votes else f"{election.id}:{voter_hash}",
            voted_at=now,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.db.add(vote)

        voted = list(session.elections_voted or [])
        if election.id not in voted:
            voted.append(election.id)
        session.elections_voted = voted
        session.last_activity_at = now

        self._audit(models.AuditAction.vote_cast, {"candidate_id": candidate.id, "vote_hash": vote_hash},
                    session=session, election_id=election.id, ip_address=ip_address, user_agent=user_agent,
                    now=now)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            self._log_fraud("Duplicate vote attempt", election_id, ip_address, user_agent, blocked=True)
            return VoteResult(False, "Already voted in this election")

        remaining = [b.id for b in self.check_eligibility(voting_id).elections if b.can_vote]
        logger.info("Vote %s recorded in election %s", vote.id, election_id)
        return VoteResult(True, "Vote cast successfully", vote.id, session.id, remaining)

    # ---------------- Verification ----------------
    def verify_vote(self, election_id: int, vote_id: int, performed_by: Optional[str] = None) -> bool:
        vote = (
            self.db.query(models.Vote)
            .filter(models.Vote.id == vote_id, models.Vote.election_id == election_id)
            .first()
        )
        if not vote:
            raise NotFound(f"Vote {vote_id} not found in election {election_id}")

        intact = verify_vote_hash(vote.voting_session_id, vote.voted_at, vote.vote_hash)
        self._audit(models.AuditAction.vote_verified,
                    {"vote_id": vote.id, "intact": intact, "performed_by": performed_by},
                    election_id=election_id, ip_address="system", user_agent="vote-verifier")
        self.db.commit()
        if not intact:
            logger.warning("Vote %s failed integrity verification", vote.id)
        return intact
