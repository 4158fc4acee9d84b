from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Text, Boolean, JSON, Enum, CheckConstraint
from sqlalchemy.orm import relationship
from .database import Base
from .timeutils import utcnow
import enum
import uuid


# --- ENUMS for consistency ---
class AdminRole(str, enum.Enum):
    admin = "admin"
    superadmin = "superadmin"
    auditor = "auditor"


class ElectionStatus(str, enum.Enum):
    draft = "draft"
    active = "active"
    completed = "completed"
    archived = "archived"
    cancelled = "cancelled"


class SessionStatus(str, enum.Enum):
    active = "active"
    completed = "completed"
    expired = "expired"


class AuditAction(str, enum.Enum):
    vote_cast = "vote_cast"
    vote_verified = "vote_verified"
    fraud_attempt = "fraud_attempt"
    session_started = "session_started"
    session_ended = "session_ended"
    election_auto_started = "election_auto_started"
    election_auto_completed = "election_auto_completed"
    election_force_started = "election_force_started"
    election_force_stopped = "election_force_stopped"
    election_archived = "election_archived"
    election_deleted = "election_deleted"


# --- MODELS ---
class Admin(Base):
    __tablename__ = "admins"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    role = Column(Enum(AdminRole), default=AdminRole.admin, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow)


class Student(Base):
    __tablename__ = "students"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    voting_id = Column(String, unique=True, index=True, nullable=False)
    roll_number = Column(String, nullable=True, index=True)
    department = Column(String, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)


class Election(Base):
    __tablename__ = "elections"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String, nullable=False, default="general")
    status = Column(Enum(ElectionStatus), default=ElectionStatus.draft, nullable=False, index=True)
    start_date = Column(DateTime, nullable=False, index=True)
    end_date = Column(DateTime, nullable=False, index=True)
    auto_start = Column(Boolean, default=True, nullable=False)
    auto_end = Column(Boolean, default=True, nullable=False)
    allow_multiple_votes = Column(Boolean, default=False, nullable=False)
    voting_instructions = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    candidates = relationship(
        "Candidate",
        back_populates="election",
        cascade="all, delete-orphan",
        order_by="Candidate.position",
    )

    __table_args__ = (
        CheckConstraint("end_date > start_date", name="ck_election_window"),
    )


class Candidate(Base):
    __tablename__ = "candidates"

    id = Column(Integer, primary_key=True, index=True)
    election_id = Column(Integer, ForeignKey("elections.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    position = Column(Integer, nullable=False, default=0)  # display order on the ballot
    profile_image_url = Column(String, nullable=True)
    election_symbol_url = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    election = relationship("Election", back_populates="candidates")


class VotingSession(Base):
    __tablename__ = "voting_sessions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    encrypted_voter_hash = Column(String, nullable=False, index=True)
    session_start = Column(DateTime, default=utcnow, nullable=False)
    session_end = Column(DateTime, nullable=True)
    last_activity_at = Column(DateTime, default=utcnow, nullable=False)
    elections_voted = Column(JSON, default=list, nullable=False)
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    status = Column(Enum(SessionStatus), default=SessionStatus.active, nullable=False, index=True)


class Vote(Base):
    __tablename__ = "votes"

    id = Column(Integer, primary_key=True, index=True)
    election_id = Column(Integer, ForeignKey("elections.id"), nullable=False, index=True)
    candidate_id = Column(Integer, ForeignKey("candidates.id"), nullable=False, index=True)
    voting_session_id = Column(String, ForeignKey("voting_sessions.id"), nullable=True)
    encrypted_voter_hash = Column(String, nullable=False, index=True)
    vote_hash = Column(String, nullable=False)
    # "<election_id>:<voter_hash>" unless the election allows multiple votes,
    # the unique index is what stops two racing requests for the same voter.
    ballot_key = Column(String, unique=True, nullable=True)
    voted_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    ip_address = Column(String, nullable=True, index=True)
    user_agent = Column(String, nullable=True)


class AuditLog(Base):
    __tablename__ = "vote_audit_log"

    id = Column(Integer, primary_key=True, index=True)
    action_type = Column(Enum(AuditAction), nullable=False, index=True)
    voting_session_id = Column(String, nullable=True)
    election_id = Column(Integer, nullable=True, index=True)
    details = Column(JSON, default=dict, nullable=False)
    timestamp = Column(DateTime, default=utcnow, index=True)
    ip_address = Column(String, nullable=True, index=True)
    user_agent = Column(String, nullable=True)


# publishes ORM inserts to the change feed once their session commits
from . import changefeed  # noqa: E402,F401
