from pydantic import BaseModel, EmailStr, Field, ConfigDict, model_validator
from typing import Optional, List, Annotated, Dict, Any
from datetime import datetime
from enum import Enum
from .timeutils import to_utc


# ======================
# ADMINS
# ======================

class AdminResponse(BaseModel):
    id: int
    name: str
    email: EmailStr
    role: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ======================
# AUTH
# ======================

class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"
    admin: AdminResponse


class TokenPayload(BaseModel):
    sub: Optional[str] = None   # email (subject)
    exp: Optional[int] = None   # expiration timestamp
    role: Optional[str] = None  # role string
    admin_id: Optional[int] = None


# ======================
# STUDENTS
# ======================

class StudentCreate(BaseModel):
    name: Annotated[str, Field(min_length=2, max_length=100, examples=["Ayesha Khan"])]
    voting_id: Optional[str] = Field(None, examples=["VROLL0021694", "V29248044"])  # generated when missing
    roll_number: Optional[str] = Field(None, examples=["2021-CS-0216"])
    department: Optional[str] = Field(None, examples=["Computer Science"])


class StudentResponse(BaseModel):
    id: int
    name: str
    voting_id: str
    roll_number: Optional[str] = None
    department: Optional[str]
    is_active: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ======================
# CANDIDATES
# ======================

class CandidateBase(BaseModel):
    name: str = Field(..., examples=["Jane Smith"])
    description: Optional[str] = Field(None, examples=["Transparency and Innovation"])
    position: int = Field(0, ge=0, examples=[1])
    profile_image_url: Optional[str] = None
    election_symbol_url: Optional[str] = None


class CandidateCreate(CandidateBase):
    pass


class CandidateResponse(CandidateBase):
    id: int
    election_id: int

    model_config = ConfigDict(from_attributes=True)


# ======================
# ELECTIONS
# ======================

class ElectionStatus(str, Enum):
    draft = "draft"
    active = "active"
    completed = "completed"
    archived = "archived"
    cancelled = "cancelled"


class ElectionBase(BaseModel):
    title: str = Field(..., min_length=3, examples=["Student Council President 2026"])
    description: Optional[str] = None
    category: str = Field("general", examples=["president"])
    start_date: datetime = Field(..., alias="startDate")
    end_date: datetime = Field(..., alias="endDate")
    auto_start: bool = True
    auto_end: bool = True
    allow_multiple_votes: bool = False
    voting_instructions: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)   # allows both start_date and startDate


class ElectionCreate(ElectionBase):
    @model_validator(mode="after")
    def check_window(self):
        if to_utc(self.end_date) <= to_utc(self.start_date):
            raise ValueError("end_date must be after start_date")
        return self


class ElectionUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    auto_start: Optional[bool] = None
    auto_end: Optional[bool] = None
    allow_multiple_votes: Optional[bool] = None
    voting_instructions: Optional[str] = None


class ElectionResponse(ElectionBase):
    id: int
    status: ElectionStatus = ElectionStatus.draft
    candidates: List[CandidateResponse] = []

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


# ======================
# SCHEDULER
# ======================

class ScheduleRunResponse(BaseModel):
    started: int
    completed: int
    errors: List[str] = []


class UpcomingStart(BaseModel):
    id: int
    title: str
    start_date: datetime


class UpcomingEnd(BaseModel):
    id: int
    title: str
    end_date: datetime


class UpcomingScheduleResponse(BaseModel):
    starting: List[UpcomingStart]
    ending: List[UpcomingEnd]


# ======================
# VOTING
# ======================

class CredentialRequest(BaseModel):
    voting_id: str = Field(..., min_length=1, examples=["VROLL0021694"])


class BallotCandidate(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    profile_image_url: Optional[str] = None
    election_symbol_url: Optional[str] = None
    position: int

    model_config = ConfigDict(from_attributes=True)


class BallotElection(BaseModel):
    id: int
    title: str
    category: str
    description: Optional[str] = None
    voting_instructions: Optional[str] = None
    candidates: List[BallotCandidate] = []
    hasVoted: bool


class EligibilityResponse(BaseModel):
    isEligible: bool
    studentName: Optional[str] = None
    reason: Optional[str] = None
    elections: List[BallotElection] = []


class VotingSessionResponse(BaseModel):
    id: str
    session_start: datetime
    session_end: Optional[datetime] = None
    elections_voted: List[int] = []
    status: str

    model_config = ConfigDict(from_attributes=True)


class VoteCreate(BaseModel):
    election_id: int = Field(..., examples=[1])
    candidate_id: int = Field(..., examples=[1])
    voting_id: str = Field(..., min_length=1, examples=["VROLL0021694"])
    session_id: Optional[str] = None


class VoteResult(BaseModel):
    success: bool
    message: Optional[str] = None
    voteId: Optional[int] = None
    sessionId: Optional[str] = None
    remainingElections: List[int] = []


class VoteVerificationResponse(BaseModel):
    voteId: int
    intact: bool


# ======================
# AUDIT LOGS
# ======================

class AuditLogResponse(BaseModel):
    id: int
    action_type: str
    voting_session_id: Optional[str] = None
    election_id: Optional[int] = None
    details: Dict[str, Any] = {}
    timestamp: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


# ======================
# LIVE RESULTS
# ======================

class CandidateResult(BaseModel):
    id: int
    name: str
    position: int
    voteCount: int
    votePercentage: float
    profileImageUrl: Optional[str] = None


class LiveResultsResponse(BaseModel):
    electionId: int
    title: str
    status: str
    totalVotes: int
    leadingCandidateId: Optional[int] = None
    candidates: List[CandidateResult]
    lastUpdated: datetime


class OverviewResponse(BaseModel):
    totalVotes: int
    totalStudents: int
    elections: Dict[str, int]
    activeSessions: int


