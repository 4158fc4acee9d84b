"""
Fraud pattern detection for vote attempts.

Both functions are advisory and side-effect free: the voting flow decides
whether a flag blocks the vote or is only written to the audit log.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, NamedTuple, Optional

MAX_VOTES_PER_IP = 5
MAX_VOTES_PER_USER_AGENT = 10
MIN_SECONDS_BETWEEN_VOTES = 30

MAX_ATTEMPTS = 3
RATE_LIMIT_WINDOW_MS = 10 * 60 * 1000


class RecentVote(NamedTuple):
    ip_address: Optional[str]
    user_agent: Optional[str]
    voted_at: datetime


@dataclass(frozen=True)
class FraudAssessment:
    is_suspicious: bool
    reason: Optional[str] = None


def detect_fraud_pattern(ip_address, user_agent, recent_votes: Iterable[RecentVote]) -> FraudAssessment:
    """Check a vote attempt against the recent-vote window, first matching rule wins."""
    recent_votes = list(recent_votes)

    from_ip = [v for v in recent_votes if v.ip_address == ip_address]
    if len(from_ip) > MAX_VOTES_PER_IP:
        return FraudAssessment(True, "Too many votes from same IP address")

    same_agent = sum(1 for v in recent_votes if v.user_agent == user_agent)
    if same_agent > MAX_VOTES_PER_USER_AGENT:
        return FraudAssessment(True, "Too many votes with identical user agent")

    from_ip.sort(key=lambda v: v.voted_at, reverse=True)
    if len(from_ip) > 1:
        gap = from_ip[0].voted_at - from_ip[1].voted_at
        if gap < timedelta(seconds=MIN_SECONDS_BETWEEN_VOTES):
            return FraudAssessment(True, "Votes cast too rapidly from same location")

    return FraudAssessment(False)


def check_rate_limit(attempts: int, time_window_ms: float) -> bool:
    """
    Whether another attempt is allowed.

    `attempts` were made during a window that has lasted `time_window_ms`:
    at most 3 attempts per 10 minutes, the ceiling lifts once the window is
    older than that.
    """
    return attempts < MAX_ATTEMPTS or time_window_ms > RATE_LIMIT_WINDOW_MS
