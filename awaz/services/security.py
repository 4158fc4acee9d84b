"""
Cryptographic helpers for voter anonymization and vote integrity.

The voter hash is the only trace of a voter's identity that ever reaches the
ledger: the raw voting id stays on the student roll.
"""
import hashlib
import hmac
import ipaddress
import random
import re
import uuid
from datetime import datetime
from typing import Optional, Union

from ..config import settings

# VROLL followed by 7 digits (VROLL0021694) or V followed by 4-8 digits (V29248044, V9995)
VROLL_PATTERN = re.compile(r"VROLL\d{7}")
V_NUMBER_PATTERN = re.compile(r"V\d{4,8}")


def normalize_voting_id(voting_id: str) -> str:
    return voting_id.strip().upper()


def is_valid_voting_id(voting_id) -> bool:
    """Validate voting ID format. Case-sensitive, normalize first."""
    if not isinstance(voting_id, str):
        return False
    return bool(VROLL_PATTERN.fullmatch(voting_id) or V_NUMBER_PATTERN.fullmatch(voting_id))


def generate_voting_id(roll_number: Optional[str] = None) -> str:
    """V, up to the last 4 digits of the roll number, then 4 random digits (e.g. V02161234)."""
    roll_digits = re.sub(r"\D", "", roll_number or "")[-4:]
    return f"V{roll_digits}{random.randint(1000, 9999)}"


def _sha256_hex(data: str) -> str:
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def create_voter_hash(voting_id: str, salt: Optional[str] = None) -> str:
    """Anonymized voter identity: sha256(voting_id + salt) as lowercase hex."""
    if not isinstance(voting_id, str):
        raise TypeError("voting_id must be a string")
    if salt is None:
        salt = settings.VOTER_HASH_SALT
    return _sha256_hex(voting_id + salt)


def _timestamp_text(timestamp: Union[str, datetime]) -> str:
    if isinstance(timestamp, datetime):
        return timestamp.isoformat()
    return timestamp


def create_vote_hash(session_id: str, timestamp: Union[str, datetime]) -> str:
    """Integrity stamp binding a voting session to the moment a vote was cast."""
    return _sha256_hex(str(session_id) + _timestamp_text(timestamp))


def verify_vote_hash(session_id: str, timestamp: Union[str, datetime], vote_hash: str) -> bool:
    """Recompute the stamp; a mismatch means the record was tampered with."""
    return hmac.compare_digest(create_vote_hash(session_id, timestamp), vote_hash or "")


def generate_session_id() -> str:
    return str(uuid.uuid4())


def is_valid_booth_ip(ip_address: Optional[str]) -> bool:
    """Booth machines sit on private networks; anything else is flagged in audit details."""
    if not ip_address:
        return False
    try:
        ip = ipaddress.ip_address(ip_address)
    except ValueError:
        return False
    return ip.is_private or ip.is_loopback
