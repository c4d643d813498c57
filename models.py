"""
Record schemas for everything the immune system persists.

Records are stored as camelCase JSON. Audit entries carry a ``kind``
tag so any list can be parsed back through one discriminated union;
entries that fail validation are dropped at the read boundary instead
of leaking half-parsed dicts into callers.
"""

import logging
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    TypeAdapter,
    ValidationError,
)
from pydantic.alias_generators import to_camel

logger = logging.getLogger("immune.audit")


# ======================================================
# Enums
# ======================================================

class BanReason(str, Enum):
    BYZANTINE = "byzantine"
    RATE_LIMIT_ABUSE = "rateLimitAbuse"
    MANUAL_BAN = "manualBan"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Action(str, Enum):
    ALLOW = "allow"
    CHALLENGE = "challenge"
    BAN = "ban"


class BypassReason(str, Enum):
    HUMAN_DECLARED = "human-declared"
    ACCESSIBILITY = "accessibility"
    MOBILE_LIMITATION = "mobile-limitation"
    URGENCY = "urgency"


# ======================================================
# Base
# ======================================================

class Record(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def dump(self) -> str:
        return self.model_dump_json(by_alias=True)


# ======================================================
# Records
# ======================================================

class BanRecord(Record):
    kind: Literal["ban"] = "ban"
    ip: str
    reason: BanReason
    timestamp: int
    expires_at: int
    node_type: str = "byzantine"
    previous_ban_count: int = Field(default=0, ge=0)


class ChallengeRecord(Record):
    kind: Literal["challenge"] = "challenge"
    challenge_id: str
    difficulty: int = Field(ge=0)
    issued_at: int
    return_to: str = "/"
    ip: Optional[str] = None


class BypassRecord(Record):
    kind: Literal["bypass"] = "bypass"
    timestamp: int
    ip: str
    challenge_id: Optional[str] = None
    reason: BypassReason
    trust_score: float
    success: StrictBool
    warning: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def approved(self) -> bool:
        # The decision recorded at write time is final.
        return self.success


class ThreatAlert(Record):
    kind: Literal["threat"] = "threat"
    timestamp: int
    ip: str
    path: str
    severity: Severity
    threat_score: float = Field(ge=0.0, le=1.0)
    factors: List[str] = Field(default_factory=list)
    action: Action


class PowAttempt(Record):
    kind: Literal["pow"] = "pow"
    timestamp: int
    ip: str
    challenge_id: str
    difficulty: int
    valid: StrictBool
    reason: Optional[str] = None
    solve_time_ms: Optional[int] = None


class AdminAction(Record):
    kind: Literal["admin"] = "admin"
    timestamp: int
    action: Literal["unban", "config_change"]
    actor: str
    ip: Optional[str] = None
    parameter: Optional[str] = None
    value: Optional[bool] = None


class SystemConfig(Record):
    paranoia_mode: bool = False


AuditEntry = Annotated[
    Union[BanRecord, BypassRecord, ThreatAlert, PowAttempt, AdminAction],
    Field(discriminator="kind"),
]

_audit_entry = TypeAdapter(AuditEntry)
_challenge = TypeAdapter(ChallengeRecord)


# ======================================================
# Fallible parsing (read boundary)
# ======================================================

def parse_entry(raw, expected=None):
    """
    Parse one stored audit entry.

    Returns None for malformed JSON, unknown kinds, schema violations,
    or an entry whose kind is not ``expected``.
    """
    if raw is None:
        return None
    try:
        entry = _audit_entry.validate_json(raw)
    except (ValidationError, TypeError, ValueError):
        logger.debug("Skipping malformed audit entry")
        return None

    if expected is not None and not isinstance(entry, expected):
        return None
    return entry


def parse_challenge(raw) -> Optional[ChallengeRecord]:
    if raw is None:
        return None
    try:
        return _challenge.validate_json(raw)
    except (ValidationError, TypeError, ValueError):
        logger.debug("Skipping malformed challenge record")
        return None


def parse_ban(raw) -> Optional[BanRecord]:
    return parse_entry(raw, BanRecord)
