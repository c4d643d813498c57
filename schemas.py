from pydantic import BaseModel, ConfigDict, Field, StrictBool
from pydantic.alias_generators import to_camel
from typing import Dict, List, Optional

from models import BypassReason


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =========================
# Challenge flow
# =========================

class VerifyRequest(ApiModel):
    challenge_id: str = Field(min_length=1, max_length=128)
    nonce: int = Field(ge=0)
    hash: str = Field(pattern=r"^[a-fA-F0-9]{64}$")
    difficulty: int = Field(ge=0)


class VerifyResponse(ApiModel):
    valid: bool
    message: Optional[str] = None
    reason: Optional[str] = None  # failure code: expired | replay | invalid-difficulty | ...


class InteractionData(ApiModel):
    time_on_page: Optional[int] = Field(default=None, ge=0)
    mouse_movements: Optional[int] = Field(default=None, ge=0)


class BypassRequest(ApiModel):
    challenge_id: str = Field(min_length=1, max_length=128)
    reason: BypassReason
    timestamp: Optional[int] = None
    user_agent: Optional[str] = Field(default=None, max_length=512)
    interaction_data: InteractionData = Field(default_factory=InteractionData)


class BypassResponse(ApiModel):
    success: bool
    warning: Optional[str] = None
    message: Optional[str] = None


class ChallengeResponse(ApiModel):
    challenge_id: str
    difficulty: int
    return_to: str
    expires_in: int


class ChallengeStatusResponse(ApiModel):
    exists: bool
    status: str  # active | used | not_found
    difficulty: Optional[int] = None
    expires_in: Optional[int] = None


class BypassReasonInfo(ApiModel):
    id: BypassReason
    label: str
    description: str


class BypassQuotaResponse(ApiModel):
    allowed: bool
    remaining: int
    max_per_day: int
    window_hours: int
    reset_in: int
    reasons: List[BypassReasonInfo]


# =========================
# Admin plane
# =========================

class BanView(ApiModel):
    ip: str
    reason: str
    timestamp: int
    expires: int
    node_type: str
    previous_bans: int


class BypassView(ApiModel):
    timestamp: int
    ip: str
    reason: str
    trust_score: float
    approved: bool


class ThreatView(ApiModel):
    id: str
    timestamp: int
    ip: str
    path: str
    score: float
    severity: str
    signatures: List[str]
    action: str
    resolved: bool = False


class ConfigPayload(ApiModel):
    paranoia_mode: StrictBool


class ConfigUpdateResponse(ApiModel):
    success: bool
    message: str
    paranoia_mode: bool


class UnbanRequest(ApiModel):
    ip: str = Field(min_length=1, max_length=64)


class UnbanResponse(ApiModel):
    success: bool
    message: str


class StatsResponse(ApiModel):
    threats: Dict
    bans: Dict
    bypasses: Dict
    pow: Dict
    health: Dict


class HealthResponse(BaseModel):
    status: str
