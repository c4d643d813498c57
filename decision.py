from dataclasses import dataclass
from enum import Enum
from typing import Dict, Any

from config import settings
from models import SystemConfig


class Decision(str, Enum):
    ALLOW = "ALLOW"
    CHALLENGE = "CHALLENGE"
    BAN = "BAN"


@dataclass(frozen=True)
class Thresholds:
    challenge: float
    ban: float


def thresholds_for(system_config: SystemConfig) -> Thresholds:
    """
    Paranoia mode lowers both bands.
    """
    if system_config.paranoia_mode:
        return Thresholds(
            challenge=settings.PARANOIA_CHALLENGE_THRESHOLD,
            ban=settings.PARANOIA_BAN_THRESHOLD,
        )
    return Thresholds(
        challenge=settings.CHALLENGE_THRESHOLD,
        ban=settings.BAN_THRESHOLD,
    )


def difficulty_for(
    threat_score: float,
    thresholds: Thresholds,
    *,
    min_difficulty: int = settings.CHALLENGE_MIN_DIFFICULTY,
    max_difficulty: int = settings.CHALLENGE_MAX_DIFFICULTY,
) -> int:
    """
    Scale PoW difficulty linearly across the challenge band.
    """
    band = thresholds.ban - thresholds.challenge
    if band <= 0:
        return max_difficulty

    position = (threat_score - thresholds.challenge) / band
    steps = max_difficulty - min_difficulty + 1
    difficulty = min_difficulty + int(position * steps)
    return max(min_difficulty, min(difficulty, max_difficulty))


def make_decision(
    *,
    threat_score: float,
    thresholds: Thresholds,
) -> Dict[str, Any]:
    """
    Threshold banding.

    - score < challenge          -> allow
    - challenge <= score < ban   -> proof-of-work challenge
    - score >= ban               -> ban
    """

    # -------------------------
    # HARD BLOCK (Confirmed Hostile)
    # -------------------------
    if threat_score >= thresholds.ban:
        return {
            "decision": Decision.BAN,
            "reason": "Hostile request signature",
            "metadata": {"threat_score": threat_score},
        }

    # -------------------------
    # SOFT ENFORCEMENT (Prove Work)
    # -------------------------
    if threat_score >= thresholds.challenge:
        return {
            "decision": Decision.CHALLENGE,
            "reason": "Suspicious request, proof of work required",
            "metadata": {
                "threat_score": threat_score,
                "difficulty": difficulty_for(threat_score, thresholds),
            },
        }

    # -------------------------
    # DEFAULT (Healthy Traffic)
    # -------------------------
    return {
        "decision": Decision.ALLOW,
        "reason": "Request within expected behavior",
        "metadata": {"threat_score": threat_score},
    }
