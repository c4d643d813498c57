"""
Trust & bypass evaluator.

Clients that cannot finish the proof-of-work may declare a reason and
ask to be let through. The request is scored from interaction
telemetry and capped by a small per-IP daily quota. Whatever is
decided is written once, verbatim, as a BypassRecord; ``success`` on
that record is the only approval signal anything downstream may use.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from audit import AuditLog, AuditStream
from bans import is_banned
from challenge import ChallengeEngine
from classifier import severity_for
from clock import Clock, now_ms
from config import settings
from immunity import ImmunitySource, grant_immunity
from models import Action, BypassReason, BypassRecord, ThreatAlert
from store import AtomicStore, StoreUnavailable

logger = logging.getLogger("immune.bypass")

BYPASS_WINDOW_SECONDS = 24 * 3600
BYPASS_PATH = "/challenge/bypass"

BASE_TRUST = 30
MIN_INTERACTION_MS = 3000
LONG_INTERACTION_MS = 10000
NATURAL_MOUSE_MOVEMENTS = 50
MAX_CLOCK_SKEW_MS = 10 * 60 * 1000
REPEATED_BYPASS_SCORE = 0.5

REASON_CREDIBILITY = {
    BypassReason.ACCESSIBILITY: 25,
    BypassReason.MOBILE_LIMITATION: 15,
    BypassReason.HUMAN_DECLARED: 10,
    BypassReason.URGENCY: 5,
}

MOBILE_MARKERS = ("Mobile", "Android", "iPhone")

LOW_TRUST_WARNING = "Low trust verification. Complete the proof of work next time for full access."


@dataclass(frozen=True)
class Interaction:
    time_on_page_ms: Optional[int] = None
    mouse_movements: Optional[int] = None


@dataclass(frozen=True)
class BypassResult:
    success: bool
    trust_score: int = 0
    warning: Optional[str] = None
    message: Optional[str] = None
    immunity_seconds: Optional[int] = None


def calculate_trust_score(
    reason: BypassReason,
    interaction: Interaction,
    user_agent: Optional[str],
    *,
    timestamp: Optional[int],
    now: int,
) -> int:
    score = BASE_TRUST

    # Time on page: humans take a moment to read
    dwell = interaction.time_on_page_ms
    if dwell is not None:
        if dwell > LONG_INTERACTION_MS:
            score += 20
        elif dwell > MIN_INTERACTION_MS:
            score += 10
        else:
            score -= 10

    # Mouse movement
    moves = interaction.mouse_movements
    if moves is not None:
        if moves > NATURAL_MOUSE_MOVEMENTS:
            score += 15
        elif moves == 0 and dwell is not None and dwell <= MIN_INTERACTION_MS:
            score -= 20

    score += REASON_CREDIBILITY[reason]

    ua = user_agent or ""
    if any(marker in ua for marker in MOBILE_MARKERS):
        score += 10

    if timestamp is not None and abs(now - timestamp) > MAX_CLOCK_SKEW_MS:
        score -= 10

    return max(0, min(score, 100))


class BypassEvaluator:
    def __init__(
        self,
        store: AtomicStore,
        challenges: ChallengeEngine,
        audit: AuditLog,
        *,
        clock: Clock = now_ms,
    ):
        self.store = store
        self.challenges = challenges
        self.audit = audit
        self.clock = clock

    async def remaining_quota(self, ip: str) -> dict:
        key = self.store.keys.bypass_daily(ip)
        used = int(await self.store.get(key) or 0)
        ttl = await self.store.ttl(key)
        remaining = max(0, settings.BYPASS_DAILY_QUOTA - used)
        return {
            "allowed": remaining > 0,
            "remaining": remaining,
            "maxPerDay": settings.BYPASS_DAILY_QUOTA,
            "windowHours": BYPASS_WINDOW_SECONDS // 3600,
            "resetIn": ttl if ttl > 0 else 0,
        }

    async def request_bypass(
        self,
        *,
        ip: str,
        challenge_id: str,
        reason: BypassReason,
        interaction: Interaction,
        user_agent: Optional[str],
        timestamp: Optional[int],
    ) -> BypassResult:
        try:
            result = await self._evaluate(
                ip=ip,
                challenge_id=challenge_id,
                reason=reason,
                interaction=interaction,
                user_agent=user_agent,
                timestamp=timestamp,
            )
        except StoreUnavailable:
            result = BypassResult(success=False, message="Verification temporarily unavailable")

        await self.audit.record(
            AuditStream.BYPASSES,
            BypassRecord(
                timestamp=self.clock(),
                ip=ip,
                challenge_id=challenge_id,
                reason=reason,
                trust_score=result.trust_score,
                success=result.success,
                warning=result.warning,
                user_agent=user_agent,
            ),
        )
        logger.info(
            f"Bypass {'approved' if result.success else 'rejected'} for {ip} "
            f"(reason={reason.value}, trust={result.trust_score})"
        )
        return result

    async def _evaluate(
        self,
        *,
        ip: str,
        challenge_id: str,
        reason: BypassReason,
        interaction: Interaction,
        user_agent: Optional[str],
        timestamp: Optional[int],
    ) -> BypassResult:
        if await is_banned(self.store, ip):
            return BypassResult(success=False, message="Access denied")

        # Every attempt spends quota, so concurrent attempts cannot overrun it.
        used = await self.store.incr(
            self.store.keys.bypass_daily(ip),
            ttl=BYPASS_WINDOW_SECONDS,
        )
        if used >= settings.BYPASS_ALERT_THRESHOLD:
            await self._alert_repeated(ip)

        if used > settings.BYPASS_DAILY_QUOTA:
            return BypassResult(
                success=False,
                message=f"Daily bypass limit reached ({settings.BYPASS_DAILY_QUOTA} per 24h)",
            )

        challenge = await self.challenges.get(challenge_id)
        if challenge is None:
            return BypassResult(success=False, message="Challenge not found or expired")

        trust_score = calculate_trust_score(
            reason,
            interaction,
            user_agent,
            timestamp=timestamp,
            now=self.clock(),
        )
        if trust_score < settings.BYPASS_MIN_TRUST:
            return BypassResult(
                success=False,
                trust_score=trust_score,
                message="Unable to verify. Please complete the proof of work.",
            )

        if not await self.challenges.consume(challenge_id, method="bypass"):
            return BypassResult(
                success=False,
                trust_score=trust_score,
                message="This challenge has already been solved",
            )

        if trust_score < settings.BYPASS_FULL_TRUST:
            immunity = settings.BYPASS_LOW_TRUST_IMMUNITY_SECONDS
            warning = LOW_TRUST_WARNING
        else:
            immunity = settings.BYPASS_IMMUNITY_SECONDS
            warning = None

        await grant_immunity(self.store, ip, immunity, ImmunitySource.BYPASS)

        return BypassResult(
            success=True,
            trust_score=trust_score,
            warning=warning,
            message="Access granted.",
            immunity_seconds=immunity,
        )

    async def _alert_repeated(self, ip: str) -> None:
        await self.audit.record(
            AuditStream.THREATS,
            ThreatAlert(
                timestamp=self.clock(),
                ip=ip,
                path=BYPASS_PATH,
                severity=severity_for(REPEATED_BYPASS_SCORE),
                threat_score=REPEATED_BYPASS_SCORE,
                factors=["Repeated Bypass"],
                action=Action.CHALLENGE,
            ),
        )
