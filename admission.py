"""
Admission controller.

Every gateway request walks the same state machine:

    CHECK_IMMUNITY -> CHECK_BAN -> CHECK_RATE_LIMIT -> CLASSIFY
                                                    -> ALLOW | CHALLENGE | BAN

State is re-derived from the store on each call. If the store is
unreachable the request fails closed with ``Verdict.UNAVAILABLE``.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from audit import AuditLog, AuditStream
from bans import ban_ip, is_banned
from challenge import ChallengeEngine
from classifier import ClientSignals, InboundRequest, ThreatAssessment, ThreatClassifier
from clock import Clock, now_ms
from config_manager import ConfigManager
from decision import Decision, make_decision, thresholds_for
from immunity import is_immune
from models import Action, BanReason, BanRecord, ChallengeRecord, ThreatAlert
from rate_limit import check_rate_limit
from store import AtomicStore, StoreUnavailable

logger = logging.getLogger("immune.admission")

# Served by the challenge UI and admin plane; never admission-checked.
EXEMPT_PREFIXES = ("/challenge", "/admin/immune", "/health")


def is_exempt(path: str) -> bool:
    return any(path == p or path.startswith(p + "/") for p in EXEMPT_PREFIXES)


class AdmissionState(str, Enum):
    CHECK_IMMUNITY = "CHECK_IMMUNITY"
    CHECK_BAN = "CHECK_BAN"
    CHECK_RATE_LIMIT = "CHECK_RATE_LIMIT"
    CLASSIFY = "CLASSIFY"
    ALLOW = "ALLOW"
    CHALLENGE = "CHALLENGE"
    BAN = "BAN"


class Verdict(str, Enum):
    ALLOW = "allow"
    CHALLENGE = "challenge"
    BAN = "ban"                    # banned by this request
    BANNED = "banned"              # live ban already on record
    RATE_LIMITED = "rate_limited"
    UNAVAILABLE = "unavailable"


@dataclass
class AdmissionResult:
    verdict: Verdict
    trail: List[AdmissionState] = field(default_factory=list)
    assessment: Optional[ThreatAssessment] = None
    challenge: Optional[ChallengeRecord] = None
    ban: Optional[BanRecord] = None
    retry_after: Optional[int] = None

    @property
    def threat_score(self) -> float:
        return self.assessment.threat_score if self.assessment else 0.0


@dataclass
class _Context:
    request: InboundRequest
    now: int
    trail: List[AdmissionState] = field(default_factory=list)
    request_count: int = 0
    assessment: Optional[ThreatAssessment] = None
    difficulty: Optional[int] = None


class AdmissionController:
    def __init__(
        self,
        store: AtomicStore,
        *,
        classifier: ThreatClassifier,
        challenges: ChallengeEngine,
        audit: AuditLog,
        config_manager: ConfigManager,
        clock: Clock = now_ms,
    ):
        self.store = store
        self.classifier = classifier
        self.challenges = challenges
        self.audit = audit
        self.config_manager = config_manager
        self.clock = clock

    async def admit(self, request: InboundRequest) -> AdmissionResult:
        ctx = _Context(request=request, now=self.clock())
        try:
            return await self._run(ctx)
        except StoreUnavailable:
            logger.warning(f"Store unavailable during {ctx.trail[-1].value}; failing closed for {request.ip}")
            return AdmissionResult(Verdict.UNAVAILABLE, trail=ctx.trail)

    async def _run(self, ctx: _Context) -> AdmissionResult:
        state = AdmissionState.CHECK_IMMUNITY
        while True:
            ctx.trail.append(state)

            if state is AdmissionState.CHECK_IMMUNITY:
                if await is_immune(self.store, ctx.request.ip):
                    state = AdmissionState.ALLOW
                else:
                    state = AdmissionState.CHECK_BAN

            elif state is AdmissionState.CHECK_BAN:
                if await is_banned(self.store, ctx.request.ip):
                    return AdmissionResult(Verdict.BANNED, trail=ctx.trail)
                state = AdmissionState.CHECK_RATE_LIMIT

            elif state is AdmissionState.CHECK_RATE_LIMIT:
                rate = await check_rate_limit(self.store, ctx.request.ip, now_ms=ctx.now)
                if not rate.allowed:
                    return AdmissionResult(
                        Verdict.RATE_LIMITED,
                        trail=ctx.trail,
                        retry_after=rate.retry_after,
                    )
                ctx.request_count = rate.count
                state = AdmissionState.CLASSIFY

            elif state is AdmissionState.CLASSIFY:
                state = await self._classify(ctx)

            elif state is AdmissionState.ALLOW:
                await self._alert(ctx, Action.ALLOW)
                return AdmissionResult(Verdict.ALLOW, trail=ctx.trail, assessment=ctx.assessment)

            elif state is AdmissionState.CHALLENGE:
                challenge = await self.challenges.issue(
                    ctx.difficulty,
                    return_to=ctx.request.path,
                    ip=ctx.request.ip,
                )
                await self._alert(ctx, Action.CHALLENGE)
                return AdmissionResult(
                    Verdict.CHALLENGE,
                    trail=ctx.trail,
                    assessment=ctx.assessment,
                    challenge=challenge,
                )

            elif state is AdmissionState.BAN:
                record = await ban_ip(
                    self.store,
                    self.audit,
                    ctx.request.ip,
                    reason=BanReason.BYZANTINE,
                    now_ms=ctx.now,
                )
                await self._alert(ctx, Action.BAN)
                return AdmissionResult(
                    Verdict.BAN,
                    trail=ctx.trail,
                    assessment=ctx.assessment,
                    ban=record,
                )

    async def _classify(self, ctx: _Context) -> AdmissionState:
        system_config = await self.config_manager.load()
        pow_failures = await self.store.get(self.store.keys.pow_failures(ctx.request.ip))

        ctx.assessment = self.classifier.classify(
            ctx.request,
            ClientSignals(
                request_count=ctx.request_count,
                pow_failures=int(pow_failures or 0),
            ),
        )

        result = make_decision(
            threat_score=ctx.assessment.threat_score,
            thresholds=thresholds_for(system_config),
        )
        decision = result["decision"]

        if ctx.assessment.factors:
            logger.info(
                f"{ctx.request.ip} {ctx.request.method} {ctx.request.path} "
                f"score={ctx.assessment.threat_score} factors={list(ctx.assessment.factors)} "
                f"-> {decision.value}"
            )

        if decision == Decision.BAN:
            return AdmissionState.BAN
        if decision == Decision.CHALLENGE:
            ctx.difficulty = result["metadata"]["difficulty"]
            return AdmissionState.CHALLENGE
        return AdmissionState.ALLOW

    async def _alert(self, ctx: _Context, action: Action) -> None:
        assessment = ctx.assessment
        if assessment is None or assessment.threat_score <= 0:
            return

        await self.audit.record(
            AuditStream.THREATS,
            ThreatAlert(
                timestamp=ctx.now,
                ip=ctx.request.ip,
                path=ctx.request.path,
                severity=assessment.severity,
                threat_score=assessment.threat_score,
                factors=list(assessment.factors),
                action=action,
            ),
        )
