"""
Threat classifier.

A fixed, ordered battery of named signatures. Each signature that
matches adds its weight and its name to the factor list; the total is
clamped to [0, 1]. Store-derived counters are fetched by the caller and
passed in as ``ClientSignals``, so classification is a pure function of
its inputs and can be replayed in tests.
"""

import re
from dataclasses import dataclass, field
from typing import Callable, List, Mapping, Optional, Pattern, Sequence, Tuple
from urllib.parse import unquote_plus

from config import settings
from models import Severity


# ======================================================
# Inputs / Outputs
# ======================================================

@dataclass(frozen=True)
class InboundRequest:
    ip: str
    method: str
    path: str  # path plus query string
    headers: Mapping[str, str] = field(default_factory=dict)  # lower-case names
    body: str = ""

    @property
    def user_agent(self) -> str:
        return self.headers.get("user-agent", "")

    @property
    def decoded_path(self) -> str:
        return unquote_plus(self.path)


@dataclass(frozen=True)
class ClientSignals:
    request_count: int = 0  # requests in the current rate window
    pow_failures: int = 0   # failed PoW verifications in the last hour


@dataclass(frozen=True)
class ThreatAssessment:
    threat_score: float
    severity: Severity
    factors: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Signature:
    name: str
    weight: float
    matches: Callable[[InboundRequest, ClientSignals], bool]


# ======================================================
# Signature predicates
# ======================================================

def _in_path(pattern: Pattern) -> Callable[[InboundRequest, ClientSignals], bool]:
    def check(request: InboundRequest, _: ClientSignals) -> bool:
        return bool(pattern.search(request.path) or pattern.search(request.decoded_path))
    return check


def _in_path_or_body(pattern: Pattern) -> Callable[[InboundRequest, ClientSignals], bool]:
    in_path = _in_path(pattern)

    def check(request: InboundRequest, signals: ClientSignals) -> bool:
        return in_path(request, signals) or bool(pattern.search(request.body))
    return check


def _in_body(pattern: Pattern) -> Callable[[InboundRequest, ClientSignals], bool]:
    def check(request: InboundRequest, _: ClientSignals) -> bool:
        return bool(pattern.search(request.body))
    return check


def _in_user_agent(pattern: Pattern) -> Callable[[InboundRequest, ClientSignals], bool]:
    def check(request: InboundRequest, _: ClientSignals) -> bool:
        return bool(pattern.search(request.user_agent))
    return check


def _missing_user_agent(request: InboundRequest, _: ClientSignals) -> bool:
    return not request.user_agent.strip()


def _spoofed_browser(request: InboundRequest, _: ClientSignals) -> bool:
    # Real browsers always send Accept-Language.
    return request.user_agent.startswith("Mozilla/") and "accept-language" not in request.headers


def _velocity(threshold: int) -> Callable[[InboundRequest, ClientSignals], bool]:
    def check(_: InboundRequest, signals: ClientSignals) -> bool:
        return signals.request_count > threshold
    return check


def _pow_failures(threshold: int) -> Callable[[InboundRequest, ClientSignals], bool]:
    def check(_: InboundRequest, signals: ClientSignals) -> bool:
        return signals.pow_failures >= threshold
    return check


SQL_INJECTION = re.compile(
    r"(\bunion\b[\s\S]{0,40}\bselect\b"
    r"|'\s*or\s+'?\d+'?\s*=\s*'?\d+"
    r"|;\s*(drop|truncate|alter)\s+table\b"
    r"|\b(sleep|benchmark|pg_sleep)\s*\(\s*\d+"
    r"|\binformation_schema\b)",
    re.IGNORECASE,
)
PATH_TRAVERSAL = re.compile(r"(\.\./|\.\.\\|%2e%2e(%2f|/|%5c)|/etc/passwd|/proc/self/)", re.IGNORECASE)
XSS = re.compile(r"(<script\b|javascript:|\bon(error|load)\s*=)", re.IGNORECASE)
PROMPT_INJECTION = re.compile(
    r"(ignore (all |previous )?(instructions?|prompts?)|system prompt|override (safety|rules)|jailbreak)",
    re.IGNORECASE,
)
ADDRESS_POISONING = re.compile(r"\b(bc1q[a-z0-9]{38,42}|1[a-zA-Z0-9]{33}|3[a-zA-Z0-9]{33})\b")
SCANNER_UA = re.compile(
    r"(sqlmap|nikto|nmap|masscan|zgrab|nuclei|dirbuster|gobuster|wpscan|acunetix)",
    re.IGNORECASE,
)
AUTOMATION_UA = re.compile(
    r"(headless|phantomjs|selenium|webdriver|puppeteer|playwright"
    r"|python-requests|curl/|wget/|go-http-client|scrapy)",
    re.IGNORECASE,
)

VELOCITY_THRESHOLD = int(settings.RATE_LIMIT_REQUESTS * 0.8)
POW_FAILURE_THRESHOLD = 5

SIGNATURES: List[Signature] = [
    Signature("SQL Injection", 0.9, _in_path_or_body(SQL_INJECTION)),
    Signature("Path Traversal", 0.6, _in_path(PATH_TRAVERSAL)),
    Signature("XSS Attempt", 0.6, _in_path_or_body(XSS)),
    Signature("Prompt Injection", 0.35, _in_path_or_body(PROMPT_INJECTION)),
    Signature("Address Poisoning", 0.1, _in_body(ADDRESS_POISONING)),
    Signature("Scanner User-Agent", 0.5, _in_user_agent(SCANNER_UA)),
    Signature("Automation User-Agent", 0.2, _in_user_agent(AUTOMATION_UA)),
    Signature("Missing User-Agent", 0.15, _missing_user_agent),
    Signature("Spoofed Browser Headers", 0.15, _spoofed_browser),
    Signature("Request Velocity", 0.25, _velocity(VELOCITY_THRESHOLD)),
    Signature("Repeated PoW Failures", 0.3, _pow_failures(POW_FAILURE_THRESHOLD)),
]


# ======================================================
# Classifier
# ======================================================

def severity_for(score: float) -> Severity:
    if score >= 0.85:
        return Severity.CRITICAL
    if score >= 0.6:
        return Severity.HIGH
    if score >= 0.3:
        return Severity.MEDIUM
    return Severity.LOW


class ThreatClassifier:
    def __init__(self, signatures: Optional[Sequence[Signature]] = None):
        self.signatures = list(SIGNATURES if signatures is None else signatures)

    def classify(
        self,
        request: InboundRequest,
        signals: ClientSignals = ClientSignals(),
    ) -> ThreatAssessment:
        score = 0.0
        factors = []

        for signature in self.signatures:
            if signature.matches(request, signals):
                score += signature.weight
                factors.append(signature.name)

        # ---- CLAMP SCORE ----
        score = round(min(max(score, 0.0), 1.0), 4)

        return ThreatAssessment(
            threat_score=score,
            severity=severity_for(score),
            factors=tuple(factors),
        )
