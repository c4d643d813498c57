from classifier import (
    ClientSignals,
    InboundRequest,
    Signature,
    ThreatClassifier,
    VELOCITY_THRESHOLD,
    severity_for,
)
from decision import Decision, Thresholds, difficulty_for, make_decision, thresholds_for
from models import Severity, SystemConfig

BROWSER = {
    "user-agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0) Safari/605.1.15",
    "accept-language": "en-US,en;q=0.9",
}

classifier = ThreatClassifier()


def _request(path="/", headers=None, body="", method="GET"):
    return InboundRequest(
        ip="1.2.3.4",
        method=method,
        path=path,
        headers=BROWSER if headers is None else headers,
        body=body,
    )


# =========================
# Signatures
# =========================

def test_benign_browser_request_scores_zero():
    result = classifier.classify(_request("/products/42?sort=price"))

    assert result.threat_score == 0.0
    assert result.severity == Severity.LOW
    assert result.factors == ()


def test_sql_injection_in_query_is_critical():
    result = classifier.classify(_request("/search?q=1 UNION SELECT password FROM users"))

    assert "SQL Injection" in result.factors
    assert result.threat_score == 0.9
    assert result.severity == Severity.CRITICAL


def test_url_encoded_payload_is_decoded_before_matching():
    result = classifier.classify(_request("/search?q=1%20UNION%20SELECT%20name"))

    assert result.factors == ("SQL Injection",)


def test_path_traversal():
    result = classifier.classify(_request("/static/../../etc/passwd"))

    assert result.factors == ("Path Traversal",)
    assert result.severity == Severity.HIGH


def test_xss_in_body():
    result = classifier.classify(
        _request("/comments", body='{"text": "<script>alert(1)</script>"}', method="POST")
    )

    assert result.factors == ("XSS Attempt",)


def test_prompt_injection_is_medium():
    result = classifier.classify(_request("/chat?q=ignore previous instructions"))

    assert result.factors == ("Prompt Injection",)
    assert result.threat_score == 0.35
    assert result.severity == Severity.MEDIUM


def test_scanner_user_agent():
    result = classifier.classify(_request(headers={"user-agent": "sqlmap/1.7.2#stable"}))

    assert result.factors == ("Scanner User-Agent",)
    assert result.threat_score == 0.5


def test_missing_user_agent():
    result = classifier.classify(_request(headers={}))

    assert result.factors == ("Missing User-Agent",)


def test_browser_user_agent_without_accept_language_is_suspicious():
    result = classifier.classify(_request(headers={"user-agent": BROWSER["user-agent"]}))

    assert result.factors == ("Spoofed Browser Headers",)


def test_client_signals_contribute():
    result = classifier.classify(
        _request(),
        ClientSignals(request_count=VELOCITY_THRESHOLD + 1, pow_failures=5),
    )

    assert result.factors == ("Request Velocity", "Repeated PoW Failures")
    assert result.threat_score == 0.55


def test_score_is_clamped_to_one():
    result = classifier.classify(
        _request(
            "/search?q=1 UNION SELECT x&next=<script>",
            headers={"user-agent": "nikto"},
        )
    )

    assert result.threat_score == 1.0
    assert result.factors[:2] == ("SQL Injection", "XSS Attempt")


def test_custom_signature_battery():
    always = Signature("Always", 0.2, lambda request, signals: True)

    result = ThreatClassifier([always, always]).classify(_request())

    assert result.threat_score == 0.4
    assert result.factors == ("Always", "Always")


def test_severity_bands():
    assert severity_for(0.0) == Severity.LOW
    assert severity_for(0.29) == Severity.LOW
    assert severity_for(0.3) == Severity.MEDIUM
    assert severity_for(0.6) == Severity.HIGH
    assert severity_for(0.85) == Severity.CRITICAL


# =========================
# Decision bands
# =========================

def test_thresholds_follow_paranoia_mode():
    normal = thresholds_for(SystemConfig(paranoia_mode=False))
    paranoid = thresholds_for(SystemConfig(paranoia_mode=True))

    assert paranoid.challenge < normal.challenge
    assert paranoid.ban < normal.ban


def test_make_decision_bands():
    thresholds = Thresholds(challenge=0.5, ban=0.85)

    assert make_decision(threat_score=0.49, thresholds=thresholds)["decision"] == Decision.ALLOW
    assert make_decision(threat_score=0.5, thresholds=thresholds)["decision"] == Decision.CHALLENGE
    assert make_decision(threat_score=0.85, thresholds=thresholds)["decision"] == Decision.BAN


def test_difficulty_scales_with_score_within_bounds():
    thresholds = Thresholds(challenge=0.5, ban=0.85)

    difficulties = [
        difficulty_for(score, thresholds, min_difficulty=2, max_difficulty=5)
        for score in (0.5, 0.6, 0.7, 0.8, 0.849)
    ]

    assert difficulties == sorted(difficulties)
    assert difficulties[0] == 2
    assert difficulties[-1] == 5
    assert make_decision(threat_score=0.5, thresholds=thresholds)["metadata"]["difficulty"] == 2
