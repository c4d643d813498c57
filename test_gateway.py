from urllib.parse import parse_qs, urlparse

import pytest

from challenge import compute_hash
from config import settings
from conftest import ADMIN_KEY, mine
from dependencies import get_store

SCANNER = {"user-agent": "sqlmap/1.7"}


async def _solve(client, challenge_id, difficulty):
    nonce = mine(challenge_id, difficulty)
    return await client.post(
        "/challenge/verify",
        json={
            "challengeId": challenge_id,
            "nonce": nonce,
            "hash": compute_hash(challenge_id, nonce),
            "difficulty": difficulty,
        },
    )


# =========================
# Admission through the gateway
# =========================

@pytest.mark.asyncio
async def test_clean_request_is_forwarded(http, upstream):
    async with http() as client:
        response = await client.get("/api/items?page=2")

    assert response.status_code == 200
    assert response.text == "upstream ok"
    assert response.headers["x-immune-status"] == "active"
    assert upstream == [
        {
            "method": "GET",
            "url": f"{settings.UPSTREAM_BASE_URL}/api/items",
            "ip": "1.2.3.4",
            "body": None,
        }
    ]


@pytest.mark.asyncio
async def test_hostile_request_is_banned_and_listed(http, upstream, clock):
    async with http() as client:
        response = await client.get("/search?q=1 UNION SELECT password FROM users")
        follow_up = await client.get("/api/items")
        bans = await client.get("/admin/immune/bans", headers={"X-API-Key": ADMIN_KEY})

    assert response.status_code == 403
    assert response.json() == {"detail": "Access denied"}
    assert follow_up.status_code == 403
    assert upstream == []

    [ban] = bans.json()
    assert ban["ip"] == "1.2.3.4"
    assert ban["reason"] == "byzantine"
    assert ban["expires"] == clock() + 3600 * 1000


@pytest.mark.asyncio
async def test_banned_client_cannot_earn_immunity_through_challenge(http, upstream, engine):
    async with http() as client:
        banned = await client.get("/search?q=1 UNION SELECT password FROM users")
        page = await client.get("/challenge/pow")

        # A challenge issued before the ban cannot be redeemed either.
        challenge = await engine.issue(2, "/", ip="1.2.3.4")
        verified = await _solve(client, challenge.challenge_id, 2)
        bypass = await client.post(
            "/challenge/bypass",
            json={
                "challengeId": challenge.challenge_id,
                "reason": "accessibility",
                "userAgent": "Mozilla/5.0",
                "interactionData": {"timeOnPage": 20000, "mouseMovements": 80},
            },
        )
        after = await client.get("/api/items")

    assert banned.status_code == 403
    assert page.status_code == 403
    assert verified.status_code == 403
    assert bypass.status_code == 403
    assert after.status_code == 403
    assert (await engine.status(challenge.challenge_id))["status"] == "active"
    assert upstream == []


@pytest.mark.asyncio
async def test_suspicious_request_is_redirected_to_challenge(http, upstream):
    async with http() as client:
        response = await client.get("/api/items?id=7", headers=SCANNER)

    assert response.status_code == 303
    location = urlparse(response.headers["location"])
    query = parse_qs(location.query)
    assert location.path == settings.CHALLENGE_PATH
    assert query["difficulty"] == ["2"]
    assert query["returnTo"] == ["/api/items?id=7"]
    assert query["challengeId"][0]
    assert "score" not in response.text
    assert upstream == []


@pytest.mark.asyncio
async def test_solving_challenge_grants_access(http, upstream):
    async with http() as client:
        redirect = await client.get("/api/items", headers=SCANNER)
        challenge_id = parse_qs(urlparse(redirect.headers["location"]).query)["challengeId"][0]

        verified = await _solve(client, challenge_id, 2)
        replay = await _solve(client, challenge_id, 2)
        after = await client.get("/api/items", headers=SCANNER)

    assert verified.status_code == 200
    assert verified.json()["valid"] is True
    assert verified.headers["x-verified"] == "true"

    assert replay.status_code == 200
    assert replay.json()["valid"] is False
    assert replay.json()["reason"] == "replay"

    assert after.status_code == 200
    assert len(upstream) == 1


@pytest.mark.asyncio
async def test_rate_limited_after_window_budget(http, upstream):
    async with http() as client:
        responses = [await client.get("/api/items") for _ in range(settings.RATE_LIMIT_REQUESTS + 1)]

    assert [r.status_code for r in responses[:-1]] == [200] * settings.RATE_LIMIT_REQUESTS
    assert responses[-1].status_code == 429
    assert int(responses[-1].headers["retry-after"]) > 0


@pytest.mark.asyncio
async def test_store_outage_fails_closed(app, http, upstream, broken_store):
    app.dependency_overrides[get_store] = lambda: broken_store

    async with http() as client:
        response = await client.get("/api/items")

    assert response.status_code == 503
    assert upstream == []


@pytest.mark.asyncio
async def test_oversized_body_is_rejected_before_admission(http, upstream):
    async with http() as client:
        small = await client.post("/api/orders", content=b'{"qty": 2}')
        large = await client.post("/api/orders", content=b"x" * (settings.MAX_BODY_BYTES + 1))

    assert small.status_code == 200
    assert large.status_code == 413
    assert large.json() == {"detail": "Request body too large"}
    assert [call["body"] for call in upstream] == [b'{"qty": 2}']


@pytest.mark.asyncio
async def test_unknown_reserved_path_is_not_forwarded(http, upstream):
    async with http() as client:
        response = await client.get("/challenge/nothing-here")

    assert response.status_code == 404
    assert upstream == []


# =========================
# Challenge zone
# =========================

@pytest.mark.asyncio
async def test_verify_rejects_malformed_body(http):
    async with http() as client:
        missing = await client.post("/challenge/verify", json={"challengeId": "x"})
        bad_hash = await client.post(
            "/challenge/verify",
            json={"challengeId": "x", "nonce": 1, "hash": "zz", "difficulty": 2},
        )

    assert missing.status_code == 400
    assert bad_hash.status_code == 400


@pytest.mark.asyncio
async def test_verify_unknown_challenge(http):
    async with http() as client:
        response = await client.post(
            "/challenge/verify",
            json={"challengeId": "nope", "nonce": 1, "hash": "0" * 64, "difficulty": 2},
        )

    assert response.status_code == 200
    assert response.json()["valid"] is False
    assert response.json()["reason"] == "not-found"
    assert response.headers["x-verified"] == "false"


@pytest.mark.asyncio
async def test_challenge_zone_is_rate_limited_per_ip(http, upstream, clock):
    limit = settings.CHALLENGE_RATE_LIMIT_REQUESTS
    guess = {"challengeId": "nope", "nonce": 1, "hash": "0" * 64, "difficulty": 2}

    async with http() as client:
        attempts = [await client.post("/challenge/verify", json=guess) for _ in range(limit + 1)]
        issuance = await client.get("/challenge/pow")
        gateway = await client.get("/api/items")

    async with http("5.6.7.8") as other:
        neighbour = await other.get("/challenge/pow")

    clock.advance(settings.CHALLENGE_RATE_LIMIT_WINDOW_SECONDS)
    async with http() as client:
        later = await client.get("/challenge/pow")

    assert [r.status_code for r in attempts[:-1]] == [200] * limit
    assert attempts[-1].status_code == 429
    assert int(attempts[-1].headers["retry-after"]) > 0
    assert issuance.status_code == 429

    # Gateway traffic and other clients keep their own budgets.
    assert gateway.status_code == 200
    assert neighbour.status_code == 200
    assert later.status_code == 200


@pytest.mark.asyncio
async def test_challenge_page_issues_clamped_challenge(http):
    async with http() as client:
        response = await client.get(
            "/challenge/pow",
            params={"difficulty": 99, "returnTo": "https://evil.example/phish"},
        )
        status = await client.get(
            "/challenge/status", params={"challengeId": response.json()["challengeId"]}
        )

    body = response.json()
    assert body["difficulty"] == settings.CHALLENGE_HARD_MAX_DIFFICULTY
    assert body["returnTo"] == "/"
    assert body["expiresIn"] == settings.CHALLENGE_TTL_SECONDS
    assert status.json()["status"] == "active"


@pytest.mark.asyncio
async def test_challenge_status_unknown_is_404(http):
    async with http() as client:
        response = await client.get("/challenge/status", params={"challengeId": "missing"})

    assert response.status_code == 404
    assert response.json()["exists"] is False


@pytest.mark.asyncio
async def test_bypass_flow(http):
    async with http() as client:
        issued = await client.get("/challenge/pow")
        response = await client.post(
            "/challenge/bypass",
            json={
                "challengeId": issued.json()["challengeId"],
                "reason": "accessibility",
                "userAgent": "Mozilla/5.0",
                "interactionData": {"timeOnPage": 20000, "mouseMovements": 80},
            },
        )
        quota = await client.get("/challenge/bypass")

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert "trustScore" not in response.json()

    assert quota.json()["remaining"] == settings.BYPASS_DAILY_QUOTA - 1
    assert [r["id"] for r in quota.json()["reasons"]] == [
        "human-declared",
        "accessibility",
        "mobile-limitation",
        "urgency",
    ]


@pytest.mark.asyncio
async def test_bypass_rejects_unknown_reason(http):
    async with http() as client:
        response = await client.post(
            "/challenge/bypass", json={"challengeId": "x", "reason": "because"}
        )

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_health(app, http, broken_store):
    async with http() as client:
        ok = await client.get("/health")
        app.dependency_overrides[get_store] = lambda: broken_store
        degraded = await client.get("/health")

    assert ok.json() == {"status": "ok"}
    assert degraded.json() == {"status": "degraded"}
