import pytest

from audit import AuditStream
from challenge import ChallengeEngine, VerifyFailure, compute_hash, meets_difficulty
from conftest import mine, miss
from models import PowAttempt


def test_compute_hash_is_sha256_of_id_and_nonce():
    import hashlib

    assert compute_hash("abc", 0) == hashlib.sha256(b"abc0").hexdigest()
    assert compute_hash("abc", 0) == compute_hash("abc", "0")
    assert len(compute_hash("abc", 0)) == 64


def test_meets_difficulty_counts_leading_hex_zeros():
    assert meets_difficulty("00ab" + "f" * 60, 2)
    assert not meets_difficulty("0fab" + "f" * 60, 2)
    assert meets_difficulty("f" * 64, 0)


@pytest.mark.asyncio
async def test_issue_then_get_round_trip(engine):
    issued = await engine.issue(3, "/account?tab=1", ip="9.9.9.9")

    fetched = await engine.get(issued.challenge_id)

    assert fetched == issued
    assert len(issued.challenge_id) == 32


@pytest.mark.asyncio
async def test_issue_rejects_out_of_range_difficulty(engine):
    with pytest.raises(ValueError):
        await engine.issue(-1, "/")
    with pytest.raises(ValueError):
        await engine.issue(engine.max_difficulty + 1, "/")


@pytest.mark.asyncio
async def test_valid_solution_verifies_exactly_once(engine):
    challenge = await engine.issue(2, "/")
    nonce = mine(challenge.challenge_id, 2)
    digest = compute_hash(challenge.challenge_id, nonce)

    first = await engine.verify(challenge.challenge_id, nonce, digest, 2)
    second = await engine.verify(challenge.challenge_id, nonce, digest, 2)

    assert first.valid
    assert first.challenge.return_to == "/"
    assert not second.valid
    assert second.failure == VerifyFailure.REPLAY


@pytest.mark.asyncio
async def test_failed_attempt_does_not_consume_challenge(engine):
    challenge = await engine.issue(2, "/")
    bad = miss(challenge.challenge_id, 2)

    failed = await engine.verify(
        challenge.challenge_id, bad, compute_hash(challenge.challenge_id, bad), 2
    )
    assert failed.failure == VerifyFailure.INVALID_DIFFICULTY

    good = mine(challenge.challenge_id, 2)
    ok = await engine.verify(
        challenge.challenge_id, good, compute_hash(challenge.challenge_id, good), 2
    )
    assert ok.valid


@pytest.mark.asyncio
async def test_client_hash_is_never_trusted(engine):
    challenge = await engine.issue(2, "/")
    bad = miss(challenge.challenge_id, 2)

    # Claims a perfect hash that the nonce does not produce.
    result = await engine.verify(challenge.challenge_id, bad, "0" * 64, 2)

    assert not result.valid
    assert result.failure == VerifyFailure.HASH_MISMATCH
    assert await engine.get(challenge.challenge_id) is not None


@pytest.mark.asyncio
async def test_claimed_difficulty_must_match_stored(engine):
    challenge = await engine.issue(3, "/")
    nonce = mine(challenge.challenge_id, 1)

    result = await engine.verify(
        challenge.challenge_id, nonce, compute_hash(challenge.challenge_id, nonce), 1
    )

    assert result.failure == VerifyFailure.DIFFICULTY_MISMATCH


@pytest.mark.asyncio
async def test_unknown_challenge(engine):
    result = await engine.verify("does-not-exist", 1, None, 2)

    assert not result.valid
    assert result.failure == VerifyFailure.NOT_FOUND


@pytest.mark.asyncio
async def test_expired_challenge_fails_even_with_valid_proof(engine, clock):
    challenge = await engine.issue(2, "/")
    nonce = mine(challenge.challenge_id, 2)

    clock.advance(engine.ttl_seconds + 1)
    result = await engine.verify(
        challenge.challenge_id, nonce, compute_hash(challenge.challenge_id, nonce), 2
    )

    assert result.failure == VerifyFailure.EXPIRED
    assert await engine.get(challenge.challenge_id) is None


@pytest.mark.asyncio
async def test_status_lifecycle(engine, clock):
    challenge = await engine.issue(2, "/")

    active = await engine.status(challenge.challenge_id)
    assert active == {
        "exists": True,
        "status": "active",
        "difficulty": 2,
        "expiresIn": engine.ttl_seconds,
    }

    clock.advance(100)
    assert (await engine.status(challenge.challenge_id))["expiresIn"] == engine.ttl_seconds - 100

    assert await engine.consume(challenge.challenge_id, method="pow")
    assert await engine.status(challenge.challenge_id) == {"exists": True, "status": "used"}
    assert await engine.status("missing") == {"exists": False, "status": "not_found"}


@pytest.mark.asyncio
async def test_consume_has_a_single_winner(engine):
    challenge = await engine.issue(2, "/")

    assert await engine.consume(challenge.challenge_id, method="bypass")
    assert not await engine.consume(challenge.challenge_id, method="pow")


@pytest.mark.asyncio
async def test_attempts_are_audited_and_failures_counted(engine, store, audit, clock):
    challenge = await engine.issue(2, "/")
    bad = miss(challenge.challenge_id, 2)
    await engine.verify(
        challenge.challenge_id, bad, compute_hash(challenge.challenge_id, bad), 2, ip="5.5.5.5"
    )

    clock.advance(4)
    good = mine(challenge.challenge_id, 2)
    await engine.verify(
        challenge.challenge_id, good, compute_hash(challenge.challenge_id, good), 2, ip="5.5.5.5"
    )

    attempts = await audit.recent(AuditStream.POW, PowAttempt)
    assert [a.valid for a in attempts] == [True, False]
    assert attempts[0].solve_time_ms == 4000
    assert attempts[1].reason == "invalid-difficulty"
    assert await store.get(store.keys.pow_failures("5.5.5.5")) == "1"


@pytest.mark.asyncio
async def test_store_outage_reports_unavailable(broken_store, clock):
    engine = ChallengeEngine(broken_store, clock=clock)

    result = await engine.verify("abc", 1, None, 2)

    assert not result.valid
    assert result.failure == VerifyFailure.UNAVAILABLE
