"""
Proof-of-work challenge engine.

A challenge is a random id the client must extend with a nonce such
that ``sha256(challenge_id + nonce)`` starts with ``difficulty`` hex
zeros. Mining happens on the client; the server only issues, stores,
and re-verifies. A stored challenge can be redeemed exactly once,
either by a valid proof or by an approved bypass.
"""

import hashlib
import logging
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

from audit import AuditLog, AuditStream
from clock import Clock, now_ms
from config import settings
from models import ChallengeRecord, PowAttempt, parse_challenge
from store import AtomicStore, StoreUnavailable

logger = logging.getLogger("immune.challenge")

POW_FAILURE_TTL_SECONDS = 3600


class VerifyFailure(str, Enum):
    NOT_FOUND = "not-found"
    EXPIRED = "expired"
    REPLAY = "replay"
    DIFFICULTY_MISMATCH = "difficulty-mismatch"
    HASH_MISMATCH = "hash-mismatch"
    INVALID_DIFFICULTY = "invalid-difficulty"
    UNAVAILABLE = "unavailable"


FAILURE_MESSAGES = {
    VerifyFailure.NOT_FOUND: "Challenge not found or expired",
    VerifyFailure.EXPIRED: "Challenge expired",
    VerifyFailure.REPLAY: "This challenge has already been solved",
    VerifyFailure.DIFFICULTY_MISMATCH: "Claimed difficulty does not match challenge",
    VerifyFailure.HASH_MISMATCH: "Hash does not match the submitted nonce",
    VerifyFailure.INVALID_DIFFICULTY: "Hash does not meet difficulty target",
    VerifyFailure.UNAVAILABLE: "Verification temporarily unavailable",
}


@dataclass(frozen=True)
class VerifyResult:
    valid: bool
    failure: Optional[VerifyFailure] = None
    challenge: Optional[ChallengeRecord] = None

    @property
    def message(self) -> str:
        if self.valid:
            return "Proof of work verified. Access granted."
        return FAILURE_MESSAGES[self.failure]


# ======================================================
# Hashing
# ======================================================

def compute_hash(challenge_id: str, nonce: Union[int, str]) -> str:
    return hashlib.sha256(f"{challenge_id}{nonce}".encode()).hexdigest()


def meets_difficulty(digest: str, difficulty: int) -> bool:
    return digest.startswith("0" * difficulty)


# ======================================================
# Engine
# ======================================================

class ChallengeEngine:
    def __init__(
        self,
        store: AtomicStore,
        *,
        audit: Optional[AuditLog] = None,
        clock: Clock = now_ms,
        ttl_seconds: int = settings.CHALLENGE_TTL_SECONDS,
        max_difficulty: int = settings.CHALLENGE_HARD_MAX_DIFFICULTY,
    ):
        self.store = store
        self.audit = audit or AuditLog(store)
        self.clock = clock
        self.ttl_seconds = ttl_seconds
        self.max_difficulty = max_difficulty

    async def issue(
        self,
        difficulty: int,
        return_to: str,
        ip: Optional[str] = None,
    ) -> ChallengeRecord:
        """
        Store a fresh challenge and return it.

        Raises:
            ValueError: difficulty outside ``[0, max_difficulty]``.
            StoreUnavailable: the challenge could not be persisted.
        """
        if difficulty < 0 or difficulty > self.max_difficulty:
            raise ValueError(f"difficulty must be within 0..{self.max_difficulty}")

        record = ChallengeRecord(
            challenge_id=secrets.token_hex(16),
            difficulty=difficulty,
            issued_at=self.clock(),
            return_to=return_to,
            ip=ip,
        )
        await self.store.set(
            self.store.keys.challenge(record.challenge_id),
            record.dump(),
            ttl=self.ttl_seconds,
        )
        logger.info(f"Issued challenge {record.challenge_id[:8]} difficulty={difficulty}")
        return record

    def _expired(self, record: ChallengeRecord) -> bool:
        return self.clock() - record.issued_at > self.ttl_seconds * 1000

    async def get(self, challenge_id: str) -> Optional[ChallengeRecord]:
        """Return the challenge if it is still redeemable."""
        if await self.store.exists(self.store.keys.challenge_used(challenge_id)):
            return None
        record = parse_challenge(await self.store.get(self.store.keys.challenge(challenge_id)))
        if record is None or self._expired(record):
            return None
        return record

    async def status(self, challenge_id: str) -> Dict[str, Any]:
        if await self.store.exists(self.store.keys.challenge_used(challenge_id)):
            return {"exists": True, "status": "used"}

        record = parse_challenge(await self.store.get(self.store.keys.challenge(challenge_id)))
        if record is None or self._expired(record):
            return {"exists": False, "status": "not_found"}

        remaining_ms = record.issued_at + self.ttl_seconds * 1000 - self.clock()
        return {
            "exists": True,
            "status": "active",
            "difficulty": record.difficulty,
            "expiresIn": max(0, remaining_ms // 1000),
        }

    async def consume(self, challenge_id: str, method: str) -> bool:
        """
        Atomically mark the challenge used. Only the first caller wins.
        """
        claimed = await self.store.set(
            self.store.keys.challenge_used(challenge_id),
            method,
            ttl=self.ttl_seconds * 2,
            nx=True,
        )
        if not claimed:
            return False
        await self.store.delete(self.store.keys.challenge(challenge_id))
        return True

    async def verify(
        self,
        challenge_id: str,
        nonce: Union[int, str],
        claimed_hash: Optional[str],
        difficulty: int,
        ip: str = "unknown",
    ) -> VerifyResult:
        """
        Recompute the proof server-side and redeem the challenge.

        Failures never consume the challenge, so the client may retry
        with another nonce until it expires.
        """
        try:
            result = await self._verify(challenge_id, nonce, claimed_hash, difficulty)
        except StoreUnavailable:
            return VerifyResult(valid=False, failure=VerifyFailure.UNAVAILABLE)

        await self._record_attempt(ip, challenge_id, difficulty, result)
        return result

    async def _verify(
        self,
        challenge_id: str,
        nonce: Union[int, str],
        claimed_hash: Optional[str],
        difficulty: int,
    ) -> VerifyResult:
        keys = self.store.keys

        if await self.store.exists(keys.challenge_used(challenge_id)):
            return VerifyResult(valid=False, failure=VerifyFailure.REPLAY)

        record = parse_challenge(await self.store.get(keys.challenge(challenge_id)))
        if record is None:
            return VerifyResult(valid=False, failure=VerifyFailure.NOT_FOUND)

        if self._expired(record):
            await self.store.delete(keys.challenge(challenge_id))
            return VerifyResult(valid=False, failure=VerifyFailure.EXPIRED, challenge=record)

        if difficulty != record.difficulty:
            return VerifyResult(valid=False, failure=VerifyFailure.DIFFICULTY_MISMATCH, challenge=record)

        digest = compute_hash(challenge_id, nonce)

        if claimed_hash is not None and digest != claimed_hash.lower():
            return VerifyResult(valid=False, failure=VerifyFailure.HASH_MISMATCH, challenge=record)

        # The stored difficulty is authoritative, never the claimed one.
        if not meets_difficulty(digest, record.difficulty):
            return VerifyResult(valid=False, failure=VerifyFailure.INVALID_DIFFICULTY, challenge=record)

        if not await self.consume(challenge_id, method="pow"):
            return VerifyResult(valid=False, failure=VerifyFailure.REPLAY, challenge=record)

        return VerifyResult(valid=True, challenge=record)

    async def _record_attempt(
        self,
        ip: str,
        challenge_id: str,
        difficulty: int,
        result: VerifyResult,
    ) -> None:
        now = self.clock()
        solve_time_ms = None
        if result.valid and result.challenge is not None:
            solve_time_ms = max(0, now - result.challenge.issued_at)

        attempt = PowAttempt(
            timestamp=now,
            ip=ip,
            challenge_id=challenge_id,
            difficulty=difficulty,
            valid=result.valid,
            reason=None if result.valid else result.failure.value,
            solve_time_ms=solve_time_ms,
        )
        await self.audit.record(AuditStream.POW, attempt)

        if not result.valid and result.failure is not VerifyFailure.UNAVAILABLE:
            try:
                await self.store.incr(
                    self.store.keys.pow_failures(ip),
                    ttl=POW_FAILURE_TTL_SECONDS,
                )
            except StoreUnavailable:
                logger.warning("Could not track PoW failure counter")
