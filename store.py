"""
Atomic store adapter.

Every piece of shared state (bans, challenges, counters, audit lists,
runtime flags) lives in Redis. Nothing in-process is authoritative
between requests, so components talk to the store only through this
adapter, which owns the key namespace and converts every transport
failure into ``StoreUnavailable``.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional

from redis.exceptions import RedisError

from config import settings

logger = logging.getLogger("immune.store")


class StoreUnavailable(Exception):
    """Raised when the store cannot be reached or an operation times out."""


# ======================================================
# Key Namespace
# ======================================================

class Keys:
    def __init__(self, prefix: str):
        self.prefix = prefix.rstrip(":")

    def _k(self, *parts: Any) -> str:
        return ":".join([self.prefix, *(str(p) for p in parts)])

    # ---- bans ----
    def ban(self, ip: str) -> str:
        return self._k("ban", ip)

    def ban_index(self) -> str:
        return self._k("ban", "index")

    def ban_count(self, ip: str) -> str:
        return self._k("ban", "count", ip)

    # ---- immunity ----
    def verified(self, ip: str) -> str:
        return self._k("verified", ip)

    # ---- counters ----
    def rate(self, ip: str, bucket: int, scope: Optional[str] = None) -> str:
        if scope:
            return self._k("ratelimit", scope, ip, bucket)
        return self._k("ratelimit", ip, bucket)

    def pow_failures(self, ip: str) -> str:
        return self._k("pow", "failures", ip)

    def bypass_daily(self, ip: str) -> str:
        return self._k("bypass", "daily", ip)

    # ---- challenges ----
    def challenge(self, challenge_id: str) -> str:
        return self._k("challenge", challenge_id)

    def challenge_used(self, challenge_id: str) -> str:
        return self._k("challenge", "used", challenge_id)

    # ---- global ----
    def config(self, flag: str) -> str:
        return self._k("config", flag)

    def audit(self, stream: str) -> str:
        return self._k("audit", stream)


# ======================================================
# Store
# ======================================================

class AtomicStore:
    def __init__(
        self,
        client,
        *,
        prefix: str = settings.KEY_PREFIX,
        timeout: float = settings.STORE_TIMEOUT_SECONDS,
    ):
        self._client = client
        self._timeout = timeout
        self.keys = Keys(prefix)

    async def _call(self, op: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        try:
            return await asyncio.wait_for(fn(), timeout=self._timeout)
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            logger.warning(f"Store operation '{op}' failed: {type(e).__name__}")
            raise StoreUnavailable(op) from e

    # ---------- key/value ----------

    async def get(self, key: str) -> Optional[str]:
        return await self._call("get", lambda: self._client.get(key))

    async def mget(self, keys: List[str]) -> List[Optional[str]]:
        if not keys:
            return []
        return await self._call("mget", lambda: self._client.mget(keys))

    async def set(
        self,
        key: str,
        value: str,
        *,
        ttl: Optional[int] = None,
        nx: bool = False,
    ) -> bool:
        """
        Returns False only when ``nx`` is set and the key already existed.
        """
        result = await self._call(
            "set", lambda: self._client.set(key, value, ex=ttl, nx=nx)
        )
        return bool(result)

    async def exists(self, key: str) -> bool:
        return bool(await self._call("exists", lambda: self._client.exists(key)))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._call("delete", lambda: self._client.delete(*keys)))

    async def ttl(self, key: str) -> int:
        return int(await self._call("ttl", lambda: self._client.ttl(key)))

    # ---------- counters ----------

    async def incr(self, key: str, ttl: Optional[int] = None) -> int:
        """
        Atomic increment. The expiry is attached when the counter is
        created, so the window starts at the first hit.
        """

        async def _incr() -> int:
            count = await self._client.incr(key)
            if count == 1 and ttl:
                await self._client.expire(key, ttl)
            return count

        return int(await self._call("incr", _incr))

    # ---------- capped lists ----------

    async def push_capped(self, key: str, value: str, max_len: int) -> None:
        async def _push() -> None:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.lpush(key, value)
                pipe.ltrim(key, 0, max_len - 1)
                await pipe.execute()

        await self._call("push_capped", _push)

    async def lrange(self, key: str, start: int, stop: int) -> List[str]:
        return await self._call("lrange", lambda: self._client.lrange(key, start, stop))

    async def llen(self, key: str) -> int:
        return int(await self._call("llen", lambda: self._client.llen(key)))

    # ---------- expiring index (sorted set scored by expiry) ----------

    async def index_add(self, key: str, member: str, expires_at_ms: int) -> None:
        await self._call("index_add", lambda: self._client.zadd(key, {member: expires_at_ms}))

    async def index_remove(self, key: str, member: str) -> None:
        await self._call("index_remove", lambda: self._client.zrem(key, member))

    async def index_live(self, key: str, now: int, limit: int) -> List[str]:
        """Prune expired members, then return up to ``limit`` live ones."""

        async def _live() -> List[str]:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.zremrangebyscore(key, "-inf", now)
                pipe.zrevrangebyscore(key, "+inf", f"({now}", start=0, num=limit)
                _, members = await pipe.execute()
            return members

        return await self._call("index_live", _live)

    async def index_count(self, key: str, now: int) -> int:
        async def _count() -> int:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.zremrangebyscore(key, "-inf", now)
                pipe.zcount(key, f"({now}", "+inf")
                _, count = await pipe.execute()
            return count

        return int(await self._call("index_count", _count))

    # ---------- liveness ----------

    async def ping(self) -> bool:
        return bool(await self._call("ping", lambda: self._client.ping()))
