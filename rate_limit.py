from typing import NamedTuple, Optional

from config import settings
from store import AtomicStore


class RateLimitResult(NamedTuple):
    allowed: bool
    remaining: int
    count: int
    retry_after: int


# =========================
# Helpers
# =========================

def _window_bucket(now_ms: int, window_seconds: int) -> int:
    return now_ms // (window_seconds * 1000)


def _seconds_left(now_ms: int, window_seconds: int) -> int:
    window_ms = window_seconds * 1000
    return max(1, -(-(window_ms - now_ms % window_ms) // 1000))


def rate_limit_key(
    store: AtomicStore,
    ip: str,
    now_ms: int,
    window_seconds: int,
    scope: Optional[str] = None,
) -> str:
    return store.keys.rate(ip, _window_bucket(now_ms, window_seconds), scope)


# =========================
# Fixed-window limiter
# =========================

async def check_rate_limit(
    store: AtomicStore,
    ip: str,
    *,
    now_ms: int,
    limit: int = settings.RATE_LIMIT_REQUESTS,
    window_seconds: int = settings.RATE_LIMIT_WINDOW_SECONDS,
    scope: Optional[str] = None,
) -> RateLimitResult:
    """
    Count this request against the current window for ``ip``.

    The counter is a single atomic INCR, so concurrent workers never
    lose updates. A rejection here is not a ban. ``scope`` keeps
    separate budgets apart (gateway traffic vs. the challenge zone).
    """
    key = rate_limit_key(store, ip, now_ms, window_seconds, scope)
    current_count = await store.incr(key, ttl=window_seconds)

    # ---- HARD LIMIT ----
    if current_count > limit:
        return RateLimitResult(False, 0, current_count, _seconds_left(now_ms, window_seconds))

    return RateLimitResult(True, limit - current_count, current_count, 0)


async def clear_rate_limit(
    store: AtomicStore,
    ip: str,
    *,
    now_ms: int,
    window_seconds: int = settings.RATE_LIMIT_WINDOW_SECONDS,
) -> None:
    await store.delete(rate_limit_key(store, ip, now_ms, window_seconds))
