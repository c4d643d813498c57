"""
Ban lifecycle.

The TTL'd ``ban:<ip>`` key is the only thing that says an IP is
banned. Beside it we keep:

- ``ban:index``: a sorted set of ip -> expiresAt used to count and
  enumerate live bans without scanning history;
- ``ban:count:<ip>``: how many times the IP has been banned recently,
  which stretches the next ban;
- the ``bans`` audit stream, which is history and may outlive the key.
"""

import logging
from typing import List

from audit import AuditLog, AuditStream
from config import settings
from immunity import ImmunitySource, grant_immunity
from models import AdminAction, BanReason, BanRecord, parse_ban
from rate_limit import clear_rate_limit
from store import AtomicStore

logger = logging.getLogger("immune.bans")


def ban_ttl_seconds(previous_bans: int) -> int:
    return min(
        settings.BAN_BASE_TTL_SECONDS * (2 ** previous_bans),
        settings.BAN_MAX_TTL_SECONDS,
    )


async def is_banned(store: AtomicStore, ip: str) -> bool:
    return await store.exists(store.keys.ban(ip))


async def ban_ip(
    store: AtomicStore,
    audit: AuditLog,
    ip: str,
    *,
    reason: BanReason,
    now_ms: int,
    node_type: str = "byzantine",
) -> BanRecord:
    keys = store.keys

    previous = await store.incr(keys.ban_count(ip), ttl=settings.BAN_HISTORY_TTL_SECONDS) - 1
    ttl = ban_ttl_seconds(previous)

    record = BanRecord(
        ip=ip,
        reason=reason,
        timestamp=now_ms,
        expires_at=now_ms + ttl * 1000,
        node_type=node_type,
        previous_ban_count=previous,
    )

    await store.set(keys.ban(ip), record.dump(), ttl=ttl)
    await store.index_add(keys.ban_index(), ip, record.expires_at)
    # A ban outranks any immunity granted earlier.
    await store.delete(keys.verified(ip))
    await audit.record(AuditStream.BANS, record)

    logger.warning(f"Banned {ip} for {ttl}s ({reason.value}, previous={previous})")
    return record


async def active_bans(store: AtomicStore, *, now_ms: int, limit: int = 100) -> List[BanRecord]:
    """
    Live bans, newest expiry first. Every candidate from the index is
    confirmed against its TTL'd key; stale index members are dropped.
    """
    ips = await store.index_live(store.keys.ban_index(), now_ms, limit)
    raw_records = await store.mget([store.keys.ban(ip) for ip in ips])

    bans = []
    for raw in raw_records:
        record = parse_ban(raw)
        if record is not None:
            bans.append(record)
    return bans


async def active_ban_count(store: AtomicStore, *, now_ms: int) -> int:
    return await store.index_count(store.keys.ban_index(), now_ms)


async def unban_ip(
    store: AtomicStore,
    audit: AuditLog,
    ip: str,
    *,
    actor: str,
    now_ms: int,
) -> bool:
    """
    Lift a ban. Counters are reset and a short immunity is granted so
    stale signals cannot re-ban the IP on its next request.

    Returns False when there was no live ban to lift.
    """
    keys = store.keys

    deleted = await store.delete(keys.ban(ip))
    await store.index_remove(keys.ban_index(), ip)
    if not deleted:
        return False

    await store.delete(keys.pow_failures(ip))
    await clear_rate_limit(store, ip, now_ms=now_ms)
    await grant_immunity(store, ip, settings.UNBAN_IMMUNITY_SECONDS, ImmunitySource.UNBAN)

    await audit.append(
        AuditStream.ADMIN,
        AdminAction(timestamp=now_ms, action="unban", actor=actor, ip=ip),
    )
    logger.info(f"Unbanned {ip} by {actor}")
    return True
