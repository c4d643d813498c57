from enum import Enum

from store import AtomicStore


class ImmunitySource(str, Enum):
    POW = "pow"
    BYPASS = "bypass"
    UNBAN = "unban"


async def grant_immunity(
    store: AtomicStore,
    ip: str,
    ttl_seconds: int,
    source: ImmunitySource,
) -> None:
    """
    Exempt ``ip`` from threat classification until the marker expires.
    """
    await store.set(store.keys.verified(ip), source.value, ttl=ttl_seconds)


async def is_immune(store: AtomicStore, ip: str) -> bool:
    return await store.exists(store.keys.verified(ip))
