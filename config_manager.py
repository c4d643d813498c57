import logging

from audit import AuditLog, AuditStream
from clock import Clock, now_ms
from models import AdminAction, SystemConfig
from store import AtomicStore

logger = logging.getLogger("immune.config")

PARANOIA_FLAG = "paranoia_mode"


# =========================
# Runtime system config
# =========================

class ConfigManager:
    """
    Global runtime flags, stored as plain keys.

    The admission path calls ``load()`` once per request and passes the
    result down explicitly; nothing is cached in-process.
    """

    def __init__(self, store: AtomicStore, audit: AuditLog, *, clock: Clock = now_ms):
        self.store = store
        self.audit = audit
        self.clock = clock

    async def load(self) -> SystemConfig:
        raw = await self.store.get(self.store.keys.config(PARANOIA_FLAG))
        return SystemConfig(paranoia_mode=raw == "true")

    async def set_paranoia_mode(self, enabled: bool, *, actor: str) -> SystemConfig:
        await self.store.set(
            self.store.keys.config(PARANOIA_FLAG),
            "true" if enabled else "false",
        )
        await self.audit.append(
            AuditStream.ADMIN,
            AdminAction(
                timestamp=self.clock(),
                action="config_change",
                actor=actor,
                parameter="paranoiaMode",
                value=enabled,
            ),
        )
        logger.info(f"Paranoia mode {'ACTIVATED' if enabled else 'DEACTIVATED'} by {actor}")
        return SystemConfig(paranoia_mode=enabled)
