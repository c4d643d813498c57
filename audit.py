"""
Append-only audit trail and dashboard aggregation.

Each stream is a capped Redis list, newest entry first. Reads never
load a whole list: categorisation works on one bounded page and totals
come from the list length.
"""

import logging
from enum import Enum
from typing import Any, Dict, List, Optional

from config import settings
from models import (
    BypassRecord,
    PowAttempt,
    Record,
    Severity,
    ThreatAlert,
    parse_entry,
)
from store import AtomicStore, StoreUnavailable

logger = logging.getLogger("immune.audit")


class AuditStream(str, Enum):
    BANS = "bans"
    BYPASSES = "bypasses"
    THREATS = "threats"
    POW = "pow"
    ADMIN = "admin"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


class AuditLog:
    def __init__(
        self,
        store: AtomicStore,
        *,
        max_entries: int = settings.AUDIT_MAX_ENTRIES,
        page_size: int = settings.AUDIT_PAGE_SIZE,
    ):
        self.store = store
        self.max_entries = max_entries
        self.page_size = page_size

    # ======================================================
    # Write side
    # ======================================================

    async def append(self, stream: AuditStream, record: Record) -> None:
        """
        Raises:
            StoreUnavailable
        """
        await self.store.push_capped(
            self.store.keys.audit(stream.value),
            record.dump(),
            self.max_entries,
        )

    async def record(self, stream: AuditStream, record: Record) -> bool:
        """
        Best-effort append for paths whose response must not depend on
        the audit write succeeding.
        """
        try:
            await self.append(stream, record)
            return True
        except StoreUnavailable:
            logger.warning(f"Audit entry dropped ({stream.value})")
            return False

    # ======================================================
    # Read side
    # ======================================================

    async def recent(
        self,
        stream: AuditStream,
        expected: type,
        limit: Optional[int] = None,
    ) -> List[Any]:
        limit = min(limit or self.page_size, self.page_size)
        raw_entries = await self.store.lrange(
            self.store.keys.audit(stream.value), 0, limit - 1
        )

        entries = []
        for raw in raw_entries:
            entry = parse_entry(raw, expected)
            if entry is not None:
                entries.append(entry)
        return entries

    async def count(self, stream: AuditStream) -> int:
        return await self.store.llen(self.store.keys.audit(stream.value))

    # ======================================================
    # Dashboard
    # ======================================================

    async def stats(self, active_bans: int) -> Dict[str, Any]:
        """
        Aggregate counters for the monitoring dashboard.

        ``active_bans`` comes from the live ban index, not from the
        length of the ban history.
        """
        threats: List[ThreatAlert] = await self.recent(AuditStream.THREATS, ThreatAlert)
        bypasses: List[BypassRecord] = await self.recent(AuditStream.BYPASSES, BypassRecord)
        attempts: List[PowAttempt] = await self.recent(AuditStream.POW, PowAttempt)

        by_category: Dict[str, int] = {}
        for alert in threats:
            by_category[alert.severity.value] = by_category.get(alert.severity.value, 0) + 1
        critical_alerts = by_category.get(Severity.CRITICAL.value, 0)

        approved = sum(1 for b in bypasses if b.approved)

        solved = [a for a in attempts if a.valid]
        solve_times = [a.solve_time_ms for a in solved if a.solve_time_ms is not None]

        return {
            "threats": {
                "total": await self.count(AuditStream.THREATS),
                "sampled": len(threats),
                "byCategory": by_category,
            },
            "bans": {
                "active": active_bans,
                "total": await self.count(AuditStream.BANS),
            },
            "bypasses": {
                "total": await self.count(AuditStream.BYPASSES),
                "approved": approved,
                "rejected": len(bypasses) - approved,
                "approvalRate": _percent(approved, len(bypasses)),
            },
            "pow": {
                "totalAttempts": await self.count(AuditStream.POW),
                "successRate": _percent(len(solved), len(attempts)),
                "avgSolveTime": sum(solve_times) / len(solve_times) if solve_times else 0,
            },
            "health": {
                "status": health_status(active_bans, critical_alerts).value,
                "lastIncident": threats[0].timestamp if threats else None,
            },
        }


def _percent(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


def health_status(active_bans: int, critical_alerts: int) -> HealthStatus:
    if (
        active_bans > settings.HEALTH_CRITICAL_ACTIVE_BANS
        or critical_alerts >= settings.HEALTH_CRITICAL_CRITICAL_ALERTS
    ):
        return HealthStatus.CRITICAL

    if (
        active_bans > settings.HEALTH_WARNING_ACTIVE_BANS
        or critical_alerts >= settings.HEALTH_WARNING_CRITICAL_ALERTS
    ):
        return HealthStatus.WARNING

    return HealthStatus.HEALTHY
