"""
Admin plane: /admin/immune/*

Every route requires the shared admin secret in ``X-API-Key``.
Scoring factors and trust scores are only ever exposed here.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse

from audit import AuditLog, AuditStream
from bans import active_ban_count, active_bans, unban_ip
from clock import Clock
from config_manager import ConfigManager
from dependencies import get_audit, get_clock, get_config_manager, get_store
from models import BypassRecord, ThreatAlert
from schemas import (
    BanView,
    BypassView,
    ConfigPayload,
    ConfigUpdateResponse,
    StatsResponse,
    ThreatView,
    UnbanRequest,
    UnbanResponse,
)
from security import require_admin
from store import AtomicStore, StoreUnavailable

logger = logging.getLogger("immune.admin")

router = APIRouter(prefix="/admin/immune", tags=["admin"])

BYPASS_PAGE = 50
DEFAULT_THREAT_LIMIT = 50
MAX_THREAT_LIMIT = 100


def _unavailable() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Immune registry unavailable",
    )


# ======================================================
# Bans
# ======================================================

@router.get("/bans", response_model=List[BanView])
async def list_bans(
    _: str = Depends(require_admin),
    store: AtomicStore = Depends(get_store),
    clock: Clock = Depends(get_clock),
):
    try:
        records = await active_bans(store, now_ms=clock())
    except StoreUnavailable:
        raise _unavailable()

    return [
        BanView(
            ip=r.ip,
            reason=r.reason.value,
            timestamp=r.timestamp,
            expires=r.expires_at,
            node_type=r.node_type,
            previous_bans=r.previous_ban_count,
        )
        for r in records
    ]


@router.post("/unban", response_model=UnbanResponse)
async def unban(
    payload: UnbanRequest,
    actor: str = Depends(require_admin),
    store: AtomicStore = Depends(get_store),
    audit: AuditLog = Depends(get_audit),
    clock: Clock = Depends(get_clock),
):
    try:
        lifted = await unban_ip(store, audit, payload.ip, actor=actor, now_ms=clock())
    except StoreUnavailable:
        raise _unavailable()

    if not lifted:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content=UnbanResponse(
                success=False,
                message="Node was not in active banlist or already restored.",
            ).model_dump(by_alias=True),
        )

    return UnbanResponse(
        success=True,
        message=f"Node {payload.ip} has been restored.",
    )


# ======================================================
# Audit feeds
# ======================================================

@router.get("/bypasses", response_model=List[BypassView])
async def list_bypasses(
    _: str = Depends(require_admin),
    audit: AuditLog = Depends(get_audit),
):
    try:
        records: List[BypassRecord] = await audit.recent(
            AuditStream.BYPASSES, BypassRecord, BYPASS_PAGE
        )
    except StoreUnavailable:
        raise _unavailable()

    return [
        BypassView(
            timestamp=r.timestamp,
            ip=r.ip,
            reason=r.reason.value,
            trust_score=r.trust_score,
            approved=r.approved,
        )
        for r in records
    ]


@router.get("/threats", response_model=List[ThreatView])
async def list_threats(
    limit: int = Query(default=DEFAULT_THREAT_LIMIT),
    _: str = Depends(require_admin),
    audit: AuditLog = Depends(get_audit),
):
    limit = max(1, min(limit, MAX_THREAT_LIMIT))
    try:
        alerts: List[ThreatAlert] = await audit.recent(AuditStream.THREATS, ThreatAlert, limit)
    except StoreUnavailable:
        raise _unavailable()

    return [
        ThreatView(
            id=f"threat-{index}-{a.timestamp}",
            timestamp=a.timestamp,
            ip=a.ip,
            path=a.path,
            score=a.threat_score,
            severity=a.severity.value,
            signatures=a.factors,
            action=a.action.value,
        )
        for index, a in enumerate(alerts)
    ]


# ======================================================
# Runtime config
# ======================================================

@router.get("/config")
async def read_config(
    _: str = Depends(require_admin),
    config_manager: ConfigManager = Depends(get_config_manager),
):
    try:
        system_config = await config_manager.load()
    except StoreUnavailable:
        raise _unavailable()
    return {"paranoiaMode": system_config.paranoia_mode}


@router.post("/config", response_model=ConfigUpdateResponse)
async def update_config(
    payload: ConfigPayload,
    actor: str = Depends(require_admin),
    config_manager: ConfigManager = Depends(get_config_manager),
):
    try:
        system_config = await config_manager.set_paranoia_mode(payload.paranoia_mode, actor=actor)
    except StoreUnavailable:
        raise _unavailable()

    state = "ACTIVATED" if system_config.paranoia_mode else "DEACTIVATED"
    return ConfigUpdateResponse(
        success=True,
        message=f"Global security state updated: Paranoia Mode {state}",
        paranoia_mode=system_config.paranoia_mode,
    )


# ======================================================
# Dashboard
# ======================================================

@router.get("/stats", response_model=StatsResponse)
async def stats(
    _: str = Depends(require_admin),
    store: AtomicStore = Depends(get_store),
    audit: AuditLog = Depends(get_audit),
    clock: Clock = Depends(get_clock),
):
    try:
        active = await active_ban_count(store, now_ms=clock())
        return await audit.stats(active_bans=active)
    except StoreUnavailable:
        raise _unavailable()
