import logging
import time
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlencode

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel

from admin import router as admin_router
from admission import AdmissionController, AdmissionResult, Verdict, is_exempt
from bans import is_banned
from bypass import BypassEvaluator, Interaction
from challenge import ChallengeEngine, VerifyFailure
from classifier import InboundRequest
from clock import Clock
from config import settings
from dependencies import (
    get_admission_controller,
    get_bypass_evaluator,
    get_challenge_engine,
    get_clock,
    get_store,
)
from immunity import ImmunitySource, grant_immunity
from models import BypassReason
from proxy import forward_request
from rate_limit import check_rate_limit
from redis_client import redis_client
from schemas import (
    BypassQuotaResponse,
    BypassReasonInfo,
    BypassRequest,
    BypassResponse,
    ChallengeResponse,
    ChallengeStatusResponse,
    HealthResponse,
    VerifyRequest,
    VerifyResponse,
)
from store import AtomicStore, StoreUnavailable


# ======================================================
# App Setup
# ======================================================

app = FastAPI(title="Immune Gateway")
app.include_router(admin_router)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("immune.gateway")

BODY_METHODS = {"POST", "PUT", "PATCH"}

BYPASS_REASONS = [
    BypassReasonInfo(id=BypassReason.HUMAN_DECLARED, label="I'm human", description="General human verification"),
    BypassReasonInfo(id=BypassReason.ACCESSIBILITY, label="Accessibility needs", description="Screen reader, motor disability, etc."),
    BypassReasonInfo(id=BypassReason.MOBILE_LIMITATION, label="Mobile device limitation", description="Low battery, old phone, etc."),
    BypassReasonInfo(id=BypassReason.URGENCY, label="Urgent access needed", description="Time-sensitive request"),
]


# ======================================================
# Request Context (Facts Only)
# ======================================================

class RequestContext(BaseModel):
    timestamp: str

    method: str
    path: str
    endpoint: str

    ip: str
    user_agent: Optional[str]

    threat_score: float
    verdict: str

    status_code: int
    latency_ms: int


def _log_request(
    request: Request,
    path: str,
    ip: str,
    result: AdmissionResult,
    status_code: int,
    start_time: float,
) -> None:
    ctx = RequestContext(
        timestamp=datetime.now(timezone.utc).isoformat(),
        method=request.method,
        path=path,
        endpoint=normalize_path(path),
        ip=ip,
        user_agent=request.headers.get("user-agent"),
        threat_score=result.threat_score,
        verdict=result.verdict.value,
        status_code=status_code,
        latency_ms=int((time.monotonic() - start_time) * 1000),
    )
    logger.info(ctx.model_dump_json())


# ======================================================
# Lifecycle
# ======================================================

@app.on_event("startup")
async def startup():
    try:
        await get_store().ping()
        logger.info("Store reachable")
    except StoreUnavailable:
        logger.warning("Store unreachable at startup; admission will fail closed until it recovers")


@app.on_event("shutdown")
async def shutdown():
    await redis_client.aclose()


# ======================================================
# Errors
# ======================================================

@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": "Malformed request"},
    )


# ======================================================
# Health
# ======================================================

@app.get("/health", response_model=HealthResponse)
async def health_check(store: AtomicStore = Depends(get_store)):
    try:
        await store.ping()
        return HealthResponse(status="ok")
    except StoreUnavailable:
        return HealthResponse(status="degraded")


# ======================================================
# Challenge Zone (exempt from admission)
# ======================================================

async def enforce_challenge_rate_limit(
    request: Request,
    store: AtomicStore = Depends(get_store),
    clock: Clock = Depends(get_clock),
) -> None:
    """
    Per-IP fixed window over the challenge zone, counted apart from
    gateway traffic.
    """
    try:
        result = await check_rate_limit(
            store,
            client_ip(request),
            now_ms=clock(),
            limit=settings.CHALLENGE_RATE_LIMIT_REQUESTS,
            window_seconds=settings.CHALLENGE_RATE_LIMIT_WINDOW_SECONDS,
            scope="challenge",
        )
    except StoreUnavailable:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service unavailable")

    if not result.allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many requests",
            headers={"Retry-After": str(result.retry_after)},
        )


async def refuse_banned(request: Request, store: AtomicStore = Depends(get_store)) -> None:
    # Banned IPs never get a challenge, so they can never earn immunity.
    try:
        banned = await is_banned(store, client_ip(request))
    except StoreUnavailable:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service unavailable")

    if banned:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")


CHALLENGE_GUARDS = [Depends(enforce_challenge_rate_limit), Depends(refuse_banned)]


@app.get("/challenge/pow", response_model=ChallengeResponse, dependencies=CHALLENGE_GUARDS)
async def challenge_page(
    request: Request,
    challenge_id: Optional[str] = Query(default=None, alias="challengeId"),
    difficulty: int = Query(default=settings.CHALLENGE_MIN_DIFFICULTY),
    return_to: str = Query(default="/", alias="returnTo"),
    engine: ChallengeEngine = Depends(get_challenge_engine),
):
    """
    Challenge data for the PoW page. Returns the referenced challenge,
    or issues a fresh one when none is given.
    """
    try:
        if challenge_id:
            record = await engine.get(challenge_id)
            if record is None:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Challenge not found or expired")
        else:
            difficulty = max(settings.CHALLENGE_MIN_DIFFICULTY, min(difficulty, engine.max_difficulty))
            record = await engine.issue(difficulty, safe_return_to(return_to), ip=client_ip(request))
    except StoreUnavailable:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service unavailable")

    expires_in = max(0, (record.issued_at + engine.ttl_seconds * 1000 - engine.clock()) // 1000)
    return ChallengeResponse(
        challenge_id=record.challenge_id,
        difficulty=record.difficulty,
        return_to=record.return_to,
        expires_in=expires_in,
    )


@app.get("/challenge/status", response_model=ChallengeStatusResponse)
async def challenge_status(
    challenge_id: str = Query(alias="challengeId", min_length=1),
    engine: ChallengeEngine = Depends(get_challenge_engine),
):
    try:
        result = await engine.status(challenge_id)
    except StoreUnavailable:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service unavailable")

    body = ChallengeStatusResponse(**result)
    if not body.exists:
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content=body.model_dump(by_alias=True))
    return body


@app.post("/challenge/verify", response_model=VerifyResponse, dependencies=CHALLENGE_GUARDS)
async def verify_challenge(
    payload: VerifyRequest,
    request: Request,
    response: Response,
    engine: ChallengeEngine = Depends(get_challenge_engine),
    store: AtomicStore = Depends(get_store),
):
    ip = client_ip(request)
    result = await engine.verify(
        payload.challenge_id,
        payload.nonce,
        payload.hash,
        payload.difficulty,
        ip=ip,
    )

    if result.failure is VerifyFailure.UNAVAILABLE:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result.message)

    if result.valid:
        try:
            await grant_immunity(store, ip, settings.POW_IMMUNITY_SECONDS, ImmunitySource.POW)
        except StoreUnavailable:
            logger.warning(f"Verified {ip} but could not write immunity marker")

    response.headers["X-Verified"] = "true" if result.valid else "false"
    return VerifyResponse(
        valid=result.valid,
        message=result.message,
        reason=None if result.valid else result.failure.value,
    )


@app.get("/challenge/bypass", response_model=BypassQuotaResponse)
async def bypass_quota(
    request: Request,
    evaluator: BypassEvaluator = Depends(get_bypass_evaluator),
):
    try:
        quota = await evaluator.remaining_quota(client_ip(request))
    except StoreUnavailable:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service unavailable")
    return BypassQuotaResponse(**quota, reasons=BYPASS_REASONS)


@app.post(
    "/challenge/bypass",
    response_model=BypassResponse,
    response_model_exclude_none=True,
    dependencies=CHALLENGE_GUARDS,
)
async def request_bypass(
    payload: BypassRequest,
    request: Request,
    evaluator: BypassEvaluator = Depends(get_bypass_evaluator),
):
    result = await evaluator.request_bypass(
        ip=client_ip(request),
        challenge_id=payload.challenge_id,
        reason=payload.reason,
        interaction=Interaction(
            time_on_page_ms=payload.interaction_data.time_on_page,
            mouse_movements=payload.interaction_data.mouse_movements,
        ),
        user_agent=payload.user_agent or request.headers.get("user-agent"),
        timestamp=payload.timestamp,
    )
    return BypassResponse(success=result.success, warning=result.warning, message=result.message)


# ======================================================
# Gateway (ALL OTHER TRAFFIC)
# ======================================================

@app.api_route(
    "/{path:path}",
    methods=["GET", "POST", "PUT", "DELETE", "PATCH"],
)
async def gateway(
    path: str,
    request: Request,
    controller: AdmissionController = Depends(get_admission_controller),
):
    start_time = time.monotonic()
    ip = client_ip(request)
    full_path = "/" + path
    if request.url.query:
        full_path += "?" + request.url.query

    # Reserved prefixes are served here or nowhere.
    if is_exempt("/" + path):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")

    upstream_url = f"{settings.UPSTREAM_BASE_URL.rstrip('/')}/{path}"

    raw = None
    body = ""
    if request.method in BODY_METHODS:
        raw = await read_body_capped(request, settings.MAX_BODY_BYTES)
        body = raw[: settings.MAX_SCAN_BYTES].decode("utf-8", errors="replace")

    result = await controller.admit(
        InboundRequest(
            ip=ip,
            method=request.method,
            path=full_path,
            headers={k.lower(): v for k, v in request.headers.items()},
            body=body,
        )
    )

    # --------------------------------------------------
    # Rejections (no scoring detail leaves the server)
    # --------------------------------------------------

    if result.verdict in (Verdict.BAN, Verdict.BANNED):
        _log_request(request, full_path, ip, result, 403, start_time)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")

    if result.verdict == Verdict.RATE_LIMITED:
        _log_request(request, full_path, ip, result, 429, start_time)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many requests",
            headers={"Retry-After": str(result.retry_after)},
        )

    if result.verdict == Verdict.UNAVAILABLE:
        _log_request(request, full_path, ip, result, 503, start_time)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service temporarily unavailable",
        )

    if result.verdict == Verdict.CHALLENGE:
        _log_request(request, full_path, ip, result, 303, start_time)
        return RedirectResponse(challenge_url(result), status_code=status.HTTP_303_SEE_OTHER)

    # --------------------------------------------------
    # Forward to Upstream (Transparent)
    # --------------------------------------------------

    response = await forward_request(
        request=request,
        upstream_url=upstream_url,
        client_ip=ip,
        body=raw,
    )
    _log_request(request, full_path, ip, result, response.status_code, start_time)

    response.headers["X-Immune-Status"] = "active"
    return response


# ======================================================
# Utils
# ======================================================

def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def read_body_capped(request: Request, limit: int) -> bytes:
    """
    Read the request body, refusing anything over ``limit`` bytes
    before it is buffered.
    """
    declared = request.headers.get("content-length", "")
    if declared.isdigit() and int(declared) > limit:
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="Request body too large")

    chunks = []
    size = 0
    async for chunk in request.stream():
        size += len(chunk)
        if size > limit:
            raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="Request body too large")
        chunks.append(chunk)
    return b"".join(chunks)


def challenge_url(result: AdmissionResult) -> str:
    challenge = result.challenge
    query = urlencode(
        {
            "challengeId": challenge.challenge_id,
            "difficulty": challenge.difficulty,
            "returnTo": challenge.return_to,
        }
    )
    return f"{settings.CHALLENGE_PATH}?{query}"


def safe_return_to(return_to: str) -> str:
    """
    Only same-site relative paths are valid redirect targets.
    """
    if not return_to.startswith("/") or return_to.startswith("//") or "\\" in return_to:
        return "/"
    return return_to


def normalize_path(path: str) -> str:
    """
    Deterministic canonical path for analytics.
    """
    return "/" + "/".join(
        ":id" if segment.isdigit() else segment
        for segment in path.split("?", 1)[0].split("/")
        if segment
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
