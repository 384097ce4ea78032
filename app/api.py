from __future__ import annotations

import logging
import os
from http import HTTPStatus
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from dashproxy.clients.birdnet import DETECTIONS_PATH, RECENT_PATH, UpstreamResponse
from dashproxy.config import load_config
from dashproxy.detections import parse_non_negative_int
from dashproxy.fallback import FallbackReason, attempt_live
from dashproxy.family import SummaryNotReady
from dashproxy.freshness import CacheState
from dashproxy.logging_utils import setup_debug_logging
from dashproxy.schemas import FamilyMatchesResponse, PendingResponse
from dashproxy.service import CacheService
from dashproxy.summary import SummaryContractError


PROJECT_ROOT = Path(__file__).resolve().parent
_config_override = os.getenv("DASHPROXY_CONFIG")
CONFIG_PATH = Path(_config_override) if _config_override else PROJECT_ROOT / "config.yaml"

SUMMARY_PATH = "/api/v2/summary/30d"
FAMILY_MATCHES_PATH = "/api/v2/family-matches"
DEFAULT_DETECTIONS_PAGE_SIZE = 500
RETRY_AFTER_MS = 3000

app = FastAPI(title="BirdNET Dashboard Proxy", version="1.0.0")
setup_debug_logging(PROJECT_ROOT)
debug_logger = logging.getLogger("dashproxy.debug.api")
logger = logging.getLogger("dashproxy.api")


SECURITY_HEADERS = {
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'; base-uri 'none'",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
}


_ERROR_CODE_MAP = {
    status.HTTP_400_BAD_REQUEST: "bad_request",
    status.HTTP_404_NOT_FOUND: "not_found",
    status.HTTP_405_METHOD_NOT_ALLOWED: "method_not_allowed",
    status.HTTP_422_UNPROCESSABLE_ENTITY: "validation_error",
    status.HTTP_500_INTERNAL_SERVER_ERROR: "server_error",
    status.HTTP_503_SERVICE_UNAVAILABLE: "service_unavailable",
}


def _status_to_error_code(status_code: int) -> str:
    return _ERROR_CODE_MAP.get(status_code, f"http_{status_code}")


def _build_error_payload(status_code: int, detail: Any) -> Dict[str, Any]:
    code = _status_to_error_code(status_code)
    message: Optional[str] = None
    extra: Optional[Any] = None

    if isinstance(detail, dict):
        code = str(detail.get("code") or code)
        message = detail.get("message") or detail.get("detail")
        remaining = {k: v for k, v in detail.items() if k not in {"code", "message", "detail"}}
        if remaining:
            extra = remaining
    elif isinstance(detail, list):
        extra = detail
    elif detail:
        message = str(detail)

    if message is None:
        try:
            message = HTTPStatus(status_code).phrase
        except ValueError:
            message = "Request failed"

    payload: Dict[str, Any] = {
        "error": {
            "code": code,
            "message": message,
        }
    }
    if extra is not None:
        payload["error"]["details"] = extra
    return payload


@app.exception_handler(StarletteHTTPException)
async def _http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    payload = _build_error_payload(exc.status_code, exc.detail)
    return JSONResponse(status_code=exc.status_code, content=payload, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def _validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    detail = {
        "code": "validation_error",
        "message": "Request validation failed",
        "fields": exc.errors(),
    }
    payload = _build_error_payload(status.HTTP_422_UNPROCESSABLE_ENTITY, detail)
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=payload)


@app.middleware("http")
async def _apply_response_headers(request: Request, call_next):
    try:
        response = await call_next(request)
    except Exception:  # noqa: BLE001
        logger.exception("Unhandled error for %s %s", request.method, request.url.path)
        response = JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=_build_error_payload(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error"),
        )
    for name, value in SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    if response.headers.get("content-type", "").startswith("application/json"):
        response.headers["Cache-Control"] = "no-store"
    return response


@app.on_event("startup")
async def startup_event() -> None:
    config = load_config(CONFIG_PATH)
    service = CacheService(config)
    await service.start(bootstrap=config.server.bootstrap)
    app.state.cache_service = service


@app.on_event("shutdown")
async def shutdown_event() -> None:
    service: Optional[CacheService] = getattr(app.state, "cache_service", None)
    if service is not None:
        await service.stop()


def _ensure_service(request: Request) -> CacheService:
    service: Optional[CacheService] = getattr(request.app.state, "cache_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Application not initialized",
        )
    return service


def _strip_body_for_head(request: Request, response: Response) -> Response:
    # HEAD keeps the Content-Length the GET body would have had
    if request.method == "HEAD":
        response.body = b""
    return response


def _json_response(
    request: Request,
    content: Any,
    *,
    status_code: int = status.HTTP_200_OK,
    headers: Optional[Dict[str, str]] = None,
) -> Response:
    response = JSONResponse(content=content, status_code=status_code, headers=headers)
    return _strip_body_for_head(request, response)


def _pending_response(request: Request, message: str, headers: Dict[str, str]) -> Response:
    body = PendingResponse(message=message, retry_after_ms=RETRY_AFTER_MS)
    return _json_response(
        request,
        body.model_dump(),
        status_code=status.HTTP_202_ACCEPTED,
        headers={**headers, "Retry-After": str(RETRY_AFTER_MS // 1000)},
    )


def _live_response(request: Request, upstream: UpstreamResponse) -> Response:
    response = Response(
        content=upstream.content,
        status_code=upstream.status_code,
        media_type=upstream.content_type or "application/json",
        headers={"x-detections-cache": "live"},
    )
    return _strip_body_for_head(request, response)


def _fallback_response(
    request: Request,
    reason: Optional[FallbackReason],
    records: Optional[List[Dict[str, Any]]],
) -> Response:
    reason_value = reason.value if reason is not None else "unknown"
    if records is None:
        logger.warning(
            "Upstream unavailable and no snapshot to serve",
            extra={"path": request.url.path, "reason": reason_value},
        )
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "code": "upstream_unavailable",
                "message": "Upstream unavailable and no cached detections",
                "reason": reason_value,
            },
        )
    logger.info(
        "Serving detections from snapshot",
        extra={"path": request.url.path, "reason": reason_value, "records": len(records)},
    )
    return _json_response(
        request,
        records,
        headers={"x-detections-cache": "stale", "x-detections-fallback": reason_value},
    )


def _positive_int(value: Optional[str], default: int) -> int:
    parsed = parse_non_negative_int(value, default)
    return parsed if parsed > 0 else default


@app.api_route(
    RECENT_PATH,
    methods=["GET", "HEAD"],
    summary="Most recent detections, live or from the recent snapshot.",
)
async def get_recent_detections(
    request: Request,
    limit: Optional[str] = Query(None, description="Maximum number of detections to return."),
) -> Response:
    service = _ensure_service(request)
    limit_value = _positive_int(limit, service.config.recent.default_limit)
    params = dict(request.query_params)
    params["limit"] = str(limit_value)

    attempt = await attempt_live(service.client, RECENT_PATH, params)
    if attempt.response is not None:
        return _live_response(request, attempt.response)

    records = await service.recent.fallback_recent(limit_value)
    return _fallback_response(request, attempt.reason, records)


@app.api_route(
    DETECTIONS_PATH,
    methods=["GET", "HEAD"],
    summary="Detection search/range query, live or filtered from the recent snapshot.",
)
async def get_detections(request: Request) -> Response:
    service = _ensure_service(request)
    params = dict(request.query_params)

    attempt = await attempt_live(service.client, DETECTIONS_PATH, params)
    if attempt.response is not None:
        return _live_response(request, attempt.response)

    records = await service.recent.fallback_page(
        params,
        default_page_size=DEFAULT_DETECTIONS_PAGE_SIZE,
    )
    return _fallback_response(request, attempt.reason, records)


@app.api_route(
    SUMMARY_PATH,
    methods=["GET", "HEAD"],
    summary="Rolling 30-day detection summary.",
)
async def get_summary(request: Request) -> Response:
    service = _ensure_service(request)
    engine = service.summary
    lookup = await engine.lookup()

    if lookup.state is CacheState.WARMING:
        last_error = engine.last_error
        engine.refresh_in_background()
        if isinstance(last_error, SummaryContractError):
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail={"code": "upstream_contract_violation", "message": str(last_error)},
                headers={"x-summary-cache": CacheState.WARMING.value},
            )
        debug_logger.debug("summary.warming", extra={"in_flight": engine.in_flight})
        return _pending_response(
            request,
            "summary_warming",
            {"x-summary-cache": CacheState.WARMING.value},
        )

    if lookup.state is CacheState.STALE:
        engine.refresh_in_background()
    debug_logger.debug(
        "summary.served",
        extra={"state": lookup.state.value, "generated_at_ms": lookup.generated_at_ms},
    )
    return _json_response(
        request,
        lookup.payload,
        headers={"x-summary-cache": lookup.state.value},
    )


@app.api_route(
    FAMILY_MATCHES_PATH,
    methods=["GET", "HEAD"],
    response_model=FamilyMatchesResponse,
    summary="Species from the summary archive sharing a taxonomic family.",
)
async def get_family_matches(
    request: Request,
    family_common: Optional[str] = Query(None, alias="familyCommon"),
    scientific_name: Optional[str] = Query(None, alias="scientificName"),
    limit: Optional[str] = Query(None),
) -> Response:
    service = _ensure_service(request)
    if not family_common or not family_common.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing familyCommon parameter",
        )

    resolver = service.family
    limit_value = resolver.clamp_limit(parse_non_negative_int(limit, service.config.family.default_limit))
    try:
        result = await resolver.get_matches(
            family_common.strip(),
            scientific_name=scientific_name,
            limit=limit_value,
        )
    except SummaryNotReady:
        return _pending_response(
            request,
            "family_matches_warming",
            {"x-family-cache": CacheState.WARMING.value},
        )

    body = FamilyMatchesResponse(
        family_common=result.family_common,
        matches=result.matches,
        complete=result.complete,
    )
    debug_logger.debug(
        "family_matches.served",
        extra={
            "family_common": result.family_common,
            "state": result.state.value,
            "matches": len(result.matches),
            "complete": result.complete,
        },
    )
    return _json_response(
        request,
        body.model_dump(),
        headers={"x-family-cache": result.state.value},
    )


@app.api_route("/healthz", methods=["GET", "HEAD"], summary="Process liveness probe.")
async def healthz(request: Request) -> Response:
    return _json_response(request, {"status": "ok"})


@app.api_route("/readyz", methods=["GET", "HEAD"], summary="Ready once summary and recent caches hold data.")
async def readyz(request: Request) -> Response:
    service = _ensure_service(request)
    ready, body = await service.readiness()
    return _json_response(
        request,
        body.model_dump(),
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
    )


@app.api_route("/cachez", methods=["GET", "HEAD"], summary="Cache diagnostics.")
async def cachez(request: Request) -> Response:
    service = _ensure_service(request)
    health = await service.cache_health()
    return _json_response(
        request,
        health.model_dump(),
        status_code=status.HTTP_200_OK if health.status == "healthy" else status.HTTP_503_SERVICE_UNAVAILABLE,
    )
