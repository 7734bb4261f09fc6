"""
FastAPI surface letting an out-of-process worker pull pending linking
requests and push back per-request results. Every route except health
requires `Authorization: Bearer <QUEUE_API_SECRET>`.
"""

from __future__ import annotations

import json
import logging
import secrets
import time
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from core.models import (
    ErrorResponse,
    HealthResponse,
    LegacyPendingResponse,
    LegacyStatsResponse,
    LinkingRequest,
    PendingResponse,
    ResultPayload,
    ResultResponse,
    StatsResponse,
)
from core.queue import RequestQueue
from core.retry import Action, apply_outcome
from pipeline.collaborators import Enricher, HttpLinkClient, LoggingNotifier, Notifier, StoredImageEnricher

log = logging.getLogger(__name__)


def _error(status_code: int, message: str, headers: Optional[dict] = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorResponse(error=message).model_dump(), headers=headers)


def _parse_result(raw: bytes) -> ResultPayload:
    try:
        body = json.loads(raw or b"")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON in request body") from exc
    if not isinstance(body, dict) or "requestId" not in body or "success" not in body:
        raise HTTPException(status_code=400, detail="Missing required fields: requestId and success")
    try:
        return ResultPayload.model_validate(body)
    except ValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
        raise HTTPException(status_code=400, detail=f"Invalid field types: {fields}") from exc


def create_app(
    queue: RequestQueue,
    api_secret: str,
    max_retries: int = 3,
    notifier: Optional[Notifier] = None,
    link_client: Optional[HttpLinkClient] = None,
    enricher: Optional[Enricher] = None,
) -> FastAPI:
    if not api_secret:
        raise ValueError("api_secret is required for the queue API")

    notifier = notifier or LoggingNotifier()
    enricher = enricher or StoredImageEnricher()

    app = FastAPI(title="Linking Queue API", version="1.0")
    app.state.queue = queue

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return _error(exc.status_code, str(exc.detail), getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        return _error(400, "Invalid request")

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception):
        log.exception("unhandled error on %s %s", request.method, request.url.path)
        return _error(500, "Internal server error")

    def require_token(authorization: Optional[str] = Header(None)) -> None:
        if not authorization or not authorization.startswith("Bearer "):
            raise HTTPException(status_code=401, detail="Unauthorized")
        token = authorization[len("Bearer "):]
        if not secrets.compare_digest(token.encode("utf-8"), api_secret.encode("utf-8")):
            raise HTTPException(status_code=401, detail="Unauthorized")

    def notify(request: LinkingRequest, outcome: Action, detail: Optional[str]) -> None:
        try:
            notifier.notify(request, outcome, detail)
        except Exception:  # noqa: BLE001
            log.exception("notifier failed for request %s", request.id)

    def apply_result(payload: ResultPayload) -> ResultResponse:
        request = queue.remove_by_id(payload.request_id)
        if request is None:
            log.info("result for unknown request %s", payload.request_id)
            raise HTTPException(status_code=404, detail="Request not found in queue")

        if payload.success:
            detail = f"player tag {payload.player_tag}" if payload.player_tag else None
            if payload.player_tag and link_client is not None:
                detail = link_client.link_player(payload.player_tag, request.subject_id).message
            notify(request, Action.COMPLETED, detail)
            return ResultResponse(action=Action.COMPLETED.value, message="Request completed")

        transition = apply_outcome(request, False, max_retries)
        if transition.action is Action.REQUEUED:
            queue.enqueue(transition.request)
            attempt = transition.request.retry_count
            notify(transition.request, Action.REQUEUED, payload.error_message)
            return ResultResponse(
                action=Action.REQUEUED.value,
                message=f"Request re-queued for retry (attempt {attempt}/{max_retries})",
                retry_count=attempt,
            )

        notify(request, Action.FAILED, payload.error_message)
        return ResultResponse(
            action=Action.FAILED.value,
            message="Request failed after max retries",
            retry_count=request.retry_count,
        )

    def pending_items():
        items = []
        for request in queue.list_all():
            try:
                urls = list(enricher.image_urls(request))
            except Exception as exc:  # noqa: BLE001
                log.warning("could not resolve images for request %s: %s", request.id, exc)
                urls = []
            items.append(request.model_copy(update={"image_urls": urls}))
        log.info("returning %d pending requests", len(items))
        return items

    async def queue_result(request: Request):
        payload = _parse_result(await request.body())
        log.info("result for request %s, success=%s", payload.request_id, payload.success)
        try:
            return await run_in_threadpool(apply_result, payload)
        except HTTPException:
            raise
        except Exception as exc:  # noqa: BLE001
            log.exception("result handling failed for request %s", payload.request_id)
            raise HTTPException(status_code=500, detail=f"Internal server error: {exc}") from exc

    def health():
        try:
            return HealthResponse(queue_size=queue.size(), timestamp=int(time.time() * 1000))
        except Exception as exc:  # noqa: BLE001
            log.exception("health check failed")
            return JSONResponse(status_code=500, content={"status": "unhealthy", "error": str(exc)})

    router = APIRouter()

    @router.get(
        "/queue/pending",
        response_model=PendingResponse,
        dependencies=[Depends(require_token)],
    )
    def queue_pending():
        try:
            items = pending_items()
            return PendingResponse(count=len(items), requests=items)
        except Exception as exc:  # noqa: BLE001
            log.exception("pending listing failed")
            raise HTTPException(status_code=500, detail=f"Internal server error: {exc}") from exc

    @router.get(
        "/queue/stats",
        response_model=StatsResponse,
        response_model_exclude_none=True,
        dependencies=[Depends(require_token)],
    )
    def queue_stats():
        try:
            return StatsResponse.from_requests(queue.list_all())
        except Exception as exc:  # noqa: BLE001
            log.exception("stats failed")
            raise HTTPException(status_code=500, detail=f"Internal server error: {exc}") from exc

    # flat record shapes for workers built against the previous bot
    legacy = APIRouter(prefix="/api", include_in_schema=False)

    @legacy.get(
        "/queue/pending",
        response_model=LegacyPendingResponse,
        dependencies=[Depends(require_token)],
    )
    def legacy_queue_pending():
        try:
            items = [r.to_legacy() for r in pending_items()]
            return LegacyPendingResponse(count=len(items), requests=items)
        except Exception as exc:  # noqa: BLE001
            log.exception("pending listing failed")
            raise HTTPException(status_code=500, detail=f"Internal server error: {exc}") from exc

    @legacy.get(
        "/queue/stats",
        response_model=LegacyStatsResponse,
        response_model_exclude_none=True,
        dependencies=[Depends(require_token)],
    )
    def legacy_queue_stats():
        try:
            return LegacyStatsResponse.from_stats(StatsResponse.from_requests(queue.list_all()))
        except Exception as exc:  # noqa: BLE001
            log.exception("stats failed")
            raise HTTPException(status_code=500, detail=f"Internal server error: {exc}") from exc

    for target in (router, legacy):
        target.add_api_route(
            "/queue/result",
            queue_result,
            methods=["POST"],
            response_model=ResultResponse,
            response_model_exclude_none=True,
            dependencies=[Depends(require_token)],
        )
        target.add_api_route("/health", health, methods=["GET"], response_model=HealthResponse)

    app.include_router(router)
    app.include_router(legacy)
    return app
