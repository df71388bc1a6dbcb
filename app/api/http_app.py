from __future__ import annotations

from contextlib import asynccontextmanager
import asyncio
from collections.abc import Awaitable, Callable
import hmac
import json
import logging
from urllib.parse import parse_qs

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from app.api.handlers.admin import admin_action_handler
from app.api.handlers.callbacks import synthesis_callback_handler
from app.api.handlers.deps import ApiDeps
from app.api.handlers.lyrics import (
    approve_lyrics_handler,
    dispatch_audio_handler,
    generate_lyrics_handler,
    reject_lyrics_handler,
)
from app.api.handlers.orders import create_order_handler
from app.api.handlers.payments import payment_webhook_handler
from app.api.handlers.sweeps import release_sweep_handler, retry_queue_sweep_handler
from app.api.schemas import (
    AdminActionRequest,
    AdminActionResponse,
    ApproveLyricsRequest,
    CreateOrderRequest,
    CreateOrderResponse,
    DispatchAudioResponse,
    ErrorResponse,
    HealthResponse,
    LyricsApprovalResponse,
    PaymentWebhookResponse,
    ReadyResponse,
    ReleaseSweepResponse,
    RetrySweepResponse,
    SynthesisCallbackResponse,
    WorkerMetrics,
)
from app.domain.error_taxonomy import error_code_for, http_status_for
from app.domain.errors import DomainError, DomainInvariantError
from app.workers.loop import WorkerLoop
from app.workers.runner import (
    WorkerRuntimeSettings,
    WorkerRuntimeState,
    run_worker_until_stopped,
    worker_runtime_settings_from_env,
)

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"
ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    502: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


def http_error(exc: DomainError) -> HTTPException:
    # Invariant violations on API routes come from requests that do not fit the entity state.
    if isinstance(exc, DomainInvariantError):
        return HTTPException(status_code=400, detail=str(exc))
    return HTTPException(status_code=http_status_for(error_code_for(exc)), detail=str(exc))


async def read_payload(request: Request) -> dict[str, object]:
    """Decode a JSON or form-encoded body into a flat mapping."""
    body = await request.body()
    content_type = request.headers.get("content-type", "")
    if content_type.startswith(FORM_CONTENT_TYPE):
        try:
            fields = parse_qs(body.decode("utf-8"), keep_blank_values=True)
        except UnicodeDecodeError as exc:
            raise HTTPException(status_code=400, detail="body is not valid form data") from exc
        return {key: values[0] for key, values in fields.items()}
    try:
        payload = json.loads(body or b"{}")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="body is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="body must be a JSON object")
    return payload


def _bearer_token(request: Request) -> str | None:
    header = request.headers.get("authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return request.headers.get("x-internal-secret")


def is_internal_request(request: Request, secret: str | None) -> bool:
    token = _bearer_token(request)
    if not secret or not token:
        return False
    return hmac.compare_digest(token.encode("utf-8"), secret.encode("utf-8"))


def build_app(
    role: str,
    run_id: str,
    worker_loop: WorkerLoop | None = None,
    worker_runtime_settings: WorkerRuntimeSettings | None = None,
    api_deps: ApiDeps | None = None,
    on_startup: Callable[[], Awaitable[None]] | None = None,
    on_shutdown: Callable[[], Awaitable[None]] | None = None,
) -> FastAPI:
    logger = logging.getLogger("runtime")
    worker_state: WorkerRuntimeState | None = None
    worker_task: asyncio.Task[None] | None = None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal worker_task, worker_state
        del app
        stop_event: asyncio.Event | None = None

        logger.info(
            "role started",
            extra={"role": role, "service": role, "run_id": run_id},
        )

        if on_startup is not None:
            await on_startup()

        if worker_loop is not None:
            settings = worker_runtime_settings or worker_runtime_settings_from_env()
            worker_state = WorkerRuntimeState()
            stop_event = asyncio.Event()
            worker_task = asyncio.create_task(
                run_worker_until_stopped(
                    worker_loop=worker_loop,
                    role=role,
                    run_id=run_id,
                    stop_event=stop_event,
                    settings=settings,
                    logger=logger,
                    state=worker_state,
                )
            )

        yield

        if stop_event is not None and worker_task is not None:
            stop_event.set()
            await worker_task

        if api_deps is not None:
            await api_deps.background.drain()

        if on_shutdown is not None:
            await on_shutdown()

        logger.info(
            "role stopped",
            extra={"role": role, "service": role, "run_id": run_id},
        )

    app = FastAPI(title="song-fulfillment", version="0.1.0", lifespan=lifespan)

    def require_deps() -> ApiDeps:
        if api_deps is None:
            raise HTTPException(status_code=503, detail="api dependencies are not available")
        return api_deps

    def require_internal(request: Request, deps: ApiDeps) -> None:
        secret = deps.settings.internal_service_secret
        if not secret:
            logger.error(
                "internal service secret is not configured",
                extra={"role": role, "run_id": run_id, "error_code": "fatal_configuration"},
            )
            raise HTTPException(status_code=503, detail="internal service secret is not configured")
        if not is_internal_request(request, secret):
            raise HTTPException(status_code=401, detail="invalid internal credentials")

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health() -> HealthResponse:
        return HealthResponse(status="ok", role=role, mode="service")

    @app.get("/ready", response_model=ReadyResponse, tags=["System"])
    async def ready() -> ReadyResponse:
        worker_loop_enabled = worker_loop is not None
        worker_loop_ready = True
        state = worker_state or WorkerRuntimeState()
        if worker_loop_enabled:
            worker_loop_ready = (
                worker_state is not None
                and worker_state.started
                and worker_task is not None
                and not worker_task.done()
            )

        return ReadyResponse(
            status="ready",
            role=role,
            mode="service",
            worker_loop_enabled=worker_loop_enabled,
            worker_loop_ready=worker_loop_ready,
            worker_metrics=WorkerMetrics(
                started=state.started,
                stopped=state.stopped,
                ticks_total=state.ticks_total,
                work_ticks_total=state.work_ticks_total,
                idle_ticks_total=state.idle_ticks_total,
                errors_total=state.errors_total,
            ),
        )

    @app.post(
        "/checkout",
        response_model=CreateOrderResponse,
        responses={400: {"model": CreateOrderResponse}, 503: {"model": ErrorResponse}},
        tags=["Orders"],
    )
    async def create_order(request: Request, payload: CreateOrderRequest) -> CreateOrderResponse | JSONResponse:
        deps = require_deps()
        response = await create_order_handler(
            request=payload,
            ip_address=request.client.host if request.client is not None else None,
            user_agent=request.headers.get("user-agent"),
            api_deps=deps,
        )
        if not response.success:
            return JSONResponse(status_code=400, content=response.model_dump())
        return response

    @app.post(
        "/webhooks/payment",
        response_model=PaymentWebhookResponse,
        responses=ERROR_RESPONSES,
        tags=["Payments"],
    )
    async def payment_webhook(request: Request) -> PaymentWebhookResponse:
        deps = require_deps()
        payload = await read_payload(request)
        try:
            return await payment_webhook_handler(
                payload=payload,
                internal_authorized=is_internal_request(request, deps.settings.internal_service_secret),
                api_deps=deps,
            )
        except DomainError as exc:
            raise http_error(exc) from exc

    @app.post(
        "/internal/orders/{order_id}/lyrics",
        response_model=LyricsApprovalResponse,
        responses=ERROR_RESPONSES,
        tags=["Lyrics"],
    )
    async def generate_lyrics(order_id: str, request: Request) -> LyricsApprovalResponse:
        deps = require_deps()
        require_internal(request, deps)
        try:
            return await generate_lyrics_handler(order_id=order_id, api_deps=deps)
        except DomainError as exc:
            raise http_error(exc) from exc

    @app.post(
        "/admin/approvals/{approval_id}/approve",
        response_model=DispatchAudioResponse,
        responses=ERROR_RESPONSES,
        tags=["Lyrics"],
    )
    async def approve_lyrics(
        approval_id: str,
        request: Request,
        payload: ApproveLyricsRequest | None = None,
    ) -> DispatchAudioResponse:
        deps = require_deps()
        require_internal(request, deps)
        voice = payload.voice if payload is not None else None
        try:
            return await approve_lyrics_handler(approval_id=approval_id, voice=voice, api_deps=deps)
        except DomainError as exc:
            raise http_error(exc) from exc

    @app.post(
        "/admin/approvals/{approval_id}/reject",
        response_model=LyricsApprovalResponse,
        responses=ERROR_RESPONSES,
        tags=["Lyrics"],
    )
    async def reject_lyrics(approval_id: str, request: Request) -> LyricsApprovalResponse:
        deps = require_deps()
        require_internal(request, deps)
        try:
            return await reject_lyrics_handler(approval_id=approval_id, api_deps=deps)
        except DomainError as exc:
            raise http_error(exc) from exc

    @app.post(
        "/internal/jobs/{job_id}/audio",
        response_model=DispatchAudioResponse,
        responses=ERROR_RESPONSES,
        tags=["Synthesis"],
    )
    async def dispatch_audio(job_id: str, request: Request) -> DispatchAudioResponse:
        deps = require_deps()
        require_internal(request, deps)
        try:
            return await dispatch_audio_handler(job_id=job_id, api_deps=deps)
        except DomainError as exc:
            raise http_error(exc) from exc

    @app.post(
        "/callbacks/synthesis",
        response_model=SynthesisCallbackResponse,
        responses=ERROR_RESPONSES,
        tags=["Synthesis"],
    )
    async def synthesis_callback(request: Request) -> SynthesisCallbackResponse:
        deps = require_deps()
        payload = await read_payload(request)
        try:
            return await synthesis_callback_handler(payload=payload, api_deps=deps)
        except DomainError as exc:
            raise http_error(exc) from exc

    @app.post("/admin/orders/actions", response_model=AdminActionResponse, tags=["Admin"])
    async def admin_actions(request: Request, payload: AdminActionRequest) -> AdminActionResponse:
        deps = require_deps()
        require_internal(request, deps)
        return await admin_action_handler(request=payload, api_deps=deps)

    @app.post("/internal/retry-queue/sweep", response_model=RetrySweepResponse, tags=["Internal"])
    async def retry_queue_sweep(request: Request) -> RetrySweepResponse:
        deps = require_deps()
        require_internal(request, deps)
        return await retry_queue_sweep_handler(api_deps=deps)

    @app.post("/internal/songs/release", response_model=ReleaseSweepResponse, tags=["Internal"])
    async def release_songs(request: Request) -> ReleaseSweepResponse:
        deps = require_deps()
        require_internal(request, deps)
        return await release_sweep_handler(api_deps=deps)

    return app
