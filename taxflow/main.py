from __future__ import annotations

import logging
import os
import uuid
from collections.abc import Mapping

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from taxflow.errors import ApiError
from taxflow.queue_backend import InMemoryQueueBackend, QueueBackend, create_queue_from_env
from taxflow.routes import duplicates, ingestion, internal, sync
from taxflow.routes._deps import error_response, request_id_from_request, trace_id_from_request
from taxflow.runtime_profile import true_stack_required
from taxflow.schemas import success_envelope
from taxflow.security import JwtSecurityConfig, parse_and_validate_bearer_token
from taxflow.services import PipelineServices, build_services
from taxflow.store import store

logger = logging.getLogger(__name__)

_PUBLIC_PATHS = frozenset({"/api/v1/health"})
_DEFAULT_CORS_ORIGINS = "http://127.0.0.1:5173,http://localhost:5173"


def _create_queue_backend_for_runtime(
    environ: Mapping[str, str] | None = None,
) -> QueueBackend:
    env = os.environ if environ is None else environ
    try:
        return create_queue_from_env(env)
    except (RuntimeError, ValueError) as exc:
        if true_stack_required(env):
            raise
        logger.warning("queue_backend_fallback error=%s", exc)
        return InMemoryQueueBackend()


queue_backend = _create_queue_backend_for_runtime()
services = build_services(store=store, queue_backend=queue_backend)


def _needs_caller(path: str) -> bool:
    if path in _PUBLIC_PATHS or path.startswith("/api/v1/internal/"):
        return False
    return path.startswith("/api/v1/")


def _resolve_caller(request: Request, cfg: JwtSecurityConfig) -> str | None:
    if not cfg.enabled:
        return request.headers.get("x-caller-id", "").strip() or None
    if not _needs_caller(request.url.path):
        return None
    auth_ctx = parse_and_validate_bearer_token(authorization=request.headers.get("Authorization"), cfg=cfg)
    return auth_ctx.caller_id


def _api_error_response(request: Request, exc: ApiError):
    return error_response(
        request,
        code=exc.code,
        message=exc.message,
        error_class=exc.error_class,
        retryable=exc.retryable,
        status_code=exc.http_status,
    )


def _request_error_response(request: Request, *, code: str, message: str, status_code: int):
    return error_response(
        request,
        code=code,
        message=message,
        error_class="validation",
        retryable=False,
        status_code=status_code,
    )


def create_app(pipeline_services: PipelineServices | None = None) -> FastAPI:
    """Build the HTTP app; tests pass their own ``pipeline_services``."""
    app = FastAPI(title="TaxFlow Pipeline API", version="0.1.0")
    security_cfg = JwtSecurityConfig.from_env()
    app.state.security_cfg = security_cfg
    app.state.services = pipeline_services or services

    origins = [x.strip() for x in os.environ.get("CORS_ALLOW_ORIGINS", _DEFAULT_CORS_ORIGINS).split(",")]
    origins = [x for x in origins if x]
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def add_trace_id(request: Request, call_next):
        request.state.trace_id = request.headers.get("x-trace-id", "").strip() or uuid.uuid4().hex
        request.state.request_id = request.headers.get("x-request-id", f"req_{uuid.uuid4().hex[:12]}")
        request.state.caller_id = None
        try:
            request.state.caller_id = _resolve_caller(request, security_cfg)
            response = await call_next(request)
        except ApiError as exc:
            logger.warning("request_blocked path=%s code=%s", request.url.path, exc.code)
            response = _api_error_response(request, exc)
        response.headers["x-trace-id"] = trace_id_from_request(request)
        response.headers["x-request-id"] = request_id_from_request(request)
        return response

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        return _api_error_response(request, exc)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return _request_error_response(request, code="REQ_VALIDATION_FAILED", message="invalid payload", status_code=400)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return _request_error_response(request, code="REQ_NOT_FOUND", message="resource not found", status_code=404)
        return _request_error_response(
            request,
            code="REQ_HTTP_ERROR",
            message=str(exc.detail),
            status_code=exc.status_code,
        )

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    @app.get("/api/v1/health")
    def health_api(request: Request) -> dict[str, object]:
        current: PipelineServices = request.app.state.services
        return success_envelope(
            {
                "status": "ok",
                "store_backend": current.store.backend_name,
                "queue_backend": current.queue_backend.backend_name,
            },
            trace_id_from_request(request),
        )

    for module in (sync, ingestion, duplicates, internal):
        app.include_router(module.router)
    return app


app = create_app()
