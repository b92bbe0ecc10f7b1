from __future__ import annotations

import logging
import os
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from paperseal.errors import ApiError
from paperseal.routes import finalization, internal, papers, selection
from paperseal.routes._deps import (
    error_response,
    log_security_block,
    request_id_from_request,
    trace_id_from_request,
)
from paperseal.schemas import success_envelope
from paperseal.security import JwtSecurityConfig, parse_and_validate_bearer_token

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1/"
INTERNAL_PREFIX = "/api/v1/internal/"
HEALTH_PATH = "/api/v1/health"
DEFAULT_INSTITUTE = "institute_default"

SECURITY_BLOCK_CODES = {
    "AUTH_UNAUTHORIZED",
    "AUTH_FORBIDDEN",
    "INSTITUTE_SCOPE_VIOLATION",
}


def _api_error_response(request: Request, exc: ApiError) -> JSONResponse:
    return error_response(
        request,
        code=exc.code,
        message=exc.message,
        error_class=exc.error_class,
        retryable=exc.retryable,
        status_code=exc.http_status,
        details=exc.details,
    )


def _stamp(request: Request, response):
    response.headers["x-trace-id"] = trace_id_from_request(request)
    response.headers["x-request-id"] = request_id_from_request(request)
    return response


def _authenticate(request: Request, security_cfg: JwtSecurityConfig) -> None:
    """Bind the caller's institute to the request; public routes need a bearer token."""
    path = request.url.path
    claimed_institute = request.headers.get("x-institute-id")
    needs_token = security_cfg.enabled and path.startswith(API_PREFIX) and not path.startswith(INTERNAL_PREFIX)
    if not needs_token:
        request.state.institute_id = claimed_institute or DEFAULT_INSTITUTE
        return
    auth_ctx = parse_and_validate_bearer_token(authorization=request.headers.get("Authorization"), cfg=security_cfg)
    if claimed_institute and claimed_institute != auth_ctx.institute_id:
        raise ApiError(
            code="INSTITUTE_SCOPE_VIOLATION",
            message="institute mismatch",
            error_class="security_sensitive",
            retryable=False,
            http_status=403,
        )
    request.state.auth_subject = auth_ctx.subject
    request.state.institute_id = auth_ctx.institute_id


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        if exc.code in SECURITY_BLOCK_CODES:
            log_security_block(request=request, code=exc.code, detail=exc.message)
        elif exc.http_status >= 500:
            logger.error(
                "request_failed code=%s path=%s trace_id=%s",
                exc.code,
                request.url.path,
                trace_id_from_request(request),
            )
        return _api_error_response(request, exc)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return error_response(
            request,
            code="REQ_VALIDATION_FAILED",
            message="invalid payload",
            error_class="validation",
            retryable=False,
            status_code=400,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        not_found = exc.status_code == 404
        return error_response(
            request,
            code="REQ_NOT_FOUND" if not_found else "REQ_HTTP_ERROR",
            message="resource not found" if not_found else str(exc.detail),
            error_class="validation",
            retryable=False,
            status_code=exc.status_code,
        )


def create_app() -> FastAPI:
    app = FastAPI(title="PaperSeal API", version="0.1.0")
    security_cfg = JwtSecurityConfig.from_env()
    app.state.security_cfg = security_cfg
    cors_origins = os.environ.get("CORS_ALLOW_ORIGINS", "http://127.0.0.1:5173,http://localhost:5173")
    allow_origins = [x.strip() for x in cors_origins.split(",") if x.strip()]
    if allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allow_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def add_trace_id(request: Request, call_next):
        incoming_trace_id = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = incoming_trace_id or uuid.uuid4().hex
        request.state.request_id = request.headers.get("x-request-id", f"req_{uuid.uuid4().hex[:12]}")
        request.state.auth_subject = "anonymous"
        path = request.url.path
        if security_cfg.trace_id_strict_required and path.startswith(API_PREFIX) and path != HEALTH_PATH:
            if not incoming_trace_id:
                response = error_response(
                    request,
                    code="TRACE_ID_REQUIRED",
                    message="x-trace-id header is required",
                    error_class="validation",
                    retryable=False,
                    status_code=400,
                )
                return _stamp(request, response)
        try:
            _authenticate(request, security_cfg)
        except ApiError as exc:
            log_security_block(request=request, code=exc.code, detail=exc.message)
            return _stamp(request, _api_error_response(request, exc))
        return _stamp(request, await call_next(request))

    _register_exception_handlers(app)

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    @app.get(HEALTH_PATH)
    def health_api(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    app.include_router(papers.router)
    app.include_router(selection.router)
    app.include_router(finalization.router)
    app.include_router(internal.router)
    return app


app = create_app()
