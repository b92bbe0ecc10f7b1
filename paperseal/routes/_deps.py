from __future__ import annotations

import logging
import uuid
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse

from paperseal.errors import ApiError
from paperseal.schemas import error_envelope
from paperseal.security import redact_sensitive

logger = logging.getLogger("paperseal.security")


def trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def institute_id_from_request(request: Request) -> str:
    institute_id = getattr(request.state, "institute_id", None)
    if institute_id:
        return institute_id
    return "institute_default"


def internal_institute_id(request: Request) -> str | None:
    """Internal callers act for every institute unless they name one."""
    return request.headers.get("x-institute-id") or None


def request_id_from_request(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    return f"req_{uuid.uuid4().hex[:12]}"


def error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=trace_id_from_request(request),
            details=details,
        ),
    )


def log_security_block(*, request: Request, code: str, detail: str) -> None:
    security_cfg = request.app.state.security_cfg
    headers_obj = dict(request.headers.items())
    headers_payload = redact_sensitive(headers_obj) if security_cfg.log_redaction_enabled else headers_obj
    logger.warning(
        "security_blocked code=%s path=%s trace_id=%s detail=%s headers=%s",
        code,
        request.url.path,
        trace_id_from_request(request),
        detail,
        headers_payload,
    )


def require_idempotency_key(idempotency_key: str | None) -> str:
    if not idempotency_key:
        raise ApiError(
            code="IDEMPOTENCY_MISSING",
            message="Idempotency-Key header is required",
            error_class="validation",
            retryable=False,
            http_status=400,
        )
    return idempotency_key
