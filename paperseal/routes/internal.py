from __future__ import annotations

from fastapi import APIRouter, Header, Request

from paperseal.errors import ApiError
from paperseal.routes._deps import internal_institute_id, trace_id_from_request
from paperseal.schemas import ReconcileRequest, success_envelope
from paperseal.service import service

router = APIRouter(prefix="/api/v1/internal", tags=["internal"])


def _require_internal_caller(x_internal_caller: str | None) -> None:
    if not (x_internal_caller or "").strip():
        raise ApiError(
            code="AUTH_FORBIDDEN",
            message="internal endpoint forbidden",
            error_class="security_sensitive",
            retryable=False,
            http_status=403,
        )


@router.post("/papers/{paper_id}/generation-complete")
def paper_generation_complete(
    paper_id: str,
    request: Request,
    x_internal_caller: str | None = Header(default=None, alias="x-internal-caller"),
):
    _require_internal_caller(x_internal_caller)
    data = service.mark_generation_complete(paper_id=paper_id, institute_id=internal_institute_id(request))
    return success_envelope(data, trace_id_from_request(request))


@router.post("/papers/{paper_id}/sections/{section_id}/generation-complete")
def section_generation_complete(
    paper_id: str,
    section_id: str,
    request: Request,
    x_internal_caller: str | None = Header(default=None, alias="x-internal-caller"),
):
    _require_internal_caller(x_internal_caller)
    data = service.mark_generation_complete(
        paper_id=paper_id,
        section_id=section_id,
        institute_id=internal_institute_id(request),
    )
    return success_envelope(data, trace_id_from_request(request))


@router.post("/questions/{question_id}/content-edited")
def question_content_edited(
    question_id: str,
    request: Request,
    x_internal_caller: str | None = Header(default=None, alias="x-internal-caller"),
):
    _require_internal_caller(x_internal_caller)
    data = service.on_question_content_edited(
        question_id=question_id,
        institute_id=internal_institute_id(request),
    )
    return success_envelope(data, trace_id_from_request(request))


@router.post("/reconcile")
def reconcile(
    request: Request,
    payload: ReconcileRequest | None = None,
    x_internal_caller: str | None = Header(default=None, alias="x-internal-caller"),
):
    _require_internal_caller(x_internal_caller)
    body = payload or ReconcileRequest()
    data = service.reconcile(stale_after_s=body.stale_after_s, mode=body.mode)
    return success_envelope(data, trace_id_from_request(request))
