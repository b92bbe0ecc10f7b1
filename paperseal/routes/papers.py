from __future__ import annotations

from fastapi import APIRouter, Header, Query, Request
from fastapi.responses import JSONResponse

from paperseal.routes._deps import institute_id_from_request, require_idempotency_key, trace_id_from_request
from paperseal.schemas import PaperCreateRequest, QuestionIngestRequest, ScopeTargetUpdateRequest, success_envelope
from paperseal.service import service

router = APIRouter(prefix="/api/v1", tags=["papers"])


@router.post("/papers")
def create_paper(
    payload: PaperCreateRequest,
    request: Request,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    key = require_idempotency_key(idempotency_key)
    institute_id = institute_id_from_request(request)
    req_payload = payload.model_dump(mode="json")
    data = service.run_idempotent(
        endpoint="POST:/api/v1/papers",
        institute_id=institute_id,
        idempotency_key=key,
        payload=req_payload,
        execute=lambda: service.create_paper(
            institute_id=institute_id,
            title=payload.title,
            target_count=payload.target_count,
            sections=req_payload["sections"],
        ),
    )
    return JSONResponse(status_code=201, content=success_envelope(data, trace_id_from_request(request)))


@router.get("/papers/{paper_id}")
def get_paper(paper_id: str, request: Request):
    data = service.get_paper(paper_id=paper_id, institute_id=institute_id_from_request(request))
    return success_envelope(data, trace_id_from_request(request))


@router.post("/papers/{paper_id}/questions")
def ingest_questions(
    paper_id: str,
    payload: QuestionIngestRequest,
    request: Request,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    key = require_idempotency_key(idempotency_key)
    institute_id = institute_id_from_request(request)
    req_payload = payload.model_dump(mode="json")
    data = service.run_idempotent(
        endpoint=f"POST:/api/v1/papers/{paper_id}/questions",
        institute_id=institute_id,
        idempotency_key=key,
        payload=req_payload,
        execute=lambda: service.ingest_questions(
            paper_id=paper_id,
            institute_id=institute_id,
            questions=req_payload["questions"],
        ),
    )
    return JSONResponse(status_code=201, content=success_envelope(data, trace_id_from_request(request)))


@router.get("/papers/{paper_id}/questions")
def list_questions(
    paper_id: str,
    request: Request,
    section_id: str | None = Query(default=None),
    selected: bool | None = Query(default=None),
):
    items = service.list_questions(
        paper_id=paper_id,
        institute_id=institute_id_from_request(request),
        section_id=section_id,
        selected=selected,
    )
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))


@router.get("/papers/{paper_id}/selection")
def get_paper_selection(paper_id: str, request: Request):
    data = service.get_selection_state(
        paper_id=paper_id,
        section_id=None,
        institute_id=institute_id_from_request(request),
    )
    return success_envelope(data, trace_id_from_request(request))


@router.get("/papers/{paper_id}/sections/{section_id}/selection")
def get_section_selection(paper_id: str, section_id: str, request: Request):
    data = service.get_selection_state(
        paper_id=paper_id,
        section_id=section_id,
        institute_id=institute_id_from_request(request),
    )
    return success_envelope(data, trace_id_from_request(request))


@router.put("/papers/{paper_id}/target")
def update_paper_target(paper_id: str, payload: ScopeTargetUpdateRequest, request: Request):
    data = service.update_scope_target(
        paper_id=paper_id,
        section_id=None,
        institute_id=institute_id_from_request(request),
        target=payload.target_count,
    )
    return success_envelope(data, trace_id_from_request(request))


@router.put("/papers/{paper_id}/sections/{section_id}/target")
def update_section_target(paper_id: str, section_id: str, payload: ScopeTargetUpdateRequest, request: Request):
    data = service.update_scope_target(
        paper_id=paper_id,
        section_id=section_id,
        institute_id=institute_id_from_request(request),
        target=payload.target_count,
    )
    return success_envelope(data, trace_id_from_request(request))
