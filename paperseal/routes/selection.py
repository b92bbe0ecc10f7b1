from __future__ import annotations

from fastapi import APIRouter, Request

from paperseal.routes._deps import institute_id_from_request, trace_id_from_request
from paperseal.schemas import (
    AutoSelectRequest,
    QuestionContentUpdateRequest,
    ToggleSelectionRequest,
    success_envelope,
)
from paperseal.service import service

router = APIRouter(prefix="/api/v1", tags=["selection"])


@router.post("/questions/{question_id}/toggle-selection")
def toggle_selection(question_id: str, request: Request, payload: ToggleSelectionRequest | None = None):
    data = service.toggle_selection(
        question_id=question_id,
        desired_selected=payload.selected if payload is not None else None,
        institute_id=institute_id_from_request(request),
    )
    return success_envelope(data, trace_id_from_request(request))


@router.patch("/questions/{question_id}")
def edit_question(question_id: str, payload: QuestionContentUpdateRequest, request: Request):
    data = service.edit_question_content(
        question_id=question_id,
        changes=payload.changes(),
        institute_id=institute_id_from_request(request),
    )
    return success_envelope(data, trace_id_from_request(request))


def _auto_select(request: Request, *, paper_id: str, section_id: str | None, payload: AutoSelectRequest | None):
    body = payload or AutoSelectRequest()
    data = service.auto_select(
        paper_id=paper_id,
        section_id=section_id,
        institute_id=institute_id_from_request(request),
        candidate_ids=body.candidate_ids,
        filters=body.filters,
    )
    return success_envelope(data, trace_id_from_request(request))


@router.post("/papers/{paper_id}/auto-select")
def auto_select_paper(paper_id: str, request: Request, payload: AutoSelectRequest | None = None):
    return _auto_select(request, paper_id=paper_id, section_id=None, payload=payload)


@router.post("/papers/{paper_id}/sections/{section_id}/auto-select")
def auto_select_section(paper_id: str, section_id: str, request: Request, payload: AutoSelectRequest | None = None):
    return _auto_select(request, paper_id=paper_id, section_id=section_id, payload=payload)
