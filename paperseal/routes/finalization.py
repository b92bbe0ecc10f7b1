from __future__ import annotations

from io import BytesIO

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse

from paperseal.artifacts import PDF_CONTENT_TYPE
from paperseal.routes._deps import institute_id_from_request, trace_id_from_request
from paperseal.schemas import success_envelope
from paperseal.service import service

router = APIRouter(prefix="/api/v1", tags=["finalization"])


def _artifact_response(request: Request, *, paper_id: str, kind: str):
    artifact = service.fetch_artifact(paper_id=paper_id, kind=kind, institute_id=institute_id_from_request(request))
    content = artifact.pop("content")
    if content is None:
        return success_envelope(artifact, trace_id_from_request(request))
    return StreamingResponse(
        BytesIO(content),
        media_type=PDF_CONTENT_TYPE,
        headers={"Content-Disposition": f"attachment; filename={kind}_{paper_id}.pdf"},
    )


@router.post("/papers/{paper_id}/finalize")
def finalize_paper(paper_id: str, request: Request):
    data = service.finalize(paper_id=paper_id, section_id=None, institute_id=institute_id_from_request(request))
    return success_envelope(data, trace_id_from_request(request))


@router.post("/papers/{paper_id}/sections/{section_id}/finalize")
def finalize_section(paper_id: str, section_id: str, request: Request):
    data = service.finalize(
        paper_id=paper_id,
        section_id=section_id,
        institute_id=institute_id_from_request(request),
    )
    return success_envelope(data, trace_id_from_request(request))


@router.post("/papers/{paper_id}/reopen")
def reopen_paper(paper_id: str, request: Request):
    data = service.reopen(paper_id=paper_id, section_id=None, institute_id=institute_id_from_request(request))
    return success_envelope(data, trace_id_from_request(request))


@router.post("/papers/{paper_id}/sections/{section_id}/reopen")
def reopen_section(paper_id: str, section_id: str, request: Request):
    data = service.reopen(
        paper_id=paper_id,
        section_id=section_id,
        institute_id=institute_id_from_request(request),
    )
    return success_envelope(data, trace_id_from_request(request))


@router.post("/papers/{paper_id}/answer-key")
def generate_answer_key(paper_id: str, request: Request):
    data = service.generate_answer_key(paper_id=paper_id, institute_id=institute_id_from_request(request))
    return success_envelope(data, trace_id_from_request(request))


@router.get("/papers/{paper_id}/artifact")
def download_artifact(paper_id: str, request: Request):
    return _artifact_response(request, paper_id=paper_id, kind="question_paper")


@router.get("/papers/{paper_id}/answer-key")
def download_answer_key(paper_id: str, request: Request):
    return _artifact_response(request, paper_id=paper_id, kind="answer_key")
