from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class SectionCreate(BaseModel):
    section_name: str = ""
    section_order: int = Field(ge=1)
    question_count: int = Field(ge=1, le=150)
    marks_per_question: float = Field(default=1.0, ge=0)


class PaperCreateRequest(BaseModel):
    title: str = Field(min_length=1)
    target_count: int | None = Field(default=None, ge=1, le=300)
    sections: list[SectionCreate] = Field(default_factory=list)


class QuestionIngestItem(BaseModel):
    section_id: str | None = None
    question_order: int | None = Field(default=None, ge=1)
    content: dict[str, Any]


class QuestionIngestRequest(BaseModel):
    questions: list[QuestionIngestItem] = Field(min_length=1)


class ToggleSelectionRequest(BaseModel):
    # omitted means flip the current state
    selected: bool | None = None


class QuestionContentUpdateRequest(BaseModel):
    question_text: str | None = None
    options: dict[str, str] | list[str] | None = None
    correct_answer: str | None = None
    explanation: str | None = None
    extra_fields: dict[str, Any] = Field(default_factory=dict)

    def changes(self) -> dict[str, Any]:
        data = self.model_dump(exclude_none=True, exclude={"extra_fields"})
        data.update(self.extra_fields)
        return data


class AutoSelectRequest(BaseModel):
    candidate_ids: list[str] | None = None
    filters: dict[str, Any] = Field(default_factory=dict)


class ScopeTargetUpdateRequest(BaseModel):
    target_count: int


class ReconcileRequest(BaseModel):
    mode: Literal["revert", "regenerate"] = "revert"
    stale_after_s: int | None = Field(default=None, ge=0)


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
