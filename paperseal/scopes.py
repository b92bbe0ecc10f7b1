from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from paperseal.errors import ApiError, invariant_violation, not_found, state_conflict

logger = logging.getLogger(__name__)

REVIEW_STATUS = {"section": "in_review", "paper": "review"}
MAX_SECTION_QUESTIONS = 150
MAX_PAPER_QUESTIONS = 300


@dataclass(frozen=True)
class ScopeRef:
    """A unit of selection: one section, or a whole non-sectioned paper."""

    kind: str
    scope_id: str
    paper_id: str

    @classmethod
    def for_paper(cls, paper_id: str) -> "ScopeRef":
        return cls(kind="paper", scope_id=paper_id, paper_id=paper_id)

    @classmethod
    def for_section(cls, *, section_id: str, paper_id: str) -> "ScopeRef":
        return cls(kind="section", scope_id=section_id, paper_id=paper_id)

    @property
    def table(self) -> str:
        return "sections" if self.kind == "section" else "papers"

    @property
    def target_column(self) -> str:
        return "question_count" if self.kind == "section" else "target_count"

    @property
    def review_status(self) -> str:
        return REVIEW_STATUS[self.kind]

    def as_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "scope_id": self.scope_id, "paper_id": self.paper_id}


def scope_target(scope: ScopeRef, row: dict[str, Any]) -> int:
    return int(row[scope.target_column])


def scope_label(scope: ScopeRef, row: dict[str, Any]) -> str:
    if scope.kind == "section":
        return f'section "{row.get("section_name") or scope.scope_id}"'
    return f'paper "{row.get("title") or scope.scope_id}"'


def load_scope_row(tx: Any, scope: ScopeRef, *, for_update: bool = False) -> dict[str, Any]:
    if scope.kind == "section":
        row = tx.get_section(scope.scope_id, for_update=for_update)
        if row is None or row["paper_id"] != scope.paper_id:
            raise not_found("section", scope.scope_id)
        return row
    row = tx.get_paper(scope.scope_id, for_update=for_update)
    if row is None:
        raise not_found("paper", scope.scope_id)
    return row


def update_scope_row(
    tx: Any,
    scope: ScopeRef,
    *,
    changes: dict[str, Any],
    expect: dict[str, Any] | None = None,
) -> bool:
    if scope.kind == "section":
        return tx.update_section(scope.scope_id, changes=changes, expect=expect)
    return tx.update_paper(scope.scope_id, changes=changes, expect=expect)


def assert_institute_scope(owner_institute_id: str, institute_id: str | None) -> None:
    if institute_id is None:
        return
    if owner_institute_id != institute_id:
        raise ApiError(
            code="INSTITUTE_SCOPE_VIOLATION",
            message="institute mismatch",
            error_class="security_sensitive",
            retryable=False,
            http_status=403,
        )


def load_paper_for_institute(
    tx: Any,
    paper_id: str,
    institute_id: str | None,
    *,
    for_update: bool = False,
) -> dict[str, Any]:
    paper = tx.get_paper(paper_id, for_update=for_update)
    if paper is None:
        raise not_found("paper", paper_id)
    assert_institute_scope(paper["institute_id"], institute_id)
    return paper


def resolve_scope(tx: Any, *, paper_id: str, section_id: str | None, institute_id: str | None) -> ScopeRef:
    paper = load_paper_for_institute(tx, paper_id, institute_id)
    if section_id is None:
        return ScopeRef.for_paper(paper_id)
    section = tx.get_section(section_id)
    if section is None or section["paper_id"] != paper_id:
        raise not_found("section", section_id)
    return ScopeRef.for_section(section_id=section_id, paper_id=paper["paper_id"])


def scope_for_question(paper: dict[str, Any], question: dict[str, Any]) -> ScopeRef:
    section_id = question.get("section_id")
    if section_id:
        return ScopeRef.for_section(section_id=section_id, paper_id=paper["paper_id"])
    if paper["has_sections"]:
        raise ApiError(
            code="QUESTION_SCOPE_MISSING",
            message=f"question {question['question_id']} belongs to a sectioned paper but has no section",
            error_class="business_rule",
            retryable=False,
            http_status=409,
        )
    return ScopeRef.for_paper(paper["paper_id"])


def ensure_selectable(scope: ScopeRef, paper: dict[str, Any]) -> None:
    if scope.kind == "paper" and paper["has_sections"]:
        raise state_conflict(
            "SCOPE_HAS_SECTIONS",
            f"paper {scope.paper_id} is sectioned; select within a section",
        )


def verify_selection_invariant(tx: Any, scope: ScopeRef) -> dict[str, Any]:
    """Re-read a scope and check its stored count against the flags and the target.

    Raises ``INVARIANT_VIOLATION_DETECTED`` so the enclosing transaction rolls back;
    the stored aggregate is never rewritten here.
    """
    row = load_scope_row(tx, scope)
    stored = int(row["selected_count"])
    target = scope_target(scope, row)
    flagged = int(tx.count_selected_flags(scope))
    if stored != flagged or stored > target or stored < 0:
        logger.error(
            "selection_invariant_violated kind=%s scope_id=%s stored=%s flagged=%s target=%s",
            scope.kind,
            scope.scope_id,
            stored,
            flagged,
            target,
        )
        raise invariant_violation(
            f"{scope_label(scope, row)} count mismatch: stored {stored}, flagged {flagged}, target {target}",
            details={
                "scope": scope.as_dict(),
                "stored_count": stored,
                "flagged_count": flagged,
                "target_count": target,
            },
        )
    return row
