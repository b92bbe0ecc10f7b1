from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from paperseal.errors import ApiError, capacity_exceeded, invariant_violation, not_found, state_conflict
from paperseal.lifecycle import ScopeLifecycle
from paperseal.scopes import (
    MAX_PAPER_QUESTIONS,
    MAX_SECTION_QUESTIONS,
    ScopeRef,
    ensure_selectable,
    load_paper_for_institute,
    load_scope_row,
    scope_for_question,
    scope_label,
    scope_target,
    verify_selection_invariant,
)
from paperseal.store import utcnow_iso

logger = logging.getLogger(__name__)

ArtifactCleanup = Callable[[list[str]], None]


@dataclass
class ToggleResult:
    question_id: str
    selected: bool
    changed: bool
    status_reverted: bool
    scope: ScopeRef
    selected_count: int
    target_count: int
    invalidated_urls: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "question_id": self.question_id,
            "selected": self.selected,
            "changed": self.changed,
            "status_reverted": self.status_reverted,
            "scope": self.scope.as_dict(),
            "selected_count": self.selected_count,
            "target_count": self.target_count,
            "remaining": max(0, self.target_count - self.selected_count),
        }


def _target_invalid(message: str) -> ApiError:
    return ApiError(
        code="SCOPE_TARGET_INVALID",
        message=message,
        error_class="validation",
        retryable=False,
        http_status=400,
    )


class SelectionManager:
    """Keeps selected <= target per scope on every toggle and edit."""

    def __init__(
        self,
        *,
        counter_store: Any,
        lifecycle: ScopeLifecycle,
        on_artifacts_invalidated: ArtifactCleanup | None = None,
    ) -> None:
        self._counter_store = counter_store
        self._lifecycle = lifecycle
        self._on_artifacts_invalidated = on_artifacts_invalidated

    def _after_commit(self, urls: list[str]) -> None:
        if urls and self._on_artifacts_invalidated is not None:
            self._on_artifacts_invalidated(urls)

    @staticmethod
    def _locate(tx: Any, question_id: str, institute_id: str | None) -> tuple[dict[str, Any], ScopeRef]:
        question = tx.get_question(question_id)
        if question is None:
            raise not_found("question", question_id)
        paper = load_paper_for_institute(tx, question["paper_id"], institute_id)
        return paper, scope_for_question(paper, question)

    def toggle_selection(
        self,
        *,
        question_id: str,
        desired_selected: bool | None = None,
        institute_id: str | None = None,
    ) -> ToggleResult:
        def _op(tx: Any) -> ToggleResult:
            _, scope = self._locate(tx, question_id, institute_id)
            scope_row = load_scope_row(tx, scope, for_update=True)
            question = tx.get_question(question_id, for_update=True)
            if question is None:
                raise not_found("question", question_id)
            current = bool(question["is_selected"])
            desired = (not current) if desired_selected is None else bool(desired_selected)
            if desired == current:
                return ToggleResult(
                    question_id=question_id,
                    selected=current,
                    changed=False,
                    status_reverted=False,
                    scope=scope,
                    selected_count=int(scope_row["selected_count"]),
                    target_count=scope_target(scope, scope_row),
                )

            self._lifecycle.open_for_review(tx, scope)
            if desired:
                if not tx.increment_selected(scope):
                    row = load_scope_row(tx, scope)
                    logger.info(
                        "selection_capacity_rejected kind=%s scope_id=%s question_id=%s",
                        scope.kind,
                        scope.scope_id,
                        question_id,
                    )
                    raise capacity_exceeded(
                        scope_label=scope_label(scope, row),
                        selected_count=int(row["selected_count"]),
                        target=scope_target(scope, row),
                    )
            elif not tx.decrement_selected(scope):
                raise invariant_violation(
                    f"question {question_id} is selected but {scope.kind} {scope.scope_id} count is zero",
                    details={"scope": scope.as_dict()},
                )
            flipped = tx.update_question(
                question_id,
                changes={"is_selected": desired, "updated_at": utcnow_iso()},
                expect={"is_selected": current},
            )
            if not flipped:
                raise invariant_violation(f"question {question_id} selection changed while locked")

            cascade = self._lifecycle.on_scope_mutated(tx, scope)
            row = verify_selection_invariant(tx, scope)
            return ToggleResult(
                question_id=question_id,
                selected=desired,
                changed=True,
                status_reverted=cascade.status_reverted,
                scope=scope,
                selected_count=int(row["selected_count"]),
                target_count=scope_target(scope, row),
                invalidated_urls=cascade.invalidated_urls,
            )

        result = self._counter_store.run_in_tx(fn=_op)
        if result.changed:
            logger.info(
                "selection_toggled question_id=%s selected=%s scope_id=%s count=%s/%s reverted=%s",
                question_id,
                result.selected,
                result.scope.scope_id,
                result.selected_count,
                result.target_count,
                result.status_reverted,
            )
        self._after_commit(result.invalidated_urls)
        return result

    def edit_question_content(
        self,
        *,
        question_id: str,
        changes: dict[str, Any],
        institute_id: str | None = None,
    ) -> dict[str, Any]:
        if not changes:
            raise ApiError(
                code="QUESTION_EDIT_EMPTY",
                message="no content fields to update",
                error_class="validation",
                retryable=False,
                http_status=400,
            )

        def _op(tx: Any) -> tuple[dict[str, Any], bool, list[str]]:
            _, scope = self._locate(tx, question_id, institute_id)
            load_scope_row(tx, scope, for_update=True)
            question = tx.get_question(question_id, for_update=True)
            if question is None:
                raise not_found("question", question_id)
            merged = dict(question["content"])
            merged.update(changes)
            if merged == question["content"]:
                return question, False, []
            now = utcnow_iso()
            tx.update_question(question_id, changes={"content": merged, "updated_at": now})
            question.update({"content": merged, "updated_at": now})
            cascade = self._lifecycle.on_scope_mutated(tx, scope)
            return question, cascade.status_reverted, cascade.invalidated_urls

        question, reverted, urls = self._counter_store.run_in_tx(fn=_op)
        self._after_commit(urls)
        return {"question": question, "status_reverted": reverted}

    def on_question_content_edited(self, *, question_id: str, institute_id: str | None = None) -> dict[str, Any]:
        """Hook for editors outside this service that already wrote the new content."""

        def _op(tx: Any):
            _, scope = self._locate(tx, question_id, institute_id)
            return self._lifecycle.on_scope_mutated(tx, scope)

        cascade = self._counter_store.run_in_tx(fn=_op)
        self._after_commit(cascade.invalidated_urls)
        return {"question_id": question_id, "status_reverted": cascade.status_reverted}

    def get_selection_state(self, *, scope: ScopeRef, institute_id: str | None = None) -> dict[str, Any]:
        def _op(tx: Any) -> dict[str, Any]:
            paper = load_paper_for_institute(tx, scope.paper_id, institute_id)
            if scope.kind == "paper" and paper["has_sections"]:
                sections = []
                for section in tx.list_sections(scope.paper_id):
                    section_scope = ScopeRef.for_section(section_id=section["section_id"], paper_id=scope.paper_id)
                    sections.append(self._scope_state(tx, section_scope))
                selected = sum(item["selected_count"] for item in sections)
                target = sum(item["target_count"] for item in sections)
                return {
                    "scope": scope.as_dict(),
                    "status": paper["status"],
                    "target_count": target,
                    "selected_count": selected,
                    "remaining": max(0, target - selected),
                    "total_questions": len(tx.list_paper_questions(scope.paper_id)),
                    "artifact_url": paper.get("artifact_url"),
                    "sections": sections,
                }
            state = self._scope_state(tx, scope)
            state["artifact_url"] = paper.get("artifact_url")
            return state

        return self._counter_store.run_in_tx(fn=_op)

    @staticmethod
    def _scope_state(tx: Any, scope: ScopeRef) -> dict[str, Any]:
        row = verify_selection_invariant(tx, scope)
        target = scope_target(scope, row)
        selected = int(row["selected_count"])
        return {
            "scope": scope.as_dict(),
            "status": row["status"],
            "target_count": target,
            "selected_count": selected,
            "remaining": max(0, target - selected),
            "total_questions": len(tx.list_scope_questions(scope)),
        }

    def update_scope_target(
        self,
        *,
        scope: ScopeRef,
        target: int,
        institute_id: str | None = None,
    ) -> dict[str, Any]:
        new_target = int(target)

        def _op(tx: Any) -> dict[str, Any]:
            paper = load_paper_for_institute(tx, scope.paper_id, institute_id)
            ensure_selectable(scope, paper)
            row = load_scope_row(tx, scope, for_update=True)
            if row["status"] == "finalized":
                raise state_conflict(
                    "SCOPE_TARGET_LOCKED",
                    f"{scope_label(scope, row)} is finalized; reopen it before changing the target",
                )
            limit = MAX_SECTION_QUESTIONS if scope.kind == "section" else MAX_PAPER_QUESTIONS
            if new_target < 1 or new_target > limit:
                raise _target_invalid(f"target must be between 1 and {limit}")
            if scope.kind == "section":
                others = sum(
                    int(section["question_count"])
                    for section in tx.list_sections(scope.paper_id)
                    if section["section_id"] != scope.scope_id
                )
                if others + new_target > MAX_PAPER_QUESTIONS:
                    raise _target_invalid(
                        f"sections of a paper may target at most {MAX_PAPER_QUESTIONS} questions in total"
                    )
            selected = int(row["selected_count"])
            if new_target < selected or not tx.set_target(scope, target=new_target):
                raise _target_invalid(
                    f"{scope_label(scope, row)} already has {selected} questions selected; "
                    f"target cannot drop below that"
                )
            return self._scope_state(tx, scope)

        state = self._counter_store.run_in_tx(fn=_op)
        logger.info("scope_target_updated kind=%s scope_id=%s target=%s", scope.kind, scope.scope_id, new_target)
        return state
