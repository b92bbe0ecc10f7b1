from __future__ import annotations

import logging
import random
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from paperseal.errors import invariant_violation
from paperseal.lifecycle import ScopeLifecycle
from paperseal.scopes import (
    ScopeRef,
    ensure_selectable,
    load_paper_for_institute,
    load_scope_row,
    scope_target,
    verify_selection_invariant,
)
from paperseal.store import question_sort_key, utcnow_iso

logger = logging.getLogger(__name__)

QuestionFilter = Callable[[dict[str, Any]], bool]


def content_filter(filters: dict[str, Any] | None) -> QuestionFilter | None:
    """Equality filter over question content; a list value matches any of its items."""
    if not filters:
        return None
    expected = dict(filters)

    def _matches(question: dict[str, Any]) -> bool:
        content = question.get("content") or {}
        for key, value in expected.items():
            actual = content.get(key)
            if isinstance(value, list | tuple | set):
                if actual not in value:
                    return False
            elif actual != value:
                return False
        return True

    return _matches


@dataclass
class AutoSelectResult:
    scope: ScopeRef
    selected_ids: list[str]
    requested: int
    exhausted: bool
    status_reverted: bool
    selected_count: int
    target_count: int
    ignored_ids: list[str] = field(default_factory=list)
    invalidated_urls: list[str] = field(default_factory=list)

    @property
    def filled(self) -> int:
        return len(self.selected_ids)

    def as_dict(self) -> dict[str, Any]:
        return {
            "scope": self.scope.as_dict(),
            "selected_ids": list(self.selected_ids),
            "filled": self.filled,
            "requested": self.requested,
            "exhausted": self.exhausted,
            "ignored_ids": list(self.ignored_ids),
            "status_reverted": self.status_reverted,
            "selected_count": self.selected_count,
            "target_count": self.target_count,
        }


class AutoSelectAllocator:
    """Fills the gap to target with a uniform random sample of unselected candidates."""

    def __init__(
        self,
        *,
        counter_store: Any,
        lifecycle: ScopeLifecycle,
        rng: random.Random | None = None,
        on_artifacts_invalidated: Callable[[list[str]], None] | None = None,
    ) -> None:
        self._counter_store = counter_store
        self._lifecycle = lifecycle
        self._rng = rng or random.Random()
        self._on_artifacts_invalidated = on_artifacts_invalidated

    def auto_select(
        self,
        *,
        scope: ScopeRef,
        candidate_ids: list[str] | None = None,
        predicate: QuestionFilter | None = None,
        institute_id: str | None = None,
    ) -> AutoSelectResult:
        def _op(tx: Any) -> AutoSelectResult:
            paper = load_paper_for_institute(tx, scope.paper_id, institute_id)
            ensure_selectable(scope, paper)
            row = load_scope_row(tx, scope, for_update=True)
            target = scope_target(scope, row)
            remaining = target - int(row["selected_count"])

            in_scope = {question["question_id"]: question for question in tx.list_scope_questions(scope)}
            ignored: list[str] = []
            if candidate_ids is None:
                pool = list(in_scope)
            else:
                pool = []
                for question_id in dict.fromkeys(candidate_ids):
                    if question_id in in_scope:
                        pool.append(question_id)
                    else:
                        ignored.append(question_id)
            unselected = sorted(
                question_id
                for question_id in pool
                if not in_scope[question_id]["is_selected"] and (predicate is None or predicate(in_scope[question_id]))
            )

            def _result(chosen: list[str], *, exhausted: bool, reverted: bool = False, urls=None):
                current = load_scope_row(tx, scope)
                return AutoSelectResult(
                    scope=scope,
                    selected_ids=chosen,
                    requested=max(0, remaining),
                    exhausted=exhausted,
                    status_reverted=reverted,
                    selected_count=int(current["selected_count"]),
                    target_count=scope_target(scope, current),
                    ignored_ids=ignored,
                    invalidated_urls=list(urls or []),
                )

            if remaining <= 0:
                return _result([], exhausted=False)
            k = min(remaining, len(unselected))
            if k == 0:
                return _result([], exhausted=True)

            self._lifecycle.open_for_review(tx, scope)
            chosen = self._rng.sample(unselected, k)
            now = utcnow_iso()
            for question_id in chosen:
                if not tx.increment_selected(scope):
                    raise invariant_violation(f"{scope.kind} {scope.scope_id} reached target during auto-select")
                flipped = tx.update_question(
                    question_id,
                    changes={"is_selected": True, "updated_at": now},
                    expect={"is_selected": False},
                )
                if not flipped:
                    raise invariant_violation(f"question {question_id} selection changed while locked")

            cascade = self._lifecycle.on_scope_mutated(tx, scope)
            verify_selection_invariant(tx, scope)
            ordered = sorted(chosen, key=lambda question_id: question_sort_key(in_scope[question_id]))
            return _result(
                ordered,
                exhausted=k < remaining,
                reverted=cascade.status_reverted,
                urls=cascade.invalidated_urls,
            )

        result = self._counter_store.run_in_tx(fn=_op)
        logger.info(
            "auto_select_applied kind=%s scope_id=%s filled=%s requested=%s exhausted=%s",
            scope.kind,
            scope.scope_id,
            result.filled,
            result.requested,
            result.exhausted,
        )
        if result.invalidated_urls and self._on_artifacts_invalidated is not None:
            self._on_artifacts_invalidated(result.invalidated_urls)
        return result
