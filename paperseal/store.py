from __future__ import annotations

import copy
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from paperseal.scopes import ScopeRef

PAPER_COLUMNS = (
    "paper_id",
    "institute_id",
    "title",
    "has_sections",
    "target_count",
    "selected_count",
    "status",
    "artifact_url",
    "answer_key_url",
    "finalized_at",
    "finalize_attempt_id",
    "created_at",
    "updated_at",
)
SECTION_COLUMNS = (
    "section_id",
    "paper_id",
    "section_name",
    "section_order",
    "question_count",
    "marks_per_question",
    "selected_count",
    "status",
    "updated_at",
)
QUESTION_COLUMNS = (
    "question_id",
    "paper_id",
    "section_id",
    "question_order",
    "is_selected",
    "content",
    "created_at",
    "updated_at",
)

MUTABLE_COLUMNS: dict[str, frozenset[str]] = {
    "papers": frozenset(
        {
            "title",
            "target_count",
            "status",
            "artifact_url",
            "answer_key_url",
            "finalized_at",
            "finalize_attempt_id",
            "updated_at",
        }
    ),
    "sections": frozenset({"section_name", "question_count", "marks_per_question", "status", "updated_at"}),
    "questions": frozenset({"question_order", "is_selected", "content", "updated_at"}),
}
KEY_COLUMNS = {"papers": "paper_id", "sections": "section_id", "questions": "question_id"}


def utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def check_columns(table: str, names: Any) -> None:
    allowed = MUTABLE_COLUMNS[table]
    unknown = [name for name in names if name not in allowed]
    if unknown:
        raise ValueError(f"columns not writable on {table}: {', '.join(sorted(unknown))}")


def question_sort_key(row: dict[str, Any]) -> tuple[int, str]:
    return int(row.get("question_order") or 0), str(row["question_id"])


class InMemoryCounterTx:
    """Unit of work over the in-memory tables; every write is journaled for rollback."""

    def __init__(self, store: "InMemoryCounterStore") -> None:
        self._tables: dict[str, dict[str, dict[str, Any]]] = {
            "papers": store.papers,
            "sections": store.sections,
            "questions": store.questions,
        }
        self._journal: list[tuple[str, str, dict[str, Any] | None]] = []
        self._touched: set[tuple[str, str]] = set()

    def _remember(self, table: str, key: str) -> None:
        if (table, key) in self._touched:
            return
        self._touched.add((table, key))
        previous = self._tables[table].get(key)
        self._journal.append((table, key, copy.deepcopy(previous)))

    def rollback(self) -> None:
        for table, key, previous in reversed(self._journal):
            if previous is None:
                self._tables[table].pop(key, None)
            else:
                self._tables[table][key] = previous
        self._journal.clear()
        self._touched.clear()

    def _get(self, table: str, key: str) -> dict[str, Any] | None:
        row = self._tables[table].get(key)
        if row is None:
            return None
        return copy.deepcopy(row)

    def _insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        key = str(row[KEY_COLUMNS[table]])
        if key in self._tables[table]:
            raise ValueError(f"duplicate key on {table}: {key}")
        self._remember(table, key)
        self._tables[table][key] = copy.deepcopy(row)
        return copy.deepcopy(row)

    def _update(
        self,
        table: str,
        key: str,
        *,
        changes: dict[str, Any],
        expect: dict[str, Any] | None,
    ) -> bool:
        check_columns(table, changes)
        row = self._tables[table].get(key)
        if row is None:
            return False
        for column, expected in (expect or {}).items():
            if row.get(column) != expected:
                return False
        self._remember(table, key)
        row.update(copy.deepcopy(changes))
        return True

    def get_paper(self, paper_id: str, *, for_update: bool = False) -> dict[str, Any] | None:
        return self._get("papers", paper_id)

    def get_section(self, section_id: str, *, for_update: bool = False) -> dict[str, Any] | None:
        return self._get("sections", section_id)

    def get_question(self, question_id: str, *, for_update: bool = False) -> dict[str, Any] | None:
        return self._get("questions", question_id)

    def list_papers(self, *, institute_id: str | None = None) -> list[dict[str, Any]]:
        rows = [
            copy.deepcopy(row)
            for row in self._tables["papers"].values()
            if institute_id is None or row["institute_id"] == institute_id
        ]
        return sorted(rows, key=lambda x: (x["created_at"], x["paper_id"]))

    def list_sections(self, paper_id: str) -> list[dict[str, Any]]:
        rows = [copy.deepcopy(row) for row in self._tables["sections"].values() if row["paper_id"] == paper_id]
        return sorted(rows, key=lambda x: (int(x["section_order"]), x["section_id"]))

    def list_paper_questions(self, paper_id: str) -> list[dict[str, Any]]:
        rows = [copy.deepcopy(row) for row in self._tables["questions"].values() if row["paper_id"] == paper_id]
        return sorted(rows, key=question_sort_key)

    def list_scope_questions(self, scope: ScopeRef) -> list[dict[str, Any]]:
        rows = [copy.deepcopy(row) for row in self._tables["questions"].values() if self._in_scope(row, scope)]
        return sorted(rows, key=question_sort_key)

    @staticmethod
    def _in_scope(row: dict[str, Any], scope: ScopeRef) -> bool:
        if scope.kind == "section":
            return row.get("section_id") == scope.scope_id
        return row["paper_id"] == scope.paper_id and row.get("section_id") is None

    def insert_paper(self, row: dict[str, Any]) -> dict[str, Any]:
        return self._insert("papers", row)

    def insert_section(self, row: dict[str, Any]) -> dict[str, Any]:
        return self._insert("sections", row)

    def insert_question(self, row: dict[str, Any]) -> dict[str, Any]:
        return self._insert("questions", row)

    def update_paper(self, paper_id: str, *, changes: dict[str, Any], expect: dict[str, Any] | None = None) -> bool:
        return self._update("papers", paper_id, changes=changes, expect=expect)

    def update_section(
        self,
        section_id: str,
        *,
        changes: dict[str, Any],
        expect: dict[str, Any] | None = None,
    ) -> bool:
        return self._update("sections", section_id, changes=changes, expect=expect)

    def update_question(
        self,
        question_id: str,
        *,
        changes: dict[str, Any],
        expect: dict[str, Any] | None = None,
    ) -> bool:
        return self._update("questions", question_id, changes=changes, expect=expect)

    def increment_selected(self, scope: ScopeRef) -> bool:
        table = scope.table
        row = self._tables[table].get(scope.scope_id)
        if row is None:
            return False
        if int(row["selected_count"]) >= int(row[scope.target_column]):
            return False
        self._remember(table, scope.scope_id)
        row["selected_count"] = int(row["selected_count"]) + 1
        row["updated_at"] = utcnow_iso()
        return True

    def decrement_selected(self, scope: ScopeRef) -> bool:
        table = scope.table
        row = self._tables[table].get(scope.scope_id)
        if row is None or int(row["selected_count"]) <= 0:
            return False
        self._remember(table, scope.scope_id)
        row["selected_count"] = int(row["selected_count"]) - 1
        row["updated_at"] = utcnow_iso()
        return True

    def set_target(self, scope: ScopeRef, *, target: int) -> bool:
        table = scope.table
        row = self._tables[table].get(scope.scope_id)
        if row is None or int(row["selected_count"]) > int(target):
            return False
        self._remember(table, scope.scope_id)
        row[scope.target_column] = int(target)
        row["updated_at"] = utcnow_iso()
        return True

    def count_selected_flags(self, scope: ScopeRef) -> int:
        return sum(
            1 for row in self._tables["questions"].values() if self._in_scope(row, scope) and bool(row["is_selected"])
        )


class InMemoryCounterStore:
    """Process-local counter store; transactions are serialised by one lock."""

    backend_name = "memory"

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self.papers: dict[str, dict[str, Any]] = {}
        self.sections: dict[str, dict[str, Any]] = {}
        self.questions: dict[str, dict[str, Any]] = {}

    def run_in_tx(self, *, fn: Callable[[InMemoryCounterTx], Any]) -> Any:
        with self._lock:
            tx = InMemoryCounterTx(self)
            try:
                return fn(tx)
            except BaseException:
                tx.rollback()
                raise

    def reset(self) -> None:
        with self._lock:
            self.papers.clear()
            self.sections.clear()
            self.questions.clear()
