from __future__ import annotations

import json
import logging
import os
import random
import threading
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from paperseal.allocator import AutoSelectAllocator, content_filter
from paperseal.artifacts import ArtifactGenerator, create_artifact_generator_from_env, discard_artifacts
from paperseal.config import ServiceConfig
from paperseal.errors import ApiError, not_found, state_conflict
from paperseal.finalization import FinalizationSaga
from paperseal.lifecycle import ScopeLifecycle
from paperseal.ops.reconciliation import reconcile_finalizations
from paperseal.scopes import (
    MAX_PAPER_QUESTIONS,
    MAX_SECTION_QUESTIONS,
    ScopeRef,
    load_paper_for_institute,
    resolve_scope,
)
from paperseal.selection import SelectionManager
from paperseal.store import question_sort_key, utcnow_iso
from paperseal.store_backends import create_counter_store_from_env

logger = logging.getLogger(__name__)


@dataclass
class IdempotencyRecord:
    fingerprint: str
    data: dict[str, Any]


def _validation_error(message: str) -> ApiError:
    return ApiError(
        code="REQ_VALIDATION_FAILED",
        message=message,
        error_class="validation",
        retryable=False,
        http_status=400,
    )


class PaperSealService:
    """Entry point for every paper, selection and finalization operation."""

    def __init__(
        self,
        *,
        counter_store: Any,
        artifact_generator: ArtifactGenerator | None = None,
        config: ServiceConfig | None = None,
    ) -> None:
        self.config = config or ServiceConfig.from_env()
        self.counter_store = counter_store
        self._config_from_env = config is None
        self._generator_from_env = artifact_generator is None
        self.idempotency_records: dict[tuple[str, str], IdempotencyRecord] = {}
        self._idempotency_lock = threading.Lock()
        self._wire(artifact_generator or create_artifact_generator_from_env())

    def _wire(self, artifact_generator: ArtifactGenerator) -> None:
        self.artifact_generator = artifact_generator
        self.lifecycle = ScopeLifecycle()
        self.selection = SelectionManager(
            counter_store=self.counter_store,
            lifecycle=self.lifecycle,
            on_artifacts_invalidated=self.discard_artifacts,
        )
        self.allocator = AutoSelectAllocator(
            counter_store=self.counter_store,
            lifecycle=self.lifecycle,
            rng=random.Random(self.config.autoselect_seed),
            on_artifacts_invalidated=self.discard_artifacts,
        )
        self.saga = FinalizationSaga(
            counter_store=self.counter_store,
            lifecycle=self.lifecycle,
            artifact_generator=artifact_generator,
            timeout_s=self.config.artifact_timeout_s,
            compensation_max_attempts=self.config.compensation_max_attempts,
            compensation_backoff_ms=self.config.compensation_backoff_ms,
        )

    def reset(self) -> None:
        self.counter_store.reset()
        self.idempotency_records.clear()
        if self._config_from_env:
            self.config = ServiceConfig.from_env()
        generator = self.artifact_generator
        if self._generator_from_env:
            generator = create_artifact_generator_from_env(os.environ)
            reset_fn = getattr(getattr(generator, "object_storage", None), "reset", None)
            if callable(reset_fn):
                reset_fn()
        self.saga.shutdown()
        self._wire(generator)

    def discard_artifacts(self, urls: list[str]) -> int:
        return discard_artifacts(self.artifact_generator, urls)

    @staticmethod
    def _fingerprint(payload: dict[str, Any]) -> str:
        return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=True)

    def run_idempotent(
        self,
        *,
        endpoint: str,
        institute_id: str,
        idempotency_key: str,
        payload: dict[str, Any],
        execute: Callable[[], dict[str, Any]],
    ) -> dict[str, Any]:
        key = (f"{institute_id}:{endpoint}", idempotency_key)
        current_fingerprint = self._fingerprint(payload)
        with self._idempotency_lock:
            record = self.idempotency_records.get(key)
            if record is not None:
                if record.fingerprint != current_fingerprint:
                    raise ApiError(
                        code="IDEMPOTENCY_CONFLICT",
                        message="same key with different payload",
                        error_class="validation",
                        retryable=False,
                        http_status=409,
                    )
                return record.data

            data = execute()
            self.idempotency_records[key] = IdempotencyRecord(fingerprint=current_fingerprint, data=data)
            return data

    # authoring (upstream writers)

    def create_paper(
        self,
        *,
        institute_id: str,
        title: str,
        target_count: int | None = None,
        sections: list[dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        section_inputs = list(sections or [])
        has_sections = bool(section_inputs)
        if has_sections:
            total = 0
            orders = set()
            for item in section_inputs:
                count = int(item["question_count"])
                if count < 1 or count > MAX_SECTION_QUESTIONS:
                    raise _validation_error(f"section question_count must be between 1 and {MAX_SECTION_QUESTIONS}")
                order = int(item["section_order"])
                if order in orders:
                    raise _validation_error(f"duplicate section_order: {order}")
                orders.add(order)
                total += count
            if total > MAX_PAPER_QUESTIONS:
                raise _validation_error(f"sections may target at most {MAX_PAPER_QUESTIONS} questions in total")
            target = total
        else:
            target = int(target_count or self.config.default_target_count)
            if target < 1 or target > MAX_PAPER_QUESTIONS:
                raise _validation_error(f"target_count must be between 1 and {MAX_PAPER_QUESTIONS}")

        paper_id = f"ppr_{uuid.uuid4().hex[:12]}"
        now = utcnow_iso()
        paper = {
            "paper_id": paper_id,
            "institute_id": institute_id,
            "title": title,
            "has_sections": has_sections,
            "target_count": target,
            "selected_count": 0,
            "status": "draft",
            "artifact_url": None,
            "answer_key_url": None,
            "finalized_at": None,
            "finalize_attempt_id": None,
            "created_at": now,
            "updated_at": now,
        }

        def _op(tx: Any) -> dict[str, Any]:
            tx.insert_paper(paper)
            rows = []
            for item in sorted(section_inputs, key=lambda x: int(x["section_order"])):
                rows.append(
                    tx.insert_section(
                        {
                            "section_id": f"sec_{uuid.uuid4().hex[:12]}",
                            "paper_id": paper_id,
                            "section_name": str(item.get("section_name") or f"Section {item['section_order']}"),
                            "section_order": int(item["section_order"]),
                            "question_count": int(item["question_count"]),
                            "marks_per_question": float(item.get("marks_per_question", 1)),
                            "selected_count": 0,
                            "status": "pending",
                            "updated_at": now,
                        }
                    )
                )
            return {**paper, "sections": rows}

        data = self.counter_store.run_in_tx(fn=_op)
        logger.info("paper_created paper_id=%s institute_id=%s sections=%s", paper_id, institute_id, len(section_inputs))
        return data

    def ingest_questions(
        self,
        *,
        paper_id: str,
        institute_id: str | None,
        questions: list[dict[str, Any]],
    ) -> dict[str, Any]:
        def _op(tx: Any) -> dict[str, Any]:
            paper = load_paper_for_institute(tx, paper_id, institute_id, for_update=True)
            sections = {section["section_id"]: section for section in tx.list_sections(paper_id)}
            next_order: dict[str | None, int] = {}
            for row in tx.list_paper_questions(paper_id):
                scope_key = row.get("section_id")
                next_order[scope_key] = max(next_order.get(scope_key, 0), int(row["question_order"]))
            inserted = []
            now = utcnow_iso()
            for item in questions:
                section_id = item.get("section_id")
                if paper["has_sections"]:
                    if not section_id:
                        raise ApiError(
                            code="QUESTION_SCOPE_MISSING",
                            message=f"paper {paper_id} is sectioned; every question needs a section_id",
                            error_class="business_rule",
                            retryable=False,
                            http_status=409,
                        )
                    if section_id not in sections:
                        raise not_found("section", section_id)
                elif section_id:
                    raise _validation_error(f"paper {paper_id} has no sections")
                content = item.get("content")
                if not isinstance(content, dict):
                    raise _validation_error("question content must be an object")
                order = item.get("question_order")
                if order is None:
                    order = next_order.get(section_id, 0) + 1
                next_order[section_id] = max(next_order.get(section_id, 0), int(order))
                row = tx.insert_question(
                    {
                        "question_id": f"q_{uuid.uuid4().hex[:12]}",
                        "paper_id": paper_id,
                        "section_id": section_id,
                        "question_order": int(order),
                        "is_selected": False,
                        "content": dict(content),
                        "created_at": now,
                        "updated_at": now,
                    }
                )
                inserted.append(row["question_id"])
            return {"paper_id": paper_id, "question_ids": inserted, "count": len(inserted)}

        data = self.counter_store.run_in_tx(fn=_op)
        logger.info("questions_ingested paper_id=%s count=%s", paper_id, data["count"])
        return data

    def mark_generation_complete(
        self,
        *,
        paper_id: str,
        section_id: str | None = None,
        institute_id: str | None = None,
    ) -> dict[str, Any]:
        def _op(tx: Any) -> dict[str, Any]:
            scope = resolve_scope(tx, paper_id=paper_id, section_id=section_id, institute_id=institute_id)
            rows = self.lifecycle.mark_generation_complete(tx, scope)
            return {
                "scope": scope.as_dict(),
                "sections": [{"section_id": row["section_id"], "status": row["status"]} for row in rows],
            }

        return self.counter_store.run_in_tx(fn=_op)

    def get_paper(self, *, paper_id: str, institute_id: str | None) -> dict[str, Any]:
        def _op(tx: Any) -> dict[str, Any]:
            paper = load_paper_for_institute(tx, paper_id, institute_id)
            return {**paper, "sections": tx.list_sections(paper_id)}

        return self.counter_store.run_in_tx(fn=_op)

    def list_questions(
        self,
        *,
        paper_id: str,
        institute_id: str | None,
        section_id: str | None = None,
        selected: bool | None = None,
    ) -> list[dict[str, Any]]:
        def _op(tx: Any) -> list[dict[str, Any]]:
            load_paper_for_institute(tx, paper_id, institute_id)
            if section_id is not None:
                scope = resolve_scope(tx, paper_id=paper_id, section_id=section_id, institute_id=institute_id)
                rows = tx.list_scope_questions(scope)
            else:
                rows = tx.list_paper_questions(paper_id)
            if selected is not None:
                rows = [row for row in rows if bool(row["is_selected"]) == selected]
            return sorted(rows, key=question_sort_key)

        return self.counter_store.run_in_tx(fn=_op)

    def resolve_scope(self, *, paper_id: str, section_id: str | None, institute_id: str | None) -> ScopeRef:
        return self.counter_store.run_in_tx(
            fn=lambda tx: resolve_scope(tx, paper_id=paper_id, section_id=section_id, institute_id=institute_id)
        )

    # selection

    def toggle_selection(
        self,
        *,
        question_id: str,
        desired_selected: bool | None,
        institute_id: str | None,
    ) -> dict[str, Any]:
        result = self.selection.toggle_selection(
            question_id=question_id,
            desired_selected=desired_selected,
            institute_id=institute_id,
        )
        return result.as_dict()

    def edit_question_content(
        self,
        *,
        question_id: str,
        changes: dict[str, Any],
        institute_id: str | None,
    ) -> dict[str, Any]:
        return self.selection.edit_question_content(
            question_id=question_id,
            changes=changes,
            institute_id=institute_id,
        )

    def on_question_content_edited(self, *, question_id: str, institute_id: str | None = None) -> dict[str, Any]:
        return self.selection.on_question_content_edited(question_id=question_id, institute_id=institute_id)

    def auto_select(
        self,
        *,
        paper_id: str,
        section_id: str | None,
        institute_id: str | None,
        candidate_ids: list[str] | None = None,
        filters: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        scope = self.resolve_scope(paper_id=paper_id, section_id=section_id, institute_id=institute_id)
        result = self.allocator.auto_select(
            scope=scope,
            candidate_ids=candidate_ids,
            predicate=content_filter(filters),
            institute_id=institute_id,
        )
        return result.as_dict()

    def get_selection_state(
        self,
        *,
        paper_id: str,
        section_id: str | None,
        institute_id: str | None,
    ) -> dict[str, Any]:
        scope = self.resolve_scope(paper_id=paper_id, section_id=section_id, institute_id=institute_id)
        return self.selection.get_selection_state(scope=scope, institute_id=institute_id)

    def update_scope_target(
        self,
        *,
        paper_id: str,
        section_id: str | None,
        institute_id: str | None,
        target: int,
    ) -> dict[str, Any]:
        scope = self.resolve_scope(paper_id=paper_id, section_id=section_id, institute_id=institute_id)
        return self.selection.update_scope_target(scope=scope, target=target, institute_id=institute_id)

    # finalization

    def finalize(self, *, paper_id: str, section_id: str | None, institute_id: str | None) -> dict[str, Any]:
        scope = self.resolve_scope(paper_id=paper_id, section_id=section_id, institute_id=institute_id)
        return self.saga.finalize(scope=scope, institute_id=institute_id).as_dict()

    def reopen(self, *, paper_id: str, section_id: str | None, institute_id: str | None) -> dict[str, Any]:
        scope = self.resolve_scope(paper_id=paper_id, section_id=section_id, institute_id=institute_id)
        return self.saga.reopen(scope=scope, institute_id=institute_id)

    def generate_answer_key(self, *, paper_id: str, institute_id: str | None) -> dict[str, Any]:
        return self.saga.generate_answer_key(paper_id=paper_id, institute_id=institute_id)

    def fetch_artifact(self, *, paper_id: str, kind: str, institute_id: str | None) -> dict[str, Any]:
        """Locate a sealed paper's artifact and load its bytes when they live in our object storage."""
        column = "answer_key_url" if kind == "answer_key" else "artifact_url"

        def _op(tx: Any) -> str:
            paper = load_paper_for_institute(tx, paper_id, institute_id)
            if paper["status"] != "finalized" or not paper.get("artifact_url"):
                raise state_conflict("SCOPE_NOT_FINALIZED", f"paper {paper_id} has no sealed artifact yet")
            if not paper.get(column):
                raise state_conflict("ANSWER_KEY_NOT_GENERATED", f"paper {paper_id} has no answer key yet")
            return str(paper[column])

        artifact_url = self.counter_store.run_in_tx(fn=_op)
        try:
            content = self.artifact_generator.read(artifact_url=artifact_url)
        except FileNotFoundError:
            logger.error("artifact_missing paper_id=%s kind=%s url=%s", paper_id, kind, artifact_url)
            raise not_found("artifact", artifact_url) from None
        return {"paper_id": paper_id, "kind": kind, "artifact_url": artifact_url, "content": content}

    def reconcile(self, *, stale_after_s: int | None = None, mode: str = "revert") -> dict[str, Any]:
        threshold = self.config.reconcile_stale_after_s if stale_after_s is None else int(stale_after_s)
        return reconcile_finalizations(self, stale_after_s=threshold, mode=mode)


def create_service_from_env(environ: Mapping[str, str] | None = None) -> PaperSealService:
    env = os.environ if environ is None else environ
    return PaperSealService(
        counter_store=create_counter_store_from_env(env),
        artifact_generator=create_artifact_generator_from_env(env) if environ is not None else None,
        config=ServiceConfig.from_env(env) if environ is not None else None,
    )


service = create_service_from_env()
