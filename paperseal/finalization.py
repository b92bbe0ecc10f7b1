from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from typing import Any

from paperseal.artifacts import ArtifactGenerator, ArtifactRequest, discard_artifacts
from paperseal.errors import (
    ApiError,
    answer_key_generation_failed,
    artifact_generation_failed,
    incomplete_selection,
    invariant_violation,
    state_conflict,
)
from paperseal.lifecycle import ScopeLifecycle
from paperseal.scopes import (
    ScopeRef,
    load_paper_for_institute,
    load_scope_row,
    scope_label,
    scope_target,
    verify_selection_invariant,
)
from paperseal.store import question_sort_key, utcnow_iso

logger = logging.getLogger(__name__)


def new_attempt_id() -> str:
    return f"fin_{uuid.uuid4().hex[:16]}"


def _section_summary(section: dict[str, Any]) -> dict[str, Any]:
    return {
        "section_id": section["section_id"],
        "section_name": section.get("section_name", ""),
        "status": section["status"],
        "selected_count": int(section["selected_count"]),
        "target_count": int(section["question_count"]),
    }


@dataclass
class FinalizeResult:
    scope: ScopeRef
    status: str
    artifact_url: str | None
    regenerated: bool
    attempt_id: str | None = None
    awaiting_sections: list[dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "scope": self.scope.as_dict(),
            "status": self.status,
            "artifact_url": self.artifact_url,
            "regenerated": self.regenerated,
            "attempt_id": self.attempt_id,
            "awaiting_sections": list(self.awaiting_sections),
        }


@dataclass
class SealPlan:
    """What the seal step changed, so compensation can undo exactly that."""

    scope: ScopeRef
    attempt_id: str | None = None
    sealed: list[ScopeRef] = field(default_factory=list)
    existing_artifact_url: str | None = None
    awaiting_sections: list[dict[str, Any]] = field(default_factory=list)
    resumed: bool = False

    @property
    def paper_id(self) -> str:
        return self.scope.paper_id


class FinalizationSaga:
    """Seal a scope, render its artifact, then commit the artifact or compensate the seal."""

    def __init__(
        self,
        *,
        counter_store: Any,
        lifecycle: ScopeLifecycle,
        artifact_generator: ArtifactGenerator,
        timeout_s: float = 30.0,
        compensation_max_attempts: int = 3,
        compensation_backoff_ms: int = 200,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._counter_store = counter_store
        self._lifecycle = lifecycle
        self._artifact_generator = artifact_generator
        self._timeout_s = timeout_s
        self._compensation_max_attempts = max(1, compensation_max_attempts)
        self._compensation_backoff_ms = max(0, compensation_backoff_ms)
        self._sleep = sleep
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="paperseal-artifact")

    def finalize(self, *, scope: ScopeRef, institute_id: str | None = None) -> FinalizeResult:
        plan = self._counter_store.run_in_tx(fn=lambda tx: self._check_and_seal(tx, scope, institute_id))
        if plan.existing_artifact_url is not None:
            logger.info("finalize_already_sealed paper_id=%s scope_id=%s", plan.paper_id, scope.scope_id)
            return FinalizeResult(
                scope=scope,
                status="finalized",
                artifact_url=plan.existing_artifact_url,
                regenerated=False,
                attempt_id=plan.attempt_id,
            )
        if plan.awaiting_sections:
            logger.info(
                "finalize_section_sealed paper_id=%s section_id=%s awaiting=%s",
                plan.paper_id,
                scope.scope_id,
                len(plan.awaiting_sections),
            )
            return FinalizeResult(
                scope=scope,
                status="finalized",
                artifact_url=None,
                regenerated=False,
                awaiting_sections=plan.awaiting_sections,
            )
        artifact_url, regenerated = self._generate_and_commit(plan)
        return FinalizeResult(
            scope=scope,
            status="finalized",
            artifact_url=artifact_url,
            regenerated=regenerated,
            attempt_id=plan.attempt_id,
        )

    def resume(self, *, paper_id: str) -> FinalizeResult:
        return self.finalize(scope=ScopeRef.for_paper(paper_id))

    def _check_and_seal(self, tx: Any, scope: ScopeRef, institute_id: str | None) -> SealPlan:
        paper = load_paper_for_institute(tx, scope.paper_id, institute_id)
        row = load_scope_row(tx, scope, for_update=True)
        if scope.kind == "paper" and paper["has_sections"]:
            return self._check_and_seal_sectioned_paper(tx, scope, row)

        row = verify_selection_invariant(tx, scope)
        selected = int(row["selected_count"])
        target = scope_target(scope, row)
        if selected != target:
            raise incomplete_selection(scope_label=scope_label(scope, row), selected_count=selected, target=target)

        if scope.kind == "paper":
            if row["status"] == "finalized":
                return self._existing_or_resume(scope, row)
            attempt_id = new_attempt_id()
            self._lifecycle.seal(tx, scope, attempt_id=attempt_id)
            return SealPlan(scope=scope, attempt_id=attempt_id, sealed=[scope])

        sealed: list[ScopeRef] = []
        if row["status"] != "finalized":
            self._lifecycle.seal(tx, scope)
            sealed.append(scope)
        paper_scope = ScopeRef.for_paper(scope.paper_id)
        paper = load_scope_row(tx, paper_scope, for_update=True)
        if paper["status"] == "finalized":
            return self._existing_or_resume(scope, paper)
        awaiting = [_section_summary(s) for s in tx.list_sections(scope.paper_id) if s["status"] != "finalized"]
        if awaiting:
            return SealPlan(scope=scope, sealed=sealed, awaiting_sections=awaiting)
        attempt_id = new_attempt_id()
        self._lifecycle.seal(tx, paper_scope, attempt_id=attempt_id)
        return SealPlan(scope=scope, attempt_id=attempt_id, sealed=[*sealed, paper_scope])

    def _check_and_seal_sectioned_paper(self, tx: Any, scope: ScopeRef, paper: dict[str, Any]) -> SealPlan:
        sections = tx.list_sections(scope.paper_id)
        selected = sum(int(section["selected_count"]) for section in sections)
        target = sum(int(section["question_count"]) for section in sections)
        unfinalized = [_section_summary(s) for s in sections if s["status"] != "finalized"]
        if not sections or unfinalized:
            raise incomplete_selection(
                scope_label=scope_label(scope, paper),
                selected_count=selected,
                target=target,
                unfinalized_sections=unfinalized,
            )
        for section in sections:
            section_scope = ScopeRef.for_section(section_id=section["section_id"], paper_id=scope.paper_id)
            row = verify_selection_invariant(tx, section_scope)
            if int(row["selected_count"]) != int(row["question_count"]):
                raise invariant_violation(
                    f"finalized section {section['section_id']} does not hold its target count",
                    details={"section": _section_summary(row)},
                )
        if paper["status"] == "finalized":
            return self._existing_or_resume(scope, paper)
        attempt_id = new_attempt_id()
        self._lifecycle.seal(tx, scope, attempt_id=attempt_id)
        return SealPlan(scope=scope, attempt_id=attempt_id, sealed=[scope])

    @staticmethod
    def _existing_or_resume(scope: ScopeRef, paper: dict[str, Any]) -> SealPlan:
        attempt_id = paper.get("finalize_attempt_id")
        if paper.get("artifact_url"):
            return SealPlan(scope=scope, attempt_id=attempt_id, existing_artifact_url=paper["artifact_url"])
        logger.info("finalize_resumed paper_id=%s attempt_id=%s", scope.paper_id, attempt_id)
        return SealPlan(
            scope=scope,
            attempt_id=attempt_id,
            sealed=[ScopeRef.for_paper(scope.paper_id)],
            resumed=True,
        )

    def _build_request(self, tx: Any, *, paper_id: str, kind: str, attempt_id: str) -> ArtifactRequest:
        paper = load_scope_row(tx, ScopeRef.for_paper(paper_id))
        sections = tx.list_sections(paper_id) if paper["has_sections"] else []
        order = {section["section_id"]: int(section["section_order"]) for section in sections}
        questions = [
            question
            for question in tx.list_paper_questions(paper_id)
            if question["is_selected"]
            and ((question.get("section_id") in order) if paper["has_sections"] else question.get("section_id") is None)
        ]
        questions.sort(key=lambda q: (order.get(q.get("section_id"), 0), *question_sort_key(q)))
        return ArtifactRequest(kind=kind, attempt_id=attempt_id, paper=paper, sections=sections, questions=questions)

    def _generate_with_timeout(self, artifact_request: ArtifactRequest) -> str:
        future = self._executor.submit(self._artifact_generator.generate, artifact_request=artifact_request)
        try:
            url = future.result(timeout=self._timeout_s)
        except FuturesTimeoutError as exc:
            # a render still queued behind busy workers never starts
            future.cancel()
            future.add_done_callback(self._discard_late_artifact)
            raise TimeoutError(f"artifact generation exceeded {self._timeout_s}s") from exc
        if not isinstance(url, str) or not url.strip():
            raise RuntimeError("artifact generator returned no url")
        return url

    def _discard_late_artifact(self, future: Future) -> None:
        if future.cancelled() or future.exception() is not None:
            return
        url = future.result()
        logger.warning("artifact_arrived_after_timeout url=%s", url)
        discard_artifacts(self._artifact_generator, [url])

    def _generate_and_commit(self, plan: SealPlan) -> tuple[str, bool]:
        attempt_id = str(plan.attempt_id)
        try:
            artifact_request = self._counter_store.run_in_tx(
                fn=lambda tx: self._build_request(tx, paper_id=plan.paper_id, kind="question_paper", attempt_id=attempt_id)
            )
            artifact_url = self._generate_with_timeout(artifact_request)
        except Exception as exc:
            peer_url = self._peer_artifact(plan)
            if peer_url is not None:
                logger.warning(
                    "finalize_resume_failed_after_peer_commit paper_id=%s attempt_id=%s error=%s",
                    plan.paper_id,
                    attempt_id,
                    exc,
                )
                return peer_url, False
            raise self._failure(plan, exc) from exc

        def _commit(tx: Any) -> bool:
            return tx.update_paper(
                plan.paper_id,
                changes={"artifact_url": artifact_url, "updated_at": utcnow_iso()},
                expect={"status": "finalized", "finalize_attempt_id": attempt_id, "artifact_url": None},
            )

        try:
            committed = self._counter_store.run_in_tx(fn=_commit)
        except Exception as exc:
            discard_artifacts(self._artifact_generator, [artifact_url])
            raise self._failure(plan, exc) from exc
        if not committed:
            discard_artifacts(self._artifact_generator, [artifact_url])
            peer_url = self._peer_artifact(plan)
            if peer_url is not None:
                return peer_url, False
            logger.warning("finalize_superseded paper_id=%s attempt_id=%s", plan.paper_id, attempt_id)
            raise state_conflict(
                "FINALIZE_SUPERSEDED",
                f"paper {plan.paper_id} was edited while its artifact was generated; finalize again",
            )
        logger.info("finalize_committed paper_id=%s attempt_id=%s url=%s", plan.paper_id, attempt_id, artifact_url)
        return artifact_url, True

    def _peer_artifact(self, plan: SealPlan) -> str | None:
        """Artifact committed under a resumed attempt by the caller that sealed it, if any."""
        if not plan.resumed:
            return None
        try:
            paper = self._counter_store.run_in_tx(fn=lambda tx: load_scope_row(tx, ScopeRef.for_paper(plan.paper_id)))
        except Exception as exc:
            logger.warning("finalize_peer_check_failed paper_id=%s error=%s", plan.paper_id, exc)
            return None
        if paper["status"] != "finalized" or paper.get("finalize_attempt_id") != plan.attempt_id:
            return None
        return paper.get("artifact_url") or None

    def _failure(self, plan: SealPlan, exc: Exception) -> ApiError:
        compensated = self.compensate(plan)
        logger.warning(
            "finalize_generation_failed paper_id=%s attempt_id=%s compensated=%s error=%s",
            plan.paper_id,
            plan.attempt_id,
            compensated,
            exc,
        )
        return artifact_generation_failed(
            paper_id=plan.paper_id,
            reason=str(exc) or type(exc).__name__,
            compensated=compensated,
        )

    def compensate(self, plan: SealPlan) -> bool:
        delay_ms = self._compensation_backoff_ms
        for attempt in range(1, self._compensation_max_attempts + 1):
            try:
                self._counter_store.run_in_tx(fn=lambda tx: self._unseal(tx, plan))
                return True
            except Exception as exc:
                logger.warning(
                    "finalize_compensation_retry paper_id=%s attempt=%s error=%s",
                    plan.paper_id,
                    attempt,
                    exc,
                )
                if attempt < self._compensation_max_attempts:
                    self._sleep(delay_ms / 1000.0)
                    delay_ms *= 2
        logger.error(
            "finalize_compensation_exhausted paper_id=%s attempt_id=%s; left for reconciliation",
            plan.paper_id,
            plan.attempt_id,
        )
        return False

    def _unseal(self, tx: Any, plan: SealPlan) -> None:
        for scope in plan.sealed:
            if scope.kind == "section":
                load_scope_row(tx, scope, for_update=True)
        paper = load_scope_row(tx, ScopeRef.for_paper(plan.paper_id), for_update=True)
        current_attempt = paper.get("finalize_attempt_id")
        if paper.get("artifact_url"):
            logger.info(
                "finalize_compensation_skipped paper_id=%s attempt_id=%s reason=artifact_committed",
                plan.paper_id,
                plan.attempt_id,
            )
            return
        if current_attempt is not None and current_attempt != plan.attempt_id:
            logger.info(
                "finalize_compensation_skipped paper_id=%s attempt_id=%s current_attempt_id=%s",
                plan.paper_id,
                plan.attempt_id,
                current_attempt,
            )
            return
        for scope in reversed(plan.sealed):
            self._lifecycle.unseal(tx, scope, attempt_id=plan.attempt_id)

    def revert_stale(self, *, paper_id: str, attempt_id: str | None) -> bool:
        """Undo a seal whose artifact never arrived; the caller decides what counts as stale."""
        paper_scope = ScopeRef.for_paper(paper_id)

        def _op(tx: Any) -> bool:
            paper = load_scope_row(tx, paper_scope, for_update=True)
            if paper["status"] != "finalized" or paper.get("artifact_url"):
                return False
            return self._lifecycle.unseal(tx, paper_scope, attempt_id=attempt_id)

        return self._counter_store.run_in_tx(fn=_op)

    def reopen(self, *, scope: ScopeRef, institute_id: str | None = None) -> dict[str, Any]:
        def _op(tx: Any):
            load_paper_for_institute(tx, scope.paper_id, institute_id)
            return self._lifecycle.reopen(tx, scope)

        cascade = self._counter_store.run_in_tx(fn=_op)
        discard_artifacts(self._artifact_generator, cascade.invalidated_urls)
        logger.info("scope_reopened kind=%s scope_id=%s", scope.kind, scope.scope_id)
        return {
            "scope": scope.as_dict(),
            "status": scope.review_status,
            "invalidated_artifacts": len(cascade.invalidated_urls),
        }

    def generate_answer_key(self, *, paper_id: str, institute_id: str | None = None) -> dict[str, Any]:
        def _prepare(tx: Any) -> tuple[dict[str, Any], ArtifactRequest | None]:
            paper = load_paper_for_institute(tx, paper_id, institute_id)
            if paper["status"] != "finalized" or not paper.get("artifact_url"):
                raise state_conflict(
                    "SCOPE_NOT_FINALIZED",
                    f"paper {paper_id} must be finalized with an artifact before generating its answer key",
                )
            if paper.get("answer_key_url"):
                return paper, None
            request = self._build_request(
                tx,
                paper_id=paper_id,
                kind="answer_key",
                attempt_id=str(paper["finalize_attempt_id"]),
            )
            return paper, request

        paper, artifact_request = self._counter_store.run_in_tx(fn=_prepare)
        if artifact_request is None:
            return {"paper_id": paper_id, "answer_key_url": paper["answer_key_url"], "regenerated": False}
        try:
            answer_key_url = self._generate_with_timeout(artifact_request)
        except Exception as exc:
            logger.warning("answer_key_generation_failed paper_id=%s error=%s", paper_id, exc)
            raise answer_key_generation_failed(paper_id=paper_id, reason=str(exc) or type(exc).__name__) from exc

        committed = self._counter_store.run_in_tx(
            fn=lambda tx: tx.update_paper(
                paper_id,
                changes={"answer_key_url": answer_key_url, "updated_at": utcnow_iso()},
                expect={
                    "status": "finalized",
                    "finalize_attempt_id": paper["finalize_attempt_id"],
                    "answer_key_url": None,
                },
            )
        )
        if not committed:
            discard_artifacts(self._artifact_generator, [answer_key_url])
            raise state_conflict(
                "FINALIZE_SUPERSEDED",
                f"paper {paper_id} changed while its answer key was generated",
            )
        logger.info("answer_key_committed paper_id=%s url=%s", paper_id, answer_key_url)
        return {"paper_id": paper_id, "answer_key_url": answer_key_url, "regenerated": True}

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)
