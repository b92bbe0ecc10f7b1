from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from paperseal.errors import ApiError, invariant_violation, state_conflict
from paperseal.scopes import ScopeRef, load_scope_row, update_scope_row
from paperseal.store import utcnow_iso

logger = logging.getLogger(__name__)


@dataclass
class CascadeOutcome:
    status_reverted: bool = False
    invalidated_urls: list[str] = field(default_factory=list)


class ScopeLifecycle:
    """Status state machine for sections and papers.

    Every status write is a compare-and-set on the status read under lock. The
    finalized-scope cascade lives only in :meth:`on_scope_mutated`; selection,
    auto-select, content edits and reopen all route through it.
    """

    ALLOWED_TRANSITIONS: dict[str, dict[str, set[str]]] = {
        "section": {
            "pending": {"ready"},
            "ready": {"in_review"},
            "in_review": {"finalized"},
            "finalized": {"in_review"},
        },
        "paper": {
            "draft": {"review"},
            "review": {"finalized"},
            "finalized": {"review"},
        },
    }

    def transition(
        self,
        tx: Any,
        scope: ScopeRef,
        *,
        new_status: str,
        changes: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        row = load_scope_row(tx, scope, for_update=True)
        current_status = row["status"]
        if new_status == current_status:
            return row
        allowed = self.ALLOWED_TRANSITIONS[scope.kind].get(current_status, set())
        if new_status not in allowed:
            raise ApiError(
                code="SCOPE_STATUS_TRANSITION_INVALID",
                message=f"invalid {scope.kind} transition: {current_status} -> {new_status}",
                error_class="business_rule",
                retryable=False,
                http_status=409,
            )
        update = {"status": new_status, "updated_at": utcnow_iso()}
        update.update(changes or {})
        if not update_scope_row(tx, scope, changes=update, expect={"status": current_status}):
            raise invariant_violation(f"{scope.kind} {scope.scope_id} status changed while locked")
        logger.info(
            "scope_status_changed kind=%s scope_id=%s from=%s to=%s",
            scope.kind,
            scope.scope_id,
            current_status,
            new_status,
        )
        row.update(update)
        return row

    def mark_generation_complete(self, tx: Any, scope: ScopeRef) -> list[dict[str, Any]]:
        """Upstream generation finished: pending sections become selectable."""
        if scope.kind == "section":
            row = load_scope_row(tx, scope, for_update=True)
            if row["status"] != "pending":
                return [row]
            return [self.transition(tx, scope, new_status="ready")]
        rows = []
        for section in tx.list_sections(scope.paper_id):
            section_scope = ScopeRef.for_section(section_id=section["section_id"], paper_id=scope.paper_id)
            rows.extend(self.mark_generation_complete(tx, section_scope))
        return rows

    def open_for_review(self, tx: Any, scope: ScopeRef) -> dict[str, Any]:
        row = load_scope_row(tx, scope, for_update=True)
        if scope.kind == "paper":
            if row["status"] == "draft":
                row = self.transition(tx, scope, new_status="review")
            return row
        if row["status"] == "pending":
            raise state_conflict(
                "SCOPE_NOT_READY",
                f"section {scope.scope_id} is still generating questions",
            )
        if row["status"] == "ready":
            row = self.transition(tx, scope, new_status="in_review")
        paper_scope = ScopeRef.for_paper(scope.paper_id)
        paper = load_scope_row(tx, paper_scope, for_update=True)
        if paper["status"] == "draft":
            self.transition(tx, paper_scope, new_status="review")
        return row

    def seal(self, tx: Any, scope: ScopeRef, *, attempt_id: str | None = None) -> dict[str, Any]:
        row = load_scope_row(tx, scope, for_update=True)
        if row["status"] != scope.review_status:
            raise ApiError(
                code="SCOPE_STATUS_TRANSITION_INVALID",
                message=f"invalid {scope.kind} transition: {row['status']} -> finalized",
                error_class="business_rule",
                retryable=False,
                http_status=409,
            )
        changes: dict[str, Any] | None = None
        if scope.kind == "paper":
            if not attempt_id:
                raise ValueError("attempt_id is required to seal a paper")
            changes = {
                "finalized_at": utcnow_iso(),
                "finalize_attempt_id": attempt_id,
                "artifact_url": None,
                "answer_key_url": None,
            }
        return self.transition(tx, scope, new_status="finalized", changes=changes)

    def unseal(self, tx: Any, scope: ScopeRef, *, attempt_id: str | None) -> bool:
        """Compensation for :meth:`seal`; a no-op once the seal no longer stands or its artifact is committed."""
        now = utcnow_iso()
        if scope.kind == "section":
            applied = tx.update_section(
                scope.scope_id,
                changes={"status": "in_review", "updated_at": now},
                expect={"status": "finalized"},
            )
        else:
            applied = tx.update_paper(
                scope.paper_id,
                changes={
                    "status": "review",
                    "answer_key_url": None,
                    "finalized_at": None,
                    "finalize_attempt_id": None,
                    "updated_at": now,
                },
                expect={"status": "finalized", "finalize_attempt_id": attempt_id, "artifact_url": None},
            )
        logger.info(
            "scope_unsealed kind=%s scope_id=%s attempt_id=%s applied=%s",
            scope.kind,
            scope.scope_id,
            attempt_id,
            applied,
        )
        return applied

    def clear_paper_artifacts(self, tx: Any, paper_id: str) -> list[str]:
        paper = load_scope_row(tx, ScopeRef.for_paper(paper_id), for_update=True)
        urls = [url for url in (paper.get("artifact_url"), paper.get("answer_key_url")) if url]
        if paper["status"] != "finalized" and not urls and paper.get("finalized_at") is None:
            return []
        changes: dict[str, Any] = {
            "artifact_url": None,
            "answer_key_url": None,
            "finalized_at": None,
            "finalize_attempt_id": None,
            "updated_at": utcnow_iso(),
        }
        if paper["status"] == "finalized":
            changes["status"] = "review"
        expect = {"status": paper["status"], "finalize_attempt_id": paper.get("finalize_attempt_id")}
        if not tx.update_paper(paper_id, changes=changes, expect=expect):
            raise invariant_violation(f"paper {paper_id} changed while locked")
        logger.info(
            "paper_artifacts_cleared paper_id=%s previous_status=%s urls=%s",
            paper_id,
            paper["status"],
            len(urls),
        )
        return urls

    def on_scope_mutated(self, tx: Any, scope: ScopeRef) -> CascadeOutcome:
        """Revert a finalized scope touched by an edit and drop the paper's artifacts."""
        outcome = CascadeOutcome()
        row = load_scope_row(tx, scope, for_update=True)
        if row["status"] == "finalized":
            # a paper scope is reverted by clear_paper_artifacts below
            if scope.kind == "section":
                self.transition(tx, scope, new_status="in_review")
            outcome.status_reverted = True
        outcome.invalidated_urls = self.clear_paper_artifacts(tx, scope.paper_id)
        if outcome.status_reverted:
            logger.info(
                "finalized_scope_reverted kind=%s scope_id=%s paper_id=%s",
                scope.kind,
                scope.scope_id,
                scope.paper_id,
            )
        return outcome

    def reopen(self, tx: Any, scope: ScopeRef) -> CascadeOutcome:
        row = load_scope_row(tx, scope, for_update=True)
        if row["status"] != "finalized":
            raise state_conflict(
                "SCOPE_NOT_FINALIZED",
                f"{scope.kind} {scope.scope_id} is {row['status']}, not finalized",
            )
        return self.on_scope_mutated(tx, scope)
