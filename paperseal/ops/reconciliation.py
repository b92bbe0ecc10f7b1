from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from paperseal.errors import ApiError
from paperseal.scopes import ScopeRef, scope_target

logger = logging.getLogger(__name__)

RECONCILE_MODES = ("revert", "regenerate")


def _parse_iso(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def audit_selection_counts(tx: Any, paper: dict[str, Any]) -> list[dict[str, Any]]:
    """Compare stored counts with selected flags for every scope of a paper; never writes."""
    if paper["has_sections"]:
        scopes = [
            ScopeRef.for_section(section_id=section["section_id"], paper_id=paper["paper_id"])
            for section in tx.list_sections(paper["paper_id"])
        ]
    else:
        scopes = [ScopeRef.for_paper(paper["paper_id"])]
    mismatches: list[dict[str, Any]] = []
    for scope in scopes:
        row = tx.get_section(scope.scope_id) if scope.kind == "section" else tx.get_paper(scope.scope_id)
        if row is None:
            continue
        stored = int(row["selected_count"])
        flagged = int(tx.count_selected_flags(scope))
        target = scope_target(scope, row)
        if stored != flagged or stored > target:
            mismatches.append(
                {
                    "scope": scope.as_dict(),
                    "stored_count": stored,
                    "flagged_count": flagged,
                    "target_count": target,
                }
            )
    return mismatches


def _clear_unsealed_artifacts(service: Any, paper_id: str) -> list[str]:
    def _op(tx: Any) -> list[str]:
        paper = tx.get_paper(paper_id, for_update=True)
        if paper is None or paper["status"] == "finalized":
            return []
        return service.lifecycle.clear_paper_artifacts(tx, paper_id)

    return service.counter_store.run_in_tx(fn=_op)


def reconcile_finalizations(
    service: Any,
    *,
    stale_after_s: int,
    mode: str = "revert",
    now: datetime | None = None,
) -> dict[str, Any]:
    """Converge papers left half-finalized by abandoned or crashed finalize calls.

    ``mode="revert"`` unseals stale papers that hold no artifact;
    ``mode="regenerate"`` re-runs artifact generation for them instead. Artifact
    references left on unsealed papers are cleared in both modes, and scopes whose
    stored count disagrees with their flags are reported but left untouched.
    """
    if mode not in RECONCILE_MODES:
        raise ValueError(f"unsupported reconcile mode: {mode}")
    current = now or datetime.now(UTC)
    papers = service.counter_store.run_in_tx(fn=lambda tx: tx.list_papers())
    report: dict[str, Any] = {
        "mode": mode,
        "stale_after_s": stale_after_s,
        "checked": len(papers),
        "regenerated": [],
        "reverted": [],
        "failed": [],
        "cleared": [],
        "invariant_mismatches": [],
    }
    for paper in papers:
        paper_id = paper["paper_id"]
        if paper["status"] == "finalized" and not paper.get("artifact_url"):
            finalized_at = _parse_iso(paper.get("finalized_at"))
            age_s = (current - finalized_at).total_seconds() if finalized_at is not None else None
            if age_s is not None and age_s < stale_after_s:
                continue
            if mode == "regenerate":
                try:
                    result = service.saga.resume(paper_id=paper_id)
                except ApiError as exc:
                    report["failed"].append({"paper_id": paper_id, "code": exc.code, "message": exc.message})
                    continue
                report["regenerated"].append({"paper_id": paper_id, "artifact_url": result.artifact_url})
            elif service.saga.revert_stale(paper_id=paper_id, attempt_id=paper.get("finalize_attempt_id")):
                report["reverted"].append(paper_id)
        elif paper["status"] != "finalized" and (paper.get("artifact_url") or paper.get("answer_key_url")):
            urls = _clear_unsealed_artifacts(service, paper_id)
            service.discard_artifacts(urls)
            report["cleared"].append({"paper_id": paper_id, "artifacts": len(urls)})

        mismatches = service.counter_store.run_in_tx(fn=lambda tx, p=paper: audit_selection_counts(tx, p))
        for mismatch in mismatches:
            logger.error(
                "reconcile_count_mismatch paper_id=%s scope_id=%s stored=%s flagged=%s",
                paper_id,
                mismatch["scope"]["scope_id"],
                mismatch["stored_count"],
                mismatch["flagged_count"],
            )
        report["invariant_mismatches"].extend(mismatches)

    logger.info(
        "reconcile_finished mode=%s checked=%s regenerated=%s reverted=%s cleared=%s failed=%s mismatches=%s",
        mode,
        report["checked"],
        len(report["regenerated"]),
        len(report["reverted"]),
        len(report["cleared"]),
        len(report["failed"]),
        len(report["invariant_mismatches"]),
    )
    return report
