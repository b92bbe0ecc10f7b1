from __future__ import annotations

from typing import Any


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status
        self.details = details


def not_found(entity: str, entity_id: str) -> ApiError:
    return ApiError(
        code=f"{entity.upper()}_NOT_FOUND",
        message=f"{entity} not found: {entity_id}",
        error_class="validation",
        retryable=False,
        http_status=404,
    )


def capacity_exceeded(*, scope_label: str, selected_count: int, target: int) -> ApiError:
    return ApiError(
        code="SELECTION_CAPACITY_EXCEEDED",
        message=(
            f"{scope_label} already has {selected_count}/{target} questions selected; "
            "deselect a question first"
        ),
        error_class="business_rule",
        retryable=False,
        http_status=409,
        details={"selected_count": selected_count, "target_count": target},
    )


def incomplete_selection(
    *,
    scope_label: str,
    selected_count: int,
    target: int,
    unfinalized_sections: list[dict[str, Any]] | None = None,
) -> ApiError:
    details: dict[str, Any] = {"selected_count": selected_count, "target_count": target}
    if unfinalized_sections is not None:
        details["unfinalized_sections"] = unfinalized_sections
        message = f"{scope_label} cannot be finalized; finalize all sections first"
    else:
        message = (
            f"{scope_label} selection incomplete: {selected_count} selected, "
            f"exactly {target} required"
        )
    return ApiError(
        code="SELECTION_INCOMPLETE",
        message=message,
        error_class="business_rule",
        retryable=False,
        http_status=409,
        details=details,
    )


def artifact_generation_failed(*, paper_id: str, reason: str, compensated: bool) -> ApiError:
    return ApiError(
        code="ARTIFACT_GENERATION_FAILED",
        message=f"artifact generation failed: {reason}. Paper not finalized; no artifact was kept, retry finalize",
        error_class="external",
        retryable=True,
        http_status=502,
        details={"paper_id": paper_id, "compensated": compensated},
    )


def answer_key_generation_failed(*, paper_id: str, reason: str) -> ApiError:
    return ApiError(
        code="ARTIFACT_GENERATION_FAILED",
        message=f"answer key generation failed: {reason}. The paper stays finalized; retry later",
        error_class="external",
        retryable=True,
        http_status=502,
        details={"paper_id": paper_id, "compensated": False},
    )


def invariant_violation(message: str, *, details: dict[str, Any] | None = None) -> ApiError:
    return ApiError(
        code="INVARIANT_VIOLATION_DETECTED",
        message=message,
        error_class="internal",
        retryable=False,
        http_status=500,
        details=details,
    )


def state_conflict(code: str, message: str) -> ApiError:
    return ApiError(
        code=code,
        message=message,
        error_class="business_rule",
        retryable=False,
        http_status=409,
    )
