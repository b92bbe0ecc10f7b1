from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


def _as_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def env_float(env: Mapping[str, str], name: str, *, default: float, minimum: float = 0.0) -> float:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(minimum, value)


def env_bool(env: Mapping[str, str], name: str, *, default: bool) -> bool:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    return _as_bool(raw)


def true_stack_required(environ: Mapping[str, str] | None = None) -> bool:
    env = os.environ if environ is None else environ
    return _as_bool(env.get("PAPERSEAL_REQUIRE_TRUESTACK", "false"))


@dataclass(frozen=True)
class ServiceConfig:
    default_target_count: int
    artifact_timeout_s: float
    compensation_max_attempts: int
    compensation_backoff_ms: int
    autoselect_seed: int | None
    reconcile_stale_after_s: int

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "ServiceConfig":
        env = os.environ if environ is None else environ
        raw_seed = env.get("PAPERSEAL_AUTOSELECT_SEED", "").strip()
        seed = int(raw_seed) if raw_seed.lstrip("-").isdigit() else None
        return cls(
            default_target_count=env_int(env, "PAPERSEAL_DEFAULT_TARGET_COUNT", default=30, minimum=1),
            artifact_timeout_s=env_float(env, "PAPERSEAL_ARTIFACT_TIMEOUT_S", default=30.0, minimum=0.01),
            compensation_max_attempts=env_int(env, "PAPERSEAL_COMPENSATION_MAX_ATTEMPTS", default=3, minimum=1),
            compensation_backoff_ms=env_int(env, "PAPERSEAL_COMPENSATION_BACKOFF_MS", default=200, minimum=0),
            autoselect_seed=seed,
            reconcile_stale_after_s=env_int(env, "PAPERSEAL_RECONCILE_STALE_AFTER_S", default=900, minimum=0),
        )
