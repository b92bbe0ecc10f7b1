from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from paperseal.config import env_bool, env_int
from paperseal.errors import ApiError

BEARER_PREFIX = "Bearer "
SENSITIVE_KEYS = frozenset({"authorization", "token", "secret", "password", "api_key", "apikey", "access_token"})
REDACTED = "***REDACTED***"


def _unauthorized(message: str) -> ApiError:
    return ApiError(
        code="AUTH_UNAUTHORIZED",
        message=message,
        error_class="security_sensitive",
        retryable=False,
        http_status=401,
    )


def _b64url_decode(raw: str) -> bytes:
    return base64.urlsafe_b64decode(raw + "=" * (-len(raw) % 4))


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _numeric_claim(claims: dict[str, Any], name: str) -> int | None:
    value = claims.get(name)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def redact_sensitive(value: object) -> object:
    """Mask credentials before headers or payloads reach the security log."""
    if isinstance(value, dict):
        return {
            str(key): REDACTED if str(key).lower() in SENSITIVE_KEYS else redact_sensitive(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [redact_sensitive(item) for item in value]
    if isinstance(value, str) and len(value) >= 24:
        lowered = value.lower()
        if "bearer " in lowered or "token" in lowered:
            return REDACTED
    return value


@dataclass
class AuthContext:
    """The examiner behind a request and the institute they act for."""

    institute_id: str
    subject: str
    claims: dict[str, Any] = field(default_factory=dict)


@dataclass
class JwtSecurityConfig:
    enabled: bool
    issuer: str
    audience: str
    shared_secret: str
    required_claims: list[str]
    institute_claim: str
    log_redaction_enabled: bool
    trace_id_strict_required: bool
    leeway_s: int = 0

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "JwtSecurityConfig":
        env = os.environ if environ is None else environ
        issuer = env.get("JWT_ISSUER", "").strip()
        audience = env.get("JWT_AUDIENCE", "").strip()
        shared_secret = env.get("JWT_SHARED_SECRET", "").strip()
        institute_claim = env.get("JWT_INSTITUTE_CLAIM", "institute_id").strip() or "institute_id"
        raw_claims = env.get("JWT_REQUIRED_CLAIMS", f"{institute_claim},sub,exp")
        return cls(
            enabled=bool(issuer or audience or shared_secret),
            issuer=issuer,
            audience=audience,
            shared_secret=shared_secret,
            required_claims=[claim.strip() for claim in raw_claims.split(",") if claim.strip()],
            institute_claim=institute_claim,
            log_redaction_enabled=env_bool(env, "SECURITY_LOG_REDACTION_ENABLED", default=True),
            trace_id_strict_required=env_bool(env, "TRACE_ID_STRICT_REQUIRED", default=False),
            leeway_s=env_int(env, "JWT_LEEWAY_S", default=0),
        )


def _decode_segments(token: str) -> tuple[dict[str, Any], dict[str, Any], str, str]:
    segments = token.split(".")
    if len(segments) != 3:
        raise _unauthorized("invalid token format")
    try:
        header = json.loads(_b64url_decode(segments[0]))
        claims = json.loads(_b64url_decode(segments[1]))
    except (json.JSONDecodeError, ValueError, TypeError):
        raise _unauthorized("invalid token payload") from None
    if not isinstance(header, dict) or not isinstance(claims, dict):
        raise _unauthorized("invalid token payload")
    return header, claims, f"{segments[0]}.{segments[1]}", segments[2]


def _verify_hs256(*, header: dict[str, Any], signing_input: str, signature: str, secret: str) -> None:
    if str(header.get("alg", "")).upper() != "HS256":
        raise _unauthorized("unsupported jwt algorithm")
    if not secret:
        raise _unauthorized("jwt shared secret not configured")
    digest = hmac.new(secret.encode("utf-8"), signing_input.encode("ascii"), hashlib.sha256).digest()
    if not hmac.compare_digest(_b64url_encode(digest), signature):
        raise _unauthorized("invalid token signature")


def _check_claims(claims: dict[str, Any], cfg: JwtSecurityConfig) -> None:
    now_ts = int(datetime.now(UTC).timestamp())
    exp = _numeric_claim(claims, "exp")
    if exp is None or exp + cfg.leeway_s <= now_ts:
        raise _unauthorized("token expired")
    nbf = _numeric_claim(claims, "nbf")
    if nbf is not None and nbf - cfg.leeway_s > now_ts:
        raise _unauthorized("token not yet valid")
    if cfg.issuer and str(claims.get("iss", "")) != cfg.issuer:
        raise _unauthorized("jwt issuer mismatch")
    if cfg.audience:
        aud = claims.get("aud")
        audiences = {str(item) for item in aud} if isinstance(aud, list) else {str(aud or "")}
        if cfg.audience not in audiences:
            raise _unauthorized("jwt audience mismatch")
    missing = [claim for claim in cfg.required_claims if claim not in claims]
    if missing:
        raise _unauthorized(f"missing required claim: {missing[0]}")


def parse_and_validate_bearer_token(*, authorization: str | None, cfg: JwtSecurityConfig) -> AuthContext:
    if not authorization:
        raise _unauthorized("missing Authorization bearer token")
    if not authorization.startswith(BEARER_PREFIX):
        raise _unauthorized("invalid Authorization header")
    token = authorization[len(BEARER_PREFIX) :].strip()
    if not token:
        raise _unauthorized("empty bearer token")

    header, claims, signing_input, signature = _decode_segments(token)
    _verify_hs256(header=header, signing_input=signing_input, signature=signature, secret=cfg.shared_secret)
    _check_claims(claims, cfg)

    institute_id = str(claims.get(cfg.institute_claim) or "").strip()
    subject = str(claims.get("sub") or "").strip()
    if not institute_id or not subject:
        raise _unauthorized("missing institute or subject claim")
    return AuthContext(institute_id=institute_id, subject=subject, claims=claims)
