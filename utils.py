from __future__ import annotations

import json
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from flask import jsonify


class ApiError(Exception):
    def __init__(self, code: str, message: str, *, http_status: int = 400, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.http_status = http_status
        self.details = details or {}


class ValidationError(ApiError):
    def __init__(self, message: str, *, details: Optional[dict[str, Any]] = None):
        super().__init__("BAD_REQUEST", message, http_status=400, details=details)


class NotFoundError(ApiError):
    def __init__(self, message: str, *, details: Optional[dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, http_status=404, details=details)


class DependencyNotSatisfiedError(ApiError):
    def __init__(self, step_id: str, unmet: list[str]):
        self.step_id = step_id
        self.unmet = list(unmet)
        super().__init__(
            "DEPENDENCY_NOT_SATISFIED",
            f"Step {step_id} has unmet dependencies: {', '.join(self.unmet)}",
            http_status=409,
            details={"stepId": step_id, "unmet": self.unmet},
        )


class InvalidStageTransitionError(ApiError):
    def __init__(self, from_stage: str, to_stage: str, message: str = ""):
        self.from_stage = from_stage
        self.to_stage = to_stage
        super().__init__(
            "INVALID_STAGE_TRANSITION",
            message or f"Cannot move candidate from {from_stage} to {to_stage} without force",
            http_status=409,
            details={"from": from_stage, "to": to_stage},
        )


class PermissionDeniedError(ApiError):
    def __init__(self, message: str = "Not allowed", *, details: Optional[dict[str, Any]] = None):
        super().__init__("FORBIDDEN", message, http_status=403, details=details)


class AuthError(ApiError):
    def __init__(self, message: str = "Unknown actor"):
        super().__init__("AUTH_INVALID", message, http_status=401)


class ConflictError(ApiError):
    def __init__(self, message: str, *, details: Optional[dict[str, Any]] = None):
        super().__init__("CONFLICT", message, http_status=409, details=details)


class StorageError(ApiError):
    """Persistence failure. ``sub_step`` names the write that failed so callers can retry just that one."""

    def __init__(self, message: str, *, sub_step: str = ""):
        self.sub_step = sub_step
        super().__init__("STORAGE_ERROR", message, http_status=500, details={"subStep": sub_step} if sub_step else None)


class RequestTimeoutError(ApiError):
    def __init__(self, message: str = "Request timed out", *, sub_step: str = ""):
        self.sub_step = sub_step
        super().__init__("TIMEOUT", message, http_status=504, details={"subStep": sub_step} if sub_step else None)


@dataclass
class AuthContext:
    valid: bool
    userId: str
    venueId: str
    role: str
    displayName: str = ""
    ipAddress: str = ""
    userAgent: str = ""


def iso_utc_now() -> str:
    return to_iso_utc(datetime.now(timezone.utc))


def to_iso_utc(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso_utc(value: Any) -> Optional[datetime]:
    s = str(value or "").strip()
    if not s:
        return None
    try:
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def new_uuid() -> str:
    return str(uuid.uuid4())


def now_monotonic() -> float:
    return time.monotonic()


def normalize_role(role: Any) -> str:
    return str(role or "").strip().lower()


def str_list(value: Any) -> list[str]:
    """Coerce a JSON-ish value into a list of unique, non-empty strings (order kept)."""

    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    out: list[str] = []
    for v in value:
        s = str(v or "").strip()
        if s and s not in out:
            out.append(s)
    return out


def parse_bool(value: Any, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    raw = str(value or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "y", "on"}


def clamp_int(value: Any, *, default: int, min_v: int, max_v: int) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError):
        n = int(default)
    return max(int(min_v), min(int(max_v), n))


def parse_json_body(raw: str) -> dict[str, Any]:
    if not raw:
        raise ValidationError("Empty body")
    try:
        body = json.loads(raw)
    except json.JSONDecodeError:
        raise ValidationError("Invalid JSON")
    if not isinstance(body, dict):
        raise ValidationError("Body must be a JSON object")
    return body


_REDACT_KEYS = {"email", "phone", "token", "password", "secret", "ssn"}
# Also covers compound keys such as "apiToken" or "clientSecret".
_REDACT_SUFFIXES = ("token", "password", "secret")
AUDIT_LIST_LIMIT = 50


def _redacted_key(key: Any) -> bool:
    k = str(key).lower()
    return k in _REDACT_KEYS or k.endswith(_REDACT_SUFFIXES)


def redact_for_audit(data: Any) -> Any:
    """Copy of `data` safe to store in audit details. Long lists keep a "[+N more]" marker."""
    if isinstance(data, dict):
        out = {}
        for k, v in data.items():
            if _redacted_key(k):
                out[k] = "***"
            else:
                out[k] = redact_for_audit(v)
        return out
    if isinstance(data, list):
        out_list = [redact_for_audit(v) for v in data[:AUDIT_LIST_LIMIT]]
        if len(data) > AUDIT_LIST_LIMIT:
            out_list.append(f"[+{len(data) - AUDIT_LIST_LIMIT} more]")
        return out_list
    return data


def notice(title: str, description: str, variant: str = "default") -> dict[str, str]:
    return {"title": title, "description": description, "variant": variant}


def ok(data: Any):
    return jsonify({"ok": True, "data": data}), 200


def err(code: str, message: str, *, http_status: int = 400, details: Optional[dict[str, Any]] = None):
    error: dict[str, Any] = {"code": code, "message": message}
    if details:
        error["details"] = details
    return jsonify({"ok": False, "error": error}), http_status


class SimpleRateLimiter:
    """Fixed-window in-process limiter. Limits are "<count>/<seconds>" strings, e.g. "120/60"."""

    def __init__(self):
        self._lock = threading.Lock()
        self._windows: dict[str, tuple[float, int]] = {}

    @staticmethod
    def _parse(limit: str) -> tuple[int, float]:
        try:
            count, seconds = str(limit or "").split("/", 1)
            return max(1, int(count)), max(1.0, float(seconds))
        except ValueError:
            return 120, 60.0

    def check(self, key: str, limit: str) -> None:
        count, seconds = self._parse(limit)
        now = now_monotonic()
        with self._lock:
            started, used = self._windows.get(key, (now, 0))
            if now - started >= seconds:
                started, used = now, 0
            used += 1
            self._windows[key] = (started, used)
        if used > count:
            raise ApiError("RATE_LIMITED", "Too many requests", http_status=429)
