from __future__ import annotations

import json
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from cachetools import TTLCache


_BASE_CATEGORIES = {"AUTH_INVALID": "AUTH", "RATE_LIMITED": "RATE_LIMIT", "INTERNAL": "INTERNAL"}


class ApiError(Exception):
    category = "ERROR"
    default_status = 400

    def __init__(self, code: str, message: str = "", *, http_status: int | None = None):
        super().__init__(message or code)
        self.code = str(code or "").upper() or "BAD_REQUEST"
        self.message = str(message or self.code)
        if http_status is None:
            http_status = 401 if self.code == "AUTH_INVALID" else self.default_status
        self.http_status = int(http_status)
        if type(self) is ApiError:
            self.category = _BASE_CATEGORIES.get(self.code, self.category)


class ValidationError(ApiError):
    """Malformed input. Always a caller bug; raised before any write."""

    category = "VALIDATION"
    default_status = 400


class ConflictError(ApiError):
    """Expected under concurrent load; the caller should refresh and retry."""

    category = "CONFLICT"
    default_status = 409


class NotFoundError(ApiError):
    category = "NOT_FOUND"
    default_status = 404

    def __init__(self, message: str = "Not found", *, code: str = "NOT_FOUND"):
        super().__init__(code, message)


class ForbiddenError(ApiError):
    category = "PERMISSION"
    default_status = 403

    def __init__(self, message: str = "Forbidden", *, code: str = "FORBIDDEN"):
        super().__init__(code, message)


@dataclass
class AuthContext:
    valid: bool
    userId: str
    role: str
    profileComplete: bool = False
    expiresAt: str = ""

    @property
    def is_admin(self) -> bool:
        return normalize_role(self.role) == "ADMIN"


SYSTEM_AUTH = AuthContext(valid=True, userId="SYSTEM", role="ADMIN", profileComplete=True)


def iso_utc_now() -> str:
    return to_iso_utc(datetime.now(timezone.utc))


def to_iso_utc(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_datetime_maybe(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    s = str(value or "").strip()
    if not s:
        return None
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex}"


def now_monotonic() -> float:
    return time.monotonic()


def normalize_role(role: Any) -> str:
    return str(role or "").upper().strip()


def safe_json_string(value: Any, fallback: str = "{}") -> str:
    try:
        return json.dumps(value, separators=(",", ":"))
    except (TypeError, ValueError):
        return fallback


def parse_json_body(raw: str) -> dict[str, Any]:
    s = str(raw or "").strip()
    if not s:
        raise ValidationError("BAD_REQUEST", "Empty body")
    try:
        body = json.loads(s)
    except ValueError:
        raise ValidationError("BAD_REQUEST", "Invalid JSON body")
    if not isinstance(body, dict):
        raise ValidationError("BAD_REQUEST", "Body must be an object")
    return body


def as_int(value: Any, *, field: str, default: int | None = None, min_v: int | None = None, max_v: int | None = None) -> int:
    if value is None or (isinstance(value, str) and not value.strip()):
        if default is None:
            raise ValidationError("BAD_REQUEST", f"Missing {field}")
        return int(default)
    if isinstance(value, bool):
        raise ValidationError("BAD_REQUEST", f"Invalid {field}")
    try:
        n = int(value)
    except (TypeError, ValueError):
        raise ValidationError("BAD_REQUEST", f"Invalid {field}")
    if min_v is not None and n < min_v:
        raise ValidationError("BAD_REQUEST", f"{field} must be >= {min_v}")
    if max_v is not None and n > max_v:
        raise ValidationError("BAD_REQUEST", f"{field} must be <= {max_v}")
    return n


def require_str(data: dict[str, Any] | None, key: str) -> str:
    v = str((data or {}).get(key) or "").strip()
    if not v:
        raise ValidationError("BAD_REQUEST", f"Missing {key}")
    return v


_REDACT_KEYS = {"token", "password", "selectedanswer", "answers"}


def redact_for_audit(data: Any) -> Any:
    if isinstance(data, dict):
        out = {}
        for k, v in data.items():
            if str(k).lower() in _REDACT_KEYS:
                out[k] = "***"
            else:
                out[k] = redact_for_audit(v)
        return out
    if isinstance(data, list):
        return [redact_for_audit(x) for x in data[:50]]
    if isinstance(data, str) and len(data) > 500:
        return data[:500] + "..."
    return data


def ok(data: Any):
    return {"ok": True, "data": data, "error": None}, 200


def err(code: str, message: str, *, http_status: int = 400, category: str = "ERROR"):
    return {"ok": False, "data": None, "error": {"code": code, "category": category, "message": message}}, http_status


class SimpleRateLimiter:
    """Fixed-window counter per key, held in process memory."""

    def __init__(self, window_seconds: int = 60, max_keys: int = 100_000):
        self._window = max(1, int(window_seconds))
        self._hits: TTLCache = TTLCache(maxsize=max_keys, ttl=self._window)
        self._lock = threading.Lock()

    def check(self, key: str, limit: int) -> None:
        if limit <= 0:
            return
        bucket = f"{key}:{int(time.time() // self._window)}"
        with self._lock:
            n = int(self._hits.get(bucket, 0)) + 1
            self._hits[bucket] = n
        if n > limit:
            raise ApiError("RATE_LIMITED", "Too many requests", http_status=429)
