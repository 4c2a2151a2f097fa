from __future__ import annotations

import os
from typing import Any

from flask import g, has_request_context

from models import AuditLog
from utils import ApiError, AuthContext, ForbiddenError, iso_utc_now, safe_json_string


def _correlation_id() -> str:
    if has_request_context():
        return str(getattr(g, "request_id", "") or "")
    return ""


def append_audit(
    db,
    *,
    entityType: str,
    entityId: str,
    action: str,
    fromState: str = "",
    toState: str = "",
    remark: str = "",
    actor: AuthContext | None = None,
    at: str | None = None,
    meta: dict[str, Any] | None = None,
) -> None:
    db.add(
        AuditLog(
            logId=f"LOG-{os.urandom(16).hex()}",
            entityType=str(entityType or ""),
            entityId=str(entityId or ""),
            action=str(action or "").upper(),
            fromState=str(fromState or ""),
            toState=str(toState or ""),
            remark=str(remark or ""),
            actorUserId=str(actor.userId) if actor else "SYSTEM",
            actorRole=str(actor.role) if actor else "SYSTEM",
            at=at or iso_utc_now(),
            correlationId=_correlation_id(),
            metaJson=safe_json_string(meta or {}, "{}"),
        )
    )


def require_auth(auth: AuthContext | None) -> AuthContext:
    if not auth or not auth.valid:
        raise ApiError("AUTH_INVALID", "Login required")
    return auth


def require_admin(auth: AuthContext | None) -> AuthContext:
    auth = require_auth(auth)
    if not auth.is_admin:
        raise ForbiddenError("Admin only")
    return auth
