"""
Action endpoints.

`POST /api` takes `{"action": ..., "data": {...}}`; the `/api/v1` REST routes map
1:1 onto the same actions. Either way one action runs in one session that is
committed on success and rolled back on any error.
"""
from __future__ import annotations

import logging
import re
from typing import Any

from flask import Blueprint, current_app, g, request
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from actions import dispatch
from actions.helpers import append_audit
from auth import assert_permission, resolve_identity
from config import Config
from db import SessionLocal
from utils import ApiError, ConflictError, ValidationError, err, now_monotonic, ok, parse_json_body, redact_for_audit

log = logging.getLogger("api")

api_bp = Blueprint("api", __name__)
rest_api = Blueprint("rest_api", __name__)


def _client_ip() -> str:
    fwd = str(request.headers.get("X-Forwarded-For") or "").split(",")[0].strip()
    return fwd or str(request.remote_addr or "")


def _error_response(e: ApiError):
    return err(e.code, e.message, http_status=e.http_status, category=e.category)


def _write_error_audit(action: str, auth_ctx, data: Any, e: ApiError) -> None:
    db2 = SessionLocal()
    try:
        append_audit(
            db2,
            entityType="API",
            entityId=str(auth_ctx.userId) if auth_ctx else "ANONYMOUS",
            action=str(action or "").upper() or "UNKNOWN",
            remark=f"{e.code}: {e.message}",
            actor=auth_ctx,
            meta={"data": redact_for_audit(data or {}), "error": {"code": e.code, "category": e.category}},
        )
        db2.commit()
    except DBAPIError:
        db2.rollback()
        log.warning("request_id=%s could not write error audit", getattr(g, "request_id", ""), exc_info=True)
    finally:
        db2.close()


def _db_error_message(cfg: Config, e: DBAPIError) -> str:
    request_id = str(getattr(g, "request_id", "") or "")
    if cfg.IS_PRODUCTION:
        return f"Database error (requestId: {request_id})"
    orig = re.sub(r"\s+", " ", str(getattr(e, "orig", "") or "")).strip()[:300]
    return f"Database error: {orig} (requestId: {request_id})" if orig else f"Database error (requestId: {request_id})"


def execute_action(action: str, data: Any):
    """Authenticate, authorize, dispatch and commit one action. Returns (body, status)."""
    cfg: Config = current_app.config["CFG"]
    limiter = current_app.extensions["rate_limiter"]
    action_u = str(action or "").upper().strip()
    auth_ctx = None
    db = None

    try:
        if not action_u:
            raise ValidationError("BAD_REQUEST", "Missing action")
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ValidationError("BAD_REQUEST", "data must be an object")

        ip = _client_ip()
        limiter.check(f"{ip}:GLOBAL", cfg.RATE_LIMIT_GLOBAL)
        limiter.check(f"{ip}:API:{action_u}", cfg.RATE_LIMIT_DEFAULT)

        auth_ctx = resolve_identity(request.headers, cfg)
        assert_permission(auth_ctx.role if auth_ctx else "", action_u)

        db = SessionLocal()
        out = dispatch(action_u, data, auth_ctx, db, cfg)

        append_audit(
            db,
            entityType="API",
            entityId=str(auth_ctx.userId),
            action=action_u,
            actor=auth_ctx,
            meta={"data": redact_for_audit(data)},
        )
        db.commit()

        log.info(
            "request_id=%s action=%s user=%s role=%s latency_ms=%s",
            g.request_id,
            action_u,
            auth_ctx.userId,
            auth_ctx.role,
            int((now_monotonic() - g.start_ts) * 1000),
        )
        return ok(out)
    except ApiError as e:
        if db is not None:
            db.rollback()
        log.info("request_id=%s action=%s error=%s", g.request_id, action_u, e.code)
        _write_error_audit(action_u, auth_ctx, data, e)
        return _error_response(e)
    except StaleDataError:
        if db is not None:
            db.rollback()
        e = ConflictError("STALE_STATE", "Application changed concurrently; refresh and retry")
        _write_error_audit(action_u, auth_ctx, data, e)
        return _error_response(e)
    except IntegrityError:
        if db is not None:
            db.rollback()
        e = ConflictError("CONFLICT", "Concurrent update; refresh and retry")
        log.warning("request_id=%s action=%s integrity conflict", g.request_id, action_u, exc_info=True)
        _write_error_audit(action_u, auth_ctx, data, e)
        return _error_response(e)
    except DBAPIError as exc:
        if db is not None:
            db.rollback()
        log.exception("request_id=%s action=%s", g.request_id, action_u)
        e = ApiError("INTERNAL", _db_error_message(cfg, exc), http_status=500)
        _write_error_audit(action_u, auth_ctx, data, e)
        return _error_response(e)
    except Exception as exc:
        if db is not None:
            db.rollback()
        log.exception("request_id=%s action=%s", g.request_id, action_u)
        detail = "" if cfg.IS_PRODUCTION else f": {type(exc).__name__}"
        e = ApiError("INTERNAL", f"Unexpected error{detail} (requestId: {g.request_id})", http_status=500)
        _write_error_audit(action_u, auth_ctx, data, e)
        return _error_response(e)
    finally:
        if db is not None:
            db.close()


@api_bp.post("/api")
def api_route():
    try:
        body = parse_json_body(request.get_data(as_text=True))
    except ApiError as e:
        return _error_response(e)
    return execute_action(body.get("action"), body.get("data"))


# (rule, method, action). Path variables are passed through under the same name.
REST_ROUTES: list[tuple[str, str, str]] = [
    ("/applications", "POST", "APPLY_TO_JOB"),
    ("/applications", "GET", "APPLICATIONS_LIST"),
    ("/applications/mine", "GET", "MY_APPLICATIONS"),
    ("/applications/<applicationId>", "DELETE", "APPLICATION_DELETE"),
    ("/applications/<applicationId>/slot", "POST", "SLOT_SELECT"),
    ("/applications/<applicationId>/slot", "PUT", "SLOT_REASSIGN"),
    ("/applications/<applicationId>/approve", "POST", "APPLICATION_APPROVE"),
    ("/applications/<applicationId>/reject", "POST", "APPLICATION_REJECT"),
    ("/applications/<applicationId>/enable-test", "POST", "TEST_ENABLE"),
    ("/applications/<applicationId>/outcome", "POST", "ROUND_OUTCOME_RECORD"),
    ("/applications/<applicationId>/advance", "POST", "APPLICATION_ADVANCE_ROUND"),
    ("/applications/<applicationId>/change-job", "POST", "APPLICATION_CHANGE_JOB"),
    ("/applications/<applicationId>/rounds", "GET", "ROUND_BREAKDOWN"),
    ("/applications/<applicationId>/feedback", "GET", "VISIBLE_FEEDBACK"),
    ("/applications/<applicationId>/evaluations", "GET", "EVALUATIONS_LIST"),
    ("/applications/<applicationId>/evaluations", "POST", "EVALUATION_RECORD"),
    ("/applications/<applicationId>/attempts", "POST", "TEST_START"),
    ("/applications/<applicationId>/attempt", "GET", "TEST_ATTEMPT_GET"),
    ("/attempts/sweep", "POST", "TEST_TIMEOUT_SWEEP"),
    ("/attempts/<attemptId>", "GET", "TEST_ATTEMPT_GET"),
    ("/attempts/<attemptId>/answers", "POST", "TEST_ANSWER_RECORD"),
    ("/attempts/<attemptId>/violations", "POST", "TEST_VIOLATION_RECORD"),
    ("/attempts/<attemptId>/submit", "POST", "TEST_SUBMIT"),
    ("/test-results", "GET", "TEST_RESULTS_LIST"),
    ("/pipeline/stats", "GET", "PIPELINE_STATS"),
    ("/slots", "GET", "SLOTS_AVAILABLE"),
    ("/slots", "POST", "SLOT_UPSERT"),
    ("/slots/all", "GET", "SLOTS_LIST"),
    ("/slots/<slotId>", "PUT", "SLOT_UPSERT"),
    ("/catalog/jobs", "GET", "JOBS_LIST"),
    ("/catalog/jobs", "POST", "JOB_UPSERT"),
    ("/catalog/jobs/<jobId>", "GET", "JOB_GET"),
    ("/catalog/jobs/<jobId>", "PUT", "JOB_UPSERT"),
    ("/catalog/eval-params", "GET", "EVAL_PARAMS_LIST"),
    ("/catalog/eval-params", "POST", "EVAL_PARAM_UPSERT"),
    ("/catalog/eval-params/<parameterId>", "PUT", "EVAL_PARAM_UPSERT"),
    ("/tasks", "GET", "TASKS_LIST"),
    ("/tasks", "POST", "TASK_UPSERT"),
    ("/tasks/mine", "GET", "MY_TASKS"),
    ("/tasks/<taskId>", "PUT", "TASK_UPSERT"),
    ("/applications/<applicationId>/tasks", "POST", "TASK_ASSIGN"),
    ("/task-assignments", "GET", "TASK_SUBMISSIONS_LIST"),
    ("/task-assignments/<assignmentId>/start", "POST", "TASK_START"),
    ("/task-assignments/<assignmentId>/submit", "POST", "TASK_SUBMIT"),
    ("/task-assignments/<assignmentId>/review", "POST", "TASK_REVIEW"),
]


def _rest_view(action: str):
    def view(**path_params):
        if request.method == "GET":
            data: dict[str, Any] = {k: v for k, v in request.args.items()}
        else:
            body = request.get_json(silent=True)
            data = dict(body) if isinstance(body, dict) else {}
        data.update(path_params)
        return execute_action(action, data)

    return view


for _i, (_rule, _method, _action) in enumerate(REST_ROUTES):
    rest_api.add_url_rule(
        _rule,
        endpoint=f"{_action.lower()}_{_i}",
        view_func=_rest_view(_action),
        methods=[_method],
    )
