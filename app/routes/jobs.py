"""
Background job endpoints (Celery).
"""
from __future__ import annotations

from flask import Blueprint, current_app, request

from app.tasks import celery_app
from app.tasks.attempt_sweep import sweep_expired_attempts_task
from auth import resolve_identity
from utils import ApiError, ForbiddenError, as_int, err, ok

jobs_bp = Blueprint("jobs", __name__)


def _require_admin_caller():
    auth = resolve_identity(request.headers, current_app.config["CFG"])
    if auth is None:
        raise ApiError("AUTH_INVALID", "Login required")
    if not auth.is_admin:
        raise ForbiddenError("Admin only")
    return auth


@jobs_bp.post("/attempt-sweep")
def enqueue_attempt_sweep():
    """
    Queue a timeout sweep.

    Request body (optional):
        {"limit": 500}

    Returns 202:
        {"ok": true, "data": {"job_id": "...", "status": "queued"}}
    """
    try:
        _require_admin_caller()
        body = request.get_json(silent=True) or {}
        limit = as_int(body.get("limit"), field="limit", default=500, min_v=1, max_v=5000)
    except ApiError as e:
        return err(e.code, e.message, http_status=e.http_status, category=e.category)

    task = sweep_expired_attempts_task.apply_async(kwargs={"limit": limit})
    body, _status = ok({"job_id": task.id, "status": "queued"})
    return body, 202


@jobs_bp.get("/<job_id>")
def get_job_status(job_id: str):
    try:
        _require_admin_caller()
    except ApiError as e:
        return err(e.code, e.message, http_status=e.http_status, category=e.category)

    task = celery_app.AsyncResult(job_id)
    data = {"job_id": job_id, "status": task.state}

    if task.state == "PENDING":
        data["message"] = "Job is queued or unknown"
    elif task.state == "SUCCESS":
        data["result"] = task.result
    elif task.state == "FAILURE":
        data["error"] = str(task.info) if task.info else "Unknown error"
    elif task.state == "REVOKED":
        data["message"] = "Job was cancelled"

    return ok(data)
