from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from actions.applications import TERMINAL_STATUSES, lock_application
from actions.helpers import append_audit, require_admin, require_auth
from models import Application, Job, JobTask, TaskAssignment
from utils import (
    AuthContext,
    ConflictError,
    NotFoundError,
    ValidationError,
    as_int,
    iso_utc_now,
    new_id,
    parse_datetime_maybe,
    require_str,
    to_iso_utc,
)


ASSIGNMENT_STATUSES = ("pending", "in_progress", "submitted", "reviewed")
OPEN_STATUSES = {"pending", "in_progress"}


def _serialize_task(task: JobTask) -> dict[str, Any]:
    return {
        "taskId": task.id,
        "jobId": task.job_id,
        "title": task.title or "",
        "description": task.description or "",
        "instructions": task.instructions or "",
        "estimatedHours": task.estimated_hours,
        "isActive": bool(task.is_active),
        "updatedAt": task.updated_at or "",
    }


def _is_overdue(row: TaskAssignment, now: datetime | None = None) -> bool:
    due = parse_datetime_maybe(row.due_date)
    if due is None or row.status not in OPEN_STATUSES:
        return False
    return (now or datetime.now(timezone.utc)) > due


def serialize_assignment(row: TaskAssignment, task: JobTask | None = None, *, admin: bool = False) -> dict[str, Any]:
    out = {
        "assignmentId": row.id,
        "taskId": row.task_id,
        "applicationId": row.application_id,
        "status": row.status,
        "dueDate": row.due_date or "",
        "overdue": _is_overdue(row),
        "submissionUrl": row.submission_url or "",
        "submissionNotes": row.submission_notes or "",
        "submittedAt": row.submitted_at or "",
        "score": row.score if row.status == "reviewed" or admin else None,
        "reviewerNotes": (row.reviewer_notes or "") if row.status == "reviewed" or admin else "",
        "reviewedAt": row.reviewed_at or "",
        "assignedAt": row.assigned_at or "",
    }
    if admin:
        out["reviewedBy"] = row.reviewed_by or ""
    if task is not None:
        out["task"] = _serialize_task(task)
    return out


def _lock_assignment(db, assignment_id: str) -> TaskAssignment:
    row = (
        db.execute(
            select(TaskAssignment)
            .where(TaskAssignment.id == assignment_id)
            .with_for_update(of=TaskAssignment)
            .execution_options(populate_existing=True)
        )
        .scalars()
        .first()
    )
    if not row:
        raise NotFoundError("Task assignment not found")
    return row


def _assignment_for_actor(db, data, auth: AuthContext) -> TaskAssignment:
    row = _lock_assignment(db, require_str(data, "assignmentId"))
    if not auth.is_admin:
        owner = db.execute(select(Application.user_id).where(Application.id == row.application_id)).scalar()
        if str(owner or "") != str(auth.userId):
            raise NotFoundError("Task assignment not found")
    return row


def task_upsert(data, auth: AuthContext | None, db, cfg):
    auth = require_admin(auth)
    data = data or {}
    now = iso_utc_now()

    task_id = str(data.get("taskId") or "").strip()
    task = db.get(JobTask, task_id) if task_id else None
    if task_id and task is None:
        raise NotFoundError("Task not found")

    created = task is None
    if created:
        job_id = require_str(data, "jobId")
        if db.get(Job, job_id) is None:
            raise NotFoundError("Job not found")
        task = JobTask(
            id=new_id("TASK"),
            job_id=job_id,
            title=require_str(data, "title"),
            description=require_str(data, "description"),
            is_active=True,
            created_at=now,
        )
        db.add(task)
    else:
        if "title" in data:
            task.title = require_str(data, "title")
        if "description" in data:
            task.description = require_str(data, "description")

    if "instructions" in data:
        task.instructions = str(data.get("instructions") or "").strip()
    if "estimatedHours" in data:
        raw = data.get("estimatedHours")
        task.estimated_hours = None if raw is None else as_int(raw, field="estimatedHours", min_v=1, max_v=500)
    if "isActive" in data:
        task.is_active = bool(data.get("isActive"))
    task.updated_at = now
    db.flush()

    append_audit(
        db,
        entityType="JOB_TASK",
        entityId=task.id,
        action="TASK_CREATE" if created else "TASK_UPDATE",
        actor=auth,
        at=now,
        meta={"jobId": task.job_id, "isActive": bool(task.is_active)},
    )
    return _serialize_task(task)


def tasks_list(data, auth: AuthContext | None, db, cfg):
    require_admin(auth)
    job_id = str((data or {}).get("jobId") or "").strip()
    q = select(JobTask)
    if job_id:
        q = q.where(JobTask.job_id == job_id)
    rows = db.execute(q.order_by(JobTask.created_at.desc())).scalars().all()
    return {"items": [_serialize_task(t) for t in rows], "total": len(rows)}


def task_assign(data, auth: AuthContext | None, db, cfg):
    auth = require_admin(auth)
    data = data or {}
    application = lock_application(db, application_id=require_str(data, "applicationId"))
    task = db.get(JobTask, require_str(data, "taskId"))
    if task is None:
        raise NotFoundError("Task not found")

    if application.status in TERMINAL_STATUSES:
        raise ConflictError("STALE_STATE", f"Application is already {application.status}")
    if not task.is_active:
        raise ValidationError("BAD_REQUEST", "Task is not active")
    if task.job_id != application.job_id:
        raise ValidationError("BAD_REQUEST", "Task belongs to a different job")

    now_dt = datetime.now(timezone.utc)
    if data.get("dueDate"):
        due = parse_datetime_maybe(data.get("dueDate"))
        if due is None:
            raise ValidationError("BAD_REQUEST", "Invalid dueDate")
        if due <= now_dt:
            raise ValidationError("BAD_REQUEST", "dueDate must be in the future")
    else:
        due = now_dt + timedelta(days=max(1, int(cfg.TASK_DEFAULT_DUE_DAYS)))

    existing = (
        db.execute(
            select(TaskAssignment.id)
            .where(TaskAssignment.task_id == task.id)
            .where(TaskAssignment.application_id == application.id)
        )
        .scalars()
        .first()
    )
    if existing:
        raise ConflictError("TASK_ALREADY_ASSIGNED", "Task is already assigned to this application")

    now = to_iso_utc(now_dt)
    row = TaskAssignment(
        id=new_id("TASKA"),
        task_id=task.id,
        application_id=application.id,
        status="pending",
        due_date=to_iso_utc(due),
        assigned_at=now,
    )
    db.add(row)
    try:
        db.flush()
    except IntegrityError:
        raise ConflictError("TASK_ALREADY_ASSIGNED", "Task is already assigned to this application")

    append_audit(
        db,
        entityType="TASK_ASSIGNMENT",
        entityId=row.id,
        action="TASK_ASSIGN",
        toState="pending",
        actor=auth,
        at=now,
        meta={"taskId": task.id, "applicationId": application.id, "dueDate": row.due_date},
    )
    return serialize_assignment(row, task, admin=True)


def task_start(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    row = _assignment_for_actor(db, data, auth)
    if row.status == "in_progress":
        return serialize_assignment(row)
    if row.status != "pending":
        raise ConflictError("TASK_ALREADY_SUBMITTED", f"Task is already {row.status}")

    row.status = "in_progress"
    append_audit(db, entityType="TASK_ASSIGNMENT", entityId=row.id, action="TASK_START", fromState="pending", toState="in_progress", actor=auth)
    return serialize_assignment(row)


def task_submit(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    data = data or {}
    row = _assignment_for_actor(db, data, auth)
    url = require_str(data, "submissionUrl")
    if not url.lower().startswith(("http://", "https://")):
        raise ValidationError("BAD_REQUEST", "submissionUrl must be an http(s) link")
    if row.status not in OPEN_STATUSES:
        raise ConflictError("TASK_ALREADY_SUBMITTED", f"Task is already {row.status}")

    now_dt = datetime.now(timezone.utc)
    late = _is_overdue(row, now_dt)
    prev = row.status
    row.status = "submitted"
    row.submission_url = url
    row.submission_notes = str(data.get("submissionNotes") or "").strip()
    row.submitted_at = to_iso_utc(now_dt)

    append_audit(
        db,
        entityType="TASK_ASSIGNMENT",
        entityId=row.id,
        action="TASK_SUBMIT",
        fromState=prev,
        toState="submitted",
        actor=auth,
        at=row.submitted_at,
        meta={"late": late},
    )
    out = serialize_assignment(row)
    out["late"] = late
    return out


def task_review(data, auth: AuthContext | None, db, cfg):
    auth = require_admin(auth)
    data = data or {}
    row = _lock_assignment(db, require_str(data, "assignmentId"))
    score = as_int(data.get("score"), field="score", min_v=0, max_v=100)
    if row.status not in {"submitted", "reviewed"}:
        raise ConflictError("STALE_STATE", "Task has not been submitted")

    prev = row.status
    now = iso_utc_now()
    row.status = "reviewed"
    row.score = score
    row.reviewer_notes = str(data.get("reviewerNotes") or "").strip()
    row.reviewed_at = now
    row.reviewed_by = auth.userId

    append_audit(
        db,
        entityType="TASK_ASSIGNMENT",
        entityId=row.id,
        action="TASK_REVIEW",
        fromState=prev,
        toState="reviewed",
        actor=auth,
        at=now,
        meta={"score": score},
    )
    return serialize_assignment(row, admin=True)


def my_tasks(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    rows = db.execute(
        select(TaskAssignment, JobTask, Application)
        .join(JobTask, JobTask.id == TaskAssignment.task_id)
        .join(Application, Application.id == TaskAssignment.application_id)
        .where(Application.user_id == auth.userId)
        .order_by(TaskAssignment.assigned_at.desc())
    ).all()

    jobs = {}
    job_ids = sorted({a.job_id for _r, _t, a in rows})
    if job_ids:
        jobs = {j.id: j for j in db.execute(select(Job).where(Job.id.in_(job_ids))).scalars()}

    items = []
    for row, task, application in rows:
        item = serialize_assignment(row, task)
        job = jobs.get(application.job_id)
        item["jobTitle"] = job.title if job else ""
        items.append(item)
    return {"items": items, "total": len(items)}


def task_submissions_list(data, auth: AuthContext | None, db, cfg):
    require_admin(auth)
    data = data or {}
    job_id = str(data.get("jobId") or "").strip()
    status = str(data.get("status") or "").strip().lower()

    q = (
        select(TaskAssignment, JobTask, Application)
        .join(JobTask, JobTask.id == TaskAssignment.task_id)
        .join(Application, Application.id == TaskAssignment.application_id)
    )
    if job_id:
        q = q.where(JobTask.job_id == job_id)
    if status:
        if status not in ASSIGNMENT_STATUSES:
            raise ValidationError("BAD_REQUEST", f"Invalid status: {status}")
        q = q.where(TaskAssignment.status == status)
    rows = db.execute(q.order_by(TaskAssignment.assigned_at.desc())).all()

    items = []
    counts = {s: 0 for s in ASSIGNMENT_STATUSES}
    for row, task, application in rows:
        item = serialize_assignment(row, task, admin=True)
        item["userId"] = application.user_id
        items.append(item)
        counts[row.status] = counts.get(row.status, 0) + 1
    return {"items": items, "total": len(items), "byStatus": counts}
