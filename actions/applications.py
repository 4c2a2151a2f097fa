from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError

from actions.helpers import append_audit, require_admin, require_auth
from actions.slots import release, reserve
from models import (
    Answer,
    Application,
    CandidateEvaluation,
    EvaluationScore,
    Job,
    JobRound,
    TestAttempt,
    TaskAssignment,
    Violation,
)
from utils import (
    AuthContext,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
    as_int,
    iso_utc_now,
    new_id,
    require_str,
)


STATUSES = (
    "applied",
    "slot_selected",
    "test_enabled",
    "test_taken",
    "passed",
    "failed",
    "selected",
    "rejected",
)
TERMINAL_STATUSES = {"selected", "rejected"}

# States from which an admin may open the current round's test.
TEST_ENABLE_FROM = {"slot_selected", "passed", "failed"}


def lock_application(db, *, application_id: str) -> Application:
    aid = str(application_id or "").strip()
    if not aid:
        raise ValidationError("BAD_REQUEST", "Missing applicationId")

    app_row = (
        db.execute(
            select(Application)
            .where(Application.id == aid)
            .with_for_update(of=Application)
            .execution_options(populate_existing=True)
        )
        .scalars()
        .first()
    )
    if not app_row:
        raise NotFoundError("Application not found")
    return app_row


def _load_for_actor(db, data, auth: AuthContext, *, lock: bool = True) -> Application:
    aid = require_str(data, "applicationId")
    if lock:
        app_row = lock_application(db, application_id=aid)
    else:
        app_row = db.get(Application, aid)
        if not app_row:
            raise NotFoundError("Application not found")
    if not auth.is_admin and str(app_row.user_id) != str(auth.userId):
        # Don't leak existence of other candidates' applications.
        raise NotFoundError("Application not found")
    return app_row


def _check_expected(app_row: Application, data) -> None:
    expected = str((data or {}).get("expectedStatus") or "").strip().lower()
    if expected and expected != app_row.status:
        raise ConflictError("STALE_STATE", f"Application is {app_row.status}, expected {expected}")


def ensure_not_terminal(app_row: Application) -> None:
    if app_row.status in TERMINAL_STATUSES:
        raise ConflictError("STALE_STATE", f"Application is already {app_row.status}")


def _touch(app_row: Application, actor: AuthContext | None, now: str | None = None) -> None:
    app_row.updated_at = now or iso_utc_now()
    app_row.updated_by = actor.userId if actor else "SYSTEM"


def _job_or_404(db, job_id: str) -> Job:
    job = db.get(Job, str(job_id or ""))
    if not job:
        raise NotFoundError("Job not found")
    return job


def open_attempt_for(db, application_id: str, round_number: int) -> Optional[TestAttempt]:
    return (
        db.execute(
            select(TestAttempt)
            .where(TestAttempt.application_id == application_id)
            .where(TestAttempt.round_number == int(round_number))
            .where(TestAttempt.is_submitted == False)  # noqa: E712
        )
        .scalars()
        .first()
    )


def latest_evaluation(db, application_id: str, round_number: int) -> Optional[CandidateEvaluation]:
    return (
        db.execute(
            select(CandidateEvaluation)
            .where(CandidateEvaluation.application_id == application_id)
            .where(CandidateEvaluation.round_number == int(round_number))
            .order_by(CandidateEvaluation.seq.desc())
            .limit(1)
        )
        .scalars()
        .first()
    )


def latest_submitted_attempt(db, application_id: str, round_number: int) -> Optional[TestAttempt]:
    return (
        db.execute(
            select(TestAttempt)
            .where(TestAttempt.application_id == application_id)
            .where(TestAttempt.round_number == int(round_number))
            .where(TestAttempt.is_submitted == True)  # noqa: E712
            .order_by(TestAttempt.ended_at.desc(), TestAttempt.started_at.desc())
            .limit(1)
        )
        .scalars()
        .first()
    )


def round_evidence(db, application_id: str, round_number: int):
    """
    The record that decides a round: ("test", attempt), ("evaluation", evaluation)
    or (None, None). The later of the latest submitted attempt and the latest
    evaluation wins; an evaluation recorded in the same instant wins the tie.
    """
    att = latest_submitted_attempt(db, application_id, round_number)
    ev = latest_evaluation(db, application_id, round_number)
    if ev is not None and (att is None or (ev.created_at or "") >= (att.ended_at or "")):
        return "evaluation", ev
    if att is not None:
        return "test", att
    return None, None


def serialize_application(app_row: Application, job: Job | None = None) -> dict[str, Any]:
    out = {
        "applicationId": app_row.id,
        "jobId": app_row.job_id,
        "userId": app_row.user_id,
        "slotId": app_row.slot_id or "",
        "currentRound": int(app_row.current_round or 1),
        "adminApproved": bool(app_row.admin_approved),
        "testEnabled": bool(app_row.test_enabled),
        "status": app_row.status,
        "version": int(app_row.version or 0),
        "createdAt": app_row.created_at or "",
        "updatedAt": app_row.updated_at or "",
    }
    if job is not None:
        out["jobTitle"] = job.title or ""
        out["totalRounds"] = int(job.total_rounds or 1)
    return out


def apply_round_outcome(
    db,
    *,
    application: Application,
    outcome: str,
    actor: AuthContext | None,
    source: str,
    job: Job | None = None,
) -> str:
    """
    Move `application` on from its current round.

    pass: next round (status passed, test closed) or `selected` on the last round.
    fail: `failed`, which an admin can still override. hold: nothing changes.
    """
    ensure_not_terminal(application)
    outcome = str(outcome or "").strip().lower()
    if outcome not in {"pass", "fail", "hold"}:
        raise ValidationError("BAD_REQUEST", f"Invalid outcome: {outcome}")
    if outcome == "hold":
        return application.status

    job = job or _job_or_404(db, application.job_id)
    total_rounds = max(1, int(job.total_rounds or 1))
    from_state = application.status
    from_round = int(application.current_round or 1)

    if outcome == "pass":
        if from_round < total_rounds:
            application.current_round = from_round + 1
            application.status = "passed"
        else:
            application.status = "selected"
    else:
        application.status = "failed"
    application.test_enabled = False
    _touch(application, actor)

    append_audit(
        db,
        entityType="APPLICATION",
        entityId=application.id,
        action="ROUND_OUTCOME",
        fromState=from_state,
        toState=application.status,
        remark=outcome,
        actor=actor,
        meta={"source": source, "round": from_round, "currentRound": int(application.current_round)},
    )
    return application.status


def _evidence_outcome(db, app_row: Application) -> tuple[str, str]:
    source, row = round_evidence(db, app_row.id, app_row.current_round)
    if source == "evaluation":
        return str(row.recommendation or "hold"), source
    if source == "test":
        return ("pass" if row.is_passed else "fail"), source
    raise ValidationError("NO_OUTCOME", f"No test result or evaluation for round {app_row.current_round}")


def _purge_progress(db, application_id: str) -> dict[str, int]:
    attempt_ids = select(TestAttempt.id).where(TestAttempt.application_id == application_id)
    eval_ids = select(CandidateEvaluation.id).where(CandidateEvaluation.application_id == application_id)

    counts = {}
    counts["answers"] = db.execute(delete(Answer).where(Answer.test_attempt_id.in_(attempt_ids))).rowcount or 0
    counts["violations"] = db.execute(delete(Violation).where(Violation.test_attempt_id.in_(attempt_ids))).rowcount or 0
    counts["attempts"] = db.execute(delete(TestAttempt).where(TestAttempt.application_id == application_id)).rowcount or 0
    counts["scores"] = db.execute(delete(EvaluationScore).where(EvaluationScore.evaluation_id.in_(eval_ids))).rowcount or 0
    counts["evaluations"] = (
        db.execute(delete(CandidateEvaluation).where(CandidateEvaluation.application_id == application_id)).rowcount or 0
    )
    counts["tasks"] = db.execute(delete(TaskAssignment).where(TaskAssignment.application_id == application_id)).rowcount or 0
    return counts


def apply_to_job(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    data = data or {}
    job_id = require_str(data, "jobId")

    user_id = auth.userId
    if auth.is_admin and str(data.get("userId") or "").strip():
        user_id = str(data.get("userId")).strip()
    elif getattr(cfg, "REQUIRE_PROFILE_COMPLETE", True) and not auth.profileComplete:
        raise ValidationError("PROFILE_INCOMPLETE", "Complete your profile before applying")

    job = _job_or_404(db, job_id)
    if not job.is_active:
        raise ValidationError("JOB_INACTIVE", "Job is not accepting applications")

    existing = (
        db.execute(select(Application.id).where(Application.job_id == job.id).where(Application.user_id == user_id))
        .scalars()
        .first()
    )
    if existing:
        raise ConflictError("ALREADY_APPLIED", "Already applied to this job")

    now = iso_utc_now()
    app_row = Application(
        id=new_id("APP"),
        job_id=job.id,
        user_id=user_id,
        slot_id=None,
        current_round=1,
        admin_approved=False,
        test_enabled=False,
        status="applied",
        created_at=now,
        updated_at=now,
        updated_by=auth.userId,
    )
    db.add(app_row)
    try:
        db.flush()
    except IntegrityError:
        raise ConflictError("ALREADY_APPLIED", "Already applied to this job")

    append_audit(db, entityType="APPLICATION", entityId=app_row.id, action="APPLY", toState="applied", actor=auth, at=now)
    return serialize_application(app_row, job)


def select_slot(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    if not auth.is_admin and getattr(cfg, "REQUIRE_PROFILE_COMPLETE", True) and not auth.profileComplete:
        raise ValidationError("PROFILE_INCOMPLETE", "Complete your profile before booking a slot")

    app_row = _load_for_actor(db, data, auth)
    slot_id = require_str(data, "slotId")
    ensure_not_terminal(app_row)
    _check_expected(app_row, data)
    if app_row.slot_id:
        raise ConflictError("ALREADY_BOOKED", "A slot is already booked for this application")
    if app_row.status != "applied":
        raise ConflictError("STALE_STATE", f"Cannot book a slot while {app_row.status}")

    reserve(db, slot_id=slot_id, application=app_row, actor=auth)
    app_row.status = "slot_selected"
    _touch(app_row, auth)

    append_audit(
        db,
        entityType="APPLICATION",
        entityId=app_row.id,
        action="SLOT_SELECT",
        fromState="applied",
        toState="slot_selected",
        actor=auth,
        meta={"slotId": slot_id},
    )
    return serialize_application(app_row)


def approve(data, auth: AuthContext | None, db, cfg):
    auth = require_admin(auth)
    app_row = lock_application(db, application_id=require_str(data, "applicationId"))
    ensure_not_terminal(app_row)
    _check_expected(app_row, data)

    if not app_row.admin_approved:
        app_row.admin_approved = True
        _touch(app_row, auth)
        append_audit(db, entityType="APPLICATION", entityId=app_row.id, action="APPROVE", toState=app_row.status, actor=auth)
    return serialize_application(app_row)


def reject(data, auth: AuthContext | None, db, cfg):
    auth = require_admin(auth)
    app_row = lock_application(db, application_id=require_str(data, "applicationId"))
    ensure_not_terminal(app_row)
    _check_expected(app_row, data)

    prev = app_row.status
    app_row.status = "rejected"
    app_row.admin_approved = False
    app_row.test_enabled = False
    _touch(app_row, auth)

    append_audit(
        db,
        entityType="APPLICATION",
        entityId=app_row.id,
        action="REJECT",
        fromState=prev,
        toState="rejected",
        remark=str((data or {}).get("remark") or ""),
        actor=auth,
    )
    return serialize_application(app_row)


def enable_test(data, auth: AuthContext | None, db, cfg):
    auth = require_admin(auth)
    app_row = lock_application(db, application_id=require_str(data, "applicationId"))
    round_number = as_int((data or {}).get("roundNumber"), field="roundNumber", default=app_row.current_round, min_v=1)
    ensure_not_terminal(app_row)
    _check_expected(app_row, data)

    if not app_row.admin_approved:
        raise ConflictError("STALE_STATE", "Application is not approved")
    if round_number != int(app_row.current_round or 1):
        raise ConflictError("STALE_STATE", f"Application is at round {app_row.current_round}")
    if open_attempt_for(db, app_row.id, round_number) is not None:
        raise ConflictError("ATTEMPT_ALREADY_ACTIVE", "A test attempt for this round is still open")
    if app_row.status == "test_enabled" and app_row.test_enabled:
        return serialize_application(app_row)
    if app_row.status not in TEST_ENABLE_FROM:
        raise ConflictError("STALE_STATE", f"Cannot enable a test while {app_row.status}")

    prev = app_row.status
    app_row.test_enabled = True
    app_row.status = "test_enabled"
    _touch(app_row, auth)

    append_audit(
        db,
        entityType="APPLICATION",
        entityId=app_row.id,
        action="TEST_ENABLE",
        fromState=prev,
        toState="test_enabled",
        actor=auth,
        meta={"round": round_number},
    )
    return serialize_application(app_row)


def record_round_outcome(data, auth: AuthContext | None, db, cfg):
    auth = require_admin(auth)
    app_row = lock_application(db, application_id=require_str(data, "applicationId"))
    ensure_not_terminal(app_row)
    _check_expected(app_row, data)

    outcome, source = _evidence_outcome(db, app_row)
    status = apply_round_outcome(db, application=app_row, outcome=outcome, actor=auth, source=source)
    return {"outcome": outcome, "source": source, "status": status, "application": serialize_application(app_row)}


def advance_round(data, auth: AuthContext | None, db, cfg):
    auth = require_admin(auth)
    app_row = lock_application(db, application_id=require_str(data, "applicationId"))
    ensure_not_terminal(app_row)
    _check_expected(app_row, data)

    if open_attempt_for(db, app_row.id, app_row.current_round) is not None:
        raise ConflictError("ATTEMPT_ALREADY_ACTIVE", "Submit the open test attempt first")

    apply_round_outcome(db, application=app_row, outcome="pass", actor=auth, source="admin")
    return serialize_application(app_row)


def change_job(data, auth: AuthContext | None, db, cfg):
    auth = require_admin(auth)
    data = data or {}
    app_row = lock_application(db, application_id=require_str(data, "applicationId"))
    new_job_id = require_str(data, "newJobId")
    _check_expected(app_row, data)

    if data.get("confirmReset") is not True:
        raise ValidationError("CONFIRM_REQUIRED", "Changing the job discards all round progress; set confirmReset")
    if new_job_id == app_row.job_id:
        raise ValidationError("BAD_REQUEST", "Application is already for this job")

    new_job = _job_or_404(db, new_job_id)
    if not new_job.is_active:
        raise ValidationError("JOB_INACTIVE", "Job is not accepting applications")

    clash = (
        db.execute(
            select(Application.id).where(Application.job_id == new_job.id).where(Application.user_id == app_row.user_id)
        )
        .scalars()
        .first()
    )
    if clash:
        raise ConflictError("ALREADY_APPLIED", "Candidate already holds an application for that job")
    if open_attempt_for(db, app_row.id, app_row.current_round) is not None:
        raise ConflictError("ATTEMPT_ALREADY_ACTIVE", "A test attempt is in progress")

    old_job_id = app_row.job_id
    prev = app_row.status
    released = release(db, application=app_row, actor=auth)
    purged = _purge_progress(db, app_row.id)

    app_row.job_id = new_job.id
    app_row.current_round = 1
    app_row.test_enabled = False
    app_row.admin_approved = False
    app_row.status = "applied"
    _touch(app_row, auth)
    db.flush()

    append_audit(
        db,
        entityType="APPLICATION",
        entityId=app_row.id,
        action="CHANGE_JOB",
        fromState=prev,
        toState="applied",
        actor=auth,
        meta={"fromJobId": old_job_id, "toJobId": new_job.id, "releasedSlotId": released, "purged": purged},
    )
    return serialize_application(app_row, new_job)


def delete_application(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    app_row = _load_for_actor(db, data, auth)
    _check_expected(app_row, data)
    if not auth.is_admin:
        if app_row.status in TERMINAL_STATUSES:
            raise ForbiddenError(f"Cannot withdraw a {app_row.status} application")
        if open_attempt_for(db, app_row.id, app_row.current_round) is not None:
            raise ConflictError("ATTEMPT_ALREADY_ACTIVE", "Submit the open test attempt first")

    released = release(db, application=app_row, actor=auth)
    purged = _purge_progress(db, app_row.id)
    prev = app_row.status
    app_id = app_row.id

    db.delete(app_row)
    db.flush()

    append_audit(
        db,
        entityType="APPLICATION",
        entityId=app_id,
        action="DELETE" if auth.is_admin else "WITHDRAW",
        fromState=prev,
        toState="",
        actor=auth,
        meta={"releasedSlotId": released, "purged": purged},
    )
    return {"applicationId": app_id, "deleted": True, "releasedSlotId": released}


def _round_meta(db, job: Job) -> dict[int, JobRound]:
    rows = db.execute(select(JobRound).where(JobRound.job_id == job.id)).scalars().all()
    return {int(r.round_number): r for r in rows}


def _inferred_status(app_row: Application, round_number: int) -> str:
    # Display fallback for rounds with no deciding record (none at all, or only a hold).
    current = int(app_row.current_round or 1)
    if round_number < current:
        return "passed"
    if round_number > current:
        return "pending"
    if app_row.status == "selected":
        return "passed"
    if app_row.status in {"failed", "rejected"}:
        return "failed"
    return "pending"


def build_breakdown(db, app_row: Application, job: Job | None = None) -> list[dict[str, Any]]:
    from actions.evaluations import evaluation_totals

    job = job or _job_or_404(db, app_row.job_id)
    meta = _round_meta(db, job)
    total_rounds = max(1, int(job.total_rounds or 1))

    out = []
    for n in range(1, total_rounds + 1):
        jr = meta.get(n)
        item: dict[str, Any] = {
            "round": n,
            "name": (jr.name if jr and jr.name else f"Round {n}"),
            "mode": (jr.mode if jr else ""),
            "status": "pending",
            "score": None,
            "total": None,
            "date": "",
            "source": "none",
        }

        source, row = round_evidence(db, app_row.id, n)
        if source == "test":
            item.update(
                status="passed" if row.is_passed else "failed",
                score=int(row.obtained_marks or 0),
                total=int(row.total_marks or 0),
                date=row.ended_at or "",
                source="test",
            )
            out.append(item)
            continue

        if source == "evaluation":
            ev = row
            got, mx = evaluation_totals(db, ev.id)
            item.update(
                # A hold decides nothing; the round reads as the application's position implies.
                status={"pass": "passed", "fail": "failed"}.get(ev.recommendation) or _inferred_status(app_row, n),
                score=got,
                total=mx,
                date=ev.created_at or "",
                source="evaluation",
            )
            out.append(item)
            continue

        if open_attempt_for(db, app_row.id, n) is not None:
            item.update(status="in_progress", source="test")
        else:
            item.update(status=_inferred_status(app_row, n), source="inferred")
        out.append(item)
    return out


def round_breakdown(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    app_row = _load_for_actor(db, data, auth, lock=False)
    job = _job_or_404(db, app_row.job_id)
    return {"application": serialize_application(app_row, job), "rounds": build_breakdown(db, app_row, job)}


def my_applications(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    rows = (
        db.execute(
            select(Application).where(Application.user_id == auth.userId).order_by(Application.created_at.desc())
        )
        .scalars()
        .all()
    )
    items = []
    for a in rows:
        job = db.get(Job, a.job_id)
        item = serialize_application(a, job)
        item["rounds"] = build_breakdown(db, a, job) if job else []
        items.append(item)
    return {"items": items, "total": len(items)}


def applications_list(data, auth: AuthContext | None, db, cfg):
    require_admin(auth)
    data = data or {}
    job_id = str(data.get("jobId") or "").strip()
    status = str(data.get("status") or "").strip().lower()
    page_size = as_int(data.get("pageSize"), field="pageSize", default=50, min_v=1, max_v=500)
    page = as_int(data.get("page"), field="page", default=1, min_v=1)

    q = select(Application)
    cq = select(func.count(Application.id))
    if job_id:
        q = q.where(Application.job_id == job_id)
        cq = cq.where(Application.job_id == job_id)
    if status:
        if status not in STATUSES:
            raise ValidationError("BAD_REQUEST", f"Invalid status: {status}")
        q = q.where(Application.status == status)
        cq = cq.where(Application.status == status)

    total = int(db.execute(cq).scalar() or 0)
    rows = (
        db.execute(q.order_by(Application.created_at.desc()).offset((page - 1) * page_size).limit(page_size))
        .scalars()
        .all()
    )
    jobs = {j.id: j for j in db.execute(select(Job).where(Job.id.in_(sorted({a.job_id for a in rows})))).scalars().all()} if rows else {}
    items = [serialize_application(a, jobs.get(a.job_id)) for a in rows]
    return {"items": items, "total": total, "page": page, "pageSize": page_size}


def _pct(n: int, base: int) -> float:
    return round(n * 100.0 / base, 2) if base else 0.0


def pipeline_stats(data, auth: AuthContext | None, db, cfg):
    require_admin(auth)
    job_id = str((data or {}).get("jobId") or "").strip()

    q = select(Application.status, Application.current_round, Application.admin_approved)
    if job_id:
        q = q.where(Application.job_id == job_id)
    rows = db.execute(q).all()

    if job_id:
        job = _job_or_404(db, job_id)
        max_round = max(1, int(job.total_rounds or 1))
    else:
        max_round = max([int(r.current_round or 1) for r in rows] + [1])

    by_status = {s: 0 for s in STATUSES}
    reached = {n: 0 for n in range(1, max_round + 1)}
    approved = 0
    for status, current_round, admin_approved in rows:
        by_status[status] = by_status.get(status, 0) + 1
        if admin_approved:
            approved += 1
        for n in range(1, min(int(current_round or 1), max_round) + 1):
            reached[n] += 1

    applied = len(rows)
    funnel = [{"stage": "applied", "count": applied, "percent": _pct(applied, applied)}]
    funnel.append({"stage": "approved", "count": approved, "percent": _pct(approved, applied)})
    for n, count in reached.items():
        funnel.append({"stage": f"round_{n}", "count": count, "percent": _pct(count, applied)})
    funnel.append({"stage": "selected", "count": by_status["selected"], "percent": _pct(by_status["selected"], applied)})

    return {
        "jobId": job_id,
        "total": applied,
        "byStatus": by_status,
        "funnel": funnel,
        "rejected": by_status["rejected"],
    }
