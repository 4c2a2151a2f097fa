from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from actions.applications import (
    TERMINAL_STATUSES,
    apply_round_outcome,
    lock_application,
    open_attempt_for,
)
from actions.helpers import append_audit, require_admin, require_auth
from models import Answer, Application, Job, TestAttempt, Violation
from services.question_bank import get_question_bank
from utils import (
    SYSTEM_AUTH,
    ApiError,
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

log = logging.getLogger("assessments")


VIOLATION_TYPES = {
    "tab_switch",
    "window_blur",
    "copy_paste",
    "right_click",
    "fullscreen_exit",
    "keyboard_shortcut",
    "keyboard_restricted",
    "devtools_attempt",
    "window_close_attempt",
    "refresh_attempt",
}


def passing_marks_for(total_marks: int, pass_percent: int) -> int:
    return int(math.ceil(int(total_marks) * int(pass_percent) / 100.0))


def deadline_of(attempt: TestAttempt) -> Optional[datetime]:
    started = parse_datetime_maybe(attempt.started_at)
    if started is None:
        return None
    return started + timedelta(minutes=int(attempt.duration_minutes or 0))


def remaining_seconds(attempt: TestAttempt, now: datetime | None = None) -> int:
    if attempt.is_submitted:
        return 0
    dl = deadline_of(attempt)
    if dl is None:
        return 0
    now = now or datetime.now(timezone.utc)
    return max(0, int((dl - now).total_seconds()))


def serialize_attempt(attempt: TestAttempt) -> dict[str, Any]:
    return {
        "attemptId": attempt.id,
        "applicationId": attempt.application_id,
        "roundNumber": int(attempt.round_number or 1),
        "startedAt": attempt.started_at or "",
        "endedAt": attempt.ended_at or "",
        "durationMinutes": int(attempt.duration_minutes or 0),
        "totalMarks": int(attempt.total_marks or 0),
        "passingMarks": int(attempt.passing_marks or 0),
        "obtainedMarks": attempt.obtained_marks,
        "isSubmitted": bool(attempt.is_submitted),
        "autoSubmitted": bool(attempt.auto_submitted),
        "isPassed": attempt.is_passed,
    }


def _result(attempt: TestAttempt, *, already: bool) -> dict[str, Any]:
    return {
        "attemptId": attempt.id,
        "alreadySubmitted": already,
        "obtainedMarks": int(attempt.obtained_marks or 0),
        "totalMarks": int(attempt.total_marks or 0),
        "passingMarks": int(attempt.passing_marks or 0),
        "isPassed": bool(attempt.is_passed),
        "autoSubmitted": bool(attempt.auto_submitted),
        "endedAt": attempt.ended_at or "",
    }


def _lock_attempt(db, attempt_id: str) -> TestAttempt:
    att = (
        db.execute(
            select(TestAttempt)
            .where(TestAttempt.id == attempt_id)
            .with_for_update(of=TestAttempt)
            .execution_options(populate_existing=True)
        )
        .scalars()
        .first()
    )
    if not att:
        raise NotFoundError("Attempt not found")
    return att


def _attempt_for_actor(db, attempt_id: str, auth: AuthContext) -> TestAttempt:
    att = db.get(TestAttempt, str(attempt_id or "").strip())
    if not att or (not auth.is_admin and str(att.user_id) != str(auth.userId)):
        raise NotFoundError("Attempt not found")
    return att


def start_attempt(
    db,
    *,
    application: Application,
    round_number: int,
    duration_minutes: int,
    total_marks: int,
    passing_marks: int,
    actor: AuthContext | None,
) -> TestAttempt:
    if duration_minutes <= 0:
        raise ValidationError("BAD_REQUEST", "durationMinutes must be > 0")
    if total_marks < 0 or passing_marks < 0 or passing_marks > total_marks:
        raise ValidationError("BAD_REQUEST", "Invalid marks")
    if open_attempt_for(db, application.id, round_number) is not None:
        raise ConflictError("ATTEMPT_ALREADY_ACTIVE", "A test attempt for this round is already open")

    now = iso_utc_now()
    att = TestAttempt(
        id=new_id("ATT"),
        application_id=application.id,
        user_id=application.user_id,
        round_number=int(round_number),
        started_at=now,
        ended_at=None,
        duration_minutes=int(duration_minutes),
        total_marks=int(total_marks),
        passing_marks=int(passing_marks),
        obtained_marks=None,
        is_submitted=False,
        auto_submitted=False,
        is_passed=None,
    )
    db.add(att)
    try:
        db.flush()
    except IntegrityError:
        raise ConflictError("ATTEMPT_ALREADY_ACTIVE", "A test attempt for this round is already open")

    append_audit(
        db,
        entityType="TEST_ATTEMPT",
        entityId=att.id,
        action="TEST_START",
        toState="in_progress",
        actor=actor,
        at=now,
        meta={"applicationId": application.id, "round": int(round_number), "durationMinutes": int(duration_minutes)},
    )
    return att


def submit_attempt(db, *, attempt_id: str, auto: bool, actor: AuthContext | None, reason: str = "") -> dict[str, Any]:
    """
    Score and close an attempt. Safe to call more than once: a second call
    returns the stored result with `alreadySubmitted=True` and changes nothing.

    Locks the application before the attempt, the same order every other
    transition uses.
    """
    found = db.get(TestAttempt, str(attempt_id or "").strip())
    if not found:
        raise NotFoundError("Attempt not found")
    application = db.execute(
        select(Application)
        .where(Application.id == found.application_id)
        .with_for_update(of=Application)
        .execution_options(populate_existing=True)
    ).scalars().first()
    att = _lock_attempt(db, found.id)

    if att.is_submitted:
        return _result(att, already=True)

    bank = get_question_bank()
    refs = {q.question_id: q for q in bank.round_questions(db, job_id=application.job_id if application else "", round_number=att.round_number)}
    answers = db.execute(select(Answer).where(Answer.test_attempt_id == att.id)).scalars().all()

    obtained = 0
    for ans in answers:
        ref = refs.get(str(ans.question_id))
        ans.is_correct = bool(ref and ref.is_correct(ans.selected_answer))
        if ans.is_correct:
            obtained += int(ref.marks)

    now = iso_utc_now()
    att.obtained_marks = obtained
    att.is_passed = obtained >= int(att.passing_marks or 0)
    att.is_submitted = True
    att.auto_submitted = bool(auto)
    att.ended_at = now
    db.flush()

    append_audit(
        db,
        entityType="TEST_ATTEMPT",
        entityId=att.id,
        action="TEST_AUTO_SUBMIT" if auto else "TEST_SUBMIT",
        fromState="in_progress",
        toState="passed" if att.is_passed else "failed",
        remark=reason,
        actor=actor,
        at=now,
        meta={"obtainedMarks": obtained, "totalMarks": int(att.total_marks or 0), "answered": len(answers)},
    )

    if (
        application is not None
        and application.status not in TERMINAL_STATUSES
        and int(application.current_round or 1) == int(att.round_number)
    ):
        apply_round_outcome(
            db,
            application=application,
            outcome="pass" if att.is_passed else "fail",
            actor=actor,
            source="test",
        )
    return _result(att, already=False)


def sweep_expired(db, *, now: datetime | None = None, limit: int = 500) -> list[dict[str, Any]]:
    """Auto-submit every open attempt whose time is up as of `now`."""
    now = now or datetime.now(timezone.utc)
    rows = (
        db.execute(
            select(TestAttempt)
            .where(TestAttempt.is_submitted == False)  # noqa: E712
            .order_by(TestAttempt.started_at.asc())
            .limit(int(limit))
        )
        .scalars()
        .all()
    )

    due = []
    for att in rows:
        dl = deadline_of(att)
        if dl is not None and now >= dl:
            due.append(att.id)

    out = []
    for attempt_id in due:
        # One savepoint per attempt; a failure leaves the rest of the batch intact.
        try:
            with db.begin_nested():
                res = submit_attempt(db, attempt_id=attempt_id, auto=True, actor=SYSTEM_AUTH, reason="TIME_LIMIT_EXCEEDED")
        except (ApiError, SQLAlchemyError):
            log.exception("sweep could not auto-submit attempt_id=%s", attempt_id)
            continue
        if not res["alreadySubmitted"]:
            out.append(res)
    if out:
        log.info("sweep auto-submitted %s attempt(s) as of %s", len(out), to_iso_utc(now))
    return out


def attempt_start(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    data = data or {}
    application = lock_application(db, application_id=require_str(data, "applicationId"))
    if not auth.is_admin and str(application.user_id) != str(auth.userId):
        raise NotFoundError("Application not found")

    round_number = as_int(data.get("roundNumber"), field="roundNumber", default=application.current_round, min_v=1)
    if application.status in TERMINAL_STATUSES:
        raise ConflictError("STALE_STATE", f"Application is already {application.status}")
    if round_number != int(application.current_round or 1):
        raise ConflictError("STALE_STATE", f"Application is at round {application.current_round}")
    if open_attempt_for(db, application.id, round_number) is not None:
        raise ConflictError("ATTEMPT_ALREADY_ACTIVE", "A test attempt for this round is already open")
    if not application.test_enabled or application.status != "test_enabled":
        raise ConflictError("STALE_STATE", "Test is not enabled for this round")

    job = db.get(Job, application.job_id)
    bank = get_question_bank()
    refs = bank.round_questions(db, job_id=application.job_id, round_number=round_number)
    if not refs:
        raise ValidationError("NO_QUESTIONS", "No questions configured for this round")

    total = sum(int(q.marks) for q in refs)
    duration = int((job.test_time_minutes if job else 0) or cfg.DEFAULT_TEST_MINUTES)
    att = start_attempt(
        db,
        application=application,
        round_number=round_number,
        duration_minutes=duration,
        total_marks=total,
        passing_marks=passing_marks_for(total, cfg.TEST_PASS_PERCENT),
        actor=auth,
    )

    prev = application.status
    application.status = "test_taken"
    application.updated_at = att.started_at
    application.updated_by = auth.userId
    append_audit(
        db,
        entityType="APPLICATION",
        entityId=application.id,
        action="TEST_TAKEN",
        fromState=prev,
        toState="test_taken",
        actor=auth,
        meta={"attemptId": att.id, "round": round_number},
    )

    out = serialize_attempt(att)
    out["remainingSeconds"] = remaining_seconds(att)
    out["questions"] = bank.public_questions(db, job_id=application.job_id, round_number=round_number)
    return out


def attempt_get(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    data = data or {}
    attempt_id = str(data.get("attemptId") or "").strip()

    if attempt_id:
        att = _attempt_for_actor(db, attempt_id, auth)
    else:
        app_id = require_str(data, "applicationId")
        application = db.get(Application, app_id)
        if not application or (not auth.is_admin and str(application.user_id) != str(auth.userId)):
            raise NotFoundError("Application not found")
        att = open_attempt_for(db, application.id, application.current_round)
        if att is None:
            raise NotFoundError("No open attempt", code="NO_OPEN_ATTEMPT")

    application = db.get(Application, att.application_id)
    answers = db.execute(select(Answer).where(Answer.test_attempt_id == att.id)).scalars().all()
    violations = int(
        db.execute(select(func.coalesce(func.sum(Violation.violation_count), 0)).where(Violation.test_attempt_id == att.id)).scalar()
        or 0
    )

    out = serialize_attempt(att)
    out["remainingSeconds"] = remaining_seconds(att)
    out["violationCount"] = violations
    out["answers"] = {str(a.question_id): a.selected_answer for a in answers}
    if not att.is_submitted and application is not None:
        out["questions"] = get_question_bank().public_questions(db, job_id=application.job_id, round_number=att.round_number)
    return out


def answer_record(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    data = data or {}
    att = _attempt_for_actor(db, require_str(data, "attemptId"), auth)
    question_id = require_str(data, "questionId")
    selected = data.get("selectedAnswer")
    if selected is None or not str(selected).strip():
        raise ValidationError("BAD_REQUEST", "Missing selectedAnswer")

    att = _lock_attempt(db, att.id)
    if att.is_submitted:
        raise ConflictError("ATTEMPT_SUBMITTED", "Attempt is already submitted")

    now_dt = datetime.now(timezone.utc)
    dl = deadline_of(att)
    if dl is not None and now_dt > dl + timedelta(seconds=max(0, int(cfg.TEST_ANSWER_GRACE_SECONDS))):
        raise ConflictError("ATTEMPT_EXPIRED", "Time is up for this attempt")

    application = db.get(Application, att.application_id)
    known = {q.question_id for q in get_question_bank().round_questions(db, job_id=application.job_id, round_number=att.round_number)}
    if question_id not in known:
        raise ValidationError("BAD_REQUEST", "Question is not part of this test")

    now = to_iso_utc(now_dt)
    row = (
        db.execute(select(Answer).where(Answer.test_attempt_id == att.id).where(Answer.question_id == question_id))
        .scalars()
        .first()
    )
    if row is None:
        row = Answer(test_attempt_id=att.id, question_id=question_id, selected_answer=str(selected).strip(), updated_at=now)
        db.add(row)
    else:
        row.selected_answer = str(selected).strip()
        row.updated_at = now
    db.flush()

    return {"attemptId": att.id, "questionId": question_id, "savedAt": now, "remainingSeconds": remaining_seconds(att, now_dt)}


def violation_record(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    data = data or {}
    att = _attempt_for_actor(db, require_str(data, "attemptId"), auth)
    vtype = str(data.get("violationType") or "").strip().lower()
    if vtype not in VIOLATION_TYPES:
        raise ValidationError("BAD_REQUEST", f"Unknown violationType: {vtype}")

    db.execute(select(Application.id).where(Application.id == att.application_id).with_for_update(of=Application))
    att = _lock_attempt(db, att.id)
    if att.is_submitted:
        raise ConflictError("ATTEMPT_SUBMITTED", "Attempt is already submitted")

    now = iso_utc_now()
    row = (
        db.execute(select(Violation).where(Violation.test_attempt_id == att.id).where(Violation.violation_type == vtype))
        .scalars()
        .first()
    )
    if row is None:
        row = Violation(test_attempt_id=att.id, user_id=att.user_id, violation_type=vtype, violation_count=1, first_at=now, last_at=now)
        db.add(row)
    else:
        row.violation_count = int(row.violation_count or 0) + 1
        row.last_at = now
    db.flush()

    total = int(
        db.execute(select(func.coalesce(func.sum(Violation.violation_count), 0)).where(Violation.test_attempt_id == att.id)).scalar()
        or 0
    )
    append_audit(
        db,
        entityType="TEST_ATTEMPT",
        entityId=att.id,
        action="TEST_VIOLATION",
        remark=vtype,
        actor=auth,
        at=now,
        meta={"type": vtype, "count": int(row.violation_count), "total": total},
    )

    out: dict[str, Any] = {"attemptId": att.id, "violationType": vtype, "count": int(row.violation_count), "total": total}
    limit = int(cfg.TEST_MAX_VIOLATIONS or 0)
    out["autoSubmitted"] = False
    if limit > 0 and total >= limit:
        out["result"] = submit_attempt(db, attempt_id=att.id, auto=True, actor=auth, reason="VIOLATION_LIMIT")
        out["autoSubmitted"] = True
    return out


def attempt_submit(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    att = _attempt_for_actor(db, require_str(data, "attemptId"), auth)
    return submit_attempt(db, attempt_id=att.id, auto=False, actor=auth)


def results_list(data, auth: AuthContext | None, db, cfg):
    """Admin review of attempts for a job, with every answer marked and violations totalled."""
    require_admin(auth)
    data = data or {}
    job_id = str(data.get("jobId") or "").strip()
    round_number = data.get("roundNumber")
    submitted_only = str(data.get("submittedOnly", True)).strip().lower() not in {"false", "0", "no"}
    page_size = as_int(data.get("pageSize"), field="pageSize", default=50, min_v=1, max_v=500)
    page = as_int(data.get("page"), field="page", default=1, min_v=1)

    q = select(TestAttempt, Application).join(Application, Application.id == TestAttempt.application_id)
    cq = select(func.count(TestAttempt.id)).join(Application, Application.id == TestAttempt.application_id)
    filters = []
    if job_id:
        filters.append(Application.job_id == job_id)
    if round_number is not None and str(round_number).strip():
        filters.append(TestAttempt.round_number == as_int(round_number, field="roundNumber", min_v=1))
    if submitted_only:
        filters.append(TestAttempt.is_submitted == True)  # noqa: E712
    for f in filters:
        q = q.where(f)
        cq = cq.where(f)

    total = int(db.execute(cq).scalar() or 0)
    rows = db.execute(
        q.order_by(TestAttempt.started_at.desc()).offset((page - 1) * page_size).limit(page_size)
    ).all()
    attempt_ids = [att.id for att, _app in rows]

    answers: dict[str, list[dict[str, Any]]] = {}
    violations: dict[str, dict[str, int]] = {}
    if attempt_ids:
        for a in db.execute(
            select(Answer).where(Answer.test_attempt_id.in_(attempt_ids)).order_by(Answer.question_id.asc())
        ).scalars():
            answers.setdefault(a.test_attempt_id, []).append(
                {"questionId": a.question_id, "selectedAnswer": a.selected_answer, "isCorrect": a.is_correct}
            )
        for v in db.execute(select(Violation).where(Violation.test_attempt_id.in_(attempt_ids))).scalars():
            violations.setdefault(v.test_attempt_id, {})[v.violation_type] = int(v.violation_count or 0)

    items = []
    for att, application in rows:
        item = serialize_attempt(att)
        by_type = violations.get(att.id, {})
        item.update(
            jobId=application.job_id,
            userId=application.user_id,
            applicationStatus=application.status,
            answers=answers.get(att.id, []),
            violations=by_type,
            violationCount=sum(by_type.values()),
        )
        items.append(item)
    return {"items": items, "total": total, "page": page, "pageSize": page_size}


def timeout_sweep(data, auth: AuthContext | None, db, cfg):
    require_admin(auth)
    data = data or {}
    now = None
    if data.get("now"):
        now = parse_datetime_maybe(data.get("now"))
        if now is None:
            raise ValidationError("BAD_REQUEST", "Invalid now")
    limit = as_int(data.get("limit"), field="limit", default=500, min_v=1, max_v=5000)
    results = sweep_expired(db, now=now, limit=limit)
    return {"submitted": len(results), "items": results}
