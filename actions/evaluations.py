from __future__ import annotations

from typing import Any, Iterable

from sqlalchemy import func, select

from actions.applications import (
    TERMINAL_STATUSES,
    apply_round_outcome,
    lock_application,
    open_attempt_for,
)
from actions.helpers import append_audit, require_admin, require_auth
from cache_layer import cache_get_or_set, cache_invalidate_prefix
from models import Application, CandidateEvaluation, EvaluationParameter, EvaluationScore, Job
from utils import (
    AuthContext,
    ConflictError,
    NotFoundError,
    ValidationError,
    as_int,
    iso_utc_now,
    new_id,
    require_str,
)


RECOMMENDATIONS = {"pass", "fail", "hold"}
PARAMS_CACHE_PREFIX = "EVAL_PARAMS"


def percentage(pairs: Iterable[tuple[int, int]]) -> float:
    """(score, max_score) pairs -> 0..100, two decimals. Never stored."""
    got = 0
    mx = 0
    for score, max_score in pairs:
        got += int(score or 0)
        mx += int(max_score or 0)
    if mx <= 0:
        return 0.0
    return round(got * 100.0 / mx, 2)


def evaluation_totals(db, evaluation_id: str) -> tuple[int, int]:
    row = db.execute(
        select(func.coalesce(func.sum(EvaluationScore.score), 0), func.coalesce(func.sum(EvaluationParameter.max_score), 0))
        .select_from(EvaluationScore)
        .join(EvaluationParameter, EvaluationParameter.id == EvaluationScore.parameter_id)
        .where(EvaluationScore.evaluation_id == evaluation_id)
    ).one()
    return int(row[0] or 0), int(row[1] or 0)


def _scores_detail(db, evaluation_ids: list[str]) -> dict[str, list[dict[str, Any]]]:
    if not evaluation_ids:
        return {}
    rows = db.execute(
        select(EvaluationScore, EvaluationParameter)
        .join(EvaluationParameter, EvaluationParameter.id == EvaluationScore.parameter_id)
        .where(EvaluationScore.evaluation_id.in_(evaluation_ids))
        .order_by(EvaluationParameter.name.asc())
    ).all()
    out: dict[str, list[dict[str, Any]]] = {}
    for sc, param in rows:
        out.setdefault(sc.evaluation_id, []).append(
            {
                "parameterId": param.id,
                "parameter": param.name or "",
                "score": int(sc.score or 0),
                "maxScore": int(param.max_score or 0),
                "remarks": sc.remarks or "",
            }
        )
    return out


def _params_catalog(db) -> list[dict[str, Any]]:
    def _load():
        rows = db.execute(select(EvaluationParameter).order_by(EvaluationParameter.name.asc())).scalars().all()
        return [
            {
                "parameterId": p.id,
                "name": p.name or "",
                "description": p.description or "",
                "maxScore": int(p.max_score or 0),
                "isActive": bool(p.is_active),
            }
            for p in rows
        ]

    return cache_get_or_set(f"{PARAMS_CACHE_PREFIX}:ALL", _load)


def _validate_scores(db, raw_scores: Any) -> list[tuple[EvaluationParameter, int, str]]:
    if not isinstance(raw_scores, list) or not raw_scores:
        raise ValidationError("BAD_REQUEST", "scores must be a non-empty list")

    ids = []
    for item in raw_scores:
        if not isinstance(item, dict):
            raise ValidationError("BAD_REQUEST", "Each score must be an object")
        ids.append(require_str(item, "parameterId"))
    if len(set(ids)) != len(ids):
        raise ValidationError("BAD_REQUEST", "Duplicate parameterId in scores")

    params = {p.id: p for p in db.execute(select(EvaluationParameter).where(EvaluationParameter.id.in_(ids))).scalars().all()}

    out = []
    for item, pid in zip(raw_scores, ids):
        param = params.get(pid)
        if param is None:
            raise ValidationError("BAD_REQUEST", f"Unknown parameter: {pid}")
        if not param.is_active:
            raise ValidationError("BAD_REQUEST", f"Parameter is inactive: {pid}")
        score = as_int(item.get("score"), field="score")
        max_score = int(param.max_score or 0)
        if score < 0 or score > max_score:
            raise ValidationError("SCORE_OUT_OF_RANGE", f"{param.name or pid}: score must be within 0..{max_score}")
        out.append((param, score, str(item.get("remarks") or "").strip()))
    return out


def record_evaluation(data, auth: AuthContext | None, db, cfg):
    auth = require_admin(auth)
    data = data or {}

    application = lock_application(db, application_id=require_str(data, "applicationId"))
    job = db.get(Job, application.job_id)
    if not job:
        raise NotFoundError("Job not found")

    round_number = as_int(
        data.get("roundNumber"),
        field="roundNumber",
        default=application.current_round,
        min_v=1,
        max_v=max(1, int(job.total_rounds or 1)),
    )
    if round_number > int(application.current_round or 1):
        raise ValidationError("BAD_REQUEST", f"Application has not reached round {round_number}")

    recommendation = str(data.get("recommendation") or "").strip().lower()
    if recommendation not in RECOMMENDATIONS:
        raise ValidationError("BAD_REQUEST", "recommendation must be pass, fail or hold")

    scored = _validate_scores(db, data.get("scores"))

    feeds_outcome = (
        recommendation in {"pass", "fail"}
        and round_number == int(application.current_round or 1)
        and application.status not in TERMINAL_STATUSES
    )
    if feeds_outcome and open_attempt_for(db, application.id, round_number) is not None:
        raise ConflictError("ATTEMPT_ALREADY_ACTIVE", "A test attempt for this round is still open")

    seq = db.execute(
        select(func.coalesce(func.max(CandidateEvaluation.seq), 0))
        .where(CandidateEvaluation.application_id == application.id)
        .where(CandidateEvaluation.round_number == round_number)
    ).scalar()

    now = iso_utc_now()
    ev = CandidateEvaluation(
        id=new_id("EVAL"),
        application_id=application.id,
        round_number=round_number,
        evaluator_id=auth.userId,
        recommendation=recommendation,
        overall_remarks=str(data.get("overallRemarks") or "").strip(),
        internal_remarks=str(data.get("internalRemarks") or "").strip(),
        is_visible_to_candidate=bool(data.get("isVisibleToCandidate")),
        created_at=now,
        seq=int(seq or 0) + 1,
    )
    db.add(ev)
    for param, score, remarks in scored:
        db.add(EvaluationScore(evaluation_id=ev.id, parameter_id=param.id, score=score, remarks=remarks))
    db.flush()

    pct = percentage((score, param.max_score) for param, score, _ in scored)
    append_audit(
        db,
        entityType="EVALUATION",
        entityId=ev.id,
        action="EVALUATION_RECORD",
        toState=recommendation,
        actor=auth,
        at=now,
        meta={"applicationId": application.id, "round": round_number, "percentage": pct},
    )

    status = application.status
    if feeds_outcome:
        status = apply_round_outcome(db, application=application, outcome=recommendation, actor=auth, source="evaluation", job=job)

    return {
        "evaluationId": ev.id,
        "applicationId": application.id,
        "roundNumber": round_number,
        "recommendation": recommendation,
        "percentage": pct,
        "applicationStatus": status,
        "currentRound": int(application.current_round or 1),
    }


def visible_feedback(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    application = db.get(Application, require_str(data, "applicationId"))
    if not application or (not auth.is_admin and str(application.user_id) != str(auth.userId)):
        raise NotFoundError("Application not found")

    rows = (
        db.execute(
            select(CandidateEvaluation)
            .where(CandidateEvaluation.application_id == application.id)
            .where(CandidateEvaluation.is_visible_to_candidate == True)  # noqa: E712
            .order_by(CandidateEvaluation.round_number.asc(), CandidateEvaluation.seq.asc())
        )
        .scalars()
        .all()
    )
    details = _scores_detail(db, [r.id for r in rows])

    items = []
    for ev in rows:
        scores = [{k: s[k] for k in ("parameter", "score", "maxScore", "remarks")} for s in details.get(ev.id, [])]
        items.append(
            {
                "roundNumber": int(ev.round_number),
                "recommendation": ev.recommendation,
                "overallRemarks": ev.overall_remarks or "",
                "createdAt": ev.created_at or "",
                "percentage": percentage((s["score"], s["maxScore"]) for s in scores),
                "scores": scores,
            }
        )
    return {"applicationId": application.id, "items": items}


def evaluations_list(data, auth: AuthContext | None, db, cfg):
    require_admin(auth)
    application = db.get(Application, require_str(data, "applicationId"))
    if not application:
        raise NotFoundError("Application not found")

    rows = (
        db.execute(
            select(CandidateEvaluation)
            .where(CandidateEvaluation.application_id == application.id)
            .order_by(CandidateEvaluation.round_number.asc(), CandidateEvaluation.seq.asc())
        )
        .scalars()
        .all()
    )
    details = _scores_detail(db, [r.id for r in rows])

    items = []
    for ev in rows:
        scores = details.get(ev.id, [])
        items.append(
            {
                "evaluationId": ev.id,
                "roundNumber": int(ev.round_number),
                "evaluatorId": ev.evaluator_id or "",
                "recommendation": ev.recommendation,
                "overallRemarks": ev.overall_remarks or "",
                "internalRemarks": ev.internal_remarks or "",
                "isVisibleToCandidate": bool(ev.is_visible_to_candidate),
                "createdAt": ev.created_at or "",
                "seq": int(ev.seq or 0),
                "percentage": percentage((s["score"], s["maxScore"]) for s in scores),
                "scores": scores,
            }
        )
    return {"applicationId": application.id, "items": items}


def eval_params_list(data, auth: AuthContext | None, db, cfg):
    require_auth(auth)
    include_inactive = bool((data or {}).get("includeInactive")) and auth.is_admin
    items = [p for p in _params_catalog(db) if include_inactive or p["isActive"]]
    return {"items": items, "total": len(items)}


def eval_param_upsert(data, auth: AuthContext | None, db, cfg):
    auth = require_admin(auth)
    data = data or {}
    now = iso_utc_now()

    pid = str(data.get("parameterId") or "").strip()
    param = db.get(EvaluationParameter, pid) if pid else None
    if pid and param is None:
        raise NotFoundError("Parameter not found")

    created = param is None
    if created:
        param = EvaluationParameter(id=new_id("PARAM"), created_at=now, is_active=True, max_score=10)
        param.name = require_str(data, "name")
        db.add(param)
    elif "name" in data:
        param.name = require_str(data, "name")

    if "description" in data:
        param.description = str(data.get("description") or "").strip()
    if "maxScore" in data:
        new_max = as_int(data.get("maxScore"), field="maxScore", min_v=1, max_v=1000)
        if not created:
            top = db.execute(
                select(func.max(EvaluationScore.score)).where(EvaluationScore.parameter_id == param.id)
            ).scalar()
            if top is not None and int(top) > new_max:
                raise ConflictError("SCORE_OUT_OF_RANGE", f"Existing scores go up to {int(top)}")
        param.max_score = new_max
    if "isActive" in data:
        param.is_active = bool(data.get("isActive"))
    param.updated_at = now
    db.flush()

    cache_invalidate_prefix(PARAMS_CACHE_PREFIX)
    append_audit(
        db,
        entityType="EVAL_PARAMETER",
        entityId=param.id,
        action="EVAL_PARAM_CREATE" if created else "EVAL_PARAM_UPDATE",
        actor=auth,
        at=now,
        meta={"maxScore": int(param.max_score or 0), "isActive": bool(param.is_active)},
    )
    return {
        "parameterId": param.id,
        "name": param.name or "",
        "description": param.description or "",
        "maxScore": int(param.max_score or 0),
        "isActive": bool(param.is_active),
    }
