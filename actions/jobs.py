from __future__ import annotations

from typing import Any

from sqlalchemy import delete, func, select

from actions.helpers import append_audit, require_admin, require_auth
from cache_layer import cache_get_or_set, cache_invalidate_prefix, make_cache_key
from models import Application, Job, JobRound
from utils import AuthContext, ConflictError, NotFoundError, ValidationError, as_int, iso_utc_now, new_id, require_str


ROUND_MODES = {"online_aptitude", "online_technical", "in_person", "interview", "hr_round"}
JOBS_CACHE_PREFIX = "JOBS"


def _serialize_job(job: Job, rounds: list[JobRound]) -> dict[str, Any]:
    return {
        "jobId": job.id,
        "title": job.title or "",
        "description": job.description or "",
        "totalRounds": int(job.total_rounds or 1),
        "testTimeMinutes": int(job.test_time_minutes or 0),
        "isActive": bool(job.is_active),
        "rounds": [
            {
                "roundNumber": int(r.round_number),
                "name": r.name or "",
                "mode": r.mode or "",
                "instructions": r.instructions or "",
            }
            for r in sorted(rounds, key=lambda r: int(r.round_number))
        ],
        "updatedAt": job.updated_at or "",
    }


def _rounds_by_job(db, job_ids: list[str]) -> dict[str, list[JobRound]]:
    if not job_ids:
        return {}
    out: dict[str, list[JobRound]] = {}
    for r in db.execute(select(JobRound).where(JobRound.job_id.in_(job_ids))).scalars().all():
        out.setdefault(r.job_id, []).append(r)
    return out


def jobs_list(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    include_inactive = bool((data or {}).get("includeInactive")) and auth.is_admin

    def _load():
        q = select(Job)
        if not include_inactive:
            q = q.where(Job.is_active == True)  # noqa: E712
        rows = db.execute(q.order_by(Job.title.asc())).scalars().all()
        rounds = _rounds_by_job(db, [j.id for j in rows])
        return [_serialize_job(j, rounds.get(j.id, [])) for j in rows]

    key = make_cache_key(JOBS_CACHE_PREFIX, scope=["LIST"], params={"inactive": include_inactive})
    items = cache_get_or_set(key, _load)
    return {"items": items, "total": len(items)}


def job_get(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    job_id = require_str(data, "jobId")

    def _load():
        job = db.get(Job, job_id)
        if not job:
            return None
        return _serialize_job(job, _rounds_by_job(db, [job.id]).get(job.id, []))

    item = cache_get_or_set(make_cache_key(JOBS_CACHE_PREFIX, scope=["GET", job_id]), _load)
    if item is None or (not item["isActive"] and not auth.is_admin):
        raise NotFoundError("Job not found")
    return item


def _parse_rounds(raw: Any, total_rounds: int) -> list[dict[str, Any]]:
    if not isinstance(raw, list):
        raise ValidationError("BAD_REQUEST", "rounds must be a list")
    seen = set()
    out = []
    for item in raw:
        if not isinstance(item, dict):
            raise ValidationError("BAD_REQUEST", "Each round must be an object")
        n = as_int(item.get("roundNumber"), field="roundNumber", min_v=1, max_v=total_rounds)
        if n in seen:
            raise ValidationError("BAD_REQUEST", f"Duplicate roundNumber {n}")
        seen.add(n)
        mode = str(item.get("mode") or "online_aptitude").strip().lower()
        if mode not in ROUND_MODES:
            raise ValidationError("BAD_REQUEST", f"Invalid mode: {mode}")
        out.append(
            {
                "round_number": n,
                "name": str(item.get("name") or "").strip() or f"Round {n}",
                "mode": mode,
                "instructions": str(item.get("instructions") or "").strip(),
            }
        )
    return out


def job_upsert(data, auth: AuthContext | None, db, cfg):
    auth = require_admin(auth)
    data = data or {}
    now = iso_utc_now()

    job_id = str(data.get("jobId") or "").strip()
    job = db.execute(select(Job).where(Job.id == job_id).with_for_update(of=Job)).scalars().first() if job_id else None
    if job_id and job is None:
        raise NotFoundError("Job not found")

    created = job is None
    if created:
        job = Job(
            id=new_id("JOB"),
            title=require_str(data, "title"),
            total_rounds=1,
            test_time_minutes=int(cfg.DEFAULT_TEST_MINUTES),
            is_active=True,
            created_at=now,
            created_by=auth.userId,
        )
        db.add(job)
    elif "title" in data:
        job.title = require_str(data, "title")

    if "description" in data:
        job.description = str(data.get("description") or "").strip()
    if "testTimeMinutes" in data:
        job.test_time_minutes = as_int(data.get("testTimeMinutes"), field="testTimeMinutes", min_v=1, max_v=600)
    if "isActive" in data:
        job.is_active = bool(data.get("isActive"))
    if "totalRounds" in data:
        total = as_int(data.get("totalRounds"), field="totalRounds", min_v=1, max_v=20)
        if not created:
            reached = db.execute(select(func.max(Application.current_round)).where(Application.job_id == job.id)).scalar()
            if reached is not None and int(reached) > total:
                raise ConflictError("ROUNDS_IN_USE", f"Applications have already reached round {int(reached)}")
        job.total_rounds = total

    total_rounds = int(job.total_rounds or 1)
    if "rounds" in data:
        rounds = _parse_rounds(data.get("rounds"), total_rounds)
        if not created:
            db.execute(delete(JobRound).where(JobRound.job_id == job.id))
        for r in rounds:
            db.add(JobRound(job_id=job.id, **r))
    elif not created:
        db.execute(delete(JobRound).where(JobRound.job_id == job.id).where(JobRound.round_number > total_rounds))

    job.updated_at = now
    job.updated_by = auth.userId
    db.flush()

    cache_invalidate_prefix(JOBS_CACHE_PREFIX)
    append_audit(
        db,
        entityType="JOB",
        entityId=job.id,
        action="JOB_CREATE" if created else "JOB_UPDATE",
        actor=auth,
        at=now,
        meta={"totalRounds": total_rounds, "isActive": bool(job.is_active)},
    )
    return _serialize_job(job, _rounds_by_job(db, [job.id]).get(job.id, []))
