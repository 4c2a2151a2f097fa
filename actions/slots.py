from __future__ import annotations

from typing import Any

from sqlalchemy import func, select

from actions.helpers import append_audit, require_admin
from models import Application, Job, Slot
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


def lock_slot(db, *, slot_id: str) -> Slot:
    sid = str(slot_id or "").strip()
    if not sid:
        raise ValidationError("BAD_REQUEST", "Missing slotId")

    slot = db.execute(select(Slot).where(Slot.id == sid).with_for_update(of=Slot)).scalars().first()
    if not slot:
        raise NotFoundError("Slot not found")
    return slot


def booked_count(db, slot_id: str) -> int:
    """Seats taken right now. Always a live count; there is no stored counter."""
    n = db.execute(select(func.count(Application.id)).where(Application.slot_id == str(slot_id))).scalar()
    return int(n or 0)


def _booked_counts(db, slot_ids: list[str]) -> dict[str, int]:
    if not slot_ids:
        return {}
    rows = db.execute(
        select(Application.slot_id, func.count(Application.id))
        .where(Application.slot_id.in_(slot_ids))
        .group_by(Application.slot_id)
    ).all()
    return {str(sid): int(n or 0) for sid, n in rows}


def reserve(db, *, slot_id: str, application: Application, actor: AuthContext | None) -> Slot:
    """
    Book one seat in `slot_id` for `application`.

    The slot row is locked for the rest of the transaction, so the count below and
    the assignment happen in one critical section; two callers racing for the
    last seat serialize here and the loser sees SLOT_FULL.
    """
    slot = lock_slot(db, slot_id=slot_id)
    if not slot.is_enabled:
        raise ConflictError("SLOT_DISABLED", "Slot is not open for booking")
    if slot.job_id and str(slot.job_id) != str(application.job_id):
        raise ValidationError("BAD_REQUEST", "Slot belongs to a different job")

    taken = booked_count(db, slot.id)
    if taken >= int(slot.max_capacity or 0):
        raise ConflictError("SLOT_FULL", "Slot is full")

    application.slot_id = slot.id
    db.flush()

    append_audit(
        db,
        entityType="SLOT",
        entityId=slot.id,
        action="SLOT_RESERVE",
        remark=application.id,
        actor=actor,
        meta={"applicationId": application.id, "booked": taken + 1, "maxCapacity": int(slot.max_capacity or 0)},
    )
    return slot


def release(db, *, application: Application, actor: AuthContext | None) -> str:
    """Give the application's seat back. Returns the released slot id, "" if it held none."""
    sid = str(application.slot_id or "").strip()
    if not sid:
        return ""

    slot = db.execute(select(Slot).where(Slot.id == sid).with_for_update(of=Slot)).scalars().first()
    application.slot_id = None
    db.flush()

    append_audit(
        db,
        entityType="SLOT",
        entityId=sid,
        action="SLOT_RELEASE",
        remark=application.id,
        actor=actor,
        meta={"applicationId": application.id, "slotMissing": slot is None},
    )
    return sid


def serialize_slot(slot: Slot, booked: int, *, admin: bool = False) -> dict[str, Any]:
    cap = int(slot.max_capacity or 0)
    out = {
        "slotId": slot.id,
        "jobId": slot.job_id or "",
        "date": slot.slot_date or "",
        "startTime": slot.start_time or "",
        "endTime": slot.end_time or "",
        "venue": slot.venue or "",
        "maxCapacity": cap,
        "booked": int(booked),
        "remaining": max(0, cap - int(booked)),
    }
    if admin:
        out["isEnabled"] = bool(slot.is_enabled)
        out["createdAt"] = slot.created_at or ""
        out["updatedAt"] = slot.updated_at or ""
    return out


def slots_available(data, auth: AuthContext | None, db, cfg):
    job_id = str((data or {}).get("jobId") or "").strip()

    q = select(Slot).where(Slot.is_enabled == True)  # noqa: E712
    if job_id:
        q = q.where((Slot.job_id == job_id) | (Slot.job_id.is_(None)))
    rows = db.execute(q.order_by(Slot.slot_date.asc(), Slot.start_time.asc())).scalars().all()

    counts = _booked_counts(db, [s.id for s in rows])
    items = []
    for s in rows:
        n = counts.get(s.id, 0)
        if n >= int(s.max_capacity or 0):
            continue
        items.append(serialize_slot(s, n))
    return {"items": items, "total": len(items)}


def slots_list(data, auth: AuthContext | None, db, cfg):
    require_admin(auth)
    job_id = str((data or {}).get("jobId") or "").strip()

    q = select(Slot)
    if job_id:
        q = q.where(Slot.job_id == job_id)
    rows = db.execute(q.order_by(Slot.slot_date.asc(), Slot.start_time.asc())).scalars().all()

    counts = _booked_counts(db, [s.id for s in rows])
    items = [serialize_slot(s, counts.get(s.id, 0), admin=True) for s in rows]
    return {"items": items, "total": len(items)}


def slot_upsert(data, auth: AuthContext | None, db, cfg):
    auth = require_admin(auth)
    data = data or {}
    now = iso_utc_now()

    slot_id = str(data.get("slotId") or "").strip()
    if slot_id:
        slot = lock_slot(db, slot_id=slot_id)
        created = False
    else:
        slot = Slot(id=new_id("SLOT"), created_at=now, max_capacity=50, is_enabled=False)
        created = True

    if "jobId" in data or created:
        job_id = str(data.get("jobId") or "").strip()
        if job_id and db.get(Job, job_id) is None:
            raise NotFoundError("Job not found")
        slot.job_id = job_id or None

    if created:
        slot.slot_date = require_str(data, "date")
        slot.start_time = require_str(data, "startTime")
        slot.end_time = require_str(data, "endTime")
    else:
        for key, attr in (("date", "slot_date"), ("startTime", "start_time"), ("endTime", "end_time")):
            if key in data:
                setattr(slot, attr, require_str(data, key))
    if slot.end_time <= slot.start_time:
        raise ValidationError("BAD_REQUEST", "endTime must be after startTime")

    if "venue" in data:
        slot.venue = str(data.get("venue") or "").strip()
    if "isEnabled" in data:
        slot.is_enabled = bool(data.get("isEnabled"))
    if "maxCapacity" in data:
        cap = as_int(data.get("maxCapacity"), field="maxCapacity", min_v=1)
        taken = 0 if created else booked_count(db, slot.id)
        if cap < taken:
            raise ConflictError("CAPACITY_BELOW_BOOKED", f"{taken} seats are already booked")
        slot.max_capacity = cap

    slot.updated_at = now
    if created:
        db.add(slot)
    db.flush()

    append_audit(
        db,
        entityType="SLOT",
        entityId=slot.id,
        action="SLOT_CREATE" if created else "SLOT_UPDATE",
        actor=auth,
        meta={"maxCapacity": int(slot.max_capacity or 0), "isEnabled": bool(slot.is_enabled)},
    )
    return serialize_slot(slot, 0 if created else booked_count(db, slot.id), admin=True)


def slot_reassign(data, auth: AuthContext | None, db, cfg):
    from actions.applications import lock_application

    auth = require_admin(auth)
    app_id = require_str(data, "applicationId")
    new_slot_id = require_str(data, "slotId")

    application = lock_application(db, application_id=app_id)
    if application.status in {"selected", "rejected"}:
        raise ConflictError("STALE_STATE", f"Application is {application.status}")
    if str(application.slot_id or "") == new_slot_id:
        return {"applicationId": application.id, "slotId": new_slot_id, "previousSlotId": new_slot_id}

    previous = release(db, application=application, actor=auth)
    reserve(db, slot_id=new_slot_id, application=application, actor=auth)
    if application.status == "applied":
        application.status = "slot_selected"
    application.updated_at = iso_utc_now()
    application.updated_by = auth.userId

    return {"applicationId": application.id, "slotId": new_slot_id, "previousSlotId": previous}
