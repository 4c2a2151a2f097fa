from __future__ import annotations

import threading

import pytest

from actions.applications import lock_application
from actions.slots import booked_count, release, reserve
from db import SessionLocal
from models import Application
from utils import SYSTEM_AUTH, ConflictError, ValidationError

ADMIN = {"X-User-Id": "ADM-1", "X-User-Role": "admin"}


def _cand(user_id: str = "U1"):
    return {"X-User-Id": user_id, "X-User-Role": "candidate", "X-Profile-Complete": "1"}


def _race_for_seats(slot_id: str, app_ids: list[str]) -> list[str]:
    barrier = threading.Barrier(len(app_ids))
    results: list[str] = []
    lock = threading.Lock()

    def _worker(app_id: str):
        barrier.wait()
        with SessionLocal() as db:
            try:
                application = lock_application(db, application_id=app_id)
                reserve(db, slot_id=slot_id, application=application, actor=SYSTEM_AUTH)
                db.commit()
                outcome = "ok"
            except ConflictError as e:
                db.rollback()
                outcome = e.code
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=_worker, args=(a,)) for a in app_ids]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return results


def test_two_concurrent_reserves_for_last_seat_one_wins(seed):
    seed.job()
    seed.slot("SLOT-A", capacity=1)
    seed.application("APP-1", user_id="U1")
    seed.application("APP-2", user_id="U2")

    results = _race_for_seats("SLOT-A", ["APP-1", "APP-2"])

    assert sorted(results) == ["SLOT_FULL", "ok"]
    with SessionLocal() as db:
        assert booked_count(db, "SLOT-A") == 1


def test_many_concurrent_reserves_never_overbook(seed):
    seed.job()
    seed.slot("SLOT-B", capacity=3)
    app_ids = [seed.application(f"APP-{i}", user_id=f"U{i}") for i in range(8)]

    results = _race_for_seats("SLOT-B", app_ids)

    assert results.count("ok") == 3
    assert results.count("SLOT_FULL") == 5
    with SessionLocal() as db:
        assert booked_count(db, "SLOT-B") == 3


def test_disabled_slot_and_job_mismatch_are_refused(seed):
    seed.job("JOB-1")
    seed.job("JOB-2")
    seed.slot("SLOT-OFF", enabled=False)
    seed.slot("SLOT-J2", job_id="JOB-2")
    seed.application("APP-1", job_id="JOB-1")

    with SessionLocal() as db:
        application = lock_application(db, application_id="APP-1")
        with pytest.raises(ConflictError) as exc:
            reserve(db, slot_id="SLOT-OFF", application=application, actor=SYSTEM_AUTH)
        assert exc.value.code == "SLOT_DISABLED"

        with pytest.raises(ValidationError):
            reserve(db, slot_id="SLOT-J2", application=application, actor=SYSTEM_AUTH)
        db.rollback()


def test_release_of_empty_slot_is_a_noop(seed):
    seed.job()
    seed.application("APP-1")

    with SessionLocal() as db:
        application = db.get(Application, "APP-1")
        assert release(db, application=application, actor=SYSTEM_AUTH) == ""
        db.commit()


def test_delete_frees_seat_for_next_applicant(seed, api):
    seed.job()
    seed.slot("SLOT-1", capacity=1)
    seed.application("APP-1", user_id="U1", status="slot_selected", slot_id="SLOT-1")
    seed.application("APP-2", user_id="U2")

    status, body = api("SLOT_SELECT", {"applicationId": "APP-2", "slotId": "SLOT-1"}, _cand("U2"))
    assert status == 409
    assert body["error"]["code"] == "SLOT_FULL"

    status, body = api("APPLICATION_DELETE", {"applicationId": "APP-1"}, ADMIN)
    assert status == 200, body
    assert body["data"]["releasedSlotId"] == "SLOT-1"

    status, body = api("SLOT_SELECT", {"applicationId": "APP-2", "slotId": "SLOT-1"}, _cand("U2"))
    assert status == 200, body
    assert body["data"]["status"] == "slot_selected"


def test_select_slot_twice_reports_already_booked(seed, api):
    seed.job()
    seed.slot("SLOT-1", capacity=5)
    seed.slot("SLOT-2", capacity=5)
    seed.application("APP-1")

    status, _ = api("SLOT_SELECT", {"applicationId": "APP-1", "slotId": "SLOT-1"}, _cand())
    assert status == 200

    status, body = api("SLOT_SELECT", {"applicationId": "APP-1", "slotId": "SLOT-2"}, _cand())
    assert status == 409
    assert body["error"]["code"] == "ALREADY_BOOKED"
    assert body["error"]["category"] == "CONFLICT"


def test_available_slots_hide_full_and_disabled(seed, api):
    seed.job()
    seed.slot("SLOT-FULL", capacity=1)
    seed.slot("SLOT-OPEN", capacity=2)
    seed.slot("SLOT-OFF", enabled=False)
    seed.application("APP-1", status="slot_selected", slot_id="SLOT-FULL")

    status, body = api("SLOTS_AVAILABLE", {"jobId": "JOB-1"}, _cand("U9"))
    assert status == 200
    ids = [s["slotId"] for s in body["data"]["items"]]
    assert ids == ["SLOT-OPEN"]
    assert body["data"]["items"][0]["remaining"] == 2


def test_capacity_cannot_drop_below_bookings(seed, api):
    seed.job()
    seed.slot("SLOT-1", capacity=3)
    seed.application("APP-1", user_id="U1", status="slot_selected", slot_id="SLOT-1")
    seed.application("APP-2", user_id="U2", status="slot_selected", slot_id="SLOT-1")

    status, body = api("SLOT_UPSERT", {"slotId": "SLOT-1", "maxCapacity": 1}, ADMIN)
    assert status == 409
    assert body["error"]["code"] == "CAPACITY_BELOW_BOOKED"

    status, body = api("SLOT_UPSERT", {"slotId": "SLOT-1", "maxCapacity": 2}, ADMIN)
    assert status == 200
    assert body["data"]["booked"] == 2
    assert body["data"]["remaining"] == 0


def test_admin_creates_slot_and_reassigns(seed, api):
    seed.job()
    seed.slot("SLOT-1", capacity=2)
    seed.application("APP-1", status="slot_selected", slot_id="SLOT-1")

    status, body = api(
        "SLOT_UPSERT",
        {"jobId": "JOB-1", "date": "2026-11-03", "startTime": "09:00", "endTime": "10:00", "maxCapacity": 4, "isEnabled": True},
        ADMIN,
    )
    assert status == 200, body
    new_slot = body["data"]["slotId"]

    status, body = api("SLOT_REASSIGN", {"applicationId": "APP-1", "slotId": new_slot}, ADMIN)
    assert status == 200, body
    assert body["data"]["previousSlotId"] == "SLOT-1"

    with SessionLocal() as db:
        assert booked_count(db, "SLOT-1") == 0
        assert booked_count(db, new_slot) == 1


def test_candidate_cannot_manage_slots(seed, api):
    seed.job()
    status, body = api("SLOT_UPSERT", {"date": "2026-11-03", "startTime": "09:00", "endTime": "10:00"}, _cand())
    assert status == 403
    assert body["error"]["category"] == "PERMISSION"
