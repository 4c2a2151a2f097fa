from __future__ import annotations

from datetime import datetime, timedelta, timezone

from utils import parse_datetime_maybe, to_iso_utc

ADMIN = {"X-User-Id": "ADM-1", "X-User-Role": "admin"}
CAND = {"X-User-Id": "U1", "X-User-Role": "candidate", "X-Profile-Complete": "1"}
OTHER = {"X-User-Id": "U2", "X-User-Role": "candidate", "X-Profile-Complete": "1"}

REPO = "https://github.com/u1/take-home"


def _setup(seed):
    seed.job("JOB-1", total_rounds=2)
    seed.task("TASK-1")
    return seed.application("APP-1", status="slot_selected", approved=True)


def _assign(api, **extra):
    data = {"taskId": "TASK-1", "applicationId": "APP-1"}
    data.update(extra)
    return api("TASK_ASSIGN", data, ADMIN)


def test_assignment_defaults_to_seven_day_deadline(seed, api):
    _setup(seed)

    status, body = _assign(api)
    assert status == 200, body
    row = body["data"]
    assert row["status"] == "pending"
    assert row["overdue"] is False
    assert row["task"]["title"] == "Build TASK-1"

    due = parse_datetime_maybe(row["dueDate"])
    expected = datetime.now(timezone.utc) + timedelta(days=7)
    assert abs((due - expected).total_seconds()) < 60


def test_candidate_works_task_through_review(seed, api):
    _setup(seed)
    _, body = _assign(api)
    assignment_id = body["data"]["assignmentId"]

    _, body = api("MY_TASKS", {}, CAND)
    (mine,) = body["data"]["items"]
    assert mine["assignmentId"] == assignment_id
    assert mine["jobTitle"] == "Title JOB-1"
    assert mine["task"]["instructions"] == "Push to a public repo"

    status, body = api("TASK_START", {"assignmentId": assignment_id}, CAND)
    assert status == 200, body
    assert body["data"]["status"] == "in_progress"

    status, body = api("TASK_SUBMIT", {"assignmentId": assignment_id}, CAND)
    assert status == 400
    status, body = api("TASK_SUBMIT", {"assignmentId": assignment_id, "submissionUrl": "ftp://nope"}, CAND)
    assert status == 400

    status, body = api(
        "TASK_SUBMIT",
        {"assignmentId": assignment_id, "submissionUrl": REPO, "submissionNotes": " README has setup "},
        CAND,
    )
    assert status == 200, body
    assert body["data"]["status"] == "submitted"
    assert body["data"]["submissionNotes"] == "README has setup"
    assert body["data"]["late"] is False
    assert body["data"]["submittedAt"]

    status, body = api("TASK_SUBMIT", {"assignmentId": assignment_id, "submissionUrl": REPO}, CAND)
    assert status == 409
    assert body["error"]["code"] == "TASK_ALREADY_SUBMITTED"

    status, body = api("TASK_REVIEW", {"assignmentId": assignment_id, "score": 101}, ADMIN)
    assert status == 400
    status, body = api("TASK_REVIEW", {"assignmentId": assignment_id, "score": 72, "reviewerNotes": "Solid"}, ADMIN)
    assert status == 200, body
    assert (body["data"]["status"], body["data"]["score"]) == ("reviewed", 72)
    assert body["data"]["reviewedBy"] == "ADM-1"

    # Edit review
    status, body = api("TASK_REVIEW", {"assignmentId": assignment_id, "score": 85, "reviewerNotes": "Good tests"}, ADMIN)
    assert status == 200
    assert body["data"]["score"] == 85

    _, body = api("MY_TASKS", {}, CAND)
    (mine,) = body["data"]["items"]
    assert (mine["status"], mine["score"], mine["reviewerNotes"]) == ("reviewed", 85, "Good tests")
    assert "reviewedBy" not in mine


def test_candidate_submit_skips_start_and_only_owner_may_act(seed, api):
    _setup(seed)
    _, body = _assign(api)
    assignment_id = body["data"]["assignmentId"]

    status, body = api("TASK_SUBMIT", {"assignmentId": assignment_id, "submissionUrl": REPO}, OTHER)
    assert status == 404
    status, body = api("TASK_START", {"assignmentId": assignment_id}, OTHER)
    assert status == 404

    _, body = api("MY_TASKS", {}, OTHER)
    assert body["data"]["items"] == []

    status, body = api("TASK_SUBMIT", {"assignmentId": assignment_id, "submissionUrl": REPO}, CAND)
    assert status == 200
    status, body = api("TASK_START", {"assignmentId": assignment_id}, CAND)
    assert status == 409


def test_review_needs_a_submission(seed, api):
    _setup(seed)
    _, body = _assign(api)

    status, body = api("TASK_REVIEW", {"assignmentId": body["data"]["assignmentId"], "score": 50}, ADMIN)
    assert status == 409
    assert body["error"]["code"] == "STALE_STATE"

    status, body = api("TASK_REVIEW", {"assignmentId": "TASKA-missing", "score": 50}, ADMIN)
    assert status == 404


def test_assign_guards(seed, api):
    _setup(seed)
    seed.job("JOB-2", total_rounds=1)
    seed.task("TASK-OTHER", job_id="JOB-2")
    seed.task("TASK-OFF", active=False)
    seed.application("APP-R", user_id="U3", status="rejected")

    assert _assign(api)[0] == 200
    status, body = _assign(api)
    assert status == 409
    assert body["error"]["code"] == "TASK_ALREADY_ASSIGNED"

    assert _assign(api, taskId="TASK-OTHER")[0] == 400
    assert _assign(api, taskId="TASK-OFF")[0] == 400
    assert _assign(api, taskId="TASK-NOPE")[0] == 404
    assert _assign(api, applicationId="APP-R")[0] == 409

    past = to_iso_utc(datetime.now(timezone.utc) - timedelta(days=1))
    seed.task("TASK-2")
    assert _assign(api, taskId="TASK-2", dueDate=past)[0] == 400
    assert _assign(api, taskId="TASK-2", dueDate="next week")[0] == 400

    status, _ = api("TASK_ASSIGN", {"taskId": "TASK-2", "applicationId": "APP-1"}, CAND)
    assert status == 403


def test_submissions_list_filters_and_change_job_purges(seed, api):
    _setup(seed)
    seed.job("JOB-2", total_rounds=1)
    seed.task("TASK-2")
    seed.application("APP-2", user_id="U2", status="slot_selected", approved=True)

    _, first = _assign(api)
    api("TASK_ASSIGN", {"taskId": "TASK-2", "applicationId": "APP-2"}, ADMIN)
    api("TASK_SUBMIT", {"assignmentId": first["data"]["assignmentId"], "submissionUrl": REPO}, CAND)

    status, body = api("TASK_SUBMISSIONS_LIST", {"jobId": "JOB-1", "status": "submitted"}, ADMIN)
    assert status == 200, body
    assert [i["userId"] for i in body["data"]["items"]] == ["U1"]

    _, body = api("TASK_SUBMISSIONS_LIST", {}, ADMIN)
    assert body["data"]["total"] == 2
    assert body["data"]["byStatus"] == {"pending": 1, "in_progress": 0, "submitted": 1, "reviewed": 0}

    assert api("TASK_SUBMISSIONS_LIST", {"status": "lost"}, ADMIN)[0] == 400
    assert api("TASK_SUBMISSIONS_LIST", {}, CAND)[0] == 403

    status, body = api("APPLICATION_CHANGE_JOB", {"applicationId": "APP-1", "newJobId": "JOB-2", "confirmReset": True}, ADMIN)
    assert status == 200, body
    _, body = api("MY_TASKS", {}, CAND)
    assert body["data"]["items"] == []


def test_task_catalog_over_rest(app_client, seed):
    _app, client = app_client
    seed.job("JOB-1", total_rounds=1)

    res = client.post(
        "/api/v1/tasks",
        json={"jobId": "JOB-1", "title": "Rate limiter", "description": "Token bucket", "estimatedHours": 3},
        headers=ADMIN,
    )
    assert res.status_code == 200, res.get_json()
    task = res.get_json()["data"]
    assert (task["estimatedHours"], task["isActive"]) == (3, True)

    res = client.put(f"/api/v1/tasks/{task['taskId']}", json={"isActive": False, "instructions": "Use Redis"}, headers=ADMIN)
    assert res.status_code == 200
    assert res.get_json()["data"]["instructions"] == "Use Redis"

    res = client.get("/api/v1/tasks", query_string={"jobId": "JOB-1"}, headers=ADMIN)
    assert [t["isActive"] for t in res.get_json()["data"]["items"]] == [False]

    res = client.post("/api/v1/tasks", json={"jobId": "JOB-NOPE", "title": "x", "description": "y"}, headers=ADMIN)
    assert res.status_code == 404
    res = client.get("/api/v1/tasks", headers=CAND)
    assert res.status_code == 403
    res = client.get("/api/v1/tasks/mine", headers=CAND)
    assert res.status_code == 200
