from __future__ import annotations

from actions.evaluations import percentage
from cache_layer import cache_stats

ADMIN = {"X-User-Id": "ADM-1", "X-User-Role": "admin"}
CAND = {"X-User-Id": "U1", "X-User-Role": "candidate", "X-Profile-Complete": "1"}


def _setup(seed, *, status: str = "slot_selected", current_round: int = 1):
    seed.job("JOB-1", total_rounds=2)
    seed.param("P-COMM", "Communication", max_score=10)
    seed.param("P-TECH", "Technical", max_score=5)
    seed.param("P-OLD", "Legacy", max_score=10, active=False)
    return seed.application("APP-1", status=status, current_round=current_round, approved=True)


def _record(api, recommendation: str, scores, **extra):
    data = {"applicationId": "APP-1", "recommendation": recommendation, "scores": scores}
    data.update(extra)
    return api("EVALUATION_RECORD", data, ADMIN)


def test_percentage_is_derived_from_pairs():
    assert percentage([(8, 10), (4, 5)]) == 80.0
    assert percentage([(1, 3)]) == 33.33
    assert percentage([]) == 0.0


def test_score_must_fit_parameter_range(seed, api):
    _setup(seed)

    status, body = _record(api, "pass", [{"parameterId": "P-TECH", "score": 6}])
    assert status == 400
    assert body["error"]["code"] == "SCORE_OUT_OF_RANGE"

    status, body = _record(api, "pass", [{"parameterId": "P-TECH", "score": -1}])
    assert status == 400
    assert body["error"]["code"] == "SCORE_OUT_OF_RANGE"


def test_scores_reject_duplicates_unknown_and_inactive(seed, api):
    _setup(seed)

    dup = [{"parameterId": "P-COMM", "score": 5}, {"parameterId": "P-COMM", "score": 6}]
    assert _record(api, "pass", dup)[0] == 400
    assert _record(api, "pass", [{"parameterId": "P-NOPE", "score": 1}])[0] == 400
    assert _record(api, "pass", [{"parameterId": "P-OLD", "score": 1}])[0] == 400
    assert _record(api, "pass", [])[0] == 400
    assert _record(api, "maybe", [{"parameterId": "P-COMM", "score": 1}])[0] == 400

    _, body = api("EVALUATIONS_LIST", {"applicationId": "APP-1"}, ADMIN)
    assert body["data"]["items"] == []


def test_pass_moves_to_next_round(seed, api):
    _setup(seed)

    status, body = _record(api, "pass", [{"parameterId": "P-COMM", "score": 9}, {"parameterId": "P-TECH", "score": 3}])
    assert status == 200, body
    assert body["data"]["percentage"] == 80.0
    assert body["data"]["applicationStatus"] == "passed"
    assert body["data"]["currentRound"] == 2


def test_fail_marks_round_failed(seed, api):
    _setup(seed)
    status, body = _record(api, "fail", [{"parameterId": "P-COMM", "score": 2}])
    assert status == 200
    assert body["data"]["applicationStatus"] == "failed"
    assert body["data"]["currentRound"] == 1


def test_hold_changes_nothing(seed, api):
    _setup(seed)

    status, body = _record(api, "hold", [{"parameterId": "P-COMM", "score": 5}])
    assert status == 200
    assert body["data"]["applicationStatus"] == "slot_selected"
    assert body["data"]["currentRound"] == 1

    _, body = api("ROUND_BREAKDOWN", {"applicationId": "APP-1"}, CAND)
    first = body["data"]["rounds"][0]
    assert (first["status"], first["source"]) == ("pending", "evaluation")


def test_latest_evaluation_governs_breakdown(seed, api):
    _setup(seed, status="passed", current_round=2)

    _record(api, "fail", [{"parameterId": "P-COMM", "score": 3}], roundNumber=1)
    _record(api, "pass", [{"parameterId": "P-COMM", "score": 8}], roundNumber=1)

    _, body = api("ROUND_BREAKDOWN", {"applicationId": "APP-1"}, CAND)
    first = body["data"]["rounds"][0]
    assert (first["status"], first["score"], first["total"]) == ("passed", 8, 10)
    assert body["data"]["application"]["currentRound"] == 2
    assert body["data"]["application"]["status"] == "passed"


def test_cannot_evaluate_unreached_round(seed, api):
    _setup(seed)
    status, body = _record(api, "pass", [{"parameterId": "P-COMM", "score": 5}], roundNumber=2)
    assert status == 400

    status, body = _record(api, "pass", [{"parameterId": "P-COMM", "score": 5}], roundNumber=3)
    assert status == 400


def test_evaluation_waits_for_open_attempt(seed, api):
    _setup(seed)
    seed.questions("JOB-1", 1, [("Q1", "A", 1)])
    seed.application("APP-2", user_id="U2", status="test_enabled", approved=True, test_enabled=True)
    _, body = api("TEST_START", {"applicationId": "APP-2"}, ADMIN)
    assert body["ok"], body

    status, body = api(
        "EVALUATION_RECORD",
        {"applicationId": "APP-2", "recommendation": "pass", "scores": [{"parameterId": "P-COMM", "score": 5}]},
        ADMIN,
    )
    assert status == 409
    assert body["error"]["code"] == "ATTEMPT_ALREADY_ACTIVE"

    status, body = api(
        "EVALUATION_RECORD",
        {"applicationId": "APP-2", "recommendation": "hold", "scores": [{"parameterId": "P-COMM", "score": 5}]},
        ADMIN,
    )
    assert status == 200


def test_candidate_sees_only_visible_feedback(seed, api):
    _setup(seed)
    _record(
        api,
        "hold",
        [{"parameterId": "P-COMM", "score": 4, "remarks": "Nervous"}],
        isVisibleToCandidate=True,
        overallRemarks="Keep practising",
        internalRemarks="Borderline",
    )
    _record(api, "hold", [{"parameterId": "P-TECH", "score": 1}], internalRemarks="Hidden note")

    status, body = api("VISIBLE_FEEDBACK", {"applicationId": "APP-1"}, CAND)
    assert status == 200
    items = body["data"]["items"]
    assert len(items) == 1
    assert items[0]["overallRemarks"] == "Keep practising"
    assert items[0]["percentage"] == 40.0
    assert items[0]["scores"] == [{"parameter": "Communication", "score": 4, "maxScore": 10, "remarks": "Nervous"}]
    assert "internalRemarks" not in items[0]
    assert "evaluatorId" not in items[0]

    status, body = api("VISIBLE_FEEDBACK", {"applicationId": "APP-1"}, {"X-User-Id": "U2", "X-User-Role": "candidate"})
    assert status == 404

    _, body = api("EVALUATIONS_LIST", {"applicationId": "APP-1"}, ADMIN)
    admin_items = body["data"]["items"]
    assert [e["seq"] for e in admin_items] == [1, 2]
    assert admin_items[1]["internalRemarks"] == "Hidden note"
    assert admin_items[0]["evaluatorId"] == "ADM-1"


def test_param_catalog_is_cached_and_invalidated(seed, api):
    _setup(seed)

    _, body = api("EVAL_PARAMS_LIST", {}, CAND)
    assert [p["name"] for p in body["data"]["items"]] == ["Communication", "Technical"]
    _, body = api("EVAL_PARAMS_LIST", {}, CAND)
    assert cache_stats()["hits"] >= 1

    status, body = api("EVAL_PARAM_UPSERT", {"name": "Attitude", "maxScore": 5}, ADMIN)
    assert status == 200, body

    _, body = api("EVAL_PARAMS_LIST", {}, CAND)
    assert [p["name"] for p in body["data"]["items"]] == ["Attitude", "Communication", "Technical"]

    _, body = api("EVAL_PARAMS_LIST", {"includeInactive": True}, ADMIN)
    assert "Legacy" in [p["name"] for p in body["data"]["items"]]


def test_param_max_cannot_drop_below_recorded_scores(seed, api):
    _setup(seed)
    _record(api, "hold", [{"parameterId": "P-COMM", "score": 8}])

    status, body = api("EVAL_PARAM_UPSERT", {"parameterId": "P-COMM", "maxScore": 5}, ADMIN)
    assert status == 409
    assert body["error"]["code"] == "SCORE_OUT_OF_RANGE"

    status, body = api("EVAL_PARAM_UPSERT", {"parameterId": "P-COMM", "maxScore": 8}, ADMIN)
    assert status == 200
    assert body["data"]["maxScore"] == 8


def test_advance_keeps_recorded_recommendation(seed, api):
    _setup(seed)
    _record(
        api,
        "hold",
        [{"parameterId": "P-COMM", "score": 2, "remarks": "needs work"}],
        isVisibleToCandidate=True,
        overallRemarks="needs work",
    )

    status, body = api("APPLICATION_ADVANCE_ROUND", {"applicationId": "APP-1"}, ADMIN)
    assert status == 200, body
    assert body["data"]["currentRound"] == 2

    _, body = api("VISIBLE_FEEDBACK", {"applicationId": "APP-1"}, CAND)
    (item,) = body["data"]["items"]
    assert item["recommendation"] == "hold"
    assert item["overallRemarks"] == "needs work"
    assert item["percentage"] == 20.0

    _, body = api("EVALUATIONS_LIST", {"applicationId": "APP-1"}, ADMIN)
    assert [e["recommendation"] for e in body["data"]["items"]] == ["hold"]

    _, body = api("ROUND_BREAKDOWN", {"applicationId": "APP-1"}, CAND)
    first, second = body["data"]["rounds"]
    assert (first["status"], first["source"]) == ("passed", "evaluation")
    assert (second["status"], second["source"]) == ("pending", "inferred")


def test_evaluation_after_failed_test_decides_breakdown(seed, api):
    seed.job("JOB-1", total_rounds=2)
    seed.param("P-COMM", "Communication", max_score=10)
    seed.questions("JOB-1", 1, [("Q1", "A", 1)])
    seed.application("APP-1", status="test_enabled", approved=True, test_enabled=True)

    _, body = api("TEST_START", {"applicationId": "APP-1"}, CAND)
    assert body["ok"], body
    status, body = api("TEST_SUBMIT", {"attemptId": body["data"]["attemptId"]}, CAND)
    assert status == 200, body
    assert body["data"]["isPassed"] is False

    status, body = _record(api, "pass", [{"parameterId": "P-COMM", "score": 8}], roundNumber=1)
    assert status == 200, body
    assert body["data"]["applicationStatus"] == "passed"
    assert body["data"]["currentRound"] == 2

    _, body = api("ROUND_BREAKDOWN", {"applicationId": "APP-1"}, CAND)
    first, second = body["data"]["rounds"]
    assert (first["status"], first["source"]) == ("passed", "evaluation")
    assert (first["score"], first["total"]) == (8, 10)
    assert (second["status"], second["source"]) == ("pending", "inferred")
