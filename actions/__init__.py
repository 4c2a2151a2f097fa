from __future__ import annotations

from typing import Any, Callable

from actions import applications, assessments, evaluations, jobs, slots, tasks
from utils import AuthContext, ValidationError

Handler = Callable[..., Any]

ACTION_HANDLERS: dict[str, Handler] = {
    # Applications
    "APPLY_TO_JOB": applications.apply_to_job,
    "SLOT_SELECT": applications.select_slot,
    "APPLICATION_APPROVE": applications.approve,
    "APPLICATION_REJECT": applications.reject,
    "TEST_ENABLE": applications.enable_test,
    "ROUND_OUTCOME_RECORD": applications.record_round_outcome,
    "APPLICATION_ADVANCE_ROUND": applications.advance_round,
    "APPLICATION_CHANGE_JOB": applications.change_job,
    "APPLICATION_DELETE": applications.delete_application,
    "ROUND_BREAKDOWN": applications.round_breakdown,
    "MY_APPLICATIONS": applications.my_applications,
    "APPLICATIONS_LIST": applications.applications_list,
    "PIPELINE_STATS": applications.pipeline_stats,
    # Assessments
    "TEST_START": assessments.attempt_start,
    "TEST_ATTEMPT_GET": assessments.attempt_get,
    "TEST_ANSWER_RECORD": assessments.answer_record,
    "TEST_VIOLATION_RECORD": assessments.violation_record,
    "TEST_SUBMIT": assessments.attempt_submit,
    "TEST_TIMEOUT_SWEEP": assessments.timeout_sweep,
    "TEST_RESULTS_LIST": assessments.results_list,
    # Evaluations
    "EVALUATION_RECORD": evaluations.record_evaluation,
    "VISIBLE_FEEDBACK": evaluations.visible_feedback,
    "EVALUATIONS_LIST": evaluations.evaluations_list,
    "EVAL_PARAMS_LIST": evaluations.eval_params_list,
    "EVAL_PARAM_UPSERT": evaluations.eval_param_upsert,
    # Slots
    "SLOTS_AVAILABLE": slots.slots_available,
    "SLOTS_LIST": slots.slots_list,
    "SLOT_UPSERT": slots.slot_upsert,
    "SLOT_REASSIGN": slots.slot_reassign,
    # Jobs
    "JOBS_LIST": jobs.jobs_list,
    "JOB_GET": jobs.job_get,
    "JOB_UPSERT": jobs.job_upsert,
    # Take-home tasks
    "TASK_UPSERT": tasks.task_upsert,
    "TASKS_LIST": tasks.tasks_list,
    "TASK_ASSIGN": tasks.task_assign,
    "TASK_START": tasks.task_start,
    "TASK_SUBMIT": tasks.task_submit,
    "TASK_REVIEW": tasks.task_review,
    "MY_TASKS": tasks.my_tasks,
    "TASK_SUBMISSIONS_LIST": tasks.task_submissions_list,
}


def dispatch(action: str, data: dict, auth: AuthContext | None, db, cfg) -> Any:
    action_u = str(action or "").upper().strip()
    handler = ACTION_HANDLERS.get(action_u)
    if handler is None:
        raise ValidationError("BAD_REQUEST", f"Unknown action: {action_u}")
    if data is not None and not isinstance(data, dict):
        raise ValidationError("BAD_REQUEST", "data must be an object")
    return handler(data or {}, auth, db, cfg)
