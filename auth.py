from __future__ import annotations

import hmac
from typing import Any, Mapping, Optional

from utils import SYSTEM_AUTH, ApiError, AuthContext, ForbiddenError, ValidationError, normalize_role


ROLES = {"CANDIDATE", "ADMIN"}

BOTH = ["CANDIDATE", "ADMIN"]
ADMIN = ["ADMIN"]

# Coarse gate per action. Handlers still enforce ownership (a candidate only
# ever sees their own applications and attempts).
STATIC_RBAC_PERMISSIONS: dict[str, list[str]] = {
    # Applications
    "APPLY_TO_JOB": BOTH,
    "SLOT_SELECT": BOTH,
    "APPLICATION_APPROVE": ADMIN,
    "APPLICATION_REJECT": ADMIN,
    "TEST_ENABLE": ADMIN,
    "ROUND_OUTCOME_RECORD": ADMIN,
    "APPLICATION_ADVANCE_ROUND": ADMIN,
    "APPLICATION_CHANGE_JOB": ADMIN,
    "APPLICATION_DELETE": BOTH,
    "ROUND_BREAKDOWN": BOTH,
    "MY_APPLICATIONS": BOTH,
    "APPLICATIONS_LIST": ADMIN,
    "PIPELINE_STATS": ADMIN,
    # Assessments
    "TEST_START": BOTH,
    "TEST_ATTEMPT_GET": BOTH,
    "TEST_ANSWER_RECORD": BOTH,
    "TEST_VIOLATION_RECORD": BOTH,
    "TEST_SUBMIT": BOTH,
    "TEST_TIMEOUT_SWEEP": ADMIN,
    "TEST_RESULTS_LIST": ADMIN,
    # Evaluations
    "EVALUATION_RECORD": ADMIN,
    "VISIBLE_FEEDBACK": BOTH,
    "EVALUATIONS_LIST": ADMIN,
    "EVAL_PARAMS_LIST": BOTH,
    "EVAL_PARAM_UPSERT": ADMIN,
    # Slots
    "SLOTS_AVAILABLE": BOTH,
    "SLOTS_LIST": ADMIN,
    "SLOT_UPSERT": ADMIN,
    "SLOT_REASSIGN": ADMIN,
    # Jobs
    "JOBS_LIST": BOTH,
    "JOB_GET": BOTH,
    "JOB_UPSERT": ADMIN,
    # Take-home tasks
    "TASK_UPSERT": ADMIN,
    "TASKS_LIST": ADMIN,
    "TASK_ASSIGN": ADMIN,
    "TASK_START": BOTH,
    "TASK_SUBMIT": BOTH,
    "TASK_REVIEW": ADMIN,
    "MY_TASKS": BOTH,
    "TASK_SUBMISSIONS_LIST": ADMIN,
}


def assert_permission(role: str, action: str) -> None:
    role_u = normalize_role(role)
    action_u = str(action or "").upper().strip()

    allowed = STATIC_RBAC_PERMISSIONS.get(action_u)
    if allowed is None:
        raise ValidationError("BAD_REQUEST", f"Unknown action: {action_u}")
    if not role_u:
        raise ApiError("AUTH_INVALID", "Login required")
    if role_u not in allowed:
        raise ForbiddenError(f"Not allowed for role: {role_u}")


def _truthy(value: Any) -> bool:
    return str(value or "").strip().lower() in {"1", "true", "yes", "y"}


def _same_secret(given: str, expected: str) -> bool:
    return bool(expected) and hmac.compare_digest(str(given or "").encode("utf-8"), expected.encode("utf-8"))


def resolve_identity(headers: Mapping[str, str], cfg) -> Optional[AuthContext]:
    """
    Build the caller identity from the headers the upstream gateway sets.

    Returns None for anonymous calls. Raises AUTH_INVALID when the gateway secret
    is configured and missing/wrong, or when the asserted role is unknown.
    """
    internal = str(headers.get("X-Internal-Token") or "").strip()
    if internal and _same_secret(internal, cfg.INTERNAL_CRON_TOKEN):
        return SYSTEM_AUTH

    user_id = str(headers.get("X-User-Id") or "").strip()
    if not user_id:
        return None

    if cfg.GATEWAY_TOKEN and not _same_secret(str(headers.get("X-Gateway-Token") or "").strip(), cfg.GATEWAY_TOKEN):
        raise ApiError("AUTH_INVALID", "Untrusted identity headers")

    role = normalize_role(headers.get("X-User-Role") or "CANDIDATE")
    if role not in ROLES:
        raise ApiError("AUTH_INVALID", f"Unknown role: {role}")

    return AuthContext(
        valid=True,
        userId=user_id,
        role=role,
        profileComplete=role == "ADMIN" or _truthy(headers.get("X-Profile-Complete")),
    )
