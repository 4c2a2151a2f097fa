"""
Auto-submit test attempts whose time ran out.

Attempts carry no timers of their own; something has to call the sweep. Run it
from Celery beat, from the in-process scheduler (ENABLE_SCHEDULER=1), or on
demand through the TEST_TIMEOUT_SWEEP action.
"""
from __future__ import annotations

import logging
from typing import Any

from app.tasks import celery_app

log = logging.getLogger("tasks")


def run_attempt_sweep(limit: int = 500) -> dict[str, Any]:
    import db as db_module
    from actions.assessments import sweep_expired
    from config import Config

    if db_module.engine is None:
        db_module.init_engine(Config().DATABASE_URL)

    session = db_module.SessionLocal()
    try:
        results = sweep_expired(session, limit=limit)
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

    return {"submitted": len(results), "attemptIds": [r["attemptId"] for r in results]}


@celery_app.task(bind=True, max_retries=3, default_retry_delay=30)
def sweep_expired_attempts_task(self, limit: int = 500):
    try:
        out = run_attempt_sweep(limit=limit)
    except Exception as exc:
        log.exception("attempt sweep failed task_id=%s", self.request.id)
        raise self.retry(exc=exc)
    log.info("attempt sweep task_id=%s submitted=%s", self.request.id, out["submitted"])
    return out
