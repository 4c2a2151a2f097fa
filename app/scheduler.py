from __future__ import annotations

import logging
import threading
import time

from config import Config

log = logging.getLogger("scheduler")


def maybe_start_sweep_scheduler(cfg: Config) -> threading.Thread | None:
    """
    In-process fallback for deployments without Celery beat.

    Each process that builds the app runs its own loop. Overlapping sweeps only
    find already-submitted attempts.
    """
    if not cfg.ENABLE_SCHEDULER:
        return None

    interval = max(5, int(cfg.SWEEP_INTERVAL_SECONDS))

    def _loop():
        from app.tasks.attempt_sweep import run_attempt_sweep

        while True:
            time.sleep(interval)
            try:
                out = run_attempt_sweep()
                if out["submitted"]:
                    log.info("attempt sweep submitted=%s", out["submitted"])
            except Exception:
                log.exception("attempt sweep failed")

    t = threading.Thread(target=_loop, name="attempt-sweep", daemon=True)
    t.start()
    log.info("attempt sweep scheduler started interval_s=%s", interval)
    return t
