from __future__ import annotations

import json

import pytest

from cache_layer import cache_clear


@pytest.fixture(autouse=True)
def _fresh_cache():
    cache_clear()
    yield
    cache_clear()


@pytest.fixture()
def app_client(tmp_path, monkeypatch):
    monkeypatch.setenv("APP_ENV", "test")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'hiring-test.db'}")
    monkeypatch.setenv("GATEWAY_TOKEN", "")
    monkeypatch.setenv("INTERNAL_CRON_TOKEN", "cron-secret")
    monkeypatch.setenv("REQUIRE_PROFILE_COMPLETE", "1")
    monkeypatch.setenv("DEFAULT_TEST_MINUTES", "15")
    monkeypatch.setenv("TEST_PASS_PERCENT", "60")
    monkeypatch.setenv("TEST_MAX_VIOLATIONS", "3")
    monkeypatch.setenv("TEST_ANSWER_GRACE_SECONDS", "30")
    monkeypatch.setenv("RATE_LIMIT_GLOBAL", "0")
    monkeypatch.setenv("RATE_LIMIT_DEFAULT", "0")
    monkeypatch.setenv("ENABLE_SCHEDULER", "0")
    monkeypatch.setenv("REDIS_URL", "")

    from app import create_app

    app = create_app()
    app.config["TESTING"] = True
    with app.test_client() as client:
        yield app, client


class Seeder:
    """Writes fixture rows straight through SessionLocal, one commit per call."""

    def __init__(self):
        from db import SessionLocal

        self._session = SessionLocal

    def _add(self, *rows):
        with self._session() as db:
            for r in rows:
                db.add(r)
            db.commit()

    def job(self, job_id: str = "JOB-1", *, total_rounds: int = 2, test_minutes: int = 15, active: bool = True) -> str:
        from models import Job, JobRound
        from utils import iso_utc_now

        now = iso_utc_now()
        rounds = [
            JobRound(job_id=job_id, round_number=n, name=f"Stage {n}", mode="online_aptitude" if n == 1 else "interview")
            for n in range(1, total_rounds + 1)
        ]
        self._add(
            Job(
                id=job_id,
                title=f"Title {job_id}",
                total_rounds=total_rounds,
                test_time_minutes=test_minutes,
                is_active=active,
                created_at=now,
                created_by="TEST",
                updated_at=now,
                updated_by="TEST",
            ),
            *rounds,
        )
        return job_id

    def questions(self, job_id: str, round_number: int, specs: list[tuple[str, str, int]]) -> list[str]:
        """specs: (question_id, correct_answer, marks)."""
        from models import Question

        self._add(
            *[
                Question(
                    id=qid,
                    job_id=job_id,
                    round_number=round_number,
                    question_text=f"Question {qid}",
                    options_json=json.dumps(["A", "B", "C", "D"]),
                    correct_answer=correct,
                    marks=marks,
                )
                for qid, correct, marks in specs
            ]
        )
        return [qid for qid, _c, _m in specs]

    def slot(self, slot_id: str = "SLOT-1", *, job_id: str | None = None, capacity: int = 2, enabled: bool = True) -> str:
        from models import Slot
        from utils import iso_utc_now

        now = iso_utc_now()
        self._add(
            Slot(
                id=slot_id,
                job_id=job_id,
                slot_date="2026-11-02",
                start_time="10:00",
                end_time="11:00",
                max_capacity=capacity,
                is_enabled=enabled,
                venue="Room 1",
                created_at=now,
                updated_at=now,
            )
        )
        return slot_id

    def application(
        self,
        app_id: str,
        *,
        job_id: str = "JOB-1",
        user_id: str = "U1",
        status: str = "applied",
        current_round: int = 1,
        approved: bool = False,
        test_enabled: bool = False,
        slot_id: str | None = None,
    ) -> str:
        from models import Application
        from utils import iso_utc_now

        now = iso_utc_now()
        self._add(
            Application(
                id=app_id,
                job_id=job_id,
                user_id=user_id,
                slot_id=slot_id,
                current_round=current_round,
                admin_approved=approved,
                test_enabled=test_enabled,
                status=status,
                created_at=now,
                updated_at=now,
                updated_by="TEST",
            )
        )
        return app_id

    def param(self, param_id: str, name: str, *, max_score: int = 10, active: bool = True) -> str:
        from models import EvaluationParameter
        from utils import iso_utc_now

        now = iso_utc_now()
        self._add(
            EvaluationParameter(
                id=param_id,
                name=name,
                description="",
                max_score=max_score,
                is_active=active,
                created_at=now,
                updated_at=now,
            )
        )
        return param_id

    def task(self, task_id: str = "TASK-1", *, job_id: str = "JOB-1", active: bool = True) -> str:
        from models import JobTask
        from utils import iso_utc_now

        now = iso_utc_now()
        self._add(
            JobTask(
                id=task_id,
                job_id=job_id,
                title=f"Build {task_id}",
                description="Small CRUD service",
                instructions="Push to a public repo",
                estimated_hours=4,
                is_active=active,
                created_at=now,
                updated_at=now,
            )
        )
        return task_id


@pytest.fixture()
def seed(app_client):
    return Seeder()


@pytest.fixture()
def api(app_client):
    """api(action, data, headers) -> (http_status, body) through POST /api."""
    _app, client = app_client

    def _call(action: str, data: dict | None = None, headers: dict | None = None):
        res = client.post(
            "/api",
            data=json.dumps({"action": action, "data": data or {}}),
            content_type="text/plain; charset=utf-8",
            headers=headers or {},
        )
        return res.status_code, res.get_json()

    return _call
