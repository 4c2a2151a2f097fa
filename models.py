from __future__ import annotations

from sqlalchemy import Boolean, Column, Index, Integer, String, Text, UniqueConstraint, text

from db import Base


class Job(Base):
    __tablename__ = "jobs"

    id = Column(String, primary_key=True)
    title = Column(Text, nullable=False, default="")
    description = Column(Text, nullable=False, default="")
    total_rounds = Column(Integer, nullable=False, default=1)
    test_time_minutes = Column(Integer, nullable=False, default=15)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    created_at = Column(Text, nullable=False, default="")
    created_by = Column(String, nullable=False, default="")
    updated_at = Column(Text, nullable=False, default="")
    updated_by = Column(String, nullable=False, default="")


class JobRound(Base):
    __tablename__ = "job_rounds"
    __table_args__ = (UniqueConstraint("job_id", "round_number", name="uq_job_rounds_job_round"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String, nullable=False, index=True)
    round_number = Column(Integer, nullable=False, default=1)
    name = Column(Text, nullable=False, default="")
    mode = Column(String, nullable=False, default="online_aptitude")  # online_aptitude|online_technical|in_person|interview|hr_round
    instructions = Column(Text, nullable=False, default="")


class Slot(Base):
    """
    Bookable time window.

    There is deliberately no stored booking counter: occupancy is always the live
    count of applications whose slot_id points here.
    """

    __tablename__ = "slots"

    id = Column(String, primary_key=True)
    job_id = Column(String, nullable=True, index=True)  # NULL = usable by any job
    slot_date = Column(String, nullable=False, default="")  # YYYY-MM-DD
    start_time = Column(String, nullable=False, default="")  # HH:MM
    end_time = Column(String, nullable=False, default="")
    max_capacity = Column(Integer, nullable=False, default=50)
    is_enabled = Column(Boolean, nullable=False, default=False)
    venue = Column(Text, nullable=False, default="")
    created_at = Column(Text, nullable=False, default="")
    updated_at = Column(Text, nullable=False, default="")


class Application(Base):
    __tablename__ = "applications"
    __table_args__ = (UniqueConstraint("job_id", "user_id", name="uq_applications_job_user"),)

    id = Column(String, primary_key=True)
    job_id = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    slot_id = Column(String, nullable=True, index=True)
    current_round = Column(Integer, nullable=False, default=1)
    admin_approved = Column(Boolean, nullable=False, default=False)
    test_enabled = Column(Boolean, nullable=False, default=False)
    status = Column(String, nullable=False, default="applied", index=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(Text, nullable=False, default="")
    updated_at = Column(Text, nullable=False, default="")
    updated_by = Column(String, nullable=False, default="")

    __mapper_args__ = {"version_id_col": version}


class Question(Base):
    """Read-only here; rows are owned by the question-bank service."""

    __tablename__ = "questions"
    __table_args__ = (Index("ix_questions_job_round", "job_id", "round_number"),)

    id = Column(String, primary_key=True)
    job_id = Column(String, nullable=False)
    round_number = Column(Integer, nullable=False, default=1)
    question_text = Column(Text, nullable=False, default="")
    options_json = Column(Text, nullable=False, default="[]")
    correct_answer = Column(Text, nullable=False, default="")
    marks = Column(Integer, nullable=False, default=1)


class TestAttempt(Base):
    __tablename__ = "test_attempts"
    __table_args__ = (
        # One open attempt per application round.
        Index(
            "uq_test_attempts_open_round",
            "application_id",
            "round_number",
            unique=True,
            sqlite_where=text("is_submitted = 0"),
            postgresql_where=text("NOT is_submitted"),
        ),
    )

    id = Column(String, primary_key=True)
    application_id = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    round_number = Column(Integer, nullable=False, default=1)
    started_at = Column(Text, nullable=False, default="")
    ended_at = Column(Text, nullable=True)
    duration_minutes = Column(Integer, nullable=False, default=15)
    total_marks = Column(Integer, nullable=False, default=0)
    passing_marks = Column(Integer, nullable=False, default=0)
    obtained_marks = Column(Integer, nullable=True)
    is_submitted = Column(Boolean, nullable=False, default=False)
    auto_submitted = Column(Boolean, nullable=False, default=False)
    is_passed = Column(Boolean, nullable=True)


class Answer(Base):
    __tablename__ = "answers"
    __table_args__ = (UniqueConstraint("test_attempt_id", "question_id", name="uq_answers_attempt_question"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    test_attempt_id = Column(String, nullable=False, index=True)
    question_id = Column(String, nullable=False)
    selected_answer = Column(Text, nullable=False, default="")
    is_correct = Column(Boolean, nullable=True)
    updated_at = Column(Text, nullable=False, default="")


class Violation(Base):
    __tablename__ = "violations"
    __table_args__ = (UniqueConstraint("test_attempt_id", "violation_type", name="uq_violations_attempt_type"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    test_attempt_id = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=False, default="")
    violation_type = Column(String, nullable=False, default="")  # tab_switch|window_blur|...
    violation_count = Column(Integer, nullable=False, default=1)
    first_at = Column(Text, nullable=False, default="")
    last_at = Column(Text, nullable=False, default="")


class EvaluationParameter(Base):
    __tablename__ = "evaluation_parameters"

    id = Column(String, primary_key=True)
    name = Column(Text, nullable=False, default="")
    description = Column(Text, nullable=False, default="")
    max_score = Column(Integer, nullable=False, default=10)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(Text, nullable=False, default="")
    updated_at = Column(Text, nullable=False, default="")


class CandidateEvaluation(Base):
    __tablename__ = "candidate_evaluations"
    __table_args__ = (Index("ix_candidate_evaluations_app_round", "application_id", "round_number"),)

    id = Column(String, primary_key=True)
    application_id = Column(String, nullable=False)
    round_number = Column(Integer, nullable=False, default=1)
    evaluator_id = Column(String, nullable=False, default="")
    recommendation = Column(String, nullable=False, default="hold")  # pass|fail|hold
    overall_remarks = Column(Text, nullable=False, default="")
    internal_remarks = Column(Text, nullable=False, default="")
    is_visible_to_candidate = Column(Boolean, nullable=False, default=False)
    created_at = Column(Text, nullable=False, default="")
    # Tie-breaker for "most recent governs" when created_at collides.
    seq = Column(Integer, nullable=False, default=0)


class EvaluationScore(Base):
    __tablename__ = "evaluation_scores"
    __table_args__ = (UniqueConstraint("evaluation_id", "parameter_id", name="uq_evaluation_scores_eval_param"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    evaluation_id = Column(String, nullable=False, index=True)
    parameter_id = Column(String, nullable=False)
    score = Column(Integer, nullable=False, default=0)
    remarks = Column(Text, nullable=False, default="")


class JobTask(Base):
    """Take-home assignment template for a job."""

    __tablename__ = "job_tasks"

    id = Column(String, primary_key=True)
    job_id = Column(String, nullable=False, index=True)
    title = Column(Text, nullable=False, default="")
    description = Column(Text, nullable=False, default="")
    instructions = Column(Text, nullable=False, default="")
    estimated_hours = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(Text, nullable=False, default="")
    updated_at = Column(Text, nullable=False, default="")


class TaskAssignment(Base):
    __tablename__ = "task_assignments"
    __table_args__ = (UniqueConstraint("task_id", "application_id", name="uq_task_assignments_task_app"),)

    id = Column(String, primary_key=True)
    task_id = Column(String, nullable=False, index=True)
    application_id = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default="pending")  # pending|in_progress|submitted|reviewed
    due_date = Column(Text, nullable=True)
    submission_url = Column(Text, nullable=False, default="")
    submission_notes = Column(Text, nullable=False, default="")
    submitted_at = Column(Text, nullable=True)
    score = Column(Integer, nullable=True)  # 0..100
    reviewer_notes = Column(Text, nullable=False, default="")
    reviewed_at = Column(Text, nullable=True)
    reviewed_by = Column(String, nullable=False, default="")
    assigned_at = Column(Text, nullable=False, default="")


class AuditLog(Base):
    __tablename__ = "audit_log"

    logId = Column(String, primary_key=True)
    entityType = Column(String, nullable=False, default="", index=True)
    entityId = Column(String, nullable=False, default="", index=True)
    action = Column(String, nullable=False, default="", index=True)
    fromState = Column(String, nullable=False, default="")
    toState = Column(String, nullable=False, default="")
    remark = Column(Text, nullable=False, default="")
    actorUserId = Column(String, nullable=False, default="")
    actorRole = Column(String, nullable=False, default="")
    at = Column(Text, nullable=False, default="", index=True)
    correlationId = Column(String, nullable=False, default="")
    metaJson = Column(Text, nullable=False, default="")
