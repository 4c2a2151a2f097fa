"""
Question bank lookups consumed by the test-attempt engine.

Question CRUD belongs to the question-management service; this module only reads
`question_id -> (correct_answer, marks)` for a job round. Swap the backing store
with `set_question_bank()` when the bank lives elsewhere.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select

from models import Question


@dataclass(frozen=True)
class QuestionRef:
    question_id: str
    correct_answer: str
    marks: int

    def is_correct(self, selected: Any) -> bool:
        if selected is None:
            return False
        return str(selected).strip() == self.correct_answer.strip()


class QuestionBank:
    def round_questions(self, db, *, job_id: str, round_number: int) -> list[QuestionRef]:
        raise NotImplementedError

    def public_questions(self, db, *, job_id: str, round_number: int) -> list[dict[str, Any]]:
        raise NotImplementedError


class DbQuestionBank(QuestionBank):
    def _rows(self, db, job_id: str, round_number: int) -> list[Question]:
        return (
            db.execute(
                select(Question)
                .where(Question.job_id == job_id)
                .where(Question.round_number == int(round_number))
                .order_by(Question.id.asc())
            )
            .scalars()
            .all()
        )

    def round_questions(self, db, *, job_id: str, round_number: int) -> list[QuestionRef]:
        return [
            QuestionRef(question_id=str(q.id), correct_answer=str(q.correct_answer or ""), marks=int(q.marks or 1))
            for q in self._rows(db, job_id, round_number)
        ]

    def public_questions(self, db, *, job_id: str, round_number: int) -> list[dict[str, Any]]:
        out = []
        for q in self._rows(db, job_id, round_number):
            try:
                opts = json.loads(str(q.options_json or "").strip() or "[]")
            except ValueError:
                opts = []
            if not isinstance(opts, list):
                opts = []
            out.append(
                {
                    "questionId": str(q.id),
                    "text": str(q.question_text or ""),
                    "options": [str(x) for x in opts if str(x or "").strip()],
                    "marks": int(q.marks or 1),
                }
            )
        return out


_bank: QuestionBank = DbQuestionBank()


def get_question_bank() -> QuestionBank:
    return _bank


def set_question_bank(bank: QuestionBank) -> None:
    global _bank
    _bank = bank
