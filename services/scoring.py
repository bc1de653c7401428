"""
Evaluation of submitted attempts.

MCQ answers are stored as an index into the options as the student saw
them, so the attempt's shuffled order is rebuilt before comparing with the
correct option. Wrong answered MCQs cost exam.negative_marking; skipped
questions score zero.
"""

import logging
import os
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from database.models import Answer, AttemptStatus, ExamAttempt, ExamResult, QuestionType
from services.attempt_lifecycle import AttemptLifecycle
from services.errors import InvalidStateError, TransientStoreFailure

logger = logging.getLogger(__name__)

# ─── Config ────────────────────────────────────────────────────────────────────

# Evaluate right after submission (manual or auto) instead of leaving it for staff
AUTO_EVALUATE = os.getenv("AUTO_EVALUATE", "true").lower() in ("1", "true", "yes")

GRADE_BANDS = [
    (90, "A+"),
    (80, "A"),
    (70, "B+"),
    (60, "B"),
    (50, "C"),
    (40, "D"),
]


def get_grade(percentage: float) -> str:
    for threshold, grade in GRADE_BANDS:
        if percentage >= threshold:
            return grade
    return "F"


def _normalize_text(value: Optional[str]) -> str:
    return " ".join((value or "").split()).casefold()


class ScoringService:
    def __init__(self, lifecycle: AttemptLifecycle):
        self.lifecycle = lifecycle
        self.db = lifecycle.db

    def evaluate(self, attempt: ExamAttempt) -> ExamResult:
        if attempt.status != AttemptStatus.SUBMITTED.value:
            raise InvalidStateError("Only submitted attempts can be evaluated", current_status=attempt.status)

        exam = attempt.exam
        answers: Dict[int, Answer] = {
            row.question_id: row
            for row in self.db.query(Answer).filter(Answer.attempt_id == attempt.id).all()
        }

        obtained = 0.0
        correct = incorrect = unanswered = 0
        for question in exam.questions:
            row = answers.get(question.id)
            if row is None or (row.selected_option is None and not (row.answer_text or "").strip()):
                unanswered += 1
                if row is not None:
                    row.is_correct = False
                    row.marks_obtained = 0.0
                continue

            if question.question_type == QuestionType.MCQ.value:
                is_correct = self._mcq_correct(attempt, question, row)
                marks = question.marks if is_correct else -exam.negative_marking
            else:
                is_correct = bool(question.correct_answer) and (
                    _normalize_text(row.answer_text) == _normalize_text(question.correct_answer)
                )
                marks = question.marks if is_correct else 0.0

            row.is_correct = is_correct
            row.marks_obtained = marks
            obtained += marks
            if is_correct:
                correct += 1
            else:
                incorrect += 1

        total_marks = exam.total_marks if exam.total_marks is not None else sum(q.marks for q in exam.questions)
        percentage = round(obtained / total_marks * 100, 2) if total_marks > 0 else 0.0

        result = ExamResult(
            attempt_id=attempt.id,
            exam_id=exam.id,
            student_id=attempt.student_id,
            attempt_number=attempt.attempt_number,
            total_marks=total_marks,
            obtained_marks=round(obtained, 2),
            percentage=percentage,
            grade=get_grade(percentage),
            status="pass" if percentage >= exam.passing_percentage else "fail",
            correct_answers=correct,
            incorrect_answers=incorrect,
            unanswered=unanswered,
            time_spent=attempt.total_time_spent,
            negative_marking_applied=exam.negative_marking,
            result_date=self.lifecycle.clock(),
        )
        self.lifecycle.mark_evaluated(attempt)
        try:
            self.db.add(result)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Failed to store result for attempt %s", attempt.id)
            raise TransientStoreFailure("evaluate exam")

        logger.info(
            "Attempt %s evaluated: %.2f/%.2f (%s, %s)",
            attempt.id, result.obtained_marks, total_marks, result.grade, result.status,
        )
        return result

    def _mcq_correct(self, attempt: ExamAttempt, question, row: Answer) -> bool:
        presented = self.lifecycle.presented_options(attempt, question)
        index = row.selected_option
        if index is None or not 0 <= index < len(presented):
            return False
        return bool(presented[index].is_correct)


def result_dict(result: ExamResult) -> dict:
    return {
        "id": result.id,
        "attempt_id": result.attempt_id,
        "exam_id": result.exam_id,
        "attempt_number": result.attempt_number,
        "total_marks": result.total_marks,
        "obtained_marks": result.obtained_marks,
        "percentage": result.percentage,
        "grade": result.grade,
        "status": result.status,
        "correct_answers": result.correct_answers,
        "incorrect_answers": result.incorrect_answers,
        "unanswered": result.unanswered,
        "time_spent": result.time_spent,
        "result_date": result.result_date.isoformat() if isinstance(result.result_date, datetime) else None,
    }
