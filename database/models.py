"""
SQLAlchemy models for the exam attempt integrity core.

Users and exams are collaborator data the core only reads.
Attempts, progress, answers and anti-cheat events are owned by the
attempt lifecycle; none of them is ever physically deleted.
"""

from sqlalchemy import (
    Column, Integer, String, Boolean, ForeignKey, DateTime, Text, Float, JSON,
    Index, UniqueConstraint, text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid
import enum
from database.database import Base


class UserRole(str, enum.Enum):
    STUDENT = "student"
    PROCTOR = "proctor"
    ADMIN = "admin"


class ExamStatus(str, enum.Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class AttemptStatus(str, enum.Enum):
    """Lifecycle states of an exam attempt."""
    ONGOING = "ongoing"
    SUBMITTED = "submitted"
    EVALUATED = "evaluated"
    ABANDONED = "abandoned"


class QuestionType(str, enum.Enum):
    MCQ = "mcq"
    TEXT = "text"


def _uuid_str() -> str:
    return str(uuid.uuid4())


# ==========================================
# AUTH: USERS
# ==========================================

class User(Base):
    """
    Account for students, proctors and admins.
    refresh_token stored after login, cleared on logout (for server-side revocation).
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    hashed_password = Column(String(255), nullable=False)
    full_name = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False, default=UserRole.STUDENT.value, index=True)
    is_active = Column(Boolean, default=True, nullable=False)
    refresh_token = Column(String(512), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<User(id={self.id}, email='{self.email}', role='{self.role}')>"


# ==========================================
# EXAM METADATA (read-only for the core)
# ==========================================

class Exam(Base):
    """
    Exam definition with the controls the attempt lifecycle consults.
    start_time/end_time bound when attempts may start; null means open.
    negative_marking is deducted per wrong answered MCQ.
    """
    __tablename__ = "exams"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(500), nullable=False)
    status = Column(String(20), nullable=False, default=ExamStatus.PUBLISHED.value)
    start_time = Column(DateTime(timezone=True), nullable=True)
    end_time = Column(DateTime(timezone=True), nullable=True)
    duration_minutes = Column(Integer, nullable=False, default=60)
    total_marks = Column(Float, nullable=True)  # null = sum of question marks
    passing_percentage = Column(Float, nullable=False, default=40.0)
    negative_marking = Column(Float, nullable=False, default=0.25)
    max_attempts = Column(Integer, nullable=False, default=1)
    retake_cooldown_days = Column(Integer, nullable=False, default=0)
    allow_answer_change = Column(Boolean, nullable=False, default=True)
    allow_answer_review = Column(Boolean, nullable=False, default=True)
    show_results = Column(Boolean, nullable=False, default=True)
    shuffle_options = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    questions = relationship(
        "Question", back_populates="exam", order_by="Question.sequence", cascade="all, delete-orphan"
    )

    def __repr__(self):
        return f"<Exam(id={self.id}, title='{self.title}', status='{self.status}')>"


class Question(Base):
    __tablename__ = "questions"

    id = Column(Integer, primary_key=True, index=True)
    exam_id = Column(Integer, ForeignKey("exams.id", ondelete="CASCADE"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False, default=0)
    question_text = Column(Text, nullable=False)
    question_type = Column(String(20), nullable=False, default=QuestionType.MCQ.value)
    marks = Column(Float, nullable=False, default=1.0)
    randomize_options = Column(Boolean, nullable=False, default=True)
    correct_answer = Column(Text, nullable=True)  # text questions only

    exam = relationship("Exam", back_populates="questions")
    options = relationship(
        "QuestionOption",
        back_populates="question",
        order_by=lambda: [QuestionOption.sequence, QuestionOption.id],
        cascade="all, delete-orphan",
    )

    def __repr__(self):
        return f"<Question(id={self.id}, exam_id={self.exam_id}, type='{self.question_type}')>"


class QuestionOption(Base):
    """One choice of an MCQ. Canonical order is (sequence, id); shuffling starts from it."""
    __tablename__ = "question_options"

    id = Column(Integer, primary_key=True, index=True)
    question_id = Column(Integer, ForeignKey("questions.id", ondelete="CASCADE"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False, default=0)
    option_label = Column(String(10), nullable=True)
    option_text = Column(Text, nullable=False)
    is_correct = Column(Boolean, nullable=False, default=False)

    question = relationship("Question", back_populates="options")


# ==========================================
# ATTEMPTS
# ==========================================

class ExamAttempt(Base):
    """
    One student's timed session on an exam.
    At most one attempt per (exam, student) may be ongoing; enforced by a partial unique index.
    """
    __tablename__ = "exam_attempts"
    __table_args__ = (
        UniqueConstraint("exam_id", "student_id", "attempt_number", name="uq_exam_attempts_number"),
        Index(
            "uq_exam_attempts_one_ongoing",
            "exam_id",
            "student_id",
            unique=True,
            postgresql_where=text("status = 'ongoing'"),
            sqlite_where=text("status = 'ongoing'"),
        ),
    )

    id = Column(String(36), primary_key=True, default=_uuid_str)
    exam_id = Column(Integer, ForeignKey("exams.id", ondelete="RESTRICT"), nullable=False, index=True)
    student_id = Column(Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    attempt_number = Column(Integer, nullable=False, default=1)
    status = Column(String(20), nullable=False, default=AttemptStatus.ONGOING.value, index=True)
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=True)
    submitted_at = Column(DateTime(timezone=True), nullable=True)
    total_time_spent = Column(Integer, nullable=False, default=0)  # seconds
    is_auto_submitted = Column(Boolean, nullable=False, default=False)
    abandon_reason = Column(String(255), nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(500), nullable=True)

    exam = relationship("Exam")
    student = relationship("User")
    progress = relationship("AttemptProgress", back_populates="attempt", uselist=False)
    answers = relationship("Answer", back_populates="attempt")
    anti_cheat_events = relationship("AntiCheatEvent", back_populates="attempt")
    result = relationship("ExamResult", back_populates="attempt", uselist=False)

    def __repr__(self):
        return f"<ExamAttempt(id='{self.id}', exam_id={self.exam_id}, student_id={self.student_id}, status='{self.status}')>"


class AttemptProgress(Base):
    """Autosave snapshot. Overwritten wholesale on every save (last writer wins)."""
    __tablename__ = "exam_progress"

    id = Column(Integer, primary_key=True, index=True)
    attempt_id = Column(String(36), ForeignKey("exam_attempts.id"), nullable=False, unique=True, index=True)
    current_question_index = Column(Integer, nullable=False, default=0)
    answers = Column(JSON, nullable=False, default=dict)
    flagged_questions = Column(JSON, nullable=False, default=list)
    last_saved_at = Column(DateTime(timezone=True), nullable=True)

    attempt = relationship("ExamAttempt", back_populates="progress")


class Answer(Base):
    """
    Answer to one question within an attempt. Upserted by (attempt_id, question_id).
    selected_option is an index into the options as presented to the student.
    """
    __tablename__ = "exam_answers"
    __table_args__ = (
        UniqueConstraint("attempt_id", "question_id", name="uq_exam_answers_attempt_question"),
    )

    id = Column(Integer, primary_key=True, index=True)
    attempt_id = Column(String(36), ForeignKey("exam_attempts.id"), nullable=False, index=True)
    question_id = Column(Integer, ForeignKey("questions.id"), nullable=False, index=True)
    answer_text = Column(Text, nullable=True)
    selected_option = Column(Integer, nullable=True)
    is_marked_for_review = Column(Boolean, nullable=False, default=False)
    time_spent = Column(Integer, nullable=False, default=0)
    is_correct = Column(Boolean, nullable=True)
    marks_obtained = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    attempt = relationship("ExamAttempt", back_populates="answers")
    question = relationship("Question")

    def __repr__(self):
        return f"<Answer(attempt_id='{self.attempt_id}', q_id={self.question_id})>"


# ==========================================
# ANTI-CHEAT EVENTS
# ==========================================

class AntiCheatEvent(Base):
    """Append-only evidentiary record of a suspicious signal during an attempt."""
    __tablename__ = "anti_cheat_events"

    id = Column(Integer, primary_key=True, index=True)
    attempt_id = Column(String(36), ForeignKey("exam_attempts.id"), nullable=False, index=True)
    recorded_by = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    event_type = Column(String(50), nullable=False, index=True)  # tab-switch, fullscreen-exit, ...
    severity = Column(Text, nullable=False, default="medium")  # free text, never validated
    description = Column(Text, nullable=True)
    screenshot_url = Column(String(500), nullable=True)
    event_metadata = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)

    attempt = relationship("ExamAttempt", back_populates="anti_cheat_events")

    def __repr__(self):
        return f"<AntiCheatEvent(id={self.id}, attempt_id='{self.attempt_id}', type='{self.event_type}')>"


# ==========================================
# RESULTS
# ==========================================

class ExamResult(Base):
    """Outcome of evaluating a submitted attempt."""
    __tablename__ = "exam_results"

    id = Column(Integer, primary_key=True, index=True)
    attempt_id = Column(String(36), ForeignKey("exam_attempts.id"), nullable=False, unique=True, index=True)
    exam_id = Column(Integer, ForeignKey("exams.id"), nullable=False, index=True)
    student_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    attempt_number = Column(Integer, nullable=False)
    total_marks = Column(Float, nullable=False)
    obtained_marks = Column(Float, nullable=False)
    percentage = Column(Float, nullable=False)
    grade = Column(String(5), nullable=False)
    status = Column(String(10), nullable=False)  # pass / fail
    correct_answers = Column(Integer, nullable=False, default=0)
    incorrect_answers = Column(Integer, nullable=False, default=0)
    unanswered = Column(Integer, nullable=False, default=0)
    time_spent = Column(Integer, nullable=True)
    negative_marking_applied = Column(Float, nullable=False, default=0.0)
    result_date = Column(DateTime(timezone=True), nullable=False)

    attempt = relationship("ExamAttempt", back_populates="result")

    def __repr__(self):
        return f"<ExamResult(attempt_id='{self.attempt_id}', obtained={self.obtained_marks}, grade='{self.grade}')>"
