import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Must be set before database.database builds its engine
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret")
os.environ.setdefault("RATE_LIMIT_BACKEND", "memory")

from fastapi.testclient import TestClient

from auth.security import create_access_token
from database.database import Base, SessionLocal, engine
from database.models import Exam, Question, QuestionOption, User, UserRole
from exam_api import app
from routers.deps import get_clock, get_rate_limiter
from services.anti_cheat import AntiCheatRecorder
from services.attempt_lifecycle import AttemptLifecycle
from services.progress_store import AttemptProgressStore
from services.rate_limiter import RateLimiter


class FakeClock:
    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)

    def epoch_ms(self):
        return int(self.now.timestamp() * 1000)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def users(db):
    def make(email, name, role):
        user = User(email=email, hashed_password="!", full_name=name, role=role, is_active=True)
        db.add(user)
        return user

    people = SimpleNamespace(
        student=make("asha@example.edu", "Asha Rao", UserRole.STUDENT.value),
        other=make("liam@example.edu", "Liam Chen", UserRole.STUDENT.value),
        proctor=make("proctor@example.edu", "Pat Proctor", UserRole.PROCTOR.value),
        admin=make("admin@example.edu", "Ada Admin", UserRole.ADMIN.value),
    )
    db.commit()
    for user in vars(people).values():
        db.refresh(user)
    return people


@pytest.fixture
def exam_factory(db):
    """Build a published exam of MCQ questions; option A is the correct one."""

    def make(question_count=3, option_count=4, **overrides):
        fields = {
            "title": "Computer Networks Midterm",
            "status": "published",
            "duration_minutes": 30,
            "max_attempts": 1,
            "negative_marking": 0.25,
            "passing_percentage": 40.0,
        }
        fields.update(overrides)
        exam = Exam(**fields)
        for q in range(question_count):
            question = Question(sequence=q, question_text=f"Question {q + 1}", question_type="mcq", marks=1.0)
            for o in range(option_count):
                label = "ABCDEFGH"[o]
                question.options.append(QuestionOption(
                    sequence=o,
                    option_label=label,
                    option_text=f"Q{q + 1} option {label}",
                    is_correct=(o == 0),
                ))
            exam.questions.append(question)
        db.add(exam)
        db.commit()
        db.refresh(exam)
        return exam

    return make


@pytest.fixture
def exam(exam_factory):
    return exam_factory()


@pytest.fixture
def lifecycle(db, clock):
    return AttemptLifecycle(db, clock=clock)


@pytest.fixture
def store(db, clock):
    return AttemptProgressStore(db, clock=clock)


@pytest.fixture
def recorder(db, clock):
    return AntiCheatRecorder(db, clock=clock)


@pytest.fixture
def limiter(clock):
    return RateLimiter(clock=clock.epoch_ms)


@pytest.fixture
def client(db, clock, limiter):
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_rate_limiter] = lambda: limiter
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    def make(user):
        return {"Authorization": f"Bearer {create_access_token(user.id, user.role)}"}

    return make
