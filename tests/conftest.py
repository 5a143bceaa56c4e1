import os
from datetime import timedelta

# Must be set before the engine is created on import
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("JWT_SECRET_KEY", "test-secret")

import fakeredis  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from auth.security import create_teacher_token, hash_password  # noqa: E402
from database import redis_client  # noqa: E402
from database.database import Base, SessionLocal, build_engine, engine  # noqa: E402
from database.models import Exam, ExamStatus, Question, Teacher  # noqa: E402
from services.clock import utcnow  # noqa: E402

# One bcrypt hash for every fixture teacher keeps the suite fast
_PASSWORD = "correct-horse"
_PASSWORD_HASH = hash_password(_PASSWORD)


@pytest.fixture(autouse=True)
def _tables():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def fake_redis():
    client = fakeredis.FakeRedis(decode_responses=True)
    redis_client.set_redis(client)
    yield client
    redis_client.set_redis(None)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client():
    import exam_api

    with TestClient(exam_api.app) as c:
        yield c


@pytest.fixture
def password():
    return _PASSWORD


@pytest.fixture
def make_teacher(db):
    counter = {"n": 0}

    def _make(email=None, **fields):
        counter["n"] += 1
        teacher = Teacher(
            email=email or f"teacher{counter['n']}@school.test",
            hashed_password=_PASSWORD_HASH,
            full_name=f"Teacher {counter['n']}",
            **fields,
        )
        db.add(teacher)
        db.commit()
        db.refresh(teacher)
        return teacher

    return _make


@pytest.fixture
def teacher(make_teacher):
    return make_teacher()


@pytest.fixture
def auth_headers(teacher):
    return {"Authorization": f"Bearer {create_teacher_token(teacher.id, teacher.email)}"}


def default_questions():
    return [
        {
            "text": "2 + 2 = ?",
            "options": [{"id": "a", "text": "3"}, {"id": "b", "text": "4"}],
            "correct_option": "b",
            "marks": 1,
        },
        {
            "text": "Capital of France?",
            "options": [{"id": "a", "text": "Paris"}, {"id": "b", "text": "Rome"}, {"id": "c", "text": "Oslo"}],
            "correct_option": "a",
            "marks": 1,
        },
    ]


@pytest.fixture
def make_exam(db, teacher):
    """Insert an exam with questions directly. Published unless told otherwise."""

    def _make(questions=None, owner=None, status=ExamStatus.PUBLISHED.value, **settings):
        settings.setdefault("title", "Unit test")
        settings.setdefault("duration_minutes", 30)
        exam = Exam(teacher_id=(owner or teacher).id, status=status, **settings)
        for position, q in enumerate(default_questions() if questions is None else questions):
            exam.questions.append(Question(position=position, **q))
        db.add(exam)
        db.commit()
        db.refresh(exam)
        return exam

    return _make


@pytest.fixture
def now():
    return utcnow()


@pytest.fixture
def later(now):
    def _later(**delta):
        return now + timedelta(**delta)

    return _later


@pytest.fixture
def file_sessions(tmp_path):
    """Session factory on a file database, for tests that need several real connections."""
    file_engine = build_engine(f"sqlite:///{tmp_path / 'shared.db'}")
    Base.metadata.create_all(bind=file_engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=file_engine)
    file_engine.dispose()


@pytest.fixture
def shared_exam(file_sessions):
    """A published exam with the default questions in the file database. Returns its id."""
    with file_sessions() as setup:
        owner = Teacher(email="shared@school.test", hashed_password=_PASSWORD_HASH, full_name="Shared")
        setup.add(owner)
        setup.flush()
        exam = Exam(teacher_id=owner.id, title="Shared", duration_minutes=30, status=ExamStatus.PUBLISHED.value)
        for position, q in enumerate(default_questions()):
            exam.questions.append(Question(position=position, **q))
        setup.add(exam)
        setup.commit()
        return exam.id
