"""
SQLAlchemy models for the exam desk.

Teacher → Exam → Question / StudentAttempt → IntegrityEvent is the exam-taking
core. QuestionFolder / BankQuestion hold the teacher's reusable question bank,
Subscription / Payment hold billing state.
"""

import enum
import uuid

from sqlalchemy import Column, Integer, String, Boolean, ForeignKey, DateTime, Text, Float, JSON, Index
from sqlalchemy.orm import relationship, backref
from sqlalchemy.sql import func

from database.database import Base


class ExamStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"
    ENDED = "ENDED"


class PlanType(str, enum.Enum):
    FREE = "FREE"
    PRO = "PRO"
    ONE_TIME = "ONE_TIME"


class IntegrityEventType(str, enum.Enum):
    """Client-reported suspicious events. Every event counts as one violation."""
    TAB_SWITCH = "TAB_SWITCH"
    WINDOW_BLUR = "WINDOW_BLUR"
    COPY_ATTEMPT = "COPY_ATTEMPT"
    PASTE_ATTEMPT = "PASTE_ATTEMPT"
    RIGHT_CLICK = "RIGHT_CLICK"
    DEVTOOLS_OPEN = "DEVTOOLS_OPEN"
    FULLSCREEN_EXIT = "FULLSCREEN_EXIT"
    MULTIPLE_FACES_DETECTED = "MULTIPLE_FACES_DETECTED"
    NO_FACE_DETECTED = "NO_FACE_DETECTED"


def _uuid() -> str:
    return str(uuid.uuid4())


# ==========================================
# AUTH: TEACHERS
# ==========================================

class Teacher(Base):
    """
    Teacher account. Owns exams, question bank and folders.
    plan_type / free_exams_used / one_time_exams_remaining drive the publish quota.
    refresh_token stored after login, cleared on logout (for server-side revocation).
    """
    __tablename__ = "teachers"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    hashed_password = Column(String(255), nullable=False)
    full_name = Column(String(255), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    plan_type = Column(String(10), default=PlanType.FREE.value, nullable=False)
    free_exams_used = Column(Integer, default=0, nullable=False)
    one_time_exams_remaining = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    refresh_token = Column(String(512), nullable=True, index=True)

    exams = relationship("Exam", back_populates="teacher", cascade="all, delete-orphan")
    subscriptions = relationship("Subscription", back_populates="teacher", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Teacher(id={self.id}, email='{self.email}', plan='{self.plan_type}')>"


# ==========================================
# EXAMS & QUESTIONS
# ==========================================

class Exam(Base):
    """
    Exam configuration authored by a teacher.
    status: DRAFT -> PUBLISHED (questions frozen) -> ENDED; unpublish goes back to DRAFT.
    exam_mode records which billing quota paid for the publish (FREE, PRO, ONE_TIME).
    """
    __tablename__ = "exams"

    id = Column(Integer, primary_key=True, index=True)
    teacher_id = Column(Integer, ForeignKey("teachers.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    duration_minutes = Column(Integer, nullable=False)
    status = Column(String(10), default=ExamStatus.DRAFT.value, nullable=False, index=True)
    exam_mode = Column(String(10), nullable=True)

    shuffle_questions = Column(Boolean, default=False, nullable=False)
    shuffle_options = Column(Boolean, default=False, nullable=False)
    anti_cheat_enabled = Column(Boolean, default=True, nullable=False)
    max_violations = Column(Integer, default=3, nullable=False)
    pass_percentage = Column(Float, default=50, nullable=False)
    negative_marking = Column(Boolean, default=False, nullable=False)
    negative_marks = Column(Float, default=0, nullable=False)
    show_results_immediately = Column(Boolean, default=True, nullable=False)

    # Access control
    require_password = Column(Boolean, default=False, nullable=False)
    password = Column(String(255), nullable=True)
    max_attempts = Column(Integer, nullable=True)  # null = unlimited retakes, one open attempt at a time
    scheduled_start = Column(DateTime(timezone=True), nullable=True)
    scheduled_end = Column(DateTime(timezone=True), nullable=True)
    allow_late_submission = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    teacher = relationship("Teacher", back_populates="exams")
    questions = relationship(
        "Question", back_populates="exam", cascade="all, delete-orphan",
        order_by="Question.position",
    )
    attempts = relationship("StudentAttempt", back_populates="exam", cascade="all, delete-orphan")

    @property
    def total_marks(self) -> float:
        return sum(q.marks for q in self.questions)

    def __repr__(self):
        return f"<Exam(id={self.id}, title='{self.title}', status='{self.status}')>"


class Question(Base):
    """
    Multiple-choice question owned by an exam.
    options: [{"id": "opt-0", "text": "..."}, ...]; correct_option is one of the option ids.
    negative_marks overrides the exam-level penalty when set.
    """
    __tablename__ = "questions"

    id = Column(Integer, primary_key=True, index=True)
    exam_id = Column(Integer, ForeignKey("exams.id", ondelete="CASCADE"), nullable=False, index=True)
    text = Column(Text, nullable=False)
    options = Column(JSON, nullable=False)
    correct_option = Column(String(64), nullable=False)
    marks = Column(Float, default=1, nullable=False)
    negative_marks = Column(Float, nullable=True)
    difficulty = Column(String(10), nullable=True)  # EASY, MEDIUM, HARD
    position = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    exam = relationship("Exam", back_populates="questions")

    def __repr__(self):
        return f"<Question(id={self.id}, exam_id={self.exam_id}, correct='{self.correct_option}')>"


# ==========================================
# ATTEMPTS & INTEGRITY EVENTS
# ==========================================

class StudentAttempt(Base):
    """
    One student's timed run through an exam. Students are identified by name + roll number,
    not by an account. end_time is computed once at creation and never written again.
    """
    __tablename__ = "student_attempts"
    __table_args__ = (
        Index("ix_student_attempts_exam_roll", "exam_id", "roll_number"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    exam_id = Column(Integer, ForeignKey("exams.id", ondelete="CASCADE"), nullable=False, index=True)
    student_name = Column(String(255), nullable=False)
    roll_number = Column(String(64), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)
    shuffle_seed = Column(Integer, nullable=False)

    submitted = Column(Boolean, default=False, nullable=False, index=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    is_late = Column(Boolean, default=False, nullable=False)

    answers = Column(JSON, default=dict, nullable=False)  # {question_id: option_id}
    score = Column(Float, nullable=True)
    total_marks = Column(Float, nullable=True)
    correct_answers = Column(Integer, default=0, nullable=False)
    wrong_answers = Column(Integer, default=0, nullable=False)
    unanswered = Column(Integer, default=0, nullable=False)
    total_questions = Column(Integer, default=0, nullable=False)
    violation_count = Column(Integer, default=0, nullable=False)

    exam = relationship("Exam", back_populates="attempts")
    events = relationship(
        "IntegrityEvent", back_populates="attempt", cascade="all, delete-orphan",
        order_by="IntegrityEvent.timestamp",
    )

    def __repr__(self):
        return f"<StudentAttempt(id={self.id}, exam_id={self.exam_id}, roll='{self.roll_number}', score={self.score})>"


class IntegrityEvent(Base):
    """Append-only record of a suspicious client event during an open attempt."""
    __tablename__ = "integrity_events"

    id = Column(Integer, primary_key=True, index=True)
    attempt_id = Column(String(36), ForeignKey("student_attempts.id", ondelete="CASCADE"), nullable=False, index=True)
    event_type = Column(String(40), nullable=False, index=True)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    event_metadata = Column("metadata", JSON, default=dict, nullable=False)

    attempt = relationship("StudentAttempt", back_populates="events")

    def __repr__(self):
        return f"<IntegrityEvent(id={self.id}, attempt_id={self.attempt_id}, type='{self.event_type}')>"


# ==========================================
# QUESTION BANK
# ==========================================

class QuestionFolder(Base):
    """Folder in a teacher's question bank. parent_id forms a tree; name is unique per parent."""
    __tablename__ = "question_folders"

    id = Column(Integer, primary_key=True, index=True)
    teacher_id = Column(Integer, ForeignKey("teachers.id", ondelete="CASCADE"), nullable=False, index=True)
    parent_id = Column(Integer, ForeignKey("question_folders.id", ondelete="CASCADE"), nullable=True, index=True)
    name = Column(String(255), nullable=False)
    color = Column(String(20), nullable=True)
    icon = Column(String(50), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    subfolders = relationship(
        "QuestionFolder",
        backref=backref("parent", remote_side=[id]),
        cascade="all, delete-orphan",
    )
    questions = relationship("BankQuestion", back_populates="folder")

    def __repr__(self):
        return f"<QuestionFolder(id={self.id}, name='{self.name}', parent_id={self.parent_id})>"


class BankQuestion(Base):
    """
    Reusable question in a teacher's personal bank. Always an independent copy:
    importing into an exam or saving from an exam never links the two rows.
    """
    __tablename__ = "bank_questions"

    id = Column(Integer, primary_key=True, index=True)
    teacher_id = Column(Integer, ForeignKey("teachers.id", ondelete="CASCADE"), nullable=False, index=True)
    folder_id = Column(Integer, ForeignKey("question_folders.id", ondelete="SET NULL"), nullable=True, index=True)
    text = Column(Text, nullable=False)
    options = Column(JSON, nullable=False)
    correct_option = Column(String(64), nullable=False)
    marks = Column(Float, default=1, nullable=False)
    negative_marks = Column(Float, nullable=True)
    explanation = Column(Text, nullable=True)
    difficulty = Column(String(10), default="MEDIUM", nullable=False, index=True)
    subject = Column(String(255), nullable=True)
    topic = Column(String(255), nullable=True)
    tags = Column(JSON, default=list, nullable=False)
    usage_count = Column(Integer, default=0, nullable=False)
    last_used = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    folder = relationship("QuestionFolder", back_populates="questions")

    def __repr__(self):
        return f"<BankQuestion(id={self.id}, teacher_id={self.teacher_id}, folder_id={self.folder_id})>"


# ==========================================
# BILLING
# ==========================================

class Subscription(Base):
    """Pro subscription period. Access lasts until current_period_end even after cancellation."""
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    teacher_id = Column(Integer, ForeignKey("teachers.id", ondelete="CASCADE"), nullable=False, index=True)
    plan = Column(String(10), nullable=False)  # MONTHLY, YEARLY
    status = Column(String(10), default="ACTIVE", nullable=False, index=True)  # ACTIVE, CANCELLED
    current_period_start = Column(DateTime(timezone=True), nullable=False)
    current_period_end = Column(DateTime(timezone=True), nullable=False)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    amount = Column(Integer, nullable=False)  # cents
    currency = Column(String(3), default="USD", nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    teacher = relationship("Teacher", back_populates="subscriptions")

    def __repr__(self):
        return f"<Subscription(id={self.id}, teacher_id={self.teacher_id}, plan='{self.plan}', status='{self.status}')>"


class Payment(Base):
    """Completed checkout, recorded for the billing history."""
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    teacher_id = Column(Integer, ForeignKey("teachers.id", ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)  # cents
    currency = Column(String(3), default="USD", nullable=False)
    status = Column(String(20), default="COMPLETED", nullable=False)
    type = Column(String(20), nullable=False)  # ONE_TIME_EXAM, SUBSCRIPTION
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<Payment(id={self.id}, teacher_id={self.teacher_id}, type='{self.type}', amount={self.amount})>"
