"""
Exam management router (teacher-facing).
Create and edit draft exams, publish / unpublish / archive them,
and read attempts, results and integrity tables.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import func
from sqlalchemy.orm import Session, joinedload

from database.database import get_db
from database.models import Exam, ExamStatus, Question, StudentAttempt, Teacher
from database.schemas import ExamCreate, ExamUpdate, QuestionCreate, QuestionResponse, QuestionUpdate, check_choices
from routers.auth_teacher import get_current_teacher
from services import billing, integrity, results
from services.clock import as_utc, iso
from services.errors import NotFound, StateConflict, Unauthorized, ValidationError

log = logging.getLogger(__name__)

router = APIRouter(prefix="/exams", tags=["exams"])

SETTING_FIELDS = (
    "description", "shuffle_questions", "shuffle_options", "anti_cheat_enabled",
    "max_violations", "pass_percentage", "negative_marking", "negative_marks",
    "show_results_immediately", "require_password", "password", "max_attempts",
    "scheduled_start", "scheduled_end", "allow_late_submission",
)
# Settings that may be cleared with an explicit null
NULLABLE_SETTINGS = {"description", "password", "max_attempts", "scheduled_start", "scheduled_end"}


# ─── Helpers ───────────────────────────────────────────────────────────────────

def _get_owned_exam(db: Session, teacher: Teacher, exam_id: int, with_questions: bool = False) -> Exam:
    query = db.query(Exam)
    if with_questions:
        query = query.options(joinedload(Exam.questions))
    exam = query.filter(Exam.id == exam_id).first()
    if not exam:
        raise NotFound("Exam not found")
    if exam.teacher_id != teacher.id:
        raise Unauthorized()
    return exam


def _require_draft(exam: Exam, action: str = "edit") -> None:
    if exam.status != ExamStatus.DRAFT.value:
        raise StateConflict(f"Cannot {action} a {exam.status.lower()} exam")


def _validate_settings(exam: Exam) -> None:
    """Cross-field rules, checked on the merged row so partial updates are covered too."""
    if exam.require_password and not exam.password:
        raise ValidationError("Password is required when password protection is enabled")
    start, end = as_utc(exam.scheduled_start), as_utc(exam.scheduled_end)
    if start and end and end <= start:
        raise ValidationError("End time must be after start time")


def _question_dict(q: Question) -> dict:
    return QuestionResponse.model_validate(q).model_dump()


def _exam_summary(exam: Exam, attempt_count: int = 0) -> dict:
    return {
        "id": exam.id,
        "title": exam.title,
        "description": exam.description,
        "status": exam.status,
        "exam_mode": exam.exam_mode,
        "duration_minutes": exam.duration_minutes,
        "question_count": len(exam.questions),
        "total_marks": exam.total_marks,
        "attempt_count": attempt_count,
        "shuffle_questions": exam.shuffle_questions,
        "shuffle_options": exam.shuffle_options,
        "anti_cheat_enabled": exam.anti_cheat_enabled,
        "max_violations": exam.max_violations,
        "pass_percentage": exam.pass_percentage,
        "negative_marking": exam.negative_marking,
        "negative_marks": exam.negative_marks,
        "show_results_immediately": exam.show_results_immediately,
        "require_password": exam.require_password,
        "max_attempts": exam.max_attempts,
        "scheduled_start": iso(exam.scheduled_start),
        "scheduled_end": iso(exam.scheduled_end),
        "allow_late_submission": exam.allow_late_submission,
        "created_at": iso(exam.created_at),
    }


def _attempt_counts(db: Session, exam_ids) -> dict:
    if not exam_ids:
        return {}
    return dict(
        db.query(StudentAttempt.exam_id, func.count(StudentAttempt.id))
        .filter(StudentAttempt.exam_id.in_(exam_ids))
        .group_by(StudentAttempt.exam_id)
        .all()
    )


# ─── Exams ─────────────────────────────────────────────────────────────────────

@router.post("/", status_code=201)
def create_exam(request: ExamCreate, teacher: Teacher = Depends(get_current_teacher), db: Session = Depends(get_db)):
    """Create a draft exam, optionally with its questions."""
    exam = Exam(
        teacher_id=teacher.id,
        title=request.title.strip(),
        duration_minutes=request.duration_minutes,
        status=ExamStatus.DRAFT.value,
    )
    for field in SETTING_FIELDS:
        value = getattr(request, field)
        if value is not None:
            setattr(exam, field, value)
    if not exam.require_password:
        exam.password = None
    _validate_settings(exam)

    for position, q in enumerate(request.questions):
        exam.questions.append(Question(
            text=q.text,
            options=[o.model_dump() for o in q.options],
            correct_option=q.correct_option,
            marks=q.marks,
            negative_marks=q.negative_marks,
            difficulty=q.difficulty,
            position=position,
        ))

    db.add(exam)
    db.commit()
    db.refresh(exam)
    log.info("Exam %s created by teacher %s with %s question(s)", exam.id, teacher.id, len(exam.questions))
    return {"success": True, "exam": _exam_summary(exam)}


@router.get("/")
def list_exams(teacher: Teacher = Depends(get_current_teacher), db: Session = Depends(get_db)):
    exams = (
        db.query(Exam)
        .options(joinedload(Exam.questions))
        .filter(Exam.teacher_id == teacher.id)
        .order_by(Exam.created_at.desc(), Exam.id.desc())
        .all()
    )
    counts = _attempt_counts(db, [e.id for e in exams])
    return {"success": True, "exams": [_exam_summary(e, counts.get(e.id, 0)) for e in exams]}


@router.get("/{exam_id}")
def get_exam(exam_id: int, teacher: Teacher = Depends(get_current_teacher), db: Session = Depends(get_db)):
    """Exam details including questions with their answers."""
    exam = _get_owned_exam(db, teacher, exam_id, with_questions=True)
    counts = _attempt_counts(db, [exam.id])
    return {
        "success": True,
        "exam": {
            **_exam_summary(exam, counts.get(exam.id, 0)),
            "password": exam.password,
            "questions": [_question_dict(q) for q in exam.questions],
        },
    }


@router.patch("/{exam_id}")
def update_exam(
    exam_id: int,
    request: ExamUpdate,
    teacher: Teacher = Depends(get_current_teacher),
    db: Session = Depends(get_db),
):
    exam = _get_owned_exam(db, teacher, exam_id, with_questions=True)
    _require_draft(exam)

    for field, value in request.model_dump(exclude_unset=True).items():
        if value is None and field not in NULLABLE_SETTINGS:
            continue
        if field == "title":
            value = value.strip()
        setattr(exam, field, value)
    if not exam.require_password:
        exam.password = None
    _validate_settings(exam)

    db.commit()
    db.refresh(exam)
    return {"success": True, "exam": _exam_summary(exam)}


@router.delete("/{exam_id}")
def delete_exam(exam_id: int, teacher: Teacher = Depends(get_current_teacher), db: Session = Depends(get_db)):
    """Delete an exam with its questions, attempts and integrity events."""
    exam = _get_owned_exam(db, teacher, exam_id)
    db.delete(exam)
    db.commit()
    log.info("Exam %s deleted by teacher %s", exam_id, teacher.id)
    return {"success": True}


@router.post("/{exam_id}/duplicate", status_code=201)
def duplicate_exam(exam_id: int, teacher: Teacher = Depends(get_current_teacher), db: Session = Depends(get_db)):
    """Copy settings and questions into a new draft. Attempts are not copied."""
    exam = _get_owned_exam(db, teacher, exam_id, with_questions=True)

    copy = Exam(
        teacher_id=teacher.id,
        title=f"{exam.title} (Copy)",
        duration_minutes=exam.duration_minutes,
        status=ExamStatus.DRAFT.value,
    )
    for field in SETTING_FIELDS:
        setattr(copy, field, getattr(exam, field))
    for q in exam.questions:
        copy.questions.append(Question(
            text=q.text,
            options=list(q.options),
            correct_option=q.correct_option,
            marks=q.marks,
            negative_marks=q.negative_marks,
            difficulty=q.difficulty,
            position=q.position,
        ))

    db.add(copy)
    db.commit()
    db.refresh(copy)
    return {"success": True, "exam": _exam_summary(copy)}


# ─── Status transitions ────────────────────────────────────────────────────────

@router.post("/{exam_id}/publish")
def publish_exam(exam_id: int, teacher: Teacher = Depends(get_current_teacher), db: Session = Depends(get_db)):
    """
    DRAFT -> PUBLISHED. The first publish of an exam is charged against the
    teacher's quota; republishing after an unpublish is free.
    """
    exam = _get_owned_exam(db, teacher, exam_id, with_questions=True)
    if exam.status == ExamStatus.PUBLISHED.value:
        raise StateConflict("Exam is already published")
    _require_draft(exam, "publish")
    if not exam.questions:
        raise ValidationError("Cannot publish an exam without questions")

    exam_mode = exam.exam_mode or billing.consume_exam_quota(db, teacher)

    # Conditional transition: of two racing publishes only one flips the row
    updated = (
        db.query(Exam)
        .filter(Exam.id == exam.id, Exam.status == ExamStatus.DRAFT.value)
        .update({Exam.status: ExamStatus.PUBLISHED.value, Exam.exam_mode: exam_mode}, synchronize_session=False)
    )
    if updated == 0:
        db.rollback()
        raise StateConflict("Exam is already published")
    db.commit()
    db.refresh(exam)

    log.info("Exam %s published by teacher %s (%s)", exam.id, teacher.id, exam_mode)
    return {"success": True, "exam": _exam_summary(exam)}


@router.post("/{exam_id}/unpublish")
def unpublish_exam(exam_id: int, teacher: Teacher = Depends(get_current_teacher), db: Session = Depends(get_db)):
    exam = _get_owned_exam(db, teacher, exam_id)
    if exam.status != ExamStatus.PUBLISHED.value:
        raise StateConflict("Exam is not published")
    exam.status = ExamStatus.DRAFT.value
    db.commit()
    db.refresh(exam)
    return {"success": True, "exam": _exam_summary(exam)}


@router.post("/{exam_id}/archive")
def archive_exam(exam_id: int, teacher: Teacher = Depends(get_current_teacher), db: Session = Depends(get_db)):
    """Close the exam for good. Results stay readable."""
    exam = _get_owned_exam(db, teacher, exam_id)
    exam.status = ExamStatus.ENDED.value
    db.commit()
    db.refresh(exam)
    return {"success": True, "exam": _exam_summary(exam)}


# ─── Questions ─────────────────────────────────────────────────────────────────

@router.post("/{exam_id}/questions", status_code=201)
def add_question(
    exam_id: int,
    request: QuestionCreate,
    teacher: Teacher = Depends(get_current_teacher),
    db: Session = Depends(get_db),
):
    exam = _get_owned_exam(db, teacher, exam_id, with_questions=True)
    _require_draft(exam, "add questions to")

    position = max((q.position for q in exam.questions), default=-1) + 1
    question = Question(
        exam_id=exam.id,
        text=request.text,
        options=[o.model_dump() for o in request.options],
        correct_option=request.correct_option,
        marks=request.marks,
        negative_marks=request.negative_marks,
        difficulty=request.difficulty,
        position=position,
    )
    db.add(question)
    db.commit()
    db.refresh(question)
    return {"success": True, "question": _question_dict(question)}


@router.patch("/{exam_id}/questions/{question_id}")
def update_question(
    exam_id: int,
    question_id: int,
    request: QuestionUpdate,
    teacher: Teacher = Depends(get_current_teacher),
    db: Session = Depends(get_db),
):
    exam = _get_owned_exam(db, teacher, exam_id)
    _require_draft(exam, "edit questions of")
    question = db.query(Question).filter(Question.id == question_id, Question.exam_id == exam.id).first()
    if not question:
        raise NotFound("Question not found")

    changes = request.model_dump(exclude_unset=True)
    options = changes.get("options") or question.options
    correct_option = changes.get("correct_option") or question.correct_option
    try:
        check_choices(options, correct_option)
    except ValueError as e:
        raise ValidationError(str(e))

    for field, value in changes.items():
        if value is None and field not in ("negative_marks", "difficulty"):
            continue
        setattr(question, field, value)

    db.commit()
    db.refresh(question)
    return {"success": True, "question": _question_dict(question)}


@router.delete("/{exam_id}/questions/{question_id}")
def delete_question(
    exam_id: int,
    question_id: int,
    teacher: Teacher = Depends(get_current_teacher),
    db: Session = Depends(get_db),
):
    exam = _get_owned_exam(db, teacher, exam_id)
    _require_draft(exam, "delete questions from")
    question = db.query(Question).filter(Question.id == question_id, Question.exam_id == exam.id).first()
    if not question:
        raise NotFound("Question not found")
    db.delete(question)
    db.commit()
    return {"success": True}


class ReorderRequest(BaseModel):
    question_ids: List[int]


@router.post("/{exam_id}/questions/reorder")
def reorder_questions(
    exam_id: int,
    request: ReorderRequest,
    teacher: Teacher = Depends(get_current_teacher),
    db: Session = Depends(get_db),
):
    """Set question positions from the given order. Must list every question exactly once."""
    exam = _get_owned_exam(db, teacher, exam_id, with_questions=True)
    _require_draft(exam, "reorder questions of")
    by_id = {q.id: q for q in exam.questions}
    if sorted(request.question_ids) != sorted(by_id):
        raise ValidationError("question_ids must list every question of the exam exactly once")

    for position, qid in enumerate(request.question_ids):
        by_id[qid].position = position
    db.commit()
    return {"success": True, "question_ids": request.question_ids}


# ─── Attempts, results, integrity ──────────────────────────────────────────────

@router.get("/{exam_id}/attempts")
def list_attempts(exam_id: int, teacher: Teacher = Depends(get_current_teacher), db: Session = Depends(get_db)):
    exam = _get_owned_exam(db, teacher, exam_id)
    attempts = (
        db.query(StudentAttempt)
        .filter(StudentAttempt.exam_id == exam.id)
        .order_by(StudentAttempt.created_at.desc())
        .all()
    )
    return {
        "success": True,
        "attempts": [
            {
                "attempt_id": a.id,
                "student_name": a.student_name,
                "roll_number": a.roll_number,
                "started_at": iso(a.created_at),
                "end_time": iso(a.end_time),
                "submitted": a.submitted,
                "completed_at": iso(a.completed_at),
                "is_late": a.is_late,
                "score": a.score,
                "total_marks": a.total_marks,
                "violation_count": a.violation_count,
                "risk_level": integrity.risk_level(a.violation_count, exam.max_violations),
            }
            for a in attempts
        ],
    }


@router.get("/{exam_id}/results")
def exam_results(exam_id: int, teacher: Teacher = Depends(get_current_teacher), db: Session = Depends(get_db)):
    """Ranking, pass rate and per-question analytics over submitted attempts."""
    exam = _get_owned_exam(db, teacher, exam_id, with_questions=True)
    submitted = (
        db.query(StudentAttempt)
        .filter(StudentAttempt.exam_id == exam.id, StudentAttempt.submitted.is_(True))
        .all()
    )
    return {"success": True, "results": results.summarize_exam(exam, exam.questions, submitted)}


@router.get("/{exam_id}/integrity")
def exam_integrity(exam_id: int, teacher: Teacher = Depends(get_current_teacher), db: Session = Depends(get_db)):
    return {"success": True, "attempts": integrity.calculate_exam_integrity(db, teacher, exam_id)}
