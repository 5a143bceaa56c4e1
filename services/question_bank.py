"""
Teacher's personal question bank.

Bank questions are always independent copies: importing into an exam copies
the row, saving from an exam copies it back. Editing one side never touches
the other.
"""

import logging
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session, joinedload

from database.models import BankQuestion, Exam, ExamStatus, Question, QuestionFolder, Teacher
from database.schemas import check_choices
from services import billing
from services.clock import iso, utcnow
from services.errors import NotFound, StateConflict, Unauthorized, ValidationError

log = logging.getLogger(__name__)

NULLABLE_FIELDS = {"negative_marks", "explanation", "subject", "topic", "folder_id"}


def bank_question_to_dict(q: BankQuestion) -> dict:
    return {
        "id": q.id,
        "text": q.text,
        "options": q.options,
        "correct_option": q.correct_option,
        "marks": q.marks,
        "negative_marks": q.negative_marks,
        "explanation": q.explanation,
        "difficulty": q.difficulty,
        "subject": q.subject,
        "topic": q.topic,
        "tags": q.tags or [],
        "folder_id": q.folder_id,
        "folder_name": q.folder.name if q.folder else None,
        "usage_count": q.usage_count,
        "last_used": iso(q.last_used),
        "created_at": iso(q.created_at),
    }


def _check_folder(db: Session, teacher: Teacher, folder_id: Optional[int]) -> None:
    if folder_id is None:
        return
    folder = db.query(QuestionFolder).filter(QuestionFolder.id == folder_id).first()
    if not folder or folder.teacher_id != teacher.id:
        raise NotFound("Folder not found")


def _owned_questions(db: Session, teacher: Teacher, question_ids: Iterable[int]) -> List[BankQuestion]:
    """All requested rows or nothing: a missing or foreign id fails the whole batch."""
    ids = list(dict.fromkeys(question_ids))
    if not ids:
        raise ValidationError("No questions selected")
    questions = (
        db.query(BankQuestion)
        .filter(BankQuestion.id.in_(ids), BankQuestion.teacher_id == teacher.id)
        .all()
    )
    if len(questions) != len(ids):
        raise NotFound("Some questions not found")
    order = {qid: i for i, qid in enumerate(ids)}
    return sorted(questions, key=lambda q: order[q.id])


def _owned_exam_question(db: Session, teacher: Teacher, exam_id: int, question_id: int) -> Question:
    question = (
        db.query(Question)
        .options(joinedload(Question.exam))
        .filter(Question.id == question_id, Question.exam_id == exam_id)
        .first()
    )
    if not question:
        raise NotFound("Question not found")
    if question.exam.teacher_id != teacher.id:
        raise Unauthorized()
    return question


# ─── Listing ───────────────────────────────────────────────────────────────────

def list_questions(
    db: Session,
    teacher: Teacher,
    folder_id: Optional[int] = None,
    root_only: bool = False,
    search: Optional[str] = None,
    tag: Optional[str] = None,
    difficulty: Optional[str] = None,
) -> List[dict]:
    query = (
        db.query(BankQuestion)
        .options(joinedload(BankQuestion.folder))
        .filter(BankQuestion.teacher_id == teacher.id)
    )
    if folder_id is not None:
        query = query.filter(BankQuestion.folder_id == folder_id)
    elif root_only:
        query = query.filter(BankQuestion.folder_id.is_(None))
    if difficulty:
        query = query.filter(BankQuestion.difficulty == difficulty.upper())
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(or_(
            BankQuestion.text.ilike(pattern),
            BankQuestion.subject.ilike(pattern),
            BankQuestion.topic.ilike(pattern),
        ))

    questions = query.order_by(BankQuestion.created_at.desc(), BankQuestion.id.desc()).all()
    # JSON array membership differs per backend, filter tags here
    if tag:
        questions = [q for q in questions if tag in (q.tags or [])]
    return [bank_question_to_dict(q) for q in questions]


# ─── CRUD ──────────────────────────────────────────────────────────────────────

def add_question(db: Session, teacher: Teacher, data: dict) -> dict:
    limit = billing.can_add_to_question_bank(db, teacher)
    if not limit["can_add"]:
        raise StateConflict(limit["reason"])
    try:
        check_choices(data["options"], data["correct_option"])
    except ValueError as e:
        raise ValidationError(str(e))
    _check_folder(db, teacher, data.get("folder_id"))

    question = BankQuestion(
        teacher_id=teacher.id,
        folder_id=data.get("folder_id"),
        text=data["text"],
        options=data["options"],
        correct_option=data["correct_option"],
        marks=data.get("marks") or 1,
        negative_marks=data.get("negative_marks"),
        explanation=data.get("explanation"),
        difficulty=data.get("difficulty") or "MEDIUM",
        subject=data.get("subject"),
        topic=data.get("topic"),
        tags=list(dict.fromkeys(data.get("tags") or [])),
    )
    db.add(question)
    db.commit()
    db.refresh(question)
    log.info("Bank question %s added for teacher %s", question.id, teacher.id)
    return bank_question_to_dict(question)


def update_question(db: Session, teacher: Teacher, question_id: int, changes: dict) -> dict:
    question = db.query(BankQuestion).filter(BankQuestion.id == question_id).first()
    if not question:
        raise NotFound("Question not found")
    if question.teacher_id != teacher.id:
        raise Unauthorized()

    if "folder_id" in changes:
        _check_folder(db, teacher, changes["folder_id"])
    options = changes.get("options") or question.options
    correct_option = changes.get("correct_option") or question.correct_option
    try:
        check_choices(options, correct_option)
    except ValueError as e:
        raise ValidationError(str(e))

    for field, value in changes.items():
        if value is None and field not in NULLABLE_FIELDS:
            continue
        if field == "tags":
            value = list(dict.fromkeys(value))
        setattr(question, field, value)

    db.commit()
    db.refresh(question)
    return bank_question_to_dict(question)


def delete_questions(db: Session, teacher: Teacher, question_ids: List[int]) -> int:
    questions = _owned_questions(db, teacher, question_ids)
    for q in questions:
        db.delete(q)
    db.commit()
    log.info("Deleted %s bank question(s) for teacher %s", len(questions), teacher.id)
    return len(questions)


def add_tags(db: Session, teacher: Teacher, question_ids: List[int], tags: List[str]) -> int:
    tags = [t.strip() for t in tags if t and t.strip()]
    if not tags:
        raise ValidationError("No tags given")
    questions = _owned_questions(db, teacher, question_ids)
    for q in questions:
        # Reassign so the JSON column is flagged dirty
        q.tags = list(dict.fromkeys((q.tags or []) + tags))
    db.commit()
    return len(questions)


def duplicate_questions(db: Session, teacher: Teacher, question_ids: List[int]) -> List[dict]:
    limit = billing.can_add_to_question_bank(db, teacher, adding=len(set(question_ids)))
    if not limit["can_add"]:
        raise StateConflict(limit["reason"])

    copies = []
    for q in _owned_questions(db, teacher, question_ids):
        copy = BankQuestion(
            teacher_id=teacher.id,
            folder_id=q.folder_id,
            text=f"{q.text} (Copy)",
            options=q.options,
            correct_option=q.correct_option,
            marks=q.marks,
            negative_marks=q.negative_marks,
            explanation=q.explanation,
            difficulty=q.difficulty,
            subject=q.subject,
            topic=q.topic,
            tags=list(q.tags or []),
        )
        db.add(copy)
        copies.append(copy)
    db.commit()
    for copy in copies:
        db.refresh(copy)
    return [bank_question_to_dict(c) for c in copies]


# ─── Exam <-> bank ─────────────────────────────────────────────────────────────

def import_into_exam(
    db: Session,
    teacher: Teacher,
    exam_id: int,
    question_ids: List[int],
    now: Optional[datetime] = None,
) -> int:
    """Copy bank questions onto the end of a draft exam and record their usage."""
    now = now or utcnow()
    exam = db.query(Exam).filter(Exam.id == exam_id).first()
    if not exam:
        raise NotFound("Exam not found")
    if exam.teacher_id != teacher.id:
        raise Unauthorized()
    if exam.status != ExamStatus.DRAFT.value:
        raise StateConflict("Questions can only be added to a draft exam")

    bank_questions = _owned_questions(db, teacher, question_ids)
    position = len(exam.questions)
    for q in bank_questions:
        db.add(Question(
            exam_id=exam.id,
            text=q.text,
            options=q.options,
            correct_option=q.correct_option,
            marks=q.marks,
            negative_marks=q.negative_marks,
            difficulty=q.difficulty,
            position=position,
        ))
        position += 1
        q.usage_count = (q.usage_count or 0) + 1
        q.last_used = now
    db.commit()

    log.info("Imported %s bank question(s) into exam %s", len(bank_questions), exam.id)
    return len(bank_questions)


def save_from_exam(
    db: Session,
    teacher: Teacher,
    exam_id: int,
    question_id: int,
    folder_id: Optional[int] = None,
) -> dict:
    """Copy an exam question into the bank unless the same text and answer are already there."""
    question = _owned_exam_question(db, teacher, exam_id, question_id)

    existing = (
        db.query(BankQuestion)
        .filter(
            BankQuestion.teacher_id == teacher.id,
            BankQuestion.text == question.text,
            BankQuestion.correct_option == question.correct_option,
        )
        .first()
    )
    if existing:
        return {"saved": False, "already_exists": True, "question_id": existing.id}

    limit = billing.can_add_to_question_bank(db, teacher)
    if not limit["can_add"]:
        raise StateConflict(limit["reason"])
    _check_folder(db, teacher, folder_id)

    saved = BankQuestion(
        teacher_id=teacher.id,
        folder_id=folder_id,
        text=question.text,
        options=question.options,
        correct_option=question.correct_option,
        marks=question.marks,
        negative_marks=question.negative_marks,
        difficulty=question.difficulty or "MEDIUM",
        tags=[],
    )
    db.add(saved)
    db.commit()
    db.refresh(saved)
    return {"saved": True, "already_exists": False, "question_id": saved.id}


def check_in_bank(db: Session, teacher: Teacher, exam_id: int, question_id: int) -> dict:
    question = _owned_exam_question(db, teacher, exam_id, question_id)
    existing = (
        db.query(BankQuestion)
        .options(joinedload(BankQuestion.folder))
        .filter(BankQuestion.teacher_id == teacher.id, BankQuestion.text == question.text)
        .first()
    )
    if not existing:
        return {"in_bank": False}
    return {
        "in_bank": True,
        "question_id": existing.id,
        "folder_id": existing.folder_id,
        "folder_name": existing.folder.name if existing.folder else None,
    }
