"""
Attempt lifecycle engine.

Creates, times, scores and finalizes a single student's exam attempt.
The deadline (end_time) is computed once on the server when the attempt is
created; client countdowns are advisory. Expiry is checked lazily whenever an
attempt is written to, there is no background sweep.
"""

import logging
import random
import secrets
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import redis
from sqlalchemy import func
from sqlalchemy.orm import Session, joinedload

from database import redis_client
from database.models import Exam, ExamStatus, Question, StudentAttempt
from services.clock import as_utc, iso, utcnow
from services.errors import (
    AttemptLimitReached, Expired, NotFound, NotPublished, OutsideSchedule,
    StateConflict, ValidationError, WrongPassword,
)

log = logging.getLogger(__name__)

# Auto-saved answers outlive the deadline by this much so a late submit can still flush them
AUTOSAVE_TTL_PADDING_SECONDS = 30 * 60


# ─── Loading helpers ───────────────────────────────────────────────────────────

def _load_attempt(db: Session, attempt_id: str) -> StudentAttempt:
    attempt = (
        db.query(StudentAttempt)
        .options(joinedload(StudentAttempt.exam).joinedload(Exam.questions))
        .filter(StudentAttempt.id == attempt_id)
        .first()
    )
    if not attempt:
        raise NotFound("Attempt not found")
    return attempt


def _load_published_exam(db: Session, exam_id: int, lock: bool = False) -> Exam:
    query = db.query(Exam).filter(Exam.id == exam_id)
    if lock:
        # Serializes concurrent starts for the same exam (no-op on SQLite)
        query = query.with_for_update()
    exam = query.first()
    if not exam:
        raise NotFound("Exam not found")
    if exam.status != ExamStatus.PUBLISHED.value:
        raise NotPublished()
    return exam


def is_open(attempt: StudentAttempt, now: Optional[datetime] = None) -> bool:
    """Open = not submitted and the server deadline has not passed."""
    now = now or utcnow()
    return not attempt.submitted and now <= as_utc(attempt.end_time)


def _saved_answers(attempt_id: str) -> Dict[str, str]:
    try:
        return redis_client.get_all_answers(attempt_id)
    except redis.RedisError:
        log.warning("Auto-save store unavailable, ignoring saved answers for attempt %s", attempt_id)
        return {}


def _current_saved_answers(attempt_id: str, questions: List[Question]) -> Dict[str, str]:
    """Saved answers that still match the exam; entries for removed questions or options are dropped."""
    option_ids = {str(q.id): {o["id"] for o in _option_dicts(q.options)} for q in questions}
    current = {}
    for qid, option_id in _saved_answers(attempt_id).items():
        if qid in option_ids and (not option_id or option_id in option_ids[qid]):
            current[qid] = option_id
        else:
            log.warning("Dropping stale saved answer %s=%r for attempt %s", qid, option_id, attempt_id)
    return current


# ─── Presentation order ────────────────────────────────────────────────────────

def _option_dicts(options) -> List[dict]:
    return [{"id": str(o["id"]), "text": o.get("text", "")} for o in (options or [])]


def presentation_order(
    questions: List[Question],
    seed: int,
    shuffle_questions: bool = False,
    shuffle_options: bool = False,
) -> List[dict]:
    """
    Order questions and options for display.

    Both permutations come from random.Random (Fisher-Yates) seeded from the
    attempt's stored seed, so every page load of the same attempt sees the same
    order. Option order for each question is seeded independently from
    "<seed>:<question id>". Correct answers are never included.
    """
    ordered = list(questions)
    if shuffle_questions:
        random.Random(seed).shuffle(ordered)

    presented = []
    for q in ordered:
        options = _option_dicts(q.options)
        if shuffle_options:
            random.Random(f"{seed}:{q.id}").shuffle(options)
        presented.append({
            "id": q.id,
            "text": q.text,
            "marks": q.marks,
            "options": options,
        })
    return presented


# ─── Answers & scoring ─────────────────────────────────────────────────────────

def normalize_answers(questions: List[Question], answers: Optional[dict]) -> Dict[str, str]:
    """
    Validate a {question_id: option_id} mapping against the exam's questions.
    Keys are stored as strings; blank selections are dropped (unanswered).
    """
    question_map = {q.id: q for q in questions}
    normalized = {}
    for raw_qid, option_id in (answers or {}).items():
        try:
            qid = int(raw_qid)
        except (TypeError, ValueError):
            raise ValidationError(f"Unknown question: {raw_qid}")
        question = question_map.get(qid)
        if question is None:
            raise ValidationError(f"Unknown question: {raw_qid}")
        if option_id is None or option_id == "":
            continue
        option_ids = {o["id"] for o in _option_dicts(question.options)}
        if str(option_id) not in option_ids:
            raise ValidationError(f"Unknown option '{option_id}' for question {qid}")
        normalized[str(qid)] = str(option_id)
    return normalized


def score_answers(
    questions: List[Question],
    answers: Dict[str, str],
    negative_marking: bool = False,
    negative_marks: float = 0.0,
) -> dict:
    """
    Score an answer sheet.

    A match earns the question's marks. With negative marking, a present but
    wrong answer loses the question's own penalty, falling back to the exam's.
    Unanswered questions score zero. The total is not floored at zero.
    """
    score = 0.0
    total_marks = 0.0
    correct = wrong = unanswered = 0

    for q in questions:
        total_marks += q.marks
        selected = answers.get(str(q.id))
        if not selected:
            unanswered += 1
        elif selected == q.correct_option:
            correct += 1
            score += q.marks
        else:
            wrong += 1
            if negative_marking:
                penalty = q.negative_marks if q.negative_marks is not None else negative_marks
                score -= penalty or 0

    return {
        "score": round(score, 4),
        "total_marks": round(total_marks, 4),
        "correct_answers": correct,
        "wrong_answers": wrong,
        "unanswered": unanswered,
        "total_questions": len(questions),
    }


# ─── Operations ────────────────────────────────────────────────────────────────

def describe_exam(db: Session, exam_id: int) -> dict:
    """Public landing info for a published exam (no questions)."""
    exam = (
        db.query(Exam)
        .options(joinedload(Exam.questions))
        .filter(Exam.id == exam_id)
        .first()
    )
    if not exam:
        raise NotFound("Exam not found")
    if exam.status != ExamStatus.PUBLISHED.value:
        raise NotPublished()
    return {
        "id": exam.id,
        "title": exam.title,
        "description": exam.description,
        "duration_minutes": exam.duration_minutes,
        "question_count": len(exam.questions),
        "total_marks": exam.total_marks,
        "require_password": exam.require_password,
        "max_attempts": exam.max_attempts,
        "scheduled_start": iso(exam.scheduled_start),
        "scheduled_end": iso(exam.scheduled_end),
        "anti_cheat_enabled": exam.anti_cheat_enabled,
        "max_violations": exam.max_violations,
    }


def start_attempt(
    db: Session,
    exam_id: int,
    student_name: str,
    roll_number: str,
    password: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict:
    """Start (or resume) an attempt. Returns the attempt id and its server deadline."""
    now = now or utcnow()
    exam = _load_published_exam(db, exam_id, lock=True)

    student_name = (student_name or "").strip()
    roll_number = (roll_number or "").strip()
    if not student_name or not roll_number:
        raise ValidationError("Student name and roll number are required")

    if exam.require_password:
        if not password:
            raise ValidationError("Exam password is required")
        if password != exam.password:
            log.warning("Wrong password for exam %s (roll %s)", exam.id, roll_number)
            raise WrongPassword()

    scheduled_start = as_utc(exam.scheduled_start)
    scheduled_end = as_utc(exam.scheduled_end)
    if scheduled_start and now < scheduled_start:
        raise OutsideSchedule(f"Exam will be available from {scheduled_start.isoformat()}")
    if scheduled_end and now > scheduled_end and not exam.allow_late_submission:
        raise OutsideSchedule("Exam window has closed")

    # Resume an open attempt instead of creating a duplicate
    pending = (
        db.query(StudentAttempt)
        .filter(
            StudentAttempt.exam_id == exam.id,
            StudentAttempt.roll_number == roll_number,
            StudentAttempt.submitted.is_(False),
        )
        .order_by(StudentAttempt.created_at.desc())
        .all()
    )
    for existing in pending:
        if is_open(existing, now):
            db.commit()
            log.info("Attempt %s resumed for exam %s (roll %s)", existing.id, exam.id, roll_number)
            return _start_response(existing, exam, resumed=True)

    if exam.max_attempts is not None:
        attempt_count = (
            db.query(func.count(StudentAttempt.id))
            .filter(StudentAttempt.exam_id == exam.id, StudentAttempt.roll_number == roll_number)
            .scalar()
        )
        if attempt_count >= exam.max_attempts:
            raise AttemptLimitReached(f"Maximum attempts limit ({exam.max_attempts}) reached")

    attempt = StudentAttempt(
        exam_id=exam.id,
        student_name=student_name,
        roll_number=roll_number,
        created_at=now,
        end_time=now + timedelta(minutes=exam.duration_minutes),
        shuffle_seed=secrets.randbelow(2 ** 31),
        answers={},
        total_questions=len(exam.questions),
    )
    db.add(attempt)
    db.commit()
    db.refresh(attempt)

    log.info("Attempt %s started for exam %s (roll %s), ends at %s",
             attempt.id, exam.id, roll_number, iso(attempt.end_time))
    return _start_response(attempt, exam, resumed=False)


def _start_response(attempt: StudentAttempt, exam: Exam, resumed: bool) -> dict:
    return {
        "attempt_id": attempt.id,
        "started_at": iso(attempt.created_at),
        "end_time": iso(attempt.end_time),
        "duration_minutes": exam.duration_minutes,
        "resumed": resumed,
    }


def get_attempt(db: Session, attempt_id: str, now: Optional[datetime] = None) -> dict:
    """Attempt status for the exam page (also used after a page refresh)."""
    now = now or utcnow()
    attempt = _load_attempt(db, attempt_id)
    exam = attempt.exam
    end_time = as_utc(attempt.end_time)

    answers = dict(attempt.answers or {})
    if not attempt.submitted:
        answers.update(_current_saved_answers(attempt.id, exam.questions))

    return {
        "attempt_id": attempt.id,
        "exam_id": exam.id,
        "exam_title": exam.title,
        "student_name": attempt.student_name,
        "roll_number": attempt.roll_number,
        "started_at": iso(attempt.created_at),
        "end_time": iso(end_time),
        "remaining_seconds": 0 if attempt.submitted else max(0, int((end_time - now).total_seconds())),
        "expired": now > end_time,
        "submitted": attempt.submitted,
        "answers": answers,
        "violation_count": attempt.violation_count,
        "anti_cheat_enabled": exam.anti_cheat_enabled,
        "max_violations": exam.max_violations,
        "questions": presentation_order(
            exam.questions, attempt.shuffle_seed, exam.shuffle_questions, exam.shuffle_options,
        ),
    }


def save_answer(
    db: Session,
    attempt_id: str,
    question_id: int,
    option_id: Optional[str],
    now: Optional[datetime] = None,
) -> dict:
    """Auto-save one answer to Redis while the attempt is open."""
    now = now or utcnow()
    attempt = _load_attempt(db, attempt_id)
    exam = attempt.exam

    if attempt.submitted:
        raise StateConflict("Exam already submitted")
    end_time = as_utc(attempt.end_time)
    if now > end_time and not exam.allow_late_submission:
        raise Expired("Time expired")

    normalized = normalize_answers(exam.questions, {question_id: option_id})
    ttl_seconds = int((end_time - now).total_seconds()) + AUTOSAVE_TTL_PADDING_SECONDS
    selected = normalized.get(str(question_id), "")
    redis_client.save_answer(attempt.id, question_id, selected, ttl_seconds)

    return {"question_id": question_id, "option_id": selected or None}


def submit_attempt(
    db: Session,
    attempt_id: str,
    answers: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> dict:
    """
    Score and finalize an attempt.

    Auto-saved answers are merged under the submitted ones. The open → submitted
    transition is a conditional UPDATE, so of two racing submits only one can
    record a score.
    """
    now = now or utcnow()
    attempt = _load_attempt(db, attempt_id)
    exam = attempt.exam

    if attempt.submitted:
        raise StateConflict("Exam already submitted")

    end_time = as_utc(attempt.end_time)
    is_late = now > end_time
    if is_late and not exam.allow_late_submission:
        log.warning("Rejected submission for attempt %s, %ss past deadline",
                    attempt.id, int((now - end_time).total_seconds()))
        raise Expired()

    merged = _current_saved_answers(attempt.id, exam.questions)
    merged.update({str(k): v for k, v in (answers or {}).items()})
    normalized = normalize_answers(exam.questions, merged)

    card = score_answers(exam.questions, normalized, exam.negative_marking, exam.negative_marks)

    updated = (
        db.query(StudentAttempt)
        .filter(StudentAttempt.id == attempt.id, StudentAttempt.submitted.is_(False))
        .update(
            {
                StudentAttempt.submitted: True,
                StudentAttempt.completed_at: now,
                StudentAttempt.is_late: is_late,
                StudentAttempt.answers: normalized,
                StudentAttempt.score: card["score"],
                StudentAttempt.total_marks: card["total_marks"],
                StudentAttempt.correct_answers: card["correct_answers"],
                StudentAttempt.wrong_answers: card["wrong_answers"],
                StudentAttempt.unanswered: card["unanswered"],
                StudentAttempt.total_questions: card["total_questions"],
            },
            synchronize_session=False,
        )
    )
    if updated == 0:
        db.rollback()
        raise StateConflict("Exam already submitted")
    db.commit()

    try:
        redis_client.clear_answers(attempt.id)
    except redis.RedisError:
        log.warning("Could not clear auto-saved answers for attempt %s", attempt.id)

    if is_late:
        log.info("Late submission accepted for attempt %s (%ss past deadline)",
                 attempt.id, int((now - end_time).total_seconds()))
    log.info("Attempt %s submitted: score %s/%s", attempt.id, card["score"], card["total_marks"])

    return {
        "attempt_id": attempt_id,
        **card,
        "is_late": is_late,
        "completed_at": iso(now),
    }


def get_attempt_result(db: Session, attempt_id: str) -> dict:
    """Student-facing result. The per-question breakdown is only shown when the exam allows it."""
    attempt = _load_attempt(db, attempt_id)
    exam = attempt.exam
    if not attempt.submitted:
        raise StateConflict("Exam not yet submitted")

    total_marks = attempt.total_marks or 0
    percentage = round((attempt.score / total_marks) * 100, 1) if total_marks > 0 else 0
    result = {
        "attempt_id": attempt.id,
        "exam_id": exam.id,
        "exam_title": exam.title,
        "student_name": attempt.student_name,
        "roll_number": attempt.roll_number,
        "score": attempt.score,
        "total_marks": total_marks,
        "percentage": percentage,
        "passed": percentage >= exam.pass_percentage,
        "correct_answers": attempt.correct_answers,
        "wrong_answers": attempt.wrong_answers,
        "unanswered": attempt.unanswered,
        "total_questions": attempt.total_questions,
        "is_late": attempt.is_late,
        "completed_at": iso(attempt.completed_at),
        "show_results_immediately": exam.show_results_immediately,
    }

    if exam.show_results_immediately:
        answers = attempt.answers or {}
        result["breakdown"] = [
            {
                "question_id": q.id,
                "text": q.text,
                "options": _option_dicts(q.options),
                "correct_option": q.correct_option,
                "your_answer": answers.get(str(q.id)),
                "is_correct": answers.get(str(q.id)) == q.correct_option,
                "marks": q.marks,
            }
            for q in exam.questions
        ]

    return result
