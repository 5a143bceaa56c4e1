"""
Integrity tracker.

Students' browsers report suspicious events (tab switches, fullscreen exits,
copy attempts, ...) while an attempt is open. Each event is stored as an
append-only row and bumps the attempt's violation counter by one. Teachers
read the evidence back as a per-attempt report or a per-exam table.

The tracker collects evidence; it never auto-submits. `force_submit` in the
track response is advisory for the client.
"""

import logging
import os
from collections import Counter
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.orm import Session, joinedload

from database.models import Exam, IntegrityEvent, IntegrityEventType, StudentAttempt, Teacher
from services.clock import as_utc, iso, utcnow
from services.errors import Expired, NotFound, StateConflict, Unauthorized, ValidationError

log = logging.getLogger(__name__)

# Events may trail the deadline slightly (network delay, client auto-submit racing the timer)
INTEGRITY_GRACE_SECONDS = int(os.getenv("INTEGRITY_GRACE_SECONDS", "30"))

RISK_LOW = "LOW"
RISK_MEDIUM = "MEDIUM"
RISK_HIGH = "HIGH"
RISK_CRITICAL = "CRITICAL"
RISK_LEVELS = (RISK_LOW, RISK_MEDIUM, RISK_HIGH, RISK_CRITICAL)

EVENT_DESCRIPTIONS = {
    IntegrityEventType.TAB_SWITCH.value: ("Student switched to another tab or application", "high"),
    IntegrityEventType.WINDOW_BLUR.value: ("Browser window lost focus", "medium"),
    IntegrityEventType.COPY_ATTEMPT.value: ("Student attempted to copy text", "medium"),
    IntegrityEventType.PASTE_ATTEMPT.value: ("Student attempted to paste text", "medium"),
    IntegrityEventType.RIGHT_CLICK.value: ("Student right-clicked (context menu)", "low"),
    IntegrityEventType.DEVTOOLS_OPEN.value: ("Developer tools were opened", "high"),
    IntegrityEventType.FULLSCREEN_EXIT.value: ("Student exited fullscreen mode", "high"),
    IntegrityEventType.MULTIPLE_FACES_DETECTED.value: ("More than one face detected on camera", "high"),
    IntegrityEventType.NO_FACE_DETECTED.value: ("No face detected on camera", "medium"),
}

FOCUS_EVENTS = {IntegrityEventType.TAB_SWITCH.value, IntegrityEventType.WINDOW_BLUR.value}
SUSPICIOUS_EVENTS = {
    IntegrityEventType.COPY_ATTEMPT.value,
    IntegrityEventType.PASTE_ATTEMPT.value,
    IntegrityEventType.DEVTOOLS_OPEN.value,
}


# ─── Scoring policy ────────────────────────────────────────────────────────────

def risk_level(violation_count: int, max_violations: int) -> str:
    """
    LOW: no violations. MEDIUM: up to half the allowance. HIGH: up to the allowance.
    CRITICAL: beyond it. Non-decreasing in violation_count for a fixed allowance.
    """
    if violation_count <= 0:
        return RISK_LOW
    if violation_count > max_violations:
        return RISK_CRITICAL
    if 2 * violation_count <= max_violations:
        return RISK_MEDIUM
    return RISK_HIGH


def trust_score(violation_count: int) -> int:
    """100 minus 20 per violation, never below zero."""
    return max(0, 100 - violation_count * 20)


def parse_event_type(event_type) -> str:
    try:
        return IntegrityEventType(event_type).value
    except ValueError:
        raise ValidationError(f"Unknown event type: {event_type}")


# ─── Student side ──────────────────────────────────────────────────────────────

def track_event(
    db: Session,
    attempt_id: str,
    event_type,
    metadata: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> dict:
    """
    Append an integrity event and count it against the attempt.

    The counter is bumped with a single `violation_count = violation_count + 1`
    UPDATE guarded by `submitted = false`, so concurrent events never lose an
    increment and nothing lands on an attempt once it has been submitted.
    """
    now = now or utcnow()
    event_type = parse_event_type(event_type)

    attempt = (
        db.query(StudentAttempt)
        .options(joinedload(StudentAttempt.exam))
        .filter(StudentAttempt.id == attempt_id)
        .first()
    )
    if not attempt:
        raise NotFound("Attempt not found")
    if attempt.submitted:
        raise StateConflict("Exam already submitted")
    if now > as_utc(attempt.end_time) + timedelta(seconds=INTEGRITY_GRACE_SECONDS):
        raise Expired("Attempt is no longer open")

    exam = attempt.exam
    anti_cheat_enabled = exam.anti_cheat_enabled
    max_violations = exam.max_violations

    db.add(IntegrityEvent(
        attempt_id=attempt.id,
        event_type=event_type,
        timestamp=now,
        event_metadata=metadata or {},
    ))
    updated = (
        db.query(StudentAttempt)
        .filter(StudentAttempt.id == attempt.id, StudentAttempt.submitted.is_(False))
        .update(
            {StudentAttempt.violation_count: StudentAttempt.violation_count + 1},
            synchronize_session=False,
        )
    )
    if updated == 0:
        db.rollback()
        raise StateConflict("Exam already submitted")
    db.commit()

    violation_count = (
        db.query(StudentAttempt.violation_count)
        .filter(StudentAttempt.id == attempt_id)
        .scalar()
    )
    log.info("Integrity event %s on attempt %s (violations: %s)", event_type, attempt_id, violation_count)

    return {
        "event_type": event_type,
        "violation_count": violation_count,
        "max_violations": max_violations,
        "force_submit": bool(anti_cheat_enabled and violation_count >= max_violations),
    }


# ─── Teacher side ──────────────────────────────────────────────────────────────

def _owned_attempt(db: Session, teacher: Teacher, attempt_id: str) -> StudentAttempt:
    attempt = (
        db.query(StudentAttempt)
        .options(joinedload(StudentAttempt.exam))
        .filter(StudentAttempt.id == attempt_id)
        .first()
    )
    if not attempt:
        raise NotFound("Attempt not found")
    if teacher is None or attempt.exam.teacher_id != teacher.id:
        raise Unauthorized()
    return attempt


def _away_seconds(events: List[IntegrityEvent]) -> float:
    total = 0.0
    for e in events:
        duration = (e.event_metadata or {}).get("duration")
        if isinstance(duration, (int, float)) and not isinstance(duration, bool) and duration > 0:
            total += duration
    return total


def _recommendations(level: str, focus_lost: int, fullscreen_exits: int, suspicious: int, away: float) -> List[str]:
    recommendations = []
    if level in (RISK_HIGH, RISK_CRITICAL):
        recommendations.append("Consider manual review of this submission")
    if level == RISK_CRITICAL:
        recommendations.append("Violation allowance exceeded")
    if focus_lost > 5:
        recommendations.append(f"Student lost focus {focus_lost} times - possible external assistance")
    if fullscreen_exits > 3:
        recommendations.append(f"Student exited fullscreen {fullscreen_exits} times - review answers")
    if suspicious > 0:
        recommendations.append(f"{suspicious} copy/paste or developer tools attempts detected")
    if away > 60:
        recommendations.append(f"Student was away for {round(away / 60)} minutes")
    if not recommendations:
        recommendations.append("No major concerns detected")
    return recommendations


def generate_integrity_report(db: Session, teacher: Teacher, attempt_id: str) -> dict:
    """Evidence report for one attempt. Only the exam's owner may read it."""
    attempt = _owned_attempt(db, teacher, attempt_id)
    exam = attempt.exam

    events = (
        db.query(IntegrityEvent)
        .filter(IntegrityEvent.attempt_id == attempt.id)
        .order_by(IntegrityEvent.timestamp.asc(), IntegrityEvent.id.asc())
        .all()
    )

    by_type = Counter(e.event_type for e in events)
    timeline = []
    for e in events:
        description, severity = EVENT_DESCRIPTIONS.get(e.event_type, ("Unknown event", "low"))
        timeline.append({
            "id": e.id,
            "timestamp": iso(e.timestamp),
            "event_type": e.event_type,
            "description": description,
            "severity": severity,
            "metadata": e.event_metadata or {},
        })

    level = risk_level(attempt.violation_count, exam.max_violations)
    focus_lost = sum(by_type[t] for t in FOCUS_EVENTS)
    fullscreen_exits = by_type[IntegrityEventType.FULLSCREEN_EXIT.value]
    suspicious = sum(by_type[t] for t in SUSPICIOUS_EVENTS)
    away = _away_seconds(events)

    return {
        "attempt_id": attempt.id,
        "exam_id": exam.id,
        "student_name": attempt.student_name,
        "roll_number": attempt.roll_number,
        "submitted": attempt.submitted,
        "violation_count": attempt.violation_count,
        "max_violations": exam.max_violations,
        "risk_level": level,
        "trust_score": trust_score(attempt.violation_count),
        "total_events": len(events),
        "by_type": dict(by_type),
        "timeline": timeline,
        "summary": {
            "focus_lost_count": focus_lost,
            "fullscreen_exit_count": fullscreen_exits,
            "suspicious_actions": suspicious,
            "total_away_seconds": round(away, 1),
        },
        "recommendations": _recommendations(level, focus_lost, fullscreen_exits, suspicious, away),
    }


def calculate_exam_integrity(db: Session, teacher: Teacher, exam_id: int) -> List[dict]:
    """One row per submitted attempt of the exam. Read-only."""
    exam = db.query(Exam).filter(Exam.id == exam_id).first()
    if not exam:
        raise NotFound("Exam not found")
    if teacher is None or exam.teacher_id != teacher.id:
        raise Unauthorized()

    attempts = (
        db.query(StudentAttempt)
        .filter(StudentAttempt.exam_id == exam.id, StudentAttempt.submitted.is_(True))
        .order_by(StudentAttempt.completed_at.asc())
        .all()
    )
    return [
        {
            "attempt_id": a.id,
            "student_name": a.student_name,
            "roll_number": a.roll_number,
            "violation_count": a.violation_count,
            "risk_level": risk_level(a.violation_count, exam.max_violations),
            "trust_score": trust_score(a.violation_count),
        }
        for a in attempts
    ]
