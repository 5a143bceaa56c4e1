"""
Results aggregator.

Pure functions over an exam's submitted attempts and its questions. Nothing
here touches the session; callers load the rows and pass them in. Late
submissions are scored normally and counted like any other attempt; their
`is_late` flag travels with the ranking rows so teachers can spot them.
"""

from datetime import datetime, timezone
from typing import Iterable, List, Sequence

from services.clock import as_utc, iso

EASY_ACCURACY = 70.0
MEDIUM_ACCURACY = 40.0

_NEVER = datetime.max.replace(tzinfo=timezone.utc)


def _percentage(score: float, total_marks: float) -> float:
    return (score / total_marks) * 100 if total_marks > 0 else 0.0


def difficulty_label(accuracy: float) -> str:
    """Descriptive only, never fed back into scoring."""
    if accuracy >= EASY_ACCURACY:
        return "Easy"
    if accuracy >= MEDIUM_ACCURACY:
        return "Medium"
    return "Hard"


def rank_attempts(attempts: Iterable) -> List:
    """Highest score first; equal scores go to whoever submitted first."""
    return sorted(
        attempts,
        key=lambda a: (-(a.score or 0), as_utc(a.completed_at) or _NEVER),
    )


def question_analytics(questions: Sequence, attempts: Sequence) -> List[dict]:
    total_attempts = len(attempts)
    stats = []
    for q in questions:
        key = str(q.id)
        attempted = 0
        correct = 0
        for a in attempts:
            selected = (a.answers or {}).get(key)
            if not selected:
                continue
            attempted += 1
            if selected == q.correct_option:
                correct += 1

        accuracy = (correct / attempted) * 100 if attempted else 0.0
        skip_rate = ((total_attempts - attempted) / total_attempts) * 100 if total_attempts else 0.0
        stats.append({
            "question_id": q.id,
            "text": q.text,
            "attempted_count": attempted,
            "correct_count": correct,
            "accuracy": round(accuracy, 2),
            "skip_rate": round(skip_rate, 2),
            "difficulty": difficulty_label(accuracy),
        })
    return stats


def pass_rate(attempts: Sequence, total_marks: float, pass_percentage: float) -> float:
    if not attempts:
        return 0.0
    passed = sum(1 for a in attempts if _percentage(a.score or 0, total_marks) >= pass_percentage)
    return round((passed / len(attempts)) * 100, 2)


def summarize_exam(exam, questions: Sequence, attempts: Sequence) -> dict:
    """
    Full results page for an exam: headline statistics, the ranking table and
    per-question analytics. `attempts` must already be filtered to submitted ones.
    """
    total_marks = sum(q.marks for q in questions)
    total_attempts = len(attempts)
    scores = [a.score or 0 for a in attempts]

    ranking = []
    for position, a in enumerate(rank_attempts(attempts), start=1):
        percentage = _percentage(a.score or 0, total_marks)
        ranking.append({
            "rank": position,
            "attempt_id": a.id,
            "student_name": a.student_name,
            "roll_number": a.roll_number,
            "score": a.score,
            "percentage": round(percentage, 1),
            "passed": percentage >= exam.pass_percentage,
            "correct_answers": a.correct_answers,
            "total_questions": a.total_questions,
            "violation_count": a.violation_count,
            "is_late": a.is_late,
            "completed_at": iso(a.completed_at),
        })

    average_score = sum(scores) / total_attempts if total_attempts else 0.0
    return {
        "exam_id": exam.id,
        "exam_title": exam.title,
        "total_attempts": total_attempts,
        "total_marks": total_marks,
        "pass_percentage": exam.pass_percentage,
        "average_score": round(average_score, 2),
        "average_percentage": round(_percentage(average_score, total_marks), 2),
        "highest_score": max(scores) if scores else None,
        "lowest_score": min(scores) if scores else None,
        "pass_rate": pass_rate(attempts, total_marks, exam.pass_percentage),
        "late_submissions": sum(1 for a in attempts if a.is_late),
        "ranking": ranking,
        "questions": question_analytics(questions, attempts),
    }
