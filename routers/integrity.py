"""
Integrity reports router (teacher-facing, owner only).
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from database.database import get_db
from database.models import Teacher
from routers.auth_teacher import get_current_teacher
from services import integrity

router = APIRouter(prefix="/integrity", tags=["integrity"])


@router.get("/attempts/{attempt_id}/report")
def attempt_report(attempt_id: str, teacher: Teacher = Depends(get_current_teacher), db: Session = Depends(get_db)):
    """Timeline, risk level and recommendations for one attempt."""
    return {"success": True, "report": integrity.generate_integrity_report(db, teacher, attempt_id)}


@router.get("/exams/{exam_id}")
def exam_integrity(exam_id: int, teacher: Teacher = Depends(get_current_teacher), db: Session = Depends(get_db)):
    return {"success": True, "attempts": integrity.calculate_exam_integrity(db, teacher, exam_id)}
