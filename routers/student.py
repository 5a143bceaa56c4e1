"""
Student exam-taking router (public).
Students are identified by name + roll number; the attempt id returned by
/start is the only credential for the rest of the attempt.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from database.database import get_db
from services import attempts, integrity

router = APIRouter(prefix="/exam", tags=["student-exam"])


# ─── Schemas ───────────────────────────────────────────────────────────────────

class StartRequest(BaseModel):
    student_name: str = Field(..., max_length=255)
    roll_number: str = Field(..., max_length=64)
    password: Optional[str] = None

class SaveAnswerRequest(BaseModel):
    question_id: int
    option_id: Optional[str] = Field(None, description="null clears the answer")

class SubmitRequest(BaseModel):
    answers: Dict[str, Optional[str]] = Field(default_factory=dict, description="{question_id: option_id}")

class EventRequest(BaseModel):
    event_type: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


# ─── Routes ────────────────────────────────────────────────────────────────────

@router.get("/{exam_id}")
def exam_landing(exam_id: int, db: Session = Depends(get_db)):
    """Title, duration and access rules of a published exam. No questions."""
    return {"success": True, "exam": attempts.describe_exam(db, exam_id)}


@router.post("/{exam_id}/start")
def start_exam(exam_id: int, request: StartRequest, db: Session = Depends(get_db)):
    """Start an attempt, or resume the student's open one."""
    started = attempts.start_attempt(db, exam_id, request.student_name, request.roll_number, request.password)
    return {"success": True, **started}


@router.get("/attempts/{attempt_id}")
def get_attempt(attempt_id: str, db: Session = Depends(get_db)):
    return {"success": True, "attempt": attempts.get_attempt(db, attempt_id)}


@router.post("/attempts/{attempt_id}/answers")
def save_answer(attempt_id: str, request: SaveAnswerRequest, db: Session = Depends(get_db)):
    saved = attempts.save_answer(db, attempt_id, request.question_id, request.option_id)
    return {"success": True, **saved}


@router.post("/attempts/{attempt_id}/submit")
def submit_exam(attempt_id: str, request: SubmitRequest, db: Session = Depends(get_db)):
    result = attempts.submit_attempt(db, attempt_id, request.answers)
    return {"success": True, **result}


@router.post("/attempts/{attempt_id}/events")
def track_event(attempt_id: str, request: EventRequest, db: Session = Depends(get_db)):
    tracked = integrity.track_event(db, attempt_id, request.event_type, request.metadata)
    return {"success": True, **tracked}


@router.get("/attempts/{attempt_id}/result")
def attempt_result(attempt_id: str, db: Session = Depends(get_db)):
    return {"success": True, "result": attempts.get_attempt_result(db, attempt_id)}
