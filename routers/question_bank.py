"""
Question bank router (teacher-facing).
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from database.database import get_db
from database.models import Teacher
from database.schemas import BankQuestionCreate, BankQuestionUpdate
from routers.auth_teacher import get_current_teacher
from services import question_bank

router = APIRouter(prefix="/question-bank", tags=["question-bank"])


# ─── Schemas ───────────────────────────────────────────────────────────────────

class QuestionIdsRequest(BaseModel):
    question_ids: List[int] = Field(..., min_length=1)

class AddTagsRequest(QuestionIdsRequest):
    tags: List[str] = Field(..., min_length=1)

class ImportRequest(QuestionIdsRequest):
    exam_id: int

class SaveFromExamRequest(BaseModel):
    exam_id: int
    question_id: int
    folder_id: Optional[int] = None


# ─── Routes ────────────────────────────────────────────────────────────────────

@router.get("/")
def list_questions(
    folder_id: Optional[int] = None,
    root_only: bool = False,
    search: Optional[str] = None,
    tag: Optional[str] = None,
    difficulty: Optional[str] = Query(None, pattern=r"^(EASY|MEDIUM|HARD)$"),
    teacher: Teacher = Depends(get_current_teacher),
    db: Session = Depends(get_db),
):
    questions = question_bank.list_questions(db, teacher, folder_id, root_only, search, tag, difficulty)
    return {"success": True, "questions": questions}


@router.post("/", status_code=201)
def add_question(request: BankQuestionCreate, teacher: Teacher = Depends(get_current_teacher), db: Session = Depends(get_db)):
    return {"success": True, "question": question_bank.add_question(db, teacher, request.model_dump())}


@router.patch("/{question_id}")
def update_question(
    question_id: int,
    request: BankQuestionUpdate,
    teacher: Teacher = Depends(get_current_teacher),
    db: Session = Depends(get_db),
):
    changes = request.model_dump(exclude_unset=True)
    return {"success": True, "question": question_bank.update_question(db, teacher, question_id, changes)}


@router.post("/delete")
def delete_questions(request: QuestionIdsRequest, teacher: Teacher = Depends(get_current_teacher), db: Session = Depends(get_db)):
    return {"success": True, "deleted": question_bank.delete_questions(db, teacher, request.question_ids)}


@router.post("/tags")
def add_tags(request: AddTagsRequest, teacher: Teacher = Depends(get_current_teacher), db: Session = Depends(get_db)):
    return {"success": True, "updated": question_bank.add_tags(db, teacher, request.question_ids, request.tags)}


@router.post("/duplicate", status_code=201)
def duplicate_questions(request: QuestionIdsRequest, teacher: Teacher = Depends(get_current_teacher), db: Session = Depends(get_db)):
    copies = question_bank.duplicate_questions(db, teacher, request.question_ids)
    return {"success": True, "duplicated": len(copies), "questions": copies}


@router.post("/import")
def import_into_exam(request: ImportRequest, teacher: Teacher = Depends(get_current_teacher), db: Session = Depends(get_db)):
    """Copy bank questions into a draft exam."""
    imported = question_bank.import_into_exam(db, teacher, request.exam_id, request.question_ids)
    return {"success": True, "imported": imported}


@router.post("/save-from-exam")
def save_from_exam(request: SaveFromExamRequest, teacher: Teacher = Depends(get_current_teacher), db: Session = Depends(get_db)):
    saved = question_bank.save_from_exam(db, teacher, request.exam_id, request.question_id, request.folder_id)
    return {"success": True, **saved}


@router.get("/check/{exam_id}/{question_id}")
def check_in_bank(exam_id: int, question_id: int, teacher: Teacher = Depends(get_current_teacher), db: Session = Depends(get_db)):
    return {"success": True, **question_bank.check_in_bank(db, teacher, exam_id, question_id)}
