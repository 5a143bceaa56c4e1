"""
Pydantic schemas for request validation.
Shared between the exam authoring and question bank routers.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


DIFFICULTY_PATTERN = r"^(EASY|MEDIUM|HARD)$"


def check_choices(options: list, correct_option: str) -> None:
    """
    Option ids must be unique and the correct option must be one of them.
    Accepts OptionItem models or the stored {"id", "text"} dicts.
    """
    ids = [str(o["id"]) if isinstance(o, dict) else o.id for o in options]
    if len(set(ids)) != len(ids):
        raise ValueError("Option ids must be unique")
    if correct_option not in ids:
        raise ValueError("correct_option must match one of the option ids")


# ==========================================
# QUESTION SCHEMAS
# ==========================================

class OptionItem(BaseModel):
    id: str = Field(..., min_length=1, max_length=64)
    text: str = Field(..., min_length=1)


class QuestionBase(BaseModel):
    """Fields shared by exam questions and bank questions"""
    text: str = Field(..., min_length=1, description="Question text")
    options: List[OptionItem] = Field(..., min_length=2, max_length=10)
    correct_option: str = Field(..., min_length=1, description="Id of the correct option")
    marks: float = Field(default=1, gt=0)
    negative_marks: Optional[float] = Field(None, ge=0, description="Overrides the exam-level penalty")
    difficulty: Optional[str] = Field(None, pattern=DIFFICULTY_PATTERN)

    @model_validator(mode="after")
    def _choices(self):
        check_choices(self.options, self.correct_option)
        return self


class QuestionCreate(QuestionBase):
    pass


class QuestionUpdate(BaseModel):
    """All fields optional; options and correct_option are re-checked together against the stored row"""
    text: Optional[str] = Field(None, min_length=1)
    options: Optional[List[OptionItem]] = Field(None, min_length=2, max_length=10)
    correct_option: Optional[str] = Field(None, min_length=1)
    marks: Optional[float] = Field(None, gt=0)
    negative_marks: Optional[float] = Field(None, ge=0)
    difficulty: Optional[str] = Field(None, pattern=DIFFICULTY_PATTERN)


class BankQuestionCreate(QuestionBase):
    difficulty: str = Field("MEDIUM", pattern=DIFFICULTY_PATTERN)
    explanation: Optional[str] = None
    subject: Optional[str] = Field(None, max_length=255)
    topic: Optional[str] = Field(None, max_length=255)
    tags: List[str] = Field(default_factory=list)
    folder_id: Optional[int] = None


class BankQuestionUpdate(QuestionUpdate):
    explanation: Optional[str] = None
    subject: Optional[str] = Field(None, max_length=255)
    topic: Optional[str] = Field(None, max_length=255)
    tags: Optional[List[str]] = None
    folder_id: Optional[int] = None


# ==========================================
# EXAM SCHEMAS
# ==========================================

class ExamSettings(BaseModel):
    """Optional exam settings, shared by create and update"""
    description: Optional[str] = None
    shuffle_questions: Optional[bool] = None
    shuffle_options: Optional[bool] = None
    anti_cheat_enabled: Optional[bool] = None
    max_violations: Optional[int] = Field(None, ge=0)
    pass_percentage: Optional[float] = Field(None, ge=0, le=100)
    negative_marking: Optional[bool] = None
    negative_marks: Optional[float] = Field(None, ge=0)
    show_results_immediately: Optional[bool] = None
    require_password: Optional[bool] = None
    password: Optional[str] = Field(None, max_length=255)
    max_attempts: Optional[int] = Field(None, ge=1)
    scheduled_start: Optional[datetime] = None
    scheduled_end: Optional[datetime] = None
    allow_late_submission: Optional[bool] = None


class ExamCreate(ExamSettings):
    title: str = Field(..., min_length=1, max_length=255)
    duration_minutes: int = Field(..., ge=1, le=600)
    questions: List[QuestionCreate] = Field(default_factory=list)


class ExamUpdate(ExamSettings):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    duration_minutes: Optional[int] = Field(None, ge=1, le=600)


class QuestionResponse(BaseModel):
    """Teacher view of an exam question, including the answer"""
    id: int
    text: str
    options: List[OptionItem]
    correct_option: str
    marks: float
    negative_marks: Optional[float] = None
    difficulty: Optional[str] = None
    position: int

    model_config = ConfigDict(from_attributes=True)
