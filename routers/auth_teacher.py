"""
Teacher authentication router.
Handles registration, login, token refresh, logout, and profile for teachers.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from auth.security import (
    MAX_PASSWORD_BYTES, create_refresh_token, create_teacher_token,
    hash_password, teacher_id_from_token, verify_password,
)
from database.database import get_db
from database.models import Teacher
from services.errors import StateConflict, Unauthorized, ValidationError

log = logging.getLogger(__name__)

router = APIRouter(prefix="/auth/teacher", tags=["auth-teacher"])


# ─── Schemas ───────────────────────────────────────────────────────────────────

class TeacherRegisterRequest(BaseModel):
    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$", max_length=255)
    password: str = Field(..., min_length=8, max_length=MAX_PASSWORD_BYTES)
    full_name: str = Field(..., min_length=1, max_length=255)

class TeacherLoginRequest(BaseModel):
    email: str
    password: str

class RefreshRequest(BaseModel):
    refresh_token: str

class TokenResponse(BaseModel):
    success: bool = True
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    teacher: dict


def _profile(teacher: Teacher) -> dict:
    return {
        "id": teacher.id,
        "email": teacher.email,
        "full_name": teacher.full_name,
        "plan_type": teacher.plan_type,
        "is_active": teacher.is_active,
    }


def _issue_tokens(teacher: Teacher, db: Session) -> TokenResponse:
    refresh_tok = create_refresh_token()
    teacher.refresh_token = refresh_tok
    db.commit()
    return TokenResponse(
        access_token=create_teacher_token(teacher.id, teacher.email),
        refresh_token=refresh_tok,
        teacher=_profile(teacher),
    )


# ─── Dependencies ──────────────────────────────────────────────────────────────

security_scheme = HTTPBearer(auto_error=False)


def get_current_teacher(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security_scheme),
    db: Session = Depends(get_db),
) -> Teacher:
    """
    Authenticated teacher for this request.

    The token alone is not trusted: the teacher row is re-loaded so tokens of
    deleted or deactivated accounts stop working immediately.
    """
    if credentials is None:
        raise Unauthorized("Not authenticated")
    teacher_id = teacher_id_from_token(credentials.credentials)
    if teacher_id is None:
        raise Unauthorized("Invalid or expired token")

    teacher = db.query(Teacher).filter(Teacher.id == teacher_id).first()
    if not teacher or not teacher.is_active:
        raise Unauthorized("Teacher not found or inactive")
    return teacher


# ─── Routes ────────────────────────────────────────────────────────────────────

@router.post("/register", response_model=TokenResponse, status_code=201)
def teacher_register(request: TeacherRegisterRequest, db: Session = Depends(get_db)):
    email = request.email.strip().lower()
    if db.query(Teacher).filter(Teacher.email == email).first():
        raise StateConflict("An account with this email already exists")

    try:
        hashed = hash_password(request.password)
    except ValueError as e:
        raise ValidationError(str(e))

    teacher = Teacher(email=email, hashed_password=hashed, full_name=request.full_name.strip())
    db.add(teacher)
    db.flush()
    log.info("Teacher %s registered", teacher.id)
    return _issue_tokens(teacher, db)


@router.post("/login", response_model=TokenResponse)
def teacher_login(request: TeacherLoginRequest, db: Session = Depends(get_db)):
    """Authenticate teacher and return access + refresh tokens."""
    teacher = db.query(Teacher).filter(Teacher.email == request.email.strip().lower()).first()
    if not teacher or not verify_password(request.password, teacher.hashed_password):
        log.warning("Failed login for %s", request.email)
        raise Unauthorized("Invalid email or password")
    if not teacher.is_active:
        raise Unauthorized("Account is deactivated")
    return _issue_tokens(teacher, db)


@router.post("/refresh", response_model=TokenResponse)
def teacher_refresh(request: RefreshRequest, db: Session = Depends(get_db)):
    """Exchange a valid refresh token for a new pair. The old refresh token stops working."""
    teacher = db.query(Teacher).filter(Teacher.refresh_token == request.refresh_token).first()
    if not teacher or not teacher.is_active:
        raise Unauthorized("Invalid refresh token")
    return _issue_tokens(teacher, db)


@router.post("/logout")
def teacher_logout(teacher: Teacher = Depends(get_current_teacher), db: Session = Depends(get_db)):
    teacher.refresh_token = None
    db.commit()
    return {"success": True, "message": "Logged out successfully"}


@router.get("/me")
def teacher_me(teacher: Teacher = Depends(get_current_teacher)):
    return {"success": True, "teacher": _profile(teacher)}
