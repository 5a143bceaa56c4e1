"""
Question bank folders router (teacher-facing).
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from database.database import get_db
from database.models import Teacher
from routers.auth_teacher import get_current_teacher
from services import folders

router = APIRouter(prefix="/folders", tags=["folders"])


# ─── Schemas ───────────────────────────────────────────────────────────────────

class FolderCreateRequest(BaseModel):
    name: str = Field(..., max_length=255)
    parent_id: Optional[int] = None
    color: Optional[str] = Field(None, max_length=20)
    icon: Optional[str] = Field(None, max_length=50)

class FolderUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, max_length=255)
    color: Optional[str] = Field(None, max_length=20)
    icon: Optional[str] = Field(None, max_length=50)

class FolderMoveRequest(BaseModel):
    parent_id: Optional[int] = Field(None, description="null moves the folder to the root")


# ─── Routes ────────────────────────────────────────────────────────────────────

@router.get("/")
def list_folders(teacher: Teacher = Depends(get_current_teacher), db: Session = Depends(get_db)):
    return {"success": True, "folders": folders.list_folders(db, teacher)}


@router.get("/tree")
def folder_tree(teacher: Teacher = Depends(get_current_teacher), db: Session = Depends(get_db)):
    return {"success": True, "folders": folders.folder_tree(db, teacher)}


@router.post("/", status_code=201)
def create_folder(request: FolderCreateRequest, teacher: Teacher = Depends(get_current_teacher), db: Session = Depends(get_db)):
    folder = folders.create_folder(db, teacher, request.name, request.parent_id, request.color, request.icon)
    return {"success": True, "folder": folder}


@router.patch("/{folder_id}")
def update_folder(
    folder_id: int,
    request: FolderUpdateRequest,
    teacher: Teacher = Depends(get_current_teacher),
    db: Session = Depends(get_db),
):
    folder = folders.update_folder(db, teacher, folder_id, **request.model_dump(exclude_unset=True))
    return {"success": True, "folder": folder}


@router.delete("/{folder_id}")
def delete_folder(folder_id: int, teacher: Teacher = Depends(get_current_teacher), db: Session = Depends(get_db)):
    """Delete a folder and its subfolders; their questions move to the root."""
    return {"success": True, **folders.delete_folder(db, teacher, folder_id)}


@router.post("/{folder_id}/move")
def move_folder(
    folder_id: int,
    request: FolderMoveRequest,
    teacher: Teacher = Depends(get_current_teacher),
    db: Session = Depends(get_db),
):
    return {"success": True, "folder": folders.move_folder(db, teacher, folder_id, request.parent_id)}


@router.get("/{folder_id}/path")
def folder_path(folder_id: int, teacher: Teacher = Depends(get_current_teacher), db: Session = Depends(get_db)):
    return {"success": True, "path": folders.folder_path(db, teacher, folder_id)}
