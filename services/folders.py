"""
Question-bank folders.

Folders form a per-teacher tree through parent_id. Names are unique among
siblings. Every walk up the tree is iterative and bounded by the teacher's
folder count, so a corrupted parent chain cannot loop forever.
"""

import logging
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from database.models import BankQuestion, QuestionFolder, Teacher
from services.clock import iso
from services.errors import NotFound, StateConflict, ValidationError

log = logging.getLogger(__name__)


def _counts(db: Session, teacher_id: int):
    question_counts = dict(
        db.query(BankQuestion.folder_id, func.count(BankQuestion.id))
        .filter(BankQuestion.teacher_id == teacher_id, BankQuestion.folder_id.isnot(None))
        .group_by(BankQuestion.folder_id)
        .all()
    )
    subfolder_counts = dict(
        db.query(QuestionFolder.parent_id, func.count(QuestionFolder.id))
        .filter(QuestionFolder.teacher_id == teacher_id, QuestionFolder.parent_id.isnot(None))
        .group_by(QuestionFolder.parent_id)
        .all()
    )
    return question_counts, subfolder_counts


def folder_to_dict(folder: QuestionFolder, question_count: int = 0, subfolder_count: int = 0) -> dict:
    return {
        "id": folder.id,
        "name": folder.name,
        "color": folder.color,
        "icon": folder.icon,
        "parent_id": folder.parent_id,
        "question_count": question_count,
        "subfolder_count": subfolder_count,
        "created_at": iso(folder.created_at),
    }


def get_owned_folder(db: Session, teacher: Teacher, folder_id: int) -> QuestionFolder:
    folder = db.query(QuestionFolder).filter(QuestionFolder.id == folder_id).first()
    if not folder or folder.teacher_id != teacher.id:
        raise NotFound("Folder not found")
    return folder


def _name_taken(db: Session, teacher_id: int, name: str, parent_id: Optional[int], exclude_id: Optional[int] = None) -> bool:
    query = db.query(QuestionFolder).filter(
        QuestionFolder.teacher_id == teacher_id,
        QuestionFolder.name == name,
    )
    if parent_id is None:
        query = query.filter(QuestionFolder.parent_id.is_(None))
    else:
        query = query.filter(QuestionFolder.parent_id == parent_id)
    if exclude_id is not None:
        query = query.filter(QuestionFolder.id != exclude_id)
    return db.query(query.exists()).scalar()


def _parent_map(db: Session, teacher_id: int) -> Dict[int, Optional[int]]:
    return dict(
        db.query(QuestionFolder.id, QuestionFolder.parent_id)
        .filter(QuestionFolder.teacher_id == teacher_id)
        .all()
    )


def is_descendant(parents: Dict[int, Optional[int]], ancestor_id: int, folder_id: int) -> bool:
    """True when folder_id sits somewhere below ancestor_id. `parents` maps id -> parent_id."""
    current = parents.get(folder_id)
    for _ in range(len(parents)):
        if current is None:
            return False
        if current == ancestor_id:
            return True
        current = parents.get(current)
    return False


def _subtree_ids(parents: Dict[int, Optional[int]], root_id: int) -> List[int]:
    return [fid for fid in parents if fid == root_id or is_descendant(parents, root_id, fid)]


# ─── Operations ────────────────────────────────────────────────────────────────

def list_folders(db: Session, teacher: Teacher) -> List[dict]:
    folders = (
        db.query(QuestionFolder)
        .filter(QuestionFolder.teacher_id == teacher.id)
        .order_by(QuestionFolder.parent_id.asc(), QuestionFolder.name.asc())
        .all()
    )
    question_counts, subfolder_counts = _counts(db, teacher.id)
    return [
        folder_to_dict(f, question_counts.get(f.id, 0), subfolder_counts.get(f.id, 0))
        for f in folders
    ]


def folder_tree(db: Session, teacher: Teacher) -> List[dict]:
    """Nested folders. Folders whose parent is missing are shown at the root."""
    nodes = {}
    for row in sorted(list_folders(db, teacher), key=lambda f: f["name"]):
        nodes[row["id"]] = {**row, "subfolders": []}

    roots = []
    for node in nodes.values():
        parent = nodes.get(node["parent_id"])
        if parent is not None:
            parent["subfolders"].append(node)
        else:
            roots.append(node)
    return roots


def create_folder(
    db: Session,
    teacher: Teacher,
    name: str,
    parent_id: Optional[int] = None,
    color: Optional[str] = None,
    icon: Optional[str] = None,
) -> dict:
    name = (name or "").strip()
    if not name:
        raise ValidationError("Folder name is required")
    if parent_id is not None:
        get_owned_folder(db, teacher, parent_id)
    if _name_taken(db, teacher.id, name, parent_id):
        raise StateConflict("A folder with this name already exists in this location")

    folder = QuestionFolder(teacher_id=teacher.id, parent_id=parent_id, name=name, color=color, icon=icon)
    db.add(folder)
    db.commit()
    db.refresh(folder)
    log.info("Folder %s created for teacher %s", folder.id, teacher.id)
    return folder_to_dict(folder)


def update_folder(db: Session, teacher: Teacher, folder_id: int, **changes) -> dict:
    folder = get_owned_folder(db, teacher, folder_id)

    if "name" in changes and changes["name"] is not None:
        name = changes["name"].strip()
        if not name:
            raise ValidationError("Folder name is required")
        if _name_taken(db, teacher.id, name, folder.parent_id, exclude_id=folder.id):
            raise StateConflict("A folder with this name already exists in this location")
        folder.name = name
    if "color" in changes:
        folder.color = changes["color"]
    if "icon" in changes:
        folder.icon = changes["icon"]

    db.commit()
    db.refresh(folder)
    return folder_to_dict(folder)


def delete_folder(db: Session, teacher: Teacher, folder_id: int) -> dict:
    """Delete a folder and its subfolders. Their questions are kept and moved to the root."""
    folder = get_owned_folder(db, teacher, folder_id)
    subtree = _subtree_ids(_parent_map(db, teacher.id), folder.id)

    moved = (
        db.query(BankQuestion)
        .filter(BankQuestion.teacher_id == teacher.id, BankQuestion.folder_id.in_(subtree))
        .update({BankQuestion.folder_id: None}, synchronize_session=False)
    )
    db.expire_all()
    folder = get_owned_folder(db, teacher, folder_id)
    db.delete(folder)
    db.commit()

    log.info("Folder %s deleted (%s folders, %s questions moved to root)", folder_id, len(subtree), moved)
    return {"deleted_folders": len(subtree), "moved_questions": moved}


def move_folder(db: Session, teacher: Teacher, folder_id: int, new_parent_id: Optional[int]) -> dict:
    folder = get_owned_folder(db, teacher, folder_id)

    if new_parent_id is not None:
        if new_parent_id == folder.id:
            raise ValidationError("Cannot move folder into itself")
        get_owned_folder(db, teacher, new_parent_id)
        if is_descendant(_parent_map(db, teacher.id), folder.id, new_parent_id):
            raise ValidationError("Cannot move folder into its own subfolder")

    if _name_taken(db, teacher.id, folder.name, new_parent_id, exclude_id=folder.id):
        raise StateConflict("A folder with this name already exists in the destination")

    folder.parent_id = new_parent_id
    db.commit()
    db.refresh(folder)
    return folder_to_dict(folder)


def folder_path(db: Session, teacher: Teacher, folder_id: Optional[int]) -> List[dict]:
    """Breadcrumbs from the root down to folder_id."""
    if folder_id is None:
        return []
    get_owned_folder(db, teacher, folder_id)

    folders = {
        f.id: f
        for f in db.query(QuestionFolder).filter(QuestionFolder.teacher_id == teacher.id).all()
    }
    path = []
    current = folders.get(folder_id)
    for _ in range(len(folders)):
        if current is None:
            break
        path.insert(0, folder_to_dict(current))
        current = folders.get(current.parent_id)
    return path
