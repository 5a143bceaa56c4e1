"""
Billing router (teacher-facing).
Checkout is simulated: purchases are recorded as completed payments.
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from database.database import get_db
from database.models import Teacher
from routers.auth_teacher import get_current_teacher
from services import billing
from services.clock import iso

router = APIRouter(prefix="/billing", tags=["billing"])


# ─── Schemas ───────────────────────────────────────────────────────────────────

class OneTimePurchaseRequest(BaseModel):
    quantity: int = Field(1, ge=1, le=100)

class SubscribeRequest(BaseModel):
    plan: str = Field(..., pattern=r"^(MONTHLY|YEARLY)$")


# ─── Routes ────────────────────────────────────────────────────────────────────

@router.get("/")
def billing_summary(teacher: Teacher = Depends(get_current_teacher), db: Session = Depends(get_db)):
    return {"success": True, **billing.billing_summary(db, teacher)}


@router.get("/can-publish")
def can_publish(teacher: Teacher = Depends(get_current_teacher), db: Session = Depends(get_db)):
    return {"success": True, **billing.can_publish_exam(db, teacher)}


@router.post("/one-time")
def purchase_one_time(request: OneTimePurchaseRequest, teacher: Teacher = Depends(get_current_teacher), db: Session = Depends(get_db)):
    return {"success": True, **billing.purchase_one_time_exams(db, teacher, request.quantity)}


@router.post("/subscribe", status_code=201)
def subscribe(request: SubscribeRequest, teacher: Teacher = Depends(get_current_teacher), db: Session = Depends(get_db)):
    sub = billing.start_subscription(db, teacher, request.plan)
    return {"success": True, "plan": sub.plan, "current_period_end": iso(sub.current_period_end)}


@router.post("/cancel")
def cancel(teacher: Teacher = Depends(get_current_teacher), db: Session = Depends(get_db)):
    """Cancel at period end. Pro features stay on until then."""
    sub = billing.cancel_subscription(db, teacher)
    return {"success": True, "cancel_at_period_end": sub.cancel_at_period_end, "current_period_end": iso(sub.current_period_end)}
