"""
Billing: publish quota and plans.

FREE teachers get FREE_EXAM_LIMIT lifetime publishes, ONE_TIME purchases add
single publishes, an active PRO subscription publishes without limit. The
payment provider's checkout/webhook side is not modelled; purchases here
record a completed Payment directly.
"""

import logging
import os
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from database.models import BankQuestion, Payment, PlanType, Subscription, Teacher
from services.clock import as_utc, iso, utcnow
from services.errors import NotFound, StateConflict, ValidationError

log = logging.getLogger(__name__)

FREE_EXAM_LIMIT = int(os.getenv("FREE_EXAM_LIMIT", "3"))
FREE_BANK_LIMIT = int(os.getenv("FREE_BANK_LIMIT", "20"))

ONE_TIME_EXAM_PRICE = 199  # cents
PLAN_PRICES = {"MONTHLY": 1199, "YEARLY": 9900}
PLAN_PERIODS = {"MONTHLY": timedelta(days=30), "YEARLY": timedelta(days=365)}


def active_subscription(db: Session, teacher_id: int, now: Optional[datetime] = None) -> Optional[Subscription]:
    """Subscription granting Pro right now. Cancelled ones keep access until their period ends."""
    now = now or utcnow()
    subscriptions = (
        db.query(Subscription)
        .filter(Subscription.teacher_id == teacher_id, Subscription.status.in_(("ACTIVE", "CANCELLED")))
        .order_by(Subscription.current_period_end.desc())
        .all()
    )
    for sub in subscriptions:
        if sub.status == "CANCELLED" and not sub.cancel_at_period_end:
            continue
        if as_utc(sub.current_period_end) >= now:
            return sub
    return None


def has_active_pro_subscription(db: Session, teacher_id: int, now: Optional[datetime] = None) -> bool:
    return active_subscription(db, teacher_id, now) is not None


def can_publish_exam(db: Session, teacher: Teacher, now: Optional[datetime] = None) -> dict:
    """Which quota the next publish would use, or why none is left."""
    if has_active_pro_subscription(db, teacher.id, now):
        return {"can_publish": True, "exam_mode": PlanType.PRO.value}

    if teacher.one_time_exams_remaining > 0:
        return {
            "can_publish": True,
            "exam_mode": PlanType.ONE_TIME.value,
            "one_time_exams_remaining": teacher.one_time_exams_remaining,
        }

    free_remaining = max(0, FREE_EXAM_LIMIT - teacher.free_exams_used)
    if free_remaining > 0:
        return {"can_publish": True, "exam_mode": PlanType.FREE.value, "free_exams_remaining": free_remaining}

    return {
        "can_publish": False,
        "reason": "No exams available. Upgrade to Pro or purchase a one-time exam.",
        "free_exams_remaining": 0,
        "one_time_exams_remaining": 0,
    }


def consume_exam_quota(db: Session, teacher: Teacher, now: Optional[datetime] = None) -> str:
    """
    Charge one publish against the teacher's quota and return the exam mode.

    Counters move with conditional UPDATEs, so two racing publishes cannot
    spend the same free slot or one-time credit. Does not commit; the caller
    commits together with the status change.
    """
    check = can_publish_exam(db, teacher, now)
    if not check["can_publish"]:
        raise StateConflict(check["reason"])

    mode = check["exam_mode"]
    if mode == PlanType.PRO.value:
        return mode

    if mode == PlanType.ONE_TIME.value:
        updated = (
            db.query(Teacher)
            .filter(Teacher.id == teacher.id, Teacher.one_time_exams_remaining > 0)
            .update({Teacher.one_time_exams_remaining: Teacher.one_time_exams_remaining - 1},
                    synchronize_session=False)
        )
    else:
        updated = (
            db.query(Teacher)
            .filter(Teacher.id == teacher.id, Teacher.free_exams_used < FREE_EXAM_LIMIT)
            .update({Teacher.free_exams_used: Teacher.free_exams_used + 1}, synchronize_session=False)
        )
    if updated == 0:
        raise StateConflict("Publish quota already used")

    db.expire(teacher)
    return mode


def purchase_one_time_exams(db: Session, teacher: Teacher, quantity: int = 1) -> dict:
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1")

    db.add(Payment(
        teacher_id=teacher.id,
        amount=ONE_TIME_EXAM_PRICE * quantity,
        currency="USD",
        status="COMPLETED",
        type="ONE_TIME_EXAM",
    ))
    db.query(Teacher).filter(Teacher.id == teacher.id).update(
        {Teacher.one_time_exams_remaining: Teacher.one_time_exams_remaining + quantity},
        synchronize_session=False,
    )
    db.commit()
    db.refresh(teacher)
    log.info("Teacher %s bought %s one-time exam(s)", teacher.id, quantity)
    return {"one_time_exams_remaining": teacher.one_time_exams_remaining}


def start_subscription(db: Session, teacher: Teacher, plan: str, now: Optional[datetime] = None) -> Subscription:
    now = now or utcnow()
    plan = (plan or "").upper()
    if plan not in PLAN_PRICES:
        raise ValidationError("plan must be 'MONTHLY' or 'YEARLY'")
    if has_active_pro_subscription(db, teacher.id, now):
        raise StateConflict("Subscription already active")

    subscription = Subscription(
        teacher_id=teacher.id,
        plan=plan,
        status="ACTIVE",
        current_period_start=now,
        current_period_end=now + PLAN_PERIODS[plan],
        amount=PLAN_PRICES[plan],
        currency="USD",
    )
    db.add(subscription)
    db.add(Payment(
        teacher_id=teacher.id,
        amount=PLAN_PRICES[plan],
        currency="USD",
        status="COMPLETED",
        type="SUBSCRIPTION",
    ))
    teacher.plan_type = PlanType.PRO.value
    db.commit()
    db.refresh(subscription)
    log.info("Teacher %s started a %s subscription", teacher.id, plan)
    return subscription


def cancel_subscription(db: Session, teacher: Teacher, now: Optional[datetime] = None) -> Subscription:
    """Cancel at period end. Pro access lasts until current_period_end."""
    now = now or utcnow()
    subscription = active_subscription(db, teacher.id, now)
    if not subscription:
        raise NotFound("No active subscription")
    if subscription.cancel_at_period_end:
        raise StateConflict("Subscription already cancelled")

    subscription.cancel_at_period_end = True
    subscription.status = "CANCELLED"
    subscription.cancelled_at = now
    db.commit()
    db.refresh(subscription)
    log.info("Teacher %s cancelled subscription %s", teacher.id, subscription.id)
    return subscription


def can_add_to_question_bank(db: Session, teacher: Teacher, adding: int = 1, now: Optional[datetime] = None) -> dict:
    count = db.query(BankQuestion).filter(BankQuestion.teacher_id == teacher.id).count()
    if has_active_pro_subscription(db, teacher.id, now):
        return {"can_add": True, "current_count": count}

    if count + adding > FREE_BANK_LIMIT:
        return {
            "can_add": False,
            "reason": f"Free plan limited to {FREE_BANK_LIMIT} questions. Upgrade to Pro for unlimited.",
            "current_count": count,
            "limit": FREE_BANK_LIMIT,
        }
    return {"can_add": True, "current_count": count, "limit": FREE_BANK_LIMIT}


def _subscription_dict(sub: Optional[Subscription]) -> Optional[dict]:
    if sub is None:
        return None
    return {
        "id": sub.id,
        "plan": sub.plan,
        "status": sub.status,
        "current_period_start": iso(sub.current_period_start),
        "current_period_end": iso(sub.current_period_end),
        "cancel_at_period_end": sub.cancel_at_period_end,
        "amount": sub.amount,
        "currency": sub.currency,
    }


def billing_summary(db: Session, teacher: Teacher, now: Optional[datetime] = None) -> dict:
    latest = (
        db.query(Subscription)
        .filter(Subscription.teacher_id == teacher.id)
        .order_by(Subscription.current_period_end.desc())
        .first()
    )
    payments = (
        db.query(Payment)
        .filter(Payment.teacher_id == teacher.id)
        .order_by(Payment.created_at.desc(), Payment.id.desc())
        .all()
    )
    is_pro = has_active_pro_subscription(db, teacher.id, now)
    return {
        "plan_type": PlanType.PRO.value if is_pro else PlanType.FREE.value,
        "is_pro": is_pro,
        "free_exams_used": teacher.free_exams_used,
        "free_exams_remaining": max(0, FREE_EXAM_LIMIT - teacher.free_exams_used),
        "one_time_exams_remaining": teacher.one_time_exams_remaining,
        "subscription": _subscription_dict(latest),
        "payments": [
            {
                "id": p.id,
                "amount": p.amount,
                "currency": p.currency,
                "status": p.status,
                "type": p.type,
                "created_at": iso(p.created_at),
            }
            for p in payments
        ],
    }
