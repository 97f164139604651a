"""
Discounts and scholarships.

Both follow one lifecycle: created PENDING with their amount resolved against the
fee's total_amount, then APPROVED (touching the ledger exactly once) or REJECTED.
A discount requested through the API is approved in the same transaction by the
requesting admin unless the school has turned on discount_requires_approval.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from feeledger import audit, ledger, models, schemas
from feeledger.auth import ADMIN_ROLES, Principal
from feeledger.errors import NotFoundError, StateConflictError
from feeledger.validation import adjustment_amount

logger = logging.getLogger("fee-ledger")

PENDING = "PENDING"
APPROVED = "APPROVED"
REJECTED = "REJECTED"


def request_discount(db: Session, principal: Principal, payload: schemas.DiscountCreate) -> models.FeeDiscount:
    fee = ledger.get_student_fee(db, principal.school_id, payload.student_fee_id)
    amount = adjustment_amount(payload.discount_type.value, payload.discount_value, fee.total_amount, "Discount")
    discount = models.FeeDiscount(
        school_id=principal.school_id,
        student_fee_id=fee.id,
        student_id=fee.student_id,
        name=payload.name.strip(),
        description=payload.description,
        discount_type=payload.discount_type.value,
        discount_value=payload.discount_value,
        discount_amount=amount,
        reason=payload.reason.strip(),
        status=PENDING,
        created_by=principal.user_id,
    )
    db.add(discount)
    db.flush()
    audit.record(
        db, principal, principal.school_id, "DISCOUNT", discount.id, "CREATED",
        f"Discount \"{discount.name}\" of {amount} requested",
        new_data=audit.snapshot(discount),
    )
    logger.info("Discount id=%s requested on student_fee=%s amount=%s", discount.id, fee.id, amount)

    settings = ledger.get_settings(db, principal.school_id)
    if not settings.discount_requires_approval and principal.role in ADMIN_ROLES:
        approve_discount(db, principal, discount.id)
    return discount


def request_scholarship(db: Session, principal: Principal, payload: schemas.ScholarshipCreate) -> models.FeeScholarship:
    fee = ledger.get_student_fee(db, principal.school_id, payload.student_fee_id)
    amount = adjustment_amount(payload.scholarship_type.value, payload.scholarship_value, fee.total_amount, "Scholarship")
    scholarship = models.FeeScholarship(
        school_id=principal.school_id,
        student_fee_id=fee.id,
        student_id=fee.student_id,
        name=payload.name.strip(),
        description=payload.description,
        scholarship_type=payload.scholarship_type.value,
        scholarship_value=payload.scholarship_value,
        scholarship_amount=amount,
        provider=payload.provider,
        reference_number=payload.reference_number,
        valid_from=payload.valid_from,
        valid_to=payload.valid_to,
        status=PENDING,
        applied_by=principal.user_id,
    )
    db.add(scholarship)
    db.flush()
    audit.record(
        db, principal, principal.school_id, "SCHOLARSHIP", scholarship.id, "CREATED",
        f"Scholarship \"{scholarship.name}\" of {amount} applied",
        new_data=audit.snapshot(scholarship),
    )
    logger.info("Scholarship id=%s applied on student_fee=%s amount=%s", scholarship.id, fee.id, amount)
    return scholarship


def _load(db: Session, model, school_id: str, adjustment_id: str, label: str):
    adjustment = db.execute(
        select(model)
        .where(model.id == adjustment_id, model.school_id == school_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if adjustment is None:
        raise NotFoundError(f"{label} not found")
    return adjustment


def _approve(db: Session, principal: Principal, adjustment, entity_type: str, label: str):
    if adjustment.status != PENDING:
        raise StateConflictError(f"Only pending {label.lower()}s can be approved")
    previous = audit.snapshot(adjustment)
    fee = ledger.get_student_fee(db, principal.school_id, adjustment.student_fee_id, for_update=True)
    if entity_type == "DISCOUNT":
        ledger.recompute_after_adjustment(fee, delta_discount=adjustment.discount_amount)
    else:
        ledger.recompute_after_adjustment(fee, delta_scholarship=adjustment.scholarship_amount)

    adjustment.status = APPROVED
    adjustment.approved_by = principal.user_id
    adjustment.approved_at = datetime.now(timezone.utc)
    db.flush()
    audit.record(
        db, principal, principal.school_id, entity_type, adjustment.id, "APPROVED",
        f"{label} \"{adjustment.name}\" approved",
        previous_data=previous,
        new_data=audit.snapshot(adjustment),
    )
    logger.info("%s id=%s approved; student_fee=%s final=%s balance=%s",
                label, adjustment.id, fee.id, fee.final_amount, fee.balance_amount)
    return adjustment


def _reject(db: Session, principal: Principal, adjustment, entity_type: str, label: str):
    if adjustment.status != PENDING:
        raise StateConflictError(f"Only pending {label.lower()}s can be rejected")
    previous = audit.snapshot(adjustment)
    adjustment.status = REJECTED
    db.flush()
    audit.record(
        db, principal, principal.school_id, entity_type, adjustment.id, "REJECTED",
        f"{label} \"{adjustment.name}\" rejected",
        previous_data=previous,
        new_data=audit.snapshot(adjustment),
    )
    logger.info("%s id=%s rejected", label, adjustment.id)
    return adjustment


def approve_discount(db: Session, principal: Principal, discount_id: str) -> models.FeeDiscount:
    discount = _load(db, models.FeeDiscount, principal.school_id, discount_id, "Discount")
    return _approve(db, principal, discount, "DISCOUNT", "Discount")


def reject_discount(db: Session, principal: Principal, discount_id: str) -> models.FeeDiscount:
    discount = _load(db, models.FeeDiscount, principal.school_id, discount_id, "Discount")
    return _reject(db, principal, discount, "DISCOUNT", "Discount")


def approve_scholarship(db: Session, principal: Principal, scholarship_id: str) -> models.FeeScholarship:
    scholarship = _load(db, models.FeeScholarship, principal.school_id, scholarship_id, "Scholarship")
    return _approve(db, principal, scholarship, "SCHOLARSHIP", "Scholarship")


def reject_scholarship(db: Session, principal: Principal, scholarship_id: str) -> models.FeeScholarship:
    scholarship = _load(db, models.FeeScholarship, principal.school_id, scholarship_id, "Scholarship")
    return _reject(db, principal, scholarship, "SCHOLARSHIP", "Scholarship")


def list_discounts(db: Session, school_id: str, student_id: Optional[str] = None,
                   status: Optional[str] = None) -> List[models.FeeDiscount]:
    stmt = select(models.FeeDiscount).where(models.FeeDiscount.school_id == school_id)
    if student_id:
        stmt = stmt.where(models.FeeDiscount.student_id == student_id)
    if status:
        stmt = stmt.where(models.FeeDiscount.status == status.upper())
    return list(db.execute(stmt.order_by(models.FeeDiscount.created_at.desc())).scalars())


def list_scholarships(db: Session, school_id: str, student_id: Optional[str] = None,
                      status: Optional[str] = None) -> List[models.FeeScholarship]:
    stmt = select(models.FeeScholarship).where(models.FeeScholarship.school_id == school_id)
    if student_id:
        stmt = stmt.where(models.FeeScholarship.student_id == student_id)
    if status:
        stmt = stmt.where(models.FeeScholarship.status == status.upper())
    return list(db.execute(stmt.order_by(models.FeeScholarship.created_at.desc())).scalars())
