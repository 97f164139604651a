"""
Student fee ledger: creation of StudentFee rows, the derived-total arithmetic and the
per-school sequence counters.

Every function here expects to run inside feeledger.database.transaction(); none of
them commit.
"""

import logging
from datetime import date
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from feeledger import audit, models
from feeledger.auth import Principal
from feeledger.errors import ConcurrencyError, NotFoundError, StateConflictError, ValidationError
from feeledger.validation import tax_for, to_money

logger = logging.getLogger("fee-ledger")

PENDING = "PENDING"
PARTIAL = "PARTIAL"
PAID = "PAID"
OVERDUE = "OVERDUE"
OPEN_STATUSES = (PENDING, PARTIAL, OVERDUE)

RECEIPT_COUNTER = "current_receipt_number"
INVOICE_COUNTER = "current_invoice_number"


def get_settings(db: Session, school_id: str) -> models.FinanceSettings:
    settings = db.execute(
        select(models.FinanceSettings).where(models.FinanceSettings.school_id == school_id)
    ).scalar_one_or_none()
    if settings is not None:
        return settings
    settings = models.FinanceSettings(school_id=school_id)
    db.add(settings)
    try:
        db.flush()
    except IntegrityError as exc:
        # another request created the row first
        raise ConcurrencyError("Finance settings were created concurrently, please retry") from exc
    logger.info("Created finance settings for school=%s", school_id)
    return settings


def next_sequence(db: Session, school_id: str, counter: str = RECEIPT_COUNTER) -> int:
    """Atomically increment a school's counter and return the value it held before."""
    settings = get_settings(db, school_id)
    column = getattr(models.FinanceSettings, counter)
    stmt = (
        update(models.FinanceSettings)
        .where(models.FinanceSettings.school_id == school_id)
        .values({column: column + 1})
        .returning(column)
        .execution_options(synchronize_session=False)
    )
    issued = db.execute(stmt).scalar_one() - 1
    db.expire(settings, [counter])
    return issued


def derive_totals(fee: models.StudentFee):
    """Re-establish final = total - discount - scholarship + tax and balance = final - paid."""
    final_amount = (
        to_money(fee.total_amount)
        - to_money(fee.discount_amount)
        - to_money(fee.scholarship_amount)
        + to_money(fee.tax_amount)
    )
    if final_amount < 0:
        raise ValidationError("Adjustments cannot bring the final amount below zero")
    fee.final_amount = final_amount
    fee.balance_amount = final_amount - to_money(fee.paid_amount)
    fee.status = _derive_status(fee)
    return fee


def _derive_status(fee: models.StudentFee) -> str:
    if fee.balance_amount <= 0:
        return PAID
    if to_money(fee.paid_amount) > 0:
        return PARTIAL
    if fee.status in (PAID, PARTIAL):
        return PENDING
    return fee.status or PENDING


def recompute_after_adjustment(fee: models.StudentFee, delta_discount=0, delta_scholarship=0) -> models.StudentFee:
    fee.discount_amount = to_money(fee.discount_amount) + to_money(delta_discount)
    fee.scholarship_amount = to_money(fee.scholarship_amount) + to_money(delta_scholarship)
    return derive_totals(fee)


def recompute_after_payment(fee: models.StudentFee, amount) -> models.StudentFee:
    fee.paid_amount = to_money(fee.paid_amount) + to_money(amount)
    return derive_totals(fee)


def recompute_after_refund(fee: models.StudentFee, amount) -> models.StudentFee:
    fee.paid_amount = to_money(fee.paid_amount) - to_money(amount)
    return derive_totals(fee)


def get_student_fee(db: Session, school_id: str, student_fee_id: str, for_update: bool = False) -> models.StudentFee:
    stmt = select(models.StudentFee).where(
        models.StudentFee.id == student_fee_id,
        models.StudentFee.school_id == school_id,
    )
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    fee = db.execute(stmt).scalar_one_or_none()
    if fee is None:
        raise NotFoundError("Student fee record not found")
    return fee


def list_student_fees(
    db: Session,
    school_id: str,
    student_id: Optional[str] = None,
    status: Optional[str] = None,
    academic_year_id: Optional[str] = None,
) -> List[models.StudentFee]:
    stmt = select(models.StudentFee).where(models.StudentFee.school_id == school_id)
    if student_id:
        stmt = stmt.where(models.StudentFee.student_id == student_id)
    if status:
        stmt = stmt.where(models.StudentFee.status == status.upper())
    if academic_year_id:
        stmt = stmt.where(models.StudentFee.academic_year_id == academic_year_id)
    return list(db.execute(stmt.order_by(models.StudentFee.created_at.desc())).scalars())


def create_student_fee(
    db: Session,
    school_id: str,
    student_id: str,
    fee_structure_id: str,
    due_date: Optional[date] = None,
    principal: Optional[Principal] = None,
) -> models.StudentFee:
    student = db.execute(
        select(models.Student).where(models.Student.id == student_id, models.Student.school_id == school_id)
    ).scalar_one_or_none()
    if student is None:
        raise NotFoundError("Student not found")

    structure = db.execute(
        select(models.FeeStructure).where(
            models.FeeStructure.id == fee_structure_id,
            models.FeeStructure.school_id == school_id,
        )
    ).scalar_one_or_none()
    if structure is None:
        raise NotFoundError("Fee structure not found")
    if not structure.is_active:
        raise StateConflictError("Fee structure is not active")

    existing = db.execute(
        select(models.StudentFee.id).where(
            models.StudentFee.student_id == student_id,
            models.StudentFee.fee_structure_id == fee_structure_id,
        )
    ).scalar_one_or_none()
    if existing is not None:
        raise StateConflictError("Fee structure already assigned to this student")

    settings = get_settings(db, school_id)
    total_amount = to_money(structure.total_amount)
    tax_amount = tax_for(total_amount, 0, 0, settings.tax_percentage) if settings.enable_tax else Decimal("0.00")
    if due_date is None:
        due_dates = [c.due_date for c in structure.components if c.due_date is not None]
        due_date = min(due_dates) if due_dates else None

    fee = models.StudentFee(
        school_id=school_id,
        student_id=student_id,
        fee_structure_id=fee_structure_id,
        academic_year_id=structure.academic_year_id,
        total_amount=total_amount,
        discount_amount=Decimal("0.00"),
        scholarship_amount=Decimal("0.00"),
        tax_amount=tax_amount,
        paid_amount=Decimal("0.00"),
        status=PENDING,
        due_date=due_date,
        assigned_by=principal.user_id if principal else None,
    )
    derive_totals(fee)
    db.add(fee)
    structure.is_locked = True
    try:
        db.flush()
    except IntegrityError as exc:
        raise StateConflictError("Fee structure already assigned to this student") from exc

    audit.record(
        db, principal, school_id, "STUDENT_FEE", fee.id, "CREATED",
        f"Fee structure {structure.name} assigned to {student.full_name} ({student.admission_number})",
        new_data={
            "student_id": student_id,
            "fee_structure_id": fee_structure_id,
            "total_amount": str(fee.total_amount),
            "final_amount": str(fee.final_amount),
        },
    )
    logger.info("Assigned fee structure=%s to student=%s student_fee=%s total=%s",
                fee_structure_id, student_id, fee.id, fee.total_amount)
    return fee


def mark_overdue(db: Session, school_id: str, today: date, principal: Optional[Principal] = None) -> int:
    fees = db.execute(
        select(models.StudentFee)
        .where(
            models.StudentFee.school_id == school_id,
            models.StudentFee.status.in_((PENDING, PARTIAL)),
            models.StudentFee.due_date < today,
            models.StudentFee.balance_amount > 0,
        )
        .with_for_update()
    ).scalars().all()
    for fee in fees:
        fee.status = OVERDUE
        audit.record(
            db, principal, school_id, "STUDENT_FEE", fee.id, "MARKED_OVERDUE",
            f"Fee overdue since {fee.due_date.isoformat()} with balance {fee.balance_amount}",
        )
    if fees:
        logger.info("Marked %s student fees overdue for school=%s", len(fees), school_id)
    return len(fees)
