"""Read-only finance reports. Nothing here writes or takes row locks."""

from collections import defaultdict
from datetime import date, datetime, time
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from feeledger import ledger, models, schemas
from feeledger.validation import to_money

UNASSIGNED = "Unassigned"


def collection_summary(
    db: Session,
    school_id: str,
    from_date: Optional[date] = None,
    to_date: Optional[date] = None,
    academic_year_id: Optional[str] = None,
) -> schemas.CollectionSummary:
    stmt = (
        select(models.Payment, models.AcademicUnit.name)
        .join(models.StudentFee, models.Payment.student_fee_id == models.StudentFee.id)
        .join(models.Student, models.Payment.student_id == models.Student.id)
        .outerjoin(models.AcademicUnit, models.Student.academic_unit_id == models.AcademicUnit.id)
        .where(models.Payment.school_id == school_id, models.Payment.status == "SUCCESS")
    )
    if from_date:
        stmt = stmt.where(models.Payment.paid_at >= datetime.combine(from_date, time.min))
    if to_date:
        stmt = stmt.where(models.Payment.paid_at <= datetime.combine(to_date, time.max))
    if academic_year_id:
        stmt = stmt.where(models.StudentFee.academic_year_id == academic_year_id)
    rows = db.execute(stmt.order_by(models.Payment.paid_at)).all()

    total = Decimal("0.00")
    late_fees = Decimal("0.00")
    by_method = defaultdict(lambda: Decimal("0.00"))
    by_date = defaultdict(lambda: Decimal("0.00"))
    by_class = defaultdict(lambda: Decimal("0.00"))
    for payment, class_name in rows:
        amount = to_money(payment.amount)
        total += amount
        late_fees += to_money(payment.late_fee_amount)
        by_method[payment.payment_method] += amount
        by_date[payment.paid_at.date().isoformat()] += amount
        by_class[class_name or UNASSIGNED] += amount

    count = len(rows)
    return schemas.CollectionSummary(
        summary=schemas.CollectionTotals(
            total_collection=total,
            total_late_fee=late_fees,
            total_payments=count,
            average_payment=to_money(total / count) if count else Decimal("0.00"),
        ),
        by_payment_method=dict(by_method),
        by_date=dict(by_date),
        by_class=dict(by_class),
        from_date=from_date or (rows[0][0].paid_at.date() if rows else None),
        to_date=to_date or (rows[-1][0].paid_at.date() if rows else None),
    )


def dues_summary(
    db: Session,
    school_id: str,
    today: date,
    academic_year_id: Optional[str] = None,
    academic_unit_id: Optional[str] = None,
    overdue_only: bool = False,
) -> schemas.DuesSummary:
    stmt = (
        select(models.StudentFee, models.Student, models.AcademicUnit.name, models.FeeStructure.name)
        .join(models.Student, models.StudentFee.student_id == models.Student.id)
        .join(models.FeeStructure, models.StudentFee.fee_structure_id == models.FeeStructure.id)
        .outerjoin(models.AcademicUnit, models.Student.academic_unit_id == models.AcademicUnit.id)
        .where(
            models.StudentFee.school_id == school_id,
            models.StudentFee.status.in_(ledger.OPEN_STATUSES),
            models.StudentFee.balance_amount > 0,
        )
    )
    if academic_year_id:
        stmt = stmt.where(models.StudentFee.academic_year_id == academic_year_id)
    if academic_unit_id:
        stmt = stmt.where(models.Student.academic_unit_id == academic_unit_id)
    if overdue_only:
        stmt = stmt.where(models.StudentFee.due_date.is_not(None), models.StudentFee.due_date < today)
    rows = db.execute(stmt.order_by(models.StudentFee.due_date)).all()

    details = []
    by_class = {}
    total = Decimal("0.00")
    overdue_count = 0
    for fee, student, class_name, structure_name in rows:
        class_name = class_name or UNASSIGNED
        balance = to_money(fee.balance_amount)
        is_overdue = fee.due_date is not None and fee.due_date < today
        total += balance
        overdue_count += int(is_overdue)
        bucket = by_class.setdefault(class_name, schemas.DuesByClass(total_dues=Decimal("0.00"), student_count=0))
        bucket.total_dues += balance
        bucket.student_count += 1
        details.append(schemas.DueStudent(
            student_fee_id=fee.id,
            admission_number=student.admission_number,
            student_name=student.full_name,
            class_name=class_name,
            fee_structure=structure_name,
            final_amount=fee.final_amount,
            paid_amount=fee.paid_amount,
            balance_amount=balance,
            due_date=fee.due_date,
            is_overdue=is_overdue,
            status=fee.status,
        ))

    count = len(details)
    return schemas.DuesSummary(
        summary=schemas.DuesTotals(
            total_dues=total,
            total_students=count,
            overdue_count=overdue_count,
            average_due=to_money(total / count) if count else Decimal("0.00"),
        ),
        by_class=by_class,
        details=details,
    )
