import logging
from datetime import date, datetime, time, timezone
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from feeledger import audit, ledger, models, schemas
from feeledger.auth import Principal
from feeledger.errors import NotFoundError
from feeledger.validation import format_sequence, to_money, validate_payment

logger = logging.getLogger("fee-ledger")

SUCCESS = "SUCCESS"


def collect(db: Session, principal: Principal, payload: schemas.PaymentCollect) -> models.Payment:
    """
    Record a payment against a student fee.

    The receipt counter increment, the payment row, the ledger update and the
    audit entry are flushed together; the caller's transaction commits or
    discards all four.
    """
    fee = ledger.get_student_fee(db, principal.school_id, payload.student_fee_id, for_update=True)
    validate_payment(
        payload.amount,
        fee.balance_amount,
        payload.payment_method.value if payload.payment_method else None,
        reference_number=payload.reference_number,
        transaction_id=payload.transaction_id,
        bank_name=payload.bank_name,
    )

    settings = ledger.get_settings(db, principal.school_id)
    sequence = ledger.next_sequence(db, principal.school_id, ledger.RECEIPT_COUNTER)
    receipt_number = format_sequence(settings.receipt_prefix, sequence)

    payment = models.Payment(
        school_id=principal.school_id,
        student_fee_id=fee.id,
        student_id=fee.student_id,
        amount=to_money(payload.amount),
        late_fee_amount=to_money(payload.late_fee_amount),
        payment_method=payload.payment_method.value,
        transaction_id=payload.transaction_id,
        transaction_date=payload.transaction_date,
        reference_number=payload.reference_number,
        bank_name=payload.bank_name,
        branch_name=payload.branch_name,
        receipt_number=receipt_number,
        status=SUCCESS,
        remarks=payload.remarks,
        recorded_by=principal.user_id,
        recorded_by_name=principal.display_name,
        paid_at=datetime.now(timezone.utc),
    )
    db.add(payment)
    ledger.recompute_after_payment(fee, payment.amount)
    db.flush()

    audit.record(
        db, principal, principal.school_id, "PAYMENT", payment.id, "CREATED",
        f"Payment of {payment.amount} collected via {payment.payment_method}, receipt {receipt_number}",
        new_data={
            "amount": str(payment.amount),
            "payment_method": payment.payment_method,
            "receipt_number": receipt_number,
            "student_id": fee.student_id,
            "balance_amount": str(fee.balance_amount),
        },
    )
    logger.info("Collected payment id=%s receipt=%s student_fee=%s amount=%s status=%s",
                payment.id, receipt_number, fee.id, payment.amount, fee.status)
    return payment


def get_payment(db: Session, school_id: str, payment_id: str, for_update: bool = False) -> models.Payment:
    stmt = select(models.Payment).where(models.Payment.id == payment_id, models.Payment.school_id == school_id)
    if for_update:
        stmt = stmt.with_for_update()
    payment = db.execute(stmt).scalar_one_or_none()
    if payment is None:
        raise NotFoundError("Payment not found")
    return payment


def list_payments(
    db: Session,
    school_id: str,
    student_id: Optional[str] = None,
    student_fee_id: Optional[str] = None,
    from_date: Optional[date] = None,
    to_date: Optional[date] = None,
) -> List[models.Payment]:
    stmt = select(models.Payment).where(models.Payment.school_id == school_id)
    if student_id:
        stmt = stmt.where(models.Payment.student_id == student_id)
    if student_fee_id:
        stmt = stmt.where(models.Payment.student_fee_id == student_fee_id)
    if from_date:
        stmt = stmt.where(models.Payment.paid_at >= datetime.combine(from_date, time.min))
    if to_date:
        stmt = stmt.where(models.Payment.paid_at <= datetime.combine(to_date, time.max))
    return list(db.execute(stmt.order_by(models.Payment.paid_at.desc())).scalars())
