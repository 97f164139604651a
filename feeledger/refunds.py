"""
Refund workflow against a single payment.

By default a refund is settled against the payment only and the student's ledger
keeps counting the original payment as paid. Schools that set
refund_reopens_ledger get the refunded amount taken back out of paid_amount when
the refund is approved, which re-opens the balance.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from feeledger import audit, ledger, models, schemas
from feeledger.auth import Principal
from feeledger.errors import NotFoundError, StateConflictError, ValidationError
from feeledger.payments import get_payment
from feeledger.validation import to_money

logger = logging.getLogger("fee-ledger")

INITIATED = "INITIATED"
PENDING_APPROVAL = "PENDING_APPROVAL"
APPROVED = "APPROVED"
PROCESSED = "PROCESSED"
COMPLETED = "COMPLETED"
REJECTED = "REJECTED"

SETTLED_STATUSES = (APPROVED, PROCESSED, COMPLETED)


def refunded_total(db: Session, payment_id: str, exclude_id: Optional[str] = None) -> Decimal:
    stmt = select(func.coalesce(func.sum(models.Refund.refund_amount), 0)).where(
        models.Refund.payment_id == payment_id,
        models.Refund.status.in_(SETTLED_STATUSES),
    )
    if exclude_id:
        stmt = stmt.where(models.Refund.id != exclude_id)
    return to_money(db.execute(stmt).scalar_one())


def _check_refundable(db: Session, payment: models.Payment, amount, exclude_id: Optional[str] = None):
    amount = to_money(amount)
    if amount <= 0:
        raise ValidationError("Valid refund amount is required", field="refund_amount")
    if amount > to_money(payment.amount):
        raise ValidationError("Refund amount cannot exceed payment amount", field="refund_amount")
    remaining = to_money(payment.amount) - refunded_total(db, payment.id, exclude_id)
    if amount > remaining:
        raise ValidationError(
            f"Total refund amount exceeds payment amount; {remaining} remains refundable",
            field="refund_amount",
        )


def initiate(db: Session, principal: Principal, payload: schemas.RefundCreate) -> models.Refund:
    payment = get_payment(db, principal.school_id, payload.payment_id, for_update=True)
    _check_refundable(db, payment, payload.refund_amount)

    refund = models.Refund(
        school_id=principal.school_id,
        payment_id=payment.id,
        student_id=payment.student_id,
        refund_amount=to_money(payload.refund_amount),
        refund_reason=payload.refund_reason.strip(),
        refund_type=payload.refund_type.value,
        refund_method=payload.refund_method,
        account_holder_name=payload.account_holder_name,
        account_number=payload.account_number,
        bank_name=payload.bank_name,
        remarks=payload.remarks,
        status=INITIATED,
        initiated_by=principal.user_id,
    )
    db.add(refund)
    db.flush()
    audit.record(
        db, principal, principal.school_id, "REFUND", refund.id, "CREATED",
        f"Refund of {refund.refund_amount} initiated for payment {payment.receipt_number}",
        new_data=audit.snapshot(refund),
    )
    logger.info("Refund id=%s initiated for payment=%s amount=%s", refund.id, payment.id, refund.refund_amount)
    return refund


def _load(db: Session, school_id: str, refund_id: str) -> models.Refund:
    refund = db.execute(
        select(models.Refund)
        .where(models.Refund.id == refund_id, models.Refund.school_id == school_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if refund is None:
        raise NotFoundError("Refund not found")
    return refund


def _transition(db: Session, principal: Principal, refund: models.Refund, action: str, previous: dict, remarks=None):
    if remarks:
        refund.remarks = remarks
    db.flush()
    audit.record(
        db, principal, principal.school_id, "REFUND", refund.id, action,
        f"Refund of {refund.refund_amount} {action.lower()}",
        previous_data=previous,
        new_data=audit.snapshot(refund),
    )
    logger.info("Refund id=%s %s", refund.id, action.lower())
    return refund


def approve(db: Session, principal: Principal, refund_id: str, remarks: Optional[str] = None) -> models.Refund:
    refund = _load(db, principal.school_id, refund_id)
    if refund.status not in (INITIATED, PENDING_APPROVAL):
        raise StateConflictError("Only initiated or pending refunds can be approved")
    previous = audit.snapshot(refund)

    payment = get_payment(db, principal.school_id, refund.payment_id, for_update=True)
    # another refund on the same payment may have been approved since this one was initiated
    _check_refundable(db, payment, refund.refund_amount, exclude_id=refund.id)

    refund.status = APPROVED
    refund.approved_by = principal.user_id
    refund.approved_at = datetime.now(timezone.utc)

    settings = ledger.get_settings(db, principal.school_id)
    if settings.refund_reopens_ledger:
        fee = ledger.get_student_fee(db, principal.school_id, payment.student_fee_id, for_update=True)
        ledger.recompute_after_refund(fee, refund.refund_amount)
        logger.info("Refund id=%s re-opened student_fee=%s balance=%s", refund.id, fee.id, fee.balance_amount)
    return _transition(db, principal, refund, "APPROVED", previous, remarks)


def reject(db: Session, principal: Principal, refund_id: str, remarks: Optional[str] = None) -> models.Refund:
    refund = _load(db, principal.school_id, refund_id)
    if refund.status not in (INITIATED, PENDING_APPROVAL):
        raise StateConflictError("Only initiated or pending refunds can be rejected")
    previous = audit.snapshot(refund)
    refund.status = REJECTED
    refund.rejected_at = datetime.now(timezone.utc)
    return _transition(db, principal, refund, "REJECTED", previous, remarks)


def mark_processed(db: Session, principal: Principal, refund_id: str, remarks: Optional[str] = None) -> models.Refund:
    refund = _load(db, principal.school_id, refund_id)
    if refund.status != APPROVED:
        raise StateConflictError("Only approved refunds can be processed")
    previous = audit.snapshot(refund)
    refund.status = PROCESSED
    refund.processed_at = datetime.now(timezone.utc)
    return _transition(db, principal, refund, "PROCESSED", previous, remarks)


def mark_completed(db: Session, principal: Principal, refund_id: str, remarks: Optional[str] = None) -> models.Refund:
    refund = _load(db, principal.school_id, refund_id)
    if refund.status != PROCESSED:
        raise StateConflictError("Only processed refunds can be completed")
    previous = audit.snapshot(refund)
    refund.status = COMPLETED
    refund.completed_at = datetime.now(timezone.utc)
    return _transition(db, principal, refund, "COMPLETED", previous, remarks)


def list_refunds(db: Session, school_id: str, student_id: Optional[str] = None,
                 status: Optional[str] = None) -> List[models.Refund]:
    stmt = select(models.Refund).where(models.Refund.school_id == school_id)
    if student_id:
        stmt = stmt.where(models.Refund.student_id == student_id)
    if status:
        stmt = stmt.where(models.Refund.status == status.upper())
    return list(db.execute(stmt.order_by(models.Refund.created_at.desc())).scalars())
