"""Receipt and invoice read-models built from ledger and payment state."""

import logging
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from feeledger import audit, ledger, models, schemas
from feeledger.auth import Principal
from feeledger.errors import NotFoundError, PermissionDeniedError
from feeledger.validation import format_sequence, tax_for, to_money

logger = logging.getLogger("fee-ledger")


def build_receipt(db: Session, principal: Principal, receipt_number: str) -> schemas.Receipt:
    payment = db.execute(
        select(models.Payment).where(
            models.Payment.school_id == principal.school_id,
            models.Payment.receipt_number == receipt_number,
        )
    ).scalar_one_or_none()
    if payment is None:
        raise NotFoundError("Receipt not found")
    if principal.role == "STUDENT" and payment.student_id != principal.student_id:
        raise PermissionDeniedError("Receipt belongs to another student")

    fee = payment.student_fee
    student = fee.student
    structure = fee.fee_structure
    settings = ledger.get_settings(db, principal.school_id)

    paid_to_date = sum(
        (to_money(p.amount) for p in fee.payments if p.status == "SUCCESS" and p.paid_at <= payment.paid_at),
        Decimal("0.00"),
    )
    return schemas.Receipt(
        receipt_number=payment.receipt_number,
        receipt_date=payment.paid_at,
        institution_name=settings.institution_name,
        institution_address=settings.institution_address,
        institution_phone=settings.institution_phone,
        institution_email=settings.institution_email,
        student_name=student.full_name,
        admission_number=student.admission_number,
        class_name=student.academic_unit.name if student.academic_unit else None,
        academic_year_id=fee.academic_year_id,
        fee_structure=structure.name,
        components=[
            schemas.ReceiptLine(name=c.name, fee_type=c.fee_type, amount=c.amount) for c in structure.components
        ],
        total_amount=fee.total_amount,
        discount_amount=fee.discount_amount,
        scholarship_amount=fee.scholarship_amount,
        tax_amount=fee.tax_amount,
        final_amount=fee.final_amount,
        amount_paid=payment.amount,
        paid_to_date=paid_to_date,
        pending_amount=to_money(fee.final_amount) - paid_to_date,
        payment_method=payment.payment_method,
        transaction_id=payment.transaction_id,
        reference_number=payment.reference_number,
        collected_by=payment.recorded_by_name or payment.recorded_by,
        currency=settings.currency,
    )


def generate_invoice(db: Session, principal: Principal, payload: schemas.InvoiceCreate) -> models.Invoice:
    fee = ledger.get_student_fee(db, principal.school_id, payload.student_fee_id)
    settings = ledger.get_settings(db, principal.school_id)

    tax_percentage = None
    if payload.line_items:
        line_items = [
            {"description": item.description, "amount": str(to_money(item.amount)), "quantity": item.quantity}
            for item in payload.line_items
        ]
        subtotal = sum((to_money(i["amount"]) * i["quantity"] for i in line_items), Decimal("0.00"))
        tax_amount = Decimal("0.00")
        if settings.enable_tax:
            tax_percentage = settings.tax_percentage
            tax_amount = tax_for(subtotal, fee.discount_amount, fee.scholarship_amount, settings.tax_percentage)
        total = subtotal - to_money(fee.discount_amount) - to_money(fee.scholarship_amount) + tax_amount
    else:
        # copy of the ledger entry; tax was fixed when the fee was assigned
        line_items = [
            {"description": c.name, "amount": str(to_money(c.amount)), "quantity": 1}
            for c in fee.fee_structure.components
        ]
        subtotal = to_money(fee.total_amount)
        tax_amount = to_money(fee.tax_amount)
        if tax_amount > 0 and subtotal > 0:
            tax_percentage = to_money(tax_amount * 100 / subtotal)
        total = to_money(fee.final_amount)
    paid = to_money(fee.paid_amount)
    if paid >= total:
        status = "PAID"
    elif paid > 0:
        status = "PARTIALLY_PAID"
    else:
        status = "GENERATED"

    sequence = ledger.next_sequence(db, principal.school_id, ledger.INVOICE_COUNTER)
    invoice = models.Invoice(
        school_id=principal.school_id,
        student_fee_id=fee.id,
        student_id=fee.student_id,
        invoice_number=format_sequence(settings.invoice_prefix, sequence),
        due_date=payload.due_date or fee.due_date,
        subtotal=subtotal,
        discount_amount=fee.discount_amount,
        scholarship_amount=fee.scholarship_amount,
        tax_percentage=tax_percentage,
        tax_amount=tax_amount,
        total_amount=total,
        paid_amount=paid,
        balance_amount=total - paid,
        line_items=line_items,
        notes=payload.notes,
        status=status,
        generated_by=principal.user_id,
    )
    db.add(invoice)
    db.flush()
    audit.record(
        db, principal, principal.school_id, "INVOICE", invoice.id, "CREATED",
        f"Invoice {invoice.invoice_number} generated for {total}",
        new_data={"invoice_number": invoice.invoice_number, "total_amount": str(total)},
    )
    logger.info("Generated invoice %s for student_fee=%s total=%s", invoice.invoice_number, fee.id, total)
    return invoice


def list_invoices(db: Session, school_id: str, student_id: Optional[str] = None,
                  status: Optional[str] = None) -> List[models.Invoice]:
    stmt = select(models.Invoice).where(models.Invoice.school_id == school_id)
    if student_id:
        stmt = stmt.where(models.Invoice.student_id == student_id)
    if status:
        stmt = stmt.where(models.Invoice.status == status.upper())
    return list(db.execute(stmt.order_by(models.Invoice.invoice_date.desc())).scalars())
