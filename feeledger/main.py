# feeledger/main.py
from contextlib import asynccontextmanager
from datetime import date
from typing import Callable, List, Optional
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from feeledger import (
    adjustments,
    documents,
    events,
    ledger,
    payments,
    refunds,
    reports,
    schemas,
    structures,
)
from feeledger.auth import STAFF_ROLES, Principal, get_principal, require_admin, require_staff
from feeledger.config import Settings, load_settings
from feeledger.database import Database, run_with_retry, transaction
from feeledger.errors import PermissionDeniedError, register_exception_handlers

# logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("fee-ledger")

router = APIRouter(prefix="/finance")
service_router = APIRouter()


def get_db(request: Request):
    db = request.app.state.database.session()
    try:
        yield db
    finally:
        db.close()


def atomic(request: Request, db: Session, work: Callable, *args):
    """Run one service call as a single transaction, retried on concurrency conflicts."""
    settings = request.app.state.settings

    def unit():
        with transaction(db, settings.lock_timeout_ms):
            return work(db, *args)

    return run_with_retry(db, unit, settings.transaction_retries)


def publish(request: Request, background_tasks: BackgroundTasks, routing_key: str, event_type: str, payload: dict):
    background_tasks.add_task(
        request.app.state.publisher,
        request.app.state.settings.rabbitmq_url,
        routing_key,
        {"type": event_type, "payload": payload},
    )


def student_scope(principal: Principal, student_id: Optional[str]) -> Optional[str]:
    """Students only ever see their own records; other non-staff roles see nothing."""
    if principal.role == "STUDENT":
        if not principal.student_id:
            raise PermissionDeniedError("Student account is not linked to a student record")
        return principal.student_id
    if principal.role not in STAFF_ROLES:
        raise PermissionDeniedError("Insufficient permissions")
    return student_id


def ok(data, message: Optional[str] = None) -> dict:
    return {"success": True, "data": data, "message": message}


# Root and health endpoints
@service_router.get("/")
def root():
    return {"service": "Fee Ledger Service", "status": "running", "endpoints": ["/finance", "/docs", "/openapi.json"]}


@service_router.get("/health")
def health(request: Request):
    try:
        request.app.state.database.ping()
    except Exception as e:
        logger.exception("Health check failed: %s", e)
        raise HTTPException(status_code=503, detail="Database unreachable")
    return {"status": "ok"}


# Fee structures
@router.post("/fee-structures", response_model=schemas.Envelope[schemas.FeeStructureOut], status_code=201)
def create_fee_structure(payload: schemas.FeeStructureCreate, request: Request,
                         principal: Principal = Depends(require_admin), db: Session = Depends(get_db)):
    structure = atomic(request, db, lambda s: structures.create_fee_structure(s, principal, payload))
    return ok(schemas.FeeStructureOut.model_validate(structure), "Fee structure created successfully")


@router.get("/fee-structures", response_model=schemas.Envelope[List[schemas.FeeStructureOut]])
def list_fee_structures(academic_year_id: Optional[str] = Query(None), academic_unit_id: Optional[str] = Query(None),
                        is_active: Optional[bool] = Query(None),
                        principal: Principal = Depends(require_staff), db: Session = Depends(get_db)):
    results = structures.list_fee_structures(db, principal.school_id, academic_year_id, academic_unit_id, is_active)
    return ok([schemas.FeeStructureOut.model_validate(s) for s in results])


@router.get("/fee-structures/{structure_id}", response_model=schemas.Envelope[schemas.FeeStructureOut])
def get_fee_structure(structure_id: str, principal: Principal = Depends(require_staff), db: Session = Depends(get_db)):
    structure = structures.get_fee_structure(db, principal.school_id, structure_id)
    return ok(schemas.FeeStructureOut.model_validate(structure))


@router.put("/fee-structures/{structure_id}", response_model=schemas.Envelope[schemas.FeeStructureOut])
def update_fee_structure(structure_id: str, payload: schemas.FeeStructureUpdate, request: Request,
                         principal: Principal = Depends(require_admin), db: Session = Depends(get_db)):
    structure = atomic(request, db, lambda s: structures.update_fee_structure(s, principal, structure_id, payload))
    return ok(schemas.FeeStructureOut.model_validate(structure), "Fee structure updated successfully")


@router.delete("/fee-structures/{structure_id}", response_model=schemas.Envelope[schemas.Deleted])
def delete_fee_structure(structure_id: str, request: Request,
                         principal: Principal = Depends(require_admin), db: Session = Depends(get_db)):
    atomic(request, db, lambda s: structures.delete_fee_structure(s, principal, structure_id))
    return ok(schemas.Deleted(id=structure_id), "Fee structure deleted successfully")


# Student fee ledger
@router.post("/student-fees", response_model=schemas.Envelope[schemas.StudentFeeOut], status_code=201)
def assign_student_fee(payload: schemas.StudentFeeAssign, request: Request,
                       principal: Principal = Depends(require_staff), db: Session = Depends(get_db)):
    fee = atomic(request, db, lambda s: ledger.create_student_fee(
        s, principal.school_id, payload.student_id, payload.fee_structure_id, payload.due_date, principal))
    return ok(schemas.StudentFeeOut.model_validate(fee), "Fee structure assigned")


@router.post("/student-fees/mark-overdue", response_model=schemas.Envelope[schemas.OverdueResult])
def mark_overdue(request: Request, as_of: Optional[date] = Query(None),
                 principal: Principal = Depends(require_admin), db: Session = Depends(get_db)):
    count = atomic(request, db, lambda s: ledger.mark_overdue(s, principal.school_id, as_of or date.today(), principal))
    return ok(schemas.OverdueResult(updated=count))


@router.get("/student-fees", response_model=schemas.Envelope[List[schemas.StudentFeeOut]])
def list_student_fees(student_id: Optional[str] = Query(None), status: Optional[str] = Query(None),
                      academic_year_id: Optional[str] = Query(None),
                      principal: Principal = Depends(get_principal), db: Session = Depends(get_db)):
    student_id = student_scope(principal, student_id)
    results = ledger.list_student_fees(db, principal.school_id, student_id, status, academic_year_id)
    return ok([schemas.StudentFeeOut.model_validate(f) for f in results])


@router.get("/student-fees/{student_fee_id}", response_model=schemas.Envelope[schemas.StudentFeeOut])
def get_student_fee(student_fee_id: str, principal: Principal = Depends(get_principal), db: Session = Depends(get_db)):
    fee = ledger.get_student_fee(db, principal.school_id, student_fee_id)
    scoped = student_scope(principal, fee.student_id)
    if scoped != fee.student_id:
        raise PermissionDeniedError("Fee record belongs to another student")
    return ok(schemas.StudentFeeOut.model_validate(fee))


# Discounts
@router.post("/discounts", response_model=schemas.Envelope[schemas.DiscountOut], status_code=201)
def create_discount(payload: schemas.DiscountCreate, request: Request, background_tasks: BackgroundTasks,
                    principal: Principal = Depends(require_staff), db: Session = Depends(get_db)):
    discount = atomic(request, db, lambda s: adjustments.request_discount(s, principal, payload))
    if discount.status == adjustments.APPROVED:
        publish(request, background_tasks, "finance.events.discount.approved", "DiscountApproved",
                {"discount_id": discount.id, "student_fee_id": discount.student_fee_id, "school_id": principal.school_id})
    return ok(schemas.DiscountOut.model_validate(discount), f"Discount {discount.status.lower()}")


@router.get("/discounts", response_model=schemas.Envelope[List[schemas.DiscountOut]])
def list_discounts(student_id: Optional[str] = Query(None), status: Optional[str] = Query(None),
                   principal: Principal = Depends(require_staff), db: Session = Depends(get_db)):
    results = adjustments.list_discounts(db, principal.school_id, student_id, status)
    return ok([schemas.DiscountOut.model_validate(d) for d in results])


@router.post("/discounts/{discount_id}/approve", response_model=schemas.Envelope[schemas.DiscountOut])
def approve_discount(discount_id: str, request: Request, background_tasks: BackgroundTasks,
                     principal: Principal = Depends(require_admin), db: Session = Depends(get_db)):
    discount = atomic(request, db, lambda s: adjustments.approve_discount(s, principal, discount_id))
    publish(request, background_tasks, "finance.events.discount.approved", "DiscountApproved",
            {"discount_id": discount.id, "student_fee_id": discount.student_fee_id, "school_id": principal.school_id})
    return ok(schemas.DiscountOut.model_validate(discount), "Discount approved")


@router.post("/discounts/{discount_id}/reject", response_model=schemas.Envelope[schemas.DiscountOut])
def reject_discount(discount_id: str, request: Request,
                    principal: Principal = Depends(require_admin), db: Session = Depends(get_db)):
    discount = atomic(request, db, lambda s: adjustments.reject_discount(s, principal, discount_id))
    return ok(schemas.DiscountOut.model_validate(discount), "Discount rejected")


# Scholarships
@router.post("/scholarships", response_model=schemas.Envelope[schemas.ScholarshipOut], status_code=201)
def create_scholarship(payload: schemas.ScholarshipCreate, request: Request,
                       principal: Principal = Depends(require_staff), db: Session = Depends(get_db)):
    scholarship = atomic(request, db, lambda s: adjustments.request_scholarship(s, principal, payload))
    return ok(schemas.ScholarshipOut.model_validate(scholarship), "Scholarship pending approval")


@router.get("/scholarships", response_model=schemas.Envelope[List[schemas.ScholarshipOut]])
def list_scholarships(student_id: Optional[str] = Query(None), status: Optional[str] = Query(None),
                      principal: Principal = Depends(require_staff), db: Session = Depends(get_db)):
    results = adjustments.list_scholarships(db, principal.school_id, student_id, status)
    return ok([schemas.ScholarshipOut.model_validate(s) for s in results])


@router.post("/scholarships/{scholarship_id}/approve", response_model=schemas.Envelope[schemas.ScholarshipOut])
def approve_scholarship(scholarship_id: str, request: Request, background_tasks: BackgroundTasks,
                        principal: Principal = Depends(require_admin), db: Session = Depends(get_db)):
    scholarship = atomic(request, db, lambda s: adjustments.approve_scholarship(s, principal, scholarship_id))
    publish(request, background_tasks, "finance.events.scholarship.approved", "ScholarshipApproved",
            {"scholarship_id": scholarship.id, "student_fee_id": scholarship.student_fee_id,
             "school_id": principal.school_id})
    return ok(schemas.ScholarshipOut.model_validate(scholarship), "Scholarship approved")


@router.post("/scholarships/{scholarship_id}/reject", response_model=schemas.Envelope[schemas.ScholarshipOut])
def reject_scholarship(scholarship_id: str, request: Request,
                       principal: Principal = Depends(require_admin), db: Session = Depends(get_db)):
    scholarship = atomic(request, db, lambda s: adjustments.reject_scholarship(s, principal, scholarship_id))
    return ok(schemas.ScholarshipOut.model_validate(scholarship), "Scholarship rejected")


# Payments
@router.post("/payments/collect", response_model=schemas.Envelope[schemas.PaymentWithLedgerOut], status_code=201)
def collect_payment(payload: schemas.PaymentCollect, request: Request, background_tasks: BackgroundTasks,
                    principal: Principal = Depends(require_staff), db: Session = Depends(get_db)):
    payment = atomic(request, db, lambda s: payments.collect(s, principal, payload))
    publish(request, background_tasks, "finance.events.payment.collected", "PaymentCollected", {
        "payment_id": payment.id,
        "school_id": payment.school_id,
        "student_id": payment.student_id,
        "student_fee_id": payment.student_fee_id,
        "receipt_number": payment.receipt_number,
        "amount": str(payment.amount),
    })
    return ok(schemas.PaymentWithLedgerOut.model_validate(payment), "Payment collected")


@router.get("/payments", response_model=schemas.Envelope[List[schemas.PaymentOut]])
def list_payments(student_id: Optional[str] = Query(None), student_fee_id: Optional[str] = Query(None),
                  from_date: Optional[date] = Query(None), to_date: Optional[date] = Query(None),
                  principal: Principal = Depends(get_principal), db: Session = Depends(get_db)):
    student_id = student_scope(principal, student_id)
    results = payments.list_payments(db, principal.school_id, student_id, student_fee_id, from_date, to_date)
    return ok([schemas.PaymentOut.model_validate(p) for p in results])


@router.get("/payments/{payment_id}", response_model=schemas.Envelope[schemas.PaymentWithLedgerOut])
def get_payment(payment_id: str, principal: Principal = Depends(require_staff), db: Session = Depends(get_db)):
    payment = payments.get_payment(db, principal.school_id, payment_id)
    return ok(schemas.PaymentWithLedgerOut.model_validate(payment))


# Refunds
@router.post("/refunds", response_model=schemas.Envelope[schemas.RefundOut], status_code=201)
def initiate_refund(payload: schemas.RefundCreate, request: Request,
                    principal: Principal = Depends(require_staff), db: Session = Depends(get_db)):
    refund = atomic(request, db, lambda s: refunds.initiate(s, principal, payload))
    return ok(schemas.RefundOut.model_validate(refund), "Refund initiated")


@router.get("/refunds", response_model=schemas.Envelope[List[schemas.RefundOut]])
def list_refunds(student_id: Optional[str] = Query(None), status: Optional[str] = Query(None),
                 principal: Principal = Depends(require_staff), db: Session = Depends(get_db)):
    results = refunds.list_refunds(db, principal.school_id, student_id, status)
    return ok([schemas.RefundOut.model_validate(r) for r in results])


@router.post("/refunds/{refund_id}/approve", response_model=schemas.Envelope[schemas.RefundOut])
def approve_refund(refund_id: str, request: Request, background_tasks: BackgroundTasks,
                   action: Optional[schemas.RefundAction] = None,
                   principal: Principal = Depends(require_admin), db: Session = Depends(get_db)):
    remarks = action.remarks if action else None
    refund = atomic(request, db, lambda s: refunds.approve(s, principal, refund_id, remarks))
    publish(request, background_tasks, "finance.events.refund.approved", "RefundApproved", {
        "refund_id": refund.id,
        "payment_id": refund.payment_id,
        "school_id": principal.school_id,
        "amount": str(refund.refund_amount),
    })
    return ok(schemas.RefundOut.model_validate(refund), "Refund approved")


@router.post("/refunds/{refund_id}/reject", response_model=schemas.Envelope[schemas.RefundOut])
def reject_refund(refund_id: str, request: Request, action: Optional[schemas.RefundAction] = None,
                  principal: Principal = Depends(require_admin), db: Session = Depends(get_db)):
    remarks = action.remarks if action else None
    refund = atomic(request, db, lambda s: refunds.reject(s, principal, refund_id, remarks))
    return ok(schemas.RefundOut.model_validate(refund), "Refund rejected")


@router.post("/refunds/{refund_id}/process", response_model=schemas.Envelope[schemas.RefundOut])
def process_refund(refund_id: str, request: Request, action: Optional[schemas.RefundAction] = None,
                   principal: Principal = Depends(require_admin), db: Session = Depends(get_db)):
    remarks = action.remarks if action else None
    refund = atomic(request, db, lambda s: refunds.mark_processed(s, principal, refund_id, remarks))
    return ok(schemas.RefundOut.model_validate(refund), "Refund processed")


@router.post("/refunds/{refund_id}/complete", response_model=schemas.Envelope[schemas.RefundOut])
def complete_refund(refund_id: str, request: Request, action: Optional[schemas.RefundAction] = None,
                    principal: Principal = Depends(require_admin), db: Session = Depends(get_db)):
    remarks = action.remarks if action else None
    refund = atomic(request, db, lambda s: refunds.mark_completed(s, principal, refund_id, remarks))
    return ok(schemas.RefundOut.model_validate(refund), "Refund completed")


# Reports
@router.get("/reports/collection-summary", response_model=schemas.Envelope[schemas.CollectionSummary])
def collection_summary(from_date: Optional[date] = Query(None), to_date: Optional[date] = Query(None),
                       academic_year_id: Optional[str] = Query(None),
                       principal: Principal = Depends(require_staff), db: Session = Depends(get_db)):
    return ok(reports.collection_summary(db, principal.school_id, from_date, to_date, academic_year_id))


@router.get("/reports/dues", response_model=schemas.Envelope[schemas.DuesSummary])
def dues_report(academic_year_id: Optional[str] = Query(None), academic_unit_id: Optional[str] = Query(None),
                overdue_only: bool = Query(False), as_of: Optional[date] = Query(None),
                principal: Principal = Depends(require_staff), db: Session = Depends(get_db)):
    return ok(reports.dues_summary(db, principal.school_id, as_of or date.today(),
                                   academic_year_id, academic_unit_id, overdue_only))


# Receipts and invoices
@router.get("/receipts/{receipt_number}", response_model=schemas.Envelope[schemas.Receipt])
def get_receipt(receipt_number: str, principal: Principal = Depends(get_principal), db: Session = Depends(get_db)):
    student_scope(principal, None)
    return ok(documents.build_receipt(db, principal, receipt_number))


@router.post("/invoices", response_model=schemas.Envelope[schemas.InvoiceOut], status_code=201)
def create_invoice(payload: schemas.InvoiceCreate, request: Request,
                   principal: Principal = Depends(require_admin), db: Session = Depends(get_db)):
    invoice = atomic(request, db, lambda s: documents.generate_invoice(s, principal, payload))
    return ok(schemas.InvoiceOut.model_validate(invoice), "Invoice generated")


@router.get("/invoices", response_model=schemas.Envelope[List[schemas.InvoiceOut]])
def list_invoices(student_id: Optional[str] = Query(None), status: Optional[str] = Query(None),
                  principal: Principal = Depends(get_principal), db: Session = Depends(get_db)):
    student_id = student_scope(principal, student_id)
    results = documents.list_invoices(db, principal.school_id, student_id, status)
    return ok([schemas.InvoiceOut.model_validate(i) for i in results])


# Finance settings
@router.get("/settings", response_model=schemas.Envelope[schemas.FinanceSettingsOut])
def get_finance_settings(request: Request, principal: Principal = Depends(require_staff),
                         db: Session = Depends(get_db)):
    settings = atomic(request, db, lambda s: ledger.get_settings(s, principal.school_id))
    return ok(schemas.FinanceSettingsOut.model_validate(settings))


@router.put("/settings", response_model=schemas.Envelope[schemas.FinanceSettingsOut])
def update_finance_settings(payload: schemas.FinanceSettingsUpdate, request: Request,
                            principal: Principal = Depends(require_admin), db: Session = Depends(get_db)):
    def update(s: Session):
        settings = ledger.get_settings(s, principal.school_id)
        for key, value in payload.model_dump(exclude_unset=True).items():
            setattr(settings, key, value)
        s.flush()
        logger.info("Updated finance settings for school=%s: %s", principal.school_id,
                    sorted(payload.model_dump(exclude_unset=True)))
        return settings

    settings = atomic(request, db, update)
    return ok(schemas.FinanceSettingsOut.model_validate(settings), "Settings updated")


def create_app(settings: Optional[Settings] = None, database: Optional[Database] = None,
               publisher: Optional[Callable] = None) -> FastAPI:
    settings = settings or load_settings()
    database = database or Database(settings.database_url, settings.lock_timeout_ms)

    # Startup: open the database and start the consumer that listens to enrollment events
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Opening database and starting enrollment-event consumer...")
        database.open()
        if settings.enable_enrollment_consumer and settings.rabbitmq_url:
            events.start_consumer(database, settings.rabbitmq_url, settings.enrollment_queue)
        logger.info("Startup complete.")
        yield
        database.close()

    app = FastAPI(title="Fee Ledger Service", lifespan=lifespan)
    app.state.settings = settings
    app.state.database = database
    app.state.publisher = publisher or events.publish_event

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app, debug=settings.debug)
    app.include_router(service_router)
    app.include_router(router)
    return app


app = create_app()
