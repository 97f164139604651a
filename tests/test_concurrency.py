import threading
from decimal import Decimal

import pytest

from conftest import SCHOOL
from feeledger import ledger, models, payments, schemas
from feeledger.auth import Principal
from feeledger.database import run_with_retry, transaction
from feeledger.errors import ConcurrencyError

WORKERS = 6


def _open_fee(database, student_id):
    db = database.session()
    try:
        with transaction(db):
            fee = ledger.create_student_fee(db, SCHOOL, student_id, "fs-1")
        return fee.id
    finally:
        db.close()


def test_concurrent_collects_issue_unique_gap_free_receipts(database, seeded):
    fee_ids = [_open_fee(database, "stu-1"), _open_fee(database, "stu-2")]
    principal = Principal(user_id="staff-1", school_id=SCHOOL, role="STAFF")
    start = threading.Barrier(WORKERS)
    errors = []

    def worker(index):
        db = database.session()
        payload = schemas.PaymentCollect(
            student_fee_id=fee_ids[index % 2], amount=Decimal("100"), payment_method="CASH",
        )

        def unit():
            with transaction(db):
                return payments.collect(db, principal, payload)

        try:
            start.wait()
            run_with_retry(db, unit, retries=50, backoff=0.01)
        except Exception as exc:
            errors.append(exc)
        finally:
            db.close()

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(WORKERS)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert errors == []

    db = database.session()
    try:
        receipts = sorted(p.receipt_number for p in db.query(models.Payment).all())
        assert receipts == [f"RCP{n:06d}" for n in range(1, WORKERS + 1)]
        for fee_id in fee_ids:
            fee = db.get(models.StudentFee, fee_id)
            total = sum((p.amount for p in fee.payments), Decimal("0"))
            assert fee.paid_amount == total == Decimal("300")
            assert fee.balance_amount == fee.final_amount - fee.paid_amount
            assert fee.status == "PARTIAL"
        assert ledger.get_settings(db, SCHOOL).current_receipt_number == WORKERS + 1
    finally:
        db.close()


def test_run_with_retry_gives_up(session):
    calls = []

    def unit():
        calls.append(1)
        raise ConcurrencyError("busy")

    with pytest.raises(ConcurrencyError):
        run_with_retry(session, unit, retries=2, backoff=0)
    assert len(calls) == 3


def test_run_with_retry_recovers(session):
    calls = []

    def unit():
        calls.append(1)
        if len(calls) < 3:
            raise ConcurrencyError("busy")
        return "done"

    assert run_with_retry(session, unit, retries=5, backoff=0) == "done"


def test_stale_ledger_write_becomes_concurrency_error(database, seeded):
    fee_id = _open_fee(database, "stu-1")
    first, second = database.session(), database.session()
    try:
        a = first.get(models.StudentFee, fee_id)
        b = second.get(models.StudentFee, fee_id)
        with transaction(first):
            ledger.recompute_after_payment(a, Decimal("100"))
        with pytest.raises(ConcurrencyError):
            with transaction(second):
                ledger.recompute_after_payment(b, Decimal("200"))
    finally:
        first.close()
        second.close()

    db = database.session()
    try:
        assert db.get(models.StudentFee, fee_id).paid_amount == Decimal("100")
    finally:
        db.close()
