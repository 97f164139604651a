from datetime import date
from decimal import Decimal

import pytest

from conftest import SCHOOL, auth, money
from feeledger import ledger, models
from feeledger.errors import ValidationError


def assert_identities(fee):
    final = money(fee["total_amount"]) - money(fee["discount_amount"]) - money(fee["scholarship_amount"]) \
        + money(fee["tax_amount"])
    assert money(fee["final_amount"]) == final
    assert money(fee["balance_amount"]) == final - money(fee["paid_amount"])


def test_assign_creates_pending_ledger(assign):
    fee = assign("stu-1")
    assert money(fee["total_amount"]) == Decimal("10000")
    assert money(fee["final_amount"]) == Decimal("10000")
    assert money(fee["balance_amount"]) == Decimal("10000")
    assert fee["status"] == "PENDING"
    assert fee["due_date"] == "2024-06-30"
    assert fee["academic_year_id"] == "2024-25"
    assert_identities(fee)


def test_assign_locks_structure(client, assign, admin):
    assign("stu-1")
    resp = client.get("/finance/fee-structures/fs-1", headers=admin)
    assert resp.json()["data"]["is_locked"] is True


def test_assign_twice_conflicts(client, assign, staff):
    assign("stu-1")
    resp = client.post("/finance/student-fees", headers=staff,
                       json={"student_id": "stu-1", "fee_structure_id": "fs-1"})
    assert resp.status_code == 400
    assert resp.json()["error"] == "STATE_CONFLICT"


def test_assign_unknown_student(client, staff):
    resp = client.post("/finance/student-fees", headers=staff,
                       json={"student_id": "missing", "fee_structure_id": "fs-1"})
    assert resp.status_code == 404
    assert resp.json() == {"success": False, "error": "NOT_FOUND", "message": "Student not found"}


def test_assign_student_of_other_school_is_not_found(client, staff):
    resp = client.post("/finance/student-fees", headers=staff,
                       json={"student_id": "stu-x", "fee_structure_id": "fs-1"})
    assert resp.status_code == 404


def test_assign_applies_school_tax(client, admin, assign):
    resp = client.put("/finance/settings", headers=admin, json={"enable_tax": True, "tax_percentage": "18"})
    assert resp.status_code == 200
    fee = assign("stu-2")
    assert money(fee["tax_amount"]) == Decimal("1800")
    assert money(fee["final_amount"]) == Decimal("11800")
    assert_identities(fee)


def test_scenarios_a_to_d(client, admin, assign, collect):
    fee = assign("stu-1")

    # A: 10% discount taken from the original total
    resp = client.post("/finance/discounts", headers=admin, json={
        "student_fee_id": fee["id"], "name": "Sibling", "discount_type": "PERCENTAGE",
        "discount_value": "10", "reason": "Sibling studying in Grade 8",
    })
    assert resp.status_code == 201, resp.text
    assert resp.json()["data"]["status"] == "APPROVED"
    fee = client.get(f"/finance/student-fees/{fee['id']}", headers=admin).json()["data"]
    assert money(fee["discount_amount"]) == Decimal("1000")
    assert money(fee["final_amount"]) == Decimal("9000")
    assert money(fee["balance_amount"]) == Decimal("9000")
    assert_identities(fee)

    # B
    resp = collect(fee["id"], 5000)
    assert resp.status_code == 201, resp.text
    data = resp.json()["data"]
    assert data["receipt_number"] == "RCP000001"
    ledger_row = data["student_fee"]
    assert money(ledger_row["paid_amount"]) == Decimal("5000")
    assert money(ledger_row["balance_amount"]) == Decimal("4000")
    assert ledger_row["status"] == "PARTIAL"
    assert_identities(ledger_row)

    # C
    resp = collect(fee["id"], 4000)
    assert resp.status_code == 201
    ledger_row = resp.json()["data"]["student_fee"]
    assert money(ledger_row["balance_amount"]) == Decimal("0")
    assert ledger_row["status"] == "PAID"
    assert_identities(ledger_row)

    # D
    resp = collect(fee["id"], 1)
    assert resp.status_code == 400
    assert resp.json()["error"] == "VALIDATION_ERROR"
    assert resp.json()["field"] == "amount"


def test_percentages_use_original_total(client, admin, assign):
    fee = assign("stu-1")
    for name in ("Merit", "Staff ward"):
        resp = client.post("/finance/discounts", headers=admin, json={
            "student_fee_id": fee["id"], "name": name, "discount_type": "PERCENTAGE",
            "discount_value": "10", "reason": name,
        })
        assert resp.status_code == 201
    fee = client.get(f"/finance/student-fees/{fee['id']}", headers=admin).json()["data"]
    assert money(fee["discount_amount"]) == Decimal("2000")
    assert money(fee["final_amount"]) == Decimal("8000")


def test_adjustments_cannot_push_final_below_zero(client, admin, assign):
    fee = assign("stu-1")
    first = client.post("/finance/discounts", headers=admin, json={
        "student_fee_id": fee["id"], "name": "Waiver", "discount_type": "FLAT",
        "discount_value": "8000", "reason": "Hardship",
    })
    assert first.status_code == 201
    second = client.post("/finance/discounts", headers=admin, json={
        "student_fee_id": fee["id"], "name": "Extra", "discount_type": "FLAT",
        "discount_value": "3000", "reason": "Hardship",
    })
    assert second.status_code == 400
    assert second.json()["error"] == "VALIDATION_ERROR"
    fee = client.get(f"/finance/student-fees/{fee['id']}", headers=admin).json()["data"]
    assert money(fee["final_amount"]) == Decimal("2000")
    # the rejected request left no discount behind
    discounts = client.get("/finance/discounts", headers=admin).json()["data"]
    assert [d["name"] for d in discounts] == ["Waiver"]


def test_student_sees_only_own_fees(client, assign):
    assign("stu-1")
    assign("stu-2")
    headers = auth("STUDENT", sub="user-7", student_id="stu-2")
    resp = client.get("/finance/student-fees", headers=headers, params={"student_id": "stu-1"})
    assert resp.status_code == 200
    assert [f["student_id"] for f in resp.json()["data"]] == ["stu-2"]


def test_student_cannot_read_other_ledger(client, assign):
    fee = assign("stu-1")
    headers = auth("STUDENT", sub="user-7", student_id="stu-2")
    resp = client.get(f"/finance/student-fees/{fee['id']}", headers=headers)
    assert resp.status_code == 403


def test_mark_overdue(client, admin, assign, collect):
    fee = assign("stu-1")
    paid = assign("stu-2")
    assert collect(paid["id"], 10000).status_code == 201

    resp = client.post("/finance/student-fees/mark-overdue", headers=admin, params={"as_of": "2024-07-01"})
    assert resp.status_code == 200
    assert resp.json()["data"] == {"updated": 1}
    fee = client.get(f"/finance/student-fees/{fee['id']}", headers=admin).json()["data"]
    assert fee["status"] == "OVERDUE"

    # a partial payment on an overdue fee moves it to PARTIAL
    resp = collect(fee["id"], 100)
    assert resp.json()["data"]["student_fee"]["status"] == "PARTIAL"


def test_mark_overdue_before_due_date_changes_nothing(client, admin, assign):
    assign("stu-1")
    resp = client.post("/finance/student-fees/mark-overdue", headers=admin, params={"as_of": "2024-06-30"})
    assert resp.json()["data"] == {"updated": 0}


def test_derive_totals_rejects_negative_final():
    fee = models.StudentFee(total_amount=Decimal("100"), discount_amount=Decimal("80"),
                            scholarship_amount=Decimal("30"), tax_amount=Decimal("0"),
                            paid_amount=Decimal("0"), status="PENDING")
    with pytest.raises(ValidationError):
        ledger.derive_totals(fee)


@pytest.mark.parametrize("paid, expected", [
    ("0", "PENDING"),
    ("1", "PARTIAL"),
    ("99.99", "PARTIAL"),
    ("100", "PAID"),
])
def test_status_follows_payment(paid, expected):
    fee = models.StudentFee(total_amount=Decimal("100"), discount_amount=Decimal("0"),
                            scholarship_amount=Decimal("0"), tax_amount=Decimal("0"),
                            paid_amount=Decimal("0"), status="PENDING")
    ledger.derive_totals(fee)
    ledger.recompute_after_payment(fee, Decimal(paid))
    assert fee.status == expected


def test_refund_back_to_zero_reopens_as_pending():
    fee = models.StudentFee(total_amount=Decimal("100"), discount_amount=Decimal("0"),
                            scholarship_amount=Decimal("0"), tax_amount=Decimal("0"),
                            paid_amount=Decimal("100"), status="PAID")
    ledger.derive_totals(fee)
    ledger.recompute_after_refund(fee, Decimal("100"))
    assert fee.balance_amount == Decimal("100")
    assert fee.status == "PENDING"


def test_next_sequence_is_gap_free(session, seeded):
    issued = [ledger.next_sequence(session, SCHOOL) for _ in range(3)]
    session.commit()
    assert issued == [1, 2, 3]
    settings = ledger.get_settings(session, SCHOOL)
    assert settings.current_receipt_number == 4
    # invoice numbering is independent
    assert ledger.next_sequence(session, SCHOOL, ledger.INVOICE_COUNTER) == 1


def test_settings_created_on_first_use(session, seeded):
    settings = ledger.get_settings(session, "school-new")
    session.commit()
    assert settings.receipt_prefix == "RCP"
    assert settings.current_receipt_number == 1
    assert settings.refund_reopens_ledger is False
