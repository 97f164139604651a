from decimal import Decimal

import pytest

from conftest import money


def scholarship(client, headers, student_fee_id, kind="FLAT", value="1500"):
    return client.post("/finance/scholarships", headers=headers, json={
        "student_fee_id": student_fee_id,
        "name": "Merit scholarship",
        "scholarship_type": kind,
        "scholarship_value": value,
        "provider": "State Board",
        "valid_from": "2024-04-01",
        "valid_to": "2025-03-31",
    })


def discount(client, headers, student_fee_id, kind="FLAT", value="500"):
    return client.post("/finance/discounts", headers=headers, json={
        "student_fee_id": student_fee_id,
        "name": "Early bird",
        "discount_type": kind,
        "discount_value": value,
        "reason": "Paid before April",
    })


def get_fee(client, headers, fee_id):
    return client.get(f"/finance/student-fees/{fee_id}", headers=headers).json()["data"]


def test_scholarship_waits_for_approval(client, admin, staff, assign):
    fee = assign("stu-1")
    resp = scholarship(client, staff, fee["id"])
    assert resp.status_code == 201
    assert resp.json()["data"]["status"] == "PENDING"
    assert money(get_fee(client, admin, fee["id"])["scholarship_amount"]) == Decimal("0")

    resp = client.post(f"/finance/scholarships/{resp.json()['data']['id']}/approve", headers=admin)
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "APPROVED"
    fee = get_fee(client, admin, fee["id"])
    assert money(fee["scholarship_amount"]) == Decimal("1500")
    assert money(fee["final_amount"]) == Decimal("8500")


def test_double_approval_is_a_state_conflict(client, admin, staff, assign, published):
    fee = assign("stu-1")
    s = scholarship(client, staff, fee["id"], kind="PERCENTAGE", value="25").json()["data"]
    assert client.post(f"/finance/scholarships/{s['id']}/approve", headers=admin).status_code == 200
    events_after_first = len(published)

    resp = client.post(f"/finance/scholarships/{s['id']}/approve", headers=admin)
    assert resp.status_code == 400
    assert resp.json()["error"] == "STATE_CONFLICT"
    assert len(published) == events_after_first

    fee = get_fee(client, admin, fee["id"])
    assert money(fee["scholarship_amount"]) == Decimal("2500")
    assert money(fee["final_amount"]) == Decimal("7500")


def test_rejected_scholarship_never_touches_ledger(client, admin, staff, assign):
    fee = assign("stu-1")
    s = scholarship(client, staff, fee["id"]).json()["data"]
    resp = client.post(f"/finance/scholarships/{s['id']}/reject", headers=admin)
    assert resp.json()["data"]["status"] == "REJECTED"
    assert client.post(f"/finance/scholarships/{s['id']}/approve", headers=admin).status_code == 400
    assert money(get_fee(client, admin, fee["id"])["final_amount"]) == Decimal("10000")


def test_staff_discount_stays_pending(client, admin, staff, assign, published):
    fee = assign("stu-1")
    d = discount(client, staff, fee["id"]).json()["data"]
    assert d["status"] == "PENDING"
    assert published == []
    assert money(get_fee(client, admin, fee["id"])["discount_amount"]) == Decimal("0")

    resp = client.post(f"/finance/discounts/{d['id']}/approve", headers=admin)
    assert resp.json()["data"]["approved_by"] == "admin-1"
    assert money(get_fee(client, admin, fee["id"])["final_amount"]) == Decimal("9500")
    assert published[-1][1]["type"] == "DiscountApproved"


def test_admin_discount_needs_approval_when_configured(client, admin, assign):
    client.put("/finance/settings", headers=admin, json={"discount_requires_approval": True})
    fee = assign("stu-1")
    d = discount(client, admin, fee["id"]).json()["data"]
    assert d["status"] == "PENDING"
    assert money(get_fee(client, admin, fee["id"])["discount_amount"]) == Decimal("0")


def test_discount_reject(client, admin, staff, assign):
    fee = assign("stu-1")
    d = discount(client, staff, fee["id"]).json()["data"]
    assert client.post(f"/finance/discounts/{d['id']}/reject", headers=admin).json()["data"]["status"] == "REJECTED"
    assert client.post(f"/finance/discounts/{d['id']}/reject", headers=admin).status_code == 400


@pytest.mark.parametrize("kind, value", [("PERCENTAGE", "100.01"), ("FLAT", "10000.01")])
def test_adjustment_bounds(client, admin, assign, kind, value):
    fee = assign("stu-1")
    resp = discount(client, admin, fee["id"], kind=kind, value=value)
    assert resp.status_code == 400
    assert resp.json()["error"] == "VALIDATION_ERROR"


def test_full_percentage_scholarship_marks_paid(client, admin, staff, assign):
    fee = assign("stu-1")
    s = scholarship(client, staff, fee["id"], kind="PERCENTAGE", value="100").json()["data"]
    client.post(f"/finance/scholarships/{s['id']}/approve", headers=admin)
    fee = get_fee(client, admin, fee["id"])
    assert money(fee["balance_amount"]) == Decimal("0")
    assert fee["status"] == "PAID"


def test_scholarship_dates_validated(client, staff, assign):
    fee = assign("stu-1")
    resp = client.post("/finance/scholarships", headers=staff, json={
        "student_fee_id": fee["id"], "name": "Bad dates", "scholarship_type": "FLAT",
        "scholarship_value": "10", "valid_from": "2024-04-01", "valid_to": "2024-03-01",
    })
    assert resp.status_code == 400


def test_approve_unknown_discount(client, admin):
    resp = client.post("/finance/discounts/nope/approve", headers=admin)
    assert resp.status_code == 404
    assert resp.json()["message"] == "Discount not found"


def test_list_adjustments_filtered_by_student(client, admin, staff, assign):
    first = assign("stu-1")
    second = assign("stu-2")
    scholarship(client, staff, first["id"])
    scholarship(client, staff, second["id"])
    listed = client.get("/finance/scholarships", headers=admin, params={"student_id": "stu-2"}).json()["data"]
    assert [s["student_id"] for s in listed] == ["stu-2"]
