from datetime import date
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from feeledger import models
from feeledger.auth import Principal
from feeledger.config import Settings
from feeledger.database import Database
from feeledger.main import create_app

SECRET = "test-secret"
SCHOOL = "school-1"
OTHER_SCHOOL = "school-2"


def make_token(role="SCHOOL_ADMIN", sub="admin-1", school_id=SCHOOL, **claims):
    body = {"sub": sub, "school_id": school_id, "role": role, "name": f"{role.title()} User"}
    body.update(claims)
    return jwt.encode(body, SECRET, algorithm="HS256")


def auth(role="SCHOOL_ADMIN", **claims):
    return {"Authorization": f"Bearer {make_token(role, **claims)}"}


def money(value):
    return Decimal(str(value))


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'finance.db'}",
        jwt_secret=SECRET,
        environment="test",
        transaction_retries=20,
    )


@pytest.fixture
def database(settings):
    db = Database(settings.database_url, settings.lock_timeout_ms).open()
    yield db
    db.close()


@pytest.fixture
def session(database):
    db = database.session()
    yield db
    db.close()


@pytest.fixture
def seeded(session):
    """Two classes, three students and one active 10000 fee structure for SCHOOL."""
    grade = models.AcademicUnit(id="unit-5", school_id=SCHOOL, name="Grade 5")
    section = models.AcademicUnit(id="unit-5a", school_id=SCHOOL, name="Grade 5 A", parent_id="unit-5")
    grade6 = models.AcademicUnit(id="unit-6", school_id=SCHOOL, name="Grade 6")
    session.add_all([grade, section, grade6])
    session.flush()
    session.add_all([
        models.Student(id="stu-1", school_id=SCHOOL, admission_number="ADM001", full_name="Asha Rao",
                       academic_unit_id="unit-5a", academic_year_id="2024-25"),
        models.Student(id="stu-2", school_id=SCHOOL, admission_number="ADM002", full_name="Vikram Nair",
                       academic_unit_id="unit-6", academic_year_id="2024-25"),
        models.Student(id="stu-3", school_id=SCHOOL, admission_number="ADM003", full_name="Meera Iyer",
                       academic_year_id="2024-25"),
        models.Student(id="stu-x", school_id=OTHER_SCHOOL, admission_number="ADM001", full_name="Other School",
                       academic_year_id="2024-25"),
    ])
    structure = models.FeeStructure(
        id="fs-1", school_id=SCHOOL, name="Grade 5 Annual", academic_year_id="2024-25",
        academic_unit_id="unit-5", is_active=True, is_locked=False, created_by="admin-1",
    )
    structure.components.append(models.FeeComponent(
        name="Tuition", fee_type="TUITION", amount=Decimal("8000"), frequency="ANNUAL",
        due_date=date(2024, 6, 30), display_order=0,
    ))
    structure.components.append(models.FeeComponent(
        name="Transport", fee_type="TRANSPORT", amount=Decimal("2000"), frequency="ANNUAL",
        due_date=date(2024, 7, 31), display_order=1,
    ))
    session.add(structure)
    session.add(models.FinanceSettings(school_id=SCHOOL, institution_name="Green Valley School"))
    session.commit()
    return {"structure_id": "fs-1", "students": ["stu-1", "stu-2", "stu-3"]}


@pytest.fixture
def published():
    return []


@pytest.fixture
def client(settings, database, seeded, published):
    def publisher(rabbitmq_url, routing_key, event):
        published.append((routing_key, event))

    app = create_app(settings=settings, database=database, publisher=publisher)
    with TestClient(app) as c:
        yield c


@pytest.fixture
def admin():
    return auth("SCHOOL_ADMIN")


@pytest.fixture
def staff():
    return auth("STAFF", sub="staff-1")


@pytest.fixture
def admin_principal():
    return Principal(user_id="admin-1", school_id=SCHOOL, role="SCHOOL_ADMIN", name="Admin User")


@pytest.fixture
def assign(client, staff):
    def _assign(student_id="stu-1", structure_id="fs-1", **extra):
        resp = client.post("/finance/student-fees", headers=staff,
                           json={"student_id": student_id, "fee_structure_id": structure_id, **extra})
        assert resp.status_code == 201, resp.text
        return resp.json()["data"]

    return _assign


@pytest.fixture
def collect(client, staff):
    def _collect(student_fee_id, amount, method="CASH", headers=None, **extra):
        body = {"student_fee_id": student_fee_id, "amount": str(amount), "payment_method": method, **extra}
        return client.post("/finance/payments/collect", headers=headers or staff, json=body)

    return _collect
