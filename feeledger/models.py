import uuid
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import relationship

from feeledger.database import Base


def _uuid():
    return str(uuid.uuid4())


def Money(**kwargs):
    return Column(Numeric(12, 2), nullable=False, default=0, **kwargs)


class FinanceSettings(Base):
    """Per-school counters, tax configuration and ledger policy flags."""

    __tablename__ = "finance_settings"
    id = Column(String(36), primary_key=True, default=_uuid)
    school_id = Column(String(64), nullable=False, unique=True, index=True)
    receipt_prefix = Column(String(16), nullable=False, default="RCP")
    current_receipt_number = Column(Integer, nullable=False, default=1)
    invoice_prefix = Column(String(16), nullable=False, default="INV")
    current_invoice_number = Column(Integer, nullable=False, default=1)
    currency = Column(String(8), nullable=False, default="INR")
    enable_tax = Column(Boolean, nullable=False, default=False)
    tax_percentage = Column(Numeric(5, 2), nullable=False, default=0)
    tax_number = Column(String(64), nullable=True)
    discount_requires_approval = Column(Boolean, nullable=False, default=False)
    refund_reopens_ledger = Column(Boolean, nullable=False, default=False)
    institution_name = Column(String(255), nullable=True)
    institution_address = Column(String(512), nullable=True)
    institution_phone = Column(String(32), nullable=True)
    institution_email = Column(String(255), nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class AcademicUnit(Base):
    __tablename__ = "academic_units"
    id = Column(String(36), primary_key=True, default=_uuid)
    school_id = Column(String(64), nullable=False, index=True)
    name = Column(String(128), nullable=False)
    parent_id = Column(String(36), ForeignKey("academic_units.id"), nullable=True)


class Student(Base):
    __tablename__ = "students"
    __table_args__ = (UniqueConstraint("school_id", "admission_number", name="uq_student_admission"),)
    id = Column(String(36), primary_key=True, default=_uuid)
    school_id = Column(String(64), nullable=False, index=True)
    admission_number = Column(String(64), nullable=False)
    full_name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    academic_unit_id = Column(String(36), ForeignKey("academic_units.id"), nullable=True)
    academic_year_id = Column(String(64), nullable=True)
    user_id = Column(String(64), nullable=True, index=True)

    academic_unit = relationship("AcademicUnit")


class FeeStructure(Base):
    __tablename__ = "fee_structures"
    id = Column(String(36), primary_key=True, default=_uuid)
    school_id = Column(String(64), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    academic_year_id = Column(String(64), nullable=False, index=True)
    academic_unit_id = Column(String(36), ForeignKey("academic_units.id"), nullable=True)
    course_id = Column(String(64), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    is_locked = Column(Boolean, nullable=False, default=False)
    created_by = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    components = relationship(
        "FeeComponent",
        back_populates="fee_structure",
        order_by="FeeComponent.display_order",
        cascade="all, delete-orphan",
    )

    @property
    def total_amount(self):
        return sum((c.amount for c in self.components), Decimal("0"))


class FeeComponent(Base):
    __tablename__ = "fee_components"
    id = Column(String(36), primary_key=True, default=_uuid)
    fee_structure_id = Column(String(36), ForeignKey("fee_structures.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    fee_type = Column(String(32), nullable=False)
    description = Column(Text, nullable=True)
    amount = Money()
    frequency = Column(String(32), nullable=False)
    is_mandatory = Column(Boolean, nullable=False, default=True)
    due_date = Column(Date, nullable=True)
    allow_partial_payment = Column(Boolean, nullable=False, default=True)
    late_fee_applicable = Column(Boolean, nullable=False, default=False)
    late_fee_amount = Column(Numeric(12, 2), nullable=True)
    late_fee_percentage = Column(Numeric(5, 2), nullable=True)
    display_order = Column(Integer, nullable=False, default=0)

    fee_structure = relationship("FeeStructure", back_populates="components")
    installments = relationship(
        "Installment",
        order_by="Installment.installment_number",
        cascade="all, delete-orphan",
    )


class Installment(Base):
    __tablename__ = "fee_installments"
    id = Column(String(36), primary_key=True, default=_uuid)
    fee_component_id = Column(String(36), ForeignKey("fee_components.id"), nullable=False, index=True)
    installment_number = Column(Integer, nullable=False)
    name = Column(String(255), nullable=False)
    amount = Money()
    due_date = Column(Date, nullable=False)


class StudentFee(Base):
    """
    Ledger entry for one student against one fee structure.
    total_amount is fixed at creation; final_amount and balance_amount are derived.
    """

    __tablename__ = "student_fees"
    __table_args__ = (UniqueConstraint("student_id", "fee_structure_id", name="uq_student_fee_structure"),)
    id = Column(String(36), primary_key=True, default=_uuid)
    school_id = Column(String(64), nullable=False, index=True)
    student_id = Column(String(36), ForeignKey("students.id"), nullable=False, index=True)
    fee_structure_id = Column(String(36), ForeignKey("fee_structures.id"), nullable=False, index=True)
    academic_year_id = Column(String(64), nullable=False, index=True)
    total_amount = Money()
    discount_amount = Money()
    scholarship_amount = Money()
    tax_amount = Money()
    final_amount = Money()
    paid_amount = Money()
    balance_amount = Money()
    status = Column(String(20), nullable=False, default="PENDING", index=True)
    due_date = Column(Date, nullable=True)
    assigned_by = Column(String(64), nullable=True)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    student = relationship("Student")
    fee_structure = relationship("FeeStructure")
    payments = relationship("Payment", back_populates="student_fee", order_by="Payment.paid_at")
    discounts = relationship("FeeDiscount", back_populates="student_fee")
    scholarships = relationship("FeeScholarship", back_populates="student_fee")

    __mapper_args__ = {"version_id_col": version}


class FeeDiscount(Base):
    __tablename__ = "fee_discounts"
    id = Column(String(36), primary_key=True, default=_uuid)
    school_id = Column(String(64), nullable=False, index=True)
    student_fee_id = Column(String(36), ForeignKey("student_fees.id"), nullable=False, index=True)
    student_id = Column(String(36), ForeignKey("students.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    discount_type = Column(String(20), nullable=False)
    discount_value = Money()
    discount_amount = Money()
    reason = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default="PENDING")
    created_by = Column(String(64), nullable=True)
    approved_by = Column(String(64), nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    student_fee = relationship("StudentFee", back_populates="discounts")


class FeeScholarship(Base):
    __tablename__ = "fee_scholarships"
    id = Column(String(36), primary_key=True, default=_uuid)
    school_id = Column(String(64), nullable=False, index=True)
    student_fee_id = Column(String(36), ForeignKey("student_fees.id"), nullable=False, index=True)
    student_id = Column(String(36), ForeignKey("students.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    scholarship_type = Column(String(20), nullable=False)
    scholarship_value = Money()
    scholarship_amount = Money()
    provider = Column(String(255), nullable=True)
    reference_number = Column(String(128), nullable=True)
    valid_from = Column(Date, nullable=False)
    valid_to = Column(Date, nullable=True)
    status = Column(String(20), nullable=False, default="PENDING")
    applied_by = Column(String(64), nullable=True)
    approved_by = Column(String(64), nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    student_fee = relationship("StudentFee", back_populates="scholarships")


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (UniqueConstraint("school_id", "receipt_number", name="uq_payment_receipt"),)
    id = Column(String(36), primary_key=True, default=_uuid)
    school_id = Column(String(64), nullable=False, index=True)
    student_fee_id = Column(String(36), ForeignKey("student_fees.id"), nullable=False, index=True)
    student_id = Column(String(36), ForeignKey("students.id"), nullable=False, index=True)
    amount = Money()
    late_fee_amount = Money()
    payment_method = Column(String(32), nullable=False)
    transaction_id = Column(String(128), nullable=True)
    transaction_date = Column(Date, nullable=True)
    reference_number = Column(String(128), nullable=True)
    bank_name = Column(String(255), nullable=True)
    branch_name = Column(String(255), nullable=True)
    receipt_number = Column(String(32), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="SUCCESS")
    remarks = Column(Text, nullable=True)
    recorded_by = Column(String(64), nullable=True)
    recorded_by_name = Column(String(255), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    student_fee = relationship("StudentFee", back_populates="payments")
    refunds = relationship("Refund", back_populates="payment")


class Refund(Base):
    __tablename__ = "refunds"
    id = Column(String(36), primary_key=True, default=_uuid)
    school_id = Column(String(64), nullable=False, index=True)
    payment_id = Column(String(36), ForeignKey("payments.id"), nullable=False, index=True)
    student_id = Column(String(36), ForeignKey("students.id"), nullable=False, index=True)
    refund_amount = Money()
    refund_reason = Column(Text, nullable=False)
    refund_type = Column(String(32), nullable=False)
    refund_method = Column(String(32), nullable=True)
    account_holder_name = Column(String(255), nullable=True)
    account_number = Column(String(64), nullable=True)
    bank_name = Column(String(255), nullable=True)
    remarks = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default="INITIATED", index=True)
    initiated_by = Column(String(64), nullable=True)
    approved_by = Column(String(64), nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    rejected_at = Column(DateTime(timezone=True), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    payment = relationship("Payment", back_populates="refunds")


class Invoice(Base):
    __tablename__ = "invoices"
    __table_args__ = (UniqueConstraint("school_id", "invoice_number", name="uq_invoice_number"),)
    id = Column(String(36), primary_key=True, default=_uuid)
    school_id = Column(String(64), nullable=False, index=True)
    student_fee_id = Column(String(36), ForeignKey("student_fees.id"), nullable=False, index=True)
    student_id = Column(String(36), ForeignKey("students.id"), nullable=False, index=True)
    invoice_number = Column(String(32), nullable=False)
    invoice_date = Column(DateTime(timezone=True), server_default=func.now())
    due_date = Column(Date, nullable=True)
    subtotal = Money()
    discount_amount = Money()
    scholarship_amount = Money()
    tax_percentage = Column(Numeric(5, 2), nullable=True)
    tax_amount = Money()
    total_amount = Money()
    paid_amount = Money()
    balance_amount = Money()
    line_items = Column(JSON, nullable=False)
    notes = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default="GENERATED")
    generated_by = Column(String(64), nullable=True)


class FinanceAuditLog(Base):
    """Append-only audit trail, written in the same transaction as the change it records."""

    __tablename__ = "finance_audit_logs"
    id = Column(String(36), primary_key=True, default=_uuid)
    school_id = Column(String(64), nullable=False, index=True)
    entity_type = Column(String(32), nullable=False)
    entity_id = Column(String(36), nullable=False, index=True)
    action = Column(String(32), nullable=False)
    description = Column(Text, nullable=True)
    previous_data = Column(JSON, nullable=True)
    new_data = Column(JSON, nullable=True)
    user_id = Column(String(64), nullable=True)
    user_name = Column(String(255), nullable=True)
    user_role = Column(String(32), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
