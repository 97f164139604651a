from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

T = TypeVar("T")


class Envelope(BaseModel, Generic[T]):
    success: bool = True
    data: Optional[T] = None
    message: Optional[str] = None


class AdjustmentType(str, Enum):
    PERCENTAGE = "PERCENTAGE"
    FLAT = "FLAT"


class PaymentMethod(str, Enum):
    CASH = "CASH"
    CHEQUE = "CHEQUE"
    DEMAND_DRAFT = "DEMAND_DRAFT"
    BANK_TRANSFER = "BANK_TRANSFER"
    ONLINE = "ONLINE"
    UPI = "UPI"
    CARD = "CARD"
    NET_BANKING = "NET_BANKING"


class RefundType(str, Enum):
    FULL = "FULL"
    PARTIAL = "PARTIAL"


# --- Fee structures ---
class InstallmentIn(BaseModel):
    installment_number: int = Field(..., ge=1)
    name: str = Field(..., min_length=1)
    amount: Decimal = Field(..., ge=0)
    due_date: date


class FeeComponentIn(BaseModel):
    name: str = Field(..., min_length=1)
    fee_type: str = Field(..., min_length=1)
    description: Optional[str] = None
    amount: Decimal = Field(..., ge=0)
    frequency: str = Field(..., min_length=1, description="ONE_TIME, MONTHLY, QUARTERLY, TERM_WISE, ANNUAL")
    is_mandatory: bool = True
    due_date: Optional[date] = None
    allow_partial_payment: bool = True
    late_fee_applicable: bool = False
    late_fee_amount: Optional[Decimal] = Field(None, ge=0)
    late_fee_percentage: Optional[Decimal] = Field(None, ge=0, le=100)
    installments: List[InstallmentIn] = []

    @model_validator(mode="after")
    def late_fee_needs_value(self):
        if self.late_fee_applicable and not (self.late_fee_amount or self.late_fee_percentage):
            raise ValueError("late fee amount or percentage is required when late fee is applicable")
        return self


class FeeStructureCreate(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    academic_year_id: str = Field(..., min_length=1)
    academic_unit_id: Optional[str] = None
    course_id: Optional[str] = None
    components: List[FeeComponentIn] = Field(..., min_length=1)


class FeeStructureUpdate(BaseModel):
    """Only is_active may change once students are assigned. Components, when given, replace the old set."""

    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    is_active: Optional[bool] = None
    academic_unit_id: Optional[str] = None
    course_id: Optional[str] = None
    components: Optional[List[FeeComponentIn]] = Field(None, min_length=1)

    @field_validator("name", "is_active", "components", mode="before")
    @classmethod
    def not_null(cls, value):
        if value is None:
            raise ValueError("value cannot be null")
        return value


class Deleted(BaseModel):
    id: str


class InstallmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    installment_number: int
    name: str
    amount: Decimal
    due_date: date


class FeeComponentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    fee_type: str
    description: Optional[str] = None
    amount: Decimal
    frequency: str
    is_mandatory: bool
    due_date: Optional[date] = None
    allow_partial_payment: bool
    late_fee_applicable: bool
    late_fee_amount: Optional[Decimal] = None
    late_fee_percentage: Optional[Decimal] = None
    display_order: int
    installments: List[InstallmentOut] = []


class FeeStructureOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    school_id: str
    name: str
    description: Optional[str] = None
    academic_year_id: str
    academic_unit_id: Optional[str] = None
    course_id: Optional[str] = None
    is_active: bool
    is_locked: bool
    total_amount: Decimal = Decimal("0")
    components: List[FeeComponentOut] = []
    created_at: Optional[datetime] = None


# --- Student fee ledger ---
class StudentFeeAssign(BaseModel):
    student_id: str = Field(..., min_length=1)
    fee_structure_id: str = Field(..., min_length=1)
    due_date: Optional[date] = None


class StudentFeeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    school_id: str
    student_id: str
    fee_structure_id: str
    academic_year_id: str
    total_amount: Decimal
    discount_amount: Decimal
    scholarship_amount: Decimal
    tax_amount: Decimal
    final_amount: Decimal
    paid_amount: Decimal
    balance_amount: Decimal
    status: str
    due_date: Optional[date] = None
    created_at: Optional[datetime] = None


class OverdueResult(BaseModel):
    updated: int


# --- Adjustments ---
class _AdjustmentIn(BaseModel):
    student_fee_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    description: Optional[str] = None


class DiscountCreate(_AdjustmentIn):
    discount_type: AdjustmentType
    discount_value: Decimal = Field(..., gt=0)
    reason: str = Field(..., min_length=1)

    @model_validator(mode="after")
    def percentage_in_range(self):
        if self.discount_type == AdjustmentType.PERCENTAGE and self.discount_value > 100:
            raise ValueError("discount percentage cannot exceed 100")
        return self


class ScholarshipCreate(_AdjustmentIn):
    scholarship_type: AdjustmentType
    scholarship_value: Decimal = Field(..., gt=0)
    provider: Optional[str] = None
    reference_number: Optional[str] = None
    valid_from: date
    valid_to: Optional[date] = None

    @model_validator(mode="after")
    def percentage_in_range(self):
        if self.scholarship_type == AdjustmentType.PERCENTAGE and self.scholarship_value > 100:
            raise ValueError("scholarship percentage cannot exceed 100")
        if self.valid_to is not None and self.valid_to < self.valid_from:
            raise ValueError("valid_to cannot be before valid_from")
        return self


class DiscountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    student_fee_id: str
    student_id: str
    name: str
    description: Optional[str] = None
    discount_type: str
    discount_value: Decimal
    discount_amount: Decimal
    reason: str
    status: str
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class ScholarshipOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    student_fee_id: str
    student_id: str
    name: str
    description: Optional[str] = None
    scholarship_type: str
    scholarship_value: Decimal
    scholarship_amount: Decimal
    provider: Optional[str] = None
    reference_number: Optional[str] = None
    valid_from: date
    valid_to: Optional[date] = None
    status: str
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


# --- Payments ---
class PaymentCollect(BaseModel):
    student_fee_id: str = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0)
    payment_method: PaymentMethod
    late_fee_amount: Decimal = Field(Decimal("0"), ge=0)
    transaction_id: Optional[str] = None
    transaction_date: Optional[date] = None
    reference_number: Optional[str] = None
    bank_name: Optional[str] = None
    branch_name: Optional[str] = None
    remarks: Optional[str] = None


class PaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    school_id: str
    student_fee_id: str
    student_id: str
    amount: Decimal
    late_fee_amount: Decimal
    payment_method: str
    transaction_id: Optional[str] = None
    transaction_date: Optional[date] = None
    reference_number: Optional[str] = None
    bank_name: Optional[str] = None
    branch_name: Optional[str] = None
    receipt_number: str
    status: str
    remarks: Optional[str] = None
    recorded_by: Optional[str] = None
    recorded_by_name: Optional[str] = None
    paid_at: Optional[datetime] = None


class PaymentWithLedgerOut(PaymentOut):
    student_fee: StudentFeeOut


# --- Refunds ---
class RefundCreate(BaseModel):
    payment_id: str = Field(..., min_length=1)
    refund_amount: Decimal = Field(..., gt=0)
    refund_reason: str = Field(..., min_length=1)
    refund_type: RefundType
    refund_method: Optional[str] = None
    account_holder_name: Optional[str] = None
    account_number: Optional[str] = None
    bank_name: Optional[str] = None
    remarks: Optional[str] = None


class RefundAction(BaseModel):
    remarks: Optional[str] = None


class RefundOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    payment_id: str
    student_id: str
    refund_amount: Decimal
    refund_reason: str
    refund_type: str
    refund_method: Optional[str] = None
    remarks: Optional[str] = None
    status: str
    initiated_by: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


# --- Reports ---
class CollectionTotals(BaseModel):
    total_collection: Decimal
    total_late_fee: Decimal
    total_payments: int
    average_payment: Decimal


class CollectionSummary(BaseModel):
    summary: CollectionTotals
    by_payment_method: Dict[str, Decimal]
    by_date: Dict[str, Decimal]
    by_class: Dict[str, Decimal]
    from_date: Optional[date] = None
    to_date: Optional[date] = None


class DueStudent(BaseModel):
    student_fee_id: str
    admission_number: str
    student_name: str
    class_name: str
    fee_structure: str
    final_amount: Decimal
    paid_amount: Decimal
    balance_amount: Decimal
    due_date: Optional[date] = None
    is_overdue: bool
    status: str


class DuesByClass(BaseModel):
    total_dues: Decimal
    student_count: int


class DuesTotals(BaseModel):
    total_dues: Decimal
    total_students: int
    overdue_count: int
    average_due: Decimal


class DuesSummary(BaseModel):
    summary: DuesTotals
    by_class: Dict[str, DuesByClass]
    details: List[DueStudent]


# --- Receipts and invoices ---
class ReceiptLine(BaseModel):
    name: str
    fee_type: str
    amount: Decimal


class Receipt(BaseModel):
    receipt_number: str
    receipt_date: datetime
    institution_name: Optional[str] = None
    institution_address: Optional[str] = None
    institution_phone: Optional[str] = None
    institution_email: Optional[str] = None
    student_name: str
    admission_number: str
    class_name: Optional[str] = None
    academic_year_id: str
    fee_structure: str
    components: List[ReceiptLine]
    total_amount: Decimal
    discount_amount: Decimal
    scholarship_amount: Decimal
    tax_amount: Decimal
    final_amount: Decimal
    amount_paid: Decimal
    paid_to_date: Decimal
    pending_amount: Decimal
    payment_method: str
    transaction_id: Optional[str] = None
    reference_number: Optional[str] = None
    collected_by: Optional[str] = None
    currency: str


class InvoiceLineIn(BaseModel):
    description: str = Field(..., min_length=1)
    amount: Decimal = Field(..., ge=0)
    quantity: int = Field(1, ge=1)


class InvoiceCreate(BaseModel):
    student_fee_id: str = Field(..., min_length=1)
    due_date: Optional[date] = None
    line_items: Optional[List[InvoiceLineIn]] = None
    notes: Optional[str] = None


class InvoiceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    student_fee_id: str
    student_id: str
    invoice_number: str
    invoice_date: Optional[datetime] = None
    due_date: Optional[date] = None
    subtotal: Decimal
    discount_amount: Decimal
    scholarship_amount: Decimal
    tax_percentage: Optional[Decimal] = None
    tax_amount: Decimal
    total_amount: Decimal
    paid_amount: Decimal
    balance_amount: Decimal
    line_items: List[dict]
    notes: Optional[str] = None
    status: str


# --- Settings ---
class FinanceSettingsOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    school_id: str
    receipt_prefix: str
    current_receipt_number: int
    invoice_prefix: str
    current_invoice_number: int
    currency: str
    enable_tax: bool
    tax_percentage: Decimal
    tax_number: Optional[str] = None
    discount_requires_approval: bool
    refund_reopens_ledger: bool
    institution_name: Optional[str] = None
    institution_address: Optional[str] = None
    institution_phone: Optional[str] = None
    institution_email: Optional[str] = None


class FinanceSettingsUpdate(BaseModel):
    """Receipt and invoice counters are not writable here; they only move through next_sequence()."""

    model_config = ConfigDict(extra="forbid")

    receipt_prefix: Optional[str] = Field(None, min_length=1, max_length=16)
    invoice_prefix: Optional[str] = Field(None, min_length=1, max_length=16)
    currency: Optional[str] = Field(None, min_length=1, max_length=8)
    enable_tax: Optional[bool] = None
    tax_percentage: Optional[Decimal] = Field(None, ge=0, le=100)
    tax_number: Optional[str] = None
    discount_requires_approval: Optional[bool] = None
    refund_reopens_ledger: Optional[bool] = None
    institution_name: Optional[str] = None
    institution_address: Optional[str] = None
    institution_phone: Optional[str] = None
    institution_email: Optional[str] = None

    @field_validator(
        "receipt_prefix", "invoice_prefix", "currency", "enable_tax", "tax_percentage",
        "discount_requires_approval", "refund_reopens_ledger",
        mode="before",
    )
    @classmethod
    def not_null(cls, value):
        if value is None:
            raise ValueError("value cannot be null")
        return value
