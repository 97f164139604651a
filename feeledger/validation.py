"""Fee arithmetic and input rules shared by the ledger, adjustment and payment services."""

from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from feeledger.errors import ValidationError

CENT = Decimal("0.01")
HUNDRED = Decimal("100")

REFERENCE_METHODS = ("CHEQUE", "DEMAND_DRAFT")
ELECTRONIC_METHODS = ("BANK_TRANSFER", "ONLINE", "UPI", "CARD", "NET_BANKING")
BANK_METHODS = ("CHEQUE", "DEMAND_DRAFT", "BANK_TRANSFER")


def to_money(value) -> Decimal:
    if value is None:
        return Decimal("0.00")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def adjustment_amount(kind: str, value, total_amount, label: str = "Discount") -> Decimal:
    """
    Resolve a PERCENTAGE or FLAT adjustment into an amount.

    Percentages are always taken of the structure's original total_amount, not of
    the already-adjusted final_amount: two 10% discounts on 10000 give 2000, not 1900.
    Keep it that way unless the school's fee policy changes.
    """
    value = to_money(value)
    total_amount = to_money(total_amount)
    if value < 0:
        raise ValidationError(f"Valid {label.lower()} value is required", field="value")
    if kind == "PERCENTAGE":
        if value > HUNDRED:
            raise ValidationError(f"{label} percentage cannot exceed 100%", field="value")
        return to_money(total_amount * value / HUNDRED)
    if kind == "FLAT":
        if value > total_amount:
            raise ValidationError(f"{label} amount cannot exceed total fee amount", field="value")
        return value
    raise ValidationError(f"Unknown {label.lower()} type {kind!r}", field="type")


def tax_for(total_amount, discount_amount, scholarship_amount, tax_percentage) -> Decimal:
    subtotal = to_money(total_amount) - to_money(discount_amount) - to_money(scholarship_amount)
    if subtotal <= 0 or not tax_percentage:
        return Decimal("0.00")
    return to_money(subtotal * to_money(tax_percentage) / HUNDRED)


def validate_payment(
    amount,
    balance_amount,
    payment_method: Optional[str],
    reference_number: Optional[str] = None,
    transaction_id: Optional[str] = None,
    bank_name: Optional[str] = None,
):
    amount = to_money(amount)
    if amount <= 0:
        raise ValidationError("Valid payment amount is required", field="amount")
    if amount > to_money(balance_amount):
        raise ValidationError("Payment amount cannot exceed balance amount", field="amount")
    if not payment_method:
        raise ValidationError("Payment method is required", field="payment_method")
    if payment_method not in REFERENCE_METHODS + ELECTRONIC_METHODS + ("CASH",):
        raise ValidationError("Invalid payment method", field="payment_method")
    if payment_method in REFERENCE_METHODS and not reference_number:
        raise ValidationError(f"Reference number is required for {payment_method} payment", field="reference_number")
    if payment_method in ELECTRONIC_METHODS and not transaction_id:
        raise ValidationError(f"Transaction ID is required for {payment_method} payment", field="transaction_id")
    if payment_method in BANK_METHODS and not bank_name:
        raise ValidationError(f"Bank name is required for {payment_method} payment", field="bank_name")


def format_sequence(prefix: str, number: int) -> str:
    return f"{prefix}{number:06d}"
