"""Calculation helpers for the billing area.

Nothing here touches the database; services feed rows in and persist
whatever comes back.
"""
import calendar
import secrets
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from orca.models.numbering import next_number_after

PAYMENT_LINK_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZabcdefghjkmnpqrstuvwxyz23456789"
PAYMENT_LINK_CODE_LENGTH = 12

NUMBER_PREFIXES = {
    "account": "ACC",
    "invoice": "INV",
    "payment_plan": "PLN",
    "estimate": "EST",
    "statement": "STM",
    "payment": "PAY",
    "refund": "REF",
    "receipt": "RCT",
    "claim": "CLM",
    "lab_order": "LAB",
}

CURRENCY_SYMBOLS = {"CAD": "$", "USD": "$", "EUR": "€", "GBP": "£"}


def round_currency(amount: Optional[float]) -> float:
    """Round a money amount to cents"""
    if amount is None:
        return 0.0
    return round(float(amount), 2)


def generate_number(prefix: str, existing_max: Optional[str], year: Optional[int] = None) -> str:
    """PREFIX-YYYY-NNNNN, one past ``existing_max`` for the same prefix and year"""
    return next_number_after(prefix, year or date.today().year, existing_max)


def generate_payment_link_code(length: int = PAYMENT_LINK_CODE_LENGTH) -> str:
    return "".join(secrets.choice(PAYMENT_LINK_ALPHABET) for _ in range(length))


def _get(item: Any, key: str, default=None):
    if isinstance(item, dict):
        return item.get(key, default)
    return getattr(item, key, default)


def calculate_line_total(item: Any) -> float:
    quantity = _get(item, "quantity") or 1
    return round_currency(quantity * (_get(item, "unit_price") or 0))


def calculate_invoice_totals(items: Iterable[Any]) -> Dict[str, float]:
    """Subtotal, discounts, insurance and patient portions for invoice lines.

    A line without an explicit ``patient_amount`` owes whatever is left of
    ``quantity * unit_price`` after its discount and insurance portion.
    """
    subtotal = adjustments = insurance_amount = patient_amount = 0.0
    for item in items:
        line = calculate_line_total(item)
        discount = _get(item, "discount") or 0
        insurance = _get(item, "insurance_amount") or 0
        patient = _get(item, "patient_amount")
        if patient is None:
            patient = line - discount - insurance

        subtotal += line
        adjustments += discount
        insurance_amount += insurance
        patient_amount += patient

    patient_amount = round_currency(patient_amount)
    return {
        "subtotal": round_currency(subtotal),
        "adjustments": round_currency(adjustments),
        "insurance_amount": round_currency(insurance_amount),
        "patient_amount": patient_amount,
        "balance": patient_amount,
    }


def calculate_payment_plan_amounts(total_amount: float, down_payment: float, number_of_payments: int) -> Dict[str, float]:
    if number_of_payments < 1:
        raise ValueError("number_of_payments must be at least 1")
    financed = round_currency(total_amount - (down_payment or 0))
    return {
        "financed_amount": financed,
        "monthly_payment": round_currency(financed / number_of_payments),
        "remaining_balance": financed,
    }


def calculate_aging_bucket_for_account(days_past_due: int) -> str:
    if days_past_due <= 30:
        return "current"
    if days_past_due <= 60:
        return "aging_30"
    if days_past_due <= 90:
        return "aging_60"
    if days_past_due <= 120:
        return "aging_90"
    return "aging_120_plus"


def days_past_due(due_date: Union[date, datetime, None], today: Optional[date] = None) -> int:
    if due_date is None:
        return 0
    if isinstance(due_date, datetime):
        due_date = due_date.date()
    today = today or date.today()
    return max(0, (today - due_date).days)


def format_currency(amount: Optional[float], currency: str = "CAD") -> str:
    symbol = CURRENCY_SYMBOLS.get(currency.upper(), "")
    value = round_currency(amount)
    sign = "-" if value < 0 else ""
    return f"{sign}{symbol}{abs(value):,.2f} {currency.upper()}"


def add_months(value: date, months: int) -> date:
    """Shift by calendar months, clamping the day to the target month's end"""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def advance_by_frequency(value: date, frequency: str, periods: int = 1) -> date:
    frequency = getattr(frequency, "value", frequency)
    if frequency == "WEEKLY":
        return value + timedelta(days=7 * periods)
    if frequency == "BIWEEKLY":
        return value + timedelta(days=14 * periods)
    return add_months(value, periods)


def build_installment_schedule(
    start_date: date,
    financed_amount: float,
    number_of_payments: int,
    frequency: str = "MONTHLY",
    installment_amount: Optional[float] = None,
    skip_first_period: bool = False,
) -> List[Tuple[int, date, float]]:
    """(installment_number, due date, amount) for every installment.

    Each step is computed from ``start_date`` so month-end clamping never
    drifts. The last installment takes whatever rounding left over so the
    amounts always sum to ``financed_amount``.
    """
    financed_amount = round_currency(financed_amount)
    amount = round_currency(installment_amount if installment_amount else financed_amount / number_of_payments)
    offset = 1 if skip_first_period else 0

    schedule = []
    allocated = 0.0
    for index in range(number_of_payments):
        due = advance_by_frequency(start_date, frequency, index + offset)
        if index == number_of_payments - 1:
            installment = round_currency(financed_amount - allocated)
        else:
            installment = amount
        allocated = round_currency(allocated + installment)
        schedule.append((index + 1, due, installment))
    return schedule
