from datetime import date, datetime
from typing import Any, Optional, Union

from orca.domain.billing.utils import _get

AGING_BUCKETS = ("CURRENT", "1_30", "31_60", "61_90", "91_120", "120_PLUS")


def get_aging_bucket(days: int) -> str:
    if days <= 0:
        return "CURRENT"
    if days <= 30:
        return "1_30"
    if days <= 60:
        return "31_60"
    if days <= 90:
        return "61_90"
    if days <= 120:
        return "91_120"
    return "120_PLUS"


def calculate_days_overdue(due_date: Union[date, datetime, None], today: Optional[date] = None) -> int:
    if due_date is None:
        return 0
    if isinstance(due_date, datetime):
        due_date = due_date.date()
    return max(0, ((today or date.today()) - due_date).days)


def days_overdue_from_account(account: Any) -> int:
    """Approximate age of an account's debt from its oldest non-empty aging bucket"""
    if (_get(account, "aging_120_plus") or 0) > 0:
        return 120
    if (_get(account, "aging_90") or 0) > 0:
        return 90
    if (_get(account, "aging_60") or 0) > 0:
        return 60
    if (_get(account, "aging_30") or 0) > 0:
        return 30
    return 0


def calculate_dso(total_ar: float, total_sales: float, period_days: int = 90) -> float:
    """Days sales outstanding"""
    if not total_sales:
        return 0.0
    return round(total_ar / total_sales * period_days, 1)
