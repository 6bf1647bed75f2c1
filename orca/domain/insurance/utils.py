"""Claim arithmetic and orthodontic benefit checks."""
import re
from collections import Counter
from datetime import date, datetime
from typing import Any, Dict, Iterable, Optional

from orca.domain.billing.utils import add_months, round_currency, _get

CDT_CODE_PATTERN = re.compile(r"^D\d{4}$")

ORTHO_CDT_CODES = {
    "D8010": "Limited orthodontic treatment of the primary dentition",
    "D8020": "Limited orthodontic treatment of the transitional dentition",
    "D8030": "Limited orthodontic treatment of the adolescent dentition",
    "D8050": "Interceptive orthodontic treatment of the primary dentition",
    "D8060": "Interceptive orthodontic treatment of the transitional dentition",
    "D8070": "Comprehensive orthodontic treatment of the transitional dentition",
    "D8080": "Comprehensive orthodontic treatment of the adolescent dentition",
    "D8090": "Comprehensive orthodontic treatment of the adult dentition",
    "D8210": "Removable appliance therapy",
    "D8220": "Fixed appliance therapy",
    "D8660": "Pre-orthodontic treatment examination",
    "D8670": "Periodic orthodontic treatment visit",
    "D8680": "Orthodontic retention",
    "D8681": "Removable orthodontic retainer adjustment",
    "D8682": "Fixed orthodontic retainer",
    "D8690": "Orthodontic treatment (alternative billing to a contract fee)",
    "D8691": "Repair of orthodontic appliance",
    "D8692": "Replacement of lost or broken retainer",
    "D8693": "Re-cement or re-bond fixed retainer",
    "D8694": "Repair of fixed retainers",
    "D8695": "Removal of fixed orthodontic appliances",
    "D8696": "Repair of orthodontic appliance, maxillary",
    "D8697": "Repair of orthodontic appliance, mandibular",
    "D8698": "Re-cement or re-bond fixed retainer, maxillary",
    "D8699": "Re-cement or re-bond fixed retainer, mandibular",
    "D8701": "Repair of fixed retainer, maxillary",
    "D8702": "Repair of fixed retainer, mandibular",
    "D8703": "Replacement of lost or broken retainer, maxillary",
    "D8704": "Replacement of lost or broken retainer, mandibular",
    "D8999": "Unspecified orthodontic procedure, by report",
    "D0330": "Panoramic radiographic image",
    "D0340": "Cephalometric radiographic image",
    "D0350": "Oral/facial photographic images",
}

CLAIM_AGING_BUCKETS = ("0-30", "31-60", "61-90", "91-120", "120+")
PROCESSED_CLAIM_STATUSES = ("PAID", "PARTIAL", "DENIED", "CLOSED")


def validate_cdt_code(code: str) -> bool:
    return bool(code) and CDT_CODE_PATTERN.match(code.upper()) is not None


def format_payer_id(payer_id: str) -> str:
    return re.sub(r"[^A-Z0-9]", "", (payer_id or "").upper())


def calculate_claim_totals(items: Iterable[Any]) -> Dict[str, Any]:
    billed = 0.0
    count = 0
    for item in items:
        billed += (_get(item, "billed_amount") or 0) * (_get(item, "quantity") or 1)
        count += 1
    return {"billed_amount": round_currency(billed), "line_count": count}


def claim_aging_bucket(days: int) -> str:
    if days <= 30:
        return "0-30"
    if days <= 60:
        return "31-60"
    if days <= 90:
        return "61-90"
    if days <= 120:
        return "91-120"
    return "120+"


def days_until_appeal_deadline(denial_date, window_days: int = 90, today: Optional[date] = None) -> Optional[int]:
    """Days left to appeal; negative once the window has closed"""
    if denial_date is None:
        return None
    if isinstance(denial_date, datetime):
        denial_date = denial_date.date()
    today = today or date.today()
    return (denial_date - today).days + window_days


def check_ortho_benefit_availability(insurance: Any, today: Optional[date] = None) -> Dict[str, Any]:
    """Whether an ortho claim can draw on this policy today, and how much is left"""
    today = today or date.today()
    if not _get(insurance, "has_ortho_benefit"):
        return {"available": False, "reason": "NO_ORTHO_COVERAGE", "remaining": 0.0}

    termination = _get(insurance, "termination_date")
    if termination is not None and termination < today:
        return {"available": False, "reason": "COVERAGE_TERMINATED", "remaining": 0.0}

    waiting_months = _get(insurance, "ortho_waiting_period_months") or 0
    effective = _get(insurance, "effective_date")
    if waiting_months and effective is not None and today < add_months(effective, waiting_months):
        return {"available": False, "reason": "WAITING_PERIOD", "remaining": 0.0}

    lifetime_max = _get(insurance, "ortho_lifetime_max") or 0
    used = _get(insurance, "ortho_used_amount") or 0
    remaining = round_currency(max(0.0, lifetime_max - used))
    if remaining <= 0:
        return {"available": False, "reason": "LIFETIME_MAX_MET", "remaining": 0.0}
    return {"available": True, "remaining": remaining}


def calculate_estimated_insurance_payment(
    fee: float,
    coverage_pct: float,
    deductible: float = 0.0,
    deductible_met: float = 0.0,
    remaining: Optional[float] = None,
) -> float:
    remaining_deductible = max(0.0, (deductible or 0) - (deductible_met or 0))
    covered = max(0.0, fee - remaining_deductible) * (coverage_pct or 0) / 100
    if remaining is not None:
        covered = min(covered, remaining)
    return round_currency(covered)


def calculate_claims_summary(claims: Iterable[Any]) -> Dict[str, Any]:
    claims = list(claims)
    by_status = Counter()
    total_billed = 0.0
    total_paid = 0.0
    processing_days = []

    for claim in claims:
        status = _get(claim, "status")
        status = getattr(status, "value", status)
        by_status[status] += 1
        total_billed += _get(claim, "billed_amount") or 0
        total_paid += _get(claim, "paid_amount") or 0

        submitted = _get(claim, "submitted_at")
        responded = _get(claim, "response_at")
        if status in PROCESSED_CLAIM_STATUSES and submitted and responded:
            processing_days.append((responded - submitted).days)

    denied = by_status.get("DENIED", 0)
    return {
        "total_claims": len(claims),
        "by_status": dict(by_status),
        "total_billed": round_currency(total_billed),
        "total_paid": round_currency(total_paid),
        "average_processing_days": round(sum(processing_days) / len(processing_days)) if processing_days else 0,
        "denial_rate": round(denied / len(claims) * 100, 1) if claims else 0.0,
    }
