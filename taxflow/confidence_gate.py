"""
Confidence gate for extracted withholding records.

Critical rules force confidence to exactly 0 and stop evaluation; the record
is then kept out of the downstream store and surfaced for review.
Informative rules only scale confidence down from 100.
"""

from __future__ import annotations

import math
import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, date, datetime
from typing import Any

from taxflow.models import QUEUE_COMPLETED, QUEUE_NEEDS_REVIEW, GateResult

VALID_NIF_FIRST_DIGITS = frozenset("12356789")
NIF_WEIGHTS = (9, 8, 7, 6, 5, 4, 3, 2)

VALID_INCOME_CATEGORIES = frozenset({"A", "B", "E", "F", "G", "H", "R"})

# Union of official withholding rates across categories B, E, F and R.
KNOWN_WITHHOLDING_RATES = (11.5, 16.5, 20.0, 23.0, 25.0, 28.0)
KNOWN_RATE_TOLERANCE = 2.0
EXEMPT_RATE_THRESHOLD = 0.5
LOW_RATE_THRESHOLD = 5.0
HIGH_RATE_THRESHOLD = 35.0

MAX_FUTURE_DAYS = 366
MAX_PAST_DAYS = 6 * 365
MIN_NAME_LENGTH = 3

PENALTY_NAME = 0.95
PENALTY_DATE_MISSING = 0.90
PENALTY_DATE_IMPLAUSIBLE = 0.85
PENALTY_CATEGORY = 0.88
PENALTY_RATE_LOW = 0.95
PENALTY_RATE_HIGH = 0.92
PENALTY_RATE_UNCOMMON = 0.93
PENALTY_REFERENCE = 0.98

_DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%d-%m-%Y", "%Y/%m/%d")


@dataclass(frozen=True)
class NifCheck:
    valid: bool
    error: str | None = None


def validate_nif(value: Any) -> NifCheck:
    if value is None:
        return NifCheck(False, "nif missing")
    clean = re.sub(r"\s", "", str(value))
    if not re.fullmatch(r"\d{9}", clean):
        return NifCheck(False, "nif must have exactly 9 digits")
    if clean[0] not in VALID_NIF_FIRST_DIGITS:
        return NifCheck(False, "nif first digit invalid")
    total = sum(int(clean[i]) * NIF_WEIGHTS[i] for i in range(8))
    remainder = total % 11
    check_digit = 0 if remainder in (0, 1) else 11 - remainder
    if check_digit != int(clean[8]):
        return NifCheck(False, "nif check digit invalid")
    return NifCheck(True)


def _finite(value: float) -> float | None:
    return value if math.isfinite(value) else None


def parse_amount(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return _finite(float(value))
        except OverflowError:
            return None
    if not isinstance(value, str):
        return None
    raw = value.replace("€", "").replace("EUR", "").replace(" ", "").strip()
    if not raw:
        return None
    if "," in raw and "." in raw:
        if raw.rfind(",") > raw.rfind("."):
            raw = raw.replace(".", "").replace(",", ".")
        else:
            raw = raw.replace(",", "")
    elif "," in raw:
        raw = raw.replace(",", ".")
    try:
        return _finite(float(raw))
    except ValueError:
        return None


def parse_document_date(value: Any) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def _critical(field_name: str, message: str) -> GateResult:
    return GateResult(confidence=0.0, warnings=[message], critical_failure=True, failed_field=field_name)


def evaluate(record: Mapping[str, Any], *, today: date | None = None) -> GateResult:
    current = today or datetime.now(UTC).date()

    nif = record.get("beneficiary_nif")
    if nif is None or not str(nif).strip():
        return _critical("beneficiary_nif", "beneficiary_nif missing")
    nif_check = validate_nif(nif)
    if not nif_check.valid:
        return _critical("beneficiary_nif", f"beneficiary_nif invalid ({nif_check.error})")

    gross = parse_amount(record.get("gross_amount"))
    if gross is None:
        return _critical("gross_amount", "gross_amount missing")
    if gross <= 0:
        return _critical("gross_amount", "gross_amount must be greater than zero")

    withholding = parse_amount(record.get("withholding_amount"))
    if withholding is not None and withholding > gross:
        return _critical("withholding_amount", "withholding_amount exceeds gross_amount")

    confidence = 100.0
    warnings: list[str] = []

    name = record.get("beneficiary_name")
    if not isinstance(name, str) or len(name.strip()) < MIN_NAME_LENGTH:
        confidence *= PENALTY_NAME
        warnings.append("beneficiary_name missing or too short")

    raw_date = record.get("payment_date")
    if raw_date in (None, ""):
        confidence *= PENALTY_DATE_MISSING
        warnings.append("payment_date missing")
    else:
        payment_date = parse_document_date(raw_date)
        if payment_date is None:
            confidence *= PENALTY_DATE_IMPLAUSIBLE
            warnings.append("payment_date unreadable")
        elif (payment_date - current).days > MAX_FUTURE_DAYS or (current - payment_date).days > MAX_PAST_DAYS:
            confidence *= PENALTY_DATE_IMPLAUSIBLE
            warnings.append(f"payment_date {payment_date.isoformat()} outside plausible window")

    category = str(record.get("income_category") or "").strip().upper()
    if category not in VALID_INCOME_CATEGORIES:
        confidence *= PENALTY_CATEGORY
        warnings.append("income_category missing or unknown")

    if withholding is None or withholding <= 0:
        warnings.append("no withholding found (may be exempt)")
    else:
        rate = withholding / gross * 100.0
        if rate < EXEMPT_RATE_THRESHOLD:
            warnings.append(f"withholding rate {rate:.1f}% treated as exempt")
        elif rate < LOW_RATE_THRESHOLD:
            confidence *= PENALTY_RATE_LOW
            warnings.append(f"withholding rate {rate:.1f}% looks low (may still be valid)")
        elif rate > HIGH_RATE_THRESHOLD:
            confidence *= PENALTY_RATE_HIGH
            warnings.append(f"withholding rate {rate:.1f}% looks high")
        elif not any(abs(rate - known) < KNOWN_RATE_TOLERANCE for known in KNOWN_WITHHOLDING_RATES):
            confidence *= PENALTY_RATE_UNCOMMON
            warnings.append(f"withholding rate {rate:.1f}% does not match a common rate")

    if not record.get("document_reference"):
        confidence *= PENALTY_REFERENCE

    return GateResult(confidence=round(confidence, 2), warnings=warnings)


def admission_status(result: GateResult) -> str:
    return QUEUE_COMPLETED if result.admitted else QUEUE_NEEDS_REVIEW
