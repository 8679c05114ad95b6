from __future__ import annotations

from datetime import date

import pytest

from conftest import good_fields
from taxflow.confidence_gate import admission_status, evaluate, parse_amount, parse_document_date, validate_nif

TODAY = date(2026, 10, 19)


def test_clean_record_keeps_full_confidence():
    result = evaluate(good_fields(), today=TODAY)
    assert result.confidence == 100.0
    assert result.warnings == []
    assert result.admitted is True
    assert admission_status(result) == "completed"


@pytest.mark.parametrize(
    ("overrides", "field"),
    [
        ({"beneficiary_nif": None}, "beneficiary_nif"),
        ({"beneficiary_nif": "123456780"}, "beneficiary_nif"),
        ({"beneficiary_nif": "423456789"}, "beneficiary_nif"),
        ({"gross_amount": None}, "gross_amount"),
        ({"gross_amount": 0}, "gross_amount"),
        ({"gross_amount": -10}, "gross_amount"),
        ({"gross_amount": "NaN"}, "gross_amount"),
        ({"gross_amount": "inf"}, "gross_amount"),
        ({"gross_amount": float("nan")}, "gross_amount"),
        ({"gross_amount": float("-inf")}, "gross_amount"),
        ({"withholding_amount": 1500.0}, "withholding_amount"),
    ],
)
def test_critical_failures_zero_confidence_and_block_admission(overrides, field):
    result = evaluate(good_fields(**overrides), today=TODAY)
    assert result.critical_failure is True
    assert result.confidence == 0.0
    assert result.failed_field == field
    assert len(result.warnings) == 1
    assert admission_status(result) == "needs_review"


def test_first_critical_check_wins():
    result = evaluate(good_fields(beneficiary_nif="", gross_amount=0), today=TODAY)
    assert result.failed_field == "beneficiary_nif"


def test_informative_penalties_multiply():
    result = evaluate(good_fields(beneficiary_name="", income_category="Z"), today=TODAY)
    assert result.critical_failure is False
    assert result.confidence == 83.6
    assert "beneficiary_name missing or too short" in result.warnings
    assert "income_category missing or unknown" in result.warnings


@pytest.mark.parametrize(
    ("payment_date", "expected"),
    [
        (None, 90.0),
        ("not a date", 85.0),
        ("2028-01-01", 85.0),
        ("2019-01-01", 85.0),
        ("15/03/2026", 100.0),
    ],
)
def test_payment_date_plausibility(payment_date, expected):
    assert evaluate(good_fields(payment_date=payment_date), today=TODAY).confidence == expected


@pytest.mark.parametrize(
    ("withholding", "expected", "warned"),
    [
        (30.0, 95.0, True),
        (400.0, 92.0, True),
        (80.0, 93.0, True),
        (165.0, 100.0, False),
        (3.0, 100.0, True),
        (None, 100.0, True),
    ],
)
def test_withholding_rate_checks(withholding, expected, warned):
    result = evaluate(good_fields(withholding_amount=withholding), today=TODAY)
    assert result.confidence == expected
    assert bool(result.warnings) is warned


def test_missing_reference_is_a_silent_small_penalty():
    result = evaluate(good_fields(document_reference=""), today=TODAY)
    assert result.confidence == 98.0
    assert result.warnings == []


def test_amount_and_date_parsing():
    assert parse_amount("1.234,56 €") == 1234.56
    assert parse_amount("1,234.56") == 1234.56
    assert parse_amount("12,5") == 12.5
    assert parse_amount(True) is None
    assert parse_amount("abc") is None
    assert parse_amount("nan") is None
    assert parse_amount(float("inf")) is None
    assert parse_amount(10**400) is None
    assert parse_document_date("2026-03-15T10:00:00Z") == date(2026, 3, 15)
    assert parse_document_date("15-03-2026") == date(2026, 3, 15)
    assert parse_document_date("") is None


def test_nif_check_digit():
    assert validate_nif("123456789").valid is True
    assert validate_nif("501 234 560").valid is True
    check = validate_nif("12345678")
    assert check.valid is False
    assert check.error == "nif must have exactly 9 digits"
    assert validate_nif("123456788").error == "nif check digit invalid"
