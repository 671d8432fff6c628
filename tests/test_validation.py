import os
import sys
from dataclasses import replace
from datetime import datetime
from pathlib import Path

import pytest

os.environ.setdefault("DATABASE_URL", "")
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from schemas.order_schemas import CanonicalOrder, Category, Customer, DisputeState
from services.classifier import classify_order
from services.errors import AmbiguousRecoveryError
from services.validation import (
    apply_fixes_and_revalidate,
    check_order,
    force_approve,
    validate_order,
)


def make_order(**overrides):
    fields = dict(
        id="#1001",
        occurred_at=datetime(2024, 1, 5),
        customer=Customer(email="a@b.com"),
        tags=["chargeback", "urgent"],
    )
    fields.update(overrides)
    return CanonicalOrder(**fields)


def run_import(order, category=Category.AUTO, previous=None):
    return validate_order(classify_order(order, category), category, previous)


def test_valid_example_keeps_classification():
    result = run_import(make_order())
    assert result.category == Category.DISPUTE_OPEN
    assert result.dispute_state == DisputeState.NEEDS_RESPONSE
    assert result.risk_flag is True
    assert result.original_category == Category.DISPUTE_OPEN
    assert result.validation_error is None


def test_bad_email_quarantines_and_remembers_category():
    result = run_import(make_order(customer=Customer(email="not-an-email")))
    assert result.category == Category.INVALID
    assert "Invalid Email" in result.validation_error
    assert result.original_category == Category.DISPUTE_OPEN
    assert result.risk_flag is False
    assert result.dispute_state == DisputeState.NONE


def test_reasons_are_joined():
    result = run_import(make_order(id="#ABC", occurred_at="garbage", customer=Customer(email=""), tags=[]))
    assert result.validation_error == "Invalid Order #, Invalid Date, Invalid Email, Missing Tags"


def test_explicit_category_stands_in_for_missing_tags():
    assert check_order(make_order(tags=[]), Category.RISK) == []
    assert check_order(make_order(tags=[]), Category.AUTO) == ["Missing Tags"]

    result = run_import(make_order(tags=[]), Category.DISPUTE_SUBMITTED)
    assert result.category == Category.DISPUTE_SUBMITTED
    assert result.dispute_state == DisputeState.UNDER_REVIEW


def test_quarantine_roundtrip_recovers_from_tags():
    first = run_import(make_order(tags=[]))
    assert first.category == Category.INVALID
    assert "Missing Tags" in first.validation_error

    second = run_import(make_order(tags=["chargeback"]), previous=first)
    assert second.category == Category.DISPUTE_OPEN
    assert second.dispute_state == DisputeState.NEEDS_RESPONSE
    assert second.risk_flag is True
    assert second.validation_error is None


def test_original_category_frozen_while_invalid():
    bad = Customer(email="nope")
    first = run_import(make_order(customer=bad, tags=["won"]))
    assert first.original_category == Category.DISPUTE_WON

    second = run_import(make_order(customer=bad, tags=["lost"]), previous=first)
    assert second.category == Category.INVALID
    assert second.original_category == Category.DISPUTE_WON


def test_recovery_prefers_remembered_category():
    first = run_import(make_order(customer=Customer(email="nope"), tags=["won"]))
    recovered = run_import(make_order(tags=["chargeback"]), previous=first)
    assert recovered.category == Category.DISPUTE_WON
    assert recovered.dispute_state == DisputeState.WON
    assert recovered.original_category == Category.DISPUTE_WON


def test_recovery_without_memory_or_tags_falls_back_to_risk():
    first = run_import(make_order(tags=[]))
    assert first.original_category == Category.AUTO

    recovered = run_import(make_order(tags=["misc"]), previous=first)
    assert recovered.category == Category.RISK
    assert recovered.risk_flag is True
    assert recovered.dispute_state == DisputeState.NONE


def test_force_approve_refuses_to_guess():
    quarantined = run_import(make_order(customer=Customer(email="x"), tags=["misc"]))
    with pytest.raises(AmbiguousRecoveryError) as exc:
        force_approve(quarantined)
    assert "#1001" in str(exc.value)


def test_force_approve_with_disambiguating_tag():
    quarantined = run_import(make_order(customer=Customer(email="x"), tags=["won"]))
    approved = force_approve(quarantined)
    assert approved.category == Category.DISPUTE_WON
    assert approved.dispute_state == DisputeState.WON
    assert approved.validation_error is None


def test_apply_fixes_recovers_quarantined_order():
    quarantined = run_import(make_order(customer=Customer(email="broken", display_name="Ada")))
    fixed = apply_fixes_and_revalidate(quarantined, {"customer": {"email": "ada@example.com"}})

    assert fixed.category == Category.DISPUTE_OPEN
    assert fixed.dispute_state == DisputeState.NEEDS_RESPONSE
    assert fixed.customer.display_name == "Ada"
    assert fixed.customer.email == "ada@example.com"


def test_apply_fixes_can_quarantine_a_valid_order():
    valid = run_import(make_order())
    broken = apply_fixes_and_revalidate(valid, {"tags": ""})
    assert broken.category == Category.INVALID
    assert broken.validation_error == "Missing Tags"
    assert broken.original_category == Category.DISPUTE_OPEN


def test_apply_fixes_parses_dates_and_rejects_unknown_fields():
    quarantined = run_import(make_order(occurred_at="??"))
    fixed = apply_fixes_and_revalidate(quarantined, {"occurred_at": "2024-03-01"})
    assert fixed.occurred_at == datetime(2024, 3, 1)
    assert fixed.category == Category.DISPUTE_OPEN

    with pytest.raises(ValueError):
        apply_fixes_and_revalidate(quarantined, {"category": "RISK"})
    with pytest.raises(ValueError):
        apply_fixes_and_revalidate(quarantined, {"customer": {"shoe_size": 9}})


def test_quarantined_invariants_hold():
    result = run_import(replace(make_order(), customer=Customer(email="bad")))
    assert result.is_invalid
    assert result.validation_error
    assert result.risk_flag is False
    assert result.dispute_state == DisputeState.NONE


def test_explicit_category_overrides_memory_on_recovery():
    first = run_import(make_order(customer=Customer(email="nope"), tags=["won"]))
    assert first.original_category == Category.DISPUTE_WON

    recovered = run_import(make_order(tags=["misc"]), Category.DISPUTE_SUBMITTED, previous=first)
    assert recovered.category == Category.DISPUTE_SUBMITTED
    assert recovered.dispute_state == DisputeState.UNDER_REVIEW
    assert recovered.risk_flag is True
    assert recovered.original_category == Category.DISPUTE_SUBMITTED
    assert "Imported: Dispute Submitted" in recovered.tags
