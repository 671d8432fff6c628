import os
import sys
from pathlib import Path

import pytest

os.environ.setdefault("DATABASE_URL", "")
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from schemas.order_schemas import CanonicalOrder, Category, DisputeState
from services.classifier import classify, classify_order, detect_category_from_tags


@pytest.mark.parametrize(
    "category,state,risk",
    [
        (Category.RISK, DisputeState.NONE, True),
        (Category.DISPUTE_OPEN, DisputeState.NEEDS_RESPONSE, True),
        (Category.DISPUTE_SUBMITTED, DisputeState.UNDER_REVIEW, True),
        (Category.DISPUTE_WON, DisputeState.WON, False),
        (Category.DISPUTE_LOST, DisputeState.LOST, False),
    ],
)
def test_explicit_mode_table(category, state, risk):
    result = classify([], False, category)
    assert result.category == category
    assert result.dispute_state == state
    assert result.risk_flag is risk
    assert result.injected_tag


def test_explicit_terminal_states_leave_risk_hint_alone():
    assert classify([], True, Category.DISPUTE_WON).risk_flag is True
    assert classify([], True, Category.DISPUTE_LOST).risk_flag is True


def test_explicit_mode_ignores_tags():
    result = classify(["won"], False, Category.DISPUTE_OPEN)
    assert result.category == Category.DISPUTE_OPEN
    assert result.dispute_state == DisputeState.NEEDS_RESPONSE


@pytest.mark.parametrize(
    "tags,expected",
    [
        (["chargeback", "won"], Category.DISPUTE_WON),
        (["Submitted", "LOST"], Category.DISPUTE_LOST),
        (["Under Review", "dispute"], Category.DISPUTE_SUBMITTED),
        (["fraud", "Chargeback"], Category.DISPUTE_OPEN),
        (["open dispute"], Category.DISPUTE_OPEN),
        (["HIGH"], Category.RISK),
        (["risk-review"], Category.RISK),
        (["misc"], None),
        ([], None),
    ],
)
def test_detect_category_priority(tags, expected):
    assert detect_category_from_tags(tags) == expected


def test_auto_mode_match_sets_state_without_injecting():
    result = classify(["chargeback", "urgent"], False)
    assert result.category == Category.DISPUTE_OPEN
    assert result.dispute_state == DisputeState.NEEDS_RESPONSE
    assert result.risk_flag is True
    assert result.injected_tag is None


def test_auto_mode_no_match_stays_at_baseline():
    result = classify(["misc"], True)
    assert result.category == Category.AUTO
    assert result.dispute_state == DisputeState.NONE
    assert result.risk_flag is True
    assert classify(["misc"], False).risk_flag is False


def test_invalid_cannot_be_chosen():
    with pytest.raises(ValueError):
        classify([], False, Category.INVALID)


def test_injected_tag_is_idempotent():
    order = CanonicalOrder(id="#1", tags=["imported: dispute open"])
    once = classify_order(order, Category.DISPUTE_OPEN)
    assert once.tags == ["imported: dispute open"]

    fresh = classify_order(CanonicalOrder(id="#2", tags=["vip"]), Category.DISPUTE_OPEN)
    twice = classify_order(fresh, Category.DISPUTE_OPEN)
    assert twice.tags == ["vip", "Imported: Dispute Open"]
