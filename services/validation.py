"""
Order Validation Service
Quarantine state machine: VALID <-> INVALID.

Runs after classification on every import and may override it. A quarantined
order carries category INVALID, no risk flag, no dispute, and the reasons it
failed. The category it would otherwise have had is remembered in
``original_category`` so a later clean import can put it back.
"""
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging
import re

from schemas.order_schemas import (
    CanonicalOrder,
    Category,
    Customer,
    DisputeState,
    is_concrete_category,
    normalize_tags,
)
from services.classifier import category_outcome, detect_category_from_tags
from services.csv_processor import parse_datetime
from services.errors import AmbiguousRecoveryError

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
DIGIT_PATTERN = re.compile(r"\d")

REASON_ID = "Invalid Order #"
REASON_DATE = "Invalid Date"
REASON_EMAIL = "Invalid Email"
REASON_TAGS = "Missing Tags"


def _is_parseable_date(value: Any) -> bool:
    if isinstance(value, datetime):
        return True
    return parse_datetime(value) is not None


def check_order(order: CanonicalOrder, operator_category: Category = Category.AUTO) -> List[str]:
    """Structural checks; returns the failure reasons (empty when valid)."""
    reasons: List[str] = []
    if not order.id or not DIGIT_PATTERN.search(order.id):
        reasons.append(REASON_ID)
    if not _is_parseable_date(order.occurred_at):
        reasons.append(REASON_DATE)
    if not order.customer.email or not EMAIL_PATTERN.match(order.customer.email):
        reasons.append(REASON_EMAIL)
    # an explicit operator category stands in for missing tags
    if not order.tags and operator_category == Category.AUTO:
        reasons.append(REASON_TAGS)
    return reasons


def quarantine(
    order: CanonicalOrder,
    reasons: List[str],
    previous: Optional[CanonicalOrder] = None,
) -> CanonicalOrder:
    """Move an order into INVALID, freezing the last good category."""
    if previous is not None and previous.is_invalid:
        remembered = previous.original_category
    else:
        remembered = order.category if order.category != Category.INVALID else order.original_category

    return replace(
        order,
        category=Category.INVALID,
        original_category=remembered,
        validation_error=", ".join(reasons),
        risk_flag=False,
        dispute_state=DisputeState.NONE,
    )


def recover(
    order: CanonicalOrder,
    remembered: Optional[Category],
    operator_category: Category = Category.AUTO,
) -> CanonicalOrder:
    """INVALID -> VALID on re-import.

    An explicit operator category is restored as chosen. Under AUTO it is
    memory first, then tags, then RISK: a formerly broken order always gets
    another look rather than being treated as safe.
    """
    if operator_category != Category.AUTO:
        category = operator_category
        source = "operator"
    elif is_concrete_category(remembered):
        category = Category(remembered)
        source = "memory"
    else:
        category = detect_category_from_tags(order.tags)
        source = "tags"
        if category is None:
            category = Category.RISK
            source = "fallback"

    state, risk = category_outcome(category, order.native_risk_hint)
    logger.info("Order %s recovered from quarantine as %s (%s)", order.id, category.value, source)
    return replace(
        order,
        category=category,
        original_category=category,
        validation_error=None,
        dispute_state=state,
        risk_flag=risk,
    )


def validate_order(
    order: CanonicalOrder,
    operator_category: Category = Category.AUTO,
    previous: Optional[CanonicalOrder] = None,
) -> CanonicalOrder:
    """Validate a freshly classified order against its previously persisted snapshot."""
    reasons = check_order(order, operator_category)
    if reasons:
        logger.info("Order %s quarantined: %s", order.id, ", ".join(reasons))
        return quarantine(order, reasons, previous)

    was_invalid = order.is_invalid or (previous is not None and previous.is_invalid)
    if was_invalid:
        if previous is not None and previous.is_invalid:
            remembered = previous.original_category
        else:
            remembered = order.original_category
        return recover(order, remembered, operator_category)

    return replace(order, original_category=order.category, validation_error=None)


def force_approve(order: CanonicalOrder) -> CanonicalOrder:
    """Manual approval out of quarantine. Refuses to guess.

    Raises AmbiguousRecoveryError when the tags do not identify a category.
    """
    category = detect_category_from_tags(order.tags)
    if category is None:
        raise AmbiguousRecoveryError(order.id)

    state, risk = category_outcome(category, order.native_risk_hint)
    logger.info("Order %s manually approved as %s", order.id, category.value)
    return replace(
        order,
        category=category,
        original_category=category,
        dispute_state=state,
        risk_flag=risk,
        validation_error=None,
    )


def apply_fixes_and_revalidate(
    order: CanonicalOrder,
    updates: Dict[str, Any],
    operator_category: Category = Category.AUTO,
) -> CanonicalOrder:
    """Merge operator edits into an order and immediately re-check it."""
    changes = dict(updates or {})
    customer_updates = changes.pop("customer", None) or {}
    if "tags" in changes:
        changes["tags"] = normalize_tags(changes["tags"])
    if "occurred_at" in changes and isinstance(changes["occurred_at"], str):
        parsed = parse_datetime(changes["occurred_at"])
        if parsed is not None:
            changes["occurred_at"] = parsed

    allowed = set(CanonicalOrder.__dataclass_fields__) - {
        "id", "category", "original_category", "validation_error", "risk_flag", "dispute_state",
    }
    unknown = set(changes) - allowed
    if unknown:
        raise ValueError(f"Fields cannot be edited: {', '.join(sorted(unknown))}")

    customer = order.customer
    if customer_updates:
        customer_allowed = set(Customer.__dataclass_fields__)
        bad = set(customer_updates) - customer_allowed
        if bad:
            raise ValueError(f"Customer fields cannot be edited: {', '.join(sorted(bad))}")
        customer = replace(customer, **customer_updates)

    edited = replace(order, customer=customer, **changes)
    return validate_order(edited, operator_category, previous=order)
