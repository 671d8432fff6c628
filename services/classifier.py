"""
Order Classifier
Decides category, dispute state and risk flag for an order, either from the
operator's explicit category or by scanning its tags.
"""
from dataclasses import dataclass, replace
from typing import Dict, Iterable, Optional, Sequence, Tuple
import logging

from schemas.order_schemas import CanonicalOrder, Category, DisputeState, add_tag

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Classification:
    category: Category
    dispute_state: DisputeState
    risk_flag: bool
    injected_tag: Optional[str] = None


# category -> (dispute state, risk flag); None leaves the source's risk hint in place
CATEGORY_OUTCOMES: Dict[Category, Tuple[DisputeState, Optional[bool]]] = {
    Category.AUTO: (DisputeState.NONE, None),
    Category.RISK: (DisputeState.NONE, True),
    Category.DISPUTE_OPEN: (DisputeState.NEEDS_RESPONSE, True),
    Category.DISPUTE_SUBMITTED: (DisputeState.UNDER_REVIEW, True),
    Category.DISPUTE_WON: (DisputeState.WON, None),
    Category.DISPUTE_LOST: (DisputeState.LOST, None),
}

# Checked top to bottom, first hit wins. Terminal outcomes outrank an
# in-progress dispute, which outranks a bare risk tag.
TAG_RULES: Tuple[Tuple[Category, Tuple[str, ...]], ...] = (
    (Category.DISPUTE_WON, ("won",)),
    (Category.DISPUTE_LOST, ("lost",)),
    (Category.DISPUTE_SUBMITTED, ("submitted", "under review", "under-review", "under_review")),
    (Category.DISPUTE_OPEN, ("chargeback", "dispute")),
    (Category.RISK, ("fraud", "risk", "high")),
)

INJECTED_TAGS: Dict[Category, str] = {
    Category.RISK: "Imported: High Risk",
    Category.DISPUTE_OPEN: "Imported: Dispute Open",
    Category.DISPUTE_SUBMITTED: "Imported: Dispute Submitted",
    Category.DISPUTE_WON: "Imported: Dispute Won",
    Category.DISPUTE_LOST: "Imported: Dispute Lost",
}


def detect_category_from_tags(tags: Iterable[str]) -> Optional[Category]:
    """Return the first matching category for the tags, or None."""
    lowered = [t.casefold() for t in tags if t]
    for category, needles in TAG_RULES:
        if any(needle in tag for tag in lowered for needle in needles):
            return category
    return None


def category_outcome(category: Category, native_risk_hint: bool) -> Tuple[DisputeState, bool]:
    """Dispute state and risk flag implied by a concrete category."""
    state, risk = CATEGORY_OUTCOMES.get(category, (DisputeState.NONE, None))
    return state, native_risk_hint if risk is None else risk


def classify(
    raw_tags: Sequence[str],
    native_risk_hint: bool,
    operator_category: Category = Category.AUTO,
) -> Classification:
    if operator_category == Category.INVALID:
        raise ValueError("INVALID is assigned by validation, not selectable on import")

    if operator_category != Category.AUTO:
        state, risk = category_outcome(operator_category, native_risk_hint)
        return Classification(
            category=operator_category,
            dispute_state=state,
            risk_flag=risk,
            injected_tag=INJECTED_TAGS.get(operator_category),
        )

    detected = detect_category_from_tags(raw_tags)
    if detected is None:
        return Classification(
            category=Category.AUTO,
            dispute_state=DisputeState.NONE,
            risk_flag=bool(native_risk_hint),
        )

    state, risk = category_outcome(detected, native_risk_hint)
    return Classification(category=detected, dispute_state=state, risk_flag=risk)


def apply_classification(order: CanonicalOrder, classification: Classification) -> CanonicalOrder:
    """Copy of ``order`` carrying the classification (marker tag added once)."""
    return replace(
        order,
        category=classification.category,
        dispute_state=classification.dispute_state,
        risk_flag=classification.risk_flag,
        tags=add_tag(order.tags, classification.injected_tag),
        validation_error=None,
    )


def classify_order(order: CanonicalOrder, operator_category: Category = Category.AUTO) -> CanonicalOrder:
    return apply_classification(
        order, classify(order.tags, order.native_risk_hint, operator_category)
    )
