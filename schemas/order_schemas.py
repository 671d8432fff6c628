"""
Canonical Order Schemas
=======================

Every order, whether it came from a CSV export or the live order feed, is
mapped onto ``CanonicalOrder`` before classification, validation and merge.
Nothing downstream of the adapters looks at source-specific shapes.

DISPUTE RANK:
-------------
NONE (0) < NEEDS_RESPONSE (1) < UNDER_REVIEW (2) < WON / LOST (3)

WON and LOST share the terminal rank; neither replaces the other on merge.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional, Union
import logging

logger = logging.getLogger(__name__)


# =============================================================================
# ENUMERATIONS
# =============================================================================

class DisputeState(str, Enum):
    """Chargeback lifecycle. Values are the persisted labels."""
    NONE = "none"
    NEEDS_RESPONSE = "open"
    UNDER_REVIEW = "submitted"
    WON = "won"
    LOST = "lost"


DISPUTE_RANK: Dict[DisputeState, int] = {
    DisputeState.NONE: 0,
    DisputeState.NEEDS_RESPONSE: 1,
    DisputeState.UNDER_REVIEW: 2,
    DisputeState.WON: 3,
    DisputeState.LOST: 3,
}


def dispute_rank(state: Optional[Union[DisputeState, str]]) -> int:
    """Rank used by the merge rule; unknown or missing labels rank as NONE."""
    if state is None:
        return 0
    try:
        return DISPUTE_RANK[DisputeState(state)]
    except ValueError:
        return 0


class Category(str, Enum):
    """Operator-facing bucket. AUTO is also the 'unclassified' bucket."""
    AUTO = "AUTO"
    RISK = "RISK"
    DISPUTE_OPEN = "DISPUTE_OPEN"
    DISPUTE_SUBMITTED = "DISPUTE_SUBMITTED"
    DISPUTE_WON = "DISPUTE_WON"
    DISPUTE_LOST = "DISPUTE_LOST"
    INVALID = "INVALID"


# Categories an operator may pick on import (INVALID is only ever assigned).
OPERATOR_CATEGORIES = (
    Category.AUTO,
    Category.RISK,
    Category.DISPUTE_OPEN,
    Category.DISPUTE_SUBMITTED,
    Category.DISPUTE_WON,
    Category.DISPUTE_LOST,
)


def is_concrete_category(category: Optional[Union[Category, str]]) -> bool:
    """True for a category that can be restored as-is (not AUTO, not INVALID)."""
    if category is None:
        return False
    try:
        value = Category(category)
    except ValueError:
        return False
    return value not in (Category.AUTO, Category.INVALID)


def parse_operator_category(value: Optional[str]) -> Category:
    """Parse the operator's selector; blank means AUTO."""
    text = (value or "").strip().upper()
    if not text:
        return Category.AUTO
    try:
        category = Category(text)
    except ValueError:
        raise ValueError(
            f"Unknown category {value!r}. Must be one of: "
            f"{', '.join(c.value for c in OPERATOR_CATEGORIES)}"
        )
    if category not in OPERATOR_CATEGORIES:
        raise ValueError(f"Category {category.value} cannot be selected on import")
    return category


class PaymentState(str, Enum):
    PAID = "PAID"
    PENDING = "PENDING"
    REFUNDED = "REFUNDED"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"
    VOIDED = "VOIDED"


class FulfillmentState(str, Enum):
    FULFILLED = "FULFILLED"
    PARTIAL = "PARTIAL"
    UNFULFILLED = "UNFULFILLED"


class DeliveryStatus(str, Enum):
    DELIVERED = "DELIVERED"
    NO_STATUS = "NO_STATUS"


def map_payment_state(raw: Optional[str]) -> PaymentState:
    s = (raw or "").strip().lower().replace(" ", "_")
    mapping = {
        "paid": PaymentState.PAID,
        "pending": PaymentState.PENDING,
        "refunded": PaymentState.REFUNDED,
        "partially_refunded": PaymentState.PARTIALLY_REFUNDED,
        "voided": PaymentState.VOIDED,
    }
    return mapping.get(s, PaymentState.PENDING)


def map_fulfillment_state(raw: Optional[str]) -> FulfillmentState:
    s = (raw or "").strip().lower()
    mapping = {
        "fulfilled": FulfillmentState.FULFILLED,
        "partial": FulfillmentState.PARTIAL,
        "unfulfilled": FulfillmentState.UNFULFILLED,
    }
    return mapping.get(s, FulfillmentState.UNFULFILLED)


# =============================================================================
# TAG HELPERS
# =============================================================================

def normalize_tags(tags: Any) -> List[str]:
    """Split/trim tags and drop case-insensitive duplicates, keeping first spelling."""
    if tags is None:
        return []
    if isinstance(tags, str):
        items = tags.split(",")
    else:
        items = list(tags)

    seen = set()
    result: List[str] = []
    for item in items:
        text = str(item).strip() if item is not None else ""
        if not text:
            continue
        key = text.casefold()
        if key in seen:
            continue
        seen.add(key)
        result.append(text)
    return result


def add_tag(tags: List[str], tag: Optional[str]) -> List[str]:
    """Return tags with ``tag`` appended unless already present (case-folded)."""
    if not tag:
        return list(tags)
    if any(t.casefold() == tag.casefold() for t in tags):
        return list(tags)
    return list(tags) + [tag]


# =============================================================================
# DATACLASSES
# =============================================================================

@dataclass
class Customer:
    email: str = ""
    display_name: str = "Guest"
    location: str = "Unknown"
    prior_order_count: int = 0
    customer_id: Optional[str] = None


@dataclass
class Money:
    total: Decimal = Decimal("0")
    currency: str = "USD"


@dataclass
class CanonicalOrder:
    """One order as the pipeline sees it. Built fresh on every import."""
    id: str
    occurred_at: Union[datetime, str, None] = None
    customer: Customer = field(default_factory=Customer)
    amount: Money = field(default_factory=Money)
    payment_state: PaymentState = PaymentState.PENDING
    fulfillment_state: FulfillmentState = FulfillmentState.UNFULFILLED
    delivery_status: DeliveryStatus = DeliveryStatus.NO_STATUS
    delivery_method: str = ""
    channel: str = ""
    items_count: int = 0
    tags: List[str] = field(default_factory=list)
    native_risk_hint: bool = False
    is_cancelled: bool = False
    risk_flag: bool = False
    dispute_state: DisputeState = DisputeState.NONE
    category: Category = Category.AUTO
    original_category: Optional[Category] = None
    validation_error: Optional[str] = None
    extra_fields: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_invalid(self) -> bool:
        return self.category == Category.INVALID

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe snapshot stored in the ``data`` column."""
        if isinstance(self.occurred_at, datetime):
            occurred = self.occurred_at.isoformat()
        else:
            occurred = self.occurred_at
        return {
            "id": self.id,
            "occurred_at": occurred,
            "customer": {
                "email": self.customer.email,
                "display_name": self.customer.display_name,
                "location": self.customer.location,
                "prior_order_count": self.customer.prior_order_count,
                "customer_id": self.customer.customer_id,
            },
            "amount": {
                "total": str(self.amount.total),
                "currency": self.amount.currency,
            },
            "payment_state": self.payment_state.value,
            "fulfillment_state": self.fulfillment_state.value,
            "delivery_status": self.delivery_status.value,
            "delivery_method": self.delivery_method,
            "channel": self.channel,
            "items_count": self.items_count,
            "tags": list(self.tags),
            "native_risk_hint": self.native_risk_hint,
            "is_cancelled": self.is_cancelled,
            "risk_flag": self.risk_flag,
            "dispute_state": self.dispute_state.value,
            "category": self.category.value,
            "original_category": self.original_category.value if self.original_category else None,
            "validation_error": self.validation_error,
            "extra_fields": dict(self.extra_fields),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CanonicalOrder":
        """Rebuild a snapshot; tolerant of older/partial payloads."""
        customer = data.get("customer") or {}
        amount = data.get("amount") or {}

        occurred = data.get("occurred_at")
        if isinstance(occurred, str) and occurred:
            try:
                occurred = datetime.fromisoformat(occurred)
            except ValueError:
                pass

        try:
            total = Decimal(str(amount.get("total", "0") or "0"))
        except InvalidOperation:
            total = Decimal("0")

        original = data.get("original_category")

        return cls(
            id=str(data.get("id", "")),
            occurred_at=occurred,
            customer=Customer(
                email=customer.get("email") or "",
                display_name=customer.get("display_name") or "Guest",
                location=customer.get("location") or "Unknown",
                prior_order_count=int(customer.get("prior_order_count") or 0),
                customer_id=customer.get("customer_id"),
            ),
            amount=Money(total=total, currency=amount.get("currency") or "USD"),
            payment_state=map_payment_state(data.get("payment_state")),
            fulfillment_state=map_fulfillment_state(data.get("fulfillment_state")),
            delivery_status=DeliveryStatus(data.get("delivery_status") or DeliveryStatus.NO_STATUS.value),
            delivery_method=data.get("delivery_method") or "",
            channel=data.get("channel") or "",
            items_count=int(data.get("items_count") or 0),
            tags=normalize_tags(data.get("tags")),
            native_risk_hint=bool(data.get("native_risk_hint")),
            is_cancelled=bool(data.get("is_cancelled")),
            risk_flag=bool(data.get("risk_flag")),
            dispute_state=DisputeState(data.get("dispute_state") or DisputeState.NONE.value),
            category=Category(data.get("category") or Category.AUTO.value),
            original_category=Category(original) if original else None,
            validation_error=data.get("validation_error"),
            extra_fields=dict(data.get("extra_fields") or {}),
        )


@dataclass
class PersistedOrderRecord:
    """Merge target, one per (owner_id, order_id)."""
    owner_id: str
    order_id: str
    latest_dispute_status: DisputeState
    latest_risk_label: Optional[str]
    sources: Dict[str, bool]
    snapshot: CanonicalOrder

    @property
    def risk_flag(self) -> bool:
        return self.latest_risk_label == "high"

    def to_row(self) -> Dict[str, Any]:
        """Column dict for the ``orders`` table upsert."""
        return {
            "owner_id": self.owner_id,
            "order_id": self.order_id,
            "category": self.snapshot.category.value,
            "latest_dispute_status": self.latest_dispute_status.value,
            "latest_risk_label": self.latest_risk_label,
            "sources": dict(self.sources),
            "data": self.snapshot.to_dict(),
        }


class OrderView(str, Enum):
    """Dashboard tabs. Quarantined orders only ever show under DATA_ISSUES (and ALL)."""
    ALL = "all"
    RISK = "risk"
    DISPUTES = "disputes"
    HISTORY = "history"
    DATA_ISSUES = "data_issues"
