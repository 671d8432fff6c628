"""
Feed Mapping Service
Maps already-fetched order-feed nodes (GraphQL shape) onto CanonicalOrder.
Transport, paging and proxy fallback live outside this module.
"""
from typing import Any, Dict, Iterable, List, Optional, Tuple
import logging

from schemas.order_schemas import (
    CanonicalOrder,
    Customer,
    DeliveryStatus,
    FulfillmentState,
    Money,
    map_fulfillment_state,
    map_payment_state,
    normalize_tags,
)
from services.csv_processor import as_decimal, parse_datetime

logger = logging.getLogger(__name__)

DEFAULT_FEED_CHANNEL = "Online Store"

# Keys consumed by the mapping; anything else on the node is kept in extra_fields.
MODELED_KEYS = {
    "name", "createdAt", "riskLevel", "displayFinancialStatus",
    "displayFulfillmentStatus", "tags", "cancelReason", "totalPriceSet",
    "totalPrice", "customer", "app", "shippingLine", "lineItems",
}


def _unwrap(node: Dict[str, Any]) -> Dict[str, Any]:
    """Accept either a bare node or a ``{"node": {...}}`` edge."""
    if isinstance(node, dict) and isinstance(node.get("node"), dict):
        return node["node"]
    return node or {}


def _money(node: Dict[str, Any]) -> Money:
    money = ((node.get("totalPriceSet") or {}).get("shopMoney")) or node.get("totalPrice") or {}
    if not isinstance(money, dict):
        # bare amount string
        return Money(total=as_decimal(str(money)), currency="USD")
    return Money(
        total=as_decimal(str(money.get("amount") or "0")),
        currency=(money.get("currencyCode") or "USD").upper(),
    )


def _customer(raw: Optional[Dict[str, Any]]) -> Customer:
    if not raw:
        return Customer(email="", display_name="Guest", location="Unknown", prior_order_count=0)

    name = f"{raw.get('firstName') or ''} {raw.get('lastName') or ''}".strip()
    address = raw.get("defaultAddress") or {}
    parts = [address.get("city"), address.get("provinceCode"), address.get("countryCode")]
    location = ", ".join(p for p in parts if p) or "Unknown"

    try:
        orders_count = int(raw.get("ordersCount") or 0)
    except (TypeError, ValueError):
        orders_count = 0

    return Customer(
        email=raw.get("email") or "",
        display_name=name or "Guest",
        location=location,
        prior_order_count=orders_count,
        customer_id=raw.get("id"),
    )


def map_feed_node(node: Dict[str, Any]) -> CanonicalOrder:
    """Map one feed node onto the canonical shape (unclassified)."""
    node = _unwrap(node)

    tags = normalize_tags(node.get("tags"))
    risk_level = str(node.get("riskLevel") or "").upper()
    cancel_reason = str(node.get("cancelReason") or "").lower()
    native_risk = risk_level in ("HIGH", "MEDIUM") or cancel_reason == "fraud"

    raw_date = node.get("createdAt") or ""
    occurred = parse_datetime(raw_date)

    fulfillment = map_fulfillment_state(node.get("displayFulfillmentStatus"))
    line_items = node.get("lineItems") or {}
    if isinstance(line_items, dict):
        line_items = line_items.get("edges") or []

    return CanonicalOrder(
        id=str(node.get("name") or "").strip(),
        occurred_at=occurred if occurred is not None else raw_date,
        customer=_customer(node.get("customer")),
        amount=_money(node),
        payment_state=map_payment_state(node.get("displayFinancialStatus")),
        fulfillment_state=fulfillment,
        delivery_status=(
            DeliveryStatus.DELIVERED if fulfillment == FulfillmentState.FULFILLED
            else DeliveryStatus.NO_STATUS
        ),
        delivery_method=((node.get("shippingLine") or {}).get("title")) or "Standard",
        channel=((node.get("app") or {}).get("name")) or DEFAULT_FEED_CHANNEL,
        items_count=len(line_items),
        tags=tags,
        native_risk_hint=native_risk,
        is_cancelled=bool(cancel_reason),
        extra_fields={k: v for k, v in node.items() if k not in MODELED_KEYS},
    )


def map_feed_nodes(nodes: Iterable[Dict[str, Any]]) -> Tuple[List[CanonicalOrder], int]:
    """Map a page of nodes; nodes without a name carry no identity and are dropped.

    Returns the mapped orders and the number of dropped nodes.
    """
    orders: List[CanonicalOrder] = []
    skipped = 0
    for node in nodes:
        order = map_feed_node(node)
        if not order.id:
            skipped += 1
            continue
        orders.append(order)
    if skipped:
        logger.info("Feed: dropped %d nodes without an order name", skipped)
    return orders, skipped
