"""
Order Schemas Package
Canonical order shape shared by the CSV and feed adapters, classifier,
validator and reconciler.
"""

from .order_schemas import (
    # Enumerations
    DisputeState,
    Category,
    PaymentState,
    FulfillmentState,
    DeliveryStatus,
    OrderView,
    OPERATOR_CATEGORIES,
    DISPUTE_RANK,

    # Dataclasses
    Customer,
    Money,
    CanonicalOrder,
    PersistedOrderRecord,

    # Helper functions
    dispute_rank,
    is_concrete_category,
    parse_operator_category,
    map_payment_state,
    map_fulfillment_state,
    normalize_tags,
    add_tag,
)
