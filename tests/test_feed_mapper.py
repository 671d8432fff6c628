import os
import sys
from datetime import datetime
from decimal import Decimal
from pathlib import Path

os.environ.setdefault("DATABASE_URL", "")
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from schemas.order_schemas import DeliveryStatus, FulfillmentState, PaymentState
from services.feed_mapper import DEFAULT_FEED_CHANNEL, map_feed_node, map_feed_nodes


def _node(**overrides):
    node = {
        "id": "gid://shopify/Order/1",
        "name": "#2001",
        "createdAt": "2024-02-01T10:00:00Z",
        "riskLevel": "HIGH",
        "displayFinancialStatus": "PAID",
        "displayFulfillmentStatus": "FULFILLED",
        "tags": ["Chargeback", "vip"],
        "totalPriceSet": {"shopMoney": {"amount": "19.99", "currencyCode": "eur"}},
        "customer": {
            "id": "gid://shopify/Customer/9",
            "firstName": "Ada",
            "lastName": "L",
            "email": "ada@example.com",
            "ordersCount": "3",
            "defaultAddress": {"city": "Paris", "countryCode": "FR"},
        },
        "lineItems": {"edges": [{"node": {}}, {"node": {}}]},
        "shippingLine": {"title": "Express"},
    }
    node.update(overrides)
    return node


def test_map_feed_node_full_shape():
    order = map_feed_node(_node())

    assert order.id == "#2001"
    assert order.occurred_at == datetime(2024, 2, 1, 10, 0)
    assert order.amount.total == Decimal("19.99")
    assert order.amount.currency == "EUR"
    assert order.customer.display_name == "Ada L"
    assert order.customer.location == "Paris, FR"
    assert order.customer.prior_order_count == 3
    assert order.customer.customer_id == "gid://shopify/Customer/9"
    assert order.items_count == 2
    assert order.tags == ["Chargeback", "vip"]
    assert order.native_risk_hint is True
    assert order.payment_state == PaymentState.PAID
    assert order.fulfillment_state == FulfillmentState.FULFILLED
    assert order.delivery_status == DeliveryStatus.DELIVERED
    assert order.delivery_method == "Express"
    assert order.channel == DEFAULT_FEED_CHANNEL
    assert order.extra_fields == {"id": "gid://shopify/Order/1"}


def test_map_feed_node_accepts_edge_wrapper():
    order = map_feed_node({"node": _node(name="#2002")})
    assert order.id == "#2002"


def test_map_feed_node_without_customer_or_risk():
    order = map_feed_node(_node(customer=None, riskLevel="LOW", totalPriceSet=None, totalPrice={"amount": "5"}))
    assert order.customer.display_name == "Guest"
    assert order.customer.email == ""
    assert order.native_risk_hint is False
    assert order.amount.total == Decimal("5")
    assert order.amount.currency == "USD"


def test_fraud_cancellation_is_a_native_risk_hint():
    order = map_feed_node(_node(riskLevel="LOW", cancelReason="FRAUD"))
    assert order.native_risk_hint is True
    assert order.is_cancelled is True


def test_map_feed_nodes_drops_nameless_nodes():
    orders, skipped = map_feed_nodes([{"name": ""}, _node(), {"node": {"id": "x"}}])
    assert [o.id for o in orders] == ["#2001"]
    assert skipped == 2


def test_line_items_given_as_a_plain_list():
    assert map_feed_node(_node(lineItems=[{"id": 1}, {"id": 2}, {"id": 3}])).items_count == 3
    assert map_feed_node(_node(lineItems=[])).items_count == 0
