import os
import sys
from datetime import datetime
from decimal import Decimal
from pathlib import Path

import pytest

os.environ.setdefault("DATABASE_URL", "")
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from schemas.order_schemas import DeliveryStatus, FulfillmentState, PaymentState
from services.csv_processor import CSV_CHANNEL, CSVProcessor, ColumnMap, parse_datetime
from services.errors import MissingColumnError, OrderImportError


def test_example_row_maps_to_canonical_order():
    csv_text = 'Name,Created at,Email,Tags\n#1001,2024-01-05,a@b.com,"chargeback, urgent"\n'
    result = CSVProcessor().parse_orders(csv_text)

    assert result.total_rows == 1
    assert result.skipped_rows == 0
    assert len(result.orders) == 1
    order = result.orders[0]
    assert order.id == "#1001"
    assert order.occurred_at == datetime(2024, 1, 5)
    assert order.customer.email == "a@b.com"
    assert order.tags == ["chargeback", "urgent"]
    assert order.channel == CSV_CHANNEL
    assert order.amount.total == Decimal("0")


def test_missing_identity_column_fails_whole_batch():
    with pytest.raises(MissingColumnError) as exc:
        CSVProcessor().parse_orders("Email,Tags\na@b.com,x\n")
    assert exc.value.column == "Name"
    assert "Missing 'Name' column" in str(exc.value)


def test_empty_payload_is_rejected():
    with pytest.raises(OrderImportError):
        CSVProcessor().parse_orders("\n\n")


def test_headers_are_case_insensitive():
    columns = ColumnMap.from_header(["NAME", "eMail", "TOTAL"])
    assert columns.has("name")
    assert columns.value(["#7", " x@y.io ", "12.50"], "email") == "x@y.io"
    assert columns.value(["#7"], "total") == ""


def test_line_item_rows_group_and_skip_rows_without_id():
    csv_text = (
        "Name,Email,Lineitem quantity,Total,Vendor\n"
        "#1001,a@b.com,2,30.00,Acme\n"
        "#1001,,1,,\n"
        ",,5,,\n"
        "#1002,c@d.com,,10,Other\n"
        "#1001,,x,,\n"
    )
    result = CSVProcessor().parse_orders(csv_text)

    assert result.total_rows == 5
    assert result.skipped_rows == 1
    by_id = {o.id: o for o in result.orders}
    assert list(by_id) == ["#1001", "#1002"]
    assert by_id["#1001"].items_count == 3
    assert by_id["#1001"].amount.total == Decimal("30.00")
    assert by_id["#1001"].customer.email == "a@b.com"
    assert by_id["#1001"].extra_fields == {"Vendor": "Acme"}
    assert by_id["#1002"].items_count == 0


def test_optional_columns_fill_order_fields():
    csv_text = (
        "Name,Financial Status,Fulfillment Status,Currency,Risk Level,"
        "Shipping City,Shipping Province,Shipping Country,Shipping Method,Cancelled at,Shipping Name\n"
        "#5,Paid,fulfilled,eur,High,Berlin,,DE,DHL,2024-02-01,Ada\n"
    )
    order = CSVProcessor().parse_orders(csv_text).orders[0]

    assert order.payment_state == PaymentState.PAID
    assert order.fulfillment_state == FulfillmentState.FULFILLED
    assert order.delivery_status == DeliveryStatus.DELIVERED
    assert order.amount.currency == "EUR"
    assert order.customer.location == "Berlin, DE"
    assert order.customer.display_name == "Ada"
    assert order.delivery_method == "DHL"
    assert order.is_cancelled is True
    assert order.native_risk_hint is True


def test_unparseable_date_is_kept_verbatim():
    order = CSVProcessor().parse_orders("Name,Created at\n#9,not a date\n").orders[0]
    assert order.occurred_at == "not a date"


def test_parse_datetime_formats():
    assert parse_datetime("2024-01-05 10:30:00") == datetime(2024, 1, 5, 10, 30)
    assert parse_datetime("01/31/2024") == datetime(2024, 1, 31)
    assert parse_datetime("2024-01-05 10:30:00 +0100").utcoffset().total_seconds() == 3600
    assert parse_datetime("") is None
    assert parse_datetime("n/a") is None
    assert parse_datetime("yesterday") is None


@pytest.mark.parametrize("quantity", ["1e999", "inf", "-inf", "nan", "abc"])
def test_unusable_quantity_counts_as_zero(quantity):
    csv_text = f"Name,Created at,Email,Tags,Lineitem quantity\n#1,2024-01-05,a@b.com,x,{quantity}\n#1,,,,2\n"
    result = CSVProcessor().parse_orders(csv_text)
    assert [o.id for o in result.orders] == ["#1"]
    assert result.orders[0].items_count == 2
