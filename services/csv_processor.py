"""
CSV Processor Service
Maps a Shopify-style order export onto canonical orders:
header row -> column map, line-item rows -> grouped orders -> CanonicalOrder.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional, Sequence, Tuple

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
from services.csv_parser import parse_rows
from services.errors import MissingColumnError, OrderImportError

logger = logging.getLogger(__name__)

CSV_CHANNEL = "CSV Import"

# canonical field -> accepted header spellings (compared lower-cased)
HEADER_ALIASES: Dict[str, Tuple[str, ...]] = {
    "name": ("name", "order", "order name", "order number", "order_id", "order id"),
    "created_at": ("created at", "created_at", "createdat", "date", "processed at"),
    "email": ("email", "customer email", "customer_email"),
    "financial_status": ("financial status", "financial_status", "payment status"),
    "fulfillment_status": ("fulfillment status", "fulfillment_status"),
    "total": ("total", "total price", "total_price"),
    "currency": ("currency", "currency code", "currencycode"),
    "tags": ("tags",),
    "risk_level": ("risk level", "risk_level", "risklevel", "risk"),
    "shipping_name": ("shipping name", "billing name"),
    "shipping_city": ("shipping city",),
    "shipping_province": ("shipping province", "shipping province name"),
    "shipping_country": ("shipping country",),
    "shipping_method": ("shipping method",),
    "lineitem_quantity": ("lineitem quantity", "line item quantity", "quantity"),
    "cancelled_at": ("cancelled at", "cancelled_at", "cancel reason"),
}

REQUIRED_FIELDS = ("name",)

HIGH_RISK_LEVELS = {"high", "medium"}

DATETIME_FORMATS = (
    "%Y-%m-%d %H:%M:%S %z",
    "%Y-%m-%dT%H:%M:%S.%fZ", "%Y-%m-%dT%H:%M:%SZ", "%Y-%m-%dT%H:%M:%S.%f%z", "%Y-%m-%dT%H:%M:%S%z",
    "%Y-%m-%dT%H:%M:%S.%f", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%dT%H:%M", "%Y-%m-%d %H:%M:%S.%f",
    "%Y-%m-%d %H:%M:%S", "%Y-%m-%d %H:%M", "%Y-%m-%d", "%m/%d/%Y %H:%M:%S", "%m/%d/%Y",
    "%d/%m/%Y %H:%M:%S", "%d/%m/%Y",
)


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse the export's timestamp spellings; None when nothing matches."""
    if not value or not str(value).strip():
        return None
    ds = str(value).strip()
    if ds.lower() in {"0000-00-00", "n/a", "null", "none", "nan"}:
        return None
    for fmt in DATETIME_FORMATS:
        try:
            return datetime.strptime(ds, fmt)
        except ValueError:
            pass
    try:
        return datetime.fromisoformat(ds)
    except ValueError:
        return None


def as_decimal(value: Optional[str], default: str = "0") -> Decimal:
    raw = (value or "").strip().replace(",", "")
    if raw in ("", "NULL", "null"):
        return Decimal(default)
    try:
        return Decimal(raw)
    except InvalidOperation:
        return Decimal(default)


def as_int(value: Optional[str], default: int = 0) -> int:
    try:
        return int(float((value or "").strip()))
    except (TypeError, ValueError, OverflowError):
        return default


@dataclass(frozen=True)
class ColumnMap:
    """Case-insensitive header lookup, computed once per batch."""
    headers: Tuple[str, ...]
    positions: Dict[str, int]
    extra_columns: Tuple[Tuple[str, int], ...]

    @classmethod
    def from_header(cls, header_row: Sequence[str]) -> "ColumnMap":
        headers = tuple(h.strip().lstrip("\ufeff") for h in header_row)
        lowered = {}
        for idx, h in enumerate(headers):
            lowered.setdefault(h.lower(), idx)

        positions: Dict[str, int] = {}
        for canonical, aliases in HEADER_ALIASES.items():
            for alias in aliases:
                if alias in lowered:
                    positions[canonical] = lowered[alias]
                    break

        for required in REQUIRED_FIELDS:
            if required not in positions:
                raise MissingColumnError(HEADER_ALIASES[required][0].title(), list(headers))

        mapped = set(positions.values())
        extras = tuple(
            (h, idx) for idx, h in enumerate(headers) if idx not in mapped and h
        )
        return cls(headers=headers, positions=positions, extra_columns=extras)

    def has(self, name: str) -> bool:
        return name in self.positions

    def value(self, row: Sequence[str], name: str) -> str:
        """Trimmed cell for a canonical field; '' when the column or cell is absent."""
        idx = self.positions.get(name)
        if idx is None or idx >= len(row):
            return ""
        return (row[idx] or "").strip()

    def extras(self, row: Sequence[str]) -> Dict[str, str]:
        return {h: (row[idx] if idx < len(row) else "") for h, idx in self.extra_columns}


@dataclass
class GroupedOrder:
    """Accumulator for the line-item rows of one order."""
    id: str
    first_row: List[str]
    items_count: int = 0
    row_count: int = 0
    extra_fields: Dict[str, str] = field(default_factory=dict)


@dataclass
class CSVParseResult:
    orders: List[CanonicalOrder]
    total_rows: int
    skipped_rows: int


def group_rows(rows: Sequence[Sequence[str]], columns: ColumnMap) -> Tuple[List[GroupedOrder], int]:
    """Group line-item rows by order id, summing quantities.

    Returns the groups in first-seen order and the number of rows skipped for
    lacking an identifier.
    """
    groups: Dict[str, GroupedOrder] = {}
    skipped = 0
    for row in rows:
        order_id = columns.value(row, "name")
        if not order_id:
            skipped += 1
            logger.debug("Skipping CSV row without order id: %r", list(row)[:5])
            continue

        group = groups.get(order_id)
        if group is None:
            group = GroupedOrder(id=order_id, first_row=list(row))
            groups[order_id] = group

        qty = as_int(columns.value(row, "lineitem_quantity"), 0)
        group.items_count += qty if qty > 0 else 0
        group.row_count += 1

        for key, val in columns.extras(row).items():
            if key not in group.extra_fields or (not group.extra_fields[key] and val):
                group.extra_fields[key] = val

    return list(groups.values()), skipped


class CSVProcessor:
    """CSV adapter: raw export text -> CanonicalOrder list (unclassified)."""

    def parse_orders(self, csv_content: str) -> CSVParseResult:
        rows = parse_rows(csv_content)
        if not rows:
            raise OrderImportError("CSV file is empty or invalid.")

        columns = ColumnMap.from_header(rows[0])
        body = rows[1:]
        if not columns.has("total"):
            logger.warning("CSV: no total column found; order amounts default to 0")

        groups, skipped = group_rows(body, columns)
        orders = [self.build_order(g, columns) for g in groups]

        logger.info(
            "CSV: parsed rows=%d orders=%d skipped=%d extra_columns=%d",
            len(body), len(orders), skipped, len(columns.extra_columns),
        )
        return CSVParseResult(orders=orders, total_rows=len(body), skipped_rows=skipped)

    def build_order(self, group: GroupedOrder, columns: ColumnMap) -> CanonicalOrder:
        row = group.first_row
        val = lambda name: columns.value(row, name)

        raw_date = val("created_at")
        occurred = parse_datetime(raw_date)

        location_parts = [val("shipping_city"), val("shipping_province"), val("shipping_country")]
        location = ", ".join(p for p in location_parts if p) or "Unknown"

        is_cancelled = bool(val("cancelled_at"))
        risk_level = val("risk_level").lower()
        fulfillment = map_fulfillment_state(val("fulfillment_status"))
        email = val("email")

        return CanonicalOrder(
            id=group.id,
            occurred_at=occurred if occurred is not None else raw_date,
            customer=Customer(
                email=email,
                display_name=val("shipping_name") or "Guest",
                location=location,
                prior_order_count=1,
                customer_id=email or None,
            ),
            amount=Money(total=as_decimal(val("total")), currency=(val("currency") or "USD").upper()),
            payment_state=map_payment_state(val("financial_status")),
            fulfillment_state=fulfillment,
            delivery_status=(
                DeliveryStatus.DELIVERED if fulfillment == FulfillmentState.FULFILLED
                else DeliveryStatus.NO_STATUS
            ),
            delivery_method=val("shipping_method"),
            channel=CSV_CHANNEL,
            items_count=group.items_count,
            tags=normalize_tags(val("tags")),
            native_risk_hint=risk_level in HIGH_RISK_LEVELS or is_cancelled,
            is_cancelled=is_cancelled,
            extra_fields=dict(group.extra_fields),
        )

