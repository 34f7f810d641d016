"""
Ordered column declarations for the order export.

Header emission and row writing both derive from ORDER_COLUMNS, so the
field order lives in exactly one place.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Iterable, Literal, Optional, Tuple, Union

from order_export.core.constants import TIMESTAMP_PATTERN
from order_export.core.exceptions import UnknownColumnError
from order_export.schemas.order import Order

CellKind = Literal["integer", "text", "amount", "timestamp"]
CellValue = Union[str, int, float, None]


def format_text(value: Optional[str]) -> CellValue:
    return value


def format_integer(value: Optional[int]) -> CellValue:
    return None if value is None else int(value)


def format_amount(value: Optional[Decimal]) -> CellValue:
    # Excel stores IEEE doubles; precision is fixed by the cell's number format
    return None if value is None else float(value)


def format_timestamp(value: Optional[datetime]) -> CellValue:
    return None if value is None else value.strftime(TIMESTAMP_PATTERN)


@dataclass(frozen=True)
class ExportColumn:
    key: str
    header: str
    extractor: Callable[[Order], Any]
    formatter: Callable[[Any], CellValue]
    kind: CellKind
    width: int = 22

    def render(self, order: Order) -> CellValue:
        return self.formatter(self.extractor(order))


ORDER_COLUMNS: Tuple[ExportColumn, ...] = (
    ExportColumn("id", "ID", lambda o: o.id, format_integer, "integer", 12),
    ExportColumn("order_number", "Order Number", lambda o: o.order_number, format_text, "text", 20),
    ExportColumn("customer_name", "Customer Name", lambda o: o.customer_name, format_text, "text", 28),
    ExportColumn("customer_email", "Email", lambda o: o.customer_email, format_text, "text", 32),
    ExportColumn("status", "Status", lambda o: o.status, format_text, "text", 14),
    ExportColumn("total_amount", "Total Amount", lambda o: o.total_amount, format_amount, "amount", 16),
    ExportColumn("currency", "Currency", lambda o: o.currency, format_text, "text", 10),
    ExportColumn("created_at", "Created At", lambda o: o.created_at, format_timestamp, "timestamp", 20),
    ExportColumn("updated_at", "Updated At", lambda o: o.updated_at, format_timestamp, "timestamp", 20),
    ExportColumn("notes", "Notes", lambda o: o.notes, format_text, "text", 40),
)

COLUMN_KEYS = tuple(column.key for column in ORDER_COLUMNS)


def select_columns(keys: Optional[Iterable[str]] = None) -> Tuple[ExportColumn, ...]:
    """
    Resolve a projection to column declarations, keeping declared order.
    None selects every column.
    """
    if keys is None:
        return ORDER_COLUMNS

    wanted = {key.strip().lower() for key in keys if key and key.strip()}
    unknown = wanted.difference(COLUMN_KEYS)
    if unknown:
        raise UnknownColumnError(unknown)
    if not wanted:
        return ORDER_COLUMNS
    return tuple(column for column in ORDER_COLUMNS if column.key in wanted)
