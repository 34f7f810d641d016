import os
import sys
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from datetime import datetime, timedelta
from decimal import Decimal
import threading

import pytest

# Settings require Oracle credentials; tests never open a real pool
os.environ.setdefault("ORACLE_USER", "export_test")
os.environ.setdefault("ORACLE_PASSWORD", "export_test")
os.environ.setdefault("ORACLE_DSN", "localhost:1521/xe")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

from order_export.db.base import BaseOrderDataSource
from order_export.schemas.order import Order


BASE_TIME = datetime(2024, 1, 1, 8, 30, 0)


def make_order(order_id: int, **overrides) -> Order:
    values = dict(
        id=order_id,
        order_number=f"ORD-{order_id:07d}",
        customer_name=f"Customer {order_id}",
        customer_email=f"customer{order_id}@example.com",
        status="SHIPPED" if order_id % 4 == 1 else "PENDING",
        total_amount=Decimal("1234.50") + order_id,
        currency="EUR",
        created_at=BASE_TIME + timedelta(minutes=order_id),
        updated_at=None,
        notes=None,
    )
    values.update(overrides)
    return Order(**values)


class InMemoryOrderDataSource(BaseOrderDataSource):
    """
    Order data source over a list, honouring the keyset pagination contract.
    Records every fetch so tests can check the cursor protocol.
    """

    def __init__(self, orders, fail_on_fetch=None, fail_on_count=False):
        self.orders = sorted(orders, key=lambda o: o.id)
        self.fetch_calls = []
        self.count_calls = 0
        self.fail_on_fetch = fail_on_fetch
        self.fail_on_count = fail_on_count
        self.closed = False
        self._lock = threading.Lock()

    def _matches(self, order, export_filter):
        if export_filter.from_date and order.created_at < export_filter.from_date:
            return False
        if export_filter.to_date and order.created_at > export_filter.to_date:
            return False
        if export_filter.status and order.status != export_filter.status:
            return False
        return True

    def fetch_page(self, cursor, limit, export_filter):
        with self._lock:
            self.fetch_calls.append((cursor, limit))
            call_number = len(self.fetch_calls)
        if self.fail_on_fetch is not None and call_number == self.fail_on_fetch:
            raise ConnectionError(f"ORA-03113: end-of-file on communication channel (fetch {call_number})")
        page = [o for o in self.orders if o.id > cursor and self._matches(o, export_filter)]
        return page[:limit]

    def count(self, export_filter):
        self.count_calls += 1
        if self.fail_on_count:
            raise ConnectionError("ORA-12541: TNS:no listener")
        return sum(1 for o in self.orders if self._matches(o, export_filter))

    def close(self):
        self.closed = True


@pytest.fixture
def orders():
    # Gaps in the id sequence are deliberate: the cursor must follow ids, not offsets
    return [make_order(order_id) for order_id in range(1, 500, 2)]


@pytest.fixture
def data_source(orders):
    return InMemoryOrderDataSource(orders)
