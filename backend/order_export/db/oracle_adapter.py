import contextlib
import logging
import re
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import oracledb

from .base import BaseOrderDataSource
from order_export.core.exceptions import DataSourceUnavailableError
from order_export.schemas.order import ExportFilter, Order

logger = logging.getLogger(__name__)

ORDER_SELECT_COLUMNS = (
    "id",
    "order_number",
    "customer_name",
    "customer_email",
    "status",
    "total_amount",
    "currency",
    "created_at",
    "updated_at",
    "notes",
)

# ORA-12541: TNS:no listener, ORA-12170: TNS:Connect timeout, ORA-12537: TNS:connection closed
UNREACHABLE_ERROR_CODES = (12541, 12170, 12537, 28759)

_IDENTIFIER = re.compile(r"^[A-Za-z][A-Za-z0-9_$#]*(\.[A-Za-z][A-Za-z0-9_$#]*)?$")


def validate_table_name(table: str) -> str:
    """Table names come from configuration but still end up in SQL text."""
    if not _IDENTIFIER.match(table or ""):
        raise ValueError(f"Invalid table name: {table!r}")
    return table.upper()


def build_filter_clause(export_filter: ExportFilter) -> Tuple[List[str], Dict[str, Any]]:
    """
    Translate an ExportFilter into WHERE predicates and bind parameters.
    count() and fetch_page() both use this so they always agree on the row set.
    """
    clauses: List[str] = []
    params: Dict[str, Any] = {}
    if export_filter.from_date is not None:
        clauses.append("created_at >= :from_date")
        params["from_date"] = export_filter.from_date
    if export_filter.to_date is not None:
        clauses.append("created_at <= :to_date")
        params["to_date"] = export_filter.to_date
    if export_filter.status is not None:
        clauses.append("status = :status")
        params["status"] = export_filter.status
    return clauses, params


def _read_lob(value: Any) -> Any:
    # CLOB columns arrive as LOB locators unless fetch_lobs is disabled
    if value is not None and hasattr(value, "read"):
        return value.read()
    return value


def map_order_row(row: Tuple[Any, ...]) -> Order:
    (
        order_id,
        order_number,
        customer_name,
        customer_email,
        status,
        total_amount,
        currency,
        created_at,
        updated_at,
        notes,
    ) = row
    return Order(
        id=int(order_id),
        order_number=order_number,
        customer_name=customer_name,
        customer_email=customer_email,
        status=status,
        total_amount=Decimal(str(total_amount)) if total_amount is not None else Decimal("0"),
        currency=currency,
        created_at=created_at,
        updated_at=updated_at,
        notes=_read_lob(notes),
    )


class OracleOrderDataSource(BaseOrderDataSource):
    """
    Oracle implementation of the order data source.
    Uses keyset pagination on the primary key so every page is an index range scan.
    """

    def __init__(
        self,
        user: str,
        password: str,
        dsn: str,
        min_pool: int = 2,
        max_pool: int = 10,
        table: str = "ORDERS",
        pool=None,
    ):
        self.table = validate_table_name(table)
        if pool is None:
            pool = oracledb.create_pool(
                user=user,
                password=password,
                dsn=dsn,
                min=min_pool,
                max=max_pool,
                increment=1,
                wait_timeout=2000,  # Fail fast (2s) if pool is exhausted
                getmode=oracledb.POOL_GETMODE_TIMEDWAIT,
            )
        self.pool = pool

    @contextlib.contextmanager
    def connection(self):
        """Connection context manager that always hands the connection back to the pool."""
        try:
            conn = self.pool.acquire()
        except oracledb.DatabaseError as e:
            error_obj = e.args[0] if e.args else None
            code = getattr(error_obj, "code", None)
            if code in UNREACHABLE_ERROR_CODES:
                raise DataSourceUnavailableError(
                    f"Oracle Database is unreachable: {str(e)}"
                ) from e

            # Pool timeout (DPY-4005) or pool exhausted
            if "DPY-4005" in str(e) or "pool exhausted" in str(e).lower():
                raise DataSourceUnavailableError(
                    "DATABASE_POOL_EXHAUSTED: All available connections are in use. Please try again in a moment."
                ) from e

            raise

        try:
            logger.debug("Acquired connection from pool")
            yield conn
        finally:
            self.pool.release(conn)
            logger.debug("Released connection back to pool")

    def build_page_query(self, cursor: int, limit: int, export_filter: ExportFilter) -> Tuple[str, Dict[str, Any]]:
        clauses, params = build_filter_clause(export_filter)
        where = " AND ".join(["id > :last_id"] + clauses)
        params.update({"last_id": cursor, "row_limit": limit})
        sql = (
            f"SELECT {', '.join(ORDER_SELECT_COLUMNS)} FROM {self.table} "
            f"WHERE {where} ORDER BY id ASC FETCH FIRST :row_limit ROWS ONLY"
        )
        return sql, params

    def build_count_query(self, export_filter: ExportFilter) -> Tuple[str, Dict[str, Any]]:
        clauses, params = build_filter_clause(export_filter)
        sql = f"SELECT COUNT(*) FROM {self.table}"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        return sql, params

    def fetch_page(self, cursor: int, limit: int, export_filter: ExportFilter) -> List[Order]:
        sql, params = self.build_page_query(cursor, limit, export_filter)
        with self.connection() as conn:
            with conn.cursor() as db_cursor:
                db_cursor.arraysize = limit
                db_cursor.execute(sql, params)
                return [map_order_row(row) for row in db_cursor.fetchall()]

    def count(self, export_filter: ExportFilter) -> int:
        sql, params = self.build_count_query(export_filter)
        with self.connection() as conn:
            with conn.cursor() as db_cursor:
                db_cursor.execute(sql, params)
                row = db_cursor.fetchone()
                return int(row[0]) if row else 0

    def pool_stats(self) -> Dict[str, int]:
        return {
            "busy": self.pool.busy,
            "open": self.pool.opened,
            "min": self.pool.min,
            "max": self.pool.max,
        }

    def close(self):
        logger.info("Closing Oracle connection pool...")
        try:
            self.pool.close()
            logger.info("Oracle connection pool closed successfully.")
        except Exception as e:
            logger.error(f"Error closing Oracle connection pool: {e}")
