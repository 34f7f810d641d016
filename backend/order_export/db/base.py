from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from order_export.schemas.order import ExportFilter, Order


class BaseOrderDataSource(ABC):
    """
    Abstract base class defining the contract for all order data sources.
    This keeps the export engine decoupled from the underlying database
    technology and makes it trivial to substitute an in-memory source in tests.
    """

    @abstractmethod
    def fetch_page(self, cursor: int, limit: int, export_filter: ExportFilter) -> List[Order]:
        """
        Return up to `limit` orders with id strictly greater than `cursor`,
        ordered by id ascending, matching `export_filter`.
        A page shorter than `limit` means there is no more data.
        """
        pass

    @abstractmethod
    def count(self, export_filter: ExportFilter) -> int:
        """
        Total orders matching `export_filter` at call time.
        Best-effort snapshot; no isolation against concurrent writes.
        """
        pass

    def pool_stats(self) -> Optional[Dict[str, int]]:
        """
        Connection counts by state (busy, open, min, max) for sources backed
        by a pool. Sources without one return None.
        """
        return None

    @abstractmethod
    def close(self):
        """
        Release pooled connections cleanly.
        """
        pass
