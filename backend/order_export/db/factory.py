from .base import BaseOrderDataSource
from order_export.core.config import get_settings

_DATA_SOURCE_INSTANCE = None


def get_data_source() -> BaseOrderDataSource:
    """
    Factory method to retrieve the global singleton order data source built
    from environment configuration loaded via pydantic-settings.
    """
    global _DATA_SOURCE_INSTANCE
    if _DATA_SOURCE_INSTANCE is not None:
        return _DATA_SOURCE_INSTANCE

    settings = get_settings()

    from .oracle_adapter import OracleOrderDataSource

    _DATA_SOURCE_INSTANCE = OracleOrderDataSource(
        user=settings.ORACLE_USER,
        password=settings.ORACLE_PASSWORD,
        dsn=settings.ORACLE_DSN,
        min_pool=settings.ORACLE_MIN_POOL,
        max_pool=settings.ORACLE_MAX_POOL,
        table=settings.ORDERS_TABLE,
    )
    return _DATA_SOURCE_INSTANCE


def close_data_source():
    """Cleanly shutdown the global database pool."""
    global _DATA_SOURCE_INSTANCE
    if _DATA_SOURCE_INSTANCE is not None:
        _DATA_SOURCE_INSTANCE.close()
        _DATA_SOURCE_INSTANCE = None
