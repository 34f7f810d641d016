"""
Order record and the filter shared by count and paginated fetch.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


@dataclass(frozen=True)
class Order:
    """One exported order row as read from the data source."""

    id: int
    order_number: str
    customer_name: Optional[str]
    customer_email: Optional[str]
    status: str
    total_amount: Decimal
    currency: str
    created_at: datetime
    updated_at: Optional[datetime] = None
    notes: Optional[str] = None


class ExportFilter(BaseModel):
    """
    Immutable filter applied identically to count() and fetch_page().
    Date bounds are inclusive and apply to created_at.
    """

    model_config = ConfigDict(frozen=True)

    from_date: Optional[datetime] = Field(None, description="Inclusive lower bound on created_at")
    to_date: Optional[datetime] = Field(None, description="Inclusive upper bound on created_at")
    status: Optional[str] = Field(None, description="Exact order status to match")
    columns: Optional[List[str]] = Field(
        None, description="Column keys to export, in declared order. All columns when omitted."
    )

    @field_validator("status")
    @classmethod
    def blank_status_is_none(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            return None
        return value

    @field_validator("columns")
    @classmethod
    def empty_projection_is_none(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        if value is not None and len(value) == 0:
            return None
        return value

    @model_validator(mode="after")
    def validate_range(self) -> "ExportFilter":
        if self.from_date and self.to_date and self.from_date > self.to_date:
            raise ValueError("from_date must not be after to_date")
        return self


class ExportRequest(BaseModel):
    """A filter plus the caller's explicit async preference."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    filter: ExportFilter = Field(default_factory=ExportFilter)
    async_export: bool = Field(
        False, alias="async", description="Always run as a background job when true"
    )
