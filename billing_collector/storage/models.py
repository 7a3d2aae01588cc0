"""
Data models for storage layer.

Defines ledger rows and the records written into them.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional


@dataclass(frozen=True)
class Record:
    """One aggregated usage line, ready to be reconciled into a fact.

    Source strings are resolved against the catalog when the record is
    written; tenant and category rows are created on first encounter.
    """
    tenant_source: str
    category_source: str
    billing_date: datetime
    product_source: str
    discount_source: str
    query_name: str
    value: float


@dataclass(frozen=True)
class DateTimeRow:
    """Hour bucket a fact applies to."""
    id: int
    timestamp: datetime
    year: int
    month: int
    day: int
    hour: int


@dataclass(frozen=True)
class DimensionRow:
    """Tenant or category row, keyed by its source string."""
    id: int
    source: str
    target: Optional[str] = None


@dataclass(frozen=True)
class FactRow:
    """Ledger entry: one quantity per dimension combination and hour."""
    date_time_id: int
    query_id: int
    tenant_id: int
    category_id: int
    product_id: int
    discount_id: int
    quantity: float
    id: Optional[int] = None


@dataclass(frozen=True)
class ExportedFact:
    """Finalized fact as handed to metrics or invoicing sinks."""
    product_source: str
    category_source: str
    tenant_source: str
    query_name: str
    quantity: float
    start: datetime

    @property
    def end(self) -> datetime:
        """Exclusive end of the hour bucket."""
        return self.start + timedelta(hours=1)

    @property
    def time_range(self) -> str:
        """ISO 8601 interval of the bucket, e.g. ``2023-01-01T00:00:00+00:00/...``."""
        return f"{self.start.isoformat()}/{self.end.isoformat()}"
