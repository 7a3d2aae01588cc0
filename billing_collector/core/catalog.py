"""
Billing rule catalog.

Pricing rules, discounts and metered queries usage is reconciled against.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional


def as_utc(timestamp: datetime) -> datetime:
    """Normalize a timestamp to UTC, naive timestamps are taken as UTC."""
    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc)


@dataclass(frozen=True)
class TimeRange:
    """Half-open effective range ``[start, end)``, a missing bound is unbounded."""
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def __post_init__(self):
        """Normalize bounds to UTC and validate the range is not inverted."""
        if self.start is not None:
            object.__setattr__(self, "start", as_utc(self.start))
        if self.end is not None:
            object.__setattr__(self, "end", as_utc(self.end))
        if self.start is not None and self.end is not None and self.start >= self.end:
            raise ValueError("time range start must be before end")

    def contains(self, at: datetime) -> bool:
        at = as_utc(at)
        if self.start is not None and at < self.start:
            return False
        if self.end is not None and at >= self.end:
            return False
        return True


@dataclass(frozen=True)
class Product:
    """Pricing rule: billed as `target` at `amount` per `unit`."""
    source: str
    target: Optional[str]
    amount: float
    unit: str
    during: TimeRange = field(default_factory=TimeRange)


@dataclass(frozen=True)
class Discount:
    """Discount rule, `discount` is a fraction between 0 and 1."""
    source: str
    discount: float
    during: TimeRange = field(default_factory=TimeRange)

    def __post_init__(self):
        """Validate the discount fraction."""
        if not 0 <= self.discount <= 1:
            raise ValueError("discount must be between 0 and 1")


@dataclass(frozen=True)
class Query:
    """Named metered dimension."""
    name: str
    description: str
    unit: str
    during: TimeRange = field(default_factory=TimeRange)
    query: str = ""
    parent: Optional[str] = None


@dataclass(frozen=True)
class Catalog:
    """Complete set of rules seeded into the store at the start of a run."""
    products: List[Product] = field(default_factory=list)
    discounts: List[Discount] = field(default_factory=list)
    queries: List[Query] = field(default_factory=list)

    def get_query(self, name: str) -> Optional[Query]:
        for query in self.queries:
            if query.name == name:
                return query
        return None
