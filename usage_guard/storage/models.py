"""
Data models for storage layer.

Defines the raw billing records returned by the usage source and the
billing period they belong to.
"""

import calendar
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Tuple


@dataclass(frozen=True, order=True)
class Period:
    """A billing cycle identified by (year, month) in UTC.

    Equality is the comparison key for detecting a month rollover.
    """
    year: int
    month: int

    def __post_init__(self):
        """Validate month is a calendar month."""
        if not 1 <= self.month <= 12:
            raise ValueError("month must be between 1 and 12")

    @classmethod
    def current(cls, now: Optional[datetime] = None) -> "Period":
        """Return the UTC billing period containing ``now``."""
        if now is None:
            now = datetime.now(timezone.utc)
        elif now.tzinfo is not None:
            now = now.astimezone(timezone.utc)
        return cls(year=now.year, month=now.month)

    @property
    def label(self) -> str:
        """Human readable label, e.g. ``October 2026``."""
        return f"{calendar.month_name[self.month]} {self.year}"

    @property
    def key(self) -> str:
        """Stable string form used in storage keys."""
        return f"{self.year:04d}-{self.month:02d}"


@dataclass(frozen=True)
class BillingLineItem:
    """Immutable raw usage record as returned by the billing endpoint.

    Every numeric field may be absent; consumers treat absence as zero.
    """
    product: Optional[str] = None
    quantity: Optional[float] = None
    net_amount: Optional[float] = None
    unit_price: Optional[float] = None
    discount_amount: Optional[float] = None


@dataclass(frozen=True)
class BillingUsageReport:
    """Result of one usage fetch: the authenticated login and its line items."""
    login: str
    items: Tuple[BillingLineItem, ...] = ()
