"""
Usage derivation from raw billing line items.

Turns billing records and preferences into a usage summary and a view
state (percentages, phase, health). Pure functions: no I/O, no state.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Iterable, Optional

from usage_guard.config.loader import DEFAULT_PRODUCT, UsagePreferences
from usage_guard.storage.models import BillingLineItem, Period


class Phase(Enum):
    """Which limit current usage is measured against."""
    INCLUDED = "included"  # Still within the included quota
    BUDGET = "budget"      # Quota exhausted or unknown, spend is primary


class Health(Enum):
    """Overall health of the tracked usage."""
    OK = "ok"
    WARNING = "warning"
    DANGER = "danger"
    STALE = "stale"
    ERROR = "error"


@dataclass(frozen=True)
class UsageSummary:
    """Usage totals derived from one period's line items."""
    spend_usd: float
    total_quantity: int
    total_included_quantity: int
    total_overage_quantity: int

    def __post_init__(self):
        """Validate derived quantities are non-negative."""
        if self.total_included_quantity < 0:
            raise ValueError("total_included_quantity cannot be negative")
        if self.total_overage_quantity < 0:
            raise ValueError("total_overage_quantity cannot be negative")


@dataclass(frozen=True)
class ViewState:
    """Result of one usage computation, ready for display."""
    period: Period
    spend_usd: float
    budget_usd: float
    budget_percent: float
    included_total: int
    included_used: int
    included_percent: float
    phase: Phase
    health: Health
    last_refresh_at: Optional[datetime] = None
    last_error_message: Optional[str] = None


def summarize(items: Iterable[BillingLineItem], product: str = DEFAULT_PRODUCT) -> UsageSummary:
    """Summarize the line items belonging to ``product``.

    The included quantity is recovered from ``discount_amount / unit_price``
    per item because the billing payload carries no quota field. This is a
    best-effort heuristic: it reports units that were discounted, which is
    not necessarily the plan's monthly included limit.

    Args:
        items: Raw billing line items for one period
        product: Product name to keep (matched case-insensitively)

    Returns:
        UsageSummary for the matching items
    """
    wanted = product.lower()
    matching = [item for item in items if (item.product or "").lower() == wanted]

    spend = sum(_safe_number(item.net_amount) for item in matching)

    # Quantities are integral request counts; round once after summing.
    total_quantity = round_half_up(sum(_safe_number(item.quantity) for item in matching))

    included = 0
    for item in matching:
        discount = _safe_number(item.discount_amount)
        unit_price = _safe_number(item.unit_price)
        if discount <= 0 or unit_price <= 0:
            continue
        included_for_item = round_half_up(discount / unit_price)
        if included_for_item > 0:
            included += included_for_item

    return UsageSummary(
        spend_usd=spend,
        total_quantity=total_quantity,
        total_included_quantity=included,
        total_overage_quantity=max(0, total_quantity - included),
    )


def compute_view_state(
    period: Period,
    summary: UsageSummary,
    preferences: UsagePreferences,
    last_refresh_at: Optional[datetime] = None,
    last_error_message: Optional[str] = None,
) -> ViewState:
    """Compute budget/included percentages, phase and health.

    ``preferences.included_override`` is expected to already hold any
    selected-plan limit; this function knows nothing about plan catalogs.

    Health is always judged on the budget percentage, even during the
    included phase, so the warning color stays stable across phases.

    Args:
        period: Billing period the summary belongs to
        summary: Derived usage totals
        preferences: Preferences snapshot for this computation
        last_refresh_at: Time of the refresh that produced the summary
        last_error_message: Error to surface, if any

    Returns:
        ViewState for the period
    """
    spend = max(0.0, summary.spend_usd)
    included_used = max(0, summary.total_quantity)

    included_total = max(0, round_half_up(preferences.included_override))
    if included_total <= 0:
        included_total = max(0, summary.total_included_quantity)

    # Both budget sources read the manual value until an official
    # budgets API is integrated.
    budget_usd = max(0.0, preferences.budget_usd)

    included_percent = percent_of(included_used, included_total)
    budget_percent = percent_of(spend, budget_usd)

    if included_total > 0 and included_used < included_total:
        phase = Phase.INCLUDED
    else:
        phase = Phase.BUDGET

    warn_at = preferences.warn_at_percent
    danger_at = preferences.danger_at_percent
    if last_error_message:
        health = Health.ERROR
    elif budget_usd <= 0:
        health = Health.OK
    elif danger_at > 0 and budget_percent >= danger_at:
        health = Health.DANGER
    elif warn_at > 0 and budget_percent >= warn_at:
        health = Health.WARNING
    else:
        health = Health.OK

    return ViewState(
        period=period,
        spend_usd=spend,
        budget_usd=budget_usd,
        budget_percent=budget_percent,
        included_total=included_total,
        included_used=included_used,
        included_percent=included_percent,
        phase=phase,
        health=health,
        last_refresh_at=last_refresh_at,
        last_error_message=last_error_message,
    )


def clamp_percent(value: float) -> float:
    """Clamp a percentage to [0, 100]; NaN becomes 0."""
    if math.isnan(value):
        return 0.0
    return max(0.0, min(100.0, value))


def percent_of(numerator: float, denominator: float) -> float:
    """Return ``numerator / denominator`` as a clamped percentage, 0 if undefined."""
    if denominator <= 0:
        return 0.0
    return clamp_percent(numerator / denominator * 100.0)


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero."""
    if not math.isfinite(value):
        return 0
    return int(Decimal(repr(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _safe_number(value: Optional[float]) -> float:
    if value is None:
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0
