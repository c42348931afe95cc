"""
Threshold crossing notifications.

Decides whether a warn/danger notification should fire for the watched
usage percentage, keeping per-period state so that only upward crossings
are announced.

Evaluation Order:
1. Baseline - first observation for a (period, metric) never notifies
2. Disabled - notifications off or no thresholds configured
3. Classification - percent against normalized warn/danger thresholds
4. Upward-only transition - same or lower level never notifies
5. Cooldown - upward transition too soon after the last alert is silenced
"""

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple

from usage_guard.config.loader import PrimaryMetric
from usage_guard.storage.models import Period
from .usage import clamp_percent, round_half_up

DEFAULT_COOLDOWN_SECONDS = 6 * 60 * 60
DEFAULT_APP_PREFIX = "usage-guard"


class Level(Enum):
    """Notification levels in order of severity."""
    NONE = "none"
    WARN = "warn"
    DANGER = "danger"

    @property
    def rank(self) -> int:
        return _LEVEL_RANKS[self]


_LEVEL_RANKS = {Level.NONE: 0, Level.WARN: 1, Level.DANGER: 2}


class MetricKind(Enum):
    """Usage percentage the thresholds are evaluated against."""
    BUDGET_PERCENT = "budget_percent"
    INCLUDED_PERCENT = "included_percent"

    @property
    def display_name(self) -> str:
        return "Budget" if self is MetricKind.BUDGET_PERCENT else "Included"

    @classmethod
    def from_primary_metric(cls, metric: PrimaryMetric) -> "MetricKind":
        if metric is PrimaryMetric.INCLUDED_PERCENT:
            return cls.INCLUDED_PERCENT
        return cls.BUDGET_PERCENT


@dataclass(frozen=True)
class EvaluationInput:
    """Everything needed to evaluate one refresh tick."""
    period: Period
    metric_kind: MetricKind
    percent: float
    warn_at_percent: Optional[float]    # None or <= 0 means disabled
    danger_at_percent: Optional[float]  # None or <= 0 means disabled
    notifications_enabled: bool
    now: datetime
    label: str = "Copilot Premium Usage"
    detail: Optional[str] = None  # e.g. "$12.34 / $20.00"


@dataclass(frozen=True)
class ThresholdState:
    """Persisted transition state for one (period, metric) pair."""
    period: Period
    metric_kind: MetricKind
    last_level: Level = Level.NONE
    last_notify_at: Optional[datetime] = None
    last_percent: Optional[float] = None


@dataclass(frozen=True)
class EvaluationResult:
    """Outcome of a threshold evaluation."""
    new_state: ThresholdState
    should_notify: bool
    level: Level = Level.NONE
    title: Optional[str] = None
    body: Optional[str] = None


def evaluate(
    input: EvaluationInput,
    previous_state: Optional[ThresholdState],
    minimum_cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
) -> EvaluationResult:
    """Evaluate the current percentage against the configured thresholds.

    The result's ``new_state`` always replaces the stored state, whether or
    not a notification fires. A cooldown-suppressed crossing still advances
    ``last_level`` so the same crossing is not announced later.

    Args:
        input: Current evaluation input, including the wall-clock time
        previous_state: Previously persisted state, if any
        minimum_cooldown_seconds: Minimum time between two notifications

    Returns:
        EvaluationResult with the next state and any notification content
    """
    # 1. Baseline on first sight of this period + metric.
    if (previous_state is None
            or previous_state.period != input.period
            or previous_state.metric_kind != input.metric_kind):
        baseline = ThresholdState(
            period=input.period,
            metric_kind=input.metric_kind,
            last_level=Level.NONE,
            last_notify_at=None,
            last_percent=input.percent,
        )
        return EvaluationResult(new_state=baseline, should_notify=False)

    # 2. Disabled: track the percent only.
    warn_at = _enabled_threshold(input.warn_at_percent)
    danger_at = _enabled_threshold(input.danger_at_percent)
    if not input.notifications_enabled or (warn_at is None and danger_at is None):
        return EvaluationResult(
            new_state=replace(previous_state, last_percent=input.percent),
            should_notify=False,
        )

    # 3. Classify.
    warn_at, danger_at = normalize_thresholds(warn_at, danger_at)
    current_level = classify_level(input.percent, warn_at, danger_at)
    advanced = replace(previous_state, last_level=current_level, last_percent=input.percent)

    # 4. Only upward transitions are announced.
    if current_level.rank <= previous_state.last_level.rank:
        return EvaluationResult(new_state=advanced, should_notify=False)

    # 5. Cooldown guard.
    last_notify_at = previous_state.last_notify_at
    if last_notify_at is not None and minimum_cooldown_seconds > 0:
        elapsed = (input.now - last_notify_at).total_seconds()
        if elapsed < minimum_cooldown_seconds:
            return EvaluationResult(new_state=advanced, should_notify=False)

    title, body = build_notification_content(input, current_level, warn_at, danger_at)
    return EvaluationResult(
        new_state=replace(advanced, last_notify_at=input.now),
        should_notify=True,
        level=current_level,
        title=title,
        body=body,
    )


def normalize_thresholds(
    warn_at: Optional[float],
    danger_at: Optional[float],
) -> Tuple[Optional[float], Optional[float]]:
    """Swap warn and danger when both are set and warn is the higher one."""
    if warn_at is not None and danger_at is not None and warn_at > danger_at:
        return danger_at, warn_at
    return warn_at, danger_at


def classify_level(percent: float, warn_at: Optional[float], danger_at: Optional[float]) -> Level:
    """Classify a percentage into a notification level."""
    p = clamp_percent(percent)
    if danger_at is not None and danger_at > 0 and p >= danger_at:
        return Level.DANGER
    if warn_at is not None and warn_at > 0 and p >= warn_at:
        return Level.WARN
    return Level.NONE


def build_notification_content(
    input: EvaluationInput,
    level: Level,
    warn_at: Optional[float],
    danger_at: Optional[float],
) -> Tuple[str, str]:
    """Build the title and body for a threshold notification."""
    percent = clamp_percent(input.percent)

    if level is Level.DANGER:
        level_word = "Danger"
        threshold = danger_at
    elif level is Level.WARN:
        level_word = "Warning"
        threshold = warn_at
    else:
        level_word = "Update"
        threshold = None

    if threshold is not None:
        threshold_text = f"≥ {threshold:g}%"
    else:
        threshold_text = "threshold reached"

    title = f"{level_word}: {input.metric_kind.display_name} usage at {round_half_up(percent)}%"

    body_parts = [f"{input.label} is at {percent:.1f}% ({threshold_text})."]
    if input.detail and input.detail.strip():
        body_parts.append(input.detail.strip())
    # Period context disambiguates alerts around a month rollover.
    body_parts.append(f"Period: {input.period.label} (UTC).")

    return title, " ".join(body_parts)


def notification_identifier(
    app_prefix: str,
    period: Period,
    metric_kind: MetricKind,
    level: Level,
) -> str:
    """Stable identifier so the sink replaces rather than stacks alerts."""
    return f"{app_prefix}.{period.year}-{period.month}.{metric_kind.value}.{level.value}"


def state_key(period: Period, metric_kind: MetricKind) -> str:
    """Storage key for the state of a (period, metric) pair."""
    return f"{period.key}:{metric_kind.value}"


def _enabled_threshold(value: Optional[float]) -> Optional[float]:
    if value is None or value <= 0:
        return None
    return float(value)
