"""
Unit tests for threshold notifications.

Tests baseline establishment, upward-only crossings, cooldown and
notification content.
"""

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from usage_guard.config.loader import PrimaryMetric
from usage_guard.core.thresholds import (
    DEFAULT_COOLDOWN_SECONDS,
    EvaluationInput,
    Level,
    MetricKind,
    ThresholdState,
    classify_level,
    evaluate,
    normalize_thresholds,
    notification_identifier,
    state_key,
)
from usage_guard.storage.models import Period

PERIOD = Period(2026, 10)
NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def _input(percent, **overrides):
    values = dict(
        period=PERIOD,
        metric_kind=MetricKind.BUDGET_PERCENT,
        percent=percent,
        warn_at_percent=75.0,
        danger_at_percent=90.0,
        notifications_enabled=True,
        now=NOW,
    )
    values.update(overrides)
    return EvaluationInput(**values)


def _state(level=Level.NONE, last_notify_at=None, last_percent=50.0, **overrides):
    values = dict(
        period=PERIOD,
        metric_kind=MetricKind.BUDGET_PERCENT,
        last_level=level,
        last_notify_at=last_notify_at,
        last_percent=last_percent,
    )
    values.update(overrides)
    return ThresholdState(**values)


class TestBaseline:
    """Test the first evaluation of a (period, metric) pair."""

    def test_first_evaluation_never_notifies(self):
        """Test no previous state creates a silent baseline."""
        result = evaluate(_input(95.0), None)

        assert result.should_notify is False
        assert result.new_state.last_level == Level.NONE
        assert result.new_state.last_notify_at is None
        assert result.new_state.last_percent == 95.0

    def test_month_rollover_resets_to_baseline(self):
        """Test a new period does not notify even when already above danger."""
        previous = _state(Level.WARN, period=Period(2026, 9), last_notify_at=NOW - timedelta(days=20))

        result = evaluate(_input(97.0), previous)

        assert result.should_notify is False
        assert result.new_state.period == PERIOD
        assert result.new_state.last_level == Level.NONE

    def test_metric_change_resets_to_baseline(self):
        """Test switching the watched metric starts over."""
        previous = _state(Level.DANGER, metric_kind=MetricKind.INCLUDED_PERCENT)

        result = evaluate(_input(80.0), previous)

        assert result.should_notify is False
        assert result.new_state.metric_kind == MetricKind.BUDGET_PERCENT
        assert result.new_state.last_level == Level.NONE


class TestDisabled:
    """Test evaluation with notifications off."""

    def test_notifications_disabled_only_tracks_percent(self):
        previous = _state(Level.NONE)

        result = evaluate(_input(95.0, notifications_enabled=False), previous)

        assert result.should_notify is False
        assert result.new_state.last_level == Level.NONE
        assert result.new_state.last_percent == 95.0

    def test_both_thresholds_disabled(self):
        previous = _state(Level.NONE)

        result = evaluate(_input(95.0, warn_at_percent=0, danger_at_percent=None), previous)

        assert result.should_notify is False
        assert result.new_state.last_level == Level.NONE


class TestCrossings:
    """Test upward-only level transitions."""

    def test_warn_crossing_notifies(self):
        result = evaluate(_input(80.0), _state(Level.NONE))

        assert result.should_notify is True
        assert result.level == Level.WARN
        assert result.new_state.last_level == Level.WARN
        assert result.new_state.last_notify_at == NOW

    def test_jump_through_to_danger(self):
        """Test 60% to 95% goes straight to danger without a warn first."""
        previous = _state(Level.NONE, last_percent=60.0)

        result = evaluate(_input(95.0), previous)

        assert result.should_notify is True
        assert result.level == Level.DANGER

    def test_same_level_does_not_notify_again(self):
        previous = _state(Level.WARN, last_notify_at=NOW - timedelta(days=1))

        result = evaluate(_input(85.0), previous)

        assert result.should_notify is False
        assert result.new_state.last_level == Level.WARN

    def test_drop_does_not_notify(self):
        previous = _state(Level.DANGER, last_notify_at=NOW - timedelta(days=1))

        result = evaluate(_input(10.0), previous)

        assert result.should_notify is False
        assert result.new_state.last_level == Level.NONE

    def test_re_crossing_after_drop_notifies(self):
        """Test a level is announced again once usage fell below it."""
        long_ago = NOW - timedelta(seconds=DEFAULT_COOLDOWN_SECONDS + 1)
        state = _state(Level.WARN, last_notify_at=long_ago)

        dropped = evaluate(_input(10.0), state).new_state
        result = evaluate(_input(80.0), dropped)

        assert result.should_notify is True
        assert result.level == Level.WARN

    def test_oscillation_notifies_once(self):
        """Test hovering around the warn line stays quiet after the first alert."""
        state = _state(Level.NONE)
        notified = 0
        for percent in (76.0, 77.0, 75.0, 78.0):
            result = evaluate(_input(percent), state)
            notified += result.should_notify
            state = result.new_state

        assert notified == 1

    def test_swapped_thresholds_are_normalized(self):
        """Test warn above danger is swapped rather than rejected."""
        result = evaluate(_input(85.0, warn_at_percent=90.0, danger_at_percent=80.0), _state())

        assert result.level == Level.WARN
        assert "≥ 80%" in result.body


class TestCooldown:
    """Test the minimum time between notifications."""

    def test_cooldown_suppresses_but_advances_level(self):
        previous = _state(Level.WARN, last_notify_at=NOW - timedelta(hours=1))

        result = evaluate(_input(95.0), previous)

        assert result.should_notify is False
        assert result.new_state.last_level == Level.DANGER
        assert result.new_state.last_notify_at == previous.last_notify_at

    def test_cooldown_elapsed_notifies(self):
        previous = _state(Level.WARN, last_notify_at=NOW - timedelta(hours=7))

        result = evaluate(_input(95.0), previous)

        assert result.should_notify is True
        assert result.level == Level.DANGER

    def test_custom_cooldown(self):
        previous = _state(Level.WARN, last_notify_at=NOW - timedelta(minutes=5))

        result = evaluate(_input(95.0), previous, minimum_cooldown_seconds=60)

        assert result.should_notify is True

    def test_suppressed_crossing_not_announced_later(self):
        """Test a crossing swallowed by the cooldown does not fire afterwards."""
        previous = _state(Level.WARN, last_notify_at=NOW - timedelta(hours=1))
        suppressed = evaluate(_input(95.0), previous).new_state

        later = _input(96.0, now=NOW + timedelta(hours=12))
        result = evaluate(later, suppressed)

        assert result.should_notify is False


class TestContent:
    """Test notification titles, bodies and identifiers."""

    def test_title_and_body(self):
        result = evaluate(_input(91.26, detail="$18.25 / $20.00"), _state())

        assert result.title == "Danger: Budget usage at 91%"
        assert result.body == (
            "Copilot Premium Usage is at 91.3% (≥ 90%). "
            "$18.25 / $20.00 "
            "Period: October 2026 (UTC)."
        )

    def test_included_metric_title(self):
        result = evaluate(
            _input(80.0, metric_kind=MetricKind.INCLUDED_PERCENT),
            _state(metric_kind=MetricKind.INCLUDED_PERCENT),
        )

        assert result.title == "Warning: Included usage at 80%"

    def test_blank_detail_omitted(self):
        result = evaluate(_input(80.0, detail="   "), _state())

        assert result.body == "Copilot Premium Usage is at 80.0% (≥ 75%). Period: October 2026 (UTC)."

    def test_identifier(self):
        identifier = notification_identifier("usage-guard", PERIOD, MetricKind.BUDGET_PERCENT, Level.WARN)

        assert identifier == "usage-guard.2026-10.budget_percent.warn"

    def test_identifier_unique_per_level(self):
        warn = notification_identifier("app", PERIOD, MetricKind.BUDGET_PERCENT, Level.WARN)
        danger = notification_identifier("app", PERIOD, MetricKind.BUDGET_PERCENT, Level.DANGER)

        assert warn != danger

    def test_state_key(self):
        assert state_key(Period(2026, 3), MetricKind.INCLUDED_PERCENT) == "2026-03:included_percent"


class TestClassification:
    """Test level classification helpers."""

    @pytest.mark.parametrize("percent,expected", [
        (0.0, Level.NONE),
        (74.9, Level.NONE),
        (75.0, Level.WARN),
        (90.0, Level.DANGER),
        (250.0, Level.DANGER),
    ])
    def test_classify_level(self, percent, expected):
        assert classify_level(percent, 75.0, 90.0) == expected

    def test_classify_with_only_danger(self):
        assert classify_level(80.0, None, 90.0) == Level.NONE
        assert classify_level(95.0, None, 90.0) == Level.DANGER

    def test_normalize_thresholds(self):
        assert normalize_thresholds(90.0, 75.0) == (75.0, 90.0)
        assert normalize_thresholds(75.0, 90.0) == (75.0, 90.0)
        assert normalize_thresholds(None, 90.0) == (None, 90.0)

    def test_level_rank_order(self):
        assert Level.NONE.rank < Level.WARN.rank < Level.DANGER.rank

    def test_metric_from_primary_metric(self):
        assert MetricKind.from_primary_metric(PrimaryMetric.BUDGET_PERCENT) == MetricKind.BUDGET_PERCENT
        assert MetricKind.from_primary_metric(PrimaryMetric.INCLUDED_PERCENT) == MetricKind.INCLUDED_PERCENT

    def test_state_is_frozen(self):
        state = _state()
        assert replace(state, last_level=Level.WARN).last_level == Level.WARN
        with pytest.raises(Exception):
            state.last_level = Level.WARN
