"""
Refresh scheduling and orchestration.

Owns refresh timing (startup, manual and periodic triggers, manual
cooldown, rate-limit backoff), calls the usage source, and feeds the
result through usage derivation and threshold evaluation.

All state lives on the asyncio event loop that drives the scheduler. The
usage fetch is the only suspension point of a cycle and is raced against
a deadline, so a hung request cannot wedge the scheduler. A trigger that
arrives while a cycle is in flight is rejected, never queued.

Failure handling:
1. Missing credential - status message only, view state cleared
2. Rate limited - timer-driven refreshes are deferred (server reset or
   exponential backoff); manual and startup refreshes fail fast
3. Any other failure - last good view state kept and annotated
"""

import asyncio
import logging
import math
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Awaitable, Callable, Deque, List, Optional, Protocol, Set

from usage_guard.config.loader import DEFAULT_PRODUCT, UsagePreferences
from usage_guard.sdk.errors import FetchTimeoutError, RateLimitedError
from usage_guard.storage.models import BillingUsageReport, Period
from .plans import PLAN_CATALOG, PlanCatalog
from .thresholds import (
    DEFAULT_APP_PREFIX,
    DEFAULT_COOLDOWN_SECONDS,
    EvaluationInput,
    MetricKind,
    ThresholdState,
    evaluate,
    notification_identifier,
    state_key,
)
from .usage import Health, ViewState, compute_view_state, summarize

logger = logging.getLogger(__name__)

MANUAL_REFRESH_COOLDOWN_SECONDS = 15
BACKOFF_INITIAL_SECONDS = 30
BACKOFF_MAX_SECONDS = 60 * 60
MAX_BACKOFF_ATTEMPTS = 10
DEFAULT_FETCH_TIMEOUT_SECONDS = 30.0
MAX_DIAGNOSTICS = 200

MISSING_TOKEN_STATUS = "No GitHub token configured."


class UsageSource(Protocol):
    async def fetch_usage(self, token: str, period: Period) -> BillingUsageReport:
        ...


class CredentialProvider(Protocol):
    def read(self) -> Optional[str]:
        ...


class NotificationSink(Protocol):
    def is_authorized(self) -> bool:
        ...

    def post(self, identifier: str, title: str, body: str) -> bool:
        ...


class StateStore(Protocol):
    def load(self, key: str) -> Optional[ThresholdState]:
        ...

    def save(self, key: str, state: ThresholdState) -> None:
        ...

    def load_view_state(self) -> Optional[ViewState]:
        ...

    def save_view_state(self, view: ViewState) -> None:
        ...


class RefreshReason(Enum):
    """What triggered a refresh cycle."""
    STARTUP = "startup"
    MANUAL = "manual"
    TIMER = "timer"


class IncludedLimitSource(Enum):
    """Where the included-request limit of the current view state came from."""
    CUSTOM = "custom"    # User override
    PLAN = "plan"        # Selected plan from the catalog
    BILLING = "billing"  # Derived from billing discounts (best-effort)


class RefreshEventKind(Enum):
    """Kinds of events published to subscribers."""
    STARTED = "started"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    RATE_LIMITED = "rate_limited"
    CREDENTIAL_MISSING = "credential_missing"


@dataclass(frozen=True)
class RefreshState:
    """Process-lifetime refresh bookkeeping, as seen at one instant."""
    is_refreshing: bool
    manual_cooldown_remaining_seconds: int
    backoff_attempt: int
    next_allowed_auto_refresh_at: Optional[datetime]


@dataclass(frozen=True)
class RefreshEvent:
    """Published after every scheduler state transition."""
    kind: RefreshEventKind
    reason: RefreshReason
    view_state: Optional[ViewState]
    error_message: Optional[str] = None
    status_message: Optional[str] = None


@dataclass(frozen=True)
class DiagnosticEvent:
    """One entry of the bounded diagnostics ring."""
    at: datetime
    level: str  # "info", "warn" or "error"
    message: str


_LOG_LEVELS = {"info": logging.INFO, "warn": logging.WARNING, "error": logging.ERROR}


def compute_backoff_seconds(attempt: int) -> float:
    """Exponential backoff for the given attempt (1-based, capped at 10)."""
    attempt = max(1, min(attempt, MAX_BACKOFF_ATTEMPTS))
    return float(min(BACKOFF_MAX_SECONDS, BACKOFF_INITIAL_SECONDS * 2 ** (attempt - 1)))


class Ticker:
    """Calls an async callback every ``interval`` seconds on the running loop.

    Each tick runs in its own task, so stopping or re-arming the ticker
    never cancels a callback that is already running.
    """

    def __init__(self, callback: Callable[[], Awaitable[object]]):
        self._callback = callback
        self._task: Optional[asyncio.Task] = None
        self._in_flight: Set[asyncio.Task] = set()
        self.interval: Optional[float] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, interval: float) -> None:
        """(Re)arm the ticker; the first tick fires one interval from now."""
        self.stop()
        self.interval = interval
        self._task = asyncio.get_running_loop().create_task(self._run(interval))

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _run(self, interval: float) -> None:
        loop = asyncio.get_running_loop()
        while True:
            await asyncio.sleep(interval)
            tick = loop.create_task(self._fire())
            self._in_flight.add(tick)
            tick.add_done_callback(self._in_flight.discard)

    async def _fire(self) -> None:
        try:
            await self._callback()
        except Exception:
            logger.exception("Periodic refresh failed")


class RefreshScheduler:
    """Orchestrates refresh cycles and publishes their results.

    Usage::

        scheduler = RefreshScheduler(client, EnvCredentialProvider(),
                                     UsageStateRepository(), sink, preferences)
        scheduler.subscribe(print)
        await scheduler.start()
    """

    def __init__(
        self,
        usage_source: UsageSource,
        credentials: CredentialProvider,
        store: StateStore,
        notifier: NotificationSink,
        preferences: UsagePreferences,
        *,
        plan_catalog: PlanCatalog = PLAN_CATALOG,
        product: str = DEFAULT_PRODUCT,
        clock: Optional[Callable[[], datetime]] = None,
        fetch_timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS,
        manual_cooldown_seconds: float = MANUAL_REFRESH_COOLDOWN_SECONDS,
        notification_cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        app_prefix: str = DEFAULT_APP_PREFIX,
        label: str = "Copilot Premium Usage",
    ):
        self._usage_source = usage_source
        self._credentials = credentials
        self._store = store
        self._notifier = notifier
        self._preferences = preferences
        self._plan_catalog = plan_catalog
        self._product = product
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._fetch_timeout_seconds = fetch_timeout_seconds
        self._manual_cooldown_seconds = manual_cooldown_seconds
        self._notification_cooldown_seconds = notification_cooldown_seconds
        self._app_prefix = app_prefix
        self._label = label

        self._is_refreshing = False
        self._manual_cooldown_until: Optional[datetime] = None
        self._backoff_attempt = 0
        self._next_allowed_auto_refresh_at: Optional[datetime] = None

        self._view_state: Optional[ViewState] = None
        self._last_refresh_at: Optional[datetime] = None
        self._last_error: Optional[str] = None
        self._status_message: Optional[str] = None
        self._included_limit_source: Optional[IncludedLimitSource] = None

        self._subscribers: List[Callable[[RefreshEvent], None]] = []
        self._diagnostics: Deque[DiagnosticEvent] = deque(maxlen=MAX_DIAGNOSTICS)
        self._ticker = Ticker(self.on_timer)

    # ── Observable state ─────────────────────────────────────────

    @property
    def preferences(self) -> UsagePreferences:
        return self._preferences

    @property
    def view_state(self) -> Optional[ViewState]:
        return self._view_state

    @property
    def last_refresh_at(self) -> Optional[datetime]:
        return self._last_refresh_at

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def status_message(self) -> Optional[str]:
        return self._status_message

    @property
    def included_limit_source(self) -> Optional[IncludedLimitSource]:
        return self._included_limit_source

    @property
    def diagnostics(self) -> List[DiagnosticEvent]:
        return list(self._diagnostics)

    @property
    def refresh_state(self) -> RefreshState:
        return RefreshState(
            is_refreshing=self._is_refreshing,
            manual_cooldown_remaining_seconds=self._manual_cooldown_remaining(self._clock()),
            backoff_attempt=self._backoff_attempt,
            next_allowed_auto_refresh_at=self._next_allowed_auto_refresh_at,
        )

    @property
    def can_manually_refresh(self) -> bool:
        now = self._clock()
        return (not self._is_refreshing
                and self._manual_cooldown_remaining(now) <= 0
                and not self._deferral_active(now))

    def subscribe(self, callback: Callable[[RefreshEvent], None]) -> None:
        """Register a callback invoked after every state transition."""
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[RefreshEvent], None]) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    # ── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        """Restore the last known state, arm the periodic timer and refresh once."""
        self._restore_last_view_state()
        self._arm_ticker()
        await self.refresh_on_startup()

    def stop(self) -> None:
        self._ticker.stop()
        self._diagnostic("info", "Auto-refresh stopped")

    def update_preferences(self, preferences: UsagePreferences) -> None:
        """Swap the preferences snapshot; re-arms the timer if the interval changed."""
        previous = self._preferences
        self._preferences = preferences
        if (preferences.refresh_interval_minutes != previous.refresh_interval_minutes
                and self._ticker.running):
            self._arm_ticker()

    # ── Triggers ─────────────────────────────────────────────────

    async def refresh_on_startup(self) -> bool:
        """Refresh immediately, ignoring manual cooldown and rate-limit deferral."""
        if self._is_refreshing:
            self._diagnostic("info", "Startup refresh ignored: refresh already in progress")
            return False
        return await self._run_cycle(RefreshReason.STARTUP)

    async def refresh_now(self) -> bool:
        """Manual refresh. Returns False when the request is rejected or fails."""
        now = self._clock()
        if self._is_refreshing:
            self._diagnostic("info", "Manual refresh ignored: refresh already in progress")
            return False

        remaining = self._manual_cooldown_remaining(now)
        if remaining > 0:
            self._diagnostic("info", f"Manual refresh ignored: cooldown ({remaining}s remaining)")
            return False

        if self._deferral_active(now):
            seconds = math.ceil((self._next_allowed_auto_refresh_at - now).total_seconds())
            self._diagnostic("info", f"Manual refresh ignored: rate limited ({seconds}s remaining)")
            return False

        self._manual_cooldown_until = now + timedelta(seconds=self._manual_cooldown_seconds)
        return await self._run_cycle(RefreshReason.MANUAL)

    async def on_timer(self) -> bool:
        """Periodic refresh; skipped while refreshing or while deferred."""
        now = self._clock()
        if self._is_refreshing:
            self._diagnostic("info", "Auto-refresh skipped: refresh already in progress")
            return False

        if self._deferral_active(now):
            seconds = math.ceil((self._next_allowed_auto_refresh_at - now).total_seconds())
            self._diagnostic("info", f"Auto-refresh skipped due to rate limiting ({seconds}s remaining)")
            return False

        return await self._run_cycle(RefreshReason.TIMER)

    # ── Cycle ────────────────────────────────────────────────────

    async def _run_cycle(self, reason: RefreshReason) -> bool:
        self._is_refreshing = True
        try:
            period = Period.current(self._clock())
            self._diagnostic("info", f"Refresh started ({reason.value}) for {period.label}")
            self._publish(RefreshEventKind.STARTED, reason)

            try:
                token = self._credentials.read()
            except Exception as e:
                self._handle_failure(reason, e)
                return False

            if not token:
                self._handle_missing_credential(reason)
                return False

            try:
                report = await self._fetch(token, period)
            except RateLimitedError as e:
                self._handle_rate_limited(reason, e)
                return False
            except Exception as e:
                self._handle_failure(reason, e)
                return False

            self._handle_success(reason, period, report)
            return True
        finally:
            self._is_refreshing = False

    async def _fetch(self, token: str, period: Period) -> BillingUsageReport:
        try:
            return await asyncio.wait_for(
                self._usage_source.fetch_usage(token, period),
                timeout=self._fetch_timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise FetchTimeoutError(self._fetch_timeout_seconds)

    def _handle_success(self, reason: RefreshReason, period: Period, report: BillingUsageReport) -> None:
        now = self._clock()
        self._backoff_attempt = 0
        self._next_allowed_auto_refresh_at = None

        summary = summarize(report.items, product=self._product)
        preferences = self._resolve_included_limit(self._preferences)
        view = compute_view_state(period, summary, preferences, last_refresh_at=now)

        self._view_state = view
        self._last_refresh_at = now
        self._last_error = None
        self._status_message = f"Usage for {report.login} as of {now.isoformat(timespec='seconds')}"

        self._diagnostic(
            "info",
            f"Billing parsed for {report.login}: spend=${summary.spend_usd:.2f}, "
            f"requests={summary.total_quantity}, "
            f"discount_derived_included={summary.total_included_quantity}, "
            f"overage={summary.total_overage_quantity} "
            "(included is estimated from billing discounts, not the plan limit)",
        )

        try:
            self._store.save_view_state(view)
        except Exception as e:
            self._diagnostic("warn", f"Failed saving view state: {e}")

        self._evaluate_thresholds(view, preferences, now)
        self._publish(RefreshEventKind.SUCCEEDED, reason)

    def _handle_rate_limited(self, reason: RefreshReason, error: RateLimitedError) -> None:
        now = self._clock()
        self._record_error(str(error), now)

        if reason is RefreshReason.TIMER:
            if error.reset_at is not None and error.reset_at > now:
                self._next_allowed_auto_refresh_at = error.reset_at
                self._diagnostic(
                    "warn",
                    f"Rate limited: deferring auto-refresh until {error.reset_at.isoformat()}",
                )
            else:
                self._backoff_attempt = min(self._backoff_attempt + 1, MAX_BACKOFF_ATTEMPTS)
                wait = compute_backoff_seconds(self._backoff_attempt)
                self._next_allowed_auto_refresh_at = now + timedelta(seconds=wait)
                self._diagnostic(
                    "warn",
                    f"Rate limited: no reset provided; backing off auto-refresh for {int(wait)}s",
                )
        else:
            self._diagnostic(
                "warn",
                f"Rate limited on {reason.value} refresh: {error.detail or 'GitHub asked to slow down.'}",
            )

        self._publish(RefreshEventKind.RATE_LIMITED, reason)

    def _handle_failure(self, reason: RefreshReason, error: Exception) -> None:
        self._record_error(str(error) or error.__class__.__name__, self._clock())
        self._diagnostic("error", f"Refresh failed ({reason.value}): {self._last_error}")
        self._publish(RefreshEventKind.FAILED, reason)

    def _handle_missing_credential(self, reason: RefreshReason) -> None:
        self._view_state = None
        self._last_refresh_at = None
        self._last_error = None
        self._included_limit_source = None
        self._status_message = MISSING_TOKEN_STATUS
        self._diagnostic("warn", "Refresh skipped: token missing")
        self._publish(RefreshEventKind.CREDENTIAL_MISSING, reason)

    def _record_error(self, message: str, now: datetime) -> None:
        # The last good numbers stay visible, annotated with the error.
        self._last_error = message
        self._last_refresh_at = now
        self._status_message = None
        if self._view_state is not None:
            self._view_state = replace(self._view_state, health=Health.ERROR, last_error_message=message)

    # ── Included limit & thresholds ──────────────────────────────

    def _resolve_included_limit(self, preferences: UsagePreferences) -> UsagePreferences:
        """Fold a selected plan's limit into the override (override wins)."""
        if preferences.included_override > 0:
            self._included_limit_source = IncludedLimitSource.CUSTOM
            return preferences

        if preferences.selected_plan_id:
            plan = self._plan_catalog.find(preferences.selected_plan_id)
            if plan is not None:
                self._included_limit_source = IncludedLimitSource.PLAN
                return replace(preferences, included_override=float(plan.included_premium_requests))
            self._diagnostic("warn", f"Unknown plan id '{preferences.selected_plan_id}'; using billing estimate")

        self._included_limit_source = IncludedLimitSource.BILLING
        return preferences

    def _evaluate_thresholds(self, view: ViewState, preferences: UsagePreferences, now: datetime) -> None:
        metric_kind = MetricKind.from_primary_metric(preferences.primary_metric)
        if metric_kind is MetricKind.BUDGET_PERCENT:
            percent = view.budget_percent
            detail = f"${view.spend_usd:.2f} / ${view.budget_usd:.2f}"
        else:
            percent = view.included_percent
            detail = f"{view.included_used} / {view.included_total} requests"

        key = state_key(view.period, metric_kind)
        try:
            previous = self._store.load(key)
        except Exception as e:
            self._diagnostic("warn", f"Failed loading notification state, starting from baseline: {e}")
            previous = None

        result = evaluate(
            EvaluationInput(
                period=view.period,
                metric_kind=metric_kind,
                percent=percent,
                warn_at_percent=preferences.warn_at_percent,
                danger_at_percent=preferences.danger_at_percent,
                notifications_enabled=preferences.notifications_enabled,
                now=now,
                label=self._label,
                detail=detail,
            ),
            previous,
            minimum_cooldown_seconds=self._notification_cooldown_seconds,
        )

        try:
            self._store.save(key, result.new_state)
        except Exception as e:
            self._diagnostic("warn", f"Failed saving notification state: {e}")

        if not result.should_notify:
            return

        if not self._notifier.is_authorized():
            self._diagnostic("warn", "Notification suppressed: not authorized by system")
            return

        identifier = notification_identifier(self._app_prefix, view.period, metric_kind, result.level)
        try:
            delivered = self._notifier.post(identifier, result.title, result.body)
        except Exception as e:
            self._diagnostic("error", f"Failed posting notification: {e}")
            return

        if delivered:
            self._diagnostic("info", f"Notification posted: {result.title}")
        else:
            self._diagnostic("error", f"Failed posting notification: {identifier}")

    # ── Helpers ──────────────────────────────────────────────────

    def _arm_ticker(self) -> None:
        minutes = self._preferences.refresh_interval_minutes
        self._ticker.start(self._preferences.refresh_interval_seconds)
        self._diagnostic("info", f"Auto-refresh scheduled every {minutes} min")

    def _restore_last_view_state(self) -> None:
        if self._view_state is not None:
            return
        try:
            stored = self._store.load_view_state()
        except Exception as e:
            self._diagnostic("warn", f"Failed restoring last view state: {e}")
            return
        if stored is None:
            return
        self._view_state = replace(stored, health=Health.STALE)
        self._last_refresh_at = stored.last_refresh_at
        self._diagnostic("info", f"Restored last known usage for {stored.period.label}")

    def _manual_cooldown_remaining(self, now: datetime) -> int:
        if self._manual_cooldown_until is None:
            return 0
        return max(0, math.ceil((self._manual_cooldown_until - now).total_seconds()))

    def _deferral_active(self, now: datetime) -> bool:
        until = self._next_allowed_auto_refresh_at
        return until is not None and until > now

    def _publish(self, kind: RefreshEventKind, reason: RefreshReason) -> None:
        event = RefreshEvent(
            kind=kind,
            reason=reason,
            view_state=self._view_state,
            error_message=self._last_error,
            status_message=self._status_message,
        )
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                logger.exception("Refresh subscriber failed")

    def _diagnostic(self, level: str, message: str) -> None:
        self._diagnostics.append(DiagnosticEvent(at=self._clock(), level=level, message=message))
        logger.log(_LOG_LEVELS[level], message)
