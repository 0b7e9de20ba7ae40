"""
Live totals service - reactive recomputation of estimate totals while a
draft is being edited.

State machine:

    IDLE --items_changed--> SCHEDULED --debounce elapsed--> COMPUTING --> IDLE
                                ^                               |
                                +------ one deferred run -------+

- Line item changes are debounced (bursts inside the window coalesce).
- Contingency changes update contingency_amount / grand_total at once,
  reusing the last computed subtotal.
- Full recomputations are rate limited to one per min interval.
- Notifications received while COMPUTING (e.g. a listener writing derived
  fields back into the draft) are deferred; exactly one recomputation runs
  after the current one finishes.
- A failing recomputation sets has_error / error_message and keeps the
  last known good totals.
"""
import enum
import logging
import threading
import time
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional

from estimator.services.calculation_service import (
    calculate_contingency,
    calculate_estimate_totals,
    calculate_line_item,
    item_inputs,
    to_decimal,
)

logger = logging.getLogger(__name__)


class CalculatorState(enum.Enum):
    """Live totals calculator states."""
    IDLE = "idle"
    SCHEDULED = "scheduled"
    COMPUTING = "computing"


class TimerScheduler:
    """Scheduler backed by threading.Timer."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> threading.Timer:
        timer = threading.Timer(delay, callback)
        timer.daemon = True
        timer.start()
        return timer

    def cancel(self, handle: threading.Timer) -> None:
        handle.cancel()


class LiveTotalsCalculator:
    """
    Recomputes draft totals as line items and contingency change.

    Usage:
        calculator = LiveTotalsCalculator(on_update=render_totals)
        calculator.items_changed(items)
        calculator.contingency_changed('10')
    """

    def __init__(
        self,
        on_update: Optional[Callable[[Dict[str, Any]], None]] = None,
        scheduler=None,
        clock: Callable[[], float] = time.monotonic,
        debounce_seconds: float = 0.8,
        min_interval_seconds: float = 0.5,
        contingency_percentage: Any = 0
    ):
        self.on_update = on_update
        self.scheduler = scheduler or TimerScheduler()
        self.clock = clock
        self.debounce_seconds = debounce_seconds
        self.min_interval_seconds = min_interval_seconds

        self._lock = threading.RLock()
        self._items: List[Any] = []
        self._contingency = to_decimal(contingency_percentage, field='contingency_percentage')
        self._timer = None
        self._deferred = False
        self._last_run_at: Optional[float] = None
        self._error_source: Optional[str] = None

        self.state = CalculatorState.IDLE
        self.totals: Optional[Dict[str, Decimal]] = None
        self.item_figures: List[Dict[str, Decimal]] = []
        self.has_error = False
        self.error_message: Optional[str] = None
        self.recompute_count = 0

    @classmethod
    def from_config(cls, config, **kwargs) -> 'LiveTotalsCalculator':
        """Build a calculator using the ESTIMATE_RECALC_* settings."""
        kwargs.setdefault('debounce_seconds', config.get('ESTIMATE_RECALC_DEBOUNCE_MS', 800) / 1000.0)
        kwargs.setdefault('min_interval_seconds', config.get('ESTIMATE_RECALC_MIN_INTERVAL_MS', 500) / 1000.0)
        return cls(**kwargs)

    # ------------------------------------------------------------------
    # Change notifications
    # ------------------------------------------------------------------

    def items_changed(self, items: Iterable[Any]) -> None:
        """Record the latest line items and (re)start the debounce window."""
        with self._lock:
            self._items = list(items)
            if self.state is CalculatorState.COMPUTING:
                self._deferred = True
                return
            self._schedule(self.debounce_seconds)

    def contingency_changed(self, contingency_percentage: Any) -> None:
        """Apply a contingency change immediately (no debounce)."""
        with self._lock:
            try:
                self._contingency = to_decimal(contingency_percentage, field='contingency_percentage')
            except ValueError as e:
                self._set_error(str(e), source='contingency')
                snapshot = self.snapshot()
            else:
                if self._error_source == 'contingency':
                    self._clear_error()

                if self.totals is None:
                    # Nothing computed yet: the next full run picks the value up
                    if self.state is CalculatorState.COMPUTING:
                        self._deferred = True
                    elif self.state is CalculatorState.IDLE:
                        self._schedule(self.debounce_seconds)
                    return

                totals = dict(self.totals)
                totals.update(calculate_contingency(totals['subtotal'], self._contingency))
                self.totals = totals
                snapshot = self.snapshot()

        self._notify(snapshot)

    def flush(self) -> None:
        """
        Run a pending recomputation now, right before submitting.

        This is the one path that bypasses the min interval rate limit:
        the totals shown at submit time must reflect the last edit.
        """
        with self._lock:
            if self.state is not CalculatorState.SCHEDULED:
                return
            if self._timer is not None:
                self.scheduler.cancel(self._timer)
                self._timer = None
            self._last_run_at = None
        self._run()

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _schedule(self, delay: float) -> None:
        """Replace any pending run with one `delay` seconds from now (lock held)."""
        if self._timer is not None:
            self.scheduler.cancel(self._timer)
        self._timer = self.scheduler.call_later(delay, self._run)
        self.state = CalculatorState.SCHEDULED

    def _run(self) -> None:
        with self._lock:
            self._timer = None
            if self.state is CalculatorState.COMPUTING:
                self._deferred = True
                return

            if self._last_run_at is not None:
                wait = self.min_interval_seconds - (self.clock() - self._last_run_at)
                if wait > 0:
                    self._schedule(wait)
                    return

            self.state = CalculatorState.COMPUTING
            items = list(self._items)
            contingency = self._contingency

        # Computed outside the lock: notifications arriving meanwhile are deferred, not blocked
        figures, totals, error = None, None, None
        try:
            figures = [calculate_line_item(**item_inputs(item)) for item in items]
            totals = calculate_estimate_totals(items, contingency)
        except Exception as e:
            logger.warning(f"[LIVE TOTALS] Recalculation failed: {e}")
            error = str(e) or e.__class__.__name__

        with self._lock:
            self.recompute_count += 1
            self._last_run_at = self.clock()
            if error is None:
                if self._contingency != contingency:
                    # Contingency changed while computing
                    totals.update(calculate_contingency(totals['subtotal'], self._contingency))
                self.item_figures = figures
                self.totals = totals
                self._clear_error()
            else:
                self._set_error(error, source='items')
            snapshot = self.snapshot()

        try:
            self._notify(snapshot)
        finally:
            with self._lock:
                self.state = CalculatorState.IDLE
                if self._deferred:
                    self._deferred = False
                    self._schedule(self.min_interval_seconds)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _set_error(self, message: str, source: str) -> None:
        self.has_error = True
        self.error_message = message
        self._error_source = source

    def _clear_error(self) -> None:
        self.has_error = False
        self.error_message = None
        self._error_source = None

    def snapshot(self) -> Dict[str, Any]:
        """Current display state (totals are the last known good values)."""
        return {
            'state': self.state.value,
            'totals': dict(self.totals) if self.totals else None,
            'items': [dict(f) for f in self.item_figures],
            'has_error': self.has_error,
            'error_message': self.error_message,
        }

    def _notify(self, snapshot: Dict[str, Any]) -> None:
        if not self.on_update:
            return
        try:
            self.on_update(snapshot)
        except Exception:
            logger.exception("[LIVE TOTALS] Update listener failed")
