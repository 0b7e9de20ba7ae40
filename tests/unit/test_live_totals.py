"""
Unit tests for the live totals state machine.

Timers run on a manual scheduler driven by a fake clock, so every
test controls exactly when debounce windows elapse.
"""

import pytest
from decimal import Decimal

from estimator.services.live_totals_service import CalculatorState, LiveTotalsCalculator


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class _Handle:
    def __init__(self, due, callback):
        self.due = due
        self.callback = callback
        self.cancelled = False


class ManualScheduler:
    """Fires callbacks only when advance() moves the clock past them."""

    def __init__(self, clock):
        self.clock = clock
        self.handles = []

    def call_later(self, delay, callback):
        handle = _Handle(self.clock.now + delay, callback)
        self.handles.append(handle)
        return handle

    def cancel(self, handle):
        handle.cancelled = True

    @property
    def pending(self):
        return [h for h in self.handles if not h.cancelled]

    def advance(self, seconds):
        target = self.clock.now + seconds
        while True:
            due = [h for h in self.pending if h.due <= target]
            if not due:
                break
            handle = min(due, key=lambda h: h.due)
            self.handles.remove(handle)
            self.clock.now = max(self.clock.now, handle.due)
            handle.callback()
        self.clock.now = target


ITEMS = [
    {'cost': 100, 'markup_percentage': 20, 'quantity': 2},
    {'cost': 50, 'markup_percentage': 0, 'quantity': 1},
]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler(clock):
    return ManualScheduler(clock)


@pytest.fixture
def updates():
    return []


@pytest.fixture
def calculator(clock, scheduler, updates):
    return LiveTotalsCalculator(
        on_update=updates.append,
        scheduler=scheduler,
        clock=clock,
        debounce_seconds=0.8,
        min_interval_seconds=0.5,
        contingency_percentage='10'
    )


class TestDebounce:

    def test_burst_of_edits_coalesces_into_one_recompute(self, calculator, scheduler):
        # Ten edits inside one 800ms window
        for _ in range(10):
            calculator.items_changed(ITEMS)
            scheduler.advance(0.0625)

        assert calculator.recompute_count == 0
        assert calculator.state is CalculatorState.SCHEDULED

        scheduler.advance(1)

        assert calculator.recompute_count == 1
        assert calculator.state is CalculatorState.IDLE
        assert calculator.totals['grand_total'] == Decimal('319')

    def test_uses_latest_items(self, calculator, scheduler):
        calculator.items_changed([{'cost': 1, 'markup_percentage': 0, 'quantity': 1}])
        calculator.items_changed(ITEMS)
        scheduler.advance(0.8)

        assert calculator.totals['subtotal'] == Decimal('290')
        assert len(calculator.item_figures) == 2

    def test_flush_runs_pending_recompute(self, calculator):
        calculator.items_changed(ITEMS)
        calculator.flush()

        assert calculator.recompute_count == 1
        assert calculator.state is CalculatorState.IDLE

    def test_default_window_is_800ms(self, clock, scheduler):
        calculator = LiveTotalsCalculator.from_config({}, scheduler=scheduler, clock=clock)
        calculator.items_changed(ITEMS)

        scheduler.advance(0.75)
        assert calculator.recompute_count == 0

        scheduler.advance(0.0625)
        assert calculator.recompute_count == 1

    def test_flush_bypasses_min_interval(self, calculator, scheduler):
        calculator.items_changed(ITEMS)
        scheduler.advance(0.8)

        calculator.items_changed([ITEMS[0]])
        calculator.flush()

        assert calculator.recompute_count == 2
        assert calculator.totals['subtotal'] == Decimal('240')

    def test_flush_without_pending_change_is_noop(self, calculator):
        calculator.flush()
        assert calculator.recompute_count == 0


class TestContingency:

    def test_contingency_change_applies_immediately(self, calculator, scheduler, updates):
        calculator.items_changed(ITEMS)
        scheduler.advance(0.8)
        updates.clear()

        calculator.contingency_changed('20')

        assert calculator.totals['contingency_amount'] == Decimal('58')
        assert calculator.totals['grand_total'] == Decimal('348')
        assert calculator.recompute_count == 1
        assert len(updates) == 1

    def test_contingency_before_first_run_schedules_recompute(self, calculator, scheduler):
        calculator.contingency_changed('5')
        assert calculator.state is CalculatorState.SCHEDULED

        calculator.items_changed(ITEMS)
        scheduler.advance(0.8)

        assert calculator.totals['contingency_amount'] == Decimal('14.5')

    def test_contingency_change_during_recompute_is_kept(self, calculator, scheduler):
        calculator.items_changed(ITEMS)
        scheduler.advance(0.8)

        class EditedWhileComputing:
            markup_percentage = 20
            quantity = 2

            @property
            def cost(self):
                calculator.contingency_changed('50')
                return 100

        calculator.items_changed([EditedWhileComputing(), ITEMS[1]])
        scheduler.advance(1)

        assert calculator.recompute_count == 2
        assert calculator.totals['contingency_amount'] == Decimal('145')
        assert calculator.totals['grand_total'] == Decimal('435')

    def test_invalid_contingency_sets_error_and_recovers(self, calculator, scheduler):
        calculator.items_changed(ITEMS)
        scheduler.advance(0.8)

        calculator.contingency_changed('abc')
        assert calculator.has_error
        assert calculator.totals['grand_total'] == Decimal('319')

        calculator.contingency_changed('0')
        assert not calculator.has_error
        assert calculator.totals['grand_total'] == Decimal('290')


class TestReentrancy:

    def test_listener_change_defers_exactly_one_extra_run(self, clock, scheduler):
        calls = []

        def listener(snapshot):
            calls.append(snapshot)
            if len(calls) == 1:
                # Writing derived fields back notifies the calculator again
                calculator.items_changed(ITEMS)
                calculator.items_changed(ITEMS)
                calculator.contingency_changed('10')

        calculator = LiveTotalsCalculator(
            on_update=listener, scheduler=scheduler, clock=clock,
            debounce_seconds=0.8, min_interval_seconds=0.5
        )
        calculator.items_changed(ITEMS)
        scheduler.advance(0.8)

        assert calculator.recompute_count == 1
        assert calls[0]['state'] == 'computing'
        assert calculator.state is CalculatorState.SCHEDULED

        scheduler.advance(10)

        assert calculator.recompute_count == 2
        assert calculator.state is CalculatorState.IDLE
        assert scheduler.pending == []

    def test_listener_exception_does_not_stick_in_computing(self, clock, scheduler):
        def listener(snapshot):
            raise RuntimeError('render failed')

        calculator = LiveTotalsCalculator(
            on_update=listener, scheduler=scheduler, clock=clock, debounce_seconds=0.8
        )
        calculator.items_changed(ITEMS)
        scheduler.advance(0.8)

        assert calculator.state is CalculatorState.IDLE
        assert calculator.recompute_count == 1


class TestRateLimit:

    def test_second_run_waits_for_min_interval(self, clock, scheduler):
        calculator = LiveTotalsCalculator(
            scheduler=scheduler, clock=clock,
            debounce_seconds=0.125, min_interval_seconds=0.5
        )

        calculator.items_changed(ITEMS)
        scheduler.advance(0.125)
        assert calculator.recompute_count == 1

        calculator.items_changed(ITEMS)
        scheduler.advance(0.125)
        assert calculator.recompute_count == 1
        assert calculator.state is CalculatorState.SCHEDULED

        scheduler.advance(0.25)
        assert calculator.recompute_count == 1

        scheduler.advance(0.125)
        assert calculator.recompute_count == 2


class TestErrors:

    def test_failed_recompute_keeps_last_good_totals(self, calculator, scheduler):
        calculator.items_changed(ITEMS)
        scheduler.advance(0.8)
        good = dict(calculator.totals)

        calculator.items_changed([{'cost': 'abc', 'markup_percentage': 0, 'quantity': 1}])
        scheduler.advance(1)

        assert calculator.has_error
        assert 'cost' in calculator.error_message
        assert calculator.totals == good
        assert calculator.state is CalculatorState.IDLE

    def test_successful_recompute_clears_error(self, calculator, scheduler):
        calculator.items_changed([{'cost': 'abc'}])
        scheduler.advance(0.8)
        assert calculator.has_error
        assert calculator.totals is None

        calculator.items_changed(ITEMS)
        scheduler.advance(1)

        assert not calculator.has_error
        assert calculator.snapshot()['totals']['grand_total'] == Decimal('319')


def test_from_config_reads_millisecond_settings():
    calculator = LiveTotalsCalculator.from_config(
        {'ESTIMATE_RECALC_DEBOUNCE_MS': 300, 'ESTIMATE_RECALC_MIN_INTERVAL_MS': 1000}
    )

    assert calculator.debounce_seconds == 0.3
    assert calculator.min_interval_seconds == 1.0
