"""Tests for jitter and the throttling backoff state."""
import random

import pytest

from job_queue.backoff import BackoffState, apply_jitter


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance_ms(self, ms: float):
        self.now += ms / 1000


class TestApplyJitter:
    @pytest.mark.parametrize("base,factor", [(1500, 0.5), (1000, 0.25), (7, 0.9), (1, 1.0), (0, 0.5)])
    def test_stays_within_bounds(self, base, factor):
        rng = random.Random(42)
        low, high = max(0, base * (1 - factor)), base * (1 + factor)
        for _ in range(500):
            value = apply_jitter(base, factor, rng)
            assert low <= value <= high

    def test_zero_factor_is_identity(self):
        assert apply_jitter(1500, 0) == 1500

    def test_never_negative(self):
        rng = random.Random(1)
        assert all(apply_jitter(100, 3.0, rng) >= 0 for _ in range(200))

    def test_spreads_values(self):
        rng = random.Random(7)
        values = {apply_jitter(1500, 0.5, rng) for _ in range(50)}
        assert len(values) > 10


class TestBackoffState:
    def test_starts_normal(self):
        state = BackoffState()
        assert state.current_ms == 0
        assert not state.throttled

    def test_escalation_sequence(self):
        state = BackoffState(initial_ms=1000, multiplier=2, max_ms=8000)
        assert [state.escalate() for _ in range(3)] == [1000, 2000, 4000]
        assert state.throttled

    def test_escalation_capped(self):
        state = BackoffState(initial_ms=1000, multiplier=2, max_ms=8000)
        for _ in range(10):
            assert state.escalate() <= 8000
        assert state.current_ms == 8000

    def test_initial_capped_by_max(self):
        state = BackoffState(initial_ms=5000, max_ms=2000)
        assert state.escalate() == 2000

    def test_no_reset_inside_quiet_period(self):
        clock = FakeClock()
        state = BackoffState(initial_ms=1000, reset_after_ms=300000, clock=clock)
        state.escalate()
        clock.advance_ms(299000)
        assert state.check_reset() is False
        assert state.current_ms == 1000

    def test_reset_after_quiet_period(self):
        clock = FakeClock()
        state = BackoffState(initial_ms=1000, reset_after_ms=300000, clock=clock)
        state.escalate()
        state.escalate()
        clock.advance_ms(300001)
        assert state.check_reset() is True
        assert state.current_ms == 0

    def test_new_signal_restarts_quiet_period(self):
        clock = FakeClock()
        state = BackoffState(initial_ms=1000, reset_after_ms=1000, clock=clock)
        state.escalate()
        clock.advance_ms(900)
        state.escalate()
        clock.advance_ms(900)
        assert state.check_reset() is False
        assert state.current_ms == 2000

    def test_check_reset_noop_when_normal(self):
        assert BackoffState().check_reset() is False

    def test_clear(self):
        state = BackoffState()
        state.escalate()
        state.clear()
        assert state.current_ms == 0
        assert state.last_rate_limit_at is None

    def test_from_config(self, rate_conf):
        state = BackoffState.from_config(rate_conf)
        assert state.initial_ms == rate_conf.initial_backoff_ms
        assert state.max_ms == rate_conf.max_backoff_ms
        assert state.reset_after_ms == rate_conf.backoff_reset_ms
