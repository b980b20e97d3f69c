"""
Unit tests for the activity rate estimator.

Tests seeding, rate computation, resets, decay and spike detection.
"""

import math

import pytest

from tokentop.core.activity import (
    IDLE,
    ActivityConfig,
    ActivityRateEstimator,
    InvalidCounterValue,
)


class TestObservation:
    """Test how cumulative readings turn into rates."""

    def test_first_observation_is_idle(self):
        estimator = ActivityRateEstimator()
        assert estimator.observe("c", 1000, now=0) == IDLE

    def test_steady_rate(self):
        """Test 100 tokens per second shows as a 100/s instant rate."""
        estimator = ActivityRateEstimator()
        estimator.observe("c", 0, now=0)
        state = estimator.observe("c", 100, now=1000)

        assert state.instant_rate == pytest.approx(100)
        assert 0 < state.avg_rate <= state.instant_rate

    def test_monotonic_then_reset(self):
        """Test rates stay non-negative and bounded across a counter reset."""
        estimator = ActivityRateEstimator()
        samples = [0, 100, 250, 400, 50, 200]
        states = []
        for i, value in enumerate(samples):
            states.append(estimator.observe("c", value, now=i * 1000))

        for state in states:
            assert state.instant_rate >= 0
            assert state.avg_rate >= 0

        peak_before_reset = max(s.instant_rate for s in states[:4])
        reset_state = states[4]
        assert reset_state.instant_rate <= peak_before_reset
        assert not reset_state.is_spike
        # 50 -> 200 over one second
        assert states[5].instant_rate == pytest.approx(150)

    def test_observation_too_soon_is_deferred(self):
        """Test readings closer than the minimum interval are held back."""
        estimator = ActivityRateEstimator()
        estimator.observe("c", 0, now=0)
        before = estimator.observe("c", 100, now=200)
        assert before == IDLE

        state = estimator.observe("c", 100, now=1000)
        assert state.instant_rate == pytest.approx(100)

    def test_dt_clamped_to_max(self):
        """Test a long gap is treated as at most ten seconds."""
        estimator = ActivityRateEstimator()
        estimator.observe("c", 0, now=0)
        state = estimator.observe("c", 1000, now=60_000)
        assert state.instant_rate == pytest.approx(100)

    def test_huge_delta_ignored(self):
        """Test a jump of a million tokens or more adds no flow."""
        estimator = ActivityRateEstimator()
        estimator.observe("c", 0, now=0)
        state = estimator.observe("c", 5_000_000, now=1000)
        assert state.instant_rate == 0

        state = estimator.observe("c", 5_000_100, now=2000)
        assert state.instant_rate == pytest.approx(100)

    @pytest.mark.parametrize("value", [math.nan, math.inf, -1, True, "10"])
    def test_invalid_values_raise(self, value):
        estimator = ActivityRateEstimator()
        with pytest.raises(InvalidCounterValue):
            estimator.observe("c", value, now=0)


class TestDecay:
    """Test ticking without data."""

    def test_shifted_slots_decay_from_newest_bucket(self):
        """Test a one-second shift appends the newest bucket times the decay factor."""
        estimator = ActivityRateEstimator()
        estimator.observe("c", 0, now=0)
        estimator.observe("c", 500, now=1000)
        assert estimator.buckets("c")[-3:] == pytest.approx([250, 375, 500])

        estimator.tick(2000)

        assert estimator.buckets("c")[-4:] == pytest.approx([250, 375, 500, 350])

    def test_decays_to_exact_zero(self):
        """Test both rates reach exactly zero after 60 seconds of ticks."""
        estimator = ActivityRateEstimator()
        estimator.observe("c", 0, now=0)
        estimator.observe("c", 5000, now=1000)
        assert estimator.state("c").instant_rate > 0

        for second in range(2, 63):
            estimator.tick(now=second * 1000)

        state = estimator.state("c")
        assert state.instant_rate == 0.0
        assert state.avg_rate == 0.0
        assert not state.is_spike

    def test_rate_decreases_during_silence(self):
        estimator = ActivityRateEstimator()
        estimator.observe("c", 0, now=0)
        estimator.observe("c", 1000, now=1000)
        first = estimator.state("c")

        estimator.tick(now=20_000)
        later = estimator.state("c")
        assert later.instant_rate < first.instant_rate
        assert later.avg_rate < first.avg_rate

    def test_tick_without_elapsed_second_changes_nothing(self):
        estimator = ActivityRateEstimator()
        estimator.observe("c", 0, now=0)
        estimator.observe("c", 1000, now=1000)
        buckets = estimator.buckets("c")

        estimator.tick(now=1500)
        assert estimator.buckets("c") == buckets


class TestSpike:
    """Test spike detection."""

    def test_burst_after_quiet_is_spike(self):
        estimator = ActivityRateEstimator()
        estimator.observe("c", 0, now=0)
        state = estimator.observe("c", 2000, now=1000)
        assert state.is_spike

    def test_small_rate_never_spikes(self):
        estimator = ActivityRateEstimator()
        estimator.observe("c", 0, now=0)
        state = estimator.observe("c", 100, now=1000)
        assert not state.is_spike

    def test_sustained_rate_is_not_spike(self):
        """Test a steady high rate stops counting as a spike."""
        estimator = ActivityRateEstimator()
        value = 0
        estimator.observe("c", value, now=0)
        for second in range(1, 20):
            value += 1000
            state = estimator.observe("c", value, now=second * 1000)
        assert not state.is_spike


class TestCounterLifecycle:
    """Test counter bookkeeping."""

    def test_retain_and_discard(self):
        estimator = ActivityRateEstimator()
        for counter in ("a", "b", "c"):
            estimator.observe(counter, 0, now=0)

        estimator.retain(["a", "b"])
        assert estimator.counters() == ["a", "b"]

        estimator.discard("a")
        assert estimator.counters() == ["b"]
        assert estimator.state("a") == IDLE
        assert estimator.buckets("a") == [0.0] * 60

    def test_counters_are_independent(self):
        estimator = ActivityRateEstimator()
        estimator.observe("a", 0, now=0)
        estimator.observe("b", 0, now=0)
        estimator.observe("a", 500, now=1000)

        assert estimator.state("a").instant_rate == pytest.approx(500)
        assert estimator.state("b") == IDLE


class TestConfig:
    """Test configuration validation."""

    def test_defaults(self):
        config = ActivityConfig()
        assert config.bucket_count == 60
        assert config.window == 10
        assert config.decay_factor == 0.7

    def test_invalid_window(self):
        with pytest.raises(ValueError):
            ActivityConfig(window=0)
        with pytest.raises(ValueError):
            ActivityConfig(bucket_count=5, window=10)

    def test_invalid_decay(self):
        with pytest.raises(ValueError):
            ActivityConfig(decay_factor=1.0)

    def test_custom_config_used(self):
        estimator = ActivityRateEstimator(ActivityConfig(bucket_count=20, window=5))
        assert len(estimator.buckets("missing")) == 20
