"""
Real-time activity rate estimation.

Turns irregularly sampled cumulative token counters into a smoothed rate
suitable for a live display. Each counter owns a ring of one-second buckets
driven by two events: ``observe(value, now)`` when a new cumulative reading
arrives and ``tick(now)`` roughly once per second so the display decays to
zero during silence. Clocks are always passed in by the caller.
"""

import math
import threading
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional


class InvalidCounterValue(ValueError):
    """Raised when a counter reading is NaN, infinite or negative."""


@dataclass(frozen=True)
class ActivityConfig:
    """Tunable constants of the estimator.

    The decay factor and spike thresholds are empirically tuned display
    parameters.
    """
    bucket_count: int = 60
    window: int = 10
    min_interval_s: float = 0.5
    max_dt_s: float = 10.0
    decay_factor: float = 0.7
    zero_epsilon: float = 0.5
    ramp_max: int = 6
    ramp_step: float = 0.25
    ramp_floor: float = 0.15
    spike_floor: float = 500.0
    spike_multiplier: float = 3.0
    max_delta: int = 1_000_000

    def __post_init__(self):
        if self.bucket_count <= 0:
            raise ValueError("bucket_count must be > 0")
        if not 0 < self.window <= self.bucket_count:
            raise ValueError("window must be between 1 and bucket_count")
        if self.min_interval_s <= 0 or self.max_dt_s < self.min_interval_s:
            raise ValueError("need 0 < min_interval_s <= max_dt_s")
        if not 0 <= self.decay_factor < 1:
            raise ValueError("decay_factor must be in [0, 1)")
        if self.zero_epsilon < 0:
            raise ValueError("zero_epsilon cannot be negative")
        if self.ramp_max < 1:
            raise ValueError("ramp_max must be >= 1")
        if self.spike_multiplier <= 0:
            raise ValueError("spike_multiplier must be > 0")


@dataclass(frozen=True)
class ActivityState:
    """Derived rates over the most recent window of buckets (tokens/s)."""
    instant_rate: float = 0.0
    avg_rate: float = 0.0
    is_spike: bool = False


IDLE = ActivityState()


class _CounterState:
    def __init__(self, value: float, now: int, bucket_count: int):
        self.last_value = value
        self.last_observed_at = now
        self.last_shift_at = now
        self.buckets: List[float] = [0.0] * bucket_count
        self.activity = IDLE
        self.lock = threading.Lock()


class ActivityRateEstimator:
    """Per-counter smoothed rate tracking.

    Counter ids are arbitrary strings (a session key, "global", a provider
    id). A counter's state must only be advanced by one logical updater; the
    per-counter lock keeps threaded callers from interleaving.
    """

    def __init__(self, config: Optional[ActivityConfig] = None):
        self.config = config or ActivityConfig()
        self._counters: Dict[str, _CounterState] = {}
        self._registry_lock = threading.Lock()

    def observe(self, counter_id: str, cumulative_value: float, now: int) -> ActivityState:
        """Feed a cumulative reading taken at ``now`` (epoch ms).

        Raises:
            InvalidCounterValue: If the reading is NaN, infinite or negative
        """
        if (
            isinstance(cumulative_value, bool)
            or not isinstance(cumulative_value, (int, float))
            or not math.isfinite(cumulative_value)
            or cumulative_value < 0
        ):
            raise InvalidCounterValue(f"invalid reading for {counter_id!r}: {cumulative_value!r}")

        with self._registry_lock:
            state = self._counters.get(counter_id)
            if state is None:
                self._counters[counter_id] = _CounterState(
                    cumulative_value, now, self.config.bucket_count
                )
                return IDLE

        with state.lock:
            return self._advance(state, cumulative_value, now)

    def tick(self, now: int) -> None:
        """Shift and decay every counter without new data."""
        with self._registry_lock:
            states = list(self._counters.values())
        for state in states:
            with state.lock:
                if self._shift_to(state, now) > 0:
                    state.activity = self._rates(state.buckets)

    def state(self, counter_id: str) -> ActivityState:
        counter = self._counters.get(counter_id)
        return counter.activity if counter is not None else IDLE

    def buckets(self, counter_id: str) -> List[float]:
        """Copy of the bucket ring, oldest first, for sparklines."""
        counter = self._counters.get(counter_id)
        if counter is None:
            return [0.0] * self.config.bucket_count
        with counter.lock:
            return list(counter.buckets)

    def counters(self) -> List[str]:
        return sorted(self._counters)

    def discard(self, counter_id: str) -> None:
        with self._registry_lock:
            self._counters.pop(counter_id, None)

    def retain(self, counter_ids: Iterable[str]) -> None:
        """Drop every counter not in ``counter_ids``."""
        keep = set(counter_ids)
        with self._registry_lock:
            for counter_id in list(self._counters):
                if counter_id not in keep:
                    del self._counters[counter_id]

    def _advance(self, state: _CounterState, value: float, now: int) -> ActivityState:
        cfg = self.config
        raw_dt = (now - state.last_observed_at) / 1000

        # Too soon: keep last_value so the delta is measured later
        if raw_dt < cfg.min_interval_s:
            return state.activity

        if value < state.last_value:
            # Counter reset; re-base without contributing flow
            state.last_value = value
            state.last_observed_at = now
            self._shift_to(state, now)
            state.activity = self._rates(state.buckets)
            return state.activity

        delta = value - state.last_value
        if delta <= 0:
            if self._shift_to(state, now) > 0:
                state.activity = self._rates(state.buckets)
            return state.activity

        dt = min(max(raw_dt, cfg.min_interval_s), cfg.max_dt_s)
        shifted = self._shift_to(state, now)
        if delta < cfg.max_delta:
            self._apply_ramp(state.buckets, delta / dt, shifted)

        state.last_value = value
        state.last_observed_at = now
        state.activity = self._rates(state.buckets)
        return state.activity

    def _shift_to(self, state: _CounterState, now: int) -> int:
        shift = int((now - state.last_shift_at) // 1000)
        if shift <= 0:
            return 0
        state.buckets = self._shift_with_decay(state.buckets, shift)
        state.last_shift_at += shift * 1000
        return shift

    def _shift_with_decay(self, buckets: List[float], count: int) -> List[float]:
        cfg = self.config
        n = len(buckets)
        shift = min(count, n)
        eps = cfg.zero_epsilon

        kept = [0.0 if v < eps else v for v in buckets[shift:]]
        newest = buckets[-1]
        fresh = []
        for step in range(1, shift + 1):
            decayed = newest * cfg.decay_factor ** step
            fresh.append(0.0 if decayed < eps else decayed)
        return kept + fresh

    def _apply_ramp(self, buckets: List[float], peak_rate: float, shifted: int) -> None:
        cfg = self.config
        width = min(shifted + 2, cfg.ramp_max, len(buckets))
        for distance in range(width):
            idx = len(buckets) - 1 - distance
            multiplier = max(cfg.ramp_floor, 1 - distance * cfg.ramp_step)
            buckets[idx] = max(buckets[idx], peak_rate * multiplier)

    def _rates(self, buckets: List[float]) -> ActivityState:
        cfg = self.config
        recent = buckets[-cfg.window:]
        instant = max(recent)
        avg = sum(recent) / cfg.window
        is_spike = instant >= cfg.spike_floor and instant >= avg * cfg.spike_multiplier
        return ActivityState(instant_rate=instant, avg_rate=avg, is_spike=is_spike)
