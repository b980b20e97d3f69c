"""
Unit tests for session and provider persistence.

Tests snapshot throttling and stream delta events.
"""

import os
import tempfile

import pytest

from tokentop.core.aggregator import aggregate
from tokentop.core.recorder import SessionRecorder
from tokentop.providers.base import ProviderUsage, UsageLimit
from tokentop.storage.models import UsageQuery, UsageSource
from tokentop.storage.repository import UsageStore

T0 = 1_704_067_200_000
MINUTE = 60_000


def _rows(*tokens_per_row, session="s1"):
    return [
        {
            "timestamp": T0 + i,
            "agentId": "a1",
            "sessionId": session,
            "providerId": "anthropic",
            "modelId": "m1",
            "tokens": {"input": inp, "output": out},
        }
        for i, (inp, out) in enumerate(tokens_per_row)
    ]


class TestSessionRecorder:
    """Test session snapshots and delta events."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "usage.db")
        self.store = UsageStore(self.db_path).initialize()
        self.recorder = SessionRecorder(self.store, snapshot_interval_ms=MINUTE)

    def teardown_method(self):
        import shutil
        self.store.close()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _events(self):
        return self.store.query_usage_events(UsageQuery())

    def test_first_snapshot_emits_full_totals(self):
        agg = aggregate(_rows((100, 50), (200, 80)), now=T0)[0]

        snapshot_id = self.recorder.record_session(agg, T0)

        assert snapshot_id is not None
        events = self._events()
        assert len(events) == 1
        assert events[0].input_tokens == 300
        assert events[0].output_tokens == 130
        assert events[0].request_count == 2
        assert events[0].source == UsageSource.AGENT
        assert events[0].agent_id == "a1"

    def test_throttled_within_interval(self):
        agg = aggregate(_rows((100, 50)), now=T0)[0]
        assert self.recorder.record_session(agg, T0) is not None
        assert self.recorder.record_session(agg, T0 + MINUTE - 1) is None
        assert self.recorder.record_session(agg, T0 + MINUTE) is not None

    def test_growth_recorded_as_delta(self):
        self.recorder.record_session(aggregate(_rows((100, 50)), now=T0)[0], T0)
        grown = aggregate(_rows((100, 50), (40, 10)), now=T0 + MINUTE)[0]
        self.recorder.record_session(grown, T0 + MINUTE)

        events = self._events()
        assert [e.input_tokens for e in events] == [40, 100]
        assert events[0].request_count == 1

        daily = self.store.get_daily_rollups("2024-01-01", "2024-01-01")
        assert daily[0].total_input_tokens == 140

    def test_unchanged_session_emits_nothing(self):
        agg = aggregate(_rows((100, 50)), now=T0)[0]
        self.recorder.record_session(agg, T0)
        self.recorder.record_session(agg, T0 + MINUTE)
        assert len(self._events()) == 1

    def test_restart_does_not_reemit(self):
        """Test a new recorder seeds previous totals from the store."""
        agg = aggregate(_rows((100, 50)), now=T0)[0]
        self.recorder.record_session(agg, T0)

        fresh = SessionRecorder(self.store, snapshot_interval_ms=MINUTE)
        fresh.record_session(agg, T0 + MINUTE)

        assert len(self._events()) == 1

    def test_failed_event_write_keeps_delta_for_restart(self, monkeypatch):
        """Test a failed write stores no snapshot, so a restart still emits the usage."""
        agg = aggregate(_rows((100, 50)), now=T0)[0]

        def broken(events, granularity):
            raise RuntimeError("disk full")

        monkeypatch.setattr("tokentop.storage.repository.rollups_from_events", broken)
        with pytest.raises(RuntimeError):
            self.recorder.record_session(agg, T0)
        monkeypatch.undo()

        assert self.store.get_latest_stream_totals() == []
        fresh = SessionRecorder(self.store, snapshot_interval_ms=MINUTE)
        fresh.record_session(agg, T0 + MINUTE)

        events = self._events()
        assert len(events) == 1
        assert events[0].input_tokens == 100

    def test_record_sessions_counts_written(self):
        aggs = aggregate(_rows((1, 1)) + _rows((2, 2), session="s2"), now=T0)
        assert self.recorder.record_sessions(aggs, T0) == 2
        assert self.recorder.record_sessions(aggs, T0 + 1) == 0

    def test_forget_resets_throttle(self):
        agg = aggregate(_rows((1, 1)), now=T0)[0]
        self.recorder.record_session(agg, T0)
        self.recorder.forget([agg.key])
        assert self.recorder.record_session(agg, T0 + 1) is not None


class TestProviderSnapshots:
    """Test provider snapshot throttling."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.store = UsageStore(os.path.join(self.temp_dir, "usage.db")).initialize()
        self.recorder = SessionRecorder(self.store, snapshot_interval_ms=MINUTE)

    def teardown_method(self):
        import shutil
        self.store.close()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_only_successful_results_stored(self):
        results = {
            "openai-api": ProviderUsage(fetched_at=T0, limits=[UsageLimit(used_percent=12.0)]),
            "anthropic-api": ProviderUsage(fetched_at=T0, error="Not configured"),
        }
        assert self.recorder.record_provider_results(results, T0) == 1
        assert self.store.get_latest_provider_snapshot("openai-api").used_percent == 12.0
        assert self.store.get_latest_provider_snapshot("anthropic-api") is None

    def test_throttled_per_provider(self):
        results = {"openai-api": ProviderUsage(fetched_at=T0)}
        assert self.recorder.record_provider_results(results, T0) == 1
        assert self.recorder.record_provider_results(results, T0 + 1000) == 0
        assert self.recorder.record_provider_results(results, T0 + MINUTE) == 1
