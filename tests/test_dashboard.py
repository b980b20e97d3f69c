"""
Unit tests for the dashboard service and refresh loop.
"""

import asyncio
import os
import tempfile
import threading
import time

import pytest

from tokentop.config.loader import AppConfig, PricingConfig, ProviderConfig, RefreshConfig
from tokentop.core.aggregator import SessionStatus
from tokentop.core.dashboard import GLOBAL_COUNTER, Dashboard, RefreshLoop, session_counter_id
from tokentop.core.pricing import PricingResolver
from tokentop.providers.base import Credentials, Provider, ProviderHTTPError, ProviderUsage
from tokentop.storage.repository import UsageStore

T0 = 1_704_067_200_000
MINUTE = 60_000


class FakeClock:
    def __init__(self, t: int = T0):
        self.t = t

    def __call__(self) -> int:
        return self.t


class FlakyProvider(Provider):
    id = "flaky"
    name = "Flaky"

    def __init__(self):
        self.fail = False

    async def fetch_usage(self, credentials, client, now):
        if self.fail:
            raise ProviderHTTPError(401)
        return ProviderUsage(fetched_at=now, cost_usd=3.0)


class TestDashboard:
    """Test refresh cycles and the query surface."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.store = UsageStore(os.path.join(self.temp_dir, "usage.db")).initialize()
        self.rows = []
        self.clock = FakeClock()
        self.config = AppConfig(refresh=RefreshConfig(snapshot_interval_ms=MINUTE))

    def teardown_method(self):
        import shutil
        self.store.close()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _dashboard(self, **kwargs):
        return Dashboard(
            self.store,
            session_source=lambda: self.rows,
            config=self.config,
            resolver=PricingResolver(use_live=False),
            clock=self.clock,
            **kwargs
        )

    def _add(self, ts, session="s1", inp=100, out=50):
        self.rows.append({
            "timestamp": ts,
            "agentId": "a1",
            "sessionId": session,
            "providerId": "anthropic",
            "modelId": "claude-3-5-haiku-20241022",
            "tokens": {"input": inp, "output": out},
        })

    def test_refresh_builds_priced_sessions(self):
        self._add(T0)
        dashboard = self._dashboard()

        sessions = dashboard.refresh_sessions()

        assert len(sessions) == 1
        assert sessions[0].status == SessionStatus.ACTIVE
        assert sessions[0].total_cost_usd == pytest.approx(0.00028)
        assert dashboard.sessions() == sessions

    def test_refresh_persists_usage(self):
        self._add(T0)
        dashboard = self._dashboard()
        dashboard.refresh_sessions()

        summary = self.store.get_usage_summary(T0 - MINUTE, T0 + MINUTE)
        assert summary.total_input_tokens == 100
        assert dashboard.grouped_summary(T0 - MINUTE, T0 + MINUTE)[0].provider == "anthropic"
        assert dashboard.grouped_summary(T0 - MINUTE, T0 + MINUTE, by="model")[0].model == (
            "claude-3-5-haiku-20241022"
        )
        assert len(dashboard.time_series(T0 - MINUTE, T0 + MINUTE)) == 1
        assert dashboard.burn_rate(MINUTE).request_count == 1

    def test_grouped_summary_rejects_unknown_dimension(self):
        with pytest.raises(ValueError):
            self._dashboard().grouped_summary(0, 1, by="agent")

    def test_activity_counters(self):
        """Test global and per-session counters track token growth."""
        self._add(T0, inp=0, out=0)
        dashboard = self._dashboard()
        dashboard.refresh_sessions()

        self.clock.t = T0 + 1000
        self._add(T0 + 1000, inp=500, out=0)
        sessions = dashboard.refresh_sessions()

        assert dashboard.activity(GLOBAL_COUNTER).instant_rate == pytest.approx(500)
        assert dashboard.activity(session_counter_id(sessions[0])).instant_rate == pytest.approx(500)
        assert max(dashboard.sparkline()) == pytest.approx(500)

        for second in range(2, 70):
            dashboard.tick(T0 + second * 1000)
        assert dashboard.activity().instant_rate == 0.0

    def test_vanished_sessions_drop_counters(self):
        self._add(T0, session="s1")
        self._add(T0, session="s2")
        dashboard = self._dashboard()
        dashboard.refresh_sessions()
        assert len(dashboard.estimator.counters()) == 3

        self.rows = [r for r in self.rows if r["sessionId"] == "s1"]
        dashboard.refresh_sessions()
        assert dashboard.estimator.counters() == sorted([GLOBAL_COUNTER, "session:a1:s1"])

    def test_default_resolver_follows_pricing_config(self):
        config = AppConfig(pricing=PricingConfig(live=False, ttl_seconds=120, timeout_seconds=3))
        dashboard = Dashboard(self.store, config=config)

        assert dashboard.resolver.use_live is False
        assert dashboard.resolver.live_source.ttl_seconds == 120
        assert dashboard.resolver.live_source.timeout_seconds == 3

    def test_no_source(self):
        dashboard = Dashboard(self.store, config=self.config, resolver=PricingResolver(use_live=False))
        assert dashboard.refresh_sessions(now=T0) == []

    def test_provider_results_keep_last_known(self):
        """Test a failed poll keeps the last good usage alongside the error."""
        provider = FlakyProvider()
        dashboard = self._dashboard(providers=[provider], credentials={"flaky": Credentials(api_key="k")})

        results = asyncio.run(dashboard.poll())
        assert results["flaky"].error is None
        assert results["flaky"].usage.cost_usd == 3.0

        provider.fail = True
        results = asyncio.run(dashboard.poll())
        assert results["flaky"].error == "Authentication failed (HTTP 401)"
        assert results["flaky"].usage.cost_usd == 3.0

        snapshots = dashboard.provider_snapshots("flaky")
        assert len(snapshots) == 1

    def test_disabled_providers_skipped(self):
        config = AppConfig(providers={"flaky": ProviderConfig(enabled=False)})
        dashboard = Dashboard(self.store, providers=[FlakyProvider()], config=config)
        assert dashboard.providers == []
        assert asyncio.run(dashboard.poll()) == {}

    def test_full_refresh(self):
        self._add(T0)
        dashboard = self._dashboard(providers=[FlakyProvider()], credentials={"flaky": Credentials(api_key="k")})

        sessions = asyncio.run(dashboard.refresh())

        assert len(sessions) == 1
        assert dashboard.provider_results()["flaky"].usage is not None


class TestRefreshLoop:
    """Test the asyncio loop lifecycle."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.store = UsageStore(os.path.join(self.temp_dir, "usage.db")).initialize()

    def teardown_method(self):
        import shutil
        self.store.close()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_runs_and_stops(self):
        calls = []

        def source():
            calls.append(1)
            return []

        dashboard = Dashboard(self.store, session_source=source, resolver=PricingResolver(use_live=False))
        loop = RefreshLoop(dashboard, interval_ms=10, tick_interval_ms=5)

        async def run():
            loop.start()
            assert loop.running
            await asyncio.sleep(0.1)
            await loop.stop()

        asyncio.run(run())
        assert not loop.running
        assert len(calls) >= 2

    def test_cycle_errors_do_not_stop_loop(self):
        calls = []

        def source():
            calls.append(1)
            raise RuntimeError("watcher broke")

        dashboard = Dashboard(self.store, session_source=source, resolver=PricingResolver(use_live=False))

        async def run():
            async with RefreshLoop(dashboard, interval_ms=10, tick_interval_ms=5):
                await asyncio.sleep(0.1)

        asyncio.run(run())
        assert len(calls) >= 2

    def test_stop_waits_for_inflight_refresh(self):
        """Test stop returns only after a running session refresh has finished."""
        started = threading.Event()
        finished = threading.Event()

        def source():
            started.set()
            time.sleep(0.3)
            finished.set()
            return []

        dashboard = Dashboard(self.store, session_source=source, resolver=PricingResolver(use_live=False))
        loop = RefreshLoop(dashboard, interval_ms=1000, tick_interval_ms=1000)

        async def run():
            loop.start()
            while not started.is_set():
                await asyncio.sleep(0.01)
            await loop.stop()
            return finished.is_set()

        assert asyncio.run(run()) is True

    def test_double_start_rejected(self):
        dashboard = Dashboard(self.store, resolver=PricingResolver(use_live=False))
        loop = RefreshLoop(dashboard, interval_ms=1000)

        async def run():
            loop.start()
            try:
                with pytest.raises(RuntimeError):
                    loop.start()
            finally:
                await loop.stop()

        asyncio.run(run())
