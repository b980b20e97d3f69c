"""
Dashboard service and refresh loop.

``Dashboard`` owns the live state (session aggregates, activity counters,
last provider results) and exposes the query surface a presentation layer
reads. ``RefreshLoop`` drives it from asyncio: one task runs refresh cycles
at the configured interval, another ticks the activity estimator about once
a second so rates decay during silence.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from .activity import ActivityRateEstimator, ActivityState
from .aggregator import Row, SessionAggregate, aggregate
from .clock import now_ms
from .pricing import PricingResolver
from .recorder import SessionRecorder
from tokentop.config.loader import AppConfig
from tokentop.providers.base import Credentials, Provider, ProviderUsage
from tokentop.providers.poller import PollPolicy, poll_providers
from tokentop.storage.models import BurnRate, GroupedSummary, ProviderSnapshot, TimeSeriesPoint
from tokentop.storage.repository import UsageStore

logger = logging.getLogger(__name__)

GLOBAL_COUNTER = "global"

SessionSource = Callable[[], Sequence[Row]]


def session_counter_id(agg: SessionAggregate) -> str:
    return f"session:{agg.agent_id}:{agg.session_id}"


@dataclass(frozen=True)
class ProviderResult:
    """Last good usage of a provider plus the error of the latest poll, if any."""
    usage: Optional[ProviderUsage]
    error: Optional[str]
    updated_at: int


class Dashboard:
    """Live usage state and the queries over it."""

    def __init__(
        self,
        store: UsageStore,
        session_source: Optional[SessionSource] = None,
        providers: Sequence[Provider] = (),
        config: Optional[AppConfig] = None,
        resolver: Optional[PricingResolver] = None,
        estimator: Optional[ActivityRateEstimator] = None,
        recorder: Optional[SessionRecorder] = None,
        credentials: Optional[Mapping[str, Credentials]] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.config = config or AppConfig()
        self.store = store
        self.session_source = session_source
        self.providers = [
            p for p in providers if self.config.get_provider_config(p.id).enabled
        ]
        self.resolver = resolver or PricingResolver.from_config(self.config.pricing)
        self.estimator = estimator or ActivityRateEstimator(self.config.activity)
        self.recorder = recorder or SessionRecorder(
            store, snapshot_interval_ms=self.config.refresh.snapshot_interval_ms
        )
        self._credentials = dict(credentials) if credentials is not None else None
        self.clock = clock

        self._sessions: List[SessionAggregate] = []
        self._provider_results: Dict[str, ProviderResult] = {}
        self._state_lock = threading.Lock()
        self._worker: Optional[asyncio.Future] = None

    # Refresh

    def refresh_sessions(self, now: Optional[int] = None) -> List[SessionAggregate]:
        """Rebuild session aggregates, persist them and feed the rate counters."""
        now = self.clock() if now is None else now
        rows = list(self.session_source()) if self.session_source is not None else []

        sessions = aggregate(
            rows,
            now,
            active_threshold_ms=self.config.refresh.active_threshold_ms,
            pricing=self.resolver.resolve,
        )
        self.recorder.record_sessions(sessions, now)

        counters = [GLOBAL_COUNTER]
        self.estimator.observe(GLOBAL_COUNTER, sum(s.totals.total_tokens for s in sessions), now)
        for agg in sessions:
            counter_id = session_counter_id(agg)
            self.estimator.observe(counter_id, agg.totals.total_tokens, now)
            counters.append(counter_id)
        self.estimator.retain(counters)

        with self._state_lock:
            gone = {s.key for s in self._sessions} - {s.key for s in sessions}
            self._sessions = sessions
        self.recorder.forget(gone)

        logger.debug("Refreshed %d sessions from %d rows", len(sessions), len(rows))
        return sessions

    async def poll(self, now: Optional[int] = None) -> Dict[str, ProviderResult]:
        """Poll every enabled provider and merge results into the last-known state."""
        if not self.providers:
            return self.provider_results()

        credentials = self._credentials
        if credentials is None:
            credentials = {p.id: p.discover_credentials() for p in self.providers}
        policies = {}
        for provider in self.providers:
            settings = self.config.get_provider_config(provider.id)
            policies[provider.id] = PollPolicy(
                timeout_seconds=settings.timeout_seconds,
                max_retries=settings.max_retries,
            )

        results = await poll_providers(self.providers, credentials, policies, clock=self.clock)
        now = self.clock() if now is None else now
        self.recorder.record_provider_results(results, now)

        with self._state_lock:
            for provider_id, usage in results.items():
                previous = self._provider_results.get(provider_id)
                if usage.ok:
                    self._provider_results[provider_id] = ProviderResult(usage, None, now)
                else:
                    self._provider_results[provider_id] = ProviderResult(
                        previous.usage if previous else None, usage.error, now
                    )
        return self.provider_results()

    async def refresh(self, now: Optional[int] = None) -> List[SessionAggregate]:
        """One full cycle: sessions in a worker thread, then provider polls.

        Cancelling the cycle does not abandon the worker; ``wait_idle`` waits
        for it.
        """
        self._worker = asyncio.ensure_future(asyncio.to_thread(self.refresh_sessions, now))
        sessions = await asyncio.shield(self._worker)
        await self.poll(now)
        return sessions

    async def wait_idle(self) -> None:
        """Wait until no session refresh worker is running."""
        worker = self._worker
        if worker is not None and not worker.done():
            await asyncio.gather(worker, return_exceptions=True)

    def tick(self, now: Optional[int] = None) -> None:
        self.estimator.tick(self.clock() if now is None else now)

    # Queries

    def sessions(self) -> List[SessionAggregate]:
        with self._state_lock:
            return list(self._sessions)

    def activity(self, counter_id: str = GLOBAL_COUNTER) -> ActivityState:
        return self.estimator.state(counter_id)

    def sparkline(self, counter_id: str = GLOBAL_COUNTER) -> List[float]:
        return self.estimator.buckets(counter_id)

    def time_series(
        self, start_time: int, end_time: int, bucket_minutes: Optional[float] = None
    ) -> List[TimeSeriesPoint]:
        if bucket_minutes is None:
            bucket_minutes = self.config.storage.bucket_minutes
        return self.store.get_usage_time_series(start_time, end_time, bucket_minutes)

    def grouped_summary(self, start_time: int, end_time: int, by: str = "provider") -> List[GroupedSummary]:
        if by == "provider":
            return self.store.get_usage_by_provider(start_time, end_time)
        if by == "model":
            return self.store.get_usage_by_model(start_time, end_time)
        raise ValueError(f"cannot group by {by!r}; expected 'provider' or 'model'")

    def provider_snapshots(self, provider: str, limit: int = 100) -> List[ProviderSnapshot]:
        return self.store.get_provider_snapshots(provider, limit=limit)

    def provider_results(self) -> Dict[str, ProviderResult]:
        with self._state_lock:
            return dict(self._provider_results)

    def burn_rate(self, window_ms: int, now: Optional[int] = None) -> BurnRate:
        return self.store.calculate_burn_rate(window_ms, self.clock() if now is None else now)


class RefreshLoop:
    """Runs refresh cycles and activity ticks until stopped."""

    def __init__(
        self,
        dashboard: Dashboard,
        interval_ms: Optional[int] = None,
        tick_interval_ms: Optional[int] = None,
    ):
        refresh = dashboard.config.refresh
        self.dashboard = dashboard
        self.interval_s = (interval_ms or refresh.interval_ms) / 1000
        self.tick_interval_s = (tick_interval_ms or refresh.tick_interval_ms) / 1000
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        """Schedule the cycle and tick tasks on the running event loop."""
        if self.running:
            raise RuntimeError("refresh loop already running")
        self._tasks = [
            asyncio.create_task(self._cycle_loop(), name="tokentop-refresh"),
            asyncio.create_task(self._tick_loop(), name="tokentop-tick"),
        ]

    async def stop(self) -> None:
        """Cancel both tasks and wait until no store write is outstanding."""
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.dashboard.wait_idle()

    async def __aenter__(self) -> "RefreshLoop":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def _cycle_loop(self) -> None:
        while True:
            try:
                await self.dashboard.refresh()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Refresh cycle failed")
            await asyncio.sleep(self.interval_s)

    async def _tick_loop(self) -> None:
        while True:
            self.dashboard.tick()
            await asyncio.sleep(self.tick_interval_s)
