"""
Session and provider persistence.

Writes throttled session snapshots and turns the growth of each session
stream between two snapshots into usage events (plus their rollups).
"""

import logging
import threading
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from .aggregator import SessionAggregate, StreamAggregate
from tokentop.providers.base import ProviderUsage
from tokentop.storage.models import (
    StreamTotals,
    UsageEvent,
    UsageSource,
    compute_stream_delta,
)
from tokentop.storage.repository import UsageStore

logger = logging.getLogger(__name__)

SNAPSHOT_INTERVAL_MS = 60_000

StreamKey = Tuple[str, str, str, str]


def _stream_totals(stream: StreamAggregate) -> StreamTotals:
    return StreamTotals(
        input_tokens=stream.tokens.input,
        output_tokens=stream.tokens.output,
        cache_read_tokens=stream.tokens.cache_read or 0,
        cache_write_tokens=stream.tokens.cache_write or 0,
        cost_usd=stream.cost_usd or 0.0,
        request_count=stream.request_count,
    )


class SessionRecorder:
    """Persists session aggregates and provider results into a UsageStore.

    Each session is snapshotted at most once per ``snapshot_interval_ms``;
    each provider likewise. Previous stream totals are seeded from the store
    so a restart does not re-emit usage that was already recorded.
    """

    def __init__(self, store: UsageStore, snapshot_interval_ms: int = SNAPSHOT_INTERVAL_MS):
        if snapshot_interval_ms < 0:
            raise ValueError("snapshot_interval_ms cannot be negative")
        self.store = store
        self.snapshot_interval_ms = snapshot_interval_ms
        self._last_session_snapshot: Dict[Tuple[str, str], int] = {}
        self._last_provider_snapshot: Dict[str, int] = {}
        self._previous: Dict[StreamKey, StreamTotals] = {}
        self._seeded = False
        self._lock = threading.Lock()

    def _seed(self) -> None:
        if self._seeded:
            return
        for latest in self.store.get_latest_stream_totals():
            key = (latest.agent_id, latest.session_id, latest.provider, latest.model)
            self._previous[key] = latest.totals
        self._seeded = True

    def _due(self, last: Optional[int], now: int) -> bool:
        return last is None or now - last >= self.snapshot_interval_ms

    def record_session(self, aggregate: SessionAggregate, now: int) -> Optional[int]:
        """Snapshot one session if its throttle window has elapsed.

        Returns:
            The new snapshot id, or None when throttled
        """
        with self._lock:
            self._seed()
            if not self._due(self._last_session_snapshot.get(aggregate.key), now):
                return None

            events: List[UsageEvent] = []
            seen: Dict[StreamKey, StreamTotals] = {}
            for stream in aggregate.streams:
                key = (aggregate.agent_id, aggregate.session_id, stream.provider_id, stream.model_id)
                current = _stream_totals(stream)
                delta = compute_stream_delta(current, self._previous.get(key))
                seen[key] = current
                if delta is None:
                    continue
                events.append(UsageEvent(
                    timestamp=now,
                    provider_id=stream.provider_id,
                    model_id=stream.model_id,
                    input_tokens=delta.input_tokens,
                    output_tokens=delta.output_tokens,
                    cost_usd=delta.cost_usd,
                    agent_id=aggregate.agent_id or None,
                    session_id=aggregate.session_id,
                    cache_read_tokens=delta.cache_read_tokens,
                    cache_write_tokens=delta.cache_write_tokens,
                    project_path=aggregate.project_path,
                    source=UsageSource.AGENT,
                    request_count=delta.request_count,
                    pricing_source=stream.pricing_source.value,
                ))

            snapshot_id = self.store.record_session_observation(aggregate, now, events)
            self._last_session_snapshot[aggregate.key] = now
            self._previous.update(seen)
            if events:
                logger.debug("Recorded %d stream deltas for %s", len(events), aggregate.key)
        return snapshot_id

    def record_sessions(self, aggregates: Iterable[SessionAggregate], now: int) -> int:
        """Snapshot every due session; returns how many were written."""
        written = 0
        for aggregate in aggregates:
            if self.record_session(aggregate, now) is not None:
                written += 1
        return written

    def record_provider_results(self, results: Mapping[str, ProviderUsage], now: int) -> int:
        """Store snapshots of successful provider polls, throttled per provider."""
        with self._lock:
            due = {
                provider_id: usage
                for provider_id, usage in results.items()
                if usage.ok and self._due(self._last_provider_snapshot.get(provider_id), now)
            }
            if not due:
                return 0
            result = self.store.insert_provider_snapshots([
                usage.to_snapshot(provider_id) for provider_id, usage in due.items()
            ])
            for provider_id in due:
                self._last_provider_snapshot[provider_id] = now
        return result.written

    def forget(self, keys: Iterable[Tuple[str, str]]) -> None:
        """Drop throttle state for sessions that no longer exist."""
        with self._lock:
            for key in keys:
                self._last_session_snapshot.pop(key, None)
