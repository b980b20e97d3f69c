"""
Repository pattern for data access.

The usage time-series store: append-only usage events and provider
snapshots, additive hourly/daily rollups, session snapshots, and the fixed
set of queries the dashboard needs.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Iterator, List, Optional, Sequence

from .db import DEFAULT_DB_PATH, get_connection, initialize_schema
from .models import (
    BatchResult,
    BurnRate,
    GroupedSummary,
    LatestStreamTotals,
    ProviderSnapshot,
    Rollup,
    RollupGranularity,
    SessionRecord,
    StreamTotals,
    TimeSeriesPoint,
    UsageEvent,
    UsageQuery,
    UsageSource,
    UsageSummary,
    rollups_from_events,
    validate_usage_event,
)
from tokentop.core.aggregator import SessionAggregate

logger = logging.getLogger(__name__)


class StoreNotInitializedError(RuntimeError):
    """Raised when the store is used before ``initialize()`` or after ``close()``."""


_INSERT_EVENT_SQL = """
    INSERT INTO usage_events (
        timestamp, source, provider, model, agent, session_id, project_path,
        input_tokens, output_tokens, cache_read_tokens, cache_write_tokens,
        cost_usd, request_count, pricing_source
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

_INSERT_SNAPSHOT_SQL = """
    INSERT INTO provider_snapshots (
        timestamp, provider, used_percent, limit_reached,
        tokens_input, tokens_output, cost_usd, raw_json
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
"""

# Rollup upserts add to the stored counters; resubmitting a delta double-counts
_UPSERT_ROLLUP_SQL = """
    INSERT INTO {table} (
        {bucket}, provider, model,
        total_input_tokens, total_output_tokens,
        total_cache_read, total_cache_write,
        total_cost_usd, request_count
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT({bucket}, provider, model) DO UPDATE SET
        total_input_tokens = total_input_tokens + excluded.total_input_tokens,
        total_output_tokens = total_output_tokens + excluded.total_output_tokens,
        total_cache_read = total_cache_read + excluded.total_cache_read,
        total_cache_write = total_cache_write + excluded.total_cache_write,
        total_cost_usd = total_cost_usd + excluded.total_cost_usd,
        request_count = request_count + excluded.request_count
"""

_ROLLUP_TABLES = {
    RollupGranularity.HOURLY: ("hourly_aggregates", "hour"),
    RollupGranularity.DAILY: ("daily_aggregates", "date"),
}

_UPSERT_SESSION_SQL = """
    INSERT INTO agent_sessions (agent_id, session_id, project_path, started_at, first_seen_at, last_seen_at)
    VALUES (?, ?, ?, ?, ?, ?)
    ON CONFLICT(agent_id, session_id) DO UPDATE SET
        project_path = COALESCE(excluded.project_path, agent_sessions.project_path),
        started_at = COALESCE(agent_sessions.started_at, excluded.started_at),
        last_seen_at = MAX(agent_sessions.last_seen_at, excluded.last_seen_at)
"""

_INSERT_SESSION_SNAPSHOT_SQL = """
    INSERT INTO agent_session_snapshots (
        timestamp, agent_session_id, last_activity_at, status,
        total_input_tokens, total_output_tokens, total_cache_read_tokens, total_cache_write_tokens,
        total_cost_usd, request_count
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

_INSERT_STREAM_SQL = """
    INSERT INTO agent_session_stream_snapshots (
        agent_session_snapshot_id, provider, model,
        input_tokens, output_tokens, cache_read_tokens, cache_write_tokens,
        cost_usd, request_count, pricing_source
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""


def _event_params(event: UsageEvent) -> tuple:
    return (
        int(event.timestamp),
        event.source.value,
        event.provider_id,
        event.model_id,
        event.agent_id,
        event.session_id,
        event.project_path,
        int(event.input_tokens),
        int(event.output_tokens),
        int(event.cache_read_tokens or 0),
        int(event.cache_write_tokens or 0),
        float(event.cost_usd),
        int(event.request_count),
        event.pricing_source,
    )


def _rollup_params(rollup: Rollup) -> tuple:
    if not rollup.bucket or not rollup.provider:
        raise ValueError("rollup bucket and provider are required")
    return (
        rollup.bucket,
        rollup.provider,
        rollup.model or "",
        rollup.total_input_tokens,
        rollup.total_output_tokens,
        rollup.total_cache_read,
        rollup.total_cache_write,
        rollup.total_cost_usd,
        rollup.request_count,
    )


def _row_to_event(row: sqlite3.Row) -> UsageEvent:
    return UsageEvent(
        timestamp=row["timestamp"],
        provider_id=row["provider"],
        model_id=row["model"],
        input_tokens=row["input_tokens"],
        output_tokens=row["output_tokens"],
        cost_usd=row["cost_usd"],
        agent_id=row["agent"],
        session_id=row["session_id"],
        cache_read_tokens=row["cache_read_tokens"],
        cache_write_tokens=row["cache_write_tokens"],
        project_path=row["project_path"],
        source=UsageSource(row["source"]),
        request_count=row["request_count"],
        pricing_source=row["pricing_source"],
    )


def _row_to_snapshot(row: sqlite3.Row) -> ProviderSnapshot:
    limit_reached = row["limit_reached"]
    return ProviderSnapshot(
        timestamp=row["timestamp"],
        provider=row["provider"],
        used_percent=row["used_percent"],
        limit_reached=bool(limit_reached) if limit_reached is not None else None,
        tokens_input=row["tokens_input"],
        tokens_output=row["tokens_output"],
        cost_usd=row["cost_usd"],
        raw_payload=row["raw_json"],
    )


def _row_to_rollup(row: sqlite3.Row, bucket_column: str) -> Rollup:
    return Rollup(
        bucket=row[bucket_column],
        provider=row["provider"],
        model=row["model"],
        total_input_tokens=row["total_input_tokens"],
        total_output_tokens=row["total_output_tokens"],
        total_cache_read=row["total_cache_read"],
        total_cache_write=row["total_cache_write"],
        total_cost_usd=row["total_cost_usd"],
        request_count=row["request_count"],
    )


class UsageStore:
    """SQLite-backed time-series store.

    Single writer: every write goes through one lock and one transaction per
    logical observation. Queries run on a separate WAL-mode connection, so
    they only ever see committed transactions.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Create an unopened store.

        Args:
            db_path: Path to SQLite database file

        Raises:
            ValueError: For ":memory:", since queries use their own connection
        """
        if db_path == ":memory:":
            raise ValueError("UsageStore needs a file-backed database")
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._reader: Optional[sqlite3.Connection] = None
        self._write_lock = threading.Lock()
        self._read_lock = threading.Lock()

    @property
    def is_initialized(self) -> bool:
        return self._conn is not None

    def initialize(self) -> "UsageStore":
        """Open the database and create the schema. Safe to call twice."""
        if self._conn is None:
            conn = get_connection(self.db_path)
            initialize_schema(conn)
            self._conn = conn
            self._reader = get_connection(self.db_path)
            logger.debug("Opened usage store at %s", self.db_path)
        return self

    def close(self) -> None:
        if self._reader is not None:
            self._reader.close()
            self._reader = None
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> "UsageStore":
        return self.initialize()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StoreNotInitializedError(
                "Usage store not initialized. Call initialize() first."
            )
        return self._conn

    def _reader_connection(self) -> sqlite3.Connection:
        if self._reader is None:
            raise StoreNotInitializedError(
                "Usage store not initialized. Call initialize() first."
            )
        return self._reader

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._connection()
        with self._write_lock:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    # Writes

    def insert_usage_event(self, event: UsageEvent) -> None:
        """Append one usage event.

        Raises:
            ValueError: If the event is malformed
        """
        validate_usage_event(event)
        with self._transaction() as conn:
            conn.execute(_INSERT_EVENT_SQL, _event_params(event))

    def insert_usage_events(self, events: Sequence[UsageEvent]) -> BatchResult:
        """Append a batch of events in one transaction.

        A malformed event is rejected on its own; the rest of the batch is
        still committed.
        """
        result = BatchResult()
        if not events:
            return result
        with self._transaction() as conn:
            self._insert_events(conn, events, result)
        return result

    def record_usage_events(self, events: Sequence[UsageEvent]) -> BatchResult:
        """Append events and add their hourly/daily rollup deltas atomically.

        Each event must be submitted exactly once: rollups are additive.
        """
        result = BatchResult()
        if not events:
            return result
        with self._transaction() as conn:
            accepted = self._insert_events(conn, events, result)
            for granularity in (RollupGranularity.HOURLY, RollupGranularity.DAILY):
                self._upsert_rollups(conn, rollups_from_events(accepted, granularity), granularity)
        return result

    def _insert_events(
        self, conn: sqlite3.Connection, events: Sequence[UsageEvent], result: BatchResult
    ) -> List[UsageEvent]:
        accepted = []
        for index, event in enumerate(events):
            try:
                validate_usage_event(event)
                conn.execute(_INSERT_EVENT_SQL, _event_params(event))
            except (ValueError, TypeError, AttributeError, sqlite3.IntegrityError) as e:
                logger.warning("Rejected usage event %d: %s", index, e)
                result.rejected.append((index, str(e)))
                continue
            accepted.append(event)
            result.written += 1
        return accepted

    def insert_provider_snapshot(self, snapshot: ProviderSnapshot) -> None:
        self.insert_provider_snapshots([snapshot])

    def insert_provider_snapshots(self, snapshots: Sequence[ProviderSnapshot]) -> BatchResult:
        result = BatchResult()
        if not snapshots:
            return result
        with self._transaction() as conn:
            for index, snapshot in enumerate(snapshots):
                try:
                    if not snapshot.provider:
                        raise ValueError("provider is required")
                    conn.execute(_INSERT_SNAPSHOT_SQL, (
                        int(snapshot.timestamp),
                        snapshot.provider,
                        snapshot.used_percent,
                        None if snapshot.limit_reached is None else int(snapshot.limit_reached),
                        snapshot.tokens_input,
                        snapshot.tokens_output,
                        snapshot.cost_usd,
                        snapshot.raw_payload,
                    ))
                except (ValueError, TypeError, sqlite3.IntegrityError) as e:
                    logger.warning("Rejected provider snapshot %d: %s", index, e)
                    result.rejected.append((index, str(e)))
                    continue
                result.written += 1
        return result

    def upsert_daily_rollups(self, rollups: Sequence[Rollup]) -> BatchResult:
        return self.upsert_rollups(rollups, RollupGranularity.DAILY)

    def upsert_hourly_rollups(self, rollups: Sequence[Rollup]) -> BatchResult:
        return self.upsert_rollups(rollups, RollupGranularity.HOURLY)

    def upsert_rollups(self, rollups: Sequence[Rollup], granularity: RollupGranularity) -> BatchResult:
        """Add rollup deltas to the stored counters.

        Not idempotent: the same delta submitted twice is counted twice.
        """
        if not rollups:
            return BatchResult()
        with self._transaction() as conn:
            return self._upsert_rollups(conn, rollups, granularity)

    def _upsert_rollups(
        self, conn: sqlite3.Connection, rollups: Sequence[Rollup], granularity: RollupGranularity
    ) -> BatchResult:
        table, bucket = _ROLLUP_TABLES[granularity]
        sql = _UPSERT_ROLLUP_SQL.format(table=table, bucket=bucket)
        result = BatchResult()
        for index, rollup in enumerate(rollups):
            try:
                conn.execute(sql, _rollup_params(rollup))
            except (ValueError, sqlite3.IntegrityError) as e:
                logger.warning("Rejected %s rollup %d: %s", granularity.value, index, e)
                result.rejected.append((index, str(e)))
                continue
            result.written += 1
        return result

    def record_session_observation(
        self,
        aggregate: SessionAggregate,
        timestamp: int,
        events: Sequence[UsageEvent] = (),
    ) -> int:
        """Persist one observation of a session atomically.

        Upserts the session row, writes the session snapshot and one row per
        stream, then appends ``events`` with their rollups. Either all rows
        commit or none do, so stored stream totals never run ahead of the
        usage events derived from them.

        Returns:
            Id of the new session snapshot
        """
        with self._transaction() as conn:
            conn.execute(_UPSERT_SESSION_SQL, (
                aggregate.agent_id,
                aggregate.session_id,
                aggregate.project_path,
                aggregate.started_at,
                timestamp,
                timestamp,
            ))
            session_row = conn.execute(
                "SELECT id FROM agent_sessions WHERE agent_id = ? AND session_id = ?",
                (aggregate.agent_id, aggregate.session_id),
            ).fetchone()

            totals = aggregate.totals
            cursor = conn.execute(_INSERT_SESSION_SNAPSHOT_SQL, (
                timestamp,
                session_row["id"],
                aggregate.last_activity_at,
                aggregate.status.value,
                totals.input,
                totals.output,
                totals.cache_read or 0,
                totals.cache_write or 0,
                aggregate.total_cost_usd or 0.0,
                aggregate.request_count,
            ))
            snapshot_id = cursor.lastrowid

            for stream in aggregate.streams:
                conn.execute(_INSERT_STREAM_SQL, (
                    snapshot_id,
                    stream.provider_id,
                    stream.model_id,
                    stream.tokens.input,
                    stream.tokens.output,
                    stream.tokens.cache_read or 0,
                    stream.tokens.cache_write or 0,
                    stream.cost_usd or 0.0,
                    stream.request_count,
                    stream.pricing_source.value,
                ))

            if events:
                accepted = self._insert_events(conn, events, BatchResult())
                for granularity in (RollupGranularity.HOURLY, RollupGranularity.DAILY):
                    self._upsert_rollups(conn, rollups_from_events(accepted, granularity), granularity)
        return snapshot_id

    # Queries

    def _query(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        reader = self._reader_connection()
        with self._read_lock:
            return reader.execute(sql, params).fetchall()

    def _query_one(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Row:
        reader = self._reader_connection()
        with self._read_lock:
            return reader.execute(sql, params).fetchone()

    def query_usage_events(self, query: Optional[UsageQuery] = None) -> List[UsageEvent]:
        """List events matching ``query``, newest first."""
        query = query or UsageQuery()
        conditions = []
        params: List[Any] = []

        if query.start_time is not None:
            conditions.append("timestamp >= ?")
            params.append(query.start_time)
        if query.end_time is not None:
            conditions.append("timestamp <= ?")
            params.append(query.end_time)
        for column, value in (
            ("provider", query.provider),
            ("model", query.model),
            ("agent", query.agent),
            ("session_id", query.session_id),
        ):
            if value:
                conditions.append(f"{column} = ?")
                params.append(value)

        sql = "SELECT * FROM usage_events"
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        sql += " ORDER BY timestamp DESC, id DESC"
        if query.limit is not None or query.offset is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([query.limit if query.limit is not None else -1, query.offset or 0])

        rows = self._query(sql, params)
        return [_row_to_event(row) for row in rows]

    def get_usage_summary(self, start_time: int, end_time: int) -> UsageSummary:
        """Totals over ``[start_time, end_time]``."""
        row = self._query_one("""
            SELECT
                COALESCE(SUM(input_tokens), 0) AS total_input,
                COALESCE(SUM(output_tokens), 0) AS total_output,
                COALESCE(SUM(cache_read_tokens), 0) AS total_cache_read,
                COALESCE(SUM(cache_write_tokens), 0) AS total_cache_write,
                COALESCE(SUM(cost_usd), 0) AS total_cost,
                COALESCE(SUM(request_count), 0) AS request_count
            FROM usage_events
            WHERE timestamp >= ? AND timestamp <= ?
        """, (start_time, end_time))

        return UsageSummary(
            total_input_tokens=row["total_input"],
            total_output_tokens=row["total_output"],
            total_cache_read=row["total_cache_read"],
            total_cache_write=row["total_cache_write"],
            total_cost_usd=float(row["total_cost"]),
            request_count=row["request_count"],
        )

    def get_usage_by_provider(self, start_time: int, end_time: int) -> List[GroupedSummary]:
        return self._grouped_summary(start_time, end_time, ("provider",))

    def get_usage_by_model(self, start_time: int, end_time: int) -> List[GroupedSummary]:
        return self._grouped_summary(start_time, end_time, ("provider", "model"))

    def _grouped_summary(
        self, start_time: int, end_time: int, group_by: Sequence[str]
    ) -> List[GroupedSummary]:
        columns = ", ".join(group_by)
        rows = self._query(f"""
            SELECT
                {columns},
                COALESCE(SUM(input_tokens), 0) AS total_input,
                COALESCE(SUM(output_tokens), 0) AS total_output,
                COALESCE(SUM(cost_usd), 0) AS total_cost,
                COALESCE(SUM(request_count), 0) AS request_count
            FROM usage_events
            WHERE timestamp >= ? AND timestamp <= ?
            GROUP BY {columns}
            ORDER BY total_cost DESC, {columns}
        """, (start_time, end_time))

        return [
            GroupedSummary(
                provider=row["provider"],
                model=row["model"] if "model" in group_by else None,
                total_input_tokens=row["total_input"],
                total_output_tokens=row["total_output"],
                total_cost_usd=float(row["total_cost"]),
                request_count=row["request_count"],
            )
            for row in rows
        ]

    def get_usage_time_series(
        self,
        start_time: int,
        end_time: int,
        bucket_minutes: float = 5,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        agent: Optional[str] = None,
    ) -> List[TimeSeriesPoint]:
        """Totals per fixed-width bucket, oldest first.

        The bucket key is ``timestamp // width * width`` with width in ms;
        empty buckets are not returned.
        """
        bucket_ms = int(bucket_minutes * 60_000)
        if bucket_ms <= 0:
            raise ValueError("bucket_minutes must be > 0")

        conditions = ["timestamp >= ?", "timestamp <= ?"]
        params: List[Any] = [bucket_ms, bucket_ms, start_time, end_time]
        for column, value in (("provider", provider), ("model", model), ("agent", agent)):
            if value:
                conditions.append(f"{column} = ?")
                params.append(value)

        where = " AND ".join(conditions)
        rows = self._query(f"""
            SELECT
                (timestamp / ?) * ? AS bucket_start,
                COALESCE(SUM(input_tokens), 0) AS input_tokens,
                COALESCE(SUM(output_tokens), 0) AS output_tokens,
                COALESCE(SUM(cache_read_tokens), 0) AS cache_read_tokens,
                COALESCE(SUM(cache_write_tokens), 0) AS cache_write_tokens,
                COALESCE(SUM(cost_usd), 0) AS cost_usd,
                COALESCE(SUM(request_count), 0) AS request_count
            FROM usage_events
            WHERE {where}
            GROUP BY bucket_start
            ORDER BY bucket_start ASC
        """, params)

        return [
            TimeSeriesPoint(
                bucket_start=row["bucket_start"],
                input_tokens=row["input_tokens"],
                output_tokens=row["output_tokens"],
                cache_read_tokens=row["cache_read_tokens"],
                cache_write_tokens=row["cache_write_tokens"],
                total_tokens=(
                    row["input_tokens"] + row["output_tokens"]
                    + row["cache_read_tokens"] + row["cache_write_tokens"]
                ),
                cost_usd=float(row["cost_usd"]),
                request_count=row["request_count"],
            )
            for row in rows
        ]

    def get_total_usage_in_window(self, window_ms: int, now: int) -> UsageSummary:
        return self.get_usage_summary(now - window_ms, now)

    def calculate_burn_rate(
        self, window_ms: int, now: int, provider: Optional[str] = None
    ) -> BurnRate:
        """Tokens per minute and USD per hour over the trailing window."""
        if window_ms <= 0:
            raise ValueError("window_ms must be > 0")

        sql = """
            SELECT
                COALESCE(SUM(input_tokens + output_tokens + cache_read_tokens + cache_write_tokens), 0) AS tokens,
                COALESCE(SUM(cost_usd), 0) AS cost,
                COALESCE(SUM(request_count), 0) AS requests
            FROM usage_events
            WHERE timestamp > ? AND timestamp <= ?
        """
        params: List[Any] = [now - window_ms, now]
        if provider:
            sql += " AND provider = ?"
            params.append(provider)
        row = self._query_one(sql, params)

        minutes = window_ms / 60_000
        cost = float(row["cost"])
        return BurnRate(
            window_ms=window_ms,
            total_tokens=row["tokens"],
            total_cost_usd=cost,
            request_count=row["requests"],
            tokens_per_minute=row["tokens"] / minutes,
            cost_per_hour=cost / (minutes / 60),
        )

    def get_provider_snapshots(
        self,
        provider: str,
        limit: int = 100,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
    ) -> List[ProviderSnapshot]:
        """Most recent snapshots for a provider, newest first."""
        sql = "SELECT * FROM provider_snapshots WHERE provider = ?"
        params: List[Any] = [provider]
        if start_time is not None:
            sql += " AND timestamp >= ?"
            params.append(start_time)
        if end_time is not None:
            sql += " AND timestamp <= ?"
            params.append(end_time)
        sql += " ORDER BY timestamp DESC, id DESC LIMIT ?"
        params.append(limit)

        rows = self._query(sql, params)
        return [_row_to_snapshot(row) for row in rows]

    def get_latest_provider_snapshot(self, provider: str) -> Optional[ProviderSnapshot]:
        snapshots = self.get_provider_snapshots(provider, limit=1)
        return snapshots[0] if snapshots else None

    def get_daily_rollups(
        self, start_date: str, end_date: str, provider: Optional[str] = None
    ) -> List[Rollup]:
        return self._get_rollups(RollupGranularity.DAILY, start_date, end_date, provider)

    def get_hourly_rollups(
        self, start_hour: str, end_hour: str, provider: Optional[str] = None
    ) -> List[Rollup]:
        return self._get_rollups(RollupGranularity.HOURLY, start_hour, end_hour, provider)

    def _get_rollups(
        self, granularity: RollupGranularity, start: str, end: str, provider: Optional[str]
    ) -> List[Rollup]:
        table, bucket = _ROLLUP_TABLES[granularity]
        sql = f"SELECT * FROM {table} WHERE {bucket} >= ? AND {bucket} <= ?"
        params: List[Any] = [start, end]
        if provider:
            sql += " AND provider = ?"
            params.append(provider)
        sql += f" ORDER BY {bucket} DESC, total_cost_usd DESC, provider, model"

        rows = self._query(sql, params)
        return [_row_to_rollup(row, bucket) for row in rows]

    def get_recent_sessions(self, limit: int = 50) -> List[SessionRecord]:
        rows = self._query("""
            SELECT * FROM agent_sessions
            ORDER BY last_seen_at DESC
            LIMIT ?
        """, (limit,))
        return [
            SessionRecord(
                id=row["id"],
                agent_id=row["agent_id"],
                session_id=row["session_id"],
                project_path=row["project_path"],
                started_at=row["started_at"],
                first_seen_at=row["first_seen_at"],
                last_seen_at=row["last_seen_at"],
            )
            for row in rows
        ]

    def get_latest_stream_totals(self) -> List[LatestStreamTotals]:
        """Stream totals from the newest snapshot of every session."""
        rows = self._query("""
            SELECT
                s.agent_id, s.session_id,
                ss.provider, ss.model,
                ss.input_tokens, ss.output_tokens,
                ss.cache_read_tokens, ss.cache_write_tokens,
                ss.cost_usd, ss.request_count
            FROM agent_session_stream_snapshots ss
            JOIN agent_session_snapshots snap ON snap.id = ss.agent_session_snapshot_id
            JOIN agent_sessions s ON s.id = snap.agent_session_id
            WHERE snap.id IN (
                SELECT MAX(snap2.id)
                FROM agent_session_snapshots snap2
                GROUP BY snap2.agent_session_id
            )
            ORDER BY s.agent_id, s.session_id, ss.provider, ss.model
        """)
        return [
            LatestStreamTotals(
                agent_id=row["agent_id"],
                session_id=row["session_id"],
                provider=row["provider"],
                model=row["model"],
                totals=StreamTotals(
                    input_tokens=row["input_tokens"],
                    output_tokens=row["output_tokens"],
                    cache_read_tokens=row["cache_read_tokens"],
                    cache_write_tokens=row["cache_write_tokens"],
                    cost_usd=row["cost_usd"],
                    request_count=row["request_count"],
                ),
            )
            for row in rows
        ]
