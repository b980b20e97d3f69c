"""
Data models for storage layer.

Defines the persisted records (usage events, provider snapshots, rollups,
session rows) and the result shapes of the store's queries.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from tokentop.core.token_counter import TokenCounts


class UsageSource(Enum):
    """Origin of a usage event."""
    AGENT = "agent"
    PROVIDER = "provider"
    SDK = "sdk"


class RollupGranularity(Enum):
    HOURLY = "hourly"
    DAILY = "daily"


@dataclass(frozen=True)
class UsageEvent:
    """Immutable observation of token consumption.

    Append-only: created by pollers, session watchers or the SDK wrapper and
    persisted exactly once. Timestamps are epoch milliseconds.
    """
    timestamp: int
    provider_id: str
    model_id: str
    input_tokens: int
    output_tokens: int
    cost_usd: float = 0.0
    agent_id: Optional[str] = None
    session_id: Optional[str] = None
    cache_read_tokens: Optional[int] = None
    cache_write_tokens: Optional[int] = None
    project_path: Optional[str] = None
    source: UsageSource = UsageSource.AGENT
    request_count: int = 1
    pricing_source: Optional[str] = None

    @property
    def tokens(self) -> TokenCounts:
        return TokenCounts(
            input=self.input_tokens,
            output=self.output_tokens,
            cache_read=self.cache_read_tokens if self.cache_read_tokens else None,
            cache_write=self.cache_write_tokens if self.cache_write_tokens else None,
        )

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "UsageEvent":
        """Build an event from a watcher row.

        Accepts snake_case or camelCase keys.

        Raises:
            ValueError: If a required field is missing or not numeric
        """
        tokens = data.get("tokens")
        if isinstance(tokens, Mapping):
            input_tokens = tokens.get("input")
            output_tokens = tokens.get("output")
            cache_read = tokens.get("cacheRead", tokens.get("cache_read"))
            cache_write = tokens.get("cacheWrite", tokens.get("cache_write"))
        else:
            input_tokens = _pick(data, "input_tokens", "inputTokens")
            output_tokens = _pick(data, "output_tokens", "outputTokens")
            cache_read = _pick(data, "cache_read_tokens", "cacheReadTokens")
            cache_write = _pick(data, "cache_write_tokens", "cacheWriteTokens")

        source = data.get("source", UsageSource.AGENT)
        event = cls(
            timestamp=_require_int(data.get("timestamp"), "timestamp"),
            provider_id=_require_str(_pick(data, "provider_id", "providerId"), "provider_id"),
            model_id=_require_str(_pick(data, "model_id", "modelId"), "model_id"),
            input_tokens=_require_int(input_tokens, "input_tokens"),
            output_tokens=_require_int(output_tokens, "output_tokens"),
            cost_usd=_optional_float(_pick(data, "cost_usd", "costUsd"), "cost_usd") or 0.0,
            agent_id=_pick(data, "agent_id", "agentId"),
            session_id=_pick(data, "session_id", "sessionId"),
            cache_read_tokens=_optional_int(cache_read, "cache_read_tokens"),
            cache_write_tokens=_optional_int(cache_write, "cache_write_tokens"),
            project_path=_pick(data, "project_path", "projectPath"),
            source=source if isinstance(source, UsageSource) else UsageSource(source),
            request_count=_optional_int(_pick(data, "request_count", "requestCount"), "request_count") or 1,
            pricing_source=_pick(data, "pricing_source", "pricingSource"),
        )
        validate_usage_event(event)
        return event


def _pick(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def _require_int(value: Any, name: str) -> int:
    if not _is_number(value):
        raise ValueError(f"{name} must be a finite number, got {value!r}")
    return int(value)


def _optional_int(value: Any, name: str) -> Optional[int]:
    if value is None:
        return None
    return _require_int(value, name)


def _optional_float(value: Any, name: str) -> Optional[float]:
    if value is None:
        return None
    if not _is_number(value):
        raise ValueError(f"{name} must be a finite number, got {value!r}")
    return float(value)


def _require_str(value: Any, name: str) -> str:
    if not isinstance(value, str) or not value:
        raise ValueError(f"{name} is required")
    return value


def validate_usage_event(event: UsageEvent) -> None:
    """Check the required fields of an event.

    Raises:
        ValueError: If a required field is missing, non-numeric or negative
    """
    _require_int(event.timestamp, "timestamp")
    _require_str(event.provider_id, "provider_id")
    _require_str(event.model_id, "model_id")
    for name in ("input_tokens", "output_tokens", "request_count"):
        if _require_int(getattr(event, name), name) < 0:
            raise ValueError(f"{name} cannot be negative")
    for name in ("cache_read_tokens", "cache_write_tokens"):
        value = _optional_int(getattr(event, name), name)
        if value is not None and value < 0:
            raise ValueError(f"{name} cannot be negative")
    cost = _optional_float(event.cost_usd, "cost_usd")
    if cost is None or cost < 0:
        raise ValueError("cost_usd must be a non-negative number")


@dataclass(frozen=True)
class ProviderSnapshot:
    """Point-in-time usage/limit state reported by a provider."""
    timestamp: int
    provider: str
    used_percent: Optional[float] = None
    limit_reached: Optional[bool] = None
    tokens_input: Optional[int] = None
    tokens_output: Optional[int] = None
    cost_usd: Optional[float] = None
    raw_payload: Optional[str] = None


@dataclass(frozen=True)
class Rollup:
    """Additive pre-aggregated counters for one (bucket, provider, model).

    ``bucket`` is ``YYYY-MM-DD`` for daily rollups and ``YYYY-MM-DDTHH`` for
    hourly ones (UTC). ``model`` is empty for provider-level rollups.
    """
    bucket: str
    provider: str
    model: str = ""
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cache_read: int = 0
    total_cache_write: int = 0
    total_cost_usd: float = 0.0
    request_count: int = 0


@dataclass(frozen=True)
class StreamTotals:
    """Cumulative counters of one session stream."""
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0
    cost_usd: float = 0.0
    request_count: int = 0

    def is_zero(self) -> bool:
        return (
            self.input_tokens == 0
            and self.output_tokens == 0
            and self.cache_read_tokens == 0
            and self.cache_write_tokens == 0
            and self.request_count == 0
            and self.cost_usd == 0
        )


def compute_stream_delta(
    current: StreamTotals, previous: Optional[StreamTotals]
) -> Optional[StreamTotals]:
    """Difference between two cumulative stream readings.

    A reading that went down in any counter means the stream restarted, so
    the current reading is the delta. Returns None when nothing changed.
    """
    if previous is None:
        return None if current.is_zero() else current

    reset = (
        current.input_tokens < previous.input_tokens
        or current.output_tokens < previous.output_tokens
        or current.cache_read_tokens < previous.cache_read_tokens
        or current.cache_write_tokens < previous.cache_write_tokens
        or current.request_count < previous.request_count
    )
    if reset:
        return None if current.is_zero() else current

    delta = StreamTotals(
        input_tokens=current.input_tokens - previous.input_tokens,
        output_tokens=current.output_tokens - previous.output_tokens,
        cache_read_tokens=current.cache_read_tokens - previous.cache_read_tokens,
        cache_write_tokens=current.cache_write_tokens - previous.cache_write_tokens,
        cost_usd=round(max(0.0, current.cost_usd - previous.cost_usd), 6),
        request_count=current.request_count - previous.request_count,
    )
    return None if delta.is_zero() else delta


def daily_bucket(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d")


def hourly_bucket(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%dT%H")


def rollups_from_events(
    events: Iterable[UsageEvent], granularity: RollupGranularity
) -> List[Rollup]:
    """Fold events into rollup deltas keyed by (bucket, provider, model)."""
    bucket_of = hourly_bucket if granularity == RollupGranularity.HOURLY else daily_bucket
    totals: Dict[Tuple[str, str, str], Dict[str, float]] = {}

    for event in events:
        key = (bucket_of(event.timestamp), event.provider_id, event.model_id)
        acc = totals.setdefault(key, {
            "input": 0, "output": 0, "cache_read": 0, "cache_write": 0,
            "cost": 0.0, "requests": 0,
        })
        acc["input"] += event.input_tokens
        acc["output"] += event.output_tokens
        acc["cache_read"] += event.cache_read_tokens or 0
        acc["cache_write"] += event.cache_write_tokens or 0
        acc["cost"] += event.cost_usd
        acc["requests"] += event.request_count

    return [
        Rollup(
            bucket=bucket,
            provider=provider,
            model=model,
            total_input_tokens=int(acc["input"]),
            total_output_tokens=int(acc["output"]),
            total_cache_read=int(acc["cache_read"]),
            total_cache_write=int(acc["cache_write"]),
            total_cost_usd=round(acc["cost"], 6),
            request_count=int(acc["requests"]),
        )
        for (bucket, provider, model), acc in sorted(totals.items())
    ]


@dataclass(frozen=True)
class SessionRecord:
    """Row of the agent_sessions dimension table."""
    id: int
    agent_id: str
    session_id: str
    project_path: Optional[str]
    started_at: Optional[int]
    first_seen_at: int
    last_seen_at: int


@dataclass(frozen=True)
class LatestStreamTotals:
    """Most recent snapshot totals of one session stream."""
    agent_id: str
    session_id: str
    provider: str
    model: str
    totals: StreamTotals


@dataclass(frozen=True)
class UsageQuery:
    """Filters for listing usage events."""
    start_time: Optional[int] = None
    end_time: Optional[int] = None
    provider: Optional[str] = None
    model: Optional[str] = None
    agent: Optional[str] = None
    session_id: Optional[str] = None
    limit: Optional[int] = None
    offset: Optional[int] = None


@dataclass(frozen=True)
class UsageSummary:
    total_input_tokens: int
    total_output_tokens: int
    total_cache_read: int
    total_cache_write: int
    total_cost_usd: float
    request_count: int

    @property
    def total_tokens(self) -> int:
        return (
            self.total_input_tokens
            + self.total_output_tokens
            + self.total_cache_read
            + self.total_cache_write
        )


@dataclass(frozen=True)
class GroupedSummary:
    """Totals for one provider, or one (provider, model) pair."""
    provider: str
    model: Optional[str]
    total_input_tokens: int
    total_output_tokens: int
    total_cost_usd: float
    request_count: int


@dataclass(frozen=True)
class TimeSeriesPoint:
    """Totals for one fixed-width bucket starting at ``bucket_start`` (ms)."""
    bucket_start: int
    input_tokens: int
    output_tokens: int
    cache_read_tokens: int
    cache_write_tokens: int
    total_tokens: int
    cost_usd: float
    request_count: int


@dataclass(frozen=True)
class BurnRate:
    """Consumption per unit time over a trailing window."""
    window_ms: int
    total_tokens: int
    total_cost_usd: float
    request_count: int
    tokens_per_minute: float
    cost_per_hour: float


@dataclass
class BatchResult:
    """Outcome of a batch write: rows written and rows rejected by index."""
    written: int = 0
    rejected: List[Tuple[int, str]] = field(default_factory=list)
