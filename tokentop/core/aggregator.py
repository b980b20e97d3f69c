"""
Session aggregation.

Folds raw usage rows into per-session aggregates with nested per-stream
(provider, model) totals. Aggregates are rebuilt from the full row set on
every call; nothing is patched incrementally, so the same rows always give
the same aggregates whatever order they arrive in.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from .pricing import PricingEntry, PricingSource, estimate_cost
from .token_counter import TokenCounts, sum_tokens
from tokentop.storage.models import UsageEvent, validate_usage_event

logger = logging.getLogger(__name__)

ACTIVE_THRESHOLD_MS = 2 * 60 * 1000

SessionKey = Tuple[str, str]
PricingLookup = Callable[[str, str], Optional[PricingEntry]]
Row = Union[UsageEvent, Mapping[str, Any]]


class SessionStatus(Enum):
    ACTIVE = "active"
    IDLE = "idle"


@dataclass(frozen=True)
class StreamAggregate:
    """Cumulative usage of one (provider, model) pair inside a session."""
    provider_id: str
    model_id: str
    tokens: TokenCounts
    request_count: int
    cost_usd: Optional[float] = None
    pricing_source: PricingSource = PricingSource.UNKNOWN


@dataclass(frozen=True)
class SessionAggregate:
    """Rolled-up totals and status for one agent session.

    ``totals`` is the field-wise sum of ``streams[].tokens`` and
    ``request_count`` the sum of ``streams[].request_count``.
    """
    agent_id: str
    session_id: str
    started_at: int
    last_activity_at: int
    status: SessionStatus
    totals: TokenCounts
    request_count: int
    streams: Tuple[StreamAggregate, ...] = field(default_factory=tuple)
    project_path: Optional[str] = None
    total_cost_usd: Optional[float] = None

    @property
    def key(self) -> SessionKey:
        return (self.agent_id, self.session_id)


@dataclass
class _SessionAccumulator:
    order: int
    started_at: int
    last_activity_at: int
    project_path: Optional[str] = None
    project_path_at: Optional[int] = None
    reported_updated_at: Optional[int] = None
    streams: Dict[Tuple[str, str], List[Any]] = field(default_factory=dict)


def _coerce_row(row: Row) -> Tuple[UsageEvent, Optional[int]]:
    """Normalize a row, returning the event and any reported update time."""
    if isinstance(row, UsageEvent):
        validate_usage_event(row)
        return row, None
    if isinstance(row, Mapping):
        updated_at = row.get("session_updated_at", row.get("sessionUpdatedAt"))
        if updated_at is not None and (isinstance(updated_at, bool) or not isinstance(updated_at, (int, float))):
            updated_at = None
        return UsageEvent.from_mapping(row), int(updated_at) if updated_at is not None else None
    raise ValueError(f"unsupported row type {type(row).__name__}")


def aggregate(
    rows: Sequence[Row],
    now: int,
    active_threshold_ms: int = ACTIVE_THRESHOLD_MS,
    session_updated_at: Optional[Mapping[SessionKey, int]] = None,
    pricing: Optional[PricingLookup] = None,
) -> List[SessionAggregate]:
    """Build session aggregates from a batch of usage rows.

    Args:
        rows: UsageEvent instances or watcher mappings
        now: Current time in epoch milliseconds
        active_threshold_ms: Inactivity window after which a session is idle
        session_updated_at: Externally reported last-update times per
            (agent_id, session_id), preferred over row timestamps for status
        pricing: Optional lookup used to price each stream

    Returns:
        Aggregates sorted by last activity, newest first. Ties keep the order
        in which the sessions first appear in ``rows``.
    """
    sessions: Dict[SessionKey, _SessionAccumulator] = {}

    for index, row in enumerate(rows):
        try:
            event, reported = _coerce_row(row)
        except (ValueError, TypeError) as e:
            logger.debug("Skipping malformed usage row %d: %s", index, e)
            continue

        if not event.session_id:
            continue

        key = (event.agent_id or "", event.session_id)
        session = sessions.get(key)
        if session is None:
            session = _SessionAccumulator(
                order=len(sessions),
                started_at=event.timestamp,
                last_activity_at=event.timestamp,
            )
            sessions[key] = session

        session.started_at = min(session.started_at, event.timestamp)
        session.last_activity_at = max(session.last_activity_at, event.timestamp)

        if event.project_path and (
            session.project_path_at is None
            or (event.timestamp, event.project_path) < (session.project_path_at, session.project_path)
        ):
            session.project_path = event.project_path
            session.project_path_at = event.timestamp

        if reported is not None and (
            session.reported_updated_at is None or reported > session.reported_updated_at
        ):
            session.reported_updated_at = reported

        stream = session.streams.setdefault((event.provider_id, event.model_id), [TokenCounts(), 0])
        stream[0] = sum_tokens(stream[0], event.tokens)
        stream[1] += event.request_count

    results = [
        _build_aggregate(key, session, now, active_threshold_ms, session_updated_at, pricing)
        for key, session in sessions.items()
    ]
    results.sort(key=lambda a: (-a.last_activity_at, sessions[a.key].order))
    return results


def _build_aggregate(
    key: SessionKey,
    session: _SessionAccumulator,
    now: int,
    active_threshold_ms: int,
    session_updated_at: Optional[Mapping[SessionKey, int]],
    pricing: Optional[PricingLookup],
) -> SessionAggregate:
    agent_id, session_id = key

    last_seen_at = session.last_activity_at
    external = session_updated_at.get(key) if session_updated_at else None
    if external is not None:
        last_seen_at = external
    elif session.reported_updated_at is not None:
        last_seen_at = session.reported_updated_at
    status = SessionStatus.ACTIVE if now - last_seen_at <= active_threshold_ms else SessionStatus.IDLE

    streams = []
    totals = TokenCounts()
    request_count = 0
    total_cost = Decimal(0)
    priced = False

    for (provider_id, model_id), (tokens, count) in sorted(session.streams.items()):
        cost = None
        source = PricingSource.UNKNOWN
        entry = pricing(provider_id, model_id) if pricing else None
        if entry is not None:
            cost = estimate_cost(tokens, entry).total
            source = entry.source
            total_cost += Decimal(str(cost))
            priced = True

        streams.append(StreamAggregate(
            provider_id=provider_id,
            model_id=model_id,
            tokens=tokens,
            request_count=count,
            cost_usd=cost,
            pricing_source=source,
        ))
        totals = sum_tokens(totals, tokens)
        request_count += count

    return SessionAggregate(
        agent_id=agent_id,
        session_id=session_id,
        started_at=session.started_at,
        last_activity_at=session.last_activity_at,
        status=status,
        totals=totals,
        request_count=request_count,
        streams=tuple(streams),
        project_path=session.project_path,
        total_cost_usd=float(total_cost) if priced else None,
    )
