"""
Provider contract.

Built-in providers subclass ``Provider``. Anything loaded dynamically is run
through ``validate_provider`` before the poller will accept it.
"""

import inspect
import json
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import httpx

from tokentop.core.token_counter import TokenCounts
from tokentop.storage.models import ProviderSnapshot


class ProviderContractError(TypeError):
    """Raised when a plugin object does not satisfy the Provider contract."""


class ProviderHTTPError(Exception):
    """Non-success HTTP response from a provider API."""

    def __init__(self, status_code: int, message: str = ""):
        self.status_code = status_code
        super().__init__(f"HTTP {status_code}{': ' + message if message else ''}")


@dataclass(frozen=True)
class Credentials:
    api_key: Optional[str] = None
    oauth_token: Optional[str] = None
    source: str = "env"

    @classmethod
    def from_env(cls, env_vars: Sequence[str]) -> "Credentials":
        """First non-empty variable wins."""
        for name in env_vars:
            value = os.environ.get(name)
            if value:
                return cls(api_key=value, source="env")
        return cls()


@dataclass(frozen=True)
class UsageLimit:
    used_percent: Optional[float]
    label: Optional[str] = None
    resets_at: Optional[int] = None
    window_minutes: Optional[int] = None


@dataclass(frozen=True)
class ProviderUsage:
    """One poll result. Failures are carried in ``error``, never raised."""
    fetched_at: int
    plan_type: Optional[str] = None
    allowed: Optional[bool] = None
    limit_reached: Optional[bool] = None
    limits: List[UsageLimit] = field(default_factory=list)
    tokens: Optional[TokenCounts] = None
    cost_usd: Optional[float] = None
    cost_source: Optional[str] = None
    error: Optional[str] = None
    raw: Optional[Dict[str, Any]] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_snapshot(self, provider_id: str) -> ProviderSnapshot:
        """Flatten into a storable snapshot; highest limit usage wins."""
        used = [limit.used_percent for limit in self.limits if limit.used_percent is not None]
        return ProviderSnapshot(
            timestamp=self.fetched_at,
            provider=provider_id,
            used_percent=max(used) if used else None,
            limit_reached=self.limit_reached,
            tokens_input=self.tokens.input if self.tokens else None,
            tokens_output=self.tokens.output if self.tokens else None,
            cost_usd=self.cost_usd,
            raw_payload=json.dumps(self.raw, sort_keys=True, default=str) if self.raw is not None else None,
        )


class Provider(ABC):
    """A usage source polled once per refresh cycle."""

    id: str = ""
    name: str = ""
    env_vars: Sequence[str] = ()

    def discover_credentials(self) -> Credentials:
        return Credentials.from_env(self.env_vars)

    def is_configured(self, credentials: Credentials) -> bool:
        return bool(credentials.api_key or credentials.oauth_token)

    @abstractmethod
    async def fetch_usage(
        self, credentials: Credentials, client: httpx.AsyncClient, now: int
    ) -> ProviderUsage:
        """Fetch current usage. May raise; the poller turns errors into data."""


class _PluginProvider(Provider):
    """Adapter giving a validated plugin object the Provider interface."""

    def __init__(self, plugin: Any):
        self._plugin = plugin
        self.id = plugin.id
        self.name = getattr(plugin, "name", plugin.id)
        self.env_vars = tuple(getattr(plugin, "env_vars", ()))

    def is_configured(self, credentials: Credentials) -> bool:
        check = getattr(self._plugin, "is_configured", None)
        if check is None:
            return super().is_configured(credentials)
        return bool(check(credentials))

    async def fetch_usage(
        self, credentials: Credentials, client: httpx.AsyncClient, now: int
    ) -> ProviderUsage:
        result = await self._plugin.fetch_usage(credentials, client, now)
        if not isinstance(result, ProviderUsage):
            raise ProviderContractError(
                f"plugin {self.id!r} returned {type(result).__name__}, expected ProviderUsage"
            )
        return result


def validate_provider(candidate: Any) -> Provider:
    """Check an object against the Provider contract.

    Raises:
        ProviderContractError: If a required attribute is missing or has the
            wrong shape
    """
    if isinstance(candidate, Provider):
        if not candidate.id:
            raise ProviderContractError("provider id cannot be empty")
        return candidate

    provider_id = getattr(candidate, "id", None)
    if not isinstance(provider_id, str) or not provider_id:
        raise ProviderContractError("plugin must define a non-empty string 'id'")

    fetch = getattr(candidate, "fetch_usage", None)
    if fetch is None or not inspect.iscoroutinefunction(fetch):
        raise ProviderContractError(f"plugin {provider_id!r} must define async fetch_usage()")

    check = getattr(candidate, "is_configured", None)
    if check is not None and not callable(check):
        raise ProviderContractError(f"plugin {provider_id!r}: is_configured must be callable")

    return _PluginProvider(candidate)
