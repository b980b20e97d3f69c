"""
Concurrent provider polling.

Every provider is polled as its own task with its own timeout and retry
budget. A failing provider yields a ProviderUsage carrying ``error``; it
never raises into the caller or delays the other providers.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Mapping, Optional, Sequence

import httpx

from tokentop.core.clock import now_ms
from .base import Credentials, Provider, ProviderHTTPError, ProviderUsage

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = {408, 425, 429, 500, 502, 503, 504}


@dataclass(frozen=True)
class PollPolicy:
    """Timeout and retry settings for one provider."""
    timeout_seconds: float = 15.0
    max_retries: int = 2
    base_delay_s: float = 1.0
    backoff_factor: float = 2.0
    jitter: bool = True

    def delay(self, attempt: int) -> float:
        """Backoff before retry ``attempt`` (0-based)."""
        delay = self.base_delay_s * (self.backoff_factor ** attempt)
        if self.jitter:
            delay *= 0.5 + random.random()  # noqa: S311
        return delay


def is_retryable(error: BaseException) -> bool:
    """Timeouts, transport failures, 429 and 5xx are retried; auth errors are not."""
    if isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException, httpx.TransportError)):
        return True
    if isinstance(error, ProviderHTTPError):
        return error.status_code in _RETRYABLE_STATUS
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in _RETRYABLE_STATUS
    return False


def describe_error(error: BaseException) -> str:
    if isinstance(error, asyncio.TimeoutError):
        return "Request timed out"
    if isinstance(error, (ProviderHTTPError, httpx.HTTPStatusError)):
        status = getattr(error, "status_code", None) or error.response.status_code
        if status in (401, 403):
            return f"Authentication failed (HTTP {status})"
        if status == 429:
            return "Rate limited (HTTP 429)"
    return f"Failed to fetch usage: {error}"


async def poll_provider(
    provider: Provider,
    credentials: Credentials,
    client: httpx.AsyncClient,
    policy: Optional[PollPolicy] = None,
    clock: Callable[[], int] = now_ms,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> ProviderUsage:
    """Poll one provider, retrying transient failures.

    Returns:
        The provider's usage, or a ProviderUsage whose ``error`` explains why
        none could be fetched
    """
    policy = policy or PollPolicy()

    if not provider.is_configured(credentials):
        return ProviderUsage(fetched_at=clock(), error="Not configured")

    attempt = 0
    while True:
        try:
            return await asyncio.wait_for(
                provider.fetch_usage(credentials, client, clock()),
                timeout=policy.timeout_seconds,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if is_retryable(e) and attempt < policy.max_retries:
                delay = policy.delay(attempt)
                logger.info(
                    "Provider %s attempt %d failed (%s), retrying in %.1fs",
                    provider.id, attempt + 1, e, delay,
                )
                attempt += 1
                await sleep(delay)
                continue
            logger.warning("Provider %s poll failed: %s", provider.id, e)
            return ProviderUsage(fetched_at=clock(), error=describe_error(e))


async def poll_providers(
    providers: Sequence[Provider],
    credentials: Mapping[str, Credentials],
    policies: Optional[Mapping[str, PollPolicy]] = None,
    client: Optional[httpx.AsyncClient] = None,
    clock: Callable[[], int] = now_ms,
) -> Dict[str, ProviderUsage]:
    """Poll all providers concurrently.

    Args:
        providers: Providers to poll
        credentials: Credentials per provider id (missing means unconfigured)
        policies: Per-provider timeout/retry settings
        client: Shared HTTP client; one is created and closed if omitted
        clock: Millisecond clock

    Returns:
        Result per provider id, in the order given
    """
    policies = policies or {}

    async def _run(http: httpx.AsyncClient) -> Dict[str, ProviderUsage]:
        results = await asyncio.gather(*(
            poll_provider(
                provider,
                credentials.get(provider.id, Credentials()),
                http,
                policies.get(provider.id),
                clock,
            )
            for provider in providers
        ))
        return {provider.id: result for provider, result in zip(providers, results)}

    if client is not None:
        return await _run(client)
    async with httpx.AsyncClient() as http:
        return await _run(http)
