"""OpenAI organization usage and cost API."""

import logging
from typing import Any, Dict, Optional

import httpx

from tokentop.core.token_counter import TokenCounts
from .base import Credentials, Provider, ProviderHTTPError, ProviderUsage

logger = logging.getLogger(__name__)

OPENAI_API_BASE = "https://api.openai.com/v1"
_DAY_SECONDS = 86_400


class OpenAIAPIProvider(Provider):
    id = "openai-api"
    name = "OpenAI API"
    env_vars = ("OPENAI_ADMIN_KEY", "OPENAI_API_KEY")

    def __init__(self, base_url: str = OPENAI_API_BASE):
        self.base_url = base_url.rstrip("/")

    async def fetch_usage(
        self, credentials: Credentials, client: httpx.AsyncClient, now: int
    ) -> ProviderUsage:
        start_time = now // 1000 - _DAY_SECONDS
        headers = {"Authorization": f"Bearer {credentials.api_key or credentials.oauth_token}"}

        usage = await self._get(client, "/organization/usage/completions", start_time, headers)
        costs = await self._get(client, "/organization/usage/costs", start_time, headers)
        if usage is None and costs is None:
            raise ProviderHTTPError(403, "organization usage requires an admin key")

        tokens = _sum_tokens(usage) if usage is not None else None
        cost = _sum_costs(costs) if costs is not None else None

        return ProviderUsage(
            fetched_at=now,
            plan_type="API",
            allowed=True,
            tokens=tokens,
            cost_usd=cost,
            cost_source="api" if cost is not None else None,
            raw={"usage": usage, "costs": costs},
        )

    async def _get(
        self, client: httpx.AsyncClient, path: str, start_time: int, headers: Dict[str, str]
    ) -> Optional[Dict[str, Any]]:
        """GET one endpoint; None when the key lacks access to it."""
        response = await client.get(
            f"{self.base_url}{path}",
            params={"start_time": start_time, "bucket_width": "1d", "limit": 1},
            headers=headers,
        )
        if response.status_code == 403:
            logger.debug("OpenAI %s not accessible with this key", path)
            return None
        if response.status_code >= 400:
            raise ProviderHTTPError(response.status_code, response.text[:200])
        return response.json()


def _results(payload: Dict[str, Any]):
    for bucket in payload.get("data") or []:
        for result in bucket.get("results") or []:
            yield result


def _sum_tokens(payload: Dict[str, Any]) -> TokenCounts:
    input_tokens = output_tokens = cached = 0
    for result in _results(payload):
        input_tokens += int(result.get("input_tokens") or 0)
        output_tokens += int(result.get("output_tokens") or 0)
        cached += int(result.get("input_cached_tokens") or 0)
    return TokenCounts(
        input=input_tokens,
        output=output_tokens,
        cache_read=cached if cached > 0 else None,
    )


def _sum_costs(payload: Dict[str, Any]) -> float:
    total = 0.0
    for result in _results(payload):
        amount = result.get("amount") or {}
        total += float(amount.get("value") or 0)
    return round(total, 6)
