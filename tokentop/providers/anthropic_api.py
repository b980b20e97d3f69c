"""Anthropic API key provider.

Anthropic exposes no usage endpoint to regular API keys, so this provider
only reports whether a key is present.
"""

import httpx

from .base import Credentials, Provider, ProviderUsage


class AnthropicAPIProvider(Provider):
    id = "anthropic-api"
    name = "Anthropic API"
    env_vars = ("ANTHROPIC_API_KEY",)

    async def fetch_usage(
        self, credentials: Credentials, client: httpx.AsyncClient, now: int
    ) -> ProviderUsage:
        return ProviderUsage(fetched_at=now, plan_type="API", allowed=True)
