"""Usage providers and concurrent polling."""

from typing import Dict, List, Optional

from .anthropic_api import AnthropicAPIProvider
from .base import (
    Credentials,
    Provider,
    ProviderContractError,
    ProviderHTTPError,
    ProviderUsage,
    UsageLimit,
    validate_provider,
)
from .openai_api import OpenAIAPIProvider
from .poller import PollPolicy, poll_provider, poll_providers

BUILTIN_PROVIDERS = (OpenAIAPIProvider, AnthropicAPIProvider)


def builtin_providers(enabled: Optional[Dict[str, bool]] = None) -> List[Provider]:
    """Instantiate built-in providers, skipping those disabled in ``enabled``."""
    enabled = enabled or {}
    return [cls() for cls in BUILTIN_PROVIDERS if enabled.get(cls.id, True)]


__all__ = [
    "AnthropicAPIProvider",
    "BUILTIN_PROVIDERS",
    "Credentials",
    "OpenAIAPIProvider",
    "PollPolicy",
    "Provider",
    "ProviderContractError",
    "ProviderHTTPError",
    "ProviderUsage",
    "UsageLimit",
    "builtin_providers",
    "poll_provider",
    "poll_providers",
    "validate_provider",
]
