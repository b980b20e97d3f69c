"""
Recording OpenAI client wrapper.

Records a usage event for every chat completion without modifying behavior.
"""

import logging
from typing import Any, Dict, List, Optional

from openai import OpenAI

from ..core.clock import now_ms
from ..core.pricing import PricingResolver, PricingSource, estimate_cost
from ..core.token_counter import TokenCounts
from ..storage.models import UsageEvent, UsageSource
from ..storage.repository import UsageStore

logger = logging.getLogger(__name__)

PROVIDER_ID = "openai"


class RecordingOpenAI:
    """OpenAI client wrapper that records usage events.

    Each successful completion becomes one ``UsageEvent`` (source ``sdk``)
    written together with its hourly and daily rollups. API and storage
    failures propagate to the caller.
    """

    def __init__(
        self,
        model: str,
        store: UsageStore,
        resolver: Optional[PricingResolver] = None,
        agent_id: Optional[str] = None,
        session_id: Optional[str] = None,
        project_path: Optional[str] = None,
        client: Optional[OpenAI] = None,
    ):
        """Initialize the recording client.

        Args:
            model: OpenAI model name (required)
            store: Initialized usage store events are written to
            resolver: Pricing resolver; a default one is created if omitted
            agent_id: Optional agent label attached to every event
            session_id: Optional session label attached to every event
            project_path: Optional project path attached to every event
            client: Preconfigured OpenAI client (defaults to ``OpenAI()``)

        Raises:
            ValueError: If model is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.model = model
        self.store = store
        self.resolver = resolver or PricingResolver()
        self.agent_id = agent_id
        self.session_id = session_id
        self.project_path = project_path
        self.client = client if client is not None else OpenAI()

    def chat(
        self,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs: Any
    ) -> Any:
        """Create a chat completion and record its usage.

        Args:
            messages: List of message dictionaries (required)
            temperature: Sampling temperature (optional)
            max_tokens: Maximum tokens to generate (optional)
            **kwargs: Additional OpenAI parameters

        Returns:
            The OpenAI chat completion response, unchanged

        Raises:
            ValueError: If messages is empty or the response has no usage
            OpenAI API errors: Propagated without modification
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        params: Dict[str, Any] = dict(kwargs)
        if temperature is not None:
            params["temperature"] = temperature
        if max_tokens is not None:
            params["max_tokens"] = max_tokens

        response = self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            **params
        )

        usage = response.usage
        if not usage:
            raise ValueError("OpenAI response missing usage information")

        result = self.store.record_usage_events([self._event(usage)])
        if result.rejected:
            raise ValueError(f"usage event rejected: {result.rejected[0][1]}")
        return response

    def _event(self, usage: Any) -> UsageEvent:
        details = getattr(usage, "prompt_tokens_details", None)
        cached = getattr(details, "cached_tokens", None) if details is not None else None
        if not isinstance(cached, int):
            cached = 0
        # prompt_tokens includes the cached part
        tokens = TokenCounts(
            input=max(0, usage.prompt_tokens - cached),
            output=usage.completion_tokens,
            cache_read=cached or None,
        )

        entry = self.resolver.resolve(PROVIDER_ID, self.model)
        if entry is None:
            logger.warning("No pricing for %s/%s; recording zero cost", PROVIDER_ID, self.model)
            cost = 0.0
            source = PricingSource.UNKNOWN
        else:
            cost = estimate_cost(tokens, entry).total
            source = entry.source

        return UsageEvent(
            timestamp=now_ms(),
            provider_id=PROVIDER_ID,
            model_id=self.model,
            input_tokens=tokens.input,
            output_tokens=tokens.output,
            cost_usd=cost,
            agent_id=self.agent_id,
            session_id=self.session_id,
            cache_read_tokens=tokens.cache_read,
            project_path=self.project_path,
            source=UsageSource.SDK,
            pricing_source=source.value,
        )
