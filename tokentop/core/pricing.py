"""
Pricing calculations and rate management.

Resolves per-million-token USD rates for (provider, model) pairs from the
live models.dev catalogue with a static fallback table, and computes cost
breakdowns for token counts.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional

from .models_dev import ModelsDevClient
from .token_counter import TokenCounts, sum_tokens
from tokentop.config.loader import PricingConfig


class PricingSource(Enum):
    """Where a cost rate came from."""
    MODELS_DEV = "models.dev"
    FALLBACK = "fallback"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class PricingEntry:
    """Per-million-token USD rates for a model."""
    input: float
    output: float
    cache_read: Optional[float] = None
    cache_write: Optional[float] = None
    source: PricingSource = PricingSource.FALLBACK


@dataclass(frozen=True)
class CostBreakdown:
    """Cost of a token count, per token class, in USD."""
    total: float
    input: float
    output: float
    cache_read: Optional[float] = None
    cache_write: Optional[float] = None
    currency: str = "USD"


def _fallback(input: float, output: float, cache_read: Optional[float] = None,
              cache_write: Optional[float] = None) -> PricingEntry:
    return PricingEntry(input, output, cache_read, cache_write, PricingSource.FALLBACK)


# Static table used when models.dev is unreachable or lacks the model
FALLBACK_PRICING: Dict[str, Dict[str, PricingEntry]] = {
    "anthropic": {
        "claude-sonnet-4-20250514": _fallback(3, 15, 0.3, 3.75),
        "claude-3-7-sonnet-20250219": _fallback(3, 15, 0.3, 3.75),
        "claude-3-5-sonnet-20241022": _fallback(3, 15, 0.3, 3.75),
        "claude-3-5-haiku-20241022": _fallback(0.8, 4, 0.08, 1),
        "claude-3-opus-20240229": _fallback(15, 75, 1.5, 18.75),
    },
    "openai": {
        "gpt-4.1": _fallback(2, 8, 0.5),
        "gpt-4.1-mini": _fallback(0.4, 1.6, 0.1),
        "gpt-4o": _fallback(2.5, 10, 1.25),
        "gpt-4o-mini": _fallback(0.15, 0.6, 0.075),
        "o1": _fallback(15, 60),
        "o1-mini": _fallback(1.1, 4.4),
        "o3": _fallback(10, 40),
        "o3-mini": _fallback(1.1, 4.4),
        "o4-mini": _fallback(1.1, 4.4),
    },
    "google": {
        "gemini-2.0-flash": _fallback(0.1, 0.4),
        "gemini-2.0-flash-lite": _fallback(0.075, 0.3),
        "gemini-2.5-pro": _fallback(1.25, 10),
        "gemini-2.5-flash": _fallback(0.15, 0.6),
    },
    "openrouter": {
        "anthropic/claude-sonnet-4": _fallback(3, 15),
        "openai/gpt-4.1": _fallback(2, 8),
        "google/gemini-2.5-pro": _fallback(1.25, 10),
    },
}

# Provider ids that bill through another vendor's price list
PROVIDER_ALIASES: Dict[str, str] = {
    "opencode-zen": "anthropic",
    "anthropic-api": "anthropic",
    "claude-max": "anthropic",
    "codex": "openai",
    "openai-api": "openai",
    "github-copilot": "openai",
    "google-gemini": "google",
    "antigravity": "google",
}

_PER_MILLION = Decimal(1_000_000)
_COST_QUANTUM = Decimal("0.000001")


def normalize_provider_name(provider_id: str) -> str:
    return PROVIDER_ALIASES.get(provider_id, provider_id)


def get_fallback_pricing(provider_id: str, model_id: str) -> Optional[PricingEntry]:
    """Look up the static table: exact model id first, then substring match.

    Substring matching runs in both directions so versioned or aliased model
    names ("claude-3-5-haiku-20241022-v2", "gpt-4o") still resolve.
    """
    provider_pricing = FALLBACK_PRICING.get(provider_id)
    if not provider_pricing:
        return None

    exact = provider_pricing.get(model_id)
    if exact is not None:
        return exact

    for key, pricing in provider_pricing.items():
        if key in model_id or model_id in key:
            return pricing
    return None


def _round_cost(value: Decimal) -> Decimal:
    return value.quantize(_COST_QUANTUM, rounding=ROUND_HALF_UP)


def _component_cost(tokens: Optional[int], rate: Optional[float]) -> Decimal:
    if not tokens or not rate:
        return Decimal(0)
    return _round_cost(Decimal(tokens) / _PER_MILLION * Decimal(str(rate)))


def estimate_cost(tokens: TokenCounts, pricing: PricingEntry) -> CostBreakdown:
    """Compute the cost of ``tokens`` at ``pricing`` rates.

    Each component is rounded to 6 decimal places before summation so totals
    re-summed across many sessions do not drift. Zero cache components are
    omitted.

    Args:
        tokens: Token counts to price
        pricing: Per-million-token rates

    Returns:
        CostBreakdown in USD
    """
    input_cost = _component_cost(tokens.input, pricing.input)
    output_cost = _component_cost(tokens.output, pricing.output)
    cache_read_cost = _component_cost(tokens.cache_read, pricing.cache_read)
    cache_write_cost = _component_cost(tokens.cache_write, pricing.cache_write)

    total = input_cost + output_cost + cache_read_cost + cache_write_cost

    return CostBreakdown(
        total=float(total),
        input=float(input_cost),
        output=float(output_cost),
        cache_read=float(cache_read_cost) if cache_read_cost > 0 else None,
        cache_write=float(cache_write_cost) if cache_write_cost > 0 else None,
    )


def estimate_session_cost(usages: Iterable[TokenCounts], pricing: PricingEntry) -> CostBreakdown:
    """Price the sum of several token counts at one rate."""
    totals = TokenCounts()
    for usage in usages:
        totals = sum_tokens(totals, usage)
    return estimate_cost(totals, pricing)


def format_cost(cost: float, currency: str = "USD") -> str:
    if currency == "USD":
        if cost < 0.01:
            return f"${cost:.4f}"
        if cost < 1:
            return f"${cost:.3f}"
        return f"${cost:,.2f}"
    return f"{cost:.4f} {currency}"


def format_token_count(tokens: int) -> str:
    if tokens < 1000:
        return str(tokens)
    if tokens < 1_000_000:
        return f"{tokens / 1000:.1f}K"
    return f"{tokens / 1_000_000:.2f}M"


def _entry_from_models_dev(model: Any) -> Optional[PricingEntry]:
    if not isinstance(model, Mapping):
        return None
    cost = model.get("cost")
    if not isinstance(cost, Mapping):
        return None
    try:
        input_rate = float(cost["input"])
        output_rate = float(cost["output"])
    except (KeyError, TypeError, ValueError):
        return None
    cache_read = cost.get("cache_read")
    cache_write = cost.get("cache_write")
    return PricingEntry(
        input=input_rate,
        output=output_rate,
        cache_read=float(cache_read) if cache_read is not None else None,
        cache_write=float(cache_write) if cache_write is not None else None,
        source=PricingSource.MODELS_DEV,
    )


class PricingResolver:
    """Resolves pricing: live catalogue, then fallback table, then unknown.

    One resolver is owned by the running service; its live-source cache is
    instance state with an explicit ``clear_cache``.
    """

    def __init__(self, live_source: Optional[ModelsDevClient] = None, use_live: bool = True):
        self.live_source = live_source if live_source is not None else ModelsDevClient()
        self.use_live = use_live

    @classmethod
    def from_config(cls, config: PricingConfig, offline: bool = False) -> "PricingResolver":
        """Build a resolver whose live source honours the pricing config."""
        client = ModelsDevClient(ttl_seconds=config.ttl_seconds, timeout_seconds=config.timeout_seconds)
        return cls(client, use_live=config.live and not offline)

    def resolve(self, provider_id: str, model_id: str) -> Optional[PricingEntry]:
        """Get pricing for a model, or None when no source knows it."""
        provider = normalize_provider_name(provider_id)

        live = self._live_pricing(provider, model_id)
        if live is not None:
            return live

        return get_fallback_pricing(provider, model_id)

    def provider_pricing(self, provider_id: str) -> Dict[str, PricingEntry]:
        """All known model prices for a provider, live catalogue preferred."""
        provider = normalize_provider_name(provider_id)

        models = self._live_models(provider)
        if models:
            result = {}
            for model_id, model in models.items():
                entry = _entry_from_models_dev(model)
                if entry is not None:
                    result[model_id] = entry
            if result:
                return result

        return dict(FALLBACK_PRICING.get(provider, {}))

    def clear_cache(self) -> None:
        self.live_source.clear_cache()

    def _live_models(self, provider: str) -> Optional[Mapping[str, Any]]:
        if not self.use_live:
            return None
        catalogue = self.live_source.fetch()
        if not catalogue:
            return None
        provider_data = catalogue.get(provider)
        if not isinstance(provider_data, Mapping):
            return None
        models = provider_data.get("models")
        return models if isinstance(models, Mapping) else None

    def _live_pricing(self, provider: str, model_id: str) -> Optional[PricingEntry]:
        models = self._live_models(provider)
        if not models:
            return None
        return _entry_from_models_dev(models.get(model_id))
