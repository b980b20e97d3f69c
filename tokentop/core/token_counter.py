"""
Token counting and usage tracking.

Holds the per-class token counters shared by aggregation, pricing and storage.
"""

from dataclasses import dataclass
from typing import Dict, Optional


@dataclass(frozen=True)
class TokenCounts:
    """Token counts split by token class.

    Cache fields stay ``None`` unless a positive value was observed, so sparse
    output does not grow zero-filled keys.
    """
    input: int = 0
    output: int = 0
    cache_read: Optional[int] = None
    cache_write: Optional[int] = None

    @property
    def total_tokens(self) -> int:
        """Total tokens across all classes."""
        return (
            self.input
            + self.output
            + (self.cache_read or 0)
            + (self.cache_write or 0)
        )

    def to_dict(self) -> Dict[str, int]:
        """Serialize with absent cache classes omitted."""
        result = {"input": self.input, "output": self.output}
        if self.cache_read is not None:
            result["cacheRead"] = self.cache_read
        if self.cache_write is not None:
            result["cacheWrite"] = self.cache_write
        return result


def sum_tokens(a: TokenCounts, b: TokenCounts) -> TokenCounts:
    """Add two counters field by field.

    A cache class only appears in the result when the combined value is > 0.
    """
    cache_read = (a.cache_read or 0) + (b.cache_read or 0)
    cache_write = (a.cache_write or 0) + (b.cache_write or 0)
    return TokenCounts(
        input=a.input + b.input,
        output=a.output + b.output,
        cache_read=cache_read if cache_read > 0 else None,
        cache_write=cache_write if cache_write > 0 else None,
    )
