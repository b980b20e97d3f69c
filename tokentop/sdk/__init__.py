"""
SDK for tokentop.

Wraps provider clients so their usage lands in the usage store.
"""

from .openai_client import RecordingOpenAI

__all__ = ["RecordingOpenAI"]
