"""Provider implementations."""

from .base import Transport
from .gemini import GeminiProvider
from .mock import MockProvider

__all__ = [
    "GeminiProvider",
    "MockProvider",
    "Transport",
]
