"""Small HTTP-related constants shared across gencourier.

This module is intentionally tiny to avoid circular imports and drift.
"""

from __future__ import annotations

# Header the Gemini file endpoints accept in place of a ``?key=`` query param.
API_KEY_HEADER = "x-goog-api-key"
