"""Configuration: frozen Config that also serves as the credential/model resolver."""

from __future__ import annotations

from dataclasses import dataclass, field
import os
from typing import Literal, Protocol, runtime_checkable

from dotenv import load_dotenv

from gencourier.assets import DEFAULT_MAX_ASSET_BYTES
from gencourier.classify import ErrorCategory, remediation
from gencourier.errors import ConfigurationError, MissingCredentialError
from gencourier.retry import RetryPolicy

load_dotenv()

ProviderName = Literal["gemini"]
ModelKind = Literal["image", "video"]

# Provider-specific API key environment variable names
_API_KEY_ENV_VARS: dict[ProviderName, str] = {
    "gemini": "GEMINI_API_KEY",
}

PRO_IMAGE_MODEL = "gemini-3-pro-image-preview"
FLASH_MODEL = "gemini-3-flash-preview"
DEFAULT_VIDEO_MODEL = "veo-3.1-generate-preview"


def default_fallbacks(model: str) -> tuple[str, ...]:
    """Fallback chain used when none is configured: pro image <-> flash."""
    return (FLASH_MODEL,) if model == PRO_IMAGE_MODEL else (PRO_IMAGE_MODEL,)


@runtime_checkable
class CredentialResolver(Protocol):
    """Supplies the active key and selected model for a provider."""

    def get_active_key(self, provider: str) -> str | None: ...  # noqa: D102
    def get_selected_model(self, provider: str, kind: ModelKind = "image") -> str: ...  # noqa: D102


@dataclass(frozen=True)
class Config:
    """Immutable configuration for generation runs.

    The API key is auto-resolved from ``GEMINI_API_KEY``. A missing key is not
    a construction error: it surfaces as ``MissingCredentialError`` when a job
    needs it, before anything is dispatched.

    Example:
        config = Config(model="gemini-3-pro-image-preview", cooldown_s=5.0)

    Mock mode needs no key; ``get_active_key`` returns a placeholder.
    """

    provider: ProviderName = "gemini"
    model: str = PRO_IMAGE_MODEL
    video_model: str = DEFAULT_VIDEO_MODEL
    #: Auto-resolved from ``GEMINI_API_KEY`` when *None*.
    api_key: str | None = None
    use_mock: bool = False
    #: Derived from ``model`` via ``default_fallbacks`` when *None*.
    fallback_models: tuple[str, ...] | None = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    poll_interval_s: float = 10.0
    max_polls: int = 60
    cooldown_s: float = 5.0
    max_asset_bytes: int = DEFAULT_MAX_ASSET_BYTES

    def __post_init__(self) -> None:
        """Auto-resolve API key and validate configuration."""
        if self.provider not in _API_KEY_ENV_VARS:
            raise ConfigurationError(
                f"Unknown provider: {self.provider!r}",
                hint="Supported providers: 'gemini'",
            )
        if not self.model:
            raise ConfigurationError("model must be a non-empty model id")
        if self.poll_interval_s < 0:
            raise ConfigurationError(
                f"poll_interval_s must be ≥ 0, got {self.poll_interval_s}",
                hint="Seconds between operation status checks.",
            )
        if self.max_polls < 1:
            raise ConfigurationError(
                f"max_polls must be ≥ 1, got {self.max_polls}",
                hint="Number of status checks before a video job times out.",
            )
        if self.cooldown_s < 0:
            raise ConfigurationError(
                f"cooldown_s must be ≥ 0, got {self.cooldown_s}",
                hint="Pause between batch items, used to stay under rate limits.",
            )
        if self.max_asset_bytes < 1:
            raise ConfigurationError(
                f"max_asset_bytes must be ≥ 1, got {self.max_asset_bytes}"
            )

        if self.fallback_models is None:
            object.__setattr__(self, "fallback_models", default_fallbacks(self.model))
        else:
            object.__setattr__(self, "fallback_models", tuple(self.fallback_models))

        if self.api_key is None and not self.use_mock:
            resolved_key = os.environ.get(_API_KEY_ENV_VARS[self.provider])
            object.__setattr__(self, "api_key", resolved_key or None)

    def get_active_key(self, provider: str) -> str | None:
        """Return the API key for *provider*, or None when none is configured."""
        if provider != self.provider:
            return None
        if self.use_mock and not self.api_key:
            return "mock-key"
        return self.api_key

    def get_selected_model(self, provider: str, kind: ModelKind = "image") -> str:
        """Return the model selected for *provider* and output *kind*."""
        if provider != self.provider:
            raise ConfigurationError(
                f"No model configured for provider {provider!r}",
                hint=f"This configuration targets {self.provider!r}.",
            )
        return self.video_model if kind == "video" else self.model

    def require_key(self) -> str:
        """Return the active key or raise ``MissingCredentialError``."""
        key = self.get_active_key(self.provider)
        if not key:
            env_var = _API_KEY_ENV_VARS[self.provider]
            raise MissingCredentialError(
                f"API key required for {self.provider}",
                hint=remediation(ErrorCategory.MISSING_CREDENTIAL).replace(
                    "GEMINI_API_KEY", env_var
                ),
            )
        return key

    def __str__(self) -> str:
        """Return a redacted, developer-friendly representation."""
        return (
            f"Config(provider={self.provider!r}, model={self.model!r}, "
            f"video_model={self.video_model!r}, "
            f"api_key={'[REDACTED]' if self.api_key else None}, use_mock={self.use_mock})"
        )

    __repr__ = __str__
