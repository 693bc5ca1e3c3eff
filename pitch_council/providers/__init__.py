"""Completion providers keyed by the ``sdk`` field of a model config."""

from config.config_loader import ModelConfig
from pitch_council.providers.anthropic import AnthropicProvider
from pitch_council.providers.base import AIProvider, ProviderError
from pitch_council.providers.gemini import GeminiProvider
from pitch_council.providers.openai_provider import OpenAIProvider

PROVIDER_CLASSES: dict[str, type[AIProvider]] = {
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
    "gemini": GeminiProvider,
}


def build_provider(config: ModelConfig, api_key: str | None = None) -> AIProvider:
    """Instantiate the provider for ``config``, using ``api_key`` over the env var.

    Raises ProviderError for an unknown sdk or a missing key.
    """
    if config.sdk not in PROVIDER_CLASSES:
        raise ProviderError(config.name, f"Unknown sdk '{config.sdk}'")
    return PROVIDER_CLASSES[config.sdk](config, api_key)


__all__ = ["AIProvider", "ProviderError", "PROVIDER_CLASSES", "build_provider"]
