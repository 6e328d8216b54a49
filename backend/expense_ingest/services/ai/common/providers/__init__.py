"""Provider factory: maps backend configuration onto a provider instance."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from expense_ingest.core.config import LlmProviderOptions
from expense_ingest.core.errors import NotConfiguredError, NotSupportedError

from .base import BaseProvider, ProviderResult

if TYPE_CHECKING:
    import httpx

    from ..local_runtime import LocalLlmRuntime

logger = logging.getLogger(__name__)

__all__ = ["get_provider", "BaseProvider", "ProviderResult"]


def _blank(value: str) -> bool:
    return not value or not value.strip()


def get_provider(
    options: LlmProviderOptions,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    runtime: Optional[LocalLlmRuntime] = None,
) -> BaseProvider:
    """Return a provider for ``options.provider``.

    Missing wiring raises ``NotConfiguredError`` and an unknown name raises
    ``NotSupportedError``; nothing falls back silently.
    """
    name = (options.provider or "").strip().lower()

    if not name:
        raise NotConfiguredError("LLM provider is not configured")

    if name == "local":
        from ..local_runtime import get_local_runtime
        from .local import LocalProvider

        return LocalProvider(runtime or get_local_runtime())

    if name == "openai":
        if _blank(options.endpoint) or _blank(options.api_key):
            raise NotConfiguredError("OpenAI endpoint or api key missing")
        from .openai import OpenAIProvider

        return OpenAIProvider(options.endpoint, options.api_key, transport=transport)

    if name == "azureopenai":
        if _blank(options.endpoint) or _blank(options.api_key) or _blank(options.deployment):
            raise NotConfiguredError("Azure OpenAI configuration missing")
        from .azure_openai import AzureOpenAIProvider

        return AzureOpenAIProvider(options.endpoint, options.api_key, options.deployment, transport=transport)

    if name == "ollama":
        if _blank(options.endpoint) or _blank(options.model):
            raise NotConfiguredError("Ollama endpoint or model missing")
        from .ollama import OllamaProvider

        return OllamaProvider(options.endpoint, transport=transport)

    logger.warning("Unknown LLM provider %r", name)
    raise NotSupportedError(f"LLM provider '{name}' is not supported")
