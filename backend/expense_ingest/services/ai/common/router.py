"""Resolves the inference backend for a call from the externally supplied options."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from expense_ingest.core.config import LlmSettingsProvider, SettingsLlmProvider

from .providers import BaseProvider, get_provider

if TYPE_CHECKING:
    import httpx

    from .local_runtime import LocalLlmRuntime

logger = logging.getLogger(__name__)

MIN_TIMEOUT_SECONDS = 5.0


@dataclass(frozen=True)
class ResolvedConfig:
    """Provider plus the generation parameters for one call."""

    provider: BaseProvider
    model: str
    temperature: float
    max_tokens: int
    timeout_seconds: float


def resolve(
    settings_provider: Optional[LlmSettingsProvider] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    runtime: Optional[LocalLlmRuntime] = None,
) -> ResolvedConfig:
    """Read the current backend options and build the provider.

    Options are read on every call so a settings change takes effect on the
    next request. The timeout never drops below five seconds.
    """
    options = (settings_provider or SettingsLlmProvider()).get_options()
    provider = get_provider(options, transport=transport, runtime=runtime)

    max_tokens = options.max_tokens
    if provider.name == "local":
        from .local_runtime import get_local_runtime

        max_tokens = (runtime or get_local_runtime()).max_tokens

    timeout = max(MIN_TIMEOUT_SECONDS, float(options.timeout_seconds or 0))
    logger.debug("Resolved LLM provider=%s model=%r timeout=%.1fs", provider.name, options.model, timeout)

    return ResolvedConfig(
        provider=provider,
        model=options.model.strip(),
        temperature=options.temperature,
        max_tokens=max_tokens,
        timeout_seconds=timeout,
    )
