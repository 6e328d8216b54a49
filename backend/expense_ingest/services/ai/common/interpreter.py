"""LLM JSON interpreter: one prompt pair in, recovered JSON text out."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Optional

from expense_ingest.core.config import LlmSettingsProvider
from expense_ingest.core.errors import IngestError, LlmFailedError

from .json_tools import normalize_json
from .router import resolve

if TYPE_CHECKING:
    import httpx

    from .local_runtime import LocalLlmRuntime

logger = logging.getLogger(__name__)


class LlmJsonInterpreter:
    def __init__(
        self,
        settings_provider: Optional[LlmSettingsProvider] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        runtime: Optional[LocalLlmRuntime] = None,
    ) -> None:
        self._settings_provider = settings_provider
        self._transport = transport
        self._runtime = runtime

    async def generate_json(self, system_prompt: str, user_prompt: str) -> str:
        """Run the prompt pair and return the recovered, repaired JSON text.

        Wiring problems surface as ``NotConfigured``/``NotSupported``. A
        timeout, transport error or bad envelope becomes ``LlmFailed``.
        Cancellation of the calling task propagates unchanged.
        """
        config = resolve(self._settings_provider, transport=self._transport, runtime=self._runtime)

        try:
            result = await asyncio.wait_for(
                config.provider.generate(
                    system_prompt,
                    user_prompt,
                    model=config.model,
                    temperature=config.temperature,
                    max_tokens=config.max_tokens,
                    timeout_seconds=config.timeout_seconds,
                ),
                timeout=config.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            logger.warning("LLM request to %s timed out after %.1fs", config.provider.name, config.timeout_seconds)
            raise LlmFailedError("LLM request timed out") from exc
        except IngestError:
            raise
        except Exception as exc:
            logger.exception("LLM request to %s failed", config.provider.name)
            raise LlmFailedError("LLM request failed") from exc

        logger.info(
            "LLM %s:%s answered in %.0fms (%d/%d tokens)",
            result.provider,
            result.model,
            result.latency_ms,
            result.prompt_tokens,
            result.completion_tokens,
        )
        return normalize_json(result.raw_text)
