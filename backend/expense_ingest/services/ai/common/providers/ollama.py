"""Ollama chat provider."""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Optional

from expense_ingest.core.errors import LlmFailedError

from .base import BaseProvider, ProviderResult, chat_messages, ensure_success, require_content

if TYPE_CHECKING:
    import httpx

logger = logging.getLogger(__name__)


class OllamaProvider(BaseProvider):
    name = "ollama"

    def __init__(self, endpoint: str, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self._endpoint = endpoint
        self._transport = transport

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        model: str = "",
        temperature: float = 0.2,
        max_tokens: int = 512,
        timeout_seconds: float = 30.0,
    ) -> ProviderResult:
        import httpx

        t0 = time.monotonic()
        payload = {
            "model": model,
            "messages": chat_messages(system_prompt, user_prompt),
            "stream": False,
            "options": {"temperature": temperature, "num_predict": max_tokens},
        }

        async with httpx.AsyncClient(timeout=timeout_seconds, transport=self._transport) as client:
            resp = await client.post(self._endpoint, json=payload)
            data = ensure_success(self.name, resp)

        message = data.get("message")
        if not isinstance(message, dict) or "content" not in message:
            raise LlmFailedError("ollama returned an invalid response")
        text = require_content(self.name, message["content"])
        elapsed = (time.monotonic() - t0) * 1000

        return ProviderResult(
            raw_text=text,
            model=str(data.get("model") or model),
            provider=self.name,
            prompt_tokens=data.get("prompt_eval_count", 0),
            completion_tokens=data.get("eval_count", 0),
            latency_ms=round(elapsed, 2),
        )
