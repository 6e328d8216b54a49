"""OpenAI-compatible chat completions provider."""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Optional

from .base import BaseProvider, ProviderResult, chat_completion_content, chat_messages, ensure_success

if TYPE_CHECKING:
    import httpx

logger = logging.getLogger(__name__)


class OpenAIProvider(BaseProvider):
    name = "openai"

    def __init__(
        self,
        endpoint: str,
        api_key: str,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._endpoint = endpoint
        self._api_key = api_key
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
            "temperature": temperature,
            "max_tokens": max_tokens,
        }

        async with httpx.AsyncClient(timeout=timeout_seconds, transport=self._transport) as client:
            resp = await client.post(
                self._endpoint,
                headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "Content-Type": "application/json",
                },
                json=payload,
            )
            data = ensure_success(self.name, resp)

        text = chat_completion_content(self.name, data)
        elapsed = (time.monotonic() - t0) * 1000
        usage = data.get("usage") or {}

        return ProviderResult(
            raw_text=text,
            model=str(data.get("model") or model),
            provider=self.name,
            prompt_tokens=usage.get("prompt_tokens", 0),
            completion_tokens=usage.get("completion_tokens", 0),
            latency_ms=round(elapsed, 2),
        )
