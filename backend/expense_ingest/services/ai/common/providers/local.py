"""Provider adapter over the process-wide local runtime."""

from __future__ import annotations

import time

from ..local_runtime import LocalLlmRuntime
from .base import BaseProvider, ProviderResult


class LocalProvider(BaseProvider):
    name = "local"

    def __init__(self, runtime: LocalLlmRuntime) -> None:
        self._runtime = runtime

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        model: str = "",
        temperature: float = 0.2,
        max_tokens: int = 256,
        timeout_seconds: float = 30.0,
    ) -> ProviderResult:
        t0 = time.monotonic()
        text = await self._runtime.generate(
            system_prompt,
            user_prompt,
            max_tokens=max_tokens,
            temperature=temperature,
        )
        elapsed = (time.monotonic() - t0) * 1000
        model_name = model or (self._runtime.model_path.name if self._runtime.model_path else "")
        return ProviderResult(raw_text=text, model=model_name, provider=self.name, latency_ms=round(elapsed, 2))
