"""In-process GGUF model runtime backed by llama-cpp-python.

One instance per process. The model is loaded on first use and every
generation holds the same lock, because a loaded llama.cpp context must not
be driven from two threads at once. Token generation streams in a worker
thread so the event loop stays free; a cancelled caller stops the stream at
the next token.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

from expense_ingest.core.config import get_settings
from expense_ingest.core.errors import LlmFailedError, NotConfiguredError

logger = logging.getLogger(__name__)

DEFAULT_MODEL_NAME = "Qwen2.5 7B Instruct"
ANTI_PROMPTS = ["<|user|>", "<|system|>", "</s>"]

ModelLoader = Callable[[str, int, int], Any]


def build_prompt(system_prompt: str, user_prompt: str) -> str:
    return f"<|system|>\n{system_prompt}\n<|user|>\n{user_prompt}\n<|assistant|>\n"


def _load_llama(model_path: str, context_size: int, gpu_layers: int) -> Any:
    try:
        from llama_cpp import Llama
    except ImportError as exc:
        raise NotConfiguredError(
            "Local inference needs the 'local' extra (llama-cpp-python)"
        ) from exc

    logger.info("Loading local model %s (n_ctx=%d, gpu_layers=%d)", model_path, context_size, gpu_layers)
    return Llama(model_path=model_path, n_ctx=context_size, n_gpu_layers=gpu_layers, verbose=False)


class LocalLlmRuntime:
    def __init__(
        self,
        model_path: str | Path,
        *,
        context_size: int = 2048,
        max_tokens: int = 256,
        gpu_layers: int = 0,
        loader: Optional[ModelLoader] = None,
    ) -> None:
        self.model_path = Path(model_path) if model_path else None
        self.context_size = context_size
        self.max_tokens = max_tokens
        self.gpu_layers = gpu_layers
        self._loader = loader or _load_llama
        self._lock = threading.Lock()
        self._model: Any = None

    @classmethod
    def from_settings(cls) -> LocalLlmRuntime:
        settings = get_settings()
        return cls(
            settings.local_model_path,
            context_size=settings.local_model_context_size,
            max_tokens=settings.local_model_max_tokens,
            gpu_layers=settings.local_model_gpu_layers,
        )

    def is_model_available(self) -> bool:
        return self.model_path is not None and self.model_path.is_file()

    @property
    def is_loaded(self) -> bool:
        return self._model is not None

    def _ensure_loaded(self) -> Any:
        # Caller holds self._lock.
        if self._model is None:
            if not self.is_model_available():
                raise NotConfiguredError("Local model file is not downloaded")
            self._model = self._loader(str(self.model_path), self.context_size, self.gpu_layers)
        return self._model

    def _generate_sync(self, prompt: str, max_tokens: int, temperature: float, cancel: threading.Event) -> str:
        pieces: list[str] = []
        with self._lock:
            model = self._ensure_loaded()
            stream = model.create_completion(
                prompt,
                max_tokens=max_tokens,
                temperature=temperature,
                stop=ANTI_PROMPTS,
                stream=True,
            )
            for chunk in stream:
                if cancel.is_set():
                    logger.info("Local generation cancelled after %d chunks", len(pieces))
                    break
                pieces.append(chunk["choices"][0].get("text") or "")
        return "".join(pieces)

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        max_tokens: Optional[int] = None,
        temperature: float = 0.2,
    ) -> str:
        if not self.is_model_available():
            raise NotConfiguredError("Local model file is not downloaded")

        cancel = threading.Event()
        prompt = build_prompt(system_prompt, user_prompt)
        try:
            text = await asyncio.to_thread(
                self._generate_sync,
                prompt,
                max_tokens or self.max_tokens,
                temperature,
                cancel,
            )
        finally:
            cancel.set()

        text = text.strip()
        if not text:
            raise LlmFailedError("Local model returned an empty response")
        return text


@lru_cache
def get_local_runtime() -> LocalLlmRuntime:
    return LocalLlmRuntime.from_settings()
