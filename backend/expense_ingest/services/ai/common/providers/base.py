"""Abstract base for all inference backends."""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from expense_ingest.core.errors import LlmFailedError

if TYPE_CHECKING:
    import httpx

logger = logging.getLogger(__name__)

BODY_PREVIEW_CHARS = 400


@dataclass(frozen=True)
class ProviderResult:
    """Immutable result returned by every provider."""

    raw_text: str
    model: str
    provider: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    latency_ms: float = 0.0


class BaseProvider(abc.ABC):
    """Contract that every inference backend must implement."""

    name: str = "base"

    @abc.abstractmethod
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
        """Send the prompt pair and return a ``ProviderResult``."""


def chat_messages(system_prompt: str, user_prompt: str) -> list[dict[str, str]]:
    messages: list[dict[str, str]] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    messages.append({"role": "user", "content": user_prompt})
    return messages


def ensure_success(provider: str, resp: httpx.Response) -> dict[str, Any]:
    """Return the decoded JSON envelope or raise ``LlmFailedError``.

    The response body goes to the log only.
    """
    if resp.is_error:
        logger.warning(
            "%s returned HTTP %d: %s",
            provider,
            resp.status_code,
            resp.text[:BODY_PREVIEW_CHARS],
        )
        raise LlmFailedError(f"{provider} returned HTTP {resp.status_code}")
    try:
        data = resp.json()
    except ValueError as exc:
        raise LlmFailedError(f"{provider} returned a non-JSON envelope") from exc
    if not isinstance(data, dict):
        raise LlmFailedError(f"{provider} returned an unexpected envelope")
    return data


def require_content(provider: str, content: Any) -> str:
    if not isinstance(content, str) or not content.strip():
        raise LlmFailedError(f"{provider} returned an empty response")
    return content


def chat_completion_content(provider: str, data: dict[str, Any]) -> str:
    choices = data.get("choices")
    if not isinstance(choices, list):
        raise LlmFailedError(f"{provider} returned an invalid response")
    if not choices:
        raise LlmFailedError(f"{provider} returned an empty response")
    message = choices[0].get("message") if isinstance(choices[0], dict) else None
    if not isinstance(message, dict) or "content" not in message:
        raise LlmFailedError(f"{provider} returned an invalid response")
    return require_content(provider, message["content"])
