"""OpenRouter chat client used by every LLM-backed ingest phase."""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any

from cookbook_ingest.config import settings
from cookbook_ingest.services.logger import log_llm_call


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0


def _temperature_for_model(model: str, requested: float | None) -> float:
    # Some OpenAI GPT-5-compatible gateways reject anything but temperature=1.
    lowered = (model or "").lower()
    if "gpt-5" in lowered:
        return 1
    return 0 if requested is None else requested


def _usage(response: Any) -> Usage:
    usage = getattr(response, "usage", None)
    return Usage(
        input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
        output_tokens=getattr(usage, "completion_tokens", 0) or 0,
    )


class OpenRouterChat:
    """Single-turn chat completions with the model picked per phase."""

    def __init__(self, openai_client: Any, *, max_tokens: int | None = None):
        self._client = openai_client
        self.max_tokens = max(int(max_tokens if max_tokens is not None else settings.llm_max_tokens), 1)
        self.calls = 0
        self.usage = Usage()

    async def complete(
        self,
        prompt: str,
        *,
        system: str = "",
        phase: str = "",
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> str:
        model = settings.model_for_phase(phase)
        messages: list[dict[str, Any]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        started = time.monotonic()
        self.calls += 1
        try:
            response = await self._client.chat.completions.create(
                model=model,
                messages=messages,
                max_tokens=max_tokens or self.max_tokens,
                temperature=_temperature_for_model(model, temperature),
            )
        except Exception as exc:
            log_llm_call(
                model=model,
                caller=phase or "unknown",
                duration_ms=int((time.monotonic() - started) * 1000),
                status="error",
                error=str(exc),
            )
            raise

        usage = _usage(response)
        self.usage.input_tokens += usage.input_tokens
        self.usage.output_tokens += usage.output_tokens
        log_llm_call(
            model=model,
            caller=phase or "unknown",
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

        choices = getattr(response, "choices", None) or []
        if not choices:
            return ""
        return getattr(choices[0].message, "content", None) or ""


def get_client() -> OpenRouterChat:
    """Get OpenRouter chat via the OpenAI-compatible SDK."""
    from openai import AsyncOpenAI

    base_url = settings.openrouter_base_url.strip() or "https://openrouter.ai/api/v1"
    openai_client = AsyncOpenAI(
        api_key=settings.openrouter_api_key,
        base_url=base_url,
    )
    return OpenRouterChat(openai_client)


_client: OpenRouterChat | None = None


def client() -> OpenRouterChat:
    """Get or create the LLM client."""
    global _client
    if _client is None:
        _client = get_client()
    return _client
