from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from cookbook_ingest.config import settings
from cookbook_ingest.llm_client import OpenRouterChat, _temperature_for_model


def fake_openai(create: AsyncMock) -> SimpleNamespace:
    return SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))


def completion(content: str | None, prompt_tokens: int = 12, completion_tokens: int = 7) -> SimpleNamespace:
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
    )


@pytest.mark.parametrize(
    ("model", "requested", "expected"),
    [
        ("openai/gpt-5-mini", 0.2, 1),
        ("openai/gpt-4o-mini", 0.2, 0.2),
        ("openai/gpt-4o-mini", None, 0),
    ],
)
def test_temperature_for_model(model, requested, expected):
    assert _temperature_for_model(model, requested) == expected


@pytest.mark.asyncio
async def test_complete_uses_phase_model_and_tracks_usage(monkeypatch):
    monkeypatch.setattr(settings, "default_model", "openai/gpt-4o-mini")
    monkeypatch.setattr(settings, "llm_phase_models", {"Ingest.Normalize": "anthropic/claude-sonnet"})
    create = AsyncMock(return_value=completion("{}"))
    chat = OpenRouterChat(fake_openai(create), max_tokens=512)

    text = await chat.complete("recipe json", system="be terse", phase="Ingest.Normalize", temperature=0.3)

    assert text == "{}"
    kwargs = create.await_args.kwargs
    assert kwargs["model"] == "anthropic/claude-sonnet"
    assert kwargs["max_tokens"] == 512
    assert kwargs["temperature"] == 0.3
    assert kwargs["messages"] == [
        {"role": "system", "content": "be terse"},
        {"role": "user", "content": "recipe json"},
    ]
    assert chat.calls == 1
    assert (chat.usage.input_tokens, chat.usage.output_tokens) == (12, 7)


@pytest.mark.asyncio
async def test_complete_returns_empty_string_without_content():
    chat = OpenRouterChat(fake_openai(AsyncMock(return_value=SimpleNamespace(choices=[], usage=None))))
    assert await chat.complete("hi") == ""

    chat = OpenRouterChat(fake_openai(AsyncMock(return_value=completion(None))))
    assert await chat.complete("hi", phase="Ingest.Extract") == ""


@pytest.mark.asyncio
async def test_complete_reraises_provider_errors():
    chat = OpenRouterChat(fake_openai(AsyncMock(side_effect=RuntimeError("gateway down"))))

    with pytest.raises(RuntimeError, match="gateway down"):
        await chat.complete("hi", phase="Ingest.Extract")
    assert chat.calls == 1
