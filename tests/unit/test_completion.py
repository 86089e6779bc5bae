"""
Unit tests for the completion capability (agent/completion.py).

The Anthropic client is replaced with a mock; no request leaves the process.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import anthropic
import httpx
import pytest

from vigil.agent.completion import (
    JSON_MODE_INSTRUCTION,
    AnthropicCompletionProvider,
    CompletionError,
    CompletionOptions,
    extract_json_object,
    normalize_messages,
)


def fake_message(text):
    return SimpleNamespace(
        content=[SimpleNamespace(type="text", text=text)],
        usage=SimpleNamespace(input_tokens=12, output_tokens=7),
        stop_reason="end_turn",
    )


@pytest.fixture
def provider():
    provider = AnthropicCompletionProvider(api_key="test-key", model="claude-test", max_retries=1)
    provider._client = MagicMock()
    provider._client.messages.create = AsyncMock(return_value=fake_message("Hello!"))
    return provider


class TestNormalizeMessages:
    """Tests for normalize_messages."""

    def test_leading_assistant_turns_dropped(self):
        messages = [
            {"role": "assistant", "content": "Welcome"},
            {"role": "user", "content": "hi"},
        ]
        assert normalize_messages(messages) == [{"role": "user", "content": "hi"}]

    def test_same_role_merged(self):
        messages = [
            {"role": "user", "content": "one"},
            {"role": "user", "content": "two"},
            {"role": "assistant", "content": "ok"},
            {"role": "assistant", "content": ""},
        ]
        assert normalize_messages(messages) == [
            {"role": "user", "content": "one\n\ntwo"},
            {"role": "assistant", "content": "ok"},
        ]


class TestExtractJsonObject:
    """Tests for extract_json_object."""

    def test_plain(self):
        assert extract_json_object('{"a": 1}') == {"a": 1}

    def test_fenced_with_prose(self):
        assert extract_json_object('Here you go:\n```json\n{"a": {"b": 2}}\n```\nDone.') == {"a": {"b": 2}}

    @pytest.mark.parametrize("text", ["", "no braces", "{broken", "[1, 2]"])
    def test_invalid(self, text):
        with pytest.raises(ValueError):
            extract_json_object(text)


class TestAnthropicCompletionProvider:
    """Tests for AnthropicCompletionProvider.complete."""

    @pytest.mark.asyncio
    async def test_plain_completion(self, provider):
        text = await provider.complete(
            [{"role": "user", "content": "hi"}],
            CompletionOptions(system_prompt="Be brief.", temperature=0.2, max_tokens=50),
        )

        assert text == "Hello!"
        kwargs = provider._client.messages.create.await_args.kwargs
        assert kwargs["model"] == "claude-test"
        assert kwargs["system"] == "Be brief."
        assert kwargs["temperature"] == 0.2
        assert kwargs["max_tokens"] == 50
        assert kwargs["messages"] == [{"role": "user", "content": "hi"}]
        assert provider.usage.total_tokens == 19
        assert provider.usage.requests == 1

    @pytest.mark.asyncio
    async def test_json_mode_prefills_brace(self, provider):
        """Test JSON mode adds the instruction and the reply starts inside the object."""
        provider._client.messages.create.return_value = fake_message('"type": "planning"}')

        text = await provider.complete(
            [{"role": "user", "content": "classify"}],
            CompletionOptions(system_prompt="Classify.", json_mode=True),
        )

        assert extract_json_object(text) == {"type": "planning"}
        kwargs = provider._client.messages.create.await_args.kwargs
        assert kwargs["messages"][-1] == {"role": "assistant", "content": "{"}
        assert kwargs["system"].endswith(JSON_MODE_INSTRUCTION)

    @pytest.mark.asyncio
    async def test_no_user_message(self, provider):
        with pytest.raises(CompletionError):
            await provider.complete([{"role": "assistant", "content": "hi"}], CompletionOptions())
        provider._client.messages.create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_api_error_wrapped(self, provider):
        request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        provider._client.messages.create.side_effect = anthropic.APIConnectionError(request=request)

        with pytest.raises(CompletionError):
            await provider.complete([{"role": "user", "content": "hi"}], CompletionOptions())
