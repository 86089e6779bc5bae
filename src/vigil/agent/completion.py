"""
Text-completion capability for Vigil.

The classifier, planner and chat handlers depend on CompletionProvider,
not on a vendor SDK. AnthropicCompletionProvider is the shipped
implementation; tests inject scripted fakes.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Literal, TypedDict

import anthropic
import httpx
import structlog
from anthropic import AsyncAnthropic
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

if TYPE_CHECKING:
    from anthropic.types import Message

    from vigil.config.settings import VigilSettings

logger = structlog.get_logger(__name__)

JSON_MODE_INSTRUCTION = (
    "Respond with a single JSON object and nothing else. "
    "Do not wrap it in markdown code fences."
)

RETRYABLE_ERRORS = (
    anthropic.APIConnectionError,
    anthropic.RateLimitError,
    anthropic.InternalServerError,
)


class ChatMessage(TypedDict):
    role: Literal["user", "assistant"]
    content: str


@dataclass
class CompletionOptions:
    """Per-call completion settings."""

    system_prompt: str | None = None
    json_mode: bool = False
    temperature: float = 0.7
    max_tokens: int = 1024


class CompletionError(Exception):
    """Raised when the completion service cannot produce a response."""

    pass


class CompletionProvider(ABC):
    """Produces text from a list of chat messages."""

    @abstractmethod
    async def complete(self, messages: list[ChatMessage], options: CompletionOptions) -> str:
        """
        Return the assistant's reply.

        In JSON mode the reply is expected to be one JSON object; callers
        still validate it.

        Raises:
            CompletionError: If no reply could be produced.
        """
        ...


@dataclass
class TokenUsage:
    """Tracks token usage for a provider."""

    input_tokens: int = 0
    output_tokens: int = 0
    requests: int = 0
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def track(self, input_tokens: int, output_tokens: int) -> None:
        self.input_tokens += input_tokens
        self.output_tokens += output_tokens
        self.requests += 1


def normalize_messages(messages: list[ChatMessage]) -> list[dict[str, Any]]:
    """
    Shape messages for the Messages API.

    The conversation must start with a user turn and alternate roles;
    consecutive turns of the same role are merged.
    """
    normalized: list[dict[str, Any]] = []
    for message in messages:
        role = message["role"]
        content = message["content"]
        if not content:
            continue
        if not normalized and role != "user":
            continue
        if normalized and normalized[-1]["role"] == role:
            normalized[-1]["content"] += "\n\n" + content
        else:
            normalized.append({"role": role, "content": content})
    return normalized


def extract_json_object(text: str) -> dict[str, Any]:
    """
    Parse the first JSON object in a completion.

    Tolerates surrounding prose and markdown fences.

    Raises:
        ValueError: If no JSON object can be decoded.
    """
    start = text.find("{")
    if start == -1:
        raise ValueError("no JSON object in completion")
    decoder = json.JSONDecoder()
    obj, _ = decoder.raw_decode(text[start:])
    if not isinstance(obj, dict):
        raise ValueError("completion JSON is not an object")
    return obj


class AnthropicCompletionProvider(CompletionProvider):
    """
    Completion provider backed by the Anthropic Messages API.

    JSON mode adds an instruction to the system prompt and prefills the
    assistant turn with ``{`` so the reply starts inside the object.
    Connection errors, rate limits and server errors are retried with
    exponential backoff.
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "claude-sonnet-4-20250514",
        max_retries: int = 3,
        timeout: float = 60.0,
    ) -> None:
        self._client = AsyncAnthropic(
            api_key=api_key,
            max_retries=0,
            timeout=httpx.Timeout(timeout, connect=10.0),
        )
        self._model = model
        self._max_retries = max_retries
        self._usage = TokenUsage()

        logger.info(
            "completion_provider_initialized",
            provider="anthropic",
            model=model,
            timeout=timeout,
            max_retries=max_retries,
        )

    @classmethod
    def from_settings(cls, settings: VigilSettings) -> AnthropicCompletionProvider:
        return cls(
            api_key=settings.get_api_key(),
            model=settings.model.name,
            max_retries=settings.model.max_retries,
            timeout=settings.model.timeout,
        )

    @property
    def usage(self) -> TokenUsage:
        return self._usage

    async def _create(self, **kwargs: Any) -> Message:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            stop=stop_after_attempt(self._max_retries),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.debug("completion_retry", attempt=attempt.retry_state.attempt_number)
                return await self._client.messages.create(**kwargs)
        raise CompletionError("completion retries exhausted")

    async def complete(self, messages: list[ChatMessage], options: CompletionOptions) -> str:
        api_messages = normalize_messages(messages)
        if not api_messages:
            raise CompletionError("no user message to complete")

        system = options.system_prompt or ""
        prefill = ""
        if options.json_mode:
            system = f"{system}\n\n{JSON_MODE_INSTRUCTION}".strip()
            if api_messages[-1]["role"] == "user":
                prefill = "{"
                api_messages.append({"role": "assistant", "content": prefill})

        kwargs: dict[str, Any] = {
            "model": self._model,
            "max_tokens": options.max_tokens,
            "messages": api_messages,
            "temperature": options.temperature,
        }
        if system:
            kwargs["system"] = system

        try:
            response = await self._create(**kwargs)
        except anthropic.APIError as e:
            logger.warning("completion_failed", error=str(e), error_type=type(e).__name__)
            raise CompletionError(str(e)) from e

        self._usage.track(response.usage.input_tokens, response.usage.output_tokens)
        text = "".join(block.text for block in response.content if block.type == "text")

        logger.debug(
            "completion_created",
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            stop_reason=response.stop_reason,
        )

        return prefill + text
