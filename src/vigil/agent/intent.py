"""
Intent classification.

The completion service labels each message; its JSON reply is validated
with pydantic. Classification is advisory, so any failure (service
error, timeout, malformed payload) yields ``casual_chat`` with zero
confidence instead of an exception.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Sequence

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from vigil.agent.completion import CompletionError, CompletionOptions, extract_json_object
from vigil.agent.prompts import INTENT_CLASSIFIER_PROMPT, build_classifier_message

if TYPE_CHECKING:
    from vigil.agent.completion import CompletionProvider
    from vigil.config.settings import AgentConfig
    from vigil.storage import ConversationTurn

logger = structlog.get_logger(__name__)


class IntentType(str, Enum):
    """Purpose of a user message."""

    RAG_QUERY = "rag_query"
    TOOL_EXECUTION = "tool_execution"
    PLANNING = "planning"
    CASUAL_CHAT = "casual_chat"


def _snake(value: str) -> str:
    return re.sub(r"(?<=[a-z0-9])(?=[A-Z])", "_", value.strip()).lower().replace("-", "_").replace(" ", "_")


def _string_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if isinstance(v, (str, int, float)) and str(v).strip()]
    raise ValueError("expected a list of strings")


class IntentEntities(BaseModel):
    """Entities the classifier extracted from a message."""

    model_config = ConfigDict(extra="ignore")

    targets: list[str] = Field(default_factory=list)
    domains: list[str] = Field(default_factory=list)
    tools: list[str] = Field(default_factory=list)
    topics: list[str] = Field(default_factory=list)
    actions: list[str] = Field(default_factory=list)

    @field_validator("targets", "domains", "tools", "topics", "actions", mode="before")
    @classmethod
    def coerce_list(cls, v: Any) -> list[str]:
        return _string_list(v)


class IntentPayload(BaseModel):
    """Shape of the classifier's JSON reply."""

    model_config = ConfigDict(extra="ignore")

    type: IntentType
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    entities: IntentEntities = Field(default_factory=IntentEntities)

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, v: Any) -> Any:
        return _snake(v) if isinstance(v, str) else v

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, v: Any) -> Any:
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return min(1.0, max(0.0, float(v)))
        return v

    @field_validator("entities", mode="before")
    @classmethod
    def default_entities(cls, v: Any) -> Any:
        return {} if v is None else v


@dataclass
class IntentResult:
    """Classification of one message."""

    type: IntentType
    confidence: float
    entities: IntentEntities = field(default_factory=IntentEntities)
    fallback: bool = False

    @classmethod
    def casual_fallback(cls) -> IntentResult:
        return cls(type=IntentType.CASUAL_CHAT, confidence=0.0, fallback=True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "confidence": self.confidence,
            "entities": self.entities.model_dump(),
            "fallback": self.fallback,
        }


class IntentClassifier:
    """Labels messages with an IntentType using the completion service."""

    def __init__(self, completion: CompletionProvider, config: AgentConfig) -> None:
        self.completion = completion
        self.config = config

    def _context(self, recent_turns: Sequence[ConversationTurn]) -> str:
        if self.config.history_turns <= 0:
            return ""
        turns = list(recent_turns)[-self.config.history_turns :]
        return "\n".join(f"{t.role}: {t.content}" for t in turns)

    async def classify(self, message: str, recent_turns: Sequence[ConversationTurn] = ()) -> IntentResult:
        """
        Classify a message.

        Args:
            message: The user's message.
            recent_turns: Earlier turns of the conversation, oldest first.

        Returns:
            The intent. Never raises on service or payload problems.
        """
        options = CompletionOptions(
            system_prompt=INTENT_CLASSIFIER_PROMPT,
            json_mode=True,
            temperature=self.config.classifier_temperature,
            max_tokens=self.config.classifier_max_tokens,
        )
        request = build_classifier_message(message, self._context(recent_turns))

        try:
            raw = await asyncio.wait_for(
                self.completion.complete([{"role": "user", "content": request}], options),
                timeout=self.config.completion_timeout,
            )
        except TimeoutError:
            logger.warning("intent_classification_timeout", timeout=self.config.completion_timeout)
            return IntentResult.casual_fallback()
        except CompletionError as e:
            logger.warning("intent_classification_failed", error=str(e))
            return IntentResult.casual_fallback()
        except Exception as e:
            logger.warning(
                "intent_classification_failed", error=str(e), error_type=type(e).__name__
            )
            return IntentResult.casual_fallback()

        try:
            payload = IntentPayload.model_validate(extract_json_object(raw))
        except (ValueError, ValidationError) as e:
            logger.warning("intent_payload_invalid", error=str(e))
            return IntentResult.casual_fallback()

        logger.debug("intent_classified", type=payload.type.value, confidence=payload.confidence)
        return IntentResult(type=payload.type, confidence=payload.confidence, entities=payload.entities)
