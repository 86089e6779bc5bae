"""
Unit tests for intent classification (agent/intent.py).
"""

import asyncio

import pytest

from vigil.agent.completion import CompletionError
from vigil.agent.intent import IntentClassifier, IntentEntities, IntentResult, IntentType
from vigil.config.settings import AgentConfig
from vigil.storage import ConversationTurn

from conftest import FakeCompletionProvider


def classifier(*replies, **config):
    provider = FakeCompletionProvider(*replies)
    return IntentClassifier(provider, AgentConfig(**config)), provider


class TestIntentClassifier:
    """Tests for IntentClassifier.classify."""

    @pytest.mark.asyncio
    async def test_tool_execution(self):
        intent_classifier, provider = classifier(
            {
                "type": "tool_execution",
                "confidence": 0.92,
                "entities": {"targets": ["192.168.1.10"], "tools": ["nmap"], "actions": ["scan"]},
            }
        )

        result = await intent_classifier.classify("scan 192.168.1.10")

        assert result.type is IntentType.TOOL_EXECUTION
        assert result.confidence == pytest.approx(0.92)
        assert result.entities.targets == ["192.168.1.10"]
        assert result.entities.domains == []
        assert not result.fallback

        _, options = provider.calls[0]
        assert options.json_mode
        assert options.temperature == pytest.approx(0.3)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("label", "expected"),
        [
            ("ragQuery", IntentType.RAG_QUERY),
            ("RAG_QUERY", IntentType.RAG_QUERY),
            ("ToolExecution", IntentType.TOOL_EXECUTION),
            ("casual-chat", IntentType.CASUAL_CHAT),
            ("planning", IntentType.PLANNING),
        ],
    )
    async def test_label_spellings(self, label, expected):
        intent_classifier, _ = classifier({"type": label, "confidence": 0.8})
        assert (await intent_classifier.classify("hi")).type is expected

    @pytest.mark.asyncio
    async def test_json_inside_prose(self):
        intent_classifier, _ = classifier('Sure! ```json\n{"type": "planning", "confidence": 0.7}\n```')
        result = await intent_classifier.classify("plan an assessment")
        assert result.type is IntentType.PLANNING

    @pytest.mark.asyncio
    async def test_confidence_clamped_and_entities_coerced(self):
        intent_classifier, _ = classifier(
            {"type": "rag_query", "confidence": 3, "entities": {"topics": "CVE-2024-1234", "targets": None}}
        )

        result = await intent_classifier.classify("what is CVE-2024-1234?")

        assert result.confidence == 1.0
        assert result.entities.topics == ["CVE-2024-1234"]
        assert result.entities.targets == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "reply",
        [
            CompletionError("service down"),
            ConnectionError("service unreachable"),
            RuntimeError("provider bug"),
            "no json here",
            {"type": "hack_the_planet", "confidence": 0.9},
            {"confidence": 0.9},
            '{"type": "planning", "confidence": ',
        ],
    )
    async def test_failures_fall_back_to_casual_chat(self, reply):
        """Test: every classifier failure yields casual_chat at zero confidence."""
        intent_classifier, _ = classifier(reply)

        result = await intent_classifier.classify("hello")

        assert result.type is IntentType.CASUAL_CHAT
        assert result.confidence == 0.0
        assert result.fallback

    @pytest.mark.asyncio
    async def test_timeout_falls_back(self):
        class SlowProvider(FakeCompletionProvider):
            async def complete(self, messages, options):
                await asyncio.sleep(5)
                return "{}"

        intent_classifier = IntentClassifier(SlowProvider(), AgentConfig(completion_timeout=0.05))

        result = await intent_classifier.classify("hello")

        assert result.fallback

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self):
        intent_classifier, _ = classifier(asyncio.CancelledError())

        with pytest.raises(asyncio.CancelledError):
            await intent_classifier.classify("hello")

    @pytest.mark.asyncio
    async def test_classification_is_repeatable(self):
        intent_classifier, _ = classifier({"type": "casual_chat", "confidence": 0.6})

        first = await intent_classifier.classify("how are you?")
        second = await intent_classifier.classify("how are you?")

        assert first == second

    @pytest.mark.asyncio
    async def test_recent_turns_in_context(self):
        """Test only the last history_turns turns are sent as context."""
        intent_classifier, provider = classifier({"type": "planning", "confidence": 0.5}, history_turns=2)
        turns = [
            ConversationTurn(role="user", content="first"),
            ConversationTurn(role="assistant", content="second"),
            ConversationTurn(role="user", content="third"),
        ]

        await intent_classifier.classify("now plan it", turns)

        messages, _ = provider.calls[0]
        content = messages[0]["content"]
        assert "first" not in content
        assert "assistant: second" in content
        assert "user: third" in content
        assert content.endswith("User message: now plan it")


class TestIntentResult:
    """Tests for IntentResult."""

    def test_casual_fallback(self):
        result = IntentResult.casual_fallback()
        assert result.to_dict() == {
            "type": "casual_chat",
            "confidence": 0.0,
            "entities": IntentEntities().model_dump(),
            "fallback": True,
        }
