"""
Conversational layer: intent classification, tool-call extraction,
planning and the VigilAgent orchestrator.
"""

from vigil.agent.completion import (
    AnthropicCompletionProvider,
    CompletionError,
    CompletionOptions,
    CompletionProvider,
)
from vigil.agent.extraction import ToolCall, ToolCallExtractor
from vigil.agent.intent import IntentClassifier, IntentEntities, IntentResult, IntentType
from vigil.agent.orchestrator import (
    AgentResponse,
    ApprovalResponse,
    ExecuteToolResponse,
    PlanNotFoundError,
    RagAnswer,
    RagProvider,
    ToolCallSummary,
    VigilAgent,
    create_approval_gate,
)
from vigil.agent.planner import AgentPlan, PlanBuilder, PlanStatus, PlanStep, PlanStore, StepStatus

__all__ = [
    "AgentPlan",
    "AgentResponse",
    "AnthropicCompletionProvider",
    "ApprovalResponse",
    "CompletionError",
    "CompletionOptions",
    "CompletionProvider",
    "ExecuteToolResponse",
    "IntentClassifier",
    "IntentEntities",
    "IntentResult",
    "IntentType",
    "PlanBuilder",
    "PlanNotFoundError",
    "PlanStatus",
    "PlanStep",
    "PlanStore",
    "RagAnswer",
    "RagProvider",
    "StepStatus",
    "ToolCall",
    "ToolCallExtractor",
    "ToolCallSummary",
    "VigilAgent",
    "create_approval_gate",
]
