"""
Vigil agent orchestrator.

Routes each message by intent: knowledge-base questions to the RAG
capability, tool requests through the approval gate, planning requests
to the PlanBuilder, and everything else to casual chat.

Safety checks fail closed: a rejected tool call is reported with its
reason and never executed. Assistance fails open: classification,
planning, RAG and chat fall back to fixed replies when their services
misbehave.
"""

from __future__ import annotations

import asyncio
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Mapping

import structlog

from vigil.agent.completion import AnthropicCompletionProvider, CompletionOptions
from vigil.agent.extraction import ToolCallExtractor
from vigil.agent.intent import IntentClassifier, IntentResult, IntentType
from vigil.agent.planner import AgentPlan, PlanBuilder, PlanStatus, PlanStep, PlanStore, StepStatus
from vigil.agent.prompts import CHAT_PROMPT
from vigil.core.approval import ApprovalGate
from vigil.core.ledger import InMemoryToolRunStore, ToolRun, ToolRunStatus
from vigil.core.risk import RiskAssessor, RiskLevel
from vigil.core.scope import PolicyViolation, TargetPolicy
from vigil.storage import ConversationTurn, InMemoryConversationStore
from vigil.tools.registry import create_default_registry

if TYPE_CHECKING:
    from vigil.agent.completion import ChatMessage, CompletionProvider
    from vigil.agent.extraction import ToolCall
    from vigil.config.settings import AgentConfig, VigilSettings
    from vigil.core.ledger import ToolRunStore
    from vigil.core.runner import CommandRunner
    from vigil.storage import ConversationStore

logger = structlog.get_logger(__name__)

RAG_FALLBACK = (
    "I couldn't retrieve relevant information from your knowledge base. "
    "Please try rephrasing your question."
)
NO_TOOL_CALLS_REPLY = (
    "I understand you want to use security tools, but I couldn't identify "
    "the specific tool and parameters. Could you be more specific?"
)
PLANNING_FALLBACK = (
    "I had trouble creating a plan for your request. "
    "Could you provide more details about what you'd like to accomplish?"
)
CHAT_FALLBACK = "Hello! I'm here to help with your cybersecurity needs. What can I assist you with today?"

REJECTED = "rejected"


class PlanNotFoundError(LookupError):
    """Raised when a session has no plan to advance."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"No plan for session {session_id}")


@dataclass
class RagAnswer:
    answer: str
    sources: list[str] = field(default_factory=list)


class RagProvider(ABC):
    """Answers questions from the user's knowledge base."""

    @abstractmethod
    async def query(self, text: str, top_k: int) -> RagAnswer:
        ...


@dataclass
class ToolCallSummary:
    """
    A tool call as shown to the user.

    ``status`` is a ToolRunStatus value, or ``rejected`` when the call was
    refused before any run was recorded.
    """

    tool_name: str
    arguments: dict[str, Any]
    risk_level: RiskLevel
    status: str
    requires_approval: bool
    tool_run_id: str | None = None
    result: dict[str, Any] | None = None
    error: str | None = None
    description: str = ""

    @classmethod
    def from_run(cls, run: ToolRun, description: str = "") -> ToolCallSummary:
        return cls(
            tool_name=run.tool_name,
            arguments=dict(run.arguments),
            risk_level=run.risk_level,
            status=run.status.value,
            requires_approval=run.approval_required,
            tool_run_id=run.id,
            result=run.result,
            error=run.error_message,
            description=description,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool_name": self.tool_name,
            "arguments": self.arguments,
            "risk_level": self.risk_level.value,
            "status": self.status,
            "requires_approval": self.requires_approval,
            "tool_run_id": self.tool_run_id,
            "result": self.result,
            "error": self.error,
            "description": self.description,
        }


@dataclass
class AgentResponse:
    """Reply to one user message."""

    content: str
    tool_calls: list[ToolCallSummary] = field(default_factory=list)
    plan: AgentPlan | None = None
    rag_used: bool = False
    sources: list[str] = field(default_factory=list)
    intent: IntentResult | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "content": self.content,
            "tool_calls": [c.to_dict() for c in self.tool_calls],
            "plan": self.plan.to_dict() if self.plan else None,
            "rag_used": self.rag_used,
            "sources": list(self.sources),
            "intent": self.intent.to_dict() if self.intent else None,
        }


@dataclass
class ExecuteToolResponse:
    tool_run: ToolRun
    result: dict[str, Any] | None
    requires_approval: bool


@dataclass
class ApprovalResponse:
    tool_run: ToolRun
    result: dict[str, Any] | None


def describe_tool_call(tool_name: str, arguments: Mapping[str, Any]) -> str:
    """One-line description of a tool call."""
    if tool_name == "nmap":
        text = f"Scan {arguments.get('target')} using {arguments.get('scan_type', 'tcp')} scan"
        if arguments.get("ports"):
            text += f" on ports {arguments['ports']}"
        return text
    if tool_name == "domain_intel":
        return f"Gather intelligence on domain {arguments.get('domain')}"
    if tool_name == "dns_lookup":
        return f"Look up {arguments.get('record_type', 'A')} records for {arguments.get('domain')}"
    if tool_name == "whois":
        return f"Look up WHOIS registration for {arguments.get('domain')}"
    if tool_name == "subdomain_enum":
        return f"Enumerate subdomains of {arguments.get('domain')}"
    return f"Execute {tool_name} with specified parameters"


def describe_tool_calls(summaries: list[ToolCallSummary]) -> str:
    lines = ["I'll help you with the following security operations:", ""]
    for index, summary in enumerate(summaries, start=1):
        description = summary.description or describe_tool_call(summary.tool_name, summary.arguments)
        lines.append(
            f"{index}. **{summary.tool_name.upper()}**: {description} "
            f"(Risk: {summary.risk_level.value}) [{summary.status}]"
        )
        if summary.status == REJECTED:
            lines.append(f"   Rejected: {summary.error}")
        elif summary.status == ToolRunStatus.PENDING.value:
            lines.append(f"   This operation requires your approval before execution (run {summary.tool_run_id}).")
        elif summary.status == ToolRunStatus.FAILED.value:
            lines.append(f"   Failed: {summary.error}")

    if any(s.status == ToolRunStatus.PENDING.value for s in summaries):
        lines.extend(["", "Approve the pending operations to run them."])
    return "\n".join(lines)


_STEP_MARKERS = {
    StepStatus.PENDING: "[ ]",
    StepStatus.EXECUTING: "[~]",
    StepStatus.COMPLETED: "[x]",
    StepStatus.FAILED: "[!]",
    StepStatus.SKIPPED: "[-]",
}


def describe_plan(plan: AgentPlan) -> str:
    lines = [
        f"## Planning: {plan.goal}",
        "",
        f"**Risk Assessment**: {plan.risk_assessment.value.upper()}",
        "",
        "**Planned Steps**:",
    ]
    for index, step in enumerate(plan.steps, start=1):
        line = f"{index}. {_STEP_MARKERS[step.status]} {step.description}"
        if step.requires_approval:
            line += " (Approval Required)"
        line += f" [{step.risk_level.value.upper()} RISK]"
        lines.append(line)
    lines.extend(["", "Shall I proceed with this plan?"])
    return "\n".join(lines)


def create_approval_gate(
    settings: VigilSettings,
    store: ToolRunStore | None = None,
    runner: CommandRunner | None = None,
) -> ApprovalGate:
    """Wire the registry, risk assessor and target policy from settings."""
    target_policy = TargetPolicy.from_config(settings.scope)
    registry = create_default_registry(settings, runner=runner, target_policy=target_policy)
    assessor = RiskAssessor(settings.risk, target_policy)
    return ApprovalGate(registry, store or InMemoryToolRunStore(), assessor, target_policy)


class VigilAgent:
    """
    Conversational entry point.

    Args:
        gate: Approval gate every tool call passes through.
        completion: Completion capability for classification, planning and chat.
        config: Agent settings.
        conversations: Conversation history; in memory when omitted.
        rag: Knowledge-base capability; RAG questions get a fallback reply without it.
        plans: Per-session plans; in memory when omitted.
    """

    def __init__(
        self,
        gate: ApprovalGate,
        completion: CompletionProvider,
        config: AgentConfig,
        conversations: ConversationStore | None = None,
        rag: RagProvider | None = None,
        plans: PlanStore | None = None,
        extractor: ToolCallExtractor | None = None,
    ) -> None:
        self.gate = gate
        self.completion = completion
        self.config = config
        self.conversations = conversations or InMemoryConversationStore()
        self.rag = rag
        self.plans = plans or PlanStore()
        self.extractor = extractor or ToolCallExtractor()
        self.classifier = IntentClassifier(completion, config)
        self.planner = PlanBuilder(completion, gate.registry, gate.assessor, config)

    @classmethod
    def from_settings(
        cls,
        settings: VigilSettings,
        completion: CompletionProvider | None = None,
        store: ToolRunStore | None = None,
        runner: CommandRunner | None = None,
        rag: RagProvider | None = None,
    ) -> VigilAgent:
        gate = create_approval_gate(settings, store=store, runner=runner)
        completion = completion or AnthropicCompletionProvider.from_settings(settings)
        return cls(gate, completion, settings.agent, rag=rag)

    async def process_message(
        self,
        message: str,
        session_id: str,
        user_id: str,
        voice_input: bool = False,
    ) -> AgentResponse:
        """
        Handle one user message.

        Raises:
            ValueError: If the message is empty.
        """
        if not message or not message.strip():
            raise ValueError("message must not be empty")

        message_id = uuid.uuid4().hex
        history = await self.conversations.recent_turns(session_id, self.config.history_turns)
        await self.conversations.add_turn(
            session_id,
            ConversationTurn(
                role="user",
                content=message,
                metadata={"message_id": message_id, "user_id": user_id, "voice_input": voice_input},
            ),
        )

        intent = await self.classifier.classify(message, history)
        logger.info(
            "message_classified",
            session_id=session_id,
            intent=intent.type.value,
            confidence=intent.confidence,
            fallback=intent.fallback,
        )

        if intent.type is IntentType.RAG_QUERY:
            response = await self._handle_rag(message)
        elif intent.type is IntentType.TOOL_EXECUTION:
            response = await self._handle_tools(message, intent, session_id, user_id, message_id)
        elif intent.type is IntentType.PLANNING:
            response = await self._handle_planning(message, intent, session_id)
        else:
            response = await self._handle_chat(message, history)
        response.intent = intent

        await self.conversations.add_turn(
            session_id,
            ConversationTurn(
                role="assistant",
                content=response.content,
                metadata={
                    "reply_to": message_id,
                    "intent": intent.type.value,
                    "tool_run_ids": [c.tool_run_id for c in response.tool_calls if c.tool_run_id],
                },
            ),
        )
        return response

    async def _handle_rag(self, message: str) -> AgentResponse:
        if self.rag is None:
            logger.warning("rag_unavailable")
            return AgentResponse(content=RAG_FALLBACK)
        try:
            answer = await asyncio.wait_for(
                self.rag.query(message, self.config.rag_top_k),
                timeout=self.config.completion_timeout,
            )
        except Exception as e:
            logger.warning("rag_query_failed", error=str(e), error_type=type(e).__name__)
            return AgentResponse(content=RAG_FALLBACK)
        return AgentResponse(content=answer.answer, rag_used=True, sources=list(answer.sources))

    async def _handle_tools(
        self,
        message: str,
        intent: IntentResult,
        session_id: str,
        user_id: str,
        message_id: str,
    ) -> AgentResponse:
        calls = self.extractor.extract(message, intent.entities)
        if not calls:
            return AgentResponse(content=NO_TOOL_CALLS_REPLY)

        summaries = [await self._submit(call, session_id, user_id, message_id) for call in calls]
        return AgentResponse(content=describe_tool_calls(summaries), tool_calls=summaries)

    async def _submit(self, call: ToolCall, session_id: str, user_id: str, message_id: str) -> ToolCallSummary:
        description = call.description or describe_tool_call(call.tool_name, call.arguments)
        try:
            run = await self.gate.submit(
                call.tool_name,
                call.arguments,
                session_id=session_id,
                requested_by=user_id,
                message_id=message_id,
                requires_approval=call.requires_approval,
            )
        except PolicyViolation as e:
            logger.warning("tool_call_rejected", tool=call.tool_name, reason=str(e), session_id=session_id)
            return ToolCallSummary(
                tool_name=call.tool_name,
                arguments=dict(call.arguments),
                risk_level=self.gate.assessor.assess(call.tool_name, call.arguments),
                status=REJECTED,
                requires_approval=False,
                error=str(e),
                description=description,
            )
        return ToolCallSummary.from_run(run, description=description)

    async def _handle_planning(self, message: str, intent: IntentResult, session_id: str) -> AgentResponse:
        plan = await self.planner.build_plan(message, intent.entities)
        if plan.status is PlanStatus.FAILED:
            return AgentResponse(content=PLANNING_FALLBACK, plan=plan)
        self.plans.save(session_id, plan)
        return AgentResponse(content=describe_plan(plan), plan=plan)

    async def _handle_chat(self, message: str, history: list[ConversationTurn]) -> AgentResponse:
        messages: list[ChatMessage] = [{"role": t.role, "content": t.content} for t in history]
        messages.append({"role": "user", "content": message})
        options = CompletionOptions(
            system_prompt=CHAT_PROMPT,
            temperature=self.config.chat_temperature,
            max_tokens=self.config.chat_max_tokens,
        )
        try:
            content = await asyncio.wait_for(
                self.completion.complete(messages, options),
                timeout=self.config.completion_timeout,
            )
        except Exception as e:
            logger.warning("chat_completion_failed", error=str(e), error_type=type(e).__name__)
            return AgentResponse(content=CHAT_FALLBACK)
        return AgentResponse(content=content.strip() or CHAT_FALLBACK)

    async def execute_tool(
        self,
        tool_name: str,
        arguments: Mapping[str, Any] | None,
        session_id: str,
        user_id: str,
        requires_approval: bool = False,
    ) -> ExecuteToolResponse:
        """
        Run a tool directly, bypassing intent classification.

        Raises:
            PolicyViolation: Unknown tool, bad arguments or out-of-policy target.
        """
        run = await self.gate.submit(
            tool_name,
            arguments,
            session_id=session_id,
            requested_by=user_id,
            requires_approval=requires_approval,
        )
        return ExecuteToolResponse(
            tool_run=run,
            result=run.result,
            requires_approval=run.status is ToolRunStatus.PENDING,
        )

    async def approve_tool_run(self, run_id: str, approver_id: str) -> ApprovalResponse:
        """
        Approve a pending run and execute it.

        Raises:
            ToolRunNotFound: Unknown run id.
            ApprovalConflictError: The run is not awaiting approval.
        """
        run = await self.gate.approve(run_id, approver_id)
        return ApprovalResponse(tool_run=run, result=run.result)

    async def list_pending_approvals(self, user_id: str | None = None) -> list[ToolCallSummary]:
        runs = await self.gate.list_pending(user_id)
        return [ToolCallSummary.from_run(run, describe_tool_call(run.tool_name, run.arguments)) for run in runs]

    async def advance_plan(self, session_id: str, user_id: str) -> AgentPlan:
        """
        Move the session's plan forward as far as it can go.

        Manual steps are skipped. A tool step is dispatched through the
        approval gate; advancement stops while its run awaits approval or
        is still running, and the plan fails when a step fails.

        Raises:
            PlanNotFoundError: If the session has no plan.
        """
        async with self.plans.lock(session_id):
            plan = self.plans.get(session_id)
            if plan is None:
                raise PlanNotFoundError(session_id)
            if plan.is_finished:
                return plan

            plan.status = PlanStatus.EXECUTING
            while (step := plan.current()) is not None:
                if step.status is StepStatus.PENDING:
                    if step.tool_name is None:
                        step.status = StepStatus.SKIPPED
                        plan.current_step += 1
                        continue
                    await self._dispatch_step(step, session_id, user_id)

                if step.status is StepStatus.EXECUTING:
                    await self._refresh_step(step)

                if step.status is StepStatus.FAILED:
                    plan.status = PlanStatus.FAILED
                    break
                if step.status is StepStatus.EXECUTING:
                    break
                plan.current_step += 1
            else:
                plan.status = PlanStatus.COMPLETED

            self.plans.save(session_id, plan)
            logger.info(
                "plan_advanced",
                session_id=session_id,
                plan_id=plan.id,
                status=plan.status.value,
                current_step=plan.current_step,
            )
            return plan

    async def _dispatch_step(self, step: PlanStep, session_id: str, user_id: str) -> None:
        try:
            run = await self.gate.submit(
                step.tool_name,
                step.arguments,
                session_id=session_id,
                requested_by=user_id,
                requires_approval=step.requires_approval,
            )
        except PolicyViolation as e:
            logger.warning("plan_step_rejected", step_id=step.id, tool=step.tool_name, reason=str(e))
            step.status = StepStatus.FAILED
            step.error = str(e)
            return
        step.tool_run_id = run.id
        step.status = StepStatus.EXECUTING

    async def _refresh_step(self, step: PlanStep) -> None:
        run = await self.gate.get(step.tool_run_id)
        if run.status is ToolRunStatus.COMPLETED:
            step.status = StepStatus.COMPLETED
            step.result = run.result
        elif run.status is ToolRunStatus.FAILED:
            step.status = StepStatus.FAILED
            step.error = run.error_message
