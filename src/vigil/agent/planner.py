"""
Multi-step plan generation and per-session plan tracking.

The completion service proposes the plan; pydantic validates it. Risk on
tool-bound steps is recomputed by the RiskAssessor and never drops below
what the model claimed. Any failure produces a failed, empty plan.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from vigil.agent.completion import CompletionError, CompletionOptions, extract_json_object
from vigil.agent.prompts import build_planner_prompt
from vigil.core.ledger import utc_now
from vigil.core.risk import RiskLevel

if TYPE_CHECKING:
    from vigil.agent.completion import CompletionProvider
    from vigil.agent.intent import IntentEntities
    from vigil.config.settings import AgentConfig
    from vigil.core.risk import RiskAssessor
    from vigil.tools.registry import ToolRegistry

logger = structlog.get_logger(__name__)

FAILED_PLAN_GOAL = "Unable to generate plan"


class PlanStatus(str, Enum):
    PLANNING = "planning"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


class StepStatus(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class PlanStep:
    """One step of a plan, optionally bound to a tool."""

    id: str
    description: str
    tool_name: str | None = None
    arguments: dict[str, Any] | None = None
    status: StepStatus = StepStatus.PENDING
    result: dict[str, Any] | None = None
    error: str | None = None
    requires_approval: bool = False
    risk_level: RiskLevel = RiskLevel.LOW
    tool_run_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "tool_name": self.tool_name,
            "arguments": self.arguments,
            "status": self.status.value,
            "result": self.result,
            "error": self.error,
            "requires_approval": self.requires_approval,
            "risk_level": self.risk_level.value,
            "tool_run_id": self.tool_run_id,
        }


@dataclass
class AgentPlan:
    """A goal and the ordered steps toward it."""

    goal: str
    steps: list[PlanStep] = field(default_factory=list)
    current_step: int = 0
    status: PlanStatus = PlanStatus.PLANNING
    risk_assessment: RiskLevel = RiskLevel.LOW
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: str = field(default_factory=utc_now)

    @classmethod
    def failed(cls) -> AgentPlan:
        return cls(goal=FAILED_PLAN_GOAL, status=PlanStatus.FAILED, risk_assessment=RiskLevel.HIGH)

    @property
    def is_finished(self) -> bool:
        return self.status in (PlanStatus.COMPLETED, PlanStatus.FAILED)

    def current(self) -> PlanStep | None:
        if 0 <= self.current_step < len(self.steps):
            return self.steps[self.current_step]
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "goal": self.goal,
            "steps": [step.to_dict() for step in self.steps],
            "current_step": self.current_step,
            "status": self.status.value,
            "risk_assessment": self.risk_assessment.value,
            "created_at": self.created_at,
        }


def _risk_or_none(v: Any) -> Any:
    if v is None or v == "":
        return None
    return v.strip().lower() if isinstance(v, str) else v


class StepPayload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, alias_generator=to_camel)

    id: str = Field(min_length=1)
    description: str = Field(min_length=1)
    tool_name: str | None = None
    arguments: dict[str, Any] | None = None
    requires_approval: bool = False
    risk_level: RiskLevel | None = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> Any:
        return str(v) if isinstance(v, int) and not isinstance(v, bool) else v

    @field_validator("tool_name", mode="before")
    @classmethod
    def blank_tool(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("risk_level", mode="before")
    @classmethod
    def normalize_risk(cls, v: Any) -> Any:
        return _risk_or_none(v)


class PlanPayload(BaseModel):
    """Shape of the planner's JSON reply."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True, alias_generator=to_camel)

    goal: str = Field(min_length=1)
    steps: list[StepPayload] = Field(min_length=1)
    risk_assessment: RiskLevel | None = None

    @field_validator("goal")
    @classmethod
    def goal_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("goal must not be blank")
        return v.strip()

    @field_validator("risk_assessment", mode="before")
    @classmethod
    def normalize_risk(cls, v: Any) -> Any:
        return _risk_or_none(v)


class PlanBuilder:
    """
    Builds plans with the completion service.

    Args:
        completion: Completion capability.
        registry: Tools a step may be bound to.
        assessor: Deterministic risk for tool-bound steps.
        config: Temperatures, token limits and call timeout.
    """

    def __init__(
        self,
        completion: CompletionProvider,
        registry: ToolRegistry,
        assessor: RiskAssessor,
        config: AgentConfig,
    ) -> None:
        self.completion = completion
        self.registry = registry
        self.assessor = assessor
        self.config = config

    async def build_plan(self, message: str, entities: IntentEntities | None = None) -> AgentPlan:
        options = CompletionOptions(
            system_prompt=build_planner_prompt(self.registry.get_definitions()),
            json_mode=True,
            temperature=self.config.planner_temperature,
            max_tokens=self.config.planner_max_tokens,
        )
        request = f"Request: {message}"
        if entities is not None:
            request += f"\n\nEntities: {json.dumps(entities.model_dump())}"

        try:
            raw = await asyncio.wait_for(
                self.completion.complete([{"role": "user", "content": request}], options),
                timeout=self.config.completion_timeout,
            )
            payload = PlanPayload.model_validate(extract_json_object(raw))
        except TimeoutError:
            logger.warning("plan_generation_timeout", timeout=self.config.completion_timeout)
            return AgentPlan.failed()
        except (CompletionError, ValueError, ValidationError) as e:
            logger.warning("plan_generation_failed", error=str(e), error_type=type(e).__name__)
            return AgentPlan.failed()
        except Exception as e:
            logger.warning("plan_generation_error", error=str(e), error_type=type(e).__name__)
            return AgentPlan.failed()

        steps = [self._build_step(step) for step in payload.steps]
        plan = AgentPlan(
            goal=payload.goal,
            steps=steps,
            risk_assessment=RiskLevel.highest(step.risk_level for step in steps),
        )
        logger.info(
            "plan_generated",
            plan_id=plan.id,
            steps=len(steps),
            risk=plan.risk_assessment.value,
        )
        return plan

    def _build_step(self, payload: StepPayload) -> PlanStep:
        claimed = payload.risk_level or RiskLevel.LOW
        if payload.tool_name is None:
            return PlanStep(
                id=payload.id,
                description=payload.description,
                requires_approval=payload.requires_approval,
                risk_level=claimed,
            )

        arguments = dict(payload.arguments or {})
        risk = RiskLevel.highest([claimed, self.assessor.assess(payload.tool_name, arguments)])
        return PlanStep(
            id=payload.id,
            description=payload.description,
            tool_name=payload.tool_name,
            arguments=arguments,
            requires_approval=payload.requires_approval or self.assessor.requires_approval(risk),
            risk_level=risk,
        )


class PlanStore:
    """Current plan for each session, held in memory."""

    def __init__(self) -> None:
        self._plans: dict[str, AgentPlan] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def get(self, session_id: str) -> AgentPlan | None:
        return self._plans.get(session_id)

    def save(self, session_id: str, plan: AgentPlan) -> None:
        self._plans[session_id] = plan

    def discard(self, session_id: str) -> None:
        self._plans.pop(session_id, None)
        self._locks.pop(session_id, None)

    def lock(self, session_id: str) -> asyncio.Lock:
        """Serializes plan advancement within a session."""
        return self._locks[session_id]
