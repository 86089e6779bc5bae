"""
Unit tests for plan generation (agent/planner.py).
"""

import pytest

from vigil.agent.completion import CompletionError
from vigil.agent.intent import IntentEntities
from vigil.agent.planner import (
    FAILED_PLAN_GOAL,
    AgentPlan,
    PlanBuilder,
    PlanStatus,
    PlanStep,
    PlanStore,
    StepStatus,
)
from vigil.config.settings import AgentConfig
from vigil.core.risk import RiskLevel

from conftest import FakeCompletionProvider

ASSESSMENT_PLAN = {
    "goal": "Assess the lab web server",
    "steps": [
        {
            "id": "step_1",
            "description": "Check the host is up",
            "toolName": "nmap",
            "arguments": {"target": "192.168.1.10", "scanType": "ping"},
            "riskLevel": "low",
        },
        {
            "id": "step_2",
            "description": "SYN scan common ports",
            "toolName": "nmap",
            "arguments": {"target": "192.168.1.10", "scan_type": "syn"},
            "riskLevel": "low",
        },
        {
            "id": 3,
            "description": "Review the findings with the owner",
            "requiresApproval": True,
            "riskLevel": "Medium",
        },
    ],
    "riskAssessment": "low",
}


@pytest.fixture
def make_builder(registry, assessor):
    def build(*replies, **config):
        provider = FakeCompletionProvider(*replies)
        return PlanBuilder(provider, registry, assessor, AgentConfig(**config)), provider

    return build


class TestPlanBuilder:
    """Tests for PlanBuilder.build_plan."""

    @pytest.mark.asyncio
    async def test_plan_from_completion(self, make_builder):
        builder, provider = make_builder(ASSESSMENT_PLAN)

        plan = await builder.build_plan("assess 192.168.1.10")

        assert plan.goal == "Assess the lab web server"
        assert plan.status is PlanStatus.PLANNING
        assert [s.id for s in plan.steps] == ["step_1", "step_2", "3"]
        assert all(s.status is StepStatus.PENDING for s in plan.steps)
        assert plan.steps[0].tool_name == "nmap"
        assert plan.steps[0].arguments == {"target": "192.168.1.10", "scanType": "ping"}
        assert plan.steps[2].tool_name is None
        assert plan.steps[2].requires_approval

        messages, options = provider.calls[0]
        assert options.json_mode
        assert "nmap" in options.system_prompt
        assert "domain_intel" in options.system_prompt
        assert messages[0]["content"] == "Request: assess 192.168.1.10"

    @pytest.mark.asyncio
    async def test_risk_never_below_assessed(self, make_builder):
        """Test: step risk is recomputed and plan risk is the highest step risk."""
        builder, _ = make_builder(ASSESSMENT_PLAN)

        plan = await builder.build_plan("assess 192.168.1.10")

        assert plan.steps[0].risk_level is RiskLevel.LOW
        assert plan.steps[1].risk_level is RiskLevel.MEDIUM
        assert plan.steps[2].risk_level is RiskLevel.MEDIUM
        assert plan.risk_assessment is RiskLevel.MEDIUM

    @pytest.mark.asyncio
    async def test_claimed_risk_kept_when_higher(self, make_builder):
        builder, _ = make_builder(
            {
                "goal": "Ping",
                "steps": [
                    {
                        "id": "1",
                        "description": "ping",
                        "tool_name": "nmap",
                        "arguments": {"target": "10.0.0.5", "scan_type": "ping"},
                        "risk_level": "high",
                    }
                ],
            }
        )

        plan = await builder.build_plan("ping 10.0.0.5")

        assert plan.steps[0].risk_level is RiskLevel.HIGH
        assert plan.steps[0].requires_approval
        assert plan.risk_assessment is RiskLevel.HIGH

    @pytest.mark.asyncio
    async def test_public_target_step_is_high(self, make_builder):
        builder, _ = make_builder(
            {
                "goal": "Scan Google DNS",
                "steps": [
                    {
                        "id": "1",
                        "description": "scan",
                        "toolName": "NMAP",
                        "arguments": {"target": "8.8.8.8"},
                        "riskLevel": "low",
                    }
                ],
            }
        )

        plan = await builder.build_plan("scan 8.8.8.8")

        assert plan.steps[0].tool_name == "nmap"
        assert plan.steps[0].risk_level is RiskLevel.HIGH
        assert plan.steps[0].requires_approval

    @pytest.mark.asyncio
    async def test_entities_included(self, make_builder):
        builder, provider = make_builder(ASSESSMENT_PLAN)

        await builder.build_plan("assess it", IntentEntities(targets=["192.168.1.10"]))

        messages, _ = provider.calls[0]
        assert '"targets": ["192.168.1.10"]' in messages[0]["content"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "reply",
        [
            CompletionError("service down"),
            ConnectionError("service unreachable"),
            "I cannot help with that.",
            {"goal": "Nothing", "steps": []},
            {"goal": "   ", "steps": [{"id": "1", "description": "x"}]},
            {"goal": "No description", "steps": [{"id": "1"}]},
            {"goal": "Bad risk", "steps": [{"id": "1", "description": "x", "riskLevel": "extreme"}]},
        ],
    )
    async def test_failures_give_failed_plan(self, make_builder, reply):
        """Test: any planning failure returns a failed, empty, high-risk plan."""
        builder, _ = make_builder(reply)

        plan = await builder.build_plan("do something")

        assert plan.goal == FAILED_PLAN_GOAL
        assert plan.steps == []
        assert plan.status is PlanStatus.FAILED
        assert plan.risk_assessment is RiskLevel.HIGH
        assert plan.is_finished


class TestAgentPlan:
    """Tests for AgentPlan helpers."""

    def test_current_step(self):
        plan = AgentPlan(goal="g", steps=[PlanStep(id="1", description="a"), PlanStep(id="2", description="b")])

        assert plan.current().id == "1"
        plan.current_step = 2
        assert plan.current() is None

    def test_to_dict(self):
        plan = AgentPlan(goal="g", steps=[PlanStep(id="1", description="a")])
        data = plan.to_dict()

        assert data["status"] == "planning"
        assert data["steps"][0]["status"] == "pending"
        assert data["risk_assessment"] == "low"


class TestPlanStore:
    """Tests for PlanStore."""

    def test_save_get_discard(self):
        store = PlanStore()
        plan = AgentPlan(goal="g")

        store.save("s1", plan)
        assert store.get("s1") is plan
        assert store.get("s2") is None

        store.discard("s1")
        assert store.get("s1") is None

    def test_lock_per_session(self):
        store = PlanStore()
        assert store.lock("s1") is store.lock("s1")
        assert store.lock("s1") is not store.lock("s2")
