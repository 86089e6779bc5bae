"""
Approval gate for tool runs.

The gate is the only path from a requested tool call to a running
process. It validates the call, computes its risk once, refuses
out-of-policy targets before anything is recorded, and then either runs
the tool immediately or parks the run as ``pending`` until an operator
approves it. Execution always passes through ``running``.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Mapping

import structlog

from vigil.core.ledger import (
    LedgerError,
    ToolRun,
    ToolRunStatus,
    TransitionConflict,
    utc_now,
)
from vigil.core.scope import PolicyViolation
from vigil.tools.base import ToolOutcome

if TYPE_CHECKING:
    from vigil.core.ledger import ToolRunStore
    from vigil.core.risk import RiskAssessor
    from vigil.core.scope import TargetPolicy
    from vigil.tools.base import ToolArguments, ToolName
    from vigil.tools.registry import ToolRegistry

logger = structlog.get_logger(__name__)

SYSTEM_ACTOR = "system"


class ApprovalConflictError(LedgerError):
    """Raised when a run cannot be approved in its current state."""

    def __init__(self, run_id: str, status: ToolRunStatus, reason: str) -> None:
        self.run_id = run_id
        self.status = status
        self.reason = reason
        super().__init__(f"Cannot approve tool run {run_id} ({status.value}): {reason}")


class ApprovalGate:
    """
    Risk-gated execution of tool calls.

    Args:
        registry: Tool adapters and argument validation.
        store: Ledger the runs are recorded in.
        assessor: Risk tiers and approval policy.
        target_policy: Allow-list checked before a run is recorded.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        store: ToolRunStore,
        assessor: RiskAssessor,
        target_policy: TargetPolicy,
    ) -> None:
        self.registry = registry
        self.store = store
        self.assessor = assessor
        self.target_policy = target_policy

    async def submit(
        self,
        tool_name: str | ToolName,
        arguments: Mapping[str, Any] | None,
        *,
        session_id: str,
        requested_by: str | None = None,
        message_id: str | None = None,
        requires_approval: bool = False,
    ) -> ToolRun:
        """
        Record a tool call and run it unless approval is needed.

        Returns:
            The run, ``pending`` when it awaits approval, otherwise terminal.

        Raises:
            UnsupportedToolError: Unknown tool name.
            InvalidToolArguments: Arguments rejected by the tool.
            TargetPolicyViolation: Target outside the allow-list.
        """
        args = self.registry.prepare(tool_name, arguments)
        canonical = args.to_arguments()
        name = str(getattr(tool_name, "value", tool_name))

        risk = self.assessor.assess(name, canonical)
        if "target" in canonical:
            self.target_policy.check(canonical["target"])

        approval_required = requires_approval or self.assessor.requires_approval(risk)
        run = await self.store.create(
            ToolRun.new(
                session_id=session_id,
                tool_name=name,
                arguments=canonical,
                risk_level=risk,
                approval_required=approval_required,
                message_id=message_id,
                requested_by=requested_by,
            )
        )

        if approval_required:
            logger.info("tool_run_awaiting_approval", run_id=run.id, tool=name, risk_level=risk.value)
            return run

        return await self._execute(run, args, expected=ToolRunStatus.PENDING, actor=requested_by)

    async def approve(self, run_id: str, approver_id: str) -> ToolRun:
        """
        Approve a pending run and execute it.

        Raises:
            ToolRunNotFound: Unknown run id.
            ApprovalConflictError: The run is not pending, does not need
                approval, or another caller moved it first.
        """
        if not approver_id:
            raise ValueError("approver_id is required")

        run = await self.store.get(run_id)
        if run.status is not ToolRunStatus.PENDING:
            logger.warning("approval_conflict", run_id=run_id, status=run.status.value)
            raise ApprovalConflictError(run_id, run.status, "run is not pending")
        if not run.approval_required:
            raise ApprovalConflictError(run_id, run.status, "run does not require approval")

        try:
            run = await self.store.transition(
                run_id,
                ToolRunStatus.PENDING,
                ToolRunStatus.APPROVED,
                event="approved",
                actor=approver_id,
                approved_by=approver_id,
                approved_at=utc_now(),
            )
        except TransitionConflict as e:
            raise ApprovalConflictError(run_id, e.actual, "run changed state concurrently") from e

        logger.info("tool_run_approved", run_id=run_id, approver=approver_id, tool=run.tool_name)

        try:
            args = self.registry.prepare(run.tool_name, run.arguments)
        except PolicyViolation as e:
            logger.warning("approved_run_rejected", run_id=run_id, error=str(e))
            return await self.store.transition(
                run_id,
                ToolRunStatus.APPROVED,
                ToolRunStatus.FAILED,
                actor=approver_id,
                outcome="rejected",
                error_message=str(e),
                completed_at=utc_now(),
            )

        return await self._execute(run, args, expected=ToolRunStatus.APPROVED, actor=approver_id)

    async def _execute(
        self,
        run: ToolRun,
        args: ToolArguments,
        expected: ToolRunStatus,
        actor: str | None,
    ) -> ToolRun:
        run = await self.store.transition(
            run.id,
            expected,
            ToolRunStatus.RUNNING,
            event="execution_started",
            actor=actor,
            executed_at=utc_now(),
        )

        try:
            outcome = await self.registry.execute(run.tool_name, args)
        except asyncio.CancelledError:
            await self.store.transition(
                run.id,
                ToolRunStatus.RUNNING,
                ToolRunStatus.FAILED,
                actor=SYSTEM_ACTOR,
                outcome="cancelled",
                error_message="Execution was cancelled",
                completed_at=utc_now(),
            )
            raise
        except Exception as e:
            logger.error("tool_run_unexpected_error", run_id=run.id, error=str(e), error_type=type(e).__name__)
            outcome = ToolOutcome.failure(f"Unexpected error: {e}")

        if outcome.success:
            return await self.store.transition(
                run.id,
                ToolRunStatus.RUNNING,
                ToolRunStatus.COMPLETED,
                actor=actor,
                commands=outcome.commands,
                outcome="success",
                result=outcome.data if outcome.data is not None else {},
                completed_at=utc_now(),
            )

        return await self.store.transition(
            run.id,
            ToolRunStatus.RUNNING,
            ToolRunStatus.FAILED,
            actor=actor,
            commands=outcome.commands,
            outcome="error",
            detail=outcome.metadata.get("error_code"),
            error_message=outcome.error or "Tool failed without an error message",
            completed_at=utc_now(),
        )

    async def get(self, run_id: str) -> ToolRun:
        return await self.store.get(run_id)

    async def list_pending(self, user_id: str | None = None) -> list[ToolRun]:
        """Runs waiting for approval, oldest first."""
        return await self.store.list_pending_for_user(user_id)

    async def list_for_session(self, session_id: str) -> list[ToolRun]:
        return await self.store.list_for_session(session_id)

    async def fail_interrupted_runs(self, older_than: timedelta = timedelta(0)) -> list[ToolRun]:
        """
        Mark runs left ``approved`` or ``running`` by a previous process as failed.

        Call this at startup, before new work is accepted.

        Args:
            older_than: Only runs whose last update is at least this old.

        Returns:
            The runs that were failed.
        """
        cutoff = datetime.now(timezone.utc) - older_than
        failed: list[ToolRun] = []

        for run in await self.store.list_by_status(ToolRunStatus.APPROVED, ToolRunStatus.RUNNING):
            if datetime.fromisoformat(run.updated_at) > cutoff:
                continue
            try:
                updated = await self.store.transition(
                    run.id,
                    run.status,
                    ToolRunStatus.FAILED,
                    event="interrupted",
                    actor=SYSTEM_ACTOR,
                    outcome="interrupted",
                    error_message=f"Interrupted while {run.status.value}; the process exited before the run finished",
                    completed_at=utc_now(),
                )
            except TransitionConflict:
                continue
            failed.append(updated)

        if failed:
            logger.warning("interrupted_tool_runs_failed", count=len(failed), run_ids=[r.id for r in failed])
        return failed
