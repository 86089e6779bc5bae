"""
Unit tests for the tool-run ledger (core/ledger.py).
"""

import asyncio
import json
from dataclasses import replace

import pytest

from vigil.core.ledger import (
    ALLOWED_TRANSITIONS,
    InMemoryToolRunStore,
    InvalidTransitionError,
    JsonFileToolRunStore,
    LedgerError,
    ToolRun,
    ToolRunNotFound,
    ToolRunStatus,
    TransitionConflict,
    check_transition,
)
from vigil.core.risk import RiskLevel


def make_run(approval_required=False, user="alice", session="s1", risk=RiskLevel.LOW):
    return ToolRun.new(
        session_id=session,
        tool_name="nmap",
        arguments={"target": "192.168.1.10", "scan_type": "ping"},
        risk_level=risk,
        approval_required=approval_required,
        requested_by=user,
    )


@pytest.fixture(params=["memory", "json"])
def any_store(request, tmp_path):
    if request.param == "memory":
        return InMemoryToolRunStore()
    return JsonFileToolRunStore(tmp_path / "runs")


class TestStateMachine:
    """Tests for the allowed transitions."""

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (ToolRunStatus.PENDING, ToolRunStatus.APPROVED),
            (ToolRunStatus.PENDING, ToolRunStatus.RUNNING),
            (ToolRunStatus.APPROVED, ToolRunStatus.RUNNING),
            (ToolRunStatus.APPROVED, ToolRunStatus.FAILED),
            (ToolRunStatus.RUNNING, ToolRunStatus.COMPLETED),
            (ToolRunStatus.RUNNING, ToolRunStatus.FAILED),
        ],
    )
    def test_allowed(self, current, target):
        check_transition(current, target)

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (ToolRunStatus.PENDING, ToolRunStatus.COMPLETED),
            (ToolRunStatus.APPROVED, ToolRunStatus.PENDING),
            (ToolRunStatus.RUNNING, ToolRunStatus.APPROVED),
            (ToolRunStatus.COMPLETED, ToolRunStatus.RUNNING),
            (ToolRunStatus.FAILED, ToolRunStatus.PENDING),
        ],
    )
    def test_rejected(self, current, target):
        with pytest.raises(InvalidTransitionError):
            check_transition(current, target)

    def test_terminal_states(self):
        assert ToolRunStatus.COMPLETED.is_terminal
        assert ToolRunStatus.FAILED.is_terminal
        assert not ToolRunStatus.PENDING.is_terminal
        assert set(ALLOWED_TRANSITIONS) == set(ToolRunStatus)


class TestToolRun:
    """Tests for ToolRun records."""

    def test_new_run_is_pending_with_audit_entry(self):
        run = make_run()

        assert run.status is ToolRunStatus.PENDING
        assert len(run.id) == 32
        assert run.audit_log[0].event == "created"
        assert run.audit_log[0].actor == "alice"

    def test_arguments_are_copied(self):
        arguments = {"target": "10.0.0.1"}
        run = ToolRun.new("s1", "nmap", arguments, RiskLevel.LOW, False)
        arguments["target"] = "8.8.8.8"

        assert run.arguments["target"] == "10.0.0.1"

    def test_round_trip(self):
        run = make_run(approval_required=True)
        assert ToolRun.from_dict(json.loads(json.dumps(run.to_dict()))) == run

    @pytest.mark.parametrize(
        "changes",
        [
            {"result": {"ok": True}},
            {"error_message": "boom"},
            {"approved_by": "bob"},
        ],
    )
    def test_invariants(self, changes):
        run = make_run()
        for key, value in changes.items():
            setattr(run, key, value)

        with pytest.raises(LedgerError):
            run.check_invariants()


class TestToolRunStore:
    """Tests shared by the in-memory and JSON stores."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, any_store):
        run = await any_store.create(make_run())
        loaded = await any_store.get(run.id)

        assert loaded.id == run.id
        assert loaded.status is ToolRunStatus.PENDING

    @pytest.mark.asyncio
    async def test_get_unknown(self, any_store):
        with pytest.raises(ToolRunNotFound):
            await any_store.get("0" * 32)

    @pytest.mark.asyncio
    async def test_full_lifecycle(self, any_store):
        """Test: pending -> approved -> running -> completed with an audit trail."""
        run = await any_store.create(make_run(approval_required=True))

        run = await any_store.transition(
            run.id,
            ToolRunStatus.PENDING,
            ToolRunStatus.APPROVED,
            actor="bob",
            approved_by="bob",
            approved_at="2026-01-01T00:00:00+00:00",
        )
        run = await any_store.transition(run.id, ToolRunStatus.APPROVED, ToolRunStatus.RUNNING)
        run = await any_store.transition(
            run.id,
            ToolRunStatus.RUNNING,
            ToolRunStatus.COMPLETED,
            commands=["nmap -sn 192.168.1.10"],
            outcome="success",
            result={"status": "up"},
        )

        assert run.status is ToolRunStatus.COMPLETED
        assert run.approved_by == "bob"
        assert run.version == 4
        assert [e.event for e in run.audit_log] == ["created", "approved", "running", "completed"]
        assert run.audit_log[-1].commands == ("nmap -sn 192.168.1.10",)

        stored = await any_store.get(run.id)
        assert stored.result == {"status": "up"}

    @pytest.mark.asyncio
    async def test_conflict_leaves_state_unchanged(self, any_store):
        """Test a stale expected status is refused without side effects."""
        run = await any_store.create(make_run())
        await any_store.transition(run.id, ToolRunStatus.PENDING, ToolRunStatus.RUNNING)

        with pytest.raises(TransitionConflict) as exc_info:
            await any_store.transition(run.id, ToolRunStatus.PENDING, ToolRunStatus.APPROVED)

        assert exc_info.value.actual is ToolRunStatus.RUNNING
        stored = await any_store.get(run.id)
        assert stored.status is ToolRunStatus.RUNNING
        assert len(stored.audit_log) == 2

    @pytest.mark.asyncio
    async def test_invalid_edge_rejected_before_load(self, any_store):
        with pytest.raises(InvalidTransitionError):
            await any_store.transition("0" * 32, ToolRunStatus.PENDING, ToolRunStatus.COMPLETED)

    @pytest.mark.asyncio
    async def test_immutable_fields_cannot_change(self, any_store):
        run = await any_store.create(make_run())
        with pytest.raises(LedgerError):
            await any_store.transition(
                run.id, ToolRunStatus.PENDING, ToolRunStatus.RUNNING, arguments={"target": "8.8.8.8"}
            )

    @pytest.mark.asyncio
    async def test_invariant_violation_not_saved(self, any_store):
        run = await any_store.create(make_run())
        with pytest.raises(LedgerError):
            await any_store.transition(run.id, ToolRunStatus.PENDING, ToolRunStatus.RUNNING, result={"x": 1})

        assert (await any_store.get(run.id)).status is ToolRunStatus.PENDING

    @pytest.mark.asyncio
    async def test_concurrent_transitions_single_winner(self, any_store):
        """Test only one of several racing approvals succeeds."""
        run = await any_store.create(make_run(approval_required=True))

        async def approve(user):
            return await any_store.transition(
                run.id,
                ToolRunStatus.PENDING,
                ToolRunStatus.APPROVED,
                approved_by=user,
                approved_at="2026-01-01T00:00:00+00:00",
            )

        results = await asyncio.gather(*(approve(f"user{i}") for i in range(5)), return_exceptions=True)

        assert sum(isinstance(r, ToolRun) for r in results) == 1
        assert sum(isinstance(r, TransitionConflict) for r in results) == 4

    @pytest.mark.asyncio
    async def test_listing(self, any_store):
        waiting = await any_store.create(make_run(approval_required=True, user="alice", risk=RiskLevel.HIGH))
        await any_store.create(make_run(approval_required=True, user="bob", session="s2", risk=RiskLevel.HIGH))
        await any_store.create(make_run(approval_required=False, user="alice"))

        assert [r.id for r in await any_store.list_pending_for_user("alice")] == [waiting.id]
        assert len(await any_store.list_pending_for_user()) == 2
        assert len(await any_store.list_for_session("s1")) == 2
        assert len(await any_store.list_by_status(ToolRunStatus.PENDING)) == 3

    @pytest.mark.asyncio
    async def test_create_requires_pending(self, any_store):
        run = make_run()
        run.status = ToolRunStatus.RUNNING
        with pytest.raises(LedgerError):
            await any_store.create(run)


class TestJsonFileToolRunStore:
    """Tests specific to the JSON file store."""

    @pytest.mark.asyncio
    async def test_survives_new_instance(self, tmp_path):
        first = JsonFileToolRunStore(tmp_path)
        run = await first.create(make_run())

        second = JsonFileToolRunStore(tmp_path)
        assert (await second.get(run.id)).tool_name == "nmap"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("run_id", ["../etc/passwd", "abc", "Z" * 32])
    async def test_malformed_ids_not_found(self, tmp_path, run_id):
        store = JsonFileToolRunStore(tmp_path)
        with pytest.raises(ToolRunNotFound):
            await store.get(run_id)

    @pytest.mark.asyncio
    async def test_unreadable_files_skipped(self, tmp_path):
        store = JsonFileToolRunStore(tmp_path)
        await store.create(make_run())
        (tmp_path / ("f" * 32 + ".json")).write_text("{not json")

        assert len(await store.list_by_status(ToolRunStatus.PENDING)) == 1

    @pytest.mark.asyncio
    async def test_stale_write_from_second_store_conflicts(self, tmp_path):
        """Test a store holding an old read cannot overwrite a newer approval."""
        first = JsonFileToolRunStore(tmp_path)
        second = JsonFileToolRunStore(tmp_path)
        run = await first.create(make_run(approval_required=True))
        stale = await second.get(run.id)

        await first.transition(
            run.id,
            ToolRunStatus.PENDING,
            ToolRunStatus.APPROVED,
            approved_by="alice",
            approved_at="2026-01-01T00:00:00+00:00",
        )
        overwrite = replace(
            stale,
            status=ToolRunStatus.APPROVED,
            approved_by="bob",
            approved_at="2026-01-01T00:00:01+00:00",
            version=stale.version + 1,
        )

        with pytest.raises(TransitionConflict):
            await second._save(overwrite, stale)

        stored = await second.get(run.id)
        assert stored.approved_by == "alice"
        assert stored.version == 2

    @pytest.mark.asyncio
    async def test_approvals_across_stores_single_winner(self, tmp_path, monkeypatch):
        """Test two stores sharing a directory serialize on the record."""
        stores = [JsonFileToolRunStore(tmp_path, lock_poll_interval=0.005) for _ in range(2)]
        run = await stores[0].create(make_run(approval_required=True))

        for store in stores:
            load = store._load

            async def slow_load(run_id, load=load):
                loaded = await load(run_id)
                await asyncio.sleep(0.05)
                return loaded

            monkeypatch.setattr(store, "_load", slow_load)

        async def approve(store, user):
            return await store.transition(
                run.id,
                ToolRunStatus.PENDING,
                ToolRunStatus.APPROVED,
                approved_by=user,
                approved_at="2026-01-01T00:00:00+00:00",
            )

        results = await asyncio.gather(
            approve(stores[0], "alice"), approve(stores[1], "bob"), return_exceptions=True
        )

        winners = [r for r in results if isinstance(r, ToolRun)]
        assert len(winners) == 1
        assert sum(isinstance(r, TransitionConflict) for r in results) == 1

        stored = await stores[0].get(run.id)
        assert stored.approved_by == winners[0].approved_by
        assert [e.event for e in stored.audit_log] == ["created", "approved"]


class TestRecordLocks:
    """Tests for per-record lock bookkeeping."""

    @pytest.mark.asyncio
    async def test_locks_released_for_pending_runs(self, any_store):
        run = await any_store.create(make_run(approval_required=True))
        await any_store.transition(
            run.id,
            ToolRunStatus.PENDING,
            ToolRunStatus.APPROVED,
            approved_by="alice",
            approved_at="2026-01-01T00:00:00+00:00",
        )

        assert any_store._locks == {}

    @pytest.mark.asyncio
    async def test_locks_released_for_unknown_ids(self, any_store):
        with pytest.raises(ToolRunNotFound):
            await any_store.transition("0" * 32, ToolRunStatus.PENDING, ToolRunStatus.RUNNING)

        assert any_store._locks == {}

    @pytest.mark.asyncio
    async def test_locks_released_after_contention(self, any_store):
        run = await any_store.create(make_run())

        await asyncio.gather(
            *(
                any_store.transition(run.id, ToolRunStatus.PENDING, ToolRunStatus.RUNNING)
                for _ in range(3)
            ),
            return_exceptions=True,
        )

        assert any_store._locks == {}
