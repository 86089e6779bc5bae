"""
Tool-run ledger for Vigil.

Every tool invocation is recorded as a ToolRun and moved through a fixed
state machine:

    pending -> approved -> running -> completed
       |                     |
       +-------> running     +-----> failed
    approved -> failed

Runs are never deleted. Status changes are compare-and-set: a transition
only applies when the stored status matches what the caller expected,
under a per-record lock. A save is refused when the stored version moved
on since the run was loaded. Each transition appends an immutable AuditEntry.
"""

from __future__ import annotations

import asyncio
import copy
import fcntl
import json
import os
import re
import tempfile
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Iterable

import structlog

from vigil.core.risk import RiskLevel

logger = structlog.get_logger(__name__)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ToolRunStatus(str, Enum):
    """Lifecycle states of a tool run."""

    PENDING = "pending"
    APPROVED = "approved"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return not ALLOWED_TRANSITIONS[self]


ALLOWED_TRANSITIONS: dict[ToolRunStatus, frozenset[ToolRunStatus]] = {
    ToolRunStatus.PENDING: frozenset({ToolRunStatus.APPROVED, ToolRunStatus.RUNNING}),
    ToolRunStatus.APPROVED: frozenset({ToolRunStatus.RUNNING, ToolRunStatus.FAILED}),
    ToolRunStatus.RUNNING: frozenset({ToolRunStatus.COMPLETED, ToolRunStatus.FAILED}),
    ToolRunStatus.COMPLETED: frozenset(),
    ToolRunStatus.FAILED: frozenset(),
}

# Fields a transition may set besides status.
_MUTABLE_FIELDS = frozenset(
    {"approved_by", "approved_at", "executed_at", "completed_at", "result", "error_message"}
)


class LedgerError(Exception):
    """Base class for ledger errors."""

    pass


class ToolRunNotFound(LedgerError):
    """Raised when a run id is unknown."""

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"Tool run not found: {run_id}")


class InvalidTransitionError(LedgerError):
    """Raised when the state machine does not allow a transition."""

    def __init__(self, current: ToolRunStatus, target: ToolRunStatus) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid transition: {current.value} -> {target.value}")


class TransitionConflict(LedgerError):
    """Raised when the stored status is not the one the caller expected."""

    def __init__(self, run_id: str, expected: Iterable[ToolRunStatus], actual: ToolRunStatus) -> None:
        self.run_id = run_id
        self.expected = tuple(expected)
        self.actual = actual
        wanted = "/".join(s.value for s in self.expected)
        super().__init__(f"Tool run {run_id} is {actual.value}, expected {wanted}")


def check_transition(current: ToolRunStatus, target: ToolRunStatus) -> None:
    """
    Validate a single state machine edge.

    Raises:
        InvalidTransitionError: If ``current -> target`` is not allowed.
    """
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(current, target)


@dataclass(frozen=True)
class AuditEntry:
    """One immutable line of a run's audit trail."""

    event: str
    status: ToolRunStatus
    timestamp: str = field(default_factory=utc_now)
    actor: str | None = None
    tool_name: str | None = None
    arguments: dict[str, Any] | None = None
    commands: tuple[str, ...] = ()
    outcome: str | None = None
    detail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.event,
            "status": self.status.value,
            "timestamp": self.timestamp,
            "actor": self.actor,
            "tool_name": self.tool_name,
            "arguments": copy.deepcopy(self.arguments),
            "commands": list(self.commands),
            "outcome": self.outcome,
            "detail": self.detail,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuditEntry:
        return cls(
            event=data["event"],
            status=ToolRunStatus(data["status"]),
            timestamp=data["timestamp"],
            actor=data.get("actor"),
            tool_name=data.get("tool_name"),
            arguments=data.get("arguments"),
            commands=tuple(data.get("commands") or ()),
            outcome=data.get("outcome"),
            detail=data.get("detail"),
        )


@dataclass
class ToolRun:
    """Record of one tool invocation and its lifecycle."""

    id: str
    session_id: str
    tool_name: str
    arguments: dict[str, Any]
    risk_level: RiskLevel
    approval_required: bool
    status: ToolRunStatus = ToolRunStatus.PENDING
    message_id: str | None = None
    requested_by: str | None = None
    approved_by: str | None = None
    approved_at: str | None = None
    executed_at: str | None = None
    completed_at: str | None = None
    result: dict[str, Any] | None = None
    error_message: str | None = None
    audit_log: list[AuditEntry] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)
    version: int = 1

    @classmethod
    def new(
        cls,
        session_id: str,
        tool_name: str,
        arguments: dict[str, Any],
        risk_level: RiskLevel,
        approval_required: bool,
        message_id: str | None = None,
        requested_by: str | None = None,
    ) -> ToolRun:
        """Create a pending run with its creation audit entry."""
        run = cls(
            id=uuid.uuid4().hex,
            session_id=session_id,
            tool_name=tool_name,
            arguments=copy.deepcopy(arguments),
            risk_level=RiskLevel(risk_level),
            approval_required=approval_required,
            message_id=message_id,
            requested_by=requested_by,
        )
        run.audit_log.append(
            AuditEntry(
                event="created",
                status=ToolRunStatus.PENDING,
                timestamp=run.created_at,
                actor=requested_by,
                tool_name=tool_name,
                arguments=copy.deepcopy(arguments),
                detail=f"risk={run.risk_level.value} approval_required={approval_required}",
            )
        )
        return run

    def check_invariants(self) -> None:
        """
        Raise LedgerError if the record is internally inconsistent.
        """
        if self.result is not None and self.status is not ToolRunStatus.COMPLETED:
            raise LedgerError(f"Tool run {self.id}: result present while {self.status.value}")
        if self.error_message is not None and self.status is not ToolRunStatus.FAILED:
            raise LedgerError(f"Tool run {self.id}: error present while {self.status.value}")
        if (self.approved_by is None) != (self.approved_at is None):
            raise LedgerError(f"Tool run {self.id}: approved_by and approved_at must be set together")
        if self.approved_by is not None and not self.approval_required:
            raise LedgerError(f"Tool run {self.id}: approved although no approval was required")

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "id": self.id,
            "session_id": self.session_id,
            "message_id": self.message_id,
            "requested_by": self.requested_by,
            "tool_name": self.tool_name,
            "arguments": copy.deepcopy(self.arguments),
            "status": self.status.value,
            "risk_level": self.risk_level.value,
            "approval_required": self.approval_required,
            "approved_by": self.approved_by,
            "approved_at": self.approved_at,
            "executed_at": self.executed_at,
            "completed_at": self.completed_at,
            "result": copy.deepcopy(self.result),
            "error_message": self.error_message,
            "audit_log": [entry.to_dict() for entry in self.audit_log],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolRun:
        """Create from a dictionary produced by ``to_dict``."""
        return cls(
            id=data["id"],
            session_id=data["session_id"],
            message_id=data.get("message_id"),
            requested_by=data.get("requested_by"),
            tool_name=data["tool_name"],
            arguments=data.get("arguments") or {},
            status=ToolRunStatus(data["status"]),
            risk_level=RiskLevel(data["risk_level"]),
            approval_required=bool(data["approval_required"]),
            approved_by=data.get("approved_by"),
            approved_at=data.get("approved_at"),
            executed_at=data.get("executed_at"),
            completed_at=data.get("completed_at"),
            result=data.get("result"),
            error_message=data.get("error_message"),
            audit_log=[AuditEntry.from_dict(e) for e in data.get("audit_log", [])],
            created_at=data["created_at"],
            updated_at=data.get("updated_at", data["created_at"]),
            version=int(data.get("version", 1)),
        )


@dataclass
class _RecordLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class ToolRunStore(ABC):
    """
    Persistent store for tool runs.

    Subclasses provide record storage (``_insert``, ``_load``, ``_save``,
    ``_iter_runs``) and may add a cross-process lock (``_exclusive``);
    this class owns the state machine, the per-record locks and the audit
    trail. Returned runs are copies.
    """

    def __init__(self) -> None:
        self._locks: dict[str, _RecordLock] = {}

    @asynccontextmanager
    async def _locked(self, run_id: str) -> AsyncIterator[None]:
        record_lock = self._locks.get(run_id)
        if record_lock is None:
            record_lock = self._locks[run_id] = _RecordLock()
        record_lock.users += 1
        try:
            async with record_lock.lock:
                async with self._exclusive(run_id):
                    yield
        finally:
            record_lock.users -= 1
            if record_lock.users == 0 and self._locks.get(run_id) is record_lock:
                del self._locks[run_id]

    @asynccontextmanager
    async def _exclusive(self, run_id: str) -> AsyncIterator[None]:
        """Hold the record against other processes; a no-op by default."""
        yield

    @staticmethod
    def _check_unchanged(stored: ToolRun, previous: ToolRun) -> None:
        """Refuse a write based on a stale read."""
        if stored.version != previous.version or stored.status is not previous.status:
            logger.warning(
                "tool_run_stale_write",
                run_id=previous.id,
                loaded_version=previous.version,
                stored_version=stored.version,
                stored_status=stored.status.value,
            )
            raise TransitionConflict(previous.id, (previous.status,), stored.status)

    @abstractmethod
    async def _insert(self, run: ToolRun) -> None:
        ...

    @abstractmethod
    async def _load(self, run_id: str) -> ToolRun:
        """Load a run or raise ToolRunNotFound."""
        ...

    @abstractmethod
    async def _save(self, run: ToolRun, previous: ToolRun) -> None:
        """
        Replace ``previous`` with ``run``.

        Raises:
            TransitionConflict: If the stored record is no longer ``previous``.
        """
        ...

    @abstractmethod
    async def _iter_runs(self) -> list[ToolRun]:
        ...

    async def create(self, run: ToolRun) -> ToolRun:
        """Persist a new pending run."""
        if run.status is not ToolRunStatus.PENDING:
            raise LedgerError(f"New tool runs must be pending, got {run.status.value}")
        run.check_invariants()
        async with self._locked(run.id):
            await self._insert(copy.deepcopy(run))

        logger.info(
            "tool_run_created",
            run_id=run.id,
            session_id=run.session_id,
            tool=run.tool_name,
            risk_level=run.risk_level.value,
            approval_required=run.approval_required,
        )
        return copy.deepcopy(run)

    async def get(self, run_id: str) -> ToolRun:
        """
        Get a run by id.

        Raises:
            ToolRunNotFound: If the id is unknown.
        """
        return await self._load(run_id)

    async def transition(
        self,
        run_id: str,
        expected: ToolRunStatus | Iterable[ToolRunStatus],
        target: ToolRunStatus,
        *,
        event: str | None = None,
        actor: str | None = None,
        commands: Iterable[str] = (),
        outcome: str | None = None,
        detail: str | None = None,
        **changes: Any,
    ) -> ToolRun:
        """
        Move a run to ``target`` if its status is one of ``expected``.

        Args:
            run_id: Run to update.
            expected: Status (or statuses) the caller believes the run is in.
            target: New status.
            event: Audit event name, defaults to the target status.
            actor: Who caused the transition.
            commands: Command lines to record in the audit entry.
            outcome: Short outcome summary for the audit entry.
            detail: Free-form audit detail.
            **changes: Other fields to set (approved_by, result, ...).

        Returns:
            The updated run.

        Raises:
            InvalidTransitionError: If an ``expected -> target`` edge is not allowed.
            TransitionConflict: If the stored status is not in ``expected``.
            ToolRunNotFound: If the id is unknown.
        """
        expected_set = (
            (expected,) if isinstance(expected, ToolRunStatus) else tuple(expected)
        )
        for status in expected_set:
            check_transition(status, target)

        unknown = set(changes) - _MUTABLE_FIELDS
        if unknown:
            raise LedgerError(f"Fields cannot be changed by a transition: {sorted(unknown)}")

        async with self._locked(run_id):
            run = await self._load(run_id)
            if run.status not in expected_set:
                logger.warning(
                    "tool_run_transition_conflict",
                    run_id=run_id,
                    expected=[s.value for s in expected_set],
                    actual=run.status.value,
                    target=target.value,
                )
                raise TransitionConflict(run_id, expected_set, run.status)

            now = utc_now()
            entry = AuditEntry(
                event=event or target.value,
                status=target,
                timestamp=now,
                actor=actor,
                tool_name=run.tool_name,
                commands=tuple(commands),
                outcome=outcome,
                detail=detail,
            )
            updated = replace(
                run,
                status=target,
                updated_at=now,
                version=run.version + 1,
                audit_log=[*run.audit_log, entry],
                **changes,
            )
            updated.check_invariants()
            await self._save(updated, run)

        logger.info(
            "tool_run_transition",
            run_id=run_id,
            from_status=run.status.value,
            to_status=target.value,
            actor=actor,
            version=updated.version,
        )
        return copy.deepcopy(updated)

    async def list_for_session(self, session_id: str) -> list[ToolRun]:
        """All runs of a session, oldest first."""
        runs = [r for r in await self._iter_runs() if r.session_id == session_id]
        return sorted(runs, key=lambda r: r.created_at)

    async def list_by_status(self, *statuses: ToolRunStatus) -> list[ToolRun]:
        """All runs in any of the given statuses, oldest first."""
        wanted = set(statuses)
        runs = [r for r in await self._iter_runs() if r.status in wanted]
        return sorted(runs, key=lambda r: r.created_at)

    async def list_pending_for_user(self, user_id: str | None = None) -> list[ToolRun]:
        """
        Runs waiting for approval, oldest first.

        Args:
            user_id: Only runs requested by this user; all users when None.
        """
        runs = [
            r
            for r in await self._iter_runs()
            if r.status is ToolRunStatus.PENDING
            and r.approval_required
            and (user_id is None or r.requested_by == user_id)
        ]
        return sorted(runs, key=lambda r: r.created_at)


class InMemoryToolRunStore(ToolRunStore):
    """Process-local store, used by tests and single-process embedding."""

    def __init__(self) -> None:
        super().__init__()
        self._runs: dict[str, ToolRun] = {}

    async def _insert(self, run: ToolRun) -> None:
        if run.id in self._runs:
            raise LedgerError(f"Tool run already exists: {run.id}")
        self._runs[run.id] = run

    async def _load(self, run_id: str) -> ToolRun:
        run = self._runs.get(run_id)
        if run is None:
            raise ToolRunNotFound(run_id)
        return copy.deepcopy(run)

    async def _save(self, run: ToolRun, previous: ToolRun) -> None:
        stored = self._runs.get(run.id)
        if stored is None:
            raise ToolRunNotFound(run.id)
        self._check_unchanged(stored, previous)
        self._runs[run.id] = copy.deepcopy(run)

    async def _iter_runs(self) -> list[ToolRun]:
        return [copy.deepcopy(r) for r in self._runs.values()]


_RUN_ID_RE = re.compile(r"^[0-9a-f]{32}$")


class JsonFileToolRunStore(ToolRunStore):
    """
    One JSON file per run under a directory.

    Files are replaced atomically. Each record also has a ``<id>.lock``
    file held with ``flock`` for the whole load, check and save of a
    transition, so separate processes sharing the directory serialize on
    the record. Lock files are left in place.
    """

    def __init__(self, directory: Path, lock_poll_interval: float = 0.01) -> None:
        super().__init__()
        self.directory = Path(directory)
        self.lock_poll_interval = lock_poll_interval
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, run_id: str) -> Path:
        if not _RUN_ID_RE.match(run_id):
            raise ToolRunNotFound(run_id)
        return self.directory / f"{run_id}.json"

    @asynccontextmanager
    async def _exclusive(self, run_id: str) -> AsyncIterator[None]:
        lock_path = self._path(run_id).with_suffix(".lock")
        fd = os.open(lock_path, os.O_RDWR | os.O_CREAT, 0o600)
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    await asyncio.sleep(self.lock_poll_interval)
            yield
        finally:
            # Closing the descriptor releases the flock.
            os.close(fd)

    def _write(self, run: ToolRun) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(run.to_dict(), f, indent=2, default=str)
            os.replace(tmp_name, self._path(run.id))
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    async def _insert(self, run: ToolRun) -> None:
        if self._path(run.id).exists():
            raise LedgerError(f"Tool run already exists: {run.id}")
        self._write(run)

    async def _load(self, run_id: str) -> ToolRun:
        path = self._path(run_id)
        try:
            with open(path) as f:
                data = json.load(f)
        except FileNotFoundError:
            raise ToolRunNotFound(run_id) from None
        return ToolRun.from_dict(data)

    async def _save(self, run: ToolRun, previous: ToolRun) -> None:
        self._check_unchanged(await self._load(run.id), previous)
        self._write(run)

    async def _iter_runs(self) -> list[ToolRun]:
        runs: list[ToolRun] = []
        for path in sorted(self.directory.glob("*.json")):
            if path.name.startswith("."):
                continue
            try:
                with open(path) as f:
                    runs.append(ToolRun.from_dict(json.load(f)))
            except (OSError, ValueError, KeyError) as e:
                logger.warning("tool_run_file_unreadable", path=str(path), error=str(e))
        return runs
