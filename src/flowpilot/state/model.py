"""Typed view of the persisted orchestration record.

The record is stored as plain JSON; these dataclasses are the only way the
engine reads it. ``from_dict`` raises ``StateCorruptError`` on structurally
invalid input so callers never act on a half-understood record.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from flowpilot.config import RunConfig
from flowpilot.errors import ConfigError, StateCorruptError

STEPS: tuple[str, ...] = ("design", "analyze", "implement", "verify", "merge")

STEP_NOT_STARTED = "not_started"
STEP_IN_PROGRESS = "in_progress"
STEP_COMPLETE = "complete"
STEP_FAILED = "failed"
STEP_STATUSES = frozenset({STEP_NOT_STARTED, STEP_IN_PROGRESS, STEP_COMPLETE, STEP_FAILED})

BATCH_PENDING = "pending"
BATCH_RUNNING = "running"
BATCH_COMPLETED = "completed"
BATCH_FAILED = "failed"
BATCH_HEALED = "healed"
BATCH_STATUSES = frozenset(
    {BATCH_PENDING, BATCH_RUNNING, BATCH_COMPLETED, BATCH_FAILED, BATCH_HEALED}
)
BATCH_DONE = frozenset({BATCH_COMPLETED, BATCH_HEALED})

EXEC_RUNNING = "running"
EXEC_COMPLETED = "completed"
EXEC_FAILED = "failed"
EXEC_CANCELLED = "cancelled"
EXEC_TERMINAL = frozenset({EXEC_COMPLETED, EXEC_FAILED, EXEC_CANCELLED})

RUN_RUNNING = "running"
RUN_PAUSED = "paused"
RUN_WAITING_INPUT = "waiting_input"
RUN_WAITING_MERGE = "waiting_merge"
RUN_BLOCKED = "blocked"
RUN_COMPLETED = "completed"
RUN_FAILED = "failed"
RUN_CANCELLED = "cancelled"
RUN_TERMINAL = frozenset({RUN_COMPLETED, RUN_FAILED, RUN_CANCELLED})
RUN_STATUSES = frozenset(
    {
        RUN_RUNNING,
        RUN_PAUSED,
        RUN_WAITING_INPUT,
        RUN_WAITING_MERGE,
        RUN_BLOCKED,
        *RUN_TERMINAL,
    }
)

OUTCOME_FAILED = "failed"
OUTCOME_NEEDS_INPUT = "needs_input"


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def _require(data: Any, kind: str) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise StateCorruptError(f"Expected an object for {kind}, got {type(data).__name__}")
    return data


def _choice(value: Any, allowed: frozenset[str], kind: str) -> str:
    if value not in allowed:
        raise StateCorruptError(f"Invalid {kind}: {value!r}")
    return value


@dataclass(slots=True)
class Run:
    id: str
    project: str
    status: str = RUN_RUNNING
    started_at: str = field(default_factory=utcnow_iso)
    config: RunConfig = field(default_factory=RunConfig)
    ended_at: str | None = None
    error: str | None = None
    merge_approved: bool = False
    heal_attempts: dict[str, int] = field(default_factory=dict)
    pending_questions: list[dict[str, Any]] = field(default_factory=list)

    @property
    def active(self) -> bool:
        return self.status not in RUN_TERMINAL

    @classmethod
    def from_dict(cls, data: Any) -> Run:
        payload = _require(data, "run")
        try:
            config = RunConfig.from_dict(payload.get("config"))
        except ConfigError as exc:
            raise StateCorruptError(f"Invalid run config: {exc}") from exc
        return cls(
            id=str(payload.get("id") or ""),
            project=str(payload.get("project") or ""),
            status=_choice(payload.get("status", RUN_RUNNING), RUN_STATUSES, "run status"),
            started_at=str(payload.get("started_at") or utcnow_iso()),
            config=config,
            ended_at=payload.get("ended_at"),
            error=payload.get("error"),
            merge_approved=bool(payload.get("merge_approved", False)),
            heal_attempts={
                str(key): int(value) for key, value in (payload.get("heal_attempts") or {}).items()
            },
            pending_questions=list(payload.get("pending_questions") or []),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "project": self.project,
            "status": self.status,
            "started_at": self.started_at,
            "config": self.config.to_dict(),
            "ended_at": self.ended_at,
            "error": self.error,
            "merge_approved": self.merge_approved,
            "heal_attempts": dict(self.heal_attempts),
            "pending_questions": list(self.pending_questions),
        }


@dataclass(slots=True)
class Step:
    # Not validated against STEPS: an unknown step must reach the decision
    # engine and surface as an error decision.
    current: str = "design"
    status: str = STEP_NOT_STARTED
    execution_id: str | None = None
    started_at: str | None = None

    @classmethod
    def from_dict(cls, data: Any) -> Step:
        payload = _require(data, "step")
        return cls(
            current=str(payload.get("current", "design")),
            status=_choice(payload.get("status", STEP_NOT_STARTED), STEP_STATUSES, "step status"),
            execution_id=payload.get("execution_id"),
            started_at=payload.get("started_at"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "current": self.current,
            "status": self.status,
            "execution_id": self.execution_id,
            "started_at": self.started_at,
        }


@dataclass(slots=True)
class Batch:
    index: int
    section: str
    task_ids: list[str] = field(default_factory=list)
    status: str = BATCH_PENDING
    execution_id: str | None = None
    heal_attempts: int = 0
    healer_execution_id: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    cost: float = 0.0

    @property
    def done(self) -> bool:
        return self.status in BATCH_DONE

    @classmethod
    def from_dict(cls, data: Any) -> Batch:
        payload = _require(data, "batch")
        return cls(
            index=int(payload.get("index", 0)),
            section=str(payload.get("section", "")),
            task_ids=[str(task_id) for task_id in payload.get("task_ids") or []],
            status=_choice(payload.get("status", BATCH_PENDING), BATCH_STATUSES, "batch status"),
            execution_id=payload.get("execution_id"),
            heal_attempts=int(payload.get("heal_attempts", 0)),
            healer_execution_id=payload.get("healer_execution_id"),
            started_at=payload.get("started_at"),
            completed_at=payload.get("completed_at"),
            cost=float(payload.get("cost", 0.0)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "section": self.section,
            "task_ids": list(self.task_ids),
            "status": self.status,
            "execution_id": self.execution_id,
            "heal_attempts": self.heal_attempts,
            "healer_execution_id": self.healer_execution_id,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "cost": self.cost,
        }


@dataclass(slots=True)
class BatchTracking:
    total: int = 0
    current: int = 0
    items: list[Batch] = field(default_factory=list)
    planned: bool = False
    used_fallback: bool = False

    def current_batch(self) -> Batch | None:
        if 0 <= self.current < len(self.items):
            return self.items[self.current]
        return None

    def all_done(self) -> bool:
        return all(batch.done for batch in self.items)

    @classmethod
    def from_dict(cls, data: Any) -> BatchTracking:
        payload = _require(data, "batches")
        items = payload.get("items") or []
        if not isinstance(items, list):
            raise StateCorruptError("batches.items must be a list")
        return cls(
            total=int(payload.get("total", len(items))),
            current=int(payload.get("current", 0)),
            items=[Batch.from_dict(item) for item in items],
            planned=bool(payload.get("planned", False)),
            used_fallback=bool(payload.get("used_fallback", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "current": self.current,
            "items": [batch.to_dict() for batch in self.items],
            "planned": self.planned,
            "used_fallback": self.used_fallback,
        }


@dataclass(slots=True)
class Execution:
    id: str
    run_id: str
    skill: str
    step: str
    status: str = EXEC_RUNNING
    batch_index: int | None = None
    outcome: str | None = None
    started_at: str = field(default_factory=utcnow_iso)
    ended_at: str | None = None
    timeout_ms: int = 0
    pid: int | None = None
    cost_units: float = 0.0
    session_ref: str | None = None
    error: str | None = None
    message: str | None = None
    questions: list[dict[str, Any]] = field(default_factory=list)
    heal: bool = False
    reconciled: bool = False
    exit_code: int | None = None

    @property
    def terminal(self) -> bool:
        return self.status in EXEC_TERMINAL

    @classmethod
    def from_dict(cls, data: Any) -> Execution:
        payload = _require(data, "execution")
        batch_index = payload.get("batch_index")
        return cls(
            id=str(payload.get("id") or ""),
            run_id=str(payload.get("run_id") or ""),
            skill=str(payload.get("skill") or ""),
            step=str(payload.get("step") or ""),
            status=_choice(
                payload.get("status", EXEC_RUNNING),
                frozenset({EXEC_RUNNING, *EXEC_TERMINAL}),
                "execution status",
            ),
            batch_index=int(batch_index) if batch_index is not None else None,
            outcome=payload.get("outcome"),
            started_at=str(payload.get("started_at") or utcnow_iso()),
            ended_at=payload.get("ended_at"),
            timeout_ms=int(payload.get("timeout_ms", 0)),
            pid=payload.get("pid"),
            cost_units=float(payload.get("cost_units", 0.0)),
            session_ref=payload.get("session_ref"),
            error=payload.get("error"),
            message=payload.get("message"),
            questions=list(payload.get("questions") or []),
            heal=bool(payload.get("heal", False)),
            reconciled=bool(payload.get("reconciled", False)),
            exit_code=payload.get("exit_code"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "skill": self.skill,
            "step": self.step,
            "status": self.status,
            "batch_index": self.batch_index,
            "outcome": self.outcome,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "timeout_ms": self.timeout_ms,
            "pid": self.pid,
            "cost_units": self.cost_units,
            "session_ref": self.session_ref,
            "error": self.error,
            "message": self.message,
            "questions": list(self.questions),
            "heal": self.heal,
            "reconciled": self.reconciled,
            "exit_code": self.exit_code,
        }


@dataclass(slots=True)
class Cost:
    total: float = 0.0
    healing: float = 0.0

    @classmethod
    def from_dict(cls, data: Any) -> Cost:
        payload = _require(data, "cost")
        return cls(
            total=float(payload.get("total", 0.0)),
            healing=float(payload.get("healing", 0.0)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"total": self.total, "healing": self.healing}


@dataclass(slots=True, frozen=True)
class DecisionLogEntry:
    timestamp: str
    action: str
    reason: str
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> DecisionLogEntry:
        payload = _require(data, "decision log entry")
        return cls(
            timestamp=str(payload.get("timestamp", "")),
            action=str(payload.get("action", "")),
            reason=str(payload.get("reason", "")),
            data=dict(payload.get("data") or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "action": self.action,
            "reason": self.reason,
            "data": dict(self.data),
        }


@dataclass(slots=True)
class OrchestrationState:
    project: str = ""
    run: Run | None = None
    step: Step = field(default_factory=Step)
    batches: BatchTracking = field(default_factory=BatchTracking)
    executions: dict[str, Execution] = field(default_factory=dict)
    last_execution: str | None = None
    cost: Cost = field(default_factory=Cost)
    answers: dict[str, Any] = field(default_factory=dict)
    resume_session: str | None = None
    decision_log: list[DecisionLogEntry] = field(default_factory=list)
    revision: int = field(default=0, compare=False)

    @property
    def active_run(self) -> Run | None:
        if self.run is not None and self.run.active:
            return self.run
        return None

    def execution(self, execution_id: str | None) -> Execution | None:
        if not execution_id:
            return None
        return self.executions.get(execution_id)

    def latest_execution(self) -> Execution | None:
        return self.execution(self.last_execution)

    def running_executions(self) -> list[Execution]:
        return [item for item in self.executions.values() if item.status == EXEC_RUNNING]

    @classmethod
    def from_dict(cls, data: Any, *, revision: int = 0) -> OrchestrationState:
        payload = _require(data, "orchestration state")
        executions = _require(payload.get("executions") or {}, "executions")
        log = payload.get("decision_log") or []
        if not isinstance(log, list):
            raise StateCorruptError("decision_log must be a list")
        try:
            return cls(
                project=str(payload.get("project", "")),
                run=Run.from_dict(payload["run"]) if payload.get("run") else None,
                step=Step.from_dict(payload.get("step") or {}),
                batches=BatchTracking.from_dict(payload.get("batches") or {}),
                executions={
                    str(key): Execution.from_dict(value) for key, value in executions.items()
                },
                last_execution=payload.get("last_execution"),
                cost=Cost.from_dict(payload.get("cost") or {}),
                answers=dict(_require(payload.get("answers") or {}, "answers")),
                resume_session=payload.get("resume_session"),
                decision_log=[DecisionLogEntry.from_dict(entry) for entry in log],
                revision=revision,
            )
        except (TypeError, ValueError) as exc:
            raise StateCorruptError(f"Malformed orchestration state: {exc}") from exc

    def to_dict(self) -> dict[str, Any]:
        return {
            "project": self.project,
            "run": self.run.to_dict() if self.run else None,
            "step": self.step.to_dict(),
            "batches": self.batches.to_dict(),
            "executions": {key: value.to_dict() for key, value in self.executions.items()},
            "last_execution": self.last_execution,
            "cost": self.cost.to_dict(),
            "answers": dict(self.answers),
            "resume_session": self.resume_session,
            "decision_log": [entry.to_dict() for entry in self.decision_log],
        }
