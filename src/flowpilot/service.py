"""Control surface used by the CLI and any other caller.

Every operation goes through the state store's atomic write path; none of
them talk to a running control loop directly. The loop discovers their effect
on its next read.
"""

from __future__ import annotations

import logging
from typing import Any, Literal
from uuid import uuid4

from flowpilot.config import RunConfig
from flowpilot.decisions import get_next_action, initial_step
from flowpilot.errors import ConcurrentRunConflict, FlowpilotError, RunNotFoundError, UnknownStep
from flowpilot.heal import resume_mutation
from flowpilot.loop import log_entry
from flowpilot.state.model import (
    BATCH_COMPLETED,
    BATCH_PENDING,
    EXEC_CANCELLED,
    RUN_BLOCKED,
    RUN_CANCELLED,
    RUN_FAILED,
    RUN_PAUSED,
    RUN_RUNNING,
    RUN_WAITING_INPUT,
    RUN_WAITING_MERGE,
    STEP_COMPLETE,
    STEP_NOT_STARTED,
    STEPS,
    BatchTracking,
    Cost,
    OrchestrationState,
    Run,
    Step,
    utcnow_iso,
)
from flowpilot.state.store import StateStore
from flowpilot.supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

RecoveryAction = Literal["retry", "skip", "abort"]
# Going back to any of these discards the implement plan and the spend so far.
RESET_PLAN_STEPS = frozenset({"design", "analyze", "implement"})


class OrchestrationService:
    def __init__(
        self,
        store: StateStore,
        supervisor: ProcessSupervisor | None = None,
        *,
        defaults: RunConfig | None = None,
    ) -> None:
        self.store = store
        self.supervisor = supervisor
        self.defaults = defaults or RunConfig()

    def _active_run(self, state: OrchestrationState, run_id: str | None) -> Run:
        run = state.active_run
        if run is None:
            raise RunNotFoundError(f"No active run for project {state.project}.")
        if run_id is not None and run.id != run_id:
            raise RunNotFoundError(f"Run {run_id} is not the active run ({run.id}).")
        return run

    def start(self, config: RunConfig | None = None) -> Run:
        run_config = config or self.defaults
        run_config.validate()
        created: dict[str, Run] = {}

        def _builder(state: OrchestrationState) -> tuple[dict[str, Any], dict[str, list[Any]]]:
            if state.active_run is not None:
                raise ConcurrentRunConflict(
                    f"Run {state.active_run.id} is still {state.active_run.status}.",
                    run_id=state.active_run.id,
                )
            run = Run(id=f"run-{uuid4().hex[:12]}", project=state.project, config=run_config)
            created["run"] = run
            step = Step(current=initial_step(run_config))
            mutation = {
                "project": state.project,
                "run": run.to_dict(),
                "step": step.to_dict(),
                "batches": BatchTracking().to_dict(),
                "executions": {},
                "last_execution": None,
                "cost": Cost().to_dict(),
                "answers": {},
                "resume_session": None,
            }
            entry = log_entry(
                "start", f"run {run.id} started at {step.current}", {"run_id": run.id}
            )
            return mutation, {"decision_log": [entry]}

        self.store.update(_builder)
        run = created["run"]
        logger.info("Started run %s for %s", run.id, run.project)
        return run

    def status(self, run_id: str | None = None) -> dict[str, Any]:
        state = self.store.read()
        if run_id is not None and (state.run is None or state.run.id != run_id):
            raise RunNotFoundError(f"Run {run_id} is not known for project {state.project}.")
        decision = get_next_action(state)
        snapshot = state.to_dict()
        snapshot["revision"] = state.revision
        snapshot["next_action"] = {"action": decision.action, "reason": decision.reason}
        return snapshot

    async def _kill_live(self, state: OrchestrationState, reason: str) -> list[dict[str, Any]]:
        entries: list[dict[str, Any]] = []
        for execution in state.running_executions():
            if self.supervisor is not None:
                await self.supervisor.cancel(execution.id, reason=reason)
            else:
                logger.warning("No supervisor attached; marking %s cancelled", execution.id)
                prefix = f"executions.{execution.id}"
                await self.store.awrite(
                    {
                        f"{prefix}.status": EXEC_CANCELLED,
                        f"{prefix}.ended_at": utcnow_iso(),
                        f"{prefix}.error": reason,
                    }
                )
            entries.append(
                log_entry(
                    "process_killed",
                    f"Stopped execution {execution.id} (pid {execution.pid})",
                    {"execution_id": execution.id},
                )
            )
        return entries

    async def cancel(
        self, run_id: str | None = None, *, reason: str = "Cancelled by operator"
    ) -> Run:
        state = self.store.read()
        run = self._active_run(state, run_id)
        entries = await self._kill_live(state, reason)
        entries.append(log_entry("cancel", reason, {"run_id": run.id}))
        state = await self.store.awrite(
            {"run.status": RUN_CANCELLED, "run.ended_at": utcnow_iso(), "run.error": reason},
            append={"decision_log": entries},
        )
        logger.warning("Cancelled run %s", run.id)
        assert state.run is not None
        return state.run

    async def go_back_to_step(self, step: str, run_id: str | None = None) -> OrchestrationState:
        if step not in STEPS:
            expected = ", ".join(STEPS)
            raise UnknownStep(f"Unknown step {step!r}; expected one of {expected}", step=step)
        state = self.store.read()
        run = self._active_run(state, run_id)
        entries = await self._kill_live(state, f"Manual override to {step}")
        mutation: dict[str, Any] = {
            "step": Step(current=step, status=STEP_NOT_STARTED).to_dict(),
            "run.status": RUN_RUNNING,
            "run.error": None,
            "run.heal_attempts": {},
            "run.pending_questions": [],
        }
        if step in RESET_PLAN_STEPS:
            mutation["batches"] = BatchTracking().to_dict()
            mutation["cost"] = Cost().to_dict()
        entries.append(
            log_entry("go_back_to_step", f"Manual override to {step}", {"run_id": run.id})
        )
        logger.info("Run %s sent back to %s", run.id, step)
        return await self.store.awrite(mutation, append={"decision_log": entries})

    def answer(self, answers: dict[str, Any], run_id: str | None = None) -> OrchestrationState:
        if not answers:
            raise FlowpilotError("No answers supplied.")

        def _builder(state: OrchestrationState) -> tuple[dict[str, Any], dict[str, list[Any]]]:
            run = self._active_run(state, run_id)
            mutation: dict[str, Any] = {"answers": {**state.answers, **answers}}
            if run.status == RUN_WAITING_INPUT:
                mutation.update(resume_mutation(state))
            entry = log_entry(
                "answer", f"{len(answers)} answer(s) received", {"keys": sorted(answers)}
            )
            return mutation, {"decision_log": [entry]}

        return self.store.update(_builder)

    def trigger_merge(self, run_id: str | None = None) -> OrchestrationState:
        def _builder(state: OrchestrationState) -> tuple[dict[str, Any], dict[str, list[Any]]]:
            run = self._active_run(state, run_id)
            mutation: dict[str, Any] = {"run.merge_approved": True}
            if run.status == RUN_WAITING_MERGE:
                mutation["run.status"] = RUN_RUNNING
            return mutation, {"decision_log": [log_entry("merge_approved", "Merge approved")]}

        return self.store.update(_builder)

    def pause(self, run_id: str | None = None) -> OrchestrationState:
        def _builder(state: OrchestrationState) -> tuple[dict[str, Any], dict[str, list[Any]]]:
            run = self._active_run(state, run_id)
            if run.status != RUN_RUNNING:
                raise FlowpilotError(f"Cannot pause a run that is {run.status}.")
            return {"run.status": RUN_PAUSED}, {"decision_log": [log_entry("pause", "Paused")]}

        return self.store.update(_builder)

    def resume(self, run_id: str | None = None) -> OrchestrationState:
        def _builder(state: OrchestrationState) -> tuple[dict[str, Any], dict[str, list[Any]]]:
            run = self._active_run(state, run_id)
            if run.status != RUN_PAUSED:
                raise FlowpilotError(f"Cannot resume a run that is {run.status}.")
            return {"run.status": RUN_RUNNING}, {"decision_log": [log_entry("resume", "Resumed")]}

        return self.store.update(_builder)

    async def recover(
        self, action: RecoveryAction, run_id: str | None = None
    ) -> OrchestrationState:
        """Operator answer to a blocked run: retry the stuck unit, skip it, or abort."""
        state = self.store.read()
        run = self._active_run(state, run_id)
        if run.status != RUN_BLOCKED:
            raise FlowpilotError(f"Run {run.id} is {run.status}, not blocked.")

        if action == "abort":
            entries = await self._kill_live(state, "Aborted by operator")
            entries.append(log_entry("recovery_abort", "User chose to abort"))
            return await self.store.awrite(
                {"run.status": RUN_FAILED, "run.ended_at": utcnow_iso()},
                append={"decision_log": entries},
            )

        current = state.step.current
        batch = state.batches.current_batch() if current == "implement" else None
        mutation: dict[str, Any] = {"run.status": RUN_RUNNING, "run.error": None}
        if action == "retry":
            if batch is not None:
                prefix = f"batches.items.{batch.index}"
                mutation.update(
                    {
                        f"{prefix}.status": BATCH_PENDING,
                        f"{prefix}.execution_id": None,
                        f"{prefix}.healer_execution_id": None,
                        f"{prefix}.heal_attempts": 0,
                    }
                )
            elif current in STEPS:
                mutation.update(
                    {
                        "step.status": STEP_NOT_STARTED,
                        "step.execution_id": None,
                        f"run.heal_attempts.{current}": 0,
                    }
                )
            reason = "User chose to retry"
        elif action == "skip":
            if batch is not None:
                prefix = f"batches.items.{batch.index}"
                mutation[f"{prefix}.status"] = BATCH_COMPLETED
                mutation[f"{prefix}.completed_at"] = utcnow_iso()
            elif current in STEPS:
                mutation["step.status"] = STEP_COMPLETE
            reason = "User chose to skip the current unit of work"
        else:
            raise FlowpilotError(f"Unknown recovery action: {action}")

        logger.info("Run %s recovery: %s", run.id, action)
        return await self.store.awrite(
            mutation,
            append={"decision_log": [log_entry(f"recovery_{action}", reason)]},
            expected_revision=state.revision,
        )
