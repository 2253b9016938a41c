"""Per-project control loop.

Each cycle: resolve finished or stale executions, reconcile them into step and
batch status, compute one decision from a fresh snapshot, and apply it in a
single write guarded by the snapshot's revision. A write that loses the race
is dropped and the decision is recomputed next cycle.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from flowpilot.decisions import (
    ADVANCE_BATCH,
    DONE,
    ERROR,
    ESCALATE,
    FAIL,
    HEAL,
    HEAL_BATCH,
    IDLE,
    INITIALIZE_BATCHES,
    PASSIVE_ACTIONS,
    SPAWN,
    SPAWN_BATCH,
    TRANSITION,
    WAIT_FOR_MANUAL_MERGE,
    Decision,
    get_next_action,
)
from flowpilot.errors import ConcurrentUpdateError, ExecutionError, HealExhausted
from flowpilot.heal import build_healer_prompt, capture_failure_context, reconcile
from flowpilot.planner import (
    find_tasks_document,
    merge_tracking,
    plan_batches,
    plan_summary,
    verify_task_completion,
)
from flowpilot.skills import HEAL_SKILL, SpawnContext
from flowpilot.state.model import (
    BATCH_RUNNING,
    RUN_BLOCKED,
    RUN_COMPLETED,
    RUN_FAILED,
    RUN_PAUSED,
    RUN_RUNNING,
    RUN_WAITING_MERGE,
    STEP_IN_PROGRESS,
    STEP_NOT_STARTED,
    DecisionLogEntry,
    OrchestrationState,
    Run,
    utcnow_iso,
)
from flowpilot.state.store import StateStore
from flowpilot.supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

LOOP_STARTING = "starting"
LOOP_ACTIVE = "active"
LOOP_IDLE = "idle"


def log_entry(action: str, reason: str, data: dict[str, Any] | None = None) -> dict[str, Any]:
    return DecisionLogEntry(
        timestamp=utcnow_iso(), action=action, reason=reason, data=dict(data or {})
    ).to_dict()


class ControlLoop:
    def __init__(
        self,
        store: StateStore,
        supervisor: ProcessSupervisor,
        *,
        poll_interval_seconds: float = 3.0,
        max_cycles: int = 0,
        tasks_file: str = "tasks.md",
    ) -> None:
        self.store = store
        self.supervisor = supervisor
        self.project_root: Path = store.project_root
        self.poll_interval_seconds = poll_interval_seconds
        self.max_cycles = max_cycles
        self.tasks_file = tasks_file
        self.phase = LOOP_STARTING

    async def recover(self) -> OrchestrationState:
        """Resolve whatever a previous engine instance left running."""
        self.phase = LOOP_STARTING
        resolved = await self.supervisor.refresh()
        for execution in resolved:
            logger.info("Recovered execution %s as %s", execution.id, execution.status)
        await self.reconcile_finished()
        state = self.store.read()
        self.phase = LOOP_ACTIVE if state.active_run else LOOP_IDLE
        return state

    async def reconcile_finished(self) -> int:
        """Fold every terminal, unreconciled execution into step or batch status."""
        count = 0
        while True:
            state = self.store.read()
            pending = [
                execution
                for execution in state.executions.values()
                if execution.terminal and not execution.reconciled
            ]
            if not pending:
                return count
            result = reconcile(state, pending[0], now=utcnow_iso())
            entry = log_entry("reconcile", result.summary, {"execution_id": result.execution_id})
            try:
                await self.store.awrite(
                    result.mutation,
                    append={"decision_log": [entry]},
                    expected_revision=state.revision,
                )
            except ConcurrentUpdateError:
                continue
            logger.info("Reconciled %s: %s", result.execution_id, result.summary)
            count += 1

    async def run_cycle(self) -> Decision:
        await self.supervisor.refresh()
        await self.reconcile_finished()
        state = self.store.read()
        decision = get_next_action(state)
        try:
            await self._apply(state, decision)
        except ConcurrentUpdateError:
            logger.debug("State moved on before %s was applied; recomputing", decision.action)
        except ExecutionError as exc:
            logger.warning("Execution could not start: %s", exc)
        except HealExhausted as exc:
            logger.warning("Run blocked: %s", exc)
            escalation = Decision(ESCALATE, str(exc), step=exc.step, batch_index=exc.batch_index)
            try:
                await self._write(
                    state, escalation, {"run.status": RUN_BLOCKED, "run.error": str(exc)}
                )
            except ConcurrentUpdateError:
                logger.debug("State moved on before the escalation was recorded")
            return escalation
        return decision

    def _halted(self) -> bool:
        """A run that waits on a human with nothing running cannot progress on its own."""
        state = self.store.read()
        run = state.active_run
        return run is not None and run.status != RUN_RUNNING and not state.running_executions()

    async def run(self, *, until_idle: bool = True) -> Decision:
        """Drive cycles until the run needs nobody (idle) or needs a human."""
        await self.recover()
        cycles = 0
        try:
            while True:
                decision = await self.run_cycle()
                cycles += 1
                self.phase = LOOP_IDLE if decision.action == IDLE else LOOP_ACTIVE
                if until_idle and (decision.action == IDLE or self._halted()):
                    return decision
                if self.max_cycles and cycles >= self.max_cycles:
                    return decision
                if decision.action in PASSIVE_ACTIONS:
                    await self.supervisor.wait_for_activity(self.poll_interval_seconds)
        finally:
            await self.supervisor.shutdown()

    async def _write(
        self,
        state: OrchestrationState,
        decision: Decision,
        mutation: dict[str, Any] | None = None,
        *,
        extra: dict[str, Any] | None = None,
    ) -> None:
        data = decision.to_log_data()
        data.update(extra or {})
        await self.store.awrite(
            mutation or {},
            append={"decision_log": [log_entry(decision.action, decision.reason, data)]},
            expected_revision=state.revision,
        )

    async def _log_passive(self, state: OrchestrationState, decision: Decision) -> None:
        if state.run is None:
            return
        last = state.decision_log[-1] if state.decision_log else None
        # Consecutive identical waits collapse into one entry.
        if last is not None and last.action == decision.action and last.reason == decision.reason:
            return
        await self._write(state, decision)

    async def _apply(self, state: OrchestrationState, decision: Decision) -> None:
        action = decision.action
        if action in PASSIVE_ACTIONS:
            await self._log_passive(state, decision)
            return

        logger.info("Decision %s: %s", action, decision.reason)
        run = state.run
        assert run is not None
        now = utcnow_iso()

        if action == SPAWN:
            await self._spawn_step(state, run, decision, heal=False)
        elif action == HEAL:
            await self._spawn_step(state, run, decision, heal=True)
        elif action == TRANSITION:
            await self._write(
                state,
                decision,
                {
                    "step.current": decision.target,
                    "step.status": STEP_NOT_STARTED,
                    "step.execution_id": None,
                    "step.started_at": None,
                },
            )
        elif action == INITIALIZE_BATCHES:
            await self._initialize_batches(state, decision)
        elif action == SPAWN_BATCH:
            await self._spawn_batch(state, run, decision, heal=False)
        elif action == HEAL_BATCH:
            await self._spawn_batch(state, run, decision, heal=True)
        elif action == ADVANCE_BATCH:
            mutation: dict[str, Any] = {"batches.current": state.batches.current + 1}
            if decision.pause_after:
                mutation["run.status"] = RUN_PAUSED
            await self._write(state, decision, mutation)
        elif action == WAIT_FOR_MANUAL_MERGE:
            await self._write(state, decision, {"run.status": RUN_WAITING_MERGE})
        elif action in (ESCALATE, ERROR):
            logger.warning("Run %s blocked: %s", run.id, decision.reason)
            await self._write(
                state, decision, {"run.status": RUN_BLOCKED, "run.error": decision.reason}
            )
        elif action == DONE:
            await self._write(state, decision, {"run.status": RUN_COMPLETED, "run.ended_at": now})
        elif action == FAIL:
            for execution in state.running_executions():
                await self.supervisor.cancel(execution.id, reason=decision.reason)
            await self.store.awrite(
                {"run.status": RUN_FAILED, "run.error": decision.reason, "run.ended_at": now},
                append={
                    "decision_log": [
                        log_entry(decision.action, decision.reason, decision.to_log_data())
                    ]
                },
            )
        else:
            raise ValueError(f"Unhandled decision action: {action}")

    def _base_context(
        self, state: OrchestrationState, run: Run, decision: Decision
    ) -> SpawnContext:
        return SpawnContext(
            run_id=run.id,
            skill=decision.skill or "",
            step=decision.step or state.step.current,
            additional_context=run.config.additional_context,
            answers=dict(state.answers),
            resume_session=state.resume_session,
        )

    async def _spawn_step(
        self, state: OrchestrationState, run: Run, decision: Decision, *, heal: bool
    ) -> None:
        step = state.step.current
        execution_id = self.supervisor.new_execution_id()
        context = self._base_context(state, run, decision)
        link: dict[str, Any] = {
            "step.status": STEP_IN_PROGRESS,
            "step.execution_id": execution_id,
            "step.started_at": utcnow_iso(),
            "answers": {},
            "resume_session": None,
        }
        if heal:
            if run.heal_attempts.get(step, 0) >= 1:
                raise HealExhausted(f"{step} already used its heal attempt", step=step)
            failed = state.execution(state.step.execution_id)
            failure = capture_failure_context(
                failed,
                section=step,
                task_ids=[],
                stderr=self.supervisor.read_output_tail(failed.id) if failed else "",
                transcript=self.supervisor.read_output_tail(failed.id, "stdout") if failed else "",
            )
            context.heal = True
            context.failure_report = build_healer_prompt(failure)
            context.resume_session = failure.session_ref
            link[f"run.heal_attempts.{step}"] = run.heal_attempts.get(step, 0) + 1
        await self.supervisor.spawn(
            context,
            execution_id=execution_id,
            link=link,
            append={
                "decision_log": [
                    log_entry(
                        decision.action,
                        decision.reason,
                        {**decision.to_log_data(), "execution_id": execution_id},
                    )
                ]
            },
            expected_revision=state.revision,
        )

    async def _spawn_batch(
        self, state: OrchestrationState, run: Run, decision: Decision, *, heal: bool
    ) -> None:
        index = decision.batch_index if decision.batch_index is not None else state.batches.current
        batch = state.batches.items[index]
        prefix = f"batches.items.{index}"
        execution_id = self.supervisor.new_execution_id()
        context = self._base_context(state, run, decision)
        context.batch_index = index
        context.section = batch.section
        context.task_ids = list(batch.task_ids)
        context.instructions = decision.context
        link: dict[str, Any] = {
            f"{prefix}.status": BATCH_RUNNING,
            f"{prefix}.started_at": utcnow_iso(),
            "answers": {},
            "resume_session": None,
        }
        if heal:
            if batch.heal_attempts >= 1:
                raise HealExhausted(
                    f"batch {index} ({batch.section}) already used its heal attempt",
                    step="implement",
                    batch_index=index,
                )
            failed = state.execution(batch.healer_execution_id or batch.execution_id)
            document = find_tasks_document(self.project_root, self.tasks_file)
            completed: list[str] = []
            if document is not None:
                completed, _ = verify_task_completion(
                    document.read_text(encoding="utf-8"), batch.task_ids
                )
            failure = capture_failure_context(
                failed,
                section=batch.section,
                task_ids=batch.task_ids,
                completed_task_ids=completed,
                stderr=self.supervisor.read_output_tail(failed.id) if failed else "",
                transcript=self.supervisor.read_output_tail(failed.id, "stdout") if failed else "",
                additional_context=run.config.additional_context,
            )
            context.skill = HEAL_SKILL
            context.heal = True
            context.failure_report = build_healer_prompt(failure)
            context.resume_session = failure.session_ref
            context.additional_context = ""
            link[f"{prefix}.healer_execution_id"] = execution_id
            link[f"{prefix}.heal_attempts"] = batch.heal_attempts + 1
        else:
            link[f"{prefix}.execution_id"] = execution_id
        await self.supervisor.spawn(
            context,
            execution_id=execution_id,
            link=link,
            append={
                "decision_log": [
                    log_entry(
                        decision.action,
                        decision.reason,
                        {**decision.to_log_data(), "execution_id": execution_id},
                    )
                ]
            },
            expected_revision=state.revision,
        )

    async def _initialize_batches(self, state: OrchestrationState, decision: Decision) -> None:
        run = state.run
        assert run is not None
        document = find_tasks_document(self.project_root, self.tasks_file)
        if document is None:
            reason = f"no task document found ({self.tasks_file} or specs/NNNN-*/tasks.md)"
            logger.warning("Run %s blocked: %s", run.id, reason)
            await self._write(
                state,
                Decision(ESCALATE, reason, step="implement"),
                {"run.status": RUN_BLOCKED, "run.error": reason},
            )
            return
        plan = plan_batches(document.read_text(encoding="utf-8"), run.config.batch_size_fallback)
        for warning in plan.dependency_warnings:
            logger.warning("%s", warning)
        tracking = merge_tracking(state.batches, plan)
        await self._write(
            state,
            decision,
            {"batches": tracking.to_dict()},
            extra={
                "summary": plan_summary(plan),
                "total": tracking.total,
                "dependency_warnings": list(plan.dependency_warnings),
            },
        )


async def run_projects(loops: list[ControlLoop], *, until_idle: bool = True) -> list[Decision]:
    """Drive one loop per project concurrently; they share no state."""
    return list(await asyncio.gather(*(loop.run(until_idle=until_idle) for loop in loops)))

