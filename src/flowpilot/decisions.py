"""Pure next-action function.

``get_next_action`` looks only at the snapshot it is given. Rules are
evaluated top-down and the first match wins; every branch returns a
``Decision`` with a reason suitable for the decision log.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from flowpilot.config import RunConfig
from flowpilot.skills import SKILL_FOR_STEP
from flowpilot.state.model import (
    BATCH_FAILED,
    BATCH_PENDING,
    RUN_RUNNING,
    STEP_COMPLETE,
    STEP_FAILED,
    STEPS,
    Batch,
    OrchestrationState,
    Run,
)

IDLE = "idle"
WAIT = "wait"
SPAWN = "spawn"
TRANSITION = "transition"
HEAL = "heal"
INITIALIZE_BATCHES = "initialize_batches"
SPAWN_BATCH = "spawn_batch"
ADVANCE_BATCH = "advance_batch"
HEAL_BATCH = "heal_batch"
ESCALATE = "escalate"
WAIT_FOR_MANUAL_MERGE = "wait_for_manual_merge"
DONE = "done"
FAIL = "fail"
ERROR = "error"

# Actions that change nothing; the loop sleeps after them.
PASSIVE_ACTIONS = frozenset({IDLE, WAIT})


@dataclass(slots=True, frozen=True)
class Decision:
    action: str
    reason: str
    step: str | None = None
    skill: str | None = None
    target: str | None = None
    batch_index: int | None = None
    context: str = ""
    pause_after: bool = False

    def to_log_data(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        for key in ("step", "skill", "target", "batch_index"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        if self.pause_after:
            data["pause_after"] = True
        return data


def next_step(step: str, config: RunConfig) -> str | None:
    if step == "design":
        return "implement" if config.skip_analyze else "analyze"
    if step in STEPS and step != "merge":
        return STEPS[STEPS.index(step) + 1]
    return None


def initial_step(config: RunConfig) -> str:
    if not config.skip_design:
        return "design"
    return "implement" if config.skip_analyze else "analyze"


def batch_instructions(batch: Batch) -> str:
    ids = ", ".join(batch.task_ids)
    return (
        f'Execute only the "{batch.section}" section ({ids}). '
        "Do NOT work on tasks from other sections."
    )


def _heal_blocker(run: Run, state: OrchestrationState, attempts: int) -> str | None:
    if not run.config.auto_heal_enabled:
        return "auto-heal is disabled"
    if attempts >= 1:
        return "heal attempt already used"
    limit = run.config.budget.healing_budget
    if limit > 0 and state.cost.healing >= limit:
        return "healing budget exhausted"
    return None


def _stalled(state: OrchestrationState, execution_id: str) -> str:
    execution = state.execution(execution_id)
    if execution is None:
        return f"execution {execution_id} is not in the record"
    return f"execution {execution_id} ended {execution.status} without a result"


def _decide_step(state: OrchestrationState, run: Run, current: str) -> Decision:
    step = state.step
    skill = SKILL_FOR_STEP[current]

    if step.status == STEP_COMPLETE:
        if current == "verify" and not (run.config.auto_merge or run.merge_approved):
            return Decision(
                WAIT_FOR_MANUAL_MERGE,
                "verify complete; auto-merge disabled, waiting for manual merge",
                step=current,
            )
        target = next_step(current, run.config)
        return Decision(
            TRANSITION, f"{current} complete; moving to {target}", step=current, target=target
        )

    if step.status == STEP_FAILED:
        blocker = _heal_blocker(run, state, run.heal_attempts.get(current, 0))
        if blocker:
            return Decision(ESCALATE, f"{current} failed and {blocker}", step=current)
        return Decision(HEAL, f"{current} failed; attempting heal", step=current, skill=skill)

    if current == "merge" and not (run.config.auto_merge or run.merge_approved):
        return Decision(
            WAIT_FOR_MANUAL_MERGE, "auto-merge disabled, waiting for manual merge", step=current
        )

    if step.execution_id is None:
        return Decision(SPAWN, f"no execution yet for {current}", step=current, skill=skill)

    reason = f"{current} stalled: {_stalled(state, step.execution_id)}"
    return Decision(ESCALATE, reason, step=current)


def _decide_implement(state: OrchestrationState, run: Run) -> Decision:
    step = state.step
    batches = state.batches

    if step.status == STEP_COMPLETE:
        return Decision(
            TRANSITION, "implement complete; moving to verify", step="implement", target="verify"
        )
    if step.status == STEP_FAILED:
        return Decision(ESCALATE, "implement step marked failed", step="implement")
    if not batches.planned:
        return Decision(
            INITIALIZE_BATCHES, "implement entered without a batch plan", step="implement"
        )
    if batches.all_done():
        return Decision(
            TRANSITION,
            f"all {len(batches.items)} batches done; moving to verify",
            step="implement",
            target="verify",
        )

    batch = batches.current_batch()
    if batch is None:
        reason = f"current batch index {batches.current} out of range"
        return Decision(ERROR, reason, step="implement")

    limit = run.config.budget.max_per_batch
    if limit > 0 and batch.cost >= limit and not batch.done:
        return Decision(
            FAIL,
            f"batch {batch.index} spent {batch.cost:.2f} of {limit:.2f} per-batch budget",
            step="implement",
            batch_index=batch.index,
        )

    if batch.done:
        following = batch.index + 1 < len(batches.items)
        return Decision(
            ADVANCE_BATCH,
            f'batch {batch.index} "{batch.section}" {batch.status}; advancing',
            step="implement",
            batch_index=batch.index,
            pause_after=run.config.pause_between_batches and following,
        )

    if batch.status == BATCH_FAILED:
        blocker = _heal_blocker(run, state, batch.heal_attempts)
        if blocker:
            return Decision(
                ESCALATE,
                f"batch {batch.index} failed and {blocker}",
                step="implement",
                batch_index=batch.index,
            )
        return Decision(
            HEAL_BATCH,
            f"batch {batch.index} failed; attempting heal",
            step="implement",
            skill="flow.heal",
            batch_index=batch.index,
            context=batch_instructions(batch),
        )

    if batch.status == BATCH_PENDING and batch.execution_id is None:
        return Decision(
            SPAWN_BATCH,
            f'batch {batch.index + 1}/{len(batches.items)} "{batch.section}" ready',
            step="implement",
            skill=SKILL_FOR_STEP["implement"],
            batch_index=batch.index,
            context=batch_instructions(batch),
        )

    execution_id = batch.healer_execution_id or batch.execution_id
    reason = _stalled(state, execution_id) if execution_id else "no execution recorded"
    return Decision(
        ESCALATE,
        f"batch {batch.index} is {batch.status} but {reason}",
        step="implement",
        batch_index=batch.index,
    )


def get_next_action(state: OrchestrationState) -> Decision:
    run = state.active_run
    if run is None:
        return Decision(IDLE, "no active run")
    if run.status != RUN_RUNNING:
        return Decision(WAIT, f"run is {run.status}")

    running = state.running_executions()
    if running:
        return Decision(WAIT, f"execution {running[0].id} ({running[0].skill}) still running")

    latest = state.latest_execution()
    if latest is not None and latest.terminal and not latest.reconciled:
        return Decision(WAIT, f"execution {latest.id} finished; awaiting reconciliation")

    limit = run.config.budget.max_total
    if limit > 0 and state.cost.total >= limit:
        return Decision(FAIL, f"total budget exhausted ({state.cost.total:.2f} of {limit:.2f})")

    current = state.step.current
    if current not in STEPS:
        return Decision(ERROR, f"unknown step {current!r}", step=current)

    if current == "implement":
        return _decide_implement(state, run)
    if current == "merge" and state.step.status == STEP_COMPLETE:
        return Decision(DONE, "merge complete", step=current)
    return _decide_step(state, run, current)
