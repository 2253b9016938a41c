"""Deterministic reconciliation of finished executions, plus healer prompts.

``reconcile`` runs once per execution after it reaches a terminal status and
before the decision engine is consulted again. It never asks the agent to
interpret anything; it only maps the execution outcome onto step or batch
status.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from flowpilot.skills import expected_step
from flowpilot.state.model import (
    BATCH_COMPLETED,
    BATCH_DONE,
    BATCH_FAILED,
    BATCH_HEALED,
    EXEC_CANCELLED,
    EXEC_COMPLETED,
    EXEC_FAILED,
    OUTCOME_NEEDS_INPUT,
    RUN_RUNNING,
    RUN_WAITING_INPUT,
    STEP_COMPLETE,
    STEP_FAILED,
    Execution,
    OrchestrationState,
)

STDERR_LIMIT = 2000
TRANSCRIPT_LIMIT = 3000


@dataclass(slots=True)
class Reconciliation:
    execution_id: str
    mutation: dict[str, Any]
    summary: str
    changed: bool = False


def reconcile(state: OrchestrationState, execution: Execution, *, now: str) -> Reconciliation:
    mutation: dict[str, Any] = {f"executions.{execution.id}.reconciled": True}
    if execution.cost_units:
        mutation["cost.total"] = round(state.cost.total + execution.cost_units, 6)
        if execution.heal:
            mutation["cost.healing"] = round(state.cost.healing + execution.cost_units, 6)

    batch = None
    if execution.batch_index is not None and 0 <= execution.batch_index < len(state.batches.items):
        batch = state.batches.items[execution.batch_index]
        if execution.cost_units:
            mutation[f"batches.items.{batch.index}.cost"] = round(
                batch.cost + execution.cost_units, 6
            )

    run = state.active_run
    if run is None or execution.run_id != run.id:
        return Reconciliation(execution.id, mutation, f"{execution.id} belongs to no active run")
    if execution.status == EXEC_CANCELLED:
        return Reconciliation(execution.id, mutation, f"{execution.id} was cancelled")

    if batch is not None:
        linked = execution.id in (batch.execution_id, batch.healer_execution_id)
        if not linked or state.step.current != "implement":
            summary = f"{execution.id} no longer drives a batch"
            return Reconciliation(execution.id, mutation, summary)
        return _reconcile_batch(state, execution, batch.index, mutation, now)

    step = state.step
    target = expected_step(execution.skill, execution.step)
    if step.current != target or step.execution_id != execution.id:
        return Reconciliation(
            execution.id, mutation, f"{execution.id} no longer drives step {step.current}"
        )

    if execution.outcome == OUTCOME_NEEDS_INPUT:
        return _needs_input(execution, mutation)
    if execution.status == EXEC_COMPLETED and step.status != STEP_COMPLETE:
        mutation["step.status"] = STEP_COMPLETE
        return Reconciliation(
            execution.id, mutation, f"{step.current} marked complete from {execution.id}", True
        )
    if execution.status == EXEC_FAILED and step.status != STEP_FAILED:
        mutation["step.status"] = STEP_FAILED
        return Reconciliation(
            execution.id,
            mutation,
            f"{step.current} marked failed: {execution.error or 'execution failed'}",
            True,
        )
    return Reconciliation(execution.id, mutation, f"{step.current} already {step.status}")


def _needs_input(execution: Execution, mutation: dict[str, Any]) -> Reconciliation:
    mutation["run.status"] = RUN_WAITING_INPUT
    mutation["run.pending_questions"] = list(execution.questions)
    mutation["resume_session"] = execution.session_ref
    count = len(execution.questions)
    return Reconciliation(
        execution.id, mutation, f"{execution.id} needs input ({count} question(s))", True
    )


def _reconcile_batch(
    state: OrchestrationState,
    execution: Execution,
    index: int,
    mutation: dict[str, Any],
    now: str,
) -> Reconciliation:
    batch = state.batches.items[index]
    prefix = f"batches.items.{index}"
    if execution.outcome == OUTCOME_NEEDS_INPUT:
        return _needs_input(execution, mutation)
    if execution.status == EXEC_COMPLETED and batch.status not in BATCH_DONE:
        status = BATCH_HEALED if execution.heal else BATCH_COMPLETED
        mutation[f"{prefix}.status"] = status
        mutation[f"{prefix}.completed_at"] = now
        return Reconciliation(execution.id, mutation, f"batch {index} marked {status}", True)
    if execution.status == EXEC_FAILED and batch.status != BATCH_FAILED:
        mutation[f"{prefix}.status"] = BATCH_FAILED
        return Reconciliation(
            execution.id,
            mutation,
            f"batch {index} marked failed: {execution.error or 'execution failed'}",
            True,
        )
    return Reconciliation(execution.id, mutation, f"batch {index} already {batch.status}")


def resume_mutation(state: OrchestrationState) -> dict[str, Any]:
    """Unlink the step or batch that asked questions so the next cycle re-spawns it."""
    mutation: dict[str, Any] = {
        "run.status": RUN_RUNNING,
        "run.pending_questions": [],
    }
    if state.step.current == "implement":
        batch = state.batches.current_batch()
        if batch is not None:
            prefix = f"batches.items.{batch.index}"
            mutation[f"{prefix}.status"] = "pending"
            mutation[f"{prefix}.execution_id"] = None
            mutation[f"{prefix}.healer_execution_id"] = None
        return mutation
    mutation["step.execution_id"] = None
    return mutation


@dataclass(slots=True)
class FailureContext:
    error: str
    section: str
    attempted_task_ids: list[str] = field(default_factory=list)
    completed_task_ids: list[str] = field(default_factory=list)
    failed_task_ids: list[str] = field(default_factory=list)
    stderr: str = ""
    session_ref: str | None = None
    transcript: str = ""
    additional_context: str = ""


def capture_failure_context(
    execution: Execution | None,
    *,
    section: str,
    task_ids: list[str],
    completed_task_ids: list[str] | None = None,
    stderr: str = "",
    transcript: str = "",
    additional_context: str = "",
) -> FailureContext:
    completed = [task_id for task_id in completed_task_ids or [] if task_id in task_ids]
    error = "Execution failed"
    if execution is not None:
        error = execution.error or execution.message or error
    return FailureContext(
        error=error,
        section=section,
        attempted_task_ids=list(task_ids),
        completed_task_ids=completed,
        failed_task_ids=[task_id for task_id in task_ids if task_id not in completed],
        stderr=stderr,
        session_ref=execution.session_ref if execution is not None else None,
        transcript=transcript,
        additional_context=additional_context,
    )


def build_healer_prompt(context: FailureContext) -> str:
    parts = [
        "# Auto-Heal Request",
        "A previous attempt failed and needs recovery. "
        "Your task is to complete the remaining work.",
        "## Failure Details",
        f"**Section**: {context.section}\n**Error**: {context.error}",
    ]
    if context.stderr:
        parts.append(f"**Stderr**:\n```\n{context.stderr[-STDERR_LIMIT:]}\n```")
    if context.transcript:
        parts.append(
            "## Recent Agent Output\n\n"
            f"```\n{context.transcript[-TRANSCRIPT_LIMIT:]}\n```"
        )
    if context.attempted_task_ids:
        completed = ", ".join(context.completed_task_ids) or "None"
        remaining = ", ".join(context.failed_task_ids) or "None"
        parts.append(
            "## Task Status\n\n"
            f"**Attempted Tasks**: {', '.join(context.attempted_task_ids)}\n"
            f"**Completed Before Failure**: {completed}\n"
            f"**Tasks Needing Completion**: {remaining}"
        )
    parts.append(
        "## Instructions\n\n"
        "1. Analyze the error and find the root cause.\n"
        "2. Fix the root cause.\n"
        "3. Complete the remaining work listed above.\n"
        "4. Run the tests and make sure nothing new broke."
    )
    if context.failed_task_ids:
        parts.append(
            f"Focus ONLY on the remaining tasks: {', '.join(context.failed_task_ids)}\n"
            "Do NOT re-implement already completed tasks."
        )
    if context.additional_context:
        parts.append(f"## Additional Context\n\n{context.additional_context}")
    return "\n\n".join(parts)
