"""Slice a checklist task document into ordered implement-phase batches.

Recognised format::

    ## Setup
    - [ ] T001 Create package skeleton
    - [x] T002 Add CI workflow
    - [ ] T003 Wire config loader [depends: T001]

Each ``##`` section with incomplete tasks becomes one batch. A document with
no sections falls back to fixed-size batches in document order.
"""

from __future__ import annotations

import logging
import re
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path

from flowpilot.state.model import (
    BATCH_COMPLETED,
    BATCH_FAILED,
    BATCH_HEALED,
    BATCH_PENDING,
    BATCH_RUNNING,
    Batch,
    BatchTracking,
)

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE_FALLBACK = 15
DEFAULT_SECTION = "__default__"

TASK_ID = r"[A-Z][A-Z0-9]*-?\d+"
TASK_PATTERN = re.compile(rf"^\s*[-*]\s*\[(?P<mark>[ xX])\]\s*(?P<id>{TASK_ID})\b")
SECTION_PATTERN = re.compile(r"^##\s+(?P<name>.+?)\s*$")
DEPENDENCY_PATTERN = re.compile(r"\[(?:depends?|dep|after):\s*(?P<ids>[^\]]+)\]", re.IGNORECASE)
TASK_ID_PATTERN = re.compile(TASK_ID)
PHASE_DIR_PATTERN = re.compile(r"^\d{4}-")

# Statuses that carry progress and must survive a re-plan.
_PRESERVED = frozenset({BATCH_COMPLETED, BATCH_FAILED, BATCH_HEALED, BATCH_RUNNING})


@dataclass(slots=True)
class ParsedTask:
    id: str
    completed: bool
    description: str
    section: str
    line: int
    dependencies: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ParsedSection:
    name: str
    line: int
    tasks: list[ParsedTask] = field(default_factory=list)

    def incomplete(self) -> list[ParsedTask]:
        return [task for task in self.tasks if not task.completed]


@dataclass(slots=True)
class PlannedBatch:
    section: str
    task_ids: list[str]
    dependencies: dict[str, list[str]] = field(default_factory=dict)


@dataclass(slots=True)
class BatchPlan:
    batches: list[PlannedBatch] = field(default_factory=list)
    used_fallback: bool = False
    fallback_size: int | None = None
    total_tasks: int = 0
    total_incomplete: int = 0
    dependency_warnings: list[str] = field(default_factory=list)


def parse_tasks(content: str) -> list[ParsedSection]:
    sections: list[ParsedSection] = []
    default = ParsedSection(name=DEFAULT_SECTION, line=0)
    current: ParsedSection | None = None

    for number, line in enumerate(content.splitlines(), start=1):
        section_match = SECTION_PATTERN.match(line)
        if section_match:
            current = ParsedSection(name=section_match.group("name"), line=number)
            sections.append(current)
            continue

        task_match = TASK_PATTERN.match(line)
        if not task_match:
            continue
        target = current or default
        task_id = task_match.group("id")
        remainder = line[task_match.end() :].strip()
        dependencies: list[str] = []
        dep_match = DEPENDENCY_PATTERN.search(remainder)
        if dep_match:
            dependencies = TASK_ID_PATTERN.findall(dep_match.group("ids"))
        target.tasks.append(
            ParsedTask(
                id=task_id,
                completed=task_match.group("mark").lower() == "x",
                description=DEPENDENCY_PATTERN.sub("", remainder).strip(),
                section=target.name,
                line=number,
                dependencies=dependencies,
            )
        )

    if default.tasks:
        sections.insert(0, default)
    return sections


def order_by_dependencies(tasks: list[ParsedTask]) -> list[str]:
    """Kahn's algorithm over in-batch edges; document order on ties and cycles."""
    ids = [task.id for task in tasks]
    known = set(ids)
    dependents: dict[str, list[str]] = {task_id: [] for task_id in ids}
    in_degree: dict[str, int] = {task_id: 0 for task_id in ids}
    for task in tasks:
        for dependency in task.dependencies:
            if dependency in known and dependency != task.id:
                dependents[dependency].append(task.id)
                in_degree[task.id] += 1

    queue = deque(task_id for task_id in ids if in_degree[task_id] == 0)
    ordered: list[str] = []
    while queue:
        task_id = queue.popleft()
        ordered.append(task_id)
        for dependent in dependents[task_id]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                queue.append(dependent)

    if len(ordered) != len(ids):
        logger.warning("Circular task dependency detected; keeping document order")
        return ids
    return ordered


def _dependency_warnings(tasks: list[ParsedTask], known: set[str]) -> list[str]:
    warnings: list[str] = []
    for task in tasks:
        for dependency in task.dependencies:
            if dependency not in known:
                warnings.append(f"Task {task.id} depends on {dependency}, which doesn't exist")
    return warnings


def plan_batches(content: str, batch_size_fallback: int = DEFAULT_BATCH_SIZE_FALLBACK) -> BatchPlan:
    sections = parse_tasks(content)
    all_tasks = [task for section in sections for task in section.tasks]
    incomplete = [task for task in all_tasks if not task.completed]
    known_ids = {task.id for task in all_tasks}

    real_sections = [
        section for section in sections if section.name != DEFAULT_SECTION and section.tasks
    ]
    plan = BatchPlan(total_tasks=len(all_tasks), total_incomplete=len(incomplete))
    if not real_sections and incomplete:
        size = max(1, int(batch_size_fallback))
        plan.used_fallback = True
        plan.fallback_size = size
        for offset in range(0, len(incomplete), size):
            chunk = incomplete[offset : offset + size]
            plan.batches.append(
                PlannedBatch(
                    section=f"Batch {offset // size + 1}",
                    task_ids=[task.id for task in chunk],
                )
            )
        return plan

    for section in sections:
        pending = section.incomplete()
        if not pending:
            continue
        plan.dependency_warnings.extend(_dependency_warnings(pending, known_ids))
        plan.batches.append(
            PlannedBatch(
                section=section.name,
                task_ids=order_by_dependencies(pending),
                dependencies={task.id: task.dependencies for task in pending if task.dependencies},
            )
        )
    return plan


def create_tracking(plan: BatchPlan) -> BatchTracking:
    items = [
        Batch(index=index, section=batch.section, task_ids=list(batch.task_ids))
        for index, batch in enumerate(plan.batches)
    ]
    return BatchTracking(
        total=len(items),
        current=0,
        items=items,
        planned=True,
        used_fallback=plan.used_fallback,
    )


def _fallback_name(taken: set[str]) -> str:
    number = 1
    while f"Batch {number}" in taken:
        number += 1
    name = f"Batch {number}"
    taken.add(name)
    return name


def _merge_by_task_ids(existing: BatchTracking, plan: BatchPlan) -> list[Batch]:
    # Fallback sections are positional labels, so only task ids identify work.
    kept = [item for item in existing.items if item.status in _PRESERVED]
    claimed = {task_id for item in kept for task_id in item.task_ids}
    taken = {item.section for item in kept}
    merged = list(kept)
    if plan.used_fallback:
        remaining = [
            task_id
            for batch in plan.batches
            for task_id in batch.task_ids
            if task_id not in claimed
        ]
        size = plan.fallback_size or max(1, len(remaining))
        for offset in range(0, len(remaining), size):
            merged.append(
                Batch(
                    index=0,
                    section=_fallback_name(taken),
                    task_ids=remaining[offset : offset + size],
                )
            )
        return merged
    for batch in plan.batches:
        task_ids = [task_id for task_id in batch.task_ids if task_id not in claimed]
        if task_ids:
            merged.append(Batch(index=0, section=batch.section, task_ids=task_ids))
    return merged


def _merge_by_section(existing: BatchTracking, plan: BatchPlan) -> list[Batch]:
    planned = {batch.section: batch for batch in plan.batches}
    merged: list[Batch] = []
    seen: set[str] = set()
    for item in existing.items:
        seen.add(item.section)
        if item.status in _PRESERVED:
            merged.append(item)
            continue
        fresh = planned.get(item.section)
        if fresh is None:
            continue
        merged.append(
            Batch(
                index=item.index,
                section=item.section,
                task_ids=list(fresh.task_ids),
                status=BATCH_PENDING,
                heal_attempts=item.heal_attempts,
            )
        )
    for batch in plan.batches:
        if batch.section not in seen:
            merged.append(Batch(index=0, section=batch.section, task_ids=list(batch.task_ids)))
    return merged


def merge_tracking(existing: BatchTracking, plan: BatchPlan) -> BatchTracking:
    """Re-plan without losing progress.

    Items that already completed, failed, healed or are running are kept as
    they are. With real sections, pending sections pick up the fresh task list
    and new sections are appended. When either plan used fallback sizing the
    leftover task ids not held by a kept item are re-chunked instead. A
    completed batch is never reset to pending.
    """
    if not existing.items:
        return create_tracking(plan)

    if plan.used_fallback or existing.used_fallback:
        merged = _merge_by_task_ids(existing, plan)
    else:
        merged = _merge_by_section(existing, plan)

    for index, item in enumerate(merged):
        item.index = index
    current = next((item.index for item in merged if not item.done), len(merged))
    return BatchTracking(
        total=len(merged),
        current=current,
        items=merged,
        planned=True,
        used_fallback=plan.used_fallback,
    )


def plan_summary(plan: BatchPlan) -> str:
    count = len(plan.batches)
    if count == 0:
        return "No incomplete tasks found"
    noun = "batch" if count == 1 else "batches"
    if plan.used_fallback:
        return f"{count} {noun} ({plan.total_incomplete} tasks, fallback sizing)"
    return f"{count} {noun} from task sections ({plan.total_incomplete} tasks)"


def verify_task_completion(content: str, task_ids: list[str]) -> tuple[list[str], list[str]]:
    """Split ``task_ids`` into (completed, incomplete) according to ``content``."""
    done = {
        task.id for section in parse_tasks(content) for task in section.tasks if task.completed
    }
    completed = [task_id for task_id in task_ids if task_id in done]
    incomplete = [task_id for task_id in task_ids if task_id not in done]
    return completed, incomplete


def find_tasks_document(project_root: Path, tasks_file: str = "tasks.md") -> Path | None:
    direct = project_root / tasks_file
    if direct.is_file():
        return direct
    specs = project_root / "specs"
    if not specs.is_dir():
        return None
    phases = sorted(
        (
            entry
            for entry in specs.iterdir()
            if entry.is_dir() and PHASE_DIR_PATTERN.match(entry.name)
        ),
        key=lambda entry: entry.name,
        reverse=True,
    )
    if not phases:
        return None
    # Only the newest phase counts; older phases are finished work.
    candidate = phases[0] / "tasks.md"
    return candidate if candidate.is_file() else None
