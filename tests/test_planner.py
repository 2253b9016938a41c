from pathlib import Path

from flowpilot.planner import (
    DEFAULT_SECTION,
    create_tracking,
    find_tasks_document,
    merge_tracking,
    order_by_dependencies,
    parse_tasks,
    plan_batches,
    plan_summary,
    verify_task_completion,
)
from flowpilot.state.model import BATCH_COMPLETED, BATCH_PENDING, BATCH_RUNNING

TASKS = """\
# Tasks

- [ ] T000 Bootstrap repository

## Setup
- [x] T001 Create package skeleton
- [ ] T002 Add config loader
- [ ] T003 Wire config into CLI [depends: T004]
- [ ] T004 Define config schema

## Core
- [ ] T005 Build engine
* [X] T006 Document engine

## Polish
- [x] T007 Tidy README
"""


def test_parse_tasks_groups_by_section_with_leading_default() -> None:
    sections = parse_tasks(TASKS)

    assert [section.name for section in sections] == [DEFAULT_SECTION, "Setup", "Core", "Polish"]
    setup = sections[1]
    assert [task.id for task in setup.tasks] == ["T001", "T002", "T003", "T004"]
    assert setup.tasks[0].completed is True
    assert setup.tasks[2].dependencies == ["T004"]
    assert setup.tasks[2].description == "Wire config into CLI"
    assert sections[2].tasks[1].completed is True


def test_plan_batches_uses_sections_and_skips_completed_work() -> None:
    plan = plan_batches(TASKS)

    assert plan.used_fallback is False
    assert [batch.section for batch in plan.batches] == [DEFAULT_SECTION, "Setup", "Core"]
    assert plan.batches[1].task_ids == ["T002", "T004", "T003"]
    assert plan.batches[1].dependencies == {"T003": ["T004"]}
    assert plan.batches[2].task_ids == ["T005"]
    assert plan.total_tasks == 8
    assert plan.total_incomplete == 5
    assert plan.dependency_warnings == []


def test_plan_batches_falls_back_to_fixed_size_chunks() -> None:
    content = "\n".join(f"- [ ] T{number:03d} task {number}" for number in range(1, 8))

    plan = plan_batches(content, batch_size_fallback=3)

    assert plan.used_fallback is True
    assert plan.fallback_size == 3
    assert [batch.section for batch in plan.batches] == ["Batch 1", "Batch 2", "Batch 3"]
    assert plan.batches[2].task_ids == ["T007"]
    assert plan_summary(plan) == "3 batches (7 tasks, fallback sizing)"


def test_plan_batches_on_fully_completed_document_is_empty() -> None:
    plan = plan_batches("## Done\n- [x] T001 shipped\n")

    assert plan.batches == []
    assert plan_summary(plan) == "No incomplete tasks found"
    tracking = create_tracking(plan)
    assert tracking.planned is True
    assert tracking.all_done() is True


def test_unknown_dependency_produces_warning() -> None:
    plan = plan_batches("## Core\n- [ ] T001 a [after: T099]\n")

    assert plan.dependency_warnings == ["Task T001 depends on T099, which doesn't exist"]


def test_dependency_cycle_keeps_document_order() -> None:
    sections = parse_tasks(
        "## Loop\n- [ ] T001 a [depends: T002]\n- [ ] T002 b [dep: T001]\n- [ ] T003 c\n"
    )

    assert order_by_dependencies(sections[0].tasks) == ["T001", "T002", "T003"]


def test_merge_tracking_preserves_progress_and_appends_new_sections() -> None:
    existing = create_tracking(plan_batches(TASKS))
    existing.items[0].status = BATCH_COMPLETED
    existing.items[0].execution_id = "exec-a"
    existing.items[1].status = BATCH_RUNNING
    existing.items[1].execution_id = "exec-b"

    revised = TASKS.replace("- [ ] T000", "- [x] T000").replace(
        "- [ ] T005 Build engine", "- [ ] T005 Build engine\n- [ ] T008 Add metrics"
    )
    revised += "\n## Release\n- [ ] T009 Tag release\n"
    merged = merge_tracking(existing, plan_batches(revised))

    assert [item.section for item in merged.items] == [
        DEFAULT_SECTION,
        "Setup",
        "Core",
        "Release",
    ]
    assert merged.items[0].status == BATCH_COMPLETED
    assert merged.items[0].execution_id == "exec-a"
    assert merged.items[1].execution_id == "exec-b"
    assert merged.items[2].task_ids == ["T005", "T008"]
    assert [item.index for item in merged.items] == [0, 1, 2, 3]
    assert merged.total == 4
    assert merged.current == 1


def test_merge_tracking_drops_pending_sections_that_disappeared() -> None:
    existing = create_tracking(plan_batches(TASKS))

    merged = merge_tracking(existing, plan_batches("## Core\n- [ ] T005 Build engine\n"))

    assert [item.section for item in merged.items] == ["Core"]
    assert merged.current == 0


def test_merge_tracking_rechunks_leftover_fallback_tasks() -> None:
    content = "\n".join(f"- [ ] T{number:03d} task {number}" for number in range(1, 6))
    existing = create_tracking(plan_batches(content, batch_size_fallback=2))
    existing.items[0].status = BATCH_COMPLETED
    existing.items[0].execution_id = "exec-a"

    done = content.replace("- [ ] T001", "- [x] T001").replace("- [ ] T002", "- [x] T002")
    merged = merge_tracking(existing, plan_batches(done, batch_size_fallback=2))

    assert [(item.section, item.task_ids, item.status) for item in merged.items] == [
        ("Batch 1", ["T001", "T002"], BATCH_COMPLETED),
        ("Batch 2", ["T003", "T004"], BATCH_PENDING),
        ("Batch 3", ["T005"], BATCH_PENDING),
    ]
    assert merged.items[0].execution_id == "exec-a"
    assert merged.current == 1
    assert merged.all_done() is False
    assert merged.used_fallback is True


def test_merge_tracking_keeps_running_fallback_batch_out_of_new_chunks() -> None:
    content = "\n".join(f"- [ ] T{number:03d} task {number}" for number in range(1, 5))
    existing = create_tracking(plan_batches(content, batch_size_fallback=2))
    existing.items[0].status = BATCH_RUNNING

    merged = merge_tracking(existing, plan_batches(content, batch_size_fallback=3))

    assert [(item.section, item.task_ids) for item in merged.items] == [
        ("Batch 1", ["T001", "T002"]),
        ("Batch 2", ["T003", "T004"]),
    ]
    assert merged.current == 0


def test_verify_task_completion_splits_ids() -> None:
    completed, incomplete = verify_task_completion(TASKS, ["T001", "T002", "T006", "T404"])

    assert completed == ["T001", "T006"]
    assert incomplete == ["T002", "T404"]


def test_find_tasks_document_prefers_direct_file(tmp_path: Path) -> None:
    (tmp_path / "tasks.md").write_text(TASKS, encoding="utf-8")
    phase = tmp_path / "specs" / "0002-engine"
    phase.mkdir(parents=True)
    (phase / "tasks.md").write_text(TASKS, encoding="utf-8")

    assert find_tasks_document(tmp_path) == tmp_path / "tasks.md"


def test_find_tasks_document_uses_newest_phase(tmp_path: Path) -> None:
    for name in ("0001-setup", "0003-engine", "notes"):
        (tmp_path / "specs" / name).mkdir(parents=True)
    (tmp_path / "specs" / "0001-setup" / "tasks.md").write_text(TASKS, encoding="utf-8")

    assert find_tasks_document(tmp_path) is None

    newest = tmp_path / "specs" / "0003-engine" / "tasks.md"
    newest.write_text(TASKS, encoding="utf-8")
    assert find_tasks_document(tmp_path) == newest
