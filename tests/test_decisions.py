from flowpilot.config import BudgetConfig, RunConfig
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
    SPAWN,
    SPAWN_BATCH,
    TRANSITION,
    WAIT,
    WAIT_FOR_MANUAL_MERGE,
    get_next_action,
    initial_step,
    next_step,
)
from flowpilot.state.model import (
    BATCH_COMPLETED,
    BATCH_FAILED,
    BATCH_HEALED,
    BATCH_RUNNING,
    EXEC_COMPLETED,
    EXEC_FAILED,
    RUN_CANCELLED,
    RUN_PAUSED,
    RUN_WAITING_INPUT,
    STEP_COMPLETE,
    STEP_FAILED,
    STEP_IN_PROGRESS,
    Batch,
    BatchTracking,
    Execution,
    OrchestrationState,
    Run,
    Step,
)


def _state(step: str = "design", status: str = "not_started", **config) -> OrchestrationState:
    run = Run(id="run-1", project="demo", config=RunConfig(**config))
    return OrchestrationState(project="demo", run=run, step=Step(current=step, status=status))


def _with_batches(state: OrchestrationState, *statuses: str) -> OrchestrationState:
    state.batches = BatchTracking(
        total=len(statuses),
        current=0,
        items=[
            Batch(
                index=index,
                section=f"Section {index}",
                task_ids=[f"T{index:03d}"],
                status=status,
            )
            for index, status in enumerate(statuses)
        ],
        planned=True,
    )
    return state


def _execution(execution_id: str, status: str, **fields) -> Execution:
    return Execution(
        id=execution_id,
        run_id="run-1",
        skill=fields.pop("skill", "flow.design"),
        step=fields.pop("step", "design"),
        status=status,
        **fields,
    )


def test_no_run_is_idle() -> None:
    assert get_next_action(OrchestrationState()).action == IDLE

    state = _state()
    state.run.status = RUN_CANCELLED
    assert get_next_action(state).action == IDLE


def test_run_waiting_on_a_human_yields_wait() -> None:
    for status in (RUN_PAUSED, RUN_WAITING_INPUT, "blocked", "waiting_merge"):
        state = _state()
        state.run.status = status
        decision = get_next_action(state)
        assert decision.action == WAIT
        assert status in decision.reason


def test_running_execution_yields_wait() -> None:
    state = _state(status=STEP_IN_PROGRESS)
    state.executions["exec-1"] = _execution("exec-1", "running")
    state.step.execution_id = "exec-1"

    decision = get_next_action(state)

    assert decision.action == WAIT
    assert "exec-1" in decision.reason


def test_unreconciled_terminal_execution_yields_wait() -> None:
    state = _state(status=STEP_IN_PROGRESS)
    state.executions["exec-1"] = _execution("exec-1", EXEC_COMPLETED)
    state.step.execution_id = "exec-1"
    state.last_execution = "exec-1"

    assert get_next_action(state).action == WAIT

    state.executions["exec-1"].reconciled = True
    state.step.status = STEP_COMPLETE
    assert get_next_action(state).action == TRANSITION


def test_fresh_step_spawns_its_skill() -> None:
    decision = get_next_action(_state())

    assert decision.action == SPAWN
    assert decision.skill == "flow.design"
    assert decision.step == "design"


def test_completed_step_transitions_to_next_step() -> None:
    decision = get_next_action(_state(status=STEP_COMPLETE))
    assert (decision.action, decision.target) == (TRANSITION, "analyze")

    decision = get_next_action(_state(status=STEP_COMPLETE, skip_analyze=True))
    assert (decision.action, decision.target) == (TRANSITION, "implement")


def test_step_sequence_helpers_honour_skip_flags() -> None:
    assert initial_step(RunConfig()) == "design"
    assert initial_step(RunConfig(skip_design=True)) == "analyze"
    assert initial_step(RunConfig(skip_design=True, skip_analyze=True)) == "implement"
    assert next_step("verify", RunConfig()) == "merge"
    assert next_step("merge", RunConfig()) is None


def test_failed_step_heals_once_then_escalates() -> None:
    state = _state(status=STEP_FAILED)
    decision = get_next_action(state)
    assert (decision.action, decision.skill) == (HEAL, "flow.design")

    state.run.heal_attempts["design"] = 1
    decision = get_next_action(state)
    assert decision.action == ESCALATE
    assert "heal attempt already used" in decision.reason


def test_failed_step_escalates_without_auto_heal() -> None:
    decision = get_next_action(_state(status=STEP_FAILED, auto_heal_enabled=False))

    assert decision.action == ESCALATE
    assert "auto-heal is disabled" in decision.reason


def test_failed_step_escalates_when_healing_budget_spent() -> None:
    state = _state(status=STEP_FAILED)
    state.cost.healing = 2.0

    decision = get_next_action(state)

    assert decision.action == ESCALATE
    assert "healing budget exhausted" in decision.reason


def test_zero_healing_budget_means_no_ceiling() -> None:
    state = _state(status=STEP_FAILED, budget=BudgetConfig(healing_budget=0.0))
    state.cost.healing = 40.0

    assert get_next_action(state).action == HEAL


def test_step_whose_execution_vanished_escalates() -> None:
    state = _state(status=STEP_IN_PROGRESS)
    state.step.execution_id = "exec-gone"

    decision = get_next_action(state)

    assert decision.action == ESCALATE
    assert "exec-gone" in decision.reason


def test_unknown_step_is_an_error() -> None:
    decision = get_next_action(_state(step="deploy"))

    assert decision.action == ERROR
    assert "deploy" in decision.reason


def test_total_budget_exhaustion_fails_run() -> None:
    state = _state()
    state.cost.total = 50.0

    assert get_next_action(state).action == FAIL


def test_implement_without_plan_initializes_batches() -> None:
    assert get_next_action(_state(step="implement")).action == INITIALIZE_BATCHES


def test_pending_batch_is_spawned_with_section_instructions() -> None:
    state = _with_batches(_state(step="implement"), "pending", "pending")

    decision = get_next_action(state)

    assert decision.action == SPAWN_BATCH
    assert decision.skill == "flow.implement"
    assert decision.batch_index == 0
    assert '"Section 0" section (T000)' in decision.context
    assert "Do NOT work on tasks from other sections" in decision.context


def test_done_batch_advances_and_pauses_only_before_another_batch() -> None:
    state = _with_batches(
        _state(step="implement", pause_between_batches=True), BATCH_COMPLETED, "pending"
    )
    decision = get_next_action(state)
    assert (decision.action, decision.pause_after) == (ADVANCE_BATCH, True)

    state = _with_batches(
        _state(step="implement", pause_between_batches=True), BATCH_COMPLETED, BATCH_HEALED
    )
    state.batches.current = 1
    decision = get_next_action(state)
    assert (decision.action, decision.pause_after) == (ADVANCE_BATCH, False)


def test_all_batches_done_transitions_to_verify() -> None:
    state = _with_batches(_state(step="implement"), BATCH_COMPLETED, BATCH_HEALED)
    state.batches.current = 2

    decision = get_next_action(state)

    assert (decision.action, decision.target) == (TRANSITION, "verify")


def test_failed_batch_heals_once_then_escalates() -> None:
    state = _with_batches(_state(step="implement"), BATCH_FAILED)
    decision = get_next_action(state)
    assert (decision.action, decision.skill, decision.batch_index) == (HEAL_BATCH, "flow.heal", 0)

    state.batches.items[0].heal_attempts = 1
    decision = get_next_action(state)
    assert decision.action == ESCALATE
    assert decision.batch_index == 0


def test_batch_over_its_budget_fails_run() -> None:
    state = _with_batches(_state(step="implement"), BATCH_FAILED)
    state.batches.items[0].cost = 5.0

    assert get_next_action(state).action == FAIL


def test_running_batch_without_live_execution_escalates() -> None:
    state = _with_batches(_state(step="implement"), BATCH_RUNNING)
    state.batches.items[0].execution_id = "exec-1"
    state.executions["exec-1"] = _execution(
        "exec-1", EXEC_FAILED, skill="flow.implement", step="implement", reconciled=True
    )
    state.last_execution = "exec-1"

    decision = get_next_action(state)

    assert decision.action == ESCALATE
    assert "without a result" in decision.reason


def test_out_of_range_batch_index_is_an_error() -> None:
    state = _with_batches(_state(step="implement"), "pending")
    state.batches.current = 4

    assert get_next_action(state).action == ERROR


def test_verify_complete_waits_for_manual_merge_unless_approved() -> None:
    state = _state(step="verify", status=STEP_COMPLETE)
    assert get_next_action(state).action == WAIT_FOR_MANUAL_MERGE

    state.run.merge_approved = True
    decision = get_next_action(state)
    assert (decision.action, decision.target) == (TRANSITION, "merge")

    decision = get_next_action(_state(step="verify", status=STEP_COMPLETE, auto_merge=True))
    assert (decision.action, decision.target) == (TRANSITION, "merge")


def test_merge_step_requires_approval_then_finishes() -> None:
    state = _state(step="merge")
    assert get_next_action(state).action == WAIT_FOR_MANUAL_MERGE

    state.run.merge_approved = True
    assert get_next_action(state).action == SPAWN

    state.step.status = STEP_COMPLETE
    assert get_next_action(state).action == DONE


def test_decision_log_data_omits_empty_fields() -> None:
    decision = get_next_action(_with_batches(_state(step="implement"), "pending"))

    assert decision.to_log_data() == {
        "step": "implement",
        "skill": "flow.implement",
        "batch_index": 0,
    }


def test_equal_states_yield_equal_decisions() -> None:
    running = _state(step="implement", status=STEP_IN_PROGRESS)
    _with_batches(running, BATCH_COMPLETED, BATCH_RUNNING)
    running.batches.current = 1
    running.batches.items[1].execution_id = "exec-2"
    running.executions["exec-2"] = _execution(
        "exec-2", EXEC_COMPLETED, skill="flow.implement", step="implement"
    )
    running.last_execution = "exec-2"
    pending = _with_batches(_state(step="implement"), BATCH_HEALED, "pending")
    pending.batches.current = 1

    for state in (
        _state(),
        _state(status=STEP_FAILED),
        _state(step="verify", status=STEP_COMPLETE),
        running,
        pending,
    ):
        copy = OrchestrationState.from_dict(state.to_dict(), revision=state.revision + 7)

        assert copy == state
        assert get_next_action(copy) == get_next_action(state)
        assert get_next_action(state) == get_next_action(state)
