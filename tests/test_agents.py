import json
from pathlib import Path

from flowpilot.agents import (
    RESULT_COMPLETED,
    RESULT_FAILED,
    RESULT_NEEDS_INPUT,
    ClaudeCodeRunner,
    CodexRunner,
    build_runner,
)
from flowpilot.config import AgentConfig


def _claude_payload(**overrides) -> str:
    payload = {
        "session_id": "sess-1",
        "total_cost_usd": 0.42,
        "is_error": False,
        "result": "All done",
        "structured_output": {"status": "completed", "message": "Implemented T001"},
    }
    payload.update(overrides)
    return json.dumps(payload)


def _codex_events(*events: dict) -> str:
    return "\n".join(json.dumps(event) for event in events) + "\n"


def test_claude_command_carries_schema_and_resume(tmp_path: Path) -> None:
    runner = ClaudeCodeRunner(extra_args=["--model", "opus"])

    fresh = runner.build_command(session_ref=None, schema_path=tmp_path / "schema.json")
    resumed = runner.build_command(session_ref="sess-1", schema_path=tmp_path / "schema.json")

    assert fresh[:4] == ["claude", "-p", "--output-format", "json"]
    assert "--resume" not in fresh
    assert "--dangerously-skip-permissions" in fresh
    assert fresh[fresh.index("--disallowedTools") + 1] == "AskUserQuestion"
    schema = json.loads(fresh[fresh.index("--json-schema") + 1])
    assert schema["required"] == ["status"]
    assert fresh[-2:] == ["--model", "opus"]
    assert resumed[resumed.index("--resume") + 1] == "sess-1"


def test_claude_structured_completion() -> None:
    result = ClaudeCodeRunner().parse_output(_claude_payload(), exit_code=0)

    assert result.status == RESULT_COMPLETED
    assert result.cost == 0.42
    assert result.session_ref == "sess-1"
    assert result.message == "Implemented T001"


def test_claude_needs_input_carries_questions() -> None:
    stdout = _claude_payload(
        structured_output={
            "status": "needs_input",
            "message": "Need a decision",
            "questions": [{"question": "Which database?"}, "not-a-question"],
        }
    )

    result = ClaudeCodeRunner().parse_output(stdout, exit_code=0)

    assert result.status == RESULT_NEEDS_INPUT
    assert result.questions == [{"question": "Which database?"}]


def test_claude_error_flag_and_error_status_fail() -> None:
    flagged = ClaudeCodeRunner().parse_output(
        _claude_payload(is_error=True, result="Rate limited"), exit_code=1
    )
    reported = ClaudeCodeRunner().parse_output(
        _claude_payload(structured_output={"status": "error", "message": "tests failing"}),
        exit_code=0,
    )

    assert (flagged.status, flagged.error, flagged.cost) == (RESULT_FAILED, "Rate limited", 0.42)
    assert (reported.status, reported.error) == (RESULT_FAILED, "tests failing")


def test_claude_result_after_stray_log_lines() -> None:
    stdout = "warming up\n{not json}\n" + _claude_payload() + "\n"

    runner = ClaudeCodeRunner()

    assert runner.has_result(stdout) is True
    assert runner.parse_output(stdout, exit_code=None).status == RESULT_COMPLETED


def test_claude_without_output_reports_exit_and_stderr() -> None:
    runner = ClaudeCodeRunner()

    crashed = runner.parse_output("", exit_code=2, stderr="warning\nfatal: auth expired\n")
    garbled = runner.parse_output("Segmentation fault", exit_code=0)

    assert runner.has_result("") is False
    assert crashed.status == RESULT_FAILED
    assert crashed.error == "claude exited with code 2: fatal: auth expired"
    assert garbled.status == RESULT_FAILED
    assert "Failed to parse Claude output" in garbled.error


def test_claude_without_structured_output_counts_as_completed() -> None:
    result = ClaudeCodeRunner().parse_output(
        _claude_payload(structured_output=None), exit_code=0
    )

    assert result.status == RESULT_COMPLETED
    assert result.message == "All done"


def test_codex_command_for_fresh_and_resumed_sessions(tmp_path: Path) -> None:
    runner = CodexRunner(binary="/usr/local/bin/codex")
    schema_path = tmp_path / "schema.json"

    assert runner.build_command(session_ref=None, schema_path=schema_path) == [
        "/usr/local/bin/codex",
        "exec",
        "--json",
        "--output-schema",
        str(schema_path),
        "-",
    ]
    assert runner.build_command(session_ref="thread-7", schema_path=schema_path) == [
        "/usr/local/bin/codex",
        "exec",
        "resume",
        "--json",
        "thread-7",
        "-",
    ]


def test_codex_parses_final_agent_message() -> None:
    stdout = _codex_events(
        {"type": "thread.started", "thread_id": "thread-7"},
        {"type": "item.completed", "item": {"type": "reasoning", "text": "thinking"}},
        {
            "type": "item.completed",
            "item": {
                "type": "agent_message",
                "text": '```json\n{"status": "needs_input", "message": "?", '
                '"questions": [{"question": "Keep v1 API?"}]}\n```',
            },
        },
    )

    runner = CodexRunner()
    result = runner.parse_output(stdout, exit_code=0)

    assert runner.has_result(stdout) is True
    assert result.status == RESULT_NEEDS_INPUT
    assert result.session_ref == "thread-7"
    assert result.cost == 0.0
    assert result.questions == [{"question": "Keep v1 API?"}]


def test_codex_plain_message_completes() -> None:
    stdout = _codex_events(
        {"type": "thread.started", "thread_id": "thread-1"},
        {"type": "item.completed", "item": {"type": "agent_message", "text": "Done."}},
    )

    result = CodexRunner().parse_output(stdout, exit_code=0)

    assert (result.status, result.message) == (RESULT_COMPLETED, "Done.")


def test_codex_turn_failure_is_reported() -> None:
    stdout = _codex_events(
        {"type": "thread.started", "thread_id": "thread-1"},
        {"type": "turn.failed", "error": {"message": "context window exceeded"}},
    )

    runner = CodexRunner()
    result = runner.parse_output(stdout, exit_code=1)

    assert runner.has_result(stdout) is True
    assert (result.status, result.error) == (RESULT_FAILED, "context window exceeded")
    assert runner.has_result(_codex_events({"type": "thread.started", "thread_id": "t"})) is False


def test_build_runner_selects_backend() -> None:
    claude = build_runner(AgentConfig())
    codex = build_runner(AgentConfig(backend="codex", binary="/opt/codex", extra_args=["-q"]))

    assert isinstance(claude, ClaudeCodeRunner)
    assert claude.binary == "claude"
    assert isinstance(codex, CodexRunner)
    assert codex.binary == "/opt/codex"
    assert codex.extra_args == ["-q"]
