import json
import stat
import sys
from pathlib import Path

from click.testing import CliRunner

from flowpilot.cli import cli
from flowpilot.config import load_config, save_config

TASKS = """\
## Setup
- [ ] T001 Create package skeleton

## Core
- [ ] T002 Build engine [depends: T001]
"""

FAKE_CLAUDE = """\
#!{python}
import json, pathlib, sys

sys.stdin.read()
tasks = pathlib.Path("tasks.md")
if tasks.exists():
    tasks.write_text(tasks.read_text().replace("- [ ]", "- [x]"))
print(json.dumps({{
    "session_id": "sess-cli",
    "total_cost_usd": 0.05,
    "is_error": False,
    "result": "ok",
    "structured_output": {{"status": "completed", "message": "done"}},
}}))
"""


def _install_fake_agent(repo: Path) -> None:
    script = repo / "fake-claude"
    script.write_text(FAKE_CLAUDE.format(python=sys.executable), encoding="utf-8")
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    config_path = repo / "flowpilot.toml"
    config = load_config(config_path)
    config.agent.binary = str(script)
    config.loop.poll_interval_seconds = 0.05
    config.loop.max_cycles = 500
    save_config(config_path, config)


def test_cli_control_commands(tmp_path: Path, monkeypatch) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    (repo / "tasks.md").write_text(TASKS, encoding="utf-8")
    monkeypatch.chdir(repo)
    runner = CliRunner()

    init_result = runner.invoke(cli, ["init", "--backend", "codex"])
    assert init_result.exit_code == 0
    assert "Agent: codex" in init_result.output
    assert load_config(repo / "flowpilot.toml").agent.backend == "codex"
    assert (repo / ".flowpilot" / "skills").is_dir()

    start_result = runner.invoke(cli, ["start", "--skip-design", "--batch-size", "7"])
    assert start_result.exit_code == 0
    assert "Run ID: run-" in start_result.output

    second_start = runner.invoke(cli, ["start"])
    assert second_start.exit_code != 0
    assert "still running" in second_start.output

    status_result = runner.invoke(cli, ["status"])
    assert status_result.exit_code == 0
    status = json.loads(status_result.stdout)
    assert status["step"]["current"] == "analyze"
    assert status["run"]["config"]["batch_size_fallback"] == 7
    assert status["next_action"]["action"] == "spawn"
    assert "decision_log" not in status

    answer_result = runner.invoke(cli, ["answer", "database=postgres", "replicas=3"])
    assert answer_result.exit_code == 0
    assert "Recorded 2 answer(s); run is running" in answer_result.output

    get_result = runner.invoke(cli, ["state", "get", "answers"])
    assert json.loads(get_result.stdout) == {"database": "postgres", "replicas": 3}

    set_result = runner.invoke(cli, ["state", "set", "run.merge_approved=true"])
    assert set_result.exit_code == 0
    assert "Set run.merge_approved" in set_result.output

    bogus = runner.invoke(cli, ["state", "set", "run.status=exploded"])
    assert bogus.exit_code == 1

    missing = runner.invoke(cli, ["state", "get", "answers.region"])
    assert missing.exit_code == 1
    assert "No value at answers.region" in missing.output

    assert runner.invoke(cli, ["pause"]).stdout.strip() == "Run paused."
    assert runner.invoke(cli, ["resume"]).stdout.strip() == "Run resumed."

    go_back = runner.invoke(cli, ["go-back", "design"])
    assert go_back.exit_code == 0
    assert json.loads(runner.invoke(cli, ["state", "get", "step.current"]).stdout) == "design"

    not_blocked = runner.invoke(cli, ["recover", "retry"])
    assert not_blocked.exit_code == 1
    assert "not blocked" in not_blocked.output

    log_result = runner.invoke(cli, ["log", "--limit", "3"])
    assert log_result.exit_code == 0
    assert "go_back_to_step" in log_result.output

    cancel_result = runner.invoke(cli, ["cancel", "--reason", "done testing"])
    assert cancel_result.exit_code == 0
    assert cancel_result.stdout.startswith("Cancelled run-")
    assert runner.invoke(cli, ["cancel"]).exit_code == 1


def test_plan_command_previews_batches(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()

    assert runner.invoke(cli, ["plan"]).exit_code == 1

    (tmp_path / "tasks.md").write_text(
        TASKS + "- [ ] T003 Wire CLI [depends: T404]\n", encoding="utf-8"
    )
    result = runner.invoke(cli, ["plan"])

    assert result.exit_code == 0
    lines = result.stdout.splitlines()
    assert lines[0].endswith("tasks.md: 2 batches from task sections (3 tasks)")
    assert lines[1] == "  0 Setup: T001"
    assert lines[2] == "  1 Core: T002, T003"
    assert lines[3] == "warning: Task T003 depends on T404, which doesn't exist"


def test_log_on_fresh_project(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(cli, ["log"])

    assert result.exit_code == 0
    assert result.stdout.strip() == "No decisions recorded."


def test_start_and_run_drives_agent_to_completion(tmp_path: Path, monkeypatch) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    (repo / "tasks.md").write_text(TASKS, encoding="utf-8")
    monkeypatch.chdir(repo)
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0
    _install_fake_agent(repo)

    result = runner.invoke(
        cli, ["start", "--skip-design", "--skip-analyze", "--auto-merge", "--run"]
    )

    assert result.exit_code == 0, result.output
    assert "repo: completed (last decision: idle)" in result.output
    assert "- [ ]" not in (repo / "tasks.md").read_text(encoding="utf-8")
    status = json.loads(runner.invoke(cli, ["status", "--verbose"]).stdout)
    assert status["run"]["status"] == "completed"
    assert [batch["status"] for batch in status["batches"]["items"]] == [
        "completed",
        "completed",
    ]
    assert status["cost"]["total"] == 0.2
