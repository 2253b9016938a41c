from __future__ import annotations

import json
from pathlib import Path

from flowpilot.agents.base import (
    RESULT_COMPLETED,
    RESULT_FAILED,
    AgentResult,
    AgentRunner,
    result_from_structured,
    structured_from_text,
)


class CodexRunner(AgentRunner):
    """``codex exec --json`` adapter; the CLI reports no spend, so cost is 0."""

    name = "codex"
    default_binary = "codex"

    def build_command(self, *, session_ref: str | None, schema_path: Path) -> list[str]:
        if session_ref:
            return [self.binary, "exec", "resume", "--json", session_ref, *self.extra_args, "-"]
        return [
            self.binary,
            "exec",
            "--json",
            "--output-schema",
            str(schema_path),
            *self.extra_args,
            "-",
        ]

    @staticmethod
    def _scan(stdout: str) -> tuple[str | None, str | None, str | None]:
        """Return (thread id, last agent message, failure message) from JSONL events."""
        session_ref: str | None = None
        last_message: str | None = None
        failure: str | None = None
        for raw_line in stdout.splitlines():
            line = raw_line.strip()
            if not line.startswith("{"):
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                continue
            if not isinstance(event, dict):
                continue
            event_type = event.get("type")
            if event_type == "thread.started" and isinstance(event.get("thread_id"), str):
                session_ref = event["thread_id"]
            elif event_type == "item.completed":
                item = event.get("item")
                if isinstance(item, dict) and item.get("type") == "agent_message":
                    text = item.get("text")
                    if isinstance(text, str):
                        last_message = text
            elif event_type == "turn.failed":
                error = event.get("error")
                if isinstance(error, dict):
                    failure = str(error.get("message") or "turn failed")
                else:
                    failure = "turn failed"
            elif event_type == "error":
                failure = str(event.get("message") or "codex error")
        return session_ref, last_message, failure

    def has_result(self, stdout: str) -> bool:
        _, last_message, failure = self._scan(stdout)
        return last_message is not None or failure is not None

    def parse_output(self, stdout: str, *, exit_code: int | None, stderr: str = "") -> AgentResult:
        session_ref, last_message, failure = self._scan(stdout)
        if failure:
            return AgentResult(status=RESULT_FAILED, session_ref=session_ref, error=failure)
        if last_message is None:
            if exit_code not in (0, None):
                error = self._failure_from_exit(exit_code, stderr, self.binary)
            else:
                error = "Failed to parse Codex output: missing final agent_message event"
            return AgentResult(status=RESULT_FAILED, session_ref=session_ref, error=error)

        structured = structured_from_text(last_message)
        if structured is not None:
            return result_from_structured(structured, cost=0.0, session_ref=session_ref)
        if exit_code not in (0, None):
            return AgentResult(
                status=RESULT_FAILED,
                session_ref=session_ref,
                error=self._failure_from_exit(exit_code, stderr, self.binary),
            )
        return AgentResult(status=RESULT_COMPLETED, session_ref=session_ref, message=last_message)
