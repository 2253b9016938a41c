from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from flowpilot.agents.base import (
    RESULT_COMPLETED,
    RESULT_FAILED,
    WORKFLOW_OUTPUT_SCHEMA,
    AgentResult,
    AgentRunner,
    coerce_structured_output,
    result_from_structured,
)


class ClaudeCodeRunner(AgentRunner):
    name = "claude"
    default_binary = "claude"

    def build_command(self, *, session_ref: str | None, schema_path: Path) -> list[str]:
        _ = schema_path
        command = [self.binary, "-p", "--output-format", "json"]
        if session_ref:
            command.extend(["--resume", session_ref])
        command.extend(
            [
                "--dangerously-skip-permissions",
                "--disallowedTools",
                "AskUserQuestion",
                "--json-schema",
                json.dumps(WORKFLOW_OUTPUT_SCHEMA, separators=(",", ":")),
            ]
        )
        command.extend(self.extra_args)
        return command

    @staticmethod
    def _final_object(stdout: str) -> dict[str, Any] | None:
        text = stdout.strip()
        if not text:
            return None
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            payload = None
        if isinstance(payload, dict):
            return payload
        # Stray log lines may precede the result object.
        for line in reversed(text.splitlines()):
            line = line.strip()
            if not line.startswith("{"):
                continue
            try:
                candidate = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(candidate, dict):
                return candidate
        return None

    def has_result(self, stdout: str) -> bool:
        return self._final_object(stdout) is not None

    def parse_output(self, stdout: str, *, exit_code: int | None, stderr: str = "") -> AgentResult:
        payload = self._final_object(stdout)
        if payload is None:
            if exit_code not in (0, None):
                error = self._failure_from_exit(exit_code, stderr, self.binary)
            else:
                error = f"Failed to parse Claude output: {stdout.strip()[:200] or 'empty'}"
            return AgentResult(status=RESULT_FAILED, error=error)

        session_id = payload.get("session_id")
        session_ref = session_id if isinstance(session_id, str) else None
        try:
            cost = float(payload.get("total_cost_usd") or 0.0)
        except (TypeError, ValueError):
            cost = 0.0

        if payload.get("is_error"):
            return AgentResult(
                status=RESULT_FAILED,
                cost=cost,
                session_ref=session_ref,
                error=str(payload.get("result") or "Unknown error"),
            )

        structured = coerce_structured_output(payload.get("structured_output"))
        if structured is not None:
            return result_from_structured(structured, cost=cost, session_ref=session_ref)

        if exit_code not in (0, None):
            return AgentResult(
                status=RESULT_FAILED,
                cost=cost,
                session_ref=session_ref,
                error=self._failure_from_exit(exit_code, stderr, self.binary),
            )
        # Finished without an explicit status; reconciliation treats this as success.
        return AgentResult(
            status=RESULT_COMPLETED,
            cost=cost,
            session_ref=session_ref,
            message=str(payload.get("result") or ""),
        )
