from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

RESULT_COMPLETED = "completed"
RESULT_FAILED = "failed"
RESULT_NEEDS_INPUT = "needs_input"

WORKFLOW_OUTPUT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "status": {"type": "string", "enum": ["completed", "needs_input", "error"]},
        "message": {"type": "string"},
        "questions": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "question": {"type": "string"},
                    "header": {"type": "string"},
                    "options": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {
                                "label": {"type": "string"},
                                "description": {"type": "string"},
                            },
                            "required": ["label"],
                        },
                    },
                    "multiSelect": {"type": "boolean"},
                },
                "required": ["question"],
            },
        },
    },
    "required": ["status"],
}

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)


@dataclass(slots=True)
class AgentResult:
    status: str
    cost: float = 0.0
    session_ref: str | None = None
    message: str = ""
    questions: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None


def coerce_structured_output(payload: Any) -> dict[str, Any] | None:
    if not isinstance(payload, dict):
        return None
    status = payload.get("status")
    if status not in ("completed", "needs_input", "error"):
        return None
    questions = payload.get("questions") or []
    if not isinstance(questions, list):
        questions = []
    return {
        "status": status,
        "message": str(payload.get("message") or ""),
        "questions": [item for item in questions if isinstance(item, dict)],
    }


def structured_from_text(text: str) -> dict[str, Any] | None:
    candidates = [text.strip()]
    candidates.extend(match.group(1) for match in _FENCED_JSON.finditer(text))
    for candidate in candidates:
        try:
            coerced = coerce_structured_output(json.loads(candidate))
        except json.JSONDecodeError:
            continue
        if coerced is not None:
            return coerced
    return None


def result_from_structured(
    structured: dict[str, Any],
    *,
    cost: float,
    session_ref: str | None,
) -> AgentResult:
    if structured["status"] == "needs_input":
        return AgentResult(
            status=RESULT_NEEDS_INPUT,
            cost=cost,
            session_ref=session_ref,
            message=structured["message"],
            questions=structured["questions"],
        )
    if structured["status"] == "error":
        return AgentResult(
            status=RESULT_FAILED,
            cost=cost,
            session_ref=session_ref,
            message=structured["message"],
            error=structured["message"] or "Agent reported an error.",
        )
    return AgentResult(
        status=RESULT_COMPLETED,
        cost=cost,
        session_ref=session_ref,
        message=structured["message"],
    )


class AgentRunner(ABC):
    """Builds the agent command line and interprets what the agent printed.

    The prompt is always delivered on stdin; stdout and stderr are captured
    to files by the supervisor and handed back here once the process exits.
    """

    name: str = "agent"
    default_binary: str = "agent"

    def __init__(self, binary: str | None = None, extra_args: list[str] | None = None) -> None:
        self.binary = binary or self.default_binary
        self.extra_args = list(extra_args or [])

    @abstractmethod
    def build_command(self, *, session_ref: str | None, schema_path: Path) -> list[str]:
        """Return argv for one non-interactive agent invocation."""

    @abstractmethod
    def parse_output(self, stdout: str, *, exit_code: int | None, stderr: str = "") -> AgentResult:
        """Translate captured output into a completed/failed/needs-input result."""

    @abstractmethod
    def has_result(self, stdout: str) -> bool:
        """Whether ``stdout`` already holds a final answer, even without an exit code."""

    @staticmethod
    def _failure_from_exit(exit_code: int | None, stderr: str, binary: str) -> str:
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else "no stderr"
        return f"{binary} exited with code {exit_code}: {detail}"
