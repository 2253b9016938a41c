from flowpilot.agents.base import (
    RESULT_COMPLETED,
    RESULT_FAILED,
    RESULT_NEEDS_INPUT,
    AgentResult,
    AgentRunner,
)
from flowpilot.agents.claude import ClaudeCodeRunner
from flowpilot.agents.codex import CodexRunner
from flowpilot.config import AgentConfig


def build_runner(config: AgentConfig) -> AgentRunner:
    binary = config.binary or None
    if config.backend == "codex":
        return CodexRunner(binary=binary, extra_args=config.extra_args)
    return ClaudeCodeRunner(binary=binary, extra_args=config.extra_args)


__all__ = [
    "RESULT_COMPLETED",
    "RESULT_FAILED",
    "RESULT_NEEDS_INPUT",
    "AgentResult",
    "AgentRunner",
    "ClaudeCodeRunner",
    "CodexRunner",
    "build_runner",
]
