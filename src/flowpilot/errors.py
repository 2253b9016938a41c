from __future__ import annotations


class FlowpilotError(RuntimeError):
    """Base class for orchestration failures."""


class ConfigError(FlowpilotError):
    """Raised when engine or run configuration is invalid."""


class StateError(FlowpilotError):
    """Raised when the persisted orchestration record cannot be used."""


class StateCorruptError(StateError):
    """Raised when the persisted record is unparsable; never auto-reset."""

    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


class StateLockTimeout(StateError):
    """Raised when the single-writer lock could not be acquired."""


class ConcurrentUpdateError(StateError):
    """Raised when a write was computed from a stale revision."""

    def __init__(
        self, message: str, *, expected: int | None = None, actual: int | None = None
    ) -> None:
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class InvalidOverride(StateError):
    """Raised when a dot-path mutation cannot be applied."""


class ConcurrentRunConflict(FlowpilotError):
    """Raised when a run is started while another one is still active."""

    def __init__(self, message: str, *, run_id: str | None = None) -> None:
        super().__init__(message)
        self.run_id = run_id


class RunNotFoundError(FlowpilotError):
    """Raised when a control request names a run that is not the project's run."""


class UnknownStep(FlowpilotError):
    """Raised when a step name is not part of the pipeline."""

    def __init__(self, message: str, *, step: str | None = None) -> None:
        super().__init__(message)
        self.step = step


class HealExhausted(FlowpilotError):
    """Raised when a step or batch already used its single heal attempt."""

    def __init__(
        self,
        message: str,
        *,
        step: str | None = None,
        batch_index: int | None = None,
    ) -> None:
        super().__init__(message)
        self.step = step
        self.batch_index = batch_index


class ExecutionError(FlowpilotError):
    """Raised when an agent execution fails."""

    def __init__(
        self,
        message: str,
        *,
        execution_id: str | None = None,
        exit_code: int | None = None,
        retriable: bool = False,
    ) -> None:
        super().__init__(message)
        self.execution_id = execution_id
        self.exit_code = exit_code
        self.retriable = retriable


class ExecutionTimeout(ExecutionError):
    """Raised when an execution exceeds its wall-clock budget."""


class ExecutionCrash(ExecutionError):
    """Raised when the agent process could not start, exited non-zero, or vanished."""
