from flowpilot.state.model import (
    Batch,
    BatchTracking,
    Cost,
    DecisionLogEntry,
    Execution,
    OrchestrationState,
    Run,
    Step,
)
from flowpilot.state.store import StateStore

__all__ = [
    "Batch",
    "BatchTracking",
    "Cost",
    "DecisionLogEntry",
    "Execution",
    "OrchestrationState",
    "Run",
    "Step",
    "StateStore",
]
