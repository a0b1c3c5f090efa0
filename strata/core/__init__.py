"""Core module - configuration, errors, session state and persistence."""

from strata.core.config import Settings, get_settings
from strata.core.exceptions import (
    CheckpointIOError,
    CorpusLoadError,
    CycleError,
    LayerFailedError,
    LockTimeoutError,
    OrchestrationError,
    PlanValidationError,
    StalePlanError,
    TaskExecutionError,
    TaskReviewRejectedError,
)
from strata.core.state import (
    Checkpoint,
    CompletedTask,
    Event,
    EventType,
    Session,
    SessionStats,
    SessionStatus,
    TaskState,
    TaskStatus,
)
from strata.core.state_manager import StateManager

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Errors
    "OrchestrationError",
    "PlanValidationError",
    "StalePlanError",
    "CycleError",
    "LockTimeoutError",
    "TaskExecutionError",
    "TaskReviewRejectedError",
    "CheckpointIOError",
    "CorpusLoadError",
    "LayerFailedError",
    # State
    "Checkpoint",
    "CompletedTask",
    "Event",
    "EventType",
    "Session",
    "SessionStats",
    "SessionStatus",
    "TaskState",
    "TaskStatus",
    "StateManager",
]
