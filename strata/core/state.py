"""State types for Strata sessions, checkpoints and the event log."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """Get the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class TaskStatus(str, Enum):
    """Status of a task in the execution pipeline."""

    PENDING = "pending"
    READY = "ready"
    EXECUTING = "executing"
    REVIEWING = "reviewing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


class SessionStatus(str, Enum):
    """Status of an orchestration session."""

    INITIALIZING = "initializing"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.FAILED)


class EventType(str, Enum):
    """Types of records appended to the event log."""

    SESSION_STARTED = "session_started"
    SESSION_RESUMED = "session_resumed"
    SESSION_COMPLETED = "session_completed"
    SESSION_FAILED = "session_failed"
    LAYER_STARTED = "layer_started"
    LAYER_COMPLETED = "layer_completed"
    LAYER_FAILED = "layer_failed"
    TASK_READY = "task_ready"
    TASK_EXECUTING = "task_executing"
    TASK_REVIEWING = "task_reviewing"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    LOCK_ACQUIRED = "lock_acquired"
    LOCK_RELEASED = "lock_released"
    LOCK_CONTENTION = "lock_contention"
    REVIEW_RECORDED = "review_recorded"
    CHECKPOINT_CREATED = "checkpoint_created"
    CHECKPOINT_RESTORED = "checkpoint_restored"
    CHECKPOINT_CLEARED = "checkpoint_cleared"


TASK_STATUS_EVENTS: dict[TaskStatus, EventType] = {
    TaskStatus.READY: EventType.TASK_READY,
    TaskStatus.EXECUTING: EventType.TASK_EXECUTING,
    TaskStatus.REVIEWING: EventType.TASK_REVIEWING,
    TaskStatus.COMPLETED: EventType.TASK_COMPLETED,
    TaskStatus.FAILED: EventType.TASK_FAILED,
}


class CompletedTask(BaseModel):
    """Ledger entry for a completed task; carried in checkpoints."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    type: str = "generic"
    outputs: dict[str, Any] = Field(default_factory=dict)
    completed_at: datetime = Field(default_factory=utcnow)


class TaskState(BaseModel):
    """Per-task execution record inside a session."""

    id: str
    name: str
    layer: int
    dependencies: list[str] = Field(default_factory=list)
    resources: list[str] = Field(default_factory=list)
    status: TaskStatus = TaskStatus.PENDING
    locks_held: list[str] = Field(default_factory=list)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_seconds: float | None = None
    attempts: int = 0
    outputs: dict[str, Any] | None = None
    error: str | None = None


class SessionStats(BaseModel):
    """Aggregate statistics for a session."""

    total_tasks: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0
    total_duration_seconds: float = 0.0
    average_task_duration: float = 0.0
    longest_task_duration: float = 0.0
    shortest_task_duration: float = 0.0
    layers_executed: int = 0
    max_parallelism: int = 0
    lock_contention_incidents: int = 0
    reviews: int = 0
    review_approvals: int = 0
    review_rejections: int = 0
    context_reduction_percentage: float = 0.0
    context_slices: int = 0


class Session(BaseModel):
    """Top-level execution record, persisted as a whole-state snapshot."""

    session_id: str = Field(default_factory=lambda: f"sess-{uuid4().hex[:12]}")
    plan_id: str
    plan_checksum: str | None = None
    plan_path: str | None = None
    status: SessionStatus = SessionStatus.INITIALIZING
    current_layer: int = 0
    total_layers: int = 0
    tasks: dict[str, TaskState] = Field(default_factory=dict)
    locks: dict[str, str] = Field(
        default_factory=dict,
        description="Resource key -> holding task ID",
    )
    stats: SessionStats = Field(default_factory=SessionStats)
    started_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    error: str | None = None

    def tasks_with_status(self, *statuses: TaskStatus) -> list[TaskState]:
        """Get tasks currently in any of the given statuses."""
        return [t for t in self.tasks.values() if t.status in statuses]

    @property
    def progress(self) -> float:
        """Get completion percentage (0-100)."""
        if not self.tasks:
            return 0.0
        done = len(self.tasks_with_status(TaskStatus.COMPLETED))
        return round(done / len(self.tasks) * 100, 1)


class Checkpoint(BaseModel):
    """Point-in-time recovery record for one plan.

    ``layer`` is the index of the last fully completed layer (-1 if none);
    a resumed run starts at ``layer + 1``.
    """

    plan_id: str
    session_id: str | None = None
    layer: int = -1
    completed_tasks: list[CompletedTask] = Field(default_factory=list)
    saved_at: datetime = Field(default_factory=utcnow)

    @property
    def completed_ids(self) -> set[str]:
        """Get IDs of completed tasks."""
        return {t.id for t in self.completed_tasks}

    @property
    def next_layer(self) -> int:
        """Get the layer a resumed run starts at."""
        return self.layer + 1


class Event(BaseModel):
    """One append-only event log record."""

    event_id: str = Field(default_factory=lambda: f"evt-{uuid4().hex[:12]}")
    timestamp: datetime = Field(default_factory=utcnow)
    session_id: str
    type: EventType
    data: dict[str, Any] = Field(default_factory=dict)


class ActiveSessionPointer(BaseModel):
    """Contents of ``active.json``: the session currently owning the state dir."""

    session_id: str
    path: str
    plan_id: str
    updated_at: datetime = Field(default_factory=utcnow)
