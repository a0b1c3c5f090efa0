"""
State manager - session snapshot, event log and checkpoints.

Layout under the state directory::

    active.json                          pointer to the session owning the dir
    sessions/<session_id>/state.json     whole-state snapshot (overwritten)
    sessions/<session_id>/events.ndjson  append-only event log
    checkpoints/checkpoint-<plan_id>.json

The snapshot has a single writer: one StateManager per session, in one
process. Every write of durable state raises CheckpointIOError on failure.
"""

import json
import os
from pathlib import Path
from typing import Any, TextIO

from loguru import logger
from pydantic import ValidationError

from strata.core.exceptions import CheckpointIOError, OrchestrationError
from strata.core.state import (
    TASK_STATUS_EVENTS,
    ActiveSessionPointer,
    Checkpoint,
    CompletedTask,
    Event,
    EventType,
    Session,
    SessionStats,
    SessionStatus,
    TaskState,
    TaskStatus,
    utcnow,
)
from strata.decomposition.models import ExecutionPlan


def _atomic_write(path: Path, content: str) -> None:
    """Write a file via a temp file and rename."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_text(content, encoding="utf-8")
        os.replace(tmp_path, path)
    except OSError as e:
        raise CheckpointIOError(f"Could not write {path}: {e}") from e


class StateManager:
    """
    Persist orchestration state for one session.

    Example:
        >>> manager = StateManager(".orchestration")
        >>> session = manager.initialize_session(plan)
        >>> manager.update_task_status("T1", TaskStatus.EXECUTING)
        >>> manager.create_checkpoint(0, completed)
        >>> manager.close()
    """

    def __init__(self, state_dir: str | Path = ".orchestration") -> None:
        self.state_dir = Path(state_dir)
        self.session_path: Path | None = None
        self.session: Session | None = None
        self._event_stream: TextIO | None = None

    # =========================================================================
    # SESSION LIFECYCLE
    # =========================================================================

    def initialize_session(
        self,
        plan: ExecutionPlan,
        plan_path: str | Path | None = None,
    ) -> Session:
        """
        Create and persist a new session for a plan.

        Args:
            plan: Plan being executed.
            plan_path: Optional path of the plan document (used by resume).

        Returns:
            The new Session.
        """
        tasks: dict[str, TaskState] = {}
        for index in range(plan.total_layers):
            for task in plan.get_layer_tasks(index):
                tasks[task.id] = TaskState(
                    id=task.id,
                    name=task.name,
                    layer=index,
                    dependencies=list(task.dependencies),
                    resources=[ref.key for ref in task.resources.refs()],
                )

        session = Session(
            plan_id=plan.id,
            plan_checksum=plan.source.checksum,
            plan_path=str(plan_path) if plan_path else None,
            total_layers=plan.total_layers,
            tasks=tasks,
            stats=SessionStats(total_tasks=len(tasks)),
        )

        self.session = session
        self.session_path = self.state_dir / "sessions" / session.session_id
        self._open_event_stream()

        self.save_state()
        self.log_event(
            EventType.SESSION_STARTED,
            plan_id=plan.id,
            task_count=len(tasks),
            layer_count=plan.total_layers,
        )

        logger.info(f"[State] Session {session.session_id} started for plan {plan.id}")
        return session

    def resume_session(self) -> Session:
        """
        Mark a loaded session as running again after a crash.

        Tasks caught mid-flight go back to pending; completed tasks stay.
        """
        session = self._require_session()
        for task in session.tasks.values():
            if task.status in (TaskStatus.READY, TaskStatus.EXECUTING, TaskStatus.REVIEWING):
                task.status = TaskStatus.PENDING
                task.locks_held = []
        session.locks = {}
        session.status = SessionStatus.RUNNING
        session.completed_at = None
        session.error = None

        self._touch()
        self.save_state()
        self.log_event(EventType.SESSION_RESUMED, current_layer=session.current_layer)
        logger.info(f"[State] Resumed session {session.session_id}")
        return session

    def mark_running(self) -> None:
        """Move the session from initializing to running."""
        session = self._require_session()
        session.status = SessionStatus.RUNNING
        self._touch()
        self.save_state()

    def complete_session(self) -> None:
        """Mark the session completed."""
        session = self._require_session()
        session.status = SessionStatus.COMPLETED
        session.completed_at = utcnow()
        session.stats = self.get_stats()
        self._touch()
        self.save_state()
        self.log_event(EventType.SESSION_COMPLETED, stats=session.stats.model_dump())

    def fail_session(self, error: str) -> None:
        """Mark the session failed."""
        session = self._require_session()
        session.status = SessionStatus.FAILED
        session.completed_at = utcnow()
        session.error = error
        session.stats = self.get_stats()
        self._touch()
        self.save_state()
        self.log_event(EventType.SESSION_FAILED, error=error)

    def close(self) -> None:
        """Close the event stream."""
        if self._event_stream is not None:
            self._event_stream.close()
            self._event_stream = None

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    def update_task_status(self, task_id: str, status: TaskStatus, **updates: Any) -> TaskState:
        """
        Record a task status transition.

        Args:
            task_id: Task identifier.
            status: New status.
            **updates: Extra TaskState fields (e.g. outputs, error).

        Returns:
            The updated TaskState.

        Raises:
            OrchestrationError: If the task is not part of the session.
        """
        session = self._require_session()
        task = session.tasks.get(task_id)
        if task is None:
            raise OrchestrationError(f"Task not found in session: {task_id}")

        previous = task.status
        task.status = status
        for key, value in updates.items():
            setattr(task, key, value)

        now = utcnow()
        if status == TaskStatus.EXECUTING:
            task.started_at = now
            task.completed_at = None
            task.duration_seconds = None
            task.error = None
            task.attempts += 1
        elif status.is_terminal:
            task.completed_at = now
            if task.started_at:
                task.duration_seconds = (now - task.started_at).total_seconds()

        self._touch()
        self.save_state()

        event_type = TASK_STATUS_EVENTS.get(status)
        if event_type is None:
            return task
        self.log_event(
            event_type,
            task_id=task_id,
            previous_status=previous.value,
            **{k: v for k, v in updates.items() if k in ("error", "outputs")},
        )
        return task

    def restore_completed(self, checkpoint: Checkpoint) -> None:
        """Apply a checkpoint's completed-task list to the session."""
        session = self._require_session()
        for record in checkpoint.completed_tasks:
            task = session.tasks.get(record.id)
            if task is None:
                continue
            task.status = TaskStatus.COMPLETED
            task.outputs = record.outputs
            task.completed_at = record.completed_at
        session.current_layer = max(checkpoint.next_layer, 0)

        self._touch()
        self.save_state()
        self.log_event(
            EventType.CHECKPOINT_RESTORED,
            plan_id=checkpoint.plan_id,
            layer=checkpoint.layer,
            completed=[t.id for t in checkpoint.completed_tasks],
        )

    def record_layer_started(self, layer_index: int, task_ids: list[str]) -> None:
        """Record that a layer began."""
        session = self._require_session()
        session.current_layer = layer_index
        self._touch()
        self.save_state()
        self.log_event(EventType.LAYER_STARTED, layer=layer_index, tasks=task_ids)

    def record_layer_completed(self, layer_index: int, parallelism: int) -> None:
        """Record that every task in a layer completed."""
        session = self._require_session()
        session.stats.layers_executed += 1
        session.stats.max_parallelism = max(session.stats.max_parallelism, parallelism)
        self._touch()
        self.save_state()
        self.log_event(EventType.LAYER_COMPLETED, layer=layer_index, parallelism=parallelism)

    def record_layer_failed(self, layer_index: int, failed: list[str], parallelism: int) -> None:
        """Record that a layer failed."""
        session = self._require_session()
        session.stats.max_parallelism = max(session.stats.max_parallelism, parallelism)
        self._touch()
        self.save_state()
        self.log_event(EventType.LAYER_FAILED, layer=layer_index, failed=failed)

    def record_lock_acquisition(self, task_id: str, resources: list[str]) -> None:
        """Record locks taken by a task."""
        session = self._require_session()
        if task_id in session.tasks:
            session.tasks[task_id].locks_held = list(resources)
        for resource in resources:
            session.locks[resource] = task_id
        self._touch()
        self.save_state()
        self.log_event(EventType.LOCK_ACQUIRED, task_id=task_id, resources=resources)

    def record_lock_release(self, task_id: str, resources: list[str]) -> None:
        """Record locks released by a task."""
        session = self._require_session()
        if task_id in session.tasks:
            session.tasks[task_id].locks_held = []
        for resource in resources:
            if session.locks.get(resource) == task_id:
                del session.locks[resource]
        self._touch()
        self.save_state()
        self.log_event(EventType.LOCK_RELEASED, task_id=task_id, resources=resources)

    def record_lock_contention(self, task_id: str, conflicts: list[dict[str, str]]) -> None:
        """Record a refused lock request."""
        session = self._require_session()
        session.stats.lock_contention_incidents += 1
        self._touch()
        self.save_state()
        self.log_event(EventType.LOCK_CONTENTION, task_id=task_id, conflicts=conflicts)

    def record_review(self, task_id: str, approved: bool, reason: str | None = None) -> None:
        """Record a review verdict."""
        session = self._require_session()
        session.stats.reviews += 1
        if approved:
            session.stats.review_approvals += 1
        else:
            session.stats.review_rejections += 1
        self._touch()
        self.save_state()
        self.log_event(EventType.REVIEW_RECORDED, task_id=task_id, approved=approved, reason=reason)

    def record_context_metrics(self, reduction_percentage: int) -> None:
        """Fold one context slice's reduction into the running average."""
        stats = self._require_session().stats
        total = stats.context_reduction_percentage * stats.context_slices + reduction_percentage
        stats.context_slices += 1
        stats.context_reduction_percentage = round(total / stats.context_slices, 1)

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    def save_state(self) -> None:
        """Overwrite the snapshot and the active-session pointer."""
        if self.session is None or self.session_path is None:
            return

        _atomic_write(self.session_path / "state.json", self.session.model_dump_json(indent=2))

        pointer = ActiveSessionPointer(
            session_id=self.session.session_id,
            path=str(self.session_path),
            plan_id=self.session.plan_id,
            updated_at=self.session.updated_at,
        )
        _atomic_write(self.state_dir / "active.json", pointer.model_dump_json())

    def log_event(self, event_type: EventType, **data: Any) -> Event | None:
        """
        Append one event to the log.

        Returns:
            The written Event, or None if no session is open.
        """
        if self._event_stream is None or self.session is None:
            return None

        event = Event(session_id=self.session.session_id, type=event_type, data=data)
        try:
            self._event_stream.write(event.model_dump_json() + "\n")
            self._event_stream.flush()
        except OSError as e:
            raise CheckpointIOError(f"Could not append to event log: {e}") from e
        return event

    def read_events(self, limit: int | None = None) -> list[Event]:
        """Read events from this session's log, oldest first."""
        if self.session_path is None:
            return []
        return read_event_log(self.session_path / "events.ndjson", limit=limit)

    def checkpoint_path(self, plan_id: str) -> Path:
        """Get the checkpoint file for a plan."""
        return self.state_dir / "checkpoints" / f"checkpoint-{plan_id}.json"

    def create_checkpoint(self, layer: int, completed: list[CompletedTask]) -> Checkpoint:
        """
        Write a checkpoint for the session's plan.

        Args:
            layer: Last fully completed layer index (-1 if none).
            completed: Completed-task ledger.

        Returns:
            The written Checkpoint.

        Raises:
            CheckpointIOError: If the checkpoint cannot be written.
        """
        session = self._require_session()
        checkpoint = Checkpoint(
            plan_id=session.plan_id,
            session_id=session.session_id,
            layer=layer,
            completed_tasks=list(completed),
        )
        path = self.checkpoint_path(session.plan_id)
        _atomic_write(path, checkpoint.model_dump_json(indent=2))

        self.log_event(
            EventType.CHECKPOINT_CREATED,
            layer=layer,
            completed=len(completed),
            path=str(path),
        )
        logger.debug(f"[State] Checkpoint created for {session.plan_id} at layer {layer}")
        return checkpoint

    def load_checkpoint(self, plan_id: str) -> Checkpoint | None:
        """
        Load the checkpoint for a plan.

        Returns:
            Checkpoint, or None if none exists.

        Raises:
            CheckpointIOError: If the file exists but cannot be read or parsed.
        """
        path = self.checkpoint_path(plan_id)
        if not path.exists():
            return None

        try:
            return Checkpoint.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            raise CheckpointIOError(f"Could not load checkpoint {path}: {e}") from e

    def clear_checkpoint(self, plan_id: str) -> None:
        """Delete a plan's checkpoint after a successful run."""
        path = self.checkpoint_path(plan_id)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise CheckpointIOError(f"Could not clear checkpoint {path}: {e}") from e
        self.log_event(EventType.CHECKPOINT_CLEARED, plan_id=plan_id)

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_stats(self) -> SessionStats:
        """Compute aggregate statistics from the current session."""
        session = self._require_session()
        durations = [
            t.duration_seconds
            for t in session.tasks.values()
            if t.status == TaskStatus.COMPLETED and t.duration_seconds is not None
        ]
        end = session.completed_at or utcnow()

        return session.stats.model_copy(
            update={
                "total_tasks": len(session.tasks),
                "completed_tasks": len(session.tasks_with_status(TaskStatus.COMPLETED)),
                "failed_tasks": len(session.tasks_with_status(TaskStatus.FAILED)),
                "total_duration_seconds": (end - session.started_at).total_seconds(),
                "average_task_duration": sum(durations) / len(durations) if durations else 0.0,
                "longest_task_duration": max(durations, default=0.0),
                "shortest_task_duration": min(durations, default=0.0),
            }
        )

    def get_progress(self) -> dict[str, Any]:
        """Summarize session status and per-status task counts."""
        return session_progress(self._require_session())

    def get_blockers(self) -> list[dict[str, Any]]:
        """List tasks that cannot proceed and what they wait on."""
        return session_blockers(self._require_session())

    # =========================================================================
    # RECOVERY
    # =========================================================================

    @staticmethod
    def detect_crashed_session(state_dir: str | Path) -> tuple[Path, Session] | None:
        """
        Find a session left active by a crashed process.

        Returns:
            (session_path, session) if the active session is neither completed
            nor failed, otherwise None.
        """
        active = read_active_session(state_dir)
        if active is None or active[1].status.is_terminal:
            return None
        return active

    @classmethod
    def load_session(cls, session_path: str | Path) -> "StateManager":
        """
        Reopen a persisted session for further writes.

        Raises:
            CheckpointIOError: If the snapshot cannot be read.
        """
        session_path = Path(session_path)
        try:
            session = Session.model_validate_json(
                (session_path / "state.json").read_text(encoding="utf-8")
            )
        except (OSError, ValidationError) as e:
            raise CheckpointIOError(f"Could not load session {session_path}: {e}") from e

        manager = cls(state_dir=session_path.parent.parent)
        manager.session = session
        manager.session_path = session_path
        manager._open_event_stream()
        return manager

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _require_session(self) -> Session:
        if self.session is None:
            raise OrchestrationError("No active session; call initialize_session first")
        return self.session

    def _touch(self) -> None:
        if self.session is not None:
            self.session.updated_at = utcnow()

    def _open_event_stream(self) -> None:
        assert self.session_path is not None
        self.close()
        try:
            self.session_path.mkdir(parents=True, exist_ok=True)
            self._event_stream = open(
                self.session_path / "events.ndjson", "a", encoding="utf-8"
            )
        except OSError as e:
            raise CheckpointIOError(f"Could not open event log in {self.session_path}: {e}") from e


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================


def session_progress(session: Session) -> dict[str, Any]:
    """Summarize a session for status displays."""
    counts = {status.value: 0 for status in TaskStatus}
    for task in session.tasks.values():
        counts[task.status.value] += 1

    return {
        "session_id": session.session_id,
        "plan_id": session.plan_id,
        "status": session.status.value,
        "current_layer": session.current_layer,
        "total_layers": session.total_layers,
        "tasks": counts,
        "progress": session.progress,
        "active_locks": len(session.locks),
        "updated_at": session.updated_at.isoformat(),
    }


def session_blockers(session: Session) -> list[dict[str, Any]]:
    """List non-completed tasks with unmet dependencies, held locks or errors."""
    completed = {t.id for t in session.tasks_with_status(TaskStatus.COMPLETED)}
    blockers: list[dict[str, Any]] = []

    for task in sorted(session.tasks.values(), key=lambda t: (t.layer, t.id)):
        if task.status == TaskStatus.COMPLETED:
            continue

        waiting_on_tasks = [d for d in task.dependencies if d not in completed]
        waiting_on_locks = [
            f"{resource} (held by {session.locks[resource]})"
            for resource in task.resources
            if resource in session.locks and session.locks[resource] != task.id
        ]

        if waiting_on_tasks or waiting_on_locks or task.status == TaskStatus.FAILED:
            blockers.append(
                {
                    "task_id": task.id,
                    "name": task.name,
                    "layer": task.layer,
                    "status": task.status.value,
                    "waiting_on_tasks": waiting_on_tasks,
                    "waiting_on_locks": waiting_on_locks,
                    "error": task.error,
                }
            )

    return blockers


def read_event_log(path: str | Path, limit: int | None = None) -> list[Event]:
    """
    Read an NDJSON event log.

    Args:
        path: Path to ``events.ndjson``.
        limit: Only return the last ``limit`` events.

    Raises:
        CheckpointIOError: If the log cannot be read or a line is malformed.
    """
    log_path = Path(path)
    if not log_path.exists():
        return []

    try:
        lines = log_path.read_text(encoding="utf-8").splitlines()
        events = [Event.model_validate(json.loads(line)) for line in lines if line.strip()]
    except (OSError, json.JSONDecodeError, ValidationError) as e:
        raise CheckpointIOError(f"Could not read event log {log_path}: {e}") from e

    return events[-limit:] if limit else events


def read_active_session(state_dir: str | Path) -> tuple[Path, Session] | None:
    """
    Read the session ``active.json`` points at, whatever its status.

    Returns:
        (session_path, session), or None if there is no readable pointer.
    """
    pointer_path = Path(state_dir) / "active.json"
    if not pointer_path.exists():
        return None

    try:
        pointer = ActiveSessionPointer.model_validate_json(
            pointer_path.read_text(encoding="utf-8")
        )
        session_path = Path(pointer.path)
        session = Session.model_validate_json(
            (session_path / "state.json").read_text(encoding="utf-8")
        )
    except (OSError, ValidationError) as e:
        logger.warning(f"[State] Could not read active session: {e}")
        return None

    return session_path, session
