"""Exception hierarchy for Strata orchestration.

Build-time errors (``CycleError``, ``PlanValidationError``) are raised before
any task runs. Runtime errors are caught per task, recorded in the event log
and escalated as ``LayerFailedError`` once the layer has drained.
"""

from typing import Any


class OrchestrationError(Exception):
    """Base exception for Strata errors."""

    pass


class PlanValidationError(OrchestrationError):
    """The plan or its task set is invalid and must be regenerated or edited."""

    pass


class StalePlanError(PlanValidationError):
    """The source specification changed after the plan was built."""

    def __init__(
        self,
        message: str,
        plan_checksum: str | None = None,
        current_checksum: str | None = None,
    ) -> None:
        super().__init__(message)
        self.plan_checksum = plan_checksum
        self.current_checksum = current_checksum


class CycleError(OrchestrationError):
    """The dependency graph contains at least one cycle."""

    def __init__(self, message: str, cycles: list[list[str]] | None = None) -> None:
        super().__init__(message)
        self.cycles = cycles or []


class LockTimeoutError(OrchestrationError):
    """Resource locks could not be acquired within the maximum wait."""

    def __init__(
        self,
        task_id: str,
        waited_seconds: float,
        conflicts: list[dict[str, Any]] | None = None,
    ) -> None:
        super().__init__(
            f"Timeout waiting for resource locks for {task_id} "
            f"after {waited_seconds:.1f}s"
        )
        self.task_id = task_id
        self.waited_seconds = waited_seconds
        self.conflicts = conflicts or []


class TaskExecutionError(OrchestrationError):
    """The execution callback reported a failure."""

    def __init__(self, task_id: str, message: str) -> None:
        super().__init__(message)
        self.task_id = task_id


class TaskReviewRejectedError(TaskExecutionError):
    """The review callback did not approve the task output."""

    def __init__(self, task_id: str, reason: str | None = None) -> None:
        super().__init__(task_id, f"Review rejected {task_id}: {reason or 'no reason given'}")
        self.reason = reason


class CheckpointIOError(OrchestrationError):
    """Durable storage failed while persisting or loading orchestration state."""

    pass


class CorpusLoadError(OrchestrationError):
    """The cached schema/conventions corpus exists but cannot be read."""

    pass


class LayerFailedError(OrchestrationError):
    """One or more tasks in a layer failed; the plan run stops after the layer."""

    def __init__(self, layer_index: int, failures: list[Any]) -> None:
        task_ids = ", ".join(getattr(f, "task_id", str(f)) for f in failures)
        super().__init__(
            f"Layer {layer_index} failed: {len(failures)} task(s) failed ({task_ids})"
        )
        self.layer_index = layer_index
        self.failures = failures
