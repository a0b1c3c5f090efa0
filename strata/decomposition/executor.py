"""
Execution runner for Strata.

Runs an execution plan layer by layer. Tasks within a layer run in parallel
under a bounded semaphore; each layer is a barrier. Per task the runner takes
resource locks, assembles a context slice, invokes the execute callback,
invokes the review callback and releases the locks, recording every
transition through the state manager.
"""

import asyncio
import inspect
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Literal

from loguru import logger
from pydantic import BaseModel, Field

from strata.conflict.lock_manager import ResourceLockManager
from strata.core.config import Settings, get_settings
from strata.core.exceptions import (
    CheckpointIOError,
    LayerFailedError,
    LockTimeoutError,
    PlanValidationError,
    TaskExecutionError,
    TaskReviewRejectedError,
)
from strata.core.state import CompletedTask, SessionStats, TaskStatus, utcnow
from strata.core.state_manager import StateManager
from strata.decomposition.models import ExecutionPlan, Task
from strata.decomposition.plan import validate_plan_layers, validate_plan_source
from strata.knowledge.context_assembler import ContextAssembler
from strata.knowledge.models import ContextSlice

# =============================================================================
# CALLBACK CONTRACT
# =============================================================================


class ExecutionResult(BaseModel):
    """What an execute callback reports back."""

    success: bool = True
    files_created: list[str] = Field(default_factory=list)
    files_modified: list[str] = Field(default_factory=list)
    outputs: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None

    @classmethod
    def coerce(cls, value: Any) -> "ExecutionResult":
        """Accept an ExecutionResult or a plain dict from a callback."""
        if isinstance(value, ExecutionResult):
            return value
        if isinstance(value, dict):
            return cls.model_validate(value)
        return cls(success=False, error=f"Execute callback returned {type(value).__name__}")


class ReviewDecision(str, Enum):
    """Verdict of a review callback."""

    APPROVED = "approved"
    REJECTED = "rejected"


class ReviewResult(BaseModel):
    """Normalized review verdict."""

    decision: ReviewDecision
    reason: str | None = None

    @property
    def approved(self) -> bool:
        return self.decision == ReviewDecision.APPROVED

    @classmethod
    def normalize(cls, value: Any) -> "ReviewResult":
        """
        Turn whatever a review callback returned into a verdict.

        Only ``ReviewDecision.APPROVED``, the string ``"approved"`` or a dict
        whose ``verdict``/``decision``/``status`` is ``"approved"`` approve.
        Everything else is a rejection.
        """
        if isinstance(value, ReviewResult):
            return value
        if isinstance(value, ReviewDecision):
            return cls(decision=value)
        if isinstance(value, str):
            if value.strip().lower() == ReviewDecision.APPROVED.value:
                return cls(decision=ReviewDecision.APPROVED)
            return cls(decision=ReviewDecision.REJECTED, reason=value)
        if isinstance(value, dict):
            verdict = value.get("verdict", value.get("decision", value.get("status")))
            reason = value.get("reason") or value.get("feedback")
            if str(verdict).strip().lower() == ReviewDecision.APPROVED.value:
                return cls(decision=ReviewDecision.APPROVED, reason=reason)
            return cls(
                decision=ReviewDecision.REJECTED,
                reason=reason or f"Review verdict was {verdict!r}",
            )
        return cls(
            decision=ReviewDecision.REJECTED,
            reason=f"Unrecognized review verdict: {value!r}",
        )


ExecuteCallback = Callable[[Task, ContextSlice | None], ExecutionResult | dict | Awaitable[Any]]
ReviewCallback = Callable[[Task, ExecutionResult], ReviewResult | str | dict | Awaitable[Any]]


# =============================================================================
# RESULT MODELS
# =============================================================================


class TaskExecutionResult:
    """Result of a single task run."""

    def __init__(
        self,
        task_id: str,
        success: bool,
        layer: int,
        status: TaskStatus = TaskStatus.COMPLETED,
        outputs: dict[str, Any] | None = None,
        error: str | None = None,
        files_created: list[str] | None = None,
        files_modified: list[str] | None = None,
        duration_seconds: float = 0.0,
        review_reason: str | None = None,
        skipped: bool = False,
    ):
        self.task_id = task_id
        self.success = success
        self.layer = layer
        self.status = status
        self.outputs = outputs or {}
        self.error = error
        self.files_created = files_created or []
        self.files_modified = files_modified or []
        self.duration_seconds = duration_seconds
        self.review_reason = review_reason
        self.skipped = skipped
        self.completed_at = utcnow().isoformat()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "task_id": self.task_id,
            "success": self.success,
            "layer": self.layer,
            "status": self.status.value,
            "outputs": self.outputs,
            "error": self.error,
            "files_created": self.files_created,
            "files_modified": self.files_modified,
            "duration_seconds": self.duration_seconds,
            "review_reason": self.review_reason,
            "skipped": self.skipped,
            "completed_at": self.completed_at,
        }


class LayerExecutionResult:
    """Result of running one layer."""

    def __init__(self, layer_index: int, results: list[TaskExecutionResult], parallelism: int = 0):
        self.layer_index = layer_index
        self.results = results
        self.parallelism = parallelism

    @property
    def completed_tasks(self) -> list[str]:
        """Get IDs of successfully completed tasks."""
        return [r.task_id for r in self.results if r.success]

    @property
    def failed_tasks(self) -> list[str]:
        """Get IDs of tasks that failed (not counting skipped ones)."""
        return [r.task_id for r in self.results if not r.success and not r.skipped]

    @property
    def skipped_tasks(self) -> list[str]:
        """Get IDs of tasks never dispatched because the layer halted."""
        return [r.task_id for r in self.results if r.skipped]

    @property
    def failures(self) -> list[TaskExecutionResult]:
        return [r for r in self.results if not r.success and not r.skipped]

    @property
    def success(self) -> bool:
        return all(r.success for r in self.results)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "layer_index": self.layer_index,
            "results": [r.to_dict() for r in self.results],
            "completed_tasks": self.completed_tasks,
            "failed_tasks": self.failed_tasks,
            "skipped_tasks": self.skipped_tasks,
            "parallelism": self.parallelism,
        }


class ExecutionReport:
    """Summary of a completed plan run."""

    def __init__(
        self,
        plan_id: str,
        session_id: str,
        layers: list[LayerExecutionResult],
        stats: SessionStats,
        resumed_from_layer: int | None = None,
        restored_tasks: list[str] | None = None,
    ):
        self.plan_id = plan_id
        self.session_id = session_id
        self.layers = layers
        self.stats = stats
        self.resumed_from_layer = resumed_from_layer
        self.restored_tasks = restored_tasks or []

    @property
    def executed_tasks(self) -> list[str]:
        """Get IDs of tasks executed in this run, in completion order per layer."""
        return [tid for layer in self.layers for tid in layer.completed_tasks]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "plan_id": self.plan_id,
            "session_id": self.session_id,
            "layers": [layer.to_dict() for layer in self.layers],
            "executed_tasks": self.executed_tasks,
            "restored_tasks": self.restored_tasks,
            "resumed_from_layer": self.resumed_from_layer,
            "stats": self.stats.model_dump(),
        }


# =============================================================================
# RUNNER OPTIONS
# =============================================================================


@dataclass
class RunnerOptions:
    """Tunables for an ExecutionRunner."""

    max_concurrent: int = 5
    lock_poll_interval: float = 2.0
    lock_max_wait: float = 60.0
    checkpoint_frequency: Literal["layer", "task", "never"] = "layer"
    enable_resource_locking: bool = True
    enable_context_slicing: bool = True
    enable_reviews: bool = True
    validate_source: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "RunnerOptions":
        """Build options from application settings."""
        return cls(
            max_concurrent=settings.strata_max_concurrent,
            lock_poll_interval=settings.strata_lock_poll_interval,
            lock_max_wait=settings.strata_lock_max_wait,
            checkpoint_frequency=settings.strata_checkpoint_frequency,
            enable_resource_locking=settings.strata_enable_resource_locking,
            enable_context_slicing=settings.strata_enable_context_slicing,
            enable_reviews=settings.strata_enable_reviews,
        )


async def _resolve(value: Any) -> Any:
    """Await callback results that are awaitable."""
    if inspect.isawaitable(value):
        return await value
    return value


# =============================================================================
# EXECUTION RUNNER
# =============================================================================


class ExecutionRunner:
    """
    Execute a plan layer by layer with bounded parallelism.

    Attributes:
        options: Runner tunables.
        state: State manager recording the session.
        locks: Resource lock manager.
        assembler: Context assembler.

    Example:
        >>> runner = ExecutionRunner(state_manager=StateManager(tmp_dir))
        >>> report = await runner.execute_plan(plan, execute_task, review_task)
        >>> report.stats.completed_tasks
        5
    """

    def __init__(
        self,
        state_manager: StateManager | None = None,
        lock_manager: ResourceLockManager | None = None,
        context_assembler: ContextAssembler | None = None,
        options: RunnerOptions | None = None,
        settings: Settings | None = None,
    ):
        """
        Initialize the runner.

        Args:
            state_manager: Session recorder (default: one under the settings' state dir).
            lock_manager: Lock manager (default: a fresh one).
            context_assembler: Context assembler (default: from the project dir).
            options: Runner tunables (default: from settings).
            settings: Settings to derive defaults from.
        """
        settings = settings or get_settings()
        self.options = options or RunnerOptions.from_settings(settings)
        self.state = state_manager or StateManager(settings.state_path)
        self.locks = lock_manager or ResourceLockManager()
        self.assembler = context_assembler or ContextAssembler(
            project_path=settings.strata_project_dir,
            depth=settings.strata_context_depth,
        )

        self._in_flight = 0
        self._peak_in_flight = 0

    # =========================================================================
    # PLAN
    # =========================================================================

    async def execute_plan(
        self,
        plan: ExecutionPlan,
        execute_task: ExecuteCallback,
        review_task: ReviewCallback | None,
        spec_content: str | None = None,
        plan_path: str | None = None,
    ) -> ExecutionReport:
        """
        Execute every layer of a plan, resuming from its checkpoint if present.

        Args:
            plan: Plan to execute.
            execute_task: ``(task, context) -> ExecutionResult | dict`` (sync or async).
            review_task: ``(task, result) -> ReviewResult | str | dict`` (sync or async).
                May be None only when reviews are disabled.
            spec_content: Current spec text for the staleness check.
            plan_path: Where the plan document lives (stored for ``resume``).

        Returns:
            ExecutionReport for this run.

        Raises:
            StalePlanError: If the spec changed since the plan was built.
            PlanValidationError: If the layers do not schedule the tasks correctly,
                or reviews are enabled without a review callback.
            CorpusLoadError: If the context corpus cannot be loaded.
            LayerFailedError: If any task in a layer fails.
            CheckpointIOError: If durable state cannot be written.
        """
        if self.options.enable_reviews and review_task is None:
            raise PlanValidationError(
                f"Plan {plan.id} needs a review callback while reviews are enabled"
            )
        validate_plan_layers(plan)
        if self.options.validate_source:
            validate_plan_source(plan, spec_content)

        if self.options.enable_context_slicing and not self.assembler.initialized:
            self.assembler.initialize()

        checkpoint = self.state.load_checkpoint(plan.id)
        session = self.state.session

        if session is not None and session.plan_id == plan.id and not session.status.is_terminal:
            self.state.resume_session()
        else:
            self.state.initialize_session(plan, plan_path=plan_path)
            self.state.mark_running()

        ledger: list[CompletedTask] = []
        start_layer = 0
        if checkpoint is not None:
            ledger.extend(checkpoint.completed_tasks)
            start_layer = checkpoint.next_layer
            self.state.restore_completed(checkpoint)
            logger.info(
                f"Resuming plan {plan.id} at layer {start_layer} "
                f"({len(ledger)} tasks restored from checkpoint)"
            )

        # Tasks a crashed session finished after its last checkpoint
        restored_ids = {t.id for t in ledger}
        for task_state in self.state.session.tasks_with_status(TaskStatus.COMPLETED):
            if task_state.id not in restored_ids:
                task = plan.get_task(task_state.id)
                ledger.append(
                    CompletedTask(
                        id=task_state.id,
                        name=task_state.name,
                        type=task.type.value if task else "generic",
                        outputs=task_state.outputs or {},
                        completed_at=task_state.completed_at or utcnow(),
                    )
                )
        restored = [t.id for t in ledger]

        layer_results: list[LayerExecutionResult] = []
        for layer_index in range(start_layer, plan.total_layers):
            done = {t.id for t in ledger}
            tasks = [t for t in plan.get_layer_tasks(layer_index) if t.id not in done]
            if not tasks:
                logger.debug(f"Layer {layer_index} already complete, skipping")
                continue

            layer_result = await self._execute_layer(
                layer_index, tasks, execute_task, review_task, ledger
            )
            layer_results.append(layer_result)

            if not layer_result.success:
                self._handle_layer_failure(layer_index, layer_result, ledger)

            self.state.record_layer_completed(layer_index, layer_result.parallelism)
            if self.options.checkpoint_frequency == "layer":
                self.state.create_checkpoint(layer_index, ledger)

        self.state.clear_checkpoint(plan.id)
        self.state.complete_session()

        stats = self.state.get_stats()
        logger.info(
            f"Plan {plan.id} complete: {stats.completed_tasks}/{stats.total_tasks} tasks, "
            f"{stats.layers_executed} layers, {stats.lock_contention_incidents} lock contentions"
        )

        return ExecutionReport(
            plan_id=plan.id,
            session_id=self.state.session.session_id,
            layers=layer_results,
            stats=stats,
            resumed_from_layer=start_layer if checkpoint is not None else None,
            restored_tasks=restored,
        )

    def _handle_layer_failure(
        self,
        layer_index: int,
        layer_result: LayerExecutionResult,
        ledger: list[CompletedTask],
    ) -> None:
        """Checkpoint progress, fail the session and raise LayerFailedError."""
        failures = layer_result.failures
        self.state.record_layer_failed(
            layer_index, [f.task_id for f in failures], layer_result.parallelism
        )

        if self.options.checkpoint_frequency != "never":
            self.state.create_checkpoint(layer_index - 1, ledger)

        error = LayerFailedError(layer_index, failures)
        logger.error(f"{error}")
        self.state.fail_session(str(error))
        raise error

    # =========================================================================
    # LAYER
    # =========================================================================

    async def _execute_layer(
        self,
        layer_index: int,
        tasks: list[Task],
        execute_task: ExecuteCallback,
        review_task: ReviewCallback | None,
        ledger: list[CompletedTask],
    ) -> LayerExecutionResult:
        """Run one layer's tasks in parallel and wait for all of them."""
        task_ids = [t.id for t in tasks]
        logger.info(f"Executing layer {layer_index} with {len(tasks)} tasks")
        self.state.record_layer_started(layer_index, task_ids)

        for task in tasks:
            self.state.update_task_status(task.id, TaskStatus.READY)

        semaphore = asyncio.Semaphore(self.options.max_concurrent)
        halt = asyncio.Event()
        self._in_flight = 0
        self._peak_in_flight = 0

        coroutines = [
            self._execute_with_semaphore(
                task, layer_index, semaphore, halt, execute_task, review_task, ledger
            )
            for task in tasks
        ]
        results = await asyncio.gather(*coroutines, return_exceptions=True)

        for result in results:
            if isinstance(result, BaseException):
                raise result

        layer_result = LayerExecutionResult(
            layer_index=layer_index,
            results=list(results),
            parallelism=self._peak_in_flight,
        )

        logger.info(
            f"Layer {layer_index} complete: "
            f"{len(layer_result.completed_tasks)} succeeded, "
            f"{len(layer_result.failed_tasks)} failed, "
            f"{len(layer_result.skipped_tasks)} not started"
        )
        return layer_result

    async def _execute_with_semaphore(
        self,
        task: Task,
        layer_index: int,
        semaphore: asyncio.Semaphore,
        halt: asyncio.Event,
        execute_task: ExecuteCallback,
        review_task: ReviewCallback | None,
        ledger: list[CompletedTask],
    ) -> TaskExecutionResult:
        """Execute task once a slot is free, unless the layer has halted."""
        async with semaphore:
            if halt.is_set():
                self.state.update_task_status(task.id, TaskStatus.PENDING)
                return TaskExecutionResult(
                    task_id=task.id,
                    success=False,
                    layer=layer_index,
                    status=TaskStatus.PENDING,
                    error="Not started: layer halted after a failure",
                    skipped=True,
                )

            self._in_flight += 1
            self._peak_in_flight = max(self._peak_in_flight, self._in_flight)
            try:
                return await self._execute_task(
                    task, layer_index, halt, execute_task, review_task, ledger
                )
            finally:
                self._in_flight -= 1

    # =========================================================================
    # TASK
    # =========================================================================

    async def _execute_task(
        self,
        task: Task,
        layer_index: int,
        halt: asyncio.Event,
        execute_task: ExecuteCallback,
        review_task: ReviewCallback | None,
        ledger: list[CompletedTask],
    ) -> TaskExecutionResult:
        """Locks, context, execute, review, release."""
        start = time.monotonic()
        logger.info(f"Executing task: {task.id} - {task.name}")
        self.state.update_task_status(task.id, TaskStatus.EXECUTING)

        acquired: list[str] = []
        result: ExecutionResult | None = None
        review: ReviewResult | None = None
        error: Exception | None = None

        try:
            if self.options.enable_resource_locking:
                acquired = await self._acquire_locks_with_retry(task)

            context = self._assemble_context(task, ledger)
            result = ExecutionResult.coerce(await _resolve(execute_task(task, context)))
            if not result.success:
                raise TaskExecutionError(task.id, result.error or "Execution reported failure")

            if self.options.enable_reviews and review_task is not None:
                self.state.update_task_status(task.id, TaskStatus.REVIEWING)
                review = ReviewResult.normalize(await _resolve(review_task(task, result)))
                self.state.record_review(task.id, review.approved, review.reason)
                if not review.approved:
                    raise TaskReviewRejectedError(task.id, review.reason)

        except CheckpointIOError:
            raise
        except Exception as e:
            error = e
        finally:
            if acquired:
                released = self.locks.release_locks(task.id)
                self.state.record_lock_release(task.id, released)

        duration = time.monotonic() - start

        if error is not None:
            halt.set()
            logger.error(f"Task {task.id} failed: {error}")
            self.state.update_task_status(task.id, TaskStatus.FAILED, error=str(error))
            return TaskExecutionResult(
                task_id=task.id,
                success=False,
                layer=layer_index,
                status=TaskStatus.FAILED,
                error=str(error),
                files_created=result.files_created if result else None,
                files_modified=result.files_modified if result else None,
                duration_seconds=duration,
                review_reason=review.reason if review else None,
            )

        self.state.update_task_status(task.id, TaskStatus.COMPLETED, outputs=result.outputs)
        ledger.append(
            CompletedTask(id=task.id, name=task.name, type=task.type.value, outputs=result.outputs)
        )
        if self.options.checkpoint_frequency == "task":
            self.state.create_checkpoint(layer_index - 1, ledger)

        logger.info(f"Task {task.id} completed in {duration:.2f}s")
        return TaskExecutionResult(
            task_id=task.id,
            success=True,
            layer=layer_index,
            outputs=result.outputs,
            files_created=result.files_created,
            files_modified=result.files_modified,
            duration_seconds=duration,
            review_reason=review.reason if review else None,
        )

    async def _acquire_locks_with_retry(self, task: Task) -> list[str]:
        """
        Poll the lock manager until every lock is granted.

        Raises:
            LockTimeoutError: If locks are still contended after ``lock_max_wait``.
        """
        start = time.monotonic()

        while True:
            lock_result = self.locks.acquire_locks(task)
            if lock_result.success:
                if lock_result.acquired:
                    self.state.record_lock_acquisition(task.id, lock_result.acquired)
                return lock_result.acquired

            conflicts = [c.to_dict() for c in lock_result.conflicts]
            self.state.record_lock_contention(task.id, conflicts)

            waited = time.monotonic() - start
            if waited >= self.options.lock_max_wait:
                raise LockTimeoutError(task.id, waited, conflicts)

            logger.debug(
                f"[Lock] {task.id} blocked by "
                f"{', '.join(lock_result.conflicting_resources)}; retrying"
            )
            await asyncio.sleep(
                min(self.options.lock_poll_interval, self.options.lock_max_wait - waited)
            )

    def _assemble_context(self, task: Task, ledger: list[CompletedTask]) -> ContextSlice | None:
        if not self.options.enable_context_slicing:
            return None
        context = self.assembler.assemble_context_for_task(task, ledger)
        self.state.record_context_metrics(context.metrics.reduction_percentage)
        return context


# =============================================================================
# DRY-RUN CALLBACKS
# =============================================================================


def dry_run_execute(task: Task, context: ContextSlice | None) -> ExecutionResult:
    """Execute callback that does nothing and succeeds."""
    tables = [t.name for t in context.schema_slice.tables] if context else []
    logger.info(f"[dry-run] {task.id}: {task.name} ({len(tables)} tables in context)")
    return ExecutionResult(
        success=True,
        outputs={"dry_run": True, "context_tables": tables},
    )


def dry_run_review(task: Task, result: ExecutionResult) -> ReviewResult:
    """Review callback that approves everything."""
    return ReviewResult(decision=ReviewDecision.APPROVED, reason="dry run")
