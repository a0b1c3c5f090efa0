"""Unit tests for the execution runner."""

import asyncio

import pytest

from strata.conflict.lock_manager import ResourceLockManager
from strata.core.exceptions import LayerFailedError, PlanValidationError, StalePlanError
from strata.core.state import EventType, SessionStatus, TaskStatus
from strata.core.state_manager import StateManager
from strata.decomposition.executor import (
    ExecutionResult,
    ExecutionRunner,
    ReviewDecision,
    ReviewResult,
    RunnerOptions,
    dry_run_execute,
    dry_run_review,
)
from strata.decomposition.models import SpecSource
from strata.decomposition.plan import build_plan, compute_spec_checksum
from strata.knowledge.context_assembler import ContextAssembler

# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def plan(scenario_tasks):
    """Create the reference plan."""
    return build_plan(scenario_tasks, plan_id="plan-test")


@pytest.fixture
def make_runner(state_dir, sample_schema):
    """Provide a factory for runners with fast lock polling."""
    runners: list[ExecutionRunner] = []

    def factory(lock_manager: ResourceLockManager | None = None, **overrides) -> ExecutionRunner:
        options = RunnerOptions(**{"lock_poll_interval": 0.01, "lock_max_wait": 0.2, **overrides})
        runner = ExecutionRunner(
            state_manager=StateManager(state_dir),
            lock_manager=lock_manager,
            context_assembler=ContextAssembler(schema=sample_schema, conventions={}),
            options=options,
        )
        runners.append(runner)
        return runner

    yield factory

    for runner in runners:
        runner.state.close()


class Recorder:
    """Execute callback that records calls."""

    def __init__(self, fail: set[str] | None = None, delay: float = 0.0):
        self.calls: list[str] = []
        self.contexts: dict = {}
        self.fail = fail or set()
        self.delay = delay
        self.in_flight = 0
        self.peak = 0

    async def __call__(self, task, context):
        self.calls.append(task.id)
        self.contexts[task.id] = context
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1
        if task.id in self.fail:
            raise RuntimeError(f"{task.id} exploded")
        return ExecutionResult(outputs={"by": task.id})


def approve(task, result):
    return ReviewDecision.APPROVED


class TestReviewNormalization:
    """Tests for ReviewResult.normalize."""

    @pytest.mark.parametrize(
        "value",
        [
            ReviewDecision.APPROVED,
            "approved",
            " Approved ",
            {"verdict": "approved"},
            {"status": "APPROVED", "reason": "lgtm"},
            ReviewResult(decision=ReviewDecision.APPROVED),
        ],
    )
    def test_explicit_approvals(self, value) -> None:
        """Test values that count as approval."""
        assert ReviewResult.normalize(value).approved

    @pytest.mark.parametrize(
        "value",
        [
            ReviewDecision.REJECTED,
            "looks fine to me",
            True,
            None,
            {"verdict": "changes_requested", "reason": "missing index"},
            {},
        ],
    )
    def test_everything_else_rejects(self, value) -> None:
        """Test that anything but an explicit approval is a rejection."""
        review = ReviewResult.normalize(value)

        assert not review.approved
        assert review.decision == ReviewDecision.REJECTED

    def test_rejection_keeps_reason(self) -> None:
        """Test rejection reasons are preserved."""
        review = ReviewResult.normalize({"verdict": "rejected", "reason": "missing index"})

        assert review.reason == "missing index"


class TestExecutionResultCoercion:
    """Tests for ExecutionResult.coerce."""

    def test_dict_result(self) -> None:
        """Test a dict is accepted."""
        result = ExecutionResult.coerce({"success": True, "files_created": ["a.py"]})

        assert result.success
        assert result.files_created == ["a.py"]

    def test_unexpected_result_is_failure(self) -> None:
        """Test a non-result value counts as failure."""
        result = ExecutionResult.coerce(None)

        assert not result.success
        assert "NoneType" in result.error


class TestPlanExecution:
    """Tests for successful plan runs."""

    @pytest.mark.asyncio
    async def test_runs_layers_in_order(self, make_runner, plan, state_dir) -> None:
        """Test every task runs once and layers act as barriers."""
        runner = make_runner()
        execute = Recorder(delay=0.01)

        report = await runner.execute_plan(plan, execute, approve)

        assert sorted(execute.calls) == ["T1", "T2", "T3", "T4", "T5"]
        position = {tid: i for i, tid in enumerate(execute.calls)}
        assert max(position["T1"], position["T5"]) < min(position["T2"], position["T3"])
        assert max(position["T2"], position["T3"]) < position["T4"]

        assert report.stats.completed_tasks == 5
        assert report.stats.layers_executed == 3
        assert report.stats.max_parallelism == 2
        assert report.stats.review_approvals == 5
        assert runner.state.session.status == SessionStatus.COMPLETED
        assert not runner.state.checkpoint_path(plan.id).exists()

    @pytest.mark.asyncio
    async def test_sync_callbacks(self, make_runner, plan) -> None:
        """Test plain functions work as callbacks."""
        runner = make_runner()

        report = await runner.execute_plan(plan, dry_run_execute, dry_run_review)

        assert report.stats.completed_tasks == 5
        assert report.layers[0].results[0].outputs["dry_run"] is True

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, make_runner, make_task) -> None:
        """Test no more than max_concurrent tasks run at once."""
        plan = build_plan([make_task(f"t{i}") for i in range(6)])
        runner = make_runner(max_concurrent=2)
        execute = Recorder(delay=0.02)

        report = await runner.execute_plan(plan, execute, approve)

        assert execute.peak == 2
        assert report.stats.max_parallelism == 2
        assert report.stats.completed_tasks == 6

    @pytest.mark.asyncio
    async def test_context_includes_dependency_outputs(self, make_runner, plan) -> None:
        """Test that dependents see summaries of completed dependencies."""
        runner = make_runner()
        execute = Recorder()

        await runner.execute_plan(plan, execute, approve)

        t3_context = execute.contexts["T3"]
        assert [d.id for d in t3_context.dependencies] == ["T1"]
        assert t3_context.dependencies[0].outputs == {"by": "T1"}
        assert [t.name for t in execute.contexts["T1"].schema_slice.tables] == [
            "users",
            "profiles",
            "posts",
            "notifications",
        ]

    @pytest.mark.asyncio
    async def test_context_slicing_disabled(self, make_runner, plan) -> None:
        """Test that no context is built when slicing is off."""
        runner = make_runner(enable_context_slicing=False)
        execute = Recorder()

        await runner.execute_plan(plan, execute, approve)

        assert all(context is None for context in execute.contexts.values())

    @pytest.mark.asyncio
    async def test_reviews_disabled(self, make_runner, plan) -> None:
        """Test that the review callback is skipped when reviews are off."""
        runner = make_runner(enable_reviews=False)

        def reject(task, result):
            raise AssertionError("review should not run")

        report = await runner.execute_plan(plan, Recorder(), reject)

        assert report.stats.completed_tasks == 5
        assert report.stats.reviews == 0

    @pytest.mark.asyncio
    async def test_stale_plan_rejected(self, make_runner, scenario_tasks) -> None:
        """Test that a changed spec aborts before any task runs."""
        plan = build_plan(
            scenario_tasks, SpecSource(name="s", checksum=compute_spec_checksum("v1"))
        )
        runner = make_runner()
        execute = Recorder()

        with pytest.raises(StalePlanError):
            await runner.execute_plan(plan, execute, approve, spec_content="v2")

        assert execute.calls == []
        assert runner.state.session is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "layers",
        [
            [["T1", "T5"], ["T2", "T3"]],
            [["T1", "T4", "T5"], ["T2", "T3"]],
        ],
        ids=["task-unscheduled", "dependent-first"],
    )
    async def test_inconsistent_layers_rejected(self, make_runner, plan, layers) -> None:
        """Test that layers which do not schedule the tasks correctly never run."""
        runner = make_runner()
        execute = Recorder()
        edited = plan.model_copy(update={"layers": layers})

        with pytest.raises(PlanValidationError):
            await runner.execute_plan(edited, execute, approve)

        assert execute.calls == []
        assert runner.state.session is None

    @pytest.mark.asyncio
    async def test_reviews_enabled_requires_reviewer(self, make_runner, plan) -> None:
        """Test that enabled reviews without a review callback fail before any task runs."""
        runner = make_runner()
        execute = Recorder()

        with pytest.raises(PlanValidationError):
            await runner.execute_plan(plan, execute, None)

        assert execute.calls == []
        assert runner.state.session is None

    @pytest.mark.asyncio
    async def test_reviews_disabled_without_reviewer(self, make_runner, plan) -> None:
        """Test that no review callback is needed when reviews are off."""
        runner = make_runner(enable_reviews=False)

        report = await runner.execute_plan(plan, Recorder(), None)

        assert report.stats.completed_tasks == 5
        assert report.stats.reviews == 0

    @pytest.mark.asyncio
    async def test_task_frequency_checkpoints(self, make_runner, plan) -> None:
        """Test a checkpoint is written after every task."""
        runner = make_runner(checkpoint_frequency="task")

        await runner.execute_plan(plan, Recorder(), approve)

        events = [e.type for e in runner.state.read_events()]
        assert events.count(EventType.CHECKPOINT_CREATED) == 5
        assert events[-2:] == [EventType.CHECKPOINT_CLEARED, EventType.SESSION_COMPLETED]


class TestFailureHandling:
    """Tests for failures, rejections and checkpoints."""

    @pytest.mark.asyncio
    async def test_rejection_fails_layer_and_checkpoints(self, make_runner, plan) -> None:
        """Test a rejected review stops the plan after the layer drains."""
        runner = make_runner()
        execute = Recorder()

        def review(task, result):
            return "needs work" if task.id == "T2" else ReviewDecision.APPROVED

        with pytest.raises(LayerFailedError) as exc_info:
            await runner.execute_plan(plan, execute, review)

        assert exc_info.value.layer_index == 1
        assert [f.task_id for f in exc_info.value.failures] == ["T2"]
        assert "T4" not in execute.calls

        checkpoint = runner.state.load_checkpoint(plan.id)
        assert checkpoint.layer == 0
        assert checkpoint.completed_ids == {"T1", "T5", "T3"}

        session = runner.state.session
        assert session.status == SessionStatus.FAILED
        assert session.tasks["T2"].status == TaskStatus.FAILED
        assert session.tasks["T3"].status == TaskStatus.COMPLETED
        assert session.stats.review_rejections == 1

    @pytest.mark.asyncio
    async def test_callback_exception_becomes_failure(self, make_runner, plan) -> None:
        """Test exceptions from the execute callback fail the task."""
        runner = make_runner()

        with pytest.raises(LayerFailedError) as exc_info:
            await runner.execute_plan(plan, Recorder(fail={"T5"}), approve)

        assert exc_info.value.layer_index == 0
        assert "T5 exploded" in exc_info.value.failures[0].error
        assert runner.state.load_checkpoint(plan.id).layer == -1

    @pytest.mark.asyncio
    async def test_unsuccessful_result_fails_task(self, make_runner, plan) -> None:
        """Test a result with success=False fails the task."""
        runner = make_runner()

        def execute(task, context):
            if task.id == "T1":
                return {"success": False, "error": "compile error"}
            return {"success": True}

        with pytest.raises(LayerFailedError) as exc_info:
            await runner.execute_plan(plan, execute, approve)

        assert exc_info.value.failures[0].error == "compile error"

    @pytest.mark.asyncio
    async def test_no_new_dispatch_after_failure(self, make_runner, make_task) -> None:
        """Test queued tasks are not started once a sibling failed."""
        plan = build_plan([make_task("a"), make_task("b"), make_task("c")])
        runner = make_runner(max_concurrent=1)
        execute = Recorder(fail={"a"})

        with pytest.raises(LayerFailedError) as exc_info:
            await runner.execute_plan(plan, execute, approve)

        assert execute.calls == ["a"]
        assert [f.task_id for f in exc_info.value.failures] == ["a"]
        assert runner.state.session.tasks["b"].status == TaskStatus.PENDING

    @pytest.mark.asyncio
    async def test_never_frequency_skips_checkpoint(self, make_runner, plan) -> None:
        """Test no checkpoint is written when checkpoints are disabled."""
        runner = make_runner(checkpoint_frequency="never")

        with pytest.raises(LayerFailedError):
            await runner.execute_plan(plan, Recorder(fail={"T4"}), approve)

        assert runner.state.load_checkpoint(plan.id) is None

    @pytest.mark.asyncio
    async def test_resume_never_reexecutes(self, make_runner, plan) -> None:
        """Test a re-run resumes at the failed layer and skips completed tasks."""
        first = make_runner()

        def review(task, result):
            return "rejected" if task.id == "T2" else "approved"

        with pytest.raises(LayerFailedError):
            await first.execute_plan(plan, Recorder(), review)
        first.state.close()

        second = make_runner()
        execute = Recorder()
        report = await second.execute_plan(plan, execute, approve)

        assert execute.calls == ["T2", "T4"]
        assert report.resumed_from_layer == 1
        assert sorted(report.restored_tasks) == ["T1", "T3", "T5"]
        assert report.stats.completed_tasks == 5
        assert execute.contexts["T4"].dependencies[1].outputs == {"by": "T3"}
        assert not second.state.checkpoint_path(plan.id).exists()


class TestResourceLocking:
    """Tests for runtime lock handling."""

    @pytest.mark.asyncio
    async def test_lock_timeout_fails_task(self, make_runner, make_task) -> None:
        """Test a task fails when its locks stay taken past the maximum wait."""
        locks = ResourceLockManager()
        locks.acquire_locks(make_task("intruder", tables=["users"]))
        plan = build_plan([make_task("a", tables=["users"])])
        runner = make_runner(lock_manager=locks, lock_max_wait=0.05)
        execute = Recorder()

        with pytest.raises(LayerFailedError) as exc_info:
            await runner.execute_plan(plan, execute, approve)

        assert execute.calls == []
        assert "Timeout waiting for resource locks" in exc_info.value.failures[0].error
        assert runner.state.session.stats.lock_contention_incidents >= 1

    @pytest.mark.asyncio
    async def test_waits_for_lock_release(self, make_runner, make_task) -> None:
        """Test a task proceeds once a held lock is released."""
        locks = ResourceLockManager()
        locks.acquire_locks(make_task("intruder", tables=["users"]))
        plan = build_plan([make_task("a", tables=["users"])])
        runner = make_runner(lock_manager=locks, lock_max_wait=2.0)

        asyncio.get_running_loop().call_later(0.05, locks.release_locks, "intruder")
        report = await runner.execute_plan(plan, Recorder(), approve)

        assert report.stats.completed_tasks == 1
        assert report.stats.lock_contention_incidents >= 1

    @pytest.mark.asyncio
    async def test_locks_released_after_failure(self, make_runner, plan) -> None:
        """Test locks are released even when the task fails."""
        runner = make_runner()

        with pytest.raises(LayerFailedError):
            await runner.execute_plan(plan, Recorder(fail={"T1"}), approve)

        assert runner.locks.lock_table == {}
        assert runner.state.session.locks == {}
