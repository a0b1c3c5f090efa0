"""Execution plan construction, staleness checks and plan files."""

import hashlib
import json
from pathlib import Path
from typing import Any
from uuid import uuid4

from loguru import logger
from pydantic import ValidationError

from strata.core.exceptions import PlanValidationError, StalePlanError
from strata.decomposition.dependency_resolver import DependencyGraphBuilder
from strata.decomposition.models import (
    ExecutionPlan,
    PlanMetadata,
    SpecSource,
    Task,
    TaskType,
)

# Review overhead added per task when estimating wall-clock time
REVIEW_MINUTES_PER_TASK = 2


def compute_spec_checksum(content: str) -> str:
    """
    Fingerprint specification content for staleness detection.

    Args:
        content: Specification text.

    Returns:
        First 16 hex characters of the SHA-256 digest.
    """
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:16]


def spec_source_from_file(path: str | Path, name: str | None = None) -> SpecSource:
    """
    Build a SpecSource for a file-backed specification.

    Raises:
        PlanValidationError: If the file cannot be read.
    """
    spec_path = Path(path)
    try:
        content = spec_path.read_text(encoding="utf-8")
    except OSError as e:
        raise PlanValidationError(f"Could not read spec file {spec_path}: {e}") from e

    return SpecSource(
        name=name or spec_path.stem,
        path=str(spec_path),
        checksum=compute_spec_checksum(content),
    )


def estimate_minutes(tasks: list[Task], layers: list[list[str]]) -> int:
    """Estimate wall-clock minutes: longest task per layer plus review overhead."""
    task_map = {t.id: t for t in tasks}
    parallel_time = sum(
        max((task_map[tid].estimated_minutes for tid in layer if tid in task_map), default=0)
        for layer in layers
    )
    return parallel_time + REVIEW_MINUTES_PER_TASK * len(tasks)


def parallelization_potential(layers: list[list[str]]) -> float:
    """Ratio of tasks that run alongside another task to all tasks (0-1)."""
    total = sum(len(layer) for layer in layers)
    if total == 0:
        return 0.0
    parallel = sum(max(0, len(layer) - 1) for layer in layers)
    return parallel / total


def build_plan(
    tasks: list[Task],
    source: SpecSource | None = None,
    plan_id: str | None = None,
) -> ExecutionPlan:
    """
    Build an execution plan from tasks.

    Args:
        tasks: Tasks in declaration order (order decides implicit edges).
        source: Specification the tasks were derived from.
        plan_id: Optional plan identifier (generated if not provided).

    Returns:
        ExecutionPlan with layers, implicit dependencies and metadata.

    Raises:
        CycleError: If the dependency graph contains a cycle.
        PlanValidationError: If tasks are duplicated or reference unknown IDs.

    Example:
        >>> plan = build_plan(tasks, SpecSource(name="notifications"))
        >>> plan.metadata.total_layers
        3
    """
    builder = DependencyGraphBuilder(tasks)
    layers = builder.build()

    by_type = {t.value: 0 for t in TaskType}
    for task in tasks:
        by_type[task.type.value] += 1

    metadata = PlanMetadata(
        total_tasks=len(tasks),
        total_layers=len(layers),
        estimated_minutes=estimate_minutes(tasks, layers),
        parallelization_potential=parallelization_potential(layers),
        max_parallelism=max((len(layer) for layer in layers), default=0),
        tasks_by_type=by_type,
    )

    plan = ExecutionPlan(
        id=plan_id or f"plan-{uuid4().hex[:12]}",
        source=source or SpecSource(),
        tasks=list(tasks),
        layers=layers,
        implicit_dependencies=builder.implicit_dependencies,
        metadata=metadata,
    )

    logger.info(
        f"Built plan {plan.id}: {metadata.total_tasks} tasks in "
        f"{metadata.total_layers} layers (~{metadata.estimated_minutes} min, "
        f"max parallelism {metadata.max_parallelism})"
    )
    return plan


def validate_plan_source(plan: ExecutionPlan, spec_content: str | None = None) -> str | None:
    """
    Check that the plan's specification checksum still matches its source.

    The current content is taken from ``spec_content`` when given, otherwise
    from ``plan.source.path``. Plans without a checksum or any way to read the
    current source are accepted with a warning.

    Args:
        plan: Plan to validate.
        spec_content: Optional current specification text.

    Returns:
        The current checksum, or None if validation was skipped.

    Raises:
        StalePlanError: If the checksum differs.
        PlanValidationError: If the source path cannot be read.
    """
    if not plan.source.checksum:
        logger.warning(f"Plan {plan.id} has no spec checksum - skipping validation")
        return None

    if spec_content is None:
        if not plan.source.path:
            logger.warning(f"Plan {plan.id} has no spec path - skipping validation")
            return None
        try:
            spec_content = Path(plan.source.path).read_text(encoding="utf-8")
        except OSError as e:
            raise PlanValidationError(
                f"Could not validate plan {plan.id}: cannot read {plan.source.path}: {e}"
            ) from e

    current = compute_spec_checksum(spec_content)
    if current != plan.source.checksum:
        raise StalePlanError(
            f"Plan {plan.id} is stale: spec has changed since the plan was created. "
            "Please regenerate the plan.",
            plan_checksum=plan.source.checksum,
            current_checksum=current,
        )

    logger.debug(f"Plan {plan.id} validation passed (checksum {current})")
    return current


def validate_plan_layers(plan: ExecutionPlan) -> None:
    """
    Check that a plan's layers still schedule its tasks correctly.

    Every task must appear in exactly one layer, layers may only name known
    tasks, and for every explicit or implicit edge the dependency must sit
    in an earlier layer than its dependent. Implicit edges are recomputed
    from the tasks' resources as well as read from the plan document.

    Raises:
        PlanValidationError: If the layers do not match the tasks.
    """
    known = {task.id for task in plan.tasks}
    layer_of: dict[str, int] = {}

    for index, layer in enumerate(plan.layers):
        for task_id in layer:
            if task_id not in known:
                raise PlanValidationError(
                    f"Plan {plan.id} layer {index} names unknown task {task_id}"
                )
            if task_id in layer_of:
                raise PlanValidationError(
                    f"Plan {plan.id} schedules task {task_id} more than once"
                )
            layer_of[task_id] = index

    unscheduled = [task.id for task in plan.tasks if task.id not in layer_of]
    if unscheduled:
        raise PlanValidationError(
            f"Plan {plan.id} does not schedule tasks: {', '.join(unscheduled)}"
        )

    builder = DependencyGraphBuilder(plan.tasks)
    builder.detect_resource_conflicts()
    edges = builder.edges
    for implicit in plan.implicit_dependencies:
        edges.setdefault(implicit.dependent_id, []).append(implicit.dependency_id)

    for task_id, dependencies in edges.items():
        for dep_id in dependencies:
            if task_id not in layer_of or dep_id not in layer_of:
                raise PlanValidationError(
                    f"Plan {plan.id} has an edge {dep_id} -> {task_id} to an unknown task"
                )
            if layer_of[dep_id] >= layer_of[task_id]:
                raise PlanValidationError(
                    f"Plan {plan.id} schedules {task_id} in layer {layer_of[task_id]} "
                    f"but its dependency {dep_id} in layer {layer_of[dep_id]}"
                )

    logger.debug(f"Plan {plan.id} layers validated ({len(layer_of)} tasks)")


# =============================================================================
# PLAN AND TASK FILES
# =============================================================================


def save_plan(plan: ExecutionPlan, path: str | Path) -> Path:
    """Write a plan document as JSON."""
    plan_path = Path(path)
    plan_path.parent.mkdir(parents=True, exist_ok=True)
    plan_path.write_text(plan.model_dump_json(indent=2), encoding="utf-8")
    logger.debug(f"Saved plan {plan.id} to {plan_path}")
    return plan_path


def load_plan(path: str | Path) -> ExecutionPlan:
    """
    Read a plan document.

    Raises:
        PlanValidationError: If the file is missing or not a valid plan.
    """
    plan_path = Path(path)
    try:
        return ExecutionPlan.model_validate_json(plan_path.read_text(encoding="utf-8"))
    except OSError as e:
        raise PlanValidationError(f"Could not read plan {plan_path}: {e}") from e
    except ValidationError as e:
        raise PlanValidationError(f"Invalid plan document {plan_path}: {e}") from e


def parse_tasks(data: Any) -> list[Task]:
    """
    Parse task descriptors from decoded JSON.

    Accepts either a list of task objects or ``{"tasks": [...]}``.

    Raises:
        PlanValidationError: If the payload is not a list of valid tasks.
    """
    if isinstance(data, dict):
        data = data.get("tasks", data.get("blueprints"))
    if not isinstance(data, list):
        raise PlanValidationError("Task file must contain a list of tasks")

    try:
        return [Task.model_validate(item) for item in data]
    except ValidationError as e:
        raise PlanValidationError(f"Invalid task descriptor: {e}") from e


def load_tasks(path: str | Path) -> list[Task]:
    """Read task descriptors from a JSON file."""
    task_path = Path(path)
    try:
        data = json.loads(task_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise PlanValidationError(f"Could not read task file {task_path}: {e}") from e
    return parse_tasks(data)
