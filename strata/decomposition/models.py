"""Pydantic models for task orchestration.

This module defines the data structures used by Strata's planning layer:
resource references, tasks (blueprints), implicit dependencies and the
execution plan document handed to the runner.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# ENUMS
# =============================================================================


class TaskType(str, Enum):
    """Kind of work a task performs."""

    DATABASE = "database"
    API = "api"
    SERVICE = "service"
    UI = "ui"
    GENERIC = "generic"


class ResourceKind(str, Enum):
    """Mutually exclusive write domains a task can declare."""

    MIGRATION = "migration"
    TABLE = "table"
    FUNCTION = "function"
    ROUTE = "route"
    COMPONENT = "component"


# Global acquisition order; migrations first because they are sequential.
RESOURCE_ORDER: list[ResourceKind] = [
    ResourceKind.MIGRATION,
    ResourceKind.TABLE,
    ResourceKind.FUNCTION,
    ResourceKind.ROUTE,
    ResourceKind.COMPONENT,
]


# =============================================================================
# RESOURCES
# =============================================================================


class ResourceRef(BaseModel):
    """A (kind, identifier) pair naming one exclusive write domain."""

    model_config = ConfigDict(frozen=True)

    kind: ResourceKind
    identifier: str = Field(min_length=1)

    @property
    def key(self) -> str:
        """Get the lock-table key, e.g. ``table:users``."""
        return f"{self.kind.value}:{self.identifier}"

    def __str__(self) -> str:
        return self.key


class ResourceSet(BaseModel):
    """Resources a task declares, grouped by kind.

    Example:
        >>> resources = ResourceSet(tables=["users"], routes=["/api/users"])
        >>> [r.key for r in resources.refs()]
        ['table:users', 'route:/api/users']
    """

    model_config = ConfigDict(frozen=True)

    tables: list[str] = Field(default_factory=list)
    migrations: list[str] = Field(default_factory=list)
    routes: list[str] = Field(default_factory=list)
    components: list[str] = Field(default_factory=list)
    functions: list[str] = Field(default_factory=list)

    def by_kind(self, kind: ResourceKind) -> list[str]:
        """Get the identifiers declared for one resource kind."""
        return {
            ResourceKind.TABLE: self.tables,
            ResourceKind.MIGRATION: self.migrations,
            ResourceKind.ROUTE: self.routes,
            ResourceKind.COMPONENT: self.components,
            ResourceKind.FUNCTION: self.functions,
        }[kind]

    def refs(self) -> list[ResourceRef]:
        """Get every declared resource as a ResourceRef."""
        refs: list[ResourceRef] = []
        for kind in (
            ResourceKind.TABLE,
            ResourceKind.MIGRATION,
            ResourceKind.ROUTE,
            ResourceKind.COMPONENT,
            ResourceKind.FUNCTION,
        ):
            refs.extend(ResourceRef(kind=kind, identifier=i) for i in self.by_kind(kind))
        return refs

    def is_empty(self) -> bool:
        """Check whether no resources are declared."""
        return not self.refs()


# =============================================================================
# TASKS
# =============================================================================


class Task(BaseModel):
    """A unit of declarative work (a "blueprint").

    Tasks are immutable once a plan is built; execution status is tracked in
    the session, never on the task itself.

    Example:
        >>> task = Task(
        ...     id="bp-users-table",
        ...     name="Create users table",
        ...     type=TaskType.DATABASE,
        ...     resources=ResourceSet(
        ...         tables=["users"],
        ...         migrations=["001_create_users.sql"],
        ...     ),
        ... )
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(
        ...,
        min_length=1,
        description="Unique task identifier",
    )
    name: str = Field(
        ...,
        min_length=1,
        max_length=255,
        description="Human-readable task name",
    )
    description: str = Field(
        default="",
        description="Free-form task description",
    )
    type: TaskType = Field(
        default=TaskType.GENERIC,
        description="Task type tag",
    )
    resources: ResourceSet = Field(
        default_factory=ResourceSet,
        description="Declared resources grouped by kind",
    )
    dependencies: list[str] = Field(
        default_factory=list,
        description="Task IDs this task explicitly depends on",
    )
    estimated_minutes: int = Field(
        default=5,
        gt=0,
        description="Estimated execution time in minutes",
    )
    specification: dict[str, Any] = Field(
        default_factory=dict,
        description="Opaque payload passed through to the execution callback",
    )

    @field_validator("dependencies")
    @classmethod
    def dedupe_dependencies(cls, v: list[str]) -> list[str]:
        """Drop repeated dependency IDs while keeping declaration order."""
        return list(dict.fromkeys(v))

    def is_ready(self, completed_tasks: set[str]) -> bool:
        """Check if all explicit dependencies are satisfied.

        Args:
            completed_tasks: Set of completed task IDs.

        Returns:
            True if all dependencies are in completed_tasks.
        """
        return all(dep in completed_tasks for dep in self.dependencies)


class ImplicitDependency(BaseModel):
    """A dependency edge synthesized from resource overlap."""

    model_config = ConfigDict(frozen=True)

    dependent_id: str = Field(description="Later-added task that must wait")
    dependency_id: str = Field(description="Earlier-added task that runs first")
    reasons: list[str] = Field(
        default_factory=list,
        description="Overlapping resources, e.g. 'table:users'",
    )


# =============================================================================
# EXECUTION PLAN
# =============================================================================


class SpecSource(BaseModel):
    """Reference to the source specification a plan was built from."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(default="unnamed")
    path: str | None = Field(
        default=None,
        description="Path of the source specification, if file-backed",
    )
    checksum: str | None = Field(
        default=None,
        description="Fingerprint of the source specification content",
    )


class PlanMetadata(BaseModel):
    """Summary figures computed when a plan is built."""

    total_tasks: int = 0
    total_layers: int = 0
    estimated_minutes: int = 0
    parallelization_potential: float = Field(default=0.0, ge=0.0, le=1.0)
    max_parallelism: int = 0
    tasks_by_type: dict[str, int] = Field(default_factory=dict)


class ExecutionPlan(BaseModel):
    """The plan document consumed by the execution runner.

    Example:
        >>> plan = build_plan(tasks, SpecSource(name="notifications"))
        >>> plan.layers
        [['T1', 'T5'], ['T2', 'T3'], ['T4']]
    """

    id: str = Field(..., description="Unique plan identifier")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    source: SpecSource = Field(default_factory=SpecSource)
    tasks: list[Task] = Field(default_factory=list)
    layers: list[list[str]] = Field(default_factory=list)
    implicit_dependencies: list[ImplicitDependency] = Field(default_factory=list)
    metadata: PlanMetadata = Field(default_factory=PlanMetadata)

    def get_task(self, task_id: str) -> Task | None:
        """Get a task by ID.

        Args:
            task_id: Task identifier.

        Returns:
            Task if found, None otherwise.
        """
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def get_layer_tasks(self, layer_index: int) -> list[Task]:
        """Get tasks in a specific layer, in layer order."""
        if layer_index >= len(self.layers):
            return []
        task_map = {t.id: t for t in self.tasks}
        return [task_map[tid] for tid in self.layers[layer_index] if tid in task_map]

    def layer_of(self, task_id: str) -> int | None:
        """Get the layer index a task is scheduled in."""
        for index, layer in enumerate(self.layers):
            if task_id in layer:
                return index
        return None

    @property
    def total_layers(self) -> int:
        """Get total number of layers."""
        return len(self.layers)
