"""Task decomposition - tasks, resources, dependency layering and execution.

This module provides the planning and execution pipeline:
- Resource model (tasks declare the resources they touch)
- Dependency resolution (tasks -> execution layers)
- Plan construction (layers + metadata + spec checksum)
- Layered execution (see ``strata.decomposition.executor``)
"""

from strata.decomposition.dependency_resolver import DependencyGraphBuilder
from strata.decomposition.models import (
    RESOURCE_ORDER,
    ExecutionPlan,
    ImplicitDependency,
    PlanMetadata,
    ResourceKind,
    ResourceRef,
    ResourceSet,
    SpecSource,
    Task,
    TaskType,
)
from strata.decomposition.plan import (
    build_plan,
    compute_spec_checksum,
    load_plan,
    load_tasks,
    save_plan,
    validate_plan_source,
)

__all__ = [
    # Models
    "RESOURCE_ORDER",
    "ResourceKind",
    "ResourceRef",
    "ResourceSet",
    "Task",
    "TaskType",
    "ImplicitDependency",
    "SpecSource",
    "PlanMetadata",
    "ExecutionPlan",
    # Dependency Resolution
    "DependencyGraphBuilder",
    # Plans
    "build_plan",
    "compute_spec_checksum",
    "validate_plan_source",
    "save_plan",
    "load_plan",
    "load_tasks",
]
