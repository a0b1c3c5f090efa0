"""Dependency graph builder - turns tasks into parallel execution layers.

This module registers tasks as graph nodes, infers implicit dependencies from
resource overlap, detects cycles and produces execution layers with Kahn's
algorithm.

Implicit edges are directed by insertion order: when two tasks conflict, the
task added later depends on the task added earlier.
"""

from collections import deque

from loguru import logger

from strata.core.exceptions import CycleError, PlanValidationError
from strata.decomposition.models import ImplicitDependency, Task


class DependencyGraphBuilder:
    """
    Build a DAG of tasks and organize it into execution layers.

    Tasks in the same layer share no dependency and no declared resource,
    so they can run in parallel. Layers are ordered so that every dependency
    of a task sits in an earlier layer.

    Example:
        >>> builder = DependencyGraphBuilder()
        >>> for task in tasks:
        ...     builder.add_task(task)
        >>> builder.detect_resource_conflicts()
        >>> assert builder.detect_cycles() == []
        >>> builder.generate_execution_layers()
        [['T1', 'T5'], ['T2', 'T3'], ['T4']]
    """

    def __init__(self, tasks: list[Task] | None = None) -> None:
        """
        Initialize the builder.

        Args:
            tasks: Optional list of tasks to register in order.
        """
        self._nodes: dict[str, Task] = {}
        self._edges: dict[str, list[str]] = {}
        self._implicit: list[ImplicitDependency] = []

        for task in tasks or []:
            self.add_task(task)

    # =========================================================================
    # GRAPH BUILDING
    # =========================================================================

    def add_task(self, task: Task) -> None:
        """
        Register a task and its explicit dependencies.

        Args:
            task: Task to add.

        Raises:
            PlanValidationError: If a task with the same ID was already added.
        """
        if task.id in self._nodes:
            raise PlanValidationError(f"Duplicate task id: {task.id}")

        self._nodes[task.id] = task
        self._edges[task.id] = list(task.dependencies)

    @property
    def tasks(self) -> list[Task]:
        """Get registered tasks in insertion order."""
        return list(self._nodes.values())

    @property
    def edges(self) -> dict[str, list[str]]:
        """Get a copy of the edge map (task_id -> dependency IDs)."""
        return {task_id: deps.copy() for task_id, deps in self._edges.items()}

    @property
    def implicit_dependencies(self) -> list[ImplicitDependency]:
        """Get implicit dependencies added so far."""
        return self._implicit.copy()

    def get_task(self, task_id: str) -> Task | None:
        """Get a registered task by ID."""
        return self._nodes.get(task_id)

    def get_dependencies(self, task_id: str) -> list[str]:
        """Get explicit and implicit dependencies of a task."""
        return self._edges.get(task_id, []).copy()

    def get_dependents(self, task_id: str) -> list[str]:
        """
        Get tasks that depend on the given task.

        Args:
            task_id: Task identifier.

        Returns:
            List of task IDs that depend on this task.
        """
        return [tid for tid, deps in self._edges.items() if task_id in deps]

    # =========================================================================
    # RESOURCE CONFLICTS
    # =========================================================================

    def find_resource_conflicts(self, a: Task, b: Task) -> list[str]:
        """
        Find overlapping resources between two tasks.

        Any two tasks that both touch migrations conflict, regardless of the
        migration names, because migrations apply sequentially.

        Args:
            a: First task.
            b: Second task.

        Returns:
            Conflict reasons, e.g. ``["table:users", "migrations:sequential"]``.
        """
        conflicts: list[str] = []
        ra, rb = a.resources, b.resources

        conflicts.extend(f"table:{t}" for t in ra.tables if t in rb.tables)

        if ra.migrations and rb.migrations:
            conflicts.append("migrations:sequential")

        conflicts.extend(f"route:{r}" for r in ra.routes if r in rb.routes)
        conflicts.extend(f"component:{c}" for c in ra.components if c in rb.components)
        conflicts.extend(f"function:{f}" for f in ra.functions if f in rb.functions)

        return conflicts

    def detect_resource_conflicts(self) -> list[ImplicitDependency]:
        """
        Add implicit dependencies for every pair of conflicting tasks.

        The task added later depends on the task added earlier. Running this
        again adds nothing new.

        Returns:
            Implicit dependencies added by this call.
        """
        added: list[ImplicitDependency] = []
        tasks = list(self._nodes.values())

        for i, earlier in enumerate(tasks):
            for later in tasks[i + 1 :]:
                reasons = self.find_resource_conflicts(earlier, later)
                if not reasons:
                    continue

                deps = self._edges[later.id]
                if earlier.id in deps:
                    continue

                deps.append(earlier.id)
                implicit = ImplicitDependency(
                    dependent_id=later.id,
                    dependency_id=earlier.id,
                    reasons=reasons,
                )
                self._implicit.append(implicit)
                added.append(implicit)

                logger.debug(
                    f"[DAG] Added implicit dependency: {later.id} depends on "
                    f"{earlier.id} (conflicts: {', '.join(reasons)})"
                )

        if added:
            logger.info(f"[DAG] Added {len(added)} implicit dependencies from resource overlap")

        return added

    def find_missing_dependencies(self) -> dict[str, list[str]]:
        """
        Find explicit dependencies that name unknown tasks.

        Returns:
            Mapping task_id -> unknown dependency IDs (empty if all resolve).
        """
        missing: dict[str, list[str]] = {}
        for task_id, deps in self._edges.items():
            unknown = [d for d in deps if d not in self._nodes]
            if unknown:
                missing[task_id] = unknown
        return missing

    # =========================================================================
    # CYCLE DETECTION
    # =========================================================================

    def detect_cycles(self) -> list[list[str]]:
        """
        Detect cycles in the dependency graph using an iterative DFS.

        Handles dependency chains of any depth.

        Returns:
            List of cycles, each an ordered list of task IDs; empty if acyclic.

        Example:
            >>> builder.detect_cycles()
            [['a', 'b']]
        """
        visited: set[str] = set()
        on_stack: set[str] = set()
        cycles: list[list[str]] = []

        for root in self._nodes:
            if root in visited:
                continue

            visited.add(root)
            on_stack.add(root)
            path = [root]
            stack = [(root, iter(self._edges.get(root, [])))]

            while stack:
                node, deps = stack[-1]
                for dep in deps:
                    if dep not in self._nodes:
                        continue  # Reported by find_missing_dependencies
                    if dep not in visited:
                        visited.add(dep)
                        on_stack.add(dep)
                        path.append(dep)
                        stack.append((dep, iter(self._edges.get(dep, []))))
                        break
                    if dep in on_stack:
                        cycles.append(path[path.index(dep) :])
                else:
                    stack.pop()
                    on_stack.discard(node)
                    path.pop()

        if cycles:
            for cycle in cycles:
                logger.error(f"[DAG] Cycle detected: {' -> '.join(cycle + [cycle[0]])}")

        return cycles

    # =========================================================================
    # LAYER GENERATION
    # =========================================================================

    def generate_execution_layers(self) -> list[list[str]]:
        """
        Generate execution layers using Kahn's algorithm.

        Each layer holds every not-yet-placed task whose dependencies are all
        in earlier layers. Tasks within a layer are sorted by ID.

        Returns:
            List of layers, each a list of task IDs.

        Raises:
            CycleError: If remaining tasks all have unmet dependencies.
        """
        in_degree: dict[str, int] = {}
        dependents: dict[str, list[str]] = {task_id: [] for task_id in self._nodes}

        for task_id, deps in self._edges.items():
            known = [d for d in deps if d in self._nodes]
            in_degree[task_id] = len(known)
            for dep in known:
                dependents[dep].append(task_id)

        ready = deque(sorted(tid for tid, degree in in_degree.items() if degree == 0))
        layers: list[list[str]] = []
        placed = 0

        while placed < len(self._nodes):
            if not ready:
                remaining = sorted(tid for tid, degree in in_degree.items() if degree > 0)
                raise CycleError(
                    f"Circular dependency detected among: {', '.join(remaining)}",
                    cycles=self.detect_cycles(),
                )

            layer = sorted(ready)
            ready.clear()
            layers.append(layer)
            placed += len(layer)

            for task_id in layer:
                in_degree[task_id] = -1
                for dependent in dependents[task_id]:
                    in_degree[dependent] -= 1
                    if in_degree[dependent] == 0:
                        ready.append(dependent)

        for i, layer in enumerate(layers):
            logger.debug(f"[DAG] Layer {i}: {len(layer)} tasks ({', '.join(layer)})")

        return layers

    def build(self) -> list[list[str]]:
        """
        Run the full pipeline: conflicts, validation gates and layering.

        Returns:
            Execution layers.

        Raises:
            PlanValidationError: If a dependency names an unknown task.
            CycleError: If the graph contains a cycle.
        """
        logger.info(f"[DAG] Building execution layers for {len(self._nodes)} tasks")

        self.detect_resource_conflicts()

        missing = self.find_missing_dependencies()
        if missing:
            details = "; ".join(f"{tid} -> {', '.join(deps)}" for tid, deps in missing.items())
            raise PlanValidationError(f"Unknown dependencies: {details}")

        cycles = self.detect_cycles()
        if cycles:
            cycle_str = " | ".join(" -> ".join(c + [c[0]]) for c in cycles)
            raise CycleError(f"Circular dependency detected: {cycle_str}", cycles=cycles)

        layers = self.generate_execution_layers()
        logger.info(f"[DAG] Resolved into {len(layers)} layers")
        return layers
