"""
Context assembler - per-task slicing of the shared schema/convention corpus.

Each task receives only the entities it declares, entities inferred from its
migration labels, one hop (by default) of relationship traversal in both
directions, the ancillary artifacts that reference those entities, a
convention overlay for its type, and summaries of its direct dependencies.
"""

import json
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import ValidationError

from strata.core.exceptions import CorpusLoadError
from strata.core.state import CompletedTask
from strata.decomposition.models import Task, TaskType
from strata.knowledge.heuristics import EntityExtractor, extract_entity_from_migration
from strata.knowledge.models import (
    DEFAULT_CONVENTIONS,
    ContextMetrics,
    ContextSlice,
    DependencySummary,
    SchemaCorpus,
    corpus_size,
)

# Convention sections added on top of "core" and "testing" per task type
TYPE_OVERLAYS: dict[TaskType, list[str]] = {
    TaskType.DATABASE: ["database"],
    TaskType.API: ["api"],
    TaskType.UI: ["ui"],
    TaskType.SERVICE: [],
    TaskType.GENERIC: [],
}


class ContextAssembler:
    """
    Assemble minimal context slices for tasks.

    The corpus is loaded once (``initialize``) from the project cache:
    ``.orchestration/cache/schema.json`` and ``.claude/conventions.json``.
    A corpus can also be passed in directly.

    Example:
        >>> assembler = ContextAssembler(project_path=".")
        >>> assembler.initialize()
        >>> ctx = assembler.assemble_context_for_task(task, completed)
        >>> ctx.metrics.reduction_percentage
        87
    """

    def __init__(
        self,
        project_path: str | Path = ".",
        schema: SchemaCorpus | None = None,
        conventions: dict[str, dict[str, Any]] | None = None,
        depth: int = 1,
        entity_extractor: EntityExtractor | None = None,
        cache_dir: str | Path | None = None,
    ) -> None:
        """
        Initialize the assembler.

        Args:
            project_path: Project root holding the corpus cache.
            schema: Optional preloaded schema corpus.
            conventions: Optional preloaded conventions.
            depth: Relationship hops to follow (default 1).
            entity_extractor: Heuristic mapping migration labels to entities.
            cache_dir: Override for the schema cache directory.
        """
        self.project_path = Path(project_path)
        self.cache_dir = (
            Path(cache_dir) if cache_dir else self.project_path / ".orchestration" / "cache"
        )
        self.depth = depth
        self.entity_extractor = entity_extractor or extract_entity_from_migration
        self.schema = schema
        self.conventions = conventions

    @property
    def initialized(self) -> bool:
        """Check whether the corpus has been loaded."""
        return self.schema is not None and self.conventions is not None

    def initialize(self) -> None:
        """Load the schema corpus and conventions (once per session)."""
        if self.schema is None:
            self.schema = self._load_schema()
        if self.conventions is None:
            self.conventions = self._load_conventions()

        logger.info(
            f"[Context] Loaded {len(self.schema.tables)} tables, "
            f"{len(self.schema.functions)} functions"
        )

    # =========================================================================
    # ASSEMBLY
    # =========================================================================

    def assemble_context_for_task(
        self,
        task: Task,
        completed_dependencies: Iterable[CompletedTask | dict[str, Any]] = (),
    ) -> ContextSlice:
        """
        Assemble the context slice for one task.

        Args:
            task: Task to build context for.
            completed_dependencies: Completed tasks; only the task's direct
                dependencies are pulled forward.

        Returns:
            ContextSlice with schema slice, conventions, dependency summaries
            and size metrics.
        """
        if not self.initialized:
            self.initialize()

        required = self.identify_required_entities(task)
        schema_slice = self.build_schema_slice(required)
        metrics = self.measure(schema_slice)

        logger.debug(
            f"[Context] {task.id}: {len(schema_slice.tables)}/{len(self.schema.tables)} "
            f"tables, ~{metrics.slice_size} tokens ({metrics.reduction_percentage}% reduction)"
        )

        return ContextSlice(
            task_id=task.id,
            task_name=task.name,
            description=task.description,
            schema_slice=schema_slice,
            conventions=self.slice_conventions(task),
            dependencies=self.gather_dependency_context(task, completed_dependencies),
            specification=task.specification,
            resources=task.resources.model_dump(),
            required_entities=required,
            metrics=metrics,
        )

    def identify_required_entities(self, task: Task) -> list[str]:
        """
        Identify schema entities a task needs.

        Direct tables, plus entities inferred from migration labels, plus
        related entities up to ``self.depth`` hops in both directions.
        """
        required: list[str] = list(dict.fromkeys(task.resources.tables))

        for migration in task.resources.migrations:
            entity = self.entity_extractor(migration)
            if entity and entity not in required:
                required.append(entity)

        for entity in list(required):
            for related in self.find_related_entities(entity, self.depth):
                if related not in required:
                    required.append(related)

        return required

    def find_related_entities(self, name: str, depth: int) -> list[str]:
        """
        Find entities related through foreign keys, both directions.

        Args:
            name: Starting entity.
            depth: Number of hops to follow.

        Returns:
            Related entity names, excluding ``name`` itself.
        """
        if depth <= 0 or self.schema is None:
            return []

        seen = {name}
        frontier = [name]
        related: list[str] = []

        for _ in range(depth):
            next_frontier: list[str] = []
            for current in frontier:
                for neighbor in self._neighbors(current):
                    if neighbor not in seen:
                        seen.add(neighbor)
                        related.append(neighbor)
                        next_frontier.append(neighbor)
            frontier = next_frontier

        return related

    def _neighbors(self, name: str) -> list[str]:
        neighbors: list[str] = []
        table = self.schema.get_table(name)
        if table:
            neighbors.extend(table.referenced_tables())
        for other in self.schema.tables:
            if name in other.referenced_tables():
                neighbors.append(other.name)
        return neighbors

    def build_schema_slice(self, entities: list[str]) -> SchemaCorpus:
        """
        Build a schema slice with only the given entities and their artifacts.

        Policies and indexes are kept by table, functions when their
        definition mentions an entity, types when an included column uses them.
        """
        if self.schema is None:
            return SchemaCorpus()

        wanted = set(entities)
        tables = [t for t in self.schema.tables if t.name in wanted]

        column_types = {col.type for table in tables for col in table.columns}

        return SchemaCorpus(
            tables=tables,
            policies=[p for p in self.schema.policies if p.table in wanted],
            functions=[
                fn
                for fn in self.schema.functions
                if any(entity in fn.definition for entity in wanted)
            ],
            indexes=[idx for idx in self.schema.indexes if idx.table in wanted],
            types=[t for t in self.schema.types if t.name in column_types],
        )

    def slice_conventions(self, task: Task) -> dict[str, dict[str, Any]]:
        """Select the convention overlay for a task's type."""
        conventions = self.conventions or {}
        sections = ["core", *TYPE_OVERLAYS.get(task.type, []), "testing"]
        return {section: dict(conventions.get(section, {})) for section in sections}

    def gather_dependency_context(
        self,
        task: Task,
        completed_dependencies: Iterable[CompletedTask | dict[str, Any]],
    ) -> list[DependencySummary]:
        """Summarize completed tasks listed in the task's explicit dependencies."""
        if not task.dependencies:
            return []

        completed: dict[str, CompletedTask] = {}
        for dep in completed_dependencies:
            record = dep if isinstance(dep, CompletedTask) else CompletedTask.model_validate(dep)
            completed[record.id] = record

        return [
            DependencySummary(
                id=completed[dep_id].id,
                name=completed[dep_id].name,
                outputs=completed[dep_id].outputs,
            )
            for dep_id in task.dependencies
            if dep_id in completed
        ]

    def measure(self, schema_slice: SchemaCorpus) -> ContextMetrics:
        """Compare slice size against the full corpus."""
        full = corpus_size(self.schema) if self.schema else 0
        sliced = min(corpus_size(schema_slice), full)
        reduction = round((1 - sliced / full) * 100) if full > 0 else 0

        return ContextMetrics(
            full_size=full,
            slice_size=sliced,
            saved=full - sliced,
            reduction_percentage=max(0, min(100, reduction)),
        )

    # =========================================================================
    # CORPUS LOADING
    # =========================================================================

    def _load_schema(self) -> SchemaCorpus:
        schema_path = self.cache_dir / "schema.json"
        if not schema_path.exists():
            logger.warning(f"[Context] Schema cache not found at {schema_path}, using empty schema")
            return SchemaCorpus()

        try:
            return SchemaCorpus.model_validate(json.loads(schema_path.read_text(encoding="utf-8")))
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            raise CorpusLoadError(f"Could not load schema cache {schema_path}: {e}") from e

    def _load_conventions(self) -> dict[str, dict[str, Any]]:
        conventions_path = self.project_path / ".claude" / "conventions.json"
        if not conventions_path.exists():
            logger.debug("[Context] No conventions file, using defaults")
            return {k: dict(v) for k, v in DEFAULT_CONVENTIONS.items()}

        try:
            data = json.loads(conventions_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise CorpusLoadError(f"Could not load conventions {conventions_path}: {e}") from e

        if not isinstance(data, dict):
            raise CorpusLoadError(f"Conventions file {conventions_path} must be an object")
        return data
