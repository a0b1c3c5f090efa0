"""Unit tests for the context assembler."""

import json

import pytest

from strata.core.exceptions import CorpusLoadError
from strata.core.state import CompletedTask
from strata.decomposition.models import TaskType
from strata.knowledge.context_assembler import ContextAssembler
from strata.knowledge.models import DEFAULT_CONVENTIONS, SchemaCorpus, corpus_size

# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def assembler(sample_schema) -> ContextAssembler:
    """Create an assembler over the sample schema with default conventions."""
    return ContextAssembler(schema=sample_schema, conventions=dict(DEFAULT_CONVENTIONS))


class TestEntityResolution:
    """Tests for required-entity identification."""

    def test_direct_tables_and_neighbors(self, assembler, make_task) -> None:
        """Test declared tables expand one hop in both directions."""
        task = make_task("t", tables=["posts"])

        assert assembler.identify_required_entities(task) == ["posts", "users", "comments"]

    def test_migration_label_inference(self, assembler, make_task) -> None:
        """Test entities inferred from migration labels."""
        task = make_task("t", migrations=["146_create_notifications.sql"])

        assert assembler.identify_required_entities(task) == ["notifications", "users"]

    def test_related_entities_both_directions(self, assembler) -> None:
        """Test tables referencing users are found from users."""
        assert assembler.find_related_entities("users", 1) == [
            "profiles",
            "posts",
            "notifications",
        ]

    def test_depth_is_configurable(self, sample_schema) -> None:
        """Test deeper traversal reaches further tables."""
        shallow = ContextAssembler(schema=sample_schema, conventions={}, depth=1)
        deep = ContextAssembler(schema=sample_schema, conventions={}, depth=2)

        assert shallow.find_related_entities("comments", shallow.depth) == ["posts"]
        assert deep.find_related_entities("comments", deep.depth) == ["posts", "users"]

    def test_zero_depth_disables_traversal(self, sample_schema, make_task) -> None:
        """Test depth 0 keeps only declared entities."""
        assembler = ContextAssembler(schema=sample_schema, conventions={}, depth=0)

        assert assembler.identify_required_entities(make_task("t", tables=["posts"])) == ["posts"]

    def test_custom_entity_extractor(self, sample_schema, make_task) -> None:
        """Test a pluggable extractor replaces the default heuristic."""
        assembler = ContextAssembler(
            schema=sample_schema,
            conventions={},
            depth=0,
            entity_extractor=lambda label: "audit_log",
        )

        task = make_task("t", migrations=["anything.sql"])

        assert assembler.identify_required_entities(task) == ["audit_log"]


class TestSchemaSlice:
    """Tests for schema slicing and metrics."""

    def test_slice_filters_artifacts(self, assembler) -> None:
        """Test policies, indexes, functions and types follow included tables."""
        schema_slice = assembler.build_schema_slice(["posts", "users", "comments"])

        assert [t.name for t in schema_slice.tables] == ["users", "posts", "comments"]
        assert [p.name for p in schema_slice.policies] == ["users_select_own", "posts_public_read"]
        assert [i.name for i in schema_slice.indexes] == ["idx_posts_author"]
        assert [t.name for t in schema_slice.types] == ["post_status"]
        assert schema_slice.functions == []

    def test_function_included_when_definition_mentions_entity(self, assembler) -> None:
        """Test functions are kept by reference in their definition."""
        schema_slice = assembler.build_schema_slice(["notifications", "users"])

        assert [f.name for f in schema_slice.functions] == ["notify_user"]

    def test_metrics(self, assembler, sample_schema, make_task) -> None:
        """Test size metrics of a slice."""
        context = assembler.assemble_context_for_task(make_task("t", tables=["posts"]))

        assert context.metrics.full_size == corpus_size(sample_schema) == 2450
        assert context.metrics.slice_size == 1000
        assert context.metrics.saved == 1450
        assert context.metrics.reduction_percentage == 59

    def test_slice_never_exceeds_corpus(self, assembler, sample_schema) -> None:
        """Test a slice of everything equals the corpus."""
        everything = [t.name for t in sample_schema.tables]
        metrics = assembler.measure(assembler.build_schema_slice(everything))

        assert metrics.slice_size <= metrics.full_size
        assert metrics.reduction_percentage == 0

    def test_empty_corpus(self, make_task) -> None:
        """Test an empty corpus reports zero reduction."""
        assembler = ContextAssembler(schema=SchemaCorpus(), conventions={})

        context = assembler.assemble_context_for_task(make_task("t", tables=["users"]))

        assert context.schema_slice.tables == []
        assert context.metrics.reduction_percentage == 0


class TestConventionsAndDependencies:
    """Tests for the convention overlay and dependency summaries."""

    @pytest.mark.parametrize(
        ("task_type", "sections"),
        [
            (TaskType.DATABASE, ["core", "database", "testing"]),
            (TaskType.API, ["core", "api", "testing"]),
            (TaskType.UI, ["core", "ui", "testing"]),
            (TaskType.SERVICE, ["core", "testing"]),
        ],
    )
    def test_overlay_by_type(self, assembler, make_task, task_type, sections) -> None:
        """Test convention sections chosen per task type."""
        task = make_task("t", task_type=task_type)

        assert list(assembler.slice_conventions(task)) == sections

    def test_only_direct_dependencies_summarized(self, assembler, make_task) -> None:
        """Test that only the task's own dependencies are pulled forward."""
        completed = [
            CompletedTask(id="T1", name="Task T1", outputs={"table": "users"}),
            CompletedTask(id="T2", name="Task T2", outputs={"route": "/api/users"}),
            {"id": "T3", "name": "Task T3", "outputs": {"route": "/api/profile"}},
        ]
        task = make_task("T4", ["T2", "T3"])

        summaries = assembler.gather_dependency_context(task, completed)

        assert [s.id for s in summaries] == ["T2", "T3"]
        assert summaries[1].outputs == {"route": "/api/profile"}

    def test_context_slice_carries_task_payload(self, assembler, make_task) -> None:
        """Test that the slice carries task identity and resources."""
        task = make_task("t", task_type=TaskType.DATABASE, tables=["users"])

        context = assembler.assemble_context_for_task(task)

        assert context.task_id == "t"
        assert context.resources["tables"] == ["users"]
        assert "database" in context.conventions
        assert context.dependencies == []


class TestCorpusLoading:
    """Tests for loading the cached corpus."""

    def test_loads_schema_and_default_conventions(self, tmp_path, sample_schema) -> None:
        """Test loading schema.json with no conventions file."""
        cache = tmp_path / ".orchestration" / "cache"
        cache.mkdir(parents=True)
        (cache / "schema.json").write_text(
            json.dumps(sample_schema.model_dump(mode="json", by_alias=True))
        )

        assembler = ContextAssembler(project_path=tmp_path)
        assembler.initialize()

        assert assembler.initialized
        assert len(assembler.schema.tables) == 6
        assert len(assembler.schema.policies) == 3
        assert assembler.conventions == DEFAULT_CONVENTIONS

    def test_loads_conventions_file(self, tmp_path) -> None:
        """Test loading a project conventions file."""
        conventions_dir = tmp_path / ".claude"
        conventions_dir.mkdir()
        (conventions_dir / "conventions.json").write_text(json.dumps({"core": {"lang": "py"}}))

        assembler = ContextAssembler(project_path=tmp_path)
        assembler.initialize()

        assert assembler.conventions == {"core": {"lang": "py"}}
        assert assembler.schema.tables == []

    def test_malformed_schema_raises(self, tmp_path) -> None:
        """Test that a corrupt schema cache is an error."""
        cache = tmp_path / ".orchestration" / "cache"
        cache.mkdir(parents=True)
        (cache / "schema.json").write_text("{not json")

        with pytest.raises(CorpusLoadError):
            ContextAssembler(project_path=tmp_path).initialize()

    def test_non_object_conventions_raise(self, tmp_path) -> None:
        """Test that conventions must be a JSON object."""
        conventions_dir = tmp_path / ".claude"
        conventions_dir.mkdir()
        (conventions_dir / "conventions.json").write_text("[]")

        with pytest.raises(CorpusLoadError):
            ContextAssembler(project_path=tmp_path).initialize()
