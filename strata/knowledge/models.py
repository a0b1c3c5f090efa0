"""Pydantic models for the shared schema/convention corpus and context slices."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# =============================================================================
# SCHEMA CORPUS
# =============================================================================


class ForeignKey(BaseModel):
    """Reference from a column to another table."""

    model_config = ConfigDict(populate_by_name=True)

    table: str
    column: str = "id"


class Column(BaseModel):
    """A table column."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    type: str = "text"
    foreign_key: ForeignKey | None = Field(default=None, alias="foreignKey")


class Table(BaseModel):
    """A table definition in the shared schema."""

    name: str
    columns: list[Column] = Field(default_factory=list)

    def referenced_tables(self) -> list[str]:
        """Get tables this table points at through foreign keys."""
        return [c.foreign_key.table for c in self.columns if c.foreign_key]


class Policy(BaseModel):
    """An access policy attached to a table."""

    name: str
    table: str
    definition: str = ""


class SchemaFunction(BaseModel):
    """A stored function; related to the tables its definition mentions."""

    name: str
    definition: str = ""


class Index(BaseModel):
    """An index on a table."""

    name: str
    table: str
    columns: list[str] = Field(default_factory=list)


class TypeDefinition(BaseModel):
    """A named type (e.g. an enum) referenced by column types."""

    name: str
    values: list[str] = Field(default_factory=list)


class SchemaCorpus(BaseModel):
    """The full shared schema a project works against.

    Accepts both ``policies`` and the legacy ``rlsPolicies`` key.
    """

    model_config = ConfigDict(populate_by_name=True)

    tables: list[Table] = Field(default_factory=list)
    policies: list[Policy] = Field(default_factory=list, alias="rlsPolicies")
    functions: list[SchemaFunction] = Field(default_factory=list)
    indexes: list[Index] = Field(default_factory=list)
    types: list[TypeDefinition] = Field(default_factory=list)

    def get_table(self, name: str) -> Table | None:
        """Get a table by name."""
        for table in self.tables:
            if table.name == name:
                return table
        return None


# Relative weights used to size a corpus or slice (rough token estimates)
SIZE_WEIGHTS: dict[str, int] = {
    "tables": 200,
    "policies": 150,
    "functions": 300,
    "indexes": 50,
    "types": 50,
}


def corpus_size(schema: SchemaCorpus) -> int:
    """Estimate the size of a corpus or slice in tokens."""
    return sum(len(getattr(schema, part)) * weight for part, weight in SIZE_WEIGHTS.items())


DEFAULT_CONVENTIONS: dict[str, dict[str, Any]] = {
    "core": {
        "fileNaming": "kebab-case",
        "importStyle": "esm",
    },
    "database": {
        "tableNaming": "snake_case",
        "columnNaming": "snake_case",
    },
    "api": {
        "routePattern": "/api/[resource]/[action]",
    },
    "ui": {
        "componentNaming": "PascalCase",
    },
    "testing": {
        "testLocation": "tests/",
    },
}


# =============================================================================
# CONTEXT SLICE
# =============================================================================


class DependencySummary(BaseModel):
    """Small summary of a completed dependency handed to a dependent task."""

    id: str
    name: str
    outputs: dict[str, Any] = Field(default_factory=dict)


class ContextMetrics(BaseModel):
    """Size of a slice relative to the full corpus (observability only)."""

    full_size: int = 0
    slice_size: int = 0
    saved: int = 0
    reduction_percentage: int = Field(default=0, ge=0, le=100)


class ContextSlice(BaseModel):
    """The minimal context one task needs."""

    task_id: str
    task_name: str
    description: str = ""
    schema_slice: SchemaCorpus = Field(default_factory=SchemaCorpus)
    conventions: dict[str, dict[str, Any]] = Field(default_factory=dict)
    dependencies: list[DependencySummary] = Field(default_factory=list)
    specification: dict[str, Any] = Field(default_factory=dict)
    resources: dict[str, list[str]] = Field(default_factory=dict)
    required_entities: list[str] = Field(default_factory=list)
    metrics: ContextMetrics = Field(default_factory=ContextMetrics)
