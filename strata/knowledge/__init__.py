"""Knowledge module - shared schema corpus and per-task context slicing."""

from strata.knowledge.context_assembler import ContextAssembler
from strata.knowledge.heuristics import EntityExtractor, extract_entity_from_migration
from strata.knowledge.models import ContextMetrics, ContextSlice, SchemaCorpus

__all__ = [
    "ContextAssembler",
    "ContextMetrics",
    "ContextSlice",
    "EntityExtractor",
    "SchemaCorpus",
    "extract_entity_from_migration",
]
