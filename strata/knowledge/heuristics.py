"""Heuristics for inferring entity names from free-text migration labels.

These are a fallback only: tasks should declare the tables they touch. The
assembler accepts any ``EntityExtractor`` so projects can plug in their own.
"""

import re
from collections.abc import Callable

EntityExtractor = Callable[[str], str | None]

MIGRATION_VERBS = ("create", "alter", "add", "modify")

FILLER_WORDS = ("table", "column")

_TOKEN_SPLIT = re.compile(r"[_\-.\s/]+")


def extract_entity_from_migration(label: str) -> str | None:
    """
    Guess the entity a migration touches from its label.

    Splits the label on separators, finds the first verb (create, alter,
    add, modify) and returns the token that follows it.

    Args:
        label: Migration file name or description.

    Returns:
        Entity name, or None if no verb/token pair is found.

    Example:
        >>> extract_entity_from_migration("146_create_notifications.sql")
        'notifications'
        >>> extract_entity_from_migration("0007_seed_data.sql") is None
        True
    """
    stem = re.sub(r"\.sql$", "", label.strip(), flags=re.IGNORECASE)
    tokens = [t for t in _TOKEN_SPLIT.split(stem.lower()) if t]

    for i, token in enumerate(tokens):
        if token not in MIGRATION_VERBS:
            continue
        rest = [t for t in tokens[i + 1 :] if t not in FILLER_WORDS]
        if rest and not rest[0].isdigit():
            return rest[0]

    return None
