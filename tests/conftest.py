"""Pytest configuration and shared fixtures."""

import os
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import pytest

# Set test environment
os.environ.setdefault("STRATA_DEBUG", "true")
os.environ.setdefault("STRATA_LOG_LEVEL", "DEBUG")


@pytest.fixture(autouse=True)
def mock_settings() -> Generator:
    """Reset cached settings around every test."""
    from strata.core.config import clear_settings_cache

    # Clear any cached settings
    clear_settings_cache()

    yield

    # Clear again after test
    clear_settings_cache()


@pytest.fixture
def make_task() -> Callable[..., Any]:
    """Provide a factory for tasks with compact resource arguments."""
    from strata.decomposition.models import ResourceSet, Task, TaskType

    def factory(
        task_id: str,
        dependencies: list[str] | None = None,
        task_type: TaskType = TaskType.GENERIC,
        **resources: list[str],
    ) -> Task:
        return Task(
            id=task_id,
            name=f"Task {task_id}",
            type=task_type,
            dependencies=dependencies or [],
            resources=ResourceSet(**resources),
        )

    return factory


@pytest.fixture
def scenario_tasks(make_task: Callable[..., Any]) -> list:
    """
    Provide the five-task reference scenario.

    T2 shares the users table with T1, T3 depends on T1, T4 depends on T2 and
    T3, and T5 is independent. Expected layers: [[T1, T5], [T2, T3], [T4]].
    """
    return [
        make_task("T1", tables=["users"]),
        make_task("T2", tables=["users"], routes=["/api/users"]),
        make_task("T3", dependencies=["T1"], routes=["/api/profile"]),
        make_task("T4", dependencies=["T2", "T3"], components=["Dashboard"]),
        make_task("T5", tables=["audit_log"]),
    ]


@pytest.fixture
def sample_schema() -> Any:
    """Provide a small schema corpus with relationships and artifacts."""
    from strata.knowledge.models import SchemaCorpus

    return SchemaCorpus.model_validate(
        {
            "tables": [
                {"name": "users", "columns": [{"name": "id", "type": "uuid"}]},
                {
                    "name": "profiles",
                    "columns": [
                        {"name": "id", "type": "uuid"},
                        {"name": "user_id", "type": "uuid", "foreignKey": {"table": "users"}},
                    ],
                },
                {
                    "name": "posts",
                    "columns": [
                        {"name": "id", "type": "uuid"},
                        {"name": "author_id", "type": "uuid", "foreignKey": {"table": "users"}},
                        {"name": "status", "type": "post_status"},
                    ],
                },
                {
                    "name": "comments",
                    "columns": [
                        {"name": "id", "type": "uuid"},
                        {"name": "post_id", "type": "uuid", "foreignKey": {"table": "posts"}},
                    ],
                },
                {
                    "name": "notifications",
                    "columns": [
                        {"name": "id", "type": "uuid"},
                        {"name": "user_id", "type": "uuid", "foreignKey": {"table": "users"}},
                        {"name": "kind", "type": "notification_kind"},
                    ],
                },
                {"name": "audit_log", "columns": [{"name": "id", "type": "bigint"}]},
            ],
            "rlsPolicies": [
                {"name": "users_select_own", "table": "users"},
                {"name": "posts_public_read", "table": "posts"},
                {"name": "audit_admin_only", "table": "audit_log"},
            ],
            "functions": [
                {"name": "notify_user", "definition": "insert into notifications ..."},
                {"name": "rotate_audit", "definition": "delete from audit_log ..."},
            ],
            "indexes": [
                {"name": "idx_posts_author", "table": "posts", "columns": ["author_id"]},
                {"name": "idx_notifications_user", "table": "notifications", "columns": ["user_id"]},
            ],
            "types": [
                {"name": "post_status", "values": ["draft", "published"]},
                {"name": "notification_kind", "values": ["email", "push"]},
            ],
        }
    )


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    """Provide an empty state directory."""
    return tmp_path / ".orchestration"


# Markers
def pytest_configure(config: pytest.Config) -> None:
    """Configure custom pytest markers."""
    config.addinivalue_line("markers", "unit: mark test as unit test")
    config.addinivalue_line("markers", "integration: mark test as integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")
