"""
Resource lock manager for Strata.

Grants exclusive, all-or-nothing locks over the resources a task declares.
Static layering already keeps conflicting tasks apart; these locks are the
runtime fallback for anything the static analysis missed.

The manager is synchronous and never blocks: a request either takes every
lock at once or takes none and reports the conflicts. Callers own retry
and backoff.
"""

import time
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from strata.decomposition.models import RESOURCE_ORDER, ResourceRef, Task


@dataclass
class LockConflict:
    """A requested resource already held by another task."""

    resource: str
    locked_by: str
    requested_by: str

    def to_dict(self) -> dict[str, str]:
        """Convert conflict to dictionary."""
        return {
            "resource": self.resource,
            "locked_by": self.locked_by,
            "requested_by": self.requested_by,
        }


@dataclass
class LockRecord:
    """An exclusive claim on one resource."""

    resource: str
    kind: str
    locked_by: str
    acquired_at: float = field(default_factory=time.time)


@dataclass
class LockResult:
    """Outcome of an acquisition attempt."""

    success: bool
    task_id: str
    acquired: list[str] = field(default_factory=list)
    conflicts: list[LockConflict] = field(default_factory=list)

    @property
    def conflicting_resources(self) -> list[str]:
        """Get keys of resources that blocked the request."""
        return [c.resource for c in self.conflicts]


class ResourceLockManager:
    """
    Track exclusive resource locks held by executing tasks.

    Usage:
        manager = ResourceLockManager()
        result = manager.acquire_locks(task)
        if result.success:
            try:
                ...
            finally:
                manager.release_locks(task.id)
    """

    def __init__(self) -> None:
        self._locks: dict[str, LockRecord] = {}
        self._wait_queue: dict[str, list[str]] = {}
        self._history: list[dict[str, Any]] = []
        self._contention_count = 0

    @staticmethod
    def extract_required_locks(task: Task) -> list[ResourceRef]:
        """
        Get the resources a task must lock, in global acquisition order.

        Sorted by resource kind (migration, table, function, route,
        component), then by identifier.
        """
        refs = {ref.key: ref for ref in task.resources.refs()}
        return sorted(
            refs.values(),
            key=lambda r: (RESOURCE_ORDER.index(r.kind), r.identifier),
        )

    def acquire_locks(self, task: Task) -> LockResult:
        """
        Attempt to lock every resource a task declares.

        Locks already held by the same task do not conflict. If any resource
        is held by another task nothing is taken.

        Args:
            task: Task requesting locks.

        Returns:
            LockResult with acquired keys or the conflicts that blocked it.
        """
        required = self.extract_required_locks(task)

        conflicts = [
            LockConflict(
                resource=ref.key,
                locked_by=self._locks[ref.key].locked_by,
                requested_by=task.id,
            )
            for ref in required
            if ref.key in self._locks and self._locks[ref.key].locked_by != task.id
        ]

        if conflicts:
            self._contention_count += 1
            for conflict in conflicts:
                waiting = self._wait_queue.setdefault(conflict.resource, [])
                if task.id not in waiting:
                    waiting.append(task.id)

            logger.debug(
                f"[Lock] {task.id} waiting for {len(conflicts)} resources: "
                f"{', '.join(c.resource for c in conflicts)}"
            )
            return LockResult(success=False, task_id=task.id, conflicts=conflicts)

        now = time.time()
        acquired: list[str] = []
        for ref in required:
            if ref.key not in self._locks:
                self._locks[ref.key] = LockRecord(
                    resource=ref.key,
                    kind=ref.kind.value,
                    locked_by=task.id,
                    acquired_at=now,
                )
                self._history.append(
                    {
                        "action": "acquired",
                        "resource": ref.key,
                        "task_id": task.id,
                        "timestamp": now,
                    }
                )
            acquired.append(ref.key)
            self._remove_waiter(ref.key, task.id)

        logger.debug(f"[Lock] Acquired {len(acquired)} locks for {task.id}")
        return LockResult(success=True, task_id=task.id, acquired=acquired)

    def release_locks(self, task_id: str) -> list[str]:
        """
        Release every lock held by a task.

        Safe to call when the task holds no locks.

        Returns:
            Keys of released resources.
        """
        released = [key for key, lock in self._locks.items() if lock.locked_by == task_id]
        now = time.time()

        for key in released:
            del self._locks[key]
            self._history.append(
                {"action": "released", "resource": key, "task_id": task_id, "timestamp": now}
            )
            waiting = self._wait_queue.pop(key, [])
            if waiting:
                logger.debug(f"[Lock] {key} now available for {len(waiting)} waiting tasks")

        for waiters in self._wait_queue.values():
            if task_id in waiters:
                waiters.remove(task_id)

        if released:
            logger.debug(f"[Lock] Released {len(released)} locks from {task_id}")
        return released

    def _remove_waiter(self, resource: str, task_id: str) -> None:
        waiting = self._wait_queue.get(resource)
        if waiting and task_id in waiting:
            waiting.remove(task_id)
            if not waiting:
                del self._wait_queue[resource]

    # =========================================================================
    # INSPECTION
    # =========================================================================

    def holder_of(self, resource: str) -> str | None:
        """Get the task holding a resource key, if any."""
        lock = self._locks.get(resource)
        return lock.locked_by if lock else None

    def locks_held_by(self, task_id: str) -> list[str]:
        """Get resource keys held by a task."""
        return [key for key, lock in self._locks.items() if lock.locked_by == task_id]

    @property
    def lock_table(self) -> dict[str, str]:
        """Get resource key -> holder mapping."""
        return {key: lock.locked_by for key, lock in self._locks.items()}

    @property
    def contention_count(self) -> int:
        """Get the number of refused acquisition attempts."""
        return self._contention_count

    @property
    def history(self) -> list[dict[str, Any]]:
        """Get acquire/release history."""
        return self._history.copy()

    def get_lock_status(self) -> dict[str, Any]:
        """Get active locks with ages and the tasks waiting on each resource."""
        now = time.time()
        return {
            "active_locks": [
                {
                    "resource": key,
                    "kind": lock.kind,
                    "locked_by": lock.locked_by,
                    "age_seconds": int(now - lock.acquired_at),
                }
                for key, lock in self._locks.items()
            ],
            "waiting": [
                {"resource": key, "waiting_tasks": list(tasks)}
                for key, tasks in self._wait_queue.items()
            ],
        }
