"""Conflict module - runtime resource locking."""

from strata.conflict.lock_manager import LockConflict, LockResult, ResourceLockManager

__all__ = ["LockConflict", "LockResult", "ResourceLockManager"]
