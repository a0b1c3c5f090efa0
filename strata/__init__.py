"""
Strata - layered task orchestration engine.

Turns interdependent tasks into a parallel, conflict-free execution schedule
and runs it through injected execute/review callbacks with crash recovery.
"""

__version__ = "0.1.0"
__author__ = "Strata Team"

from strata.decomposition.executor import ExecutionRunner

__all__ = ["ExecutionRunner", "__version__"]
