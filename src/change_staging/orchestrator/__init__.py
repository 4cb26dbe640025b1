"""
Run orchestration: cutover, seeding, staging reset and parallel table tasks.
"""

from .parallel import ParallelTableRunner, TaskContext
from .runner import RunOrchestrator

__all__ = ["RunOrchestrator", "ParallelTableRunner", "TaskContext"]
