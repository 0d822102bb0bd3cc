"""
clusterpack.fsm - phase dispatch and the plan state machine.
"""

from .executor import ExecutorParams, PhaseContext, PhaseExecutor, Remote, run_on_nodes
from .dispatch import DispatchTable
from .plan_store import PlanStore, InMemoryPlanStore, FilePlanStore
from .engine import FSMEngine, RunResult

__all__ = [
    "ExecutorParams",
    "PhaseContext",
    "PhaseExecutor",
    "Remote",
    "run_on_nodes",
    "DispatchTable",
    "PlanStore",
    "InMemoryPlanStore",
    "FilePlanStore",
    "FSMEngine",
    "RunResult",
]
