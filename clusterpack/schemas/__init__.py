"""
clusterpack.schemas - Schema definitions for the orchestration layer.

Plan -> Phase, with the operation type selecting the dispatch table and
PhaseState tracking progress through the FSM engine.
"""

from .plan import (
    OperationType,
    Phase,
    PhaseState,
    Plan,
)

__all__ = [
    "OperationType",
    "Phase",
    "PhaseState",
    "Plan",
]
