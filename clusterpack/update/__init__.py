"""
clusterpack.update - executors for the update operation.
"""

from .phases import (
    NodeActions,
    PackageCommandActions,
    UpdateConfig,
    NodeActionPhase,
    UpdatePhaseInit,
    UpdatePhaseChecks,
    UpdatePhaseApp,
    UpdatePhaseConfig,
)
from .executor import UpdateExecutor, fsm_spec

__all__ = [
    "NodeActions",
    "PackageCommandActions",
    "UpdateConfig",
    "NodeActionPhase",
    "UpdatePhaseInit",
    "UpdatePhaseChecks",
    "UpdatePhaseApp",
    "UpdatePhaseConfig",
    "UpdateExecutor",
    "fsm_spec",
]
