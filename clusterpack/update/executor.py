"""
Update operation vocabulary and dispatch table.

Executor names are persisted in plans. Renaming or removing a member makes
plans produced by earlier releases unexecutable, so members are only ever
added.
"""

from enum import Enum

from clusterpack.fsm.dispatch import DispatchTable
from clusterpack.schemas import OperationType
from clusterpack.update.phases import (
    NodeActionPhase,
    UpdateConfig,
    UpdatePhaseApp,
    UpdatePhaseChecks,
    UpdatePhaseConfig,
    UpdatePhaseInit,
)


class UpdateExecutor(str, Enum):
    """Executor names recognized for update plans."""
    INIT = "update_init"
    CHECKS = "update_checks"
    BOOTSTRAP = "update_bootstrap"
    SYSTEM = "update_system"
    PRE_UPDATE = "pre_update"
    COREDNS = "coredns"
    APP = "update_app"
    ELECTION_STATUS = "election_status"
    TAINT_NODE = "taint_node"
    UNTAINT_NODE = "untaint_node"
    DRAIN_NODE = "drain_node"
    UNCORDON_NODE = "uncordon_node"
    ENDPOINTS = "endpoints"
    CONFIG = "config"
    KUBELET_PERMISSIONS = "kubelet_permissions"
    LINKS = "links"
    LABELS = "labels"
    ROLES = "roles"
    ETCD_BACKUP = "etcd_backup"
    ETCD_SHUTDOWN = "etcd_shutdown"
    ETCD_UPGRADE = "etcd_upgrade"
    ETCD_RESTORE = "etcd_restore"
    ETCD_RESTART = "etcd_restart"
    # restarts the cluster controller service once etcd is back
    ETCD_RESTART_GRAVITY = "etcd_restart_gravity"
    CLEANUP_NODE = "cleanup_node"


# Phases that act once on the whole cluster rather than on listed nodes
CLUSTER_WIDE = frozenset({
    UpdateExecutor.PRE_UPDATE,
    UpdateExecutor.COREDNS,
    UpdateExecutor.ENDPOINTS,
    UpdateExecutor.KUBELET_PERMISSIONS,
    UpdateExecutor.LINKS,
    UpdateExecutor.LABELS,
    UpdateExecutor.ROLES,
})


def _node_action(config: UpdateConfig, kind: UpdateExecutor):
    per_node = kind not in CLUSTER_WIDE
    return lambda params, remote: NodeActionPhase(config, params, remote, per_node=per_node)


def fsm_spec(config: UpdateConfig) -> DispatchTable:
    """
    Build the dispatch table for update plans.

    Args:
        config: Collaborators handed to every executor

    Returns:
        DispatchTable covering every UpdateExecutor member
    """
    constructors = {kind: _node_action(config, kind) for kind in UpdateExecutor}
    constructors.update({
        UpdateExecutor.INIT: lambda params, remote: UpdatePhaseInit(config, params),
        UpdateExecutor.CHECKS: lambda params, remote: UpdatePhaseChecks(config, params, remote),
        UpdateExecutor.APP: lambda params, remote: UpdatePhaseApp(config, params),
        UpdateExecutor.CONFIG: lambda params, remote: UpdatePhaseConfig(config, params),
    })
    return DispatchTable(OperationType.UPDATE, UpdateExecutor, constructors)
