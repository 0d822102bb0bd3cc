"""
Phase executors of the update operation.

Node-level work (draining a node, backing up etcd, ...) is delegated to a
NodeActions collaborator; the executors here decide where it runs, fan it
out across nodes and guard the package transition itself:

- UpdatePhaseInit / UpdatePhaseApp validate the application update
  (same line, strictly newer) before anything changes
- UpdatePhaseChecks verifies the target package is readable
- UpdatePhaseConfig materializes the configuration package of the target
- NodeActionPhase covers every phase that is one action per node (or one
  cluster-wide action)

Phase data keys:
    package          target package locator (version may be "latest")
    config_package   locator of the configuration package
    args             configuration arguments for config phases
    server / servers node(s) the phase acts on
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from clusterpack.errors import InvalidArgumentError, NotFoundError
from clusterpack.fsm.executor import ExecutorParams, PhaseContext, PhaseExecutor, Remote, run_on_nodes
from clusterpack.loc import Locator, parse_locator
from clusterpack.pack.configure import configure_package, get_package_manifest
from clusterpack.pack.resolver import (
    check_update_package,
    config_labels,
    find_installed_package,
    process_metadata,
)
from clusterpack.pack.runner import CommandRunner, execute_package_command
from clusterpack.pack.service import PackageService
from clusterpack.schemas import Phase

logger = logging.getLogger(__name__)


class NodeActions(ABC):
    """Performs the concrete cluster actions behind update phases."""

    @abstractmethod
    def apply(self, action: str, server: Optional[str], phase: Phase) -> None:
        """
        Perform action.

        Args:
            action: Action name (the phase executor name)
            server: Node to act on, or None for cluster-wide actions
            phase: Phase being executed (for its data)
        """
        pass

    @abstractmethod
    def revert(self, action: str, server: Optional[str], phase: Phase) -> None:
        """Undo action."""
        pass


class PackageCommandActions(NodeActions):
    """
    NodeActions backed by commands declared in the phase's package.

    ``apply`` runs the manifest command named after the action; ``revert``
    runs ``<action>-rollback`` and treats a package without such command as
    having nothing to undo.
    """

    def __init__(
        self,
        packages: PackageService,
        storage_dir: Path | str,
        runner: Optional[CommandRunner] = None,
    ):
        self._packages = packages
        self._storage_dir = Path(storage_dir)
        self._runner = runner

    def _run(self, command: str, server: Optional[str], phase: Phase) -> None:
        loc = process_metadata(self._packages, _package_locator(phase))
        conf_loc = parse_locator(phase.data["config_package"]) if phase.data.get("config_package") else None
        args = [f"--server={server}"] if server else []
        output = execute_package_command(
            self._packages, command, loc, conf_loc, args, self._storage_dir, runner=self._runner
        )
        if output:
            logger.debug(f"{command} on {server or 'cluster'}: {output.decode(errors='replace')}")

    def apply(self, action: str, server: Optional[str], phase: Phase) -> None:
        self._run(action, server, phase)

    def revert(self, action: str, server: Optional[str], phase: Phase) -> None:
        try:
            self._run(f"{action}-rollback", server, phase)
        except NotFoundError:
            logger.info(f"Phase {phase.id}: package declares no rollback for {action}")


@dataclass
class UpdateConfig:
    """
    Collaborators shared by all update phase executors.

    Attributes:
        packages: Package store
        actions: Performs node-level actions
        max_workers: Upper bound for per-node fan-out within one phase
    """
    packages: PackageService
    actions: NodeActions
    max_workers: int = 4


def _package_locator(phase: Phase) -> Locator:
    package = phase.data.get("package")
    if not package:
        raise InvalidArgumentError(f"phase {phase.id!r} does not specify a package")
    return parse_locator(package)


def _servers(phase: Phase) -> list[str]:
    servers = list(phase.data.get("servers") or [])
    if phase.data.get("server"):
        servers.insert(0, phase.data["server"])
    return servers


class NodeActionPhase(PhaseExecutor):
    """
    A phase that is one action, either per node or cluster-wide.

    Per-node phases run the action on each node concurrently. Nodes other
    than the local one go through the remote handle when one is given.
    """

    def __init__(
        self,
        config: UpdateConfig,
        params: ExecutorParams,
        remote: Optional[Remote] = None,
        per_node: bool = True,
    ):
        super().__init__(params)
        self.config = config
        self.remote = remote
        self.action = params.phase.executor
        self.servers = _servers(params.phase) if per_node else []
        if per_node and not self.servers:
            raise InvalidArgumentError(f"phase {params.phase.id!r} requires at least one server")

    def _on_node(self, server: str, rollback: bool) -> None:
        if self.remote is not None and not self.remote.is_local(server):
            self.remote.execute(server, self.params, rollback=rollback)
        elif rollback:
            self.config.actions.revert(self.action, server, self.phase)
        else:
            self.config.actions.apply(self.action, server, self.phase)

    def execute(self, ctx: PhaseContext) -> None:
        if not self.servers:
            ctx.check_cancelled()
            self.config.actions.apply(self.action, None, self.phase)
            return
        run_on_nodes(ctx, self.servers, lambda s: self._on_node(s, False), self.config.max_workers)

    def rollback(self, ctx: PhaseContext) -> None:
        if not self.servers:
            self.config.actions.revert(self.action, None, self.phase)
            return
        run_on_nodes(ctx, self.servers, lambda s: self._on_node(s, True), self.config.max_workers)

    def describe(self) -> str:
        if self.phase.description:
            return self.phase.description
        where = ", ".join(self.servers) if self.servers else "cluster"
        return f"Run {self.action} on {where}"


class UpdatePhaseInit(NodeActionPhase):
    """Validates that the installed application can move to the target package."""

    def __init__(self, config: UpdateConfig, params: ExecutorParams):
        super().__init__(config, params, per_node=False)
        self.target = _package_locator(params.phase)

    def execute(self, ctx: PhaseContext) -> None:
        target = process_metadata(self.config.packages, self.target)
        installed = find_installed_package(self.config.packages, target)
        check_update_package(installed, target)
        logger.info(f"Updating {installed} to {target}")
        super().execute(ctx)


class UpdatePhaseChecks(NodeActionPhase):
    """Preflight: the target package must exist and carry a readable manifest."""

    def __init__(self, config: UpdateConfig, params: ExecutorParams, remote: Optional[Remote] = None):
        super().__init__(config, params, remote, per_node=bool(_servers(params.phase)))
        self.target = _package_locator(params.phase)

    def execute(self, ctx: PhaseContext) -> None:
        target = process_metadata(self.config.packages, self.target)
        get_package_manifest(self.config.packages, target)
        super().execute(ctx)


class UpdatePhaseApp(NodeActionPhase):
    """Moves the application to the target package."""

    def __init__(self, config: UpdateConfig, params: ExecutorParams):
        super().__init__(config, params, per_node=False)
        self.target = _package_locator(params.phase)

    def execute(self, ctx: PhaseContext) -> None:
        target = process_metadata(self.config.packages, self.target)
        installed = find_installed_package(self.config.packages, target)
        if installed == target:
            logger.info(f"{target} is already installed")
            return
        check_update_package(installed, target)
        super().execute(ctx)

    def describe(self) -> str:
        return self.phase.description or f"Update application to {self.target}"


class UpdatePhaseConfig(PhaseExecutor):
    """
    Creates the configuration package of the target package.

    Re-running after the package exists is a no-op. Packages are immutable,
    so rollback leaves the created package in place.
    """

    def __init__(self, config: UpdateConfig, params: ExecutorParams):
        super().__init__(params)
        self.config = config
        self.target = _package_locator(params.phase)
        if not params.phase.data.get("config_package"):
            raise InvalidArgumentError(f"phase {params.phase.id!r} does not specify a config_package")
        self.conf_loc = parse_locator(params.phase.data["config_package"])
        self.args = [str(a) for a in params.phase.data.get("args", [])]
        self.purpose = params.phase.data.get("purpose", "")

    def execute(self, ctx: PhaseContext) -> None:
        ctx.check_cancelled()
        try:
            self.config.packages.get_package(self.conf_loc)
            logger.info(f"Configuration package {self.conf_loc} already exists")
            return
        except NotFoundError:
            pass
        target = process_metadata(self.config.packages, self.target)
        labels = config_labels(target, self.purpose) if self.purpose else None
        configure_package(self.config.packages, target, self.conf_loc, self.args, labels=labels)

    def rollback(self, ctx: PhaseContext) -> None:
        logger.info(f"Phase {self.phase.id}: keeping immutable package {self.conf_loc}")

    def describe(self) -> str:
        return self.phase.description or f"Configure {self.target} as {self.conf_loc}"
