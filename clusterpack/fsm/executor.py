"""
Phase executor contract.

Every phase of a plan is carried out by a PhaseExecutor built by the
dispatch table. Executors are constructed fresh for each execute or
rollback call, so they hold no state between calls.
"""

import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Optional

from clusterpack.errors import PhaseCancelledError
from clusterpack.schemas import Phase, Plan

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutorParams:
    """What an executor constructor receives: the plan and the phase to run."""
    plan: Plan
    phase: Phase


@dataclass
class PhaseContext:
    """
    Runtime context handed to execute/rollback.

    Attributes:
        params: Plan and phase being run
        cancel_event: Set when the operator cancels the run
        max_workers: Upper bound for per-node fan-out
    """
    params: ExecutorParams
    cancel_event: threading.Event = field(default_factory=threading.Event)
    max_workers: int = 4

    @property
    def phase(self) -> Phase:
        return self.params.phase

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def check_cancelled(self) -> None:
        """
        Raise if the run was cancelled.

        Executors call this between node-level sub-operations.
        """
        if self.cancel_event.is_set():
            raise PhaseCancelledError(f"phase {self.phase.id} was cancelled")


class PhaseExecutor(ABC):
    """Strategy object that performs one phase and can undo it."""

    def __init__(self, params: ExecutorParams):
        self.params = params

    @property
    def phase(self) -> Phase:
        return self.params.phase

    @property
    def plan(self) -> Plan:
        return self.params.plan

    @abstractmethod
    def execute(self, ctx: PhaseContext) -> None:
        """
        Carry out the phase.

        Raises:
            Exception: Any failure; the engine records the phase as failed
        """
        pass

    @abstractmethod
    def rollback(self, ctx: PhaseContext) -> None:
        """Undo the phase. Must tolerate a partially executed phase."""
        pass

    def describe(self) -> str:
        """One-line description of what the phase does."""
        return self.phase.description or f"Phase {self.phase.id} ({self.phase.executor})"


class Remote(ABC):
    """
    Handle for running a phase on another node.

    Used by phases that must perform node-local actions while the engine
    runs on a coordinating node.
    """

    @abstractmethod
    def is_local(self, server: str) -> bool:
        """Check whether server is the node this process runs on."""
        pass

    @abstractmethod
    def execute(self, server: str, params: ExecutorParams, rollback: bool = False) -> None:
        """Run (or roll back) the phase on server and wait for it to finish."""
        pass


def run_on_nodes(
    ctx: PhaseContext,
    nodes: list[str],
    fn: Callable[[str], None],
    max_workers: Optional[int] = None,
) -> None:
    """
    Run fn once per node in worker threads and join before returning.

    Cancellation is checked before each node starts. All workers are
    joined even when some fail; the first error (in node order) is raised.
    """
    if not nodes:
        return

    def run_one(node: str) -> None:
        ctx.check_cancelled()
        logger.debug(f"Phase {ctx.phase.id}: running on {node}")
        fn(node)

    workers = max(1, min(max_workers or ctx.max_workers, len(nodes)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="node") as pool:
        futures = [pool.submit(run_one, node) for node in nodes]
    errors = [f.exception() for f in futures if f.exception() is not None]
    if errors:
        raise errors[0]
