"""
FSM engine - drives the phases of a plan through their states.

The engine implements:
- Plan validation before anything runs (structure and executor names)
- Selection of runnable phases (all requirements completed)
- Phase dispatch through a DispatchTable and execution with retries
- Concurrent execution of independent phases
- Resume of failed phases and rollback in reverse dependency order
- Cooperative cancellation

Phase state flow:
    pending -> running -> completed | failed
    failed -> running (resume)
    completed | failed -> rolled_back

The engine is the only writer of Phase.state. A phase is claimed by
moving it to running under the engine lock, so two execution paths can
never run the same phase.

Error policy:
- Executor construction errors are fatal: the phase is marked failed and
  the error propagates; no further phase is started.
- Executor execution errors mark the phase failed; phases that do not
  depend on it keep running.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from clusterpack.errors import InvalidTransitionError, NotFoundError, TransientError
from clusterpack.fsm.dispatch import DispatchTable
from clusterpack.fsm.executor import ExecutorParams, PhaseContext, Remote
from clusterpack.fsm.plan_store import InMemoryPlanStore, PlanStore
from clusterpack.schemas import Phase, PhaseState, Plan

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: dict[PhaseState, frozenset[PhaseState]] = {
    PhaseState.PENDING: frozenset({PhaseState.RUNNING}),
    PhaseState.RUNNING: frozenset({PhaseState.COMPLETED, PhaseState.FAILED}),
    PhaseState.COMPLETED: frozenset({PhaseState.ROLLED_BACK}),
    PhaseState.FAILED: frozenset({PhaseState.RUNNING, PhaseState.ROLLED_BACK}),
    PhaseState.ROLLED_BACK: frozenset(),
}


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


@dataclass
class RunResult:
    """Outcome of an engine run."""
    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)
    running: list[str] = field(default_factory=list)
    rolled_back: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        """True only when every phase of the plan completed."""
        return not (self.failed or self.pending or self.running or self.rolled_back)


class FSMEngine:
    """
    Execution engine for one Plan.

    Usage:
        table = fsm_spec(config)
        engine = FSMEngine(plan, table, store=FilePlanStore(plans_dir))
        result = engine.run()
        if not result.success:
            engine.resume()      # after a manual fix
            # or
            engine.rollback()
    """

    def __init__(
        self,
        plan: Plan,
        dispatch: DispatchTable,
        store: Optional[PlanStore] = None,
        remote: Optional[Remote] = None,
        max_workers: int = 1,
        max_attempts: int = 1,
    ):
        """
        Initialize the engine.

        Args:
            plan: Plan to drive; its phases are mutated in place
            dispatch: Dispatch table for the plan's operation type
            store: PlanStore the plan is saved to after every transition
            remote: Handle passed to executors that act on other nodes
            max_workers: How many independent phases may run at once
            max_attempts: Attempts per phase for TransientError failures
        """
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._plan = plan
        self._dispatch = dispatch
        self._store = store or InMemoryPlanStore()
        self._remote = remote
        self._max_workers = max_workers
        self._max_attempts = max_attempts
        self._lock = threading.RLock()
        self._cancel_event = threading.Event()

    @classmethod
    def from_store(cls, store: PlanStore, operation_id: str, dispatch: DispatchTable, **kwargs) -> "FSMEngine":
        """Load a persisted plan and build an engine for it."""
        plan = store.get_plan(operation_id)
        if plan is None:
            raise NotFoundError(f"operation {operation_id!r} not found")
        return cls(plan, dispatch, store=store, **kwargs)

    @property
    def plan(self) -> Plan:
        return self._plan

    # -------------------------------------------------------------------------
    # State bookkeeping
    # -------------------------------------------------------------------------

    def _extra(self, phase: Phase) -> dict:
        return {"phase": phase.id, "operation": self._plan.operation_id}

    def _transition(self, phase: Phase, state: PhaseState, error: Optional[BaseException] = None) -> None:
        with self._lock:
            if state not in ALLOWED_TRANSITIONS[phase.state]:
                raise InvalidTransitionError(
                    f"phase {phase.id!r} cannot go from {phase.state.value} to {state.value}"
                )
            previous = phase.state
            phase.state = state
            if state == PhaseState.RUNNING:
                phase.started_at = _utcnow()
                phase.completed_at = None
                phase.error = None
            elif state in (PhaseState.COMPLETED, PhaseState.FAILED):
                phase.completed_at = _utcnow()
            if error is not None:
                phase.error = {"type": type(error).__name__, "message": str(error)}
            self._store.save_plan(self._plan)
        logger.info(
            f"Phase {phase.id}: {previous.value} -> {state.value}",
            extra=self._extra(phase),
        )

    def check_plan(self) -> None:
        """
        Validate the whole plan before running anything.

        Raises:
            PlanIntegrityError: On structural defects or a phase without executor
            UnsupportedOperationError: If the plan's operation type does not match
            UnknownExecutorError: If any phase names an unknown executor
        """
        self._plan.validate()
        for phase in self._plan.phases:
            self._dispatch.resolve(self._plan, phase)

    def _requirements_met(self, phase: Phase) -> bool:
        return all(
            self._plan.get_phase(dep).state == PhaseState.COMPLETED for dep in phase.requires
        )

    def runnable_phases(self, include_failed: bool = False) -> list[Phase]:
        """
        Phases that may start now, in plan order.

        Args:
            include_failed: Treat failed phases as eligible (resume)
        """
        eligible = {PhaseState.PENDING}
        if include_failed:
            eligible.add(PhaseState.FAILED)
        with self._lock:
            return [
                p for p in self._plan.phases
                if p.state in eligible and self._requirements_met(p)
            ]

    def recover_interrupted(self) -> list[str]:
        """
        Mark phases left running by a crashed process as failed.

        Only call this when no other process is driving the plan.
        """
        recovered = []
        for phase in self._plan.phases:
            if phase.state == PhaseState.RUNNING:
                self._transition(phase, PhaseState.FAILED, RuntimeError("interrupted"))
                recovered.append(phase.id)
        return recovered

    def cancel(self) -> None:
        """Ask running executors to stop and prevent new phases from starting."""
        logger.warning(f"Cancelling operation {self._plan.operation_id}")
        self._cancel_event.set()

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def _context(self, phase: Phase) -> PhaseContext:
        return PhaseContext(
            params=ExecutorParams(plan=self._plan, phase=phase),
            cancel_event=self._cancel_event,
            max_workers=self._max_workers,
        )

    def _run_phase(self, phase: Phase) -> bool:
        """
        Claim, dispatch and execute one phase.

        Returns:
            True if the phase completed, False if its executor failed

        Raises:
            Exception: Executor construction errors, after marking the phase failed
        """
        self._transition(phase, PhaseState.RUNNING)
        ctx = self._context(phase)

        try:
            executor = self._dispatch.dispatch(ctx.params, self._remote)
        except Exception as e:
            logger.error(f"Phase {phase.id}: failed to build executor: {e}", extra=self._extra(phase))
            self._transition(phase, PhaseState.FAILED, e)
            raise

        logger.info(f"Executing phase {phase.id}: {executor.describe()}", extra=self._extra(phase))
        for attempt_n in range(1, self._max_attempts + 1):
            try:
                executor.execute(ctx)
                break
            except TransientError as e:
                if attempt_n < self._max_attempts:
                    logger.warning(
                        f"Phase {phase.id}: attempt {attempt_n}/{self._max_attempts} failed: {e}. Retrying",
                        extra=self._extra(phase),
                    )
                    continue
                self._fail(phase, e)
                return False
            except Exception as e:
                self._fail(phase, e)
                return False

        self._transition(phase, PhaseState.COMPLETED)
        return True

    def _fail(self, phase: Phase, error: Exception) -> None:
        logger.error(f"Phase {phase.id} failed: {error}", extra=self._extra(phase))
        self._transition(phase, PhaseState.FAILED, error)

    def step(self, phase_id: Optional[str] = None, resume: bool = False) -> Phase:
        """
        Execute exactly one phase. Clears a previous cancellation.

        Args:
            phase_id: Phase to run; defaults to the first runnable phase
            resume: Allow a failed phase to run again

        Returns:
            The phase after execution (check its state)

        Raises:
            NotFoundError: If no phase is runnable
            InvalidTransitionError: If the named phase cannot run now
        """
        self.check_plan()
        self._cancel_event.clear()
        if phase_id is None:
            runnable = self.runnable_phases(include_failed=resume)
            if not runnable:
                raise NotFoundError(f"no runnable phases in operation {self._plan.operation_id}")
            phase = runnable[0]
        else:
            phase = self._plan.get_phase(phase_id)
            unmet = [
                dep for dep in phase.requires
                if self._plan.get_phase(dep).state != PhaseState.COMPLETED
            ]
            if unmet:
                raise InvalidTransitionError(
                    f"phase {phase.id!r} requires phases that are not completed: {unmet}"
                )
            if phase.state == PhaseState.FAILED and not resume:
                raise InvalidTransitionError(f"phase {phase.id!r} failed; resume to run it again")
        self._run_phase(phase)
        return phase

    def run(self, resume: bool = False) -> RunResult:
        """
        Execute runnable phases until none are left.

        Each wave of runnable phases runs concurrently (up to max_workers).
        A phase runs at most once per call. Clears a previous cancellation.

        Args:
            resume: Run failed phases again as well

        Returns:
            RunResult with the phase IDs grouped by state
        """
        self.check_plan()
        self._cancel_event.clear()
        self._store.save_plan(self._plan)
        attempted: set[str] = set()

        while not self._cancel_event.is_set():
            batch = [
                p for p in self.runnable_phases(include_failed=resume)
                if p.id not in attempted
            ]
            if not batch:
                break
            attempted.update(p.id for p in batch)
            self._run_batch(batch)

        return self.result()

    def resume(self) -> RunResult:
        """Run again, retrying failed phases (after an operator fix)."""
        return self.run(resume=True)

    def _run_batch(self, batch: list[Phase]) -> None:
        if self._max_workers == 1 or len(batch) == 1:
            for phase in batch:
                if self._cancel_event.is_set():
                    return
                self._run_phase(phase)
            return

        workers = min(self._max_workers, len(batch))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="phase") as pool:
            futures = [pool.submit(self._run_phase, phase) for phase in batch]
        # Construction errors are fatal; surface the first once the wave is joined
        for future in futures:
            error = future.exception()
            if error is not None:
                raise error

    def result(self) -> RunResult:
        """Summarize the current phase states."""
        result = RunResult()
        with self._lock:
            for phase in self._plan.phases:
                if phase.state == PhaseState.COMPLETED:
                    result.completed.append(phase.id)
                elif phase.state == PhaseState.FAILED:
                    result.failed.append(phase.id)
                elif phase.state == PhaseState.PENDING:
                    result.pending.append(phase.id)
                elif phase.state == PhaseState.RUNNING:
                    result.running.append(phase.id)
                else:
                    result.rolled_back.append(phase.id)
        return result

    # -------------------------------------------------------------------------
    # Rollback
    # -------------------------------------------------------------------------

    def rollback(self, phase_id: Optional[str] = None) -> list[str]:
        """
        Roll back completed and failed phases, dependents first.

        Args:
            phase_id: Roll back only this phase; its dependents must not be
                completed or failed

        Returns:
            IDs of rolled back phases, in rollback order

        Raises:
            InvalidTransitionError: If phases are running, or the named phase
                still has dependents to roll back first
            Exception: The first rollback failure; that phase keeps its state.
                A failed phase whose executor cannot be built is marked rolled
                back without calling rollback
        """
        rollbackable = {PhaseState.COMPLETED, PhaseState.FAILED}
        with self._lock:
            running = [p.id for p in self._plan.phases if p.state == PhaseState.RUNNING]
        if running:
            raise InvalidTransitionError(f"cannot roll back while phases are running: {running}")

        if phase_id is not None:
            phase = self._plan.get_phase(phase_id)
            if phase.state not in rollbackable:
                raise InvalidTransitionError(
                    f"phase {phase_id!r} is {phase.state.value}; only completed or failed phases roll back"
                )
            blocking = [d.id for d in self._plan.dependents(phase_id) if d.state in rollbackable]
            if blocking:
                raise InvalidTransitionError(
                    f"phase {phase_id!r} has dependents that must be rolled back first: {blocking}"
                )
            targets = [phase]
        else:
            order = reversed(self._plan.topological_order())
            targets = [p for p in order if p.state in rollbackable]

        rolled_back = []
        for phase in targets:
            ctx = self._context(phase)
            try:
                executor = self._dispatch.dispatch(ctx.params, self._remote)
            except Exception as e:
                if phase.state != PhaseState.FAILED:
                    raise
                # The executor was never built, so the phase changed nothing
                logger.warning(
                    f"Phase {phase.id}: executor unavailable ({e}), marking rolled back without undo",
                    extra=self._extra(phase),
                )
                self._transition(phase, PhaseState.ROLLED_BACK)
                rolled_back.append(phase.id)
                continue
            logger.info(f"Rolling back phase {phase.id}: {executor.describe()}", extra=self._extra(phase))
            executor.rollback(ctx)
            self._transition(phase, PhaseState.ROLLED_BACK)
            rolled_back.append(phase.id)
        return rolled_back
