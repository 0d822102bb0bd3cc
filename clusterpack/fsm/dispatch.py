"""
Dispatch table - maps a phase's executor name to an executor constructor.

One table serves exactly one operation type. The vocabulary of executor
names is a closed string enum; a table must provide a constructor for
every member. A plan naming an executor outside the vocabulary was most
likely produced by a different version of this software and is rejected
as a whole rather than partially executed.
"""

import logging
from enum import Enum
from typing import Callable, Mapping, Optional

from clusterpack.errors import PlanIntegrityError, UnknownExecutorError, UnsupportedOperationError
from clusterpack.fsm.executor import ExecutorParams, PhaseExecutor, Remote
from clusterpack.schemas import OperationType, Phase, Plan

logger = logging.getLogger(__name__)

Constructor = Callable[[ExecutorParams, Optional[Remote]], PhaseExecutor]


class DispatchTable:
    """
    Registry of executor constructors for one operation type.

    Usage:
        table = DispatchTable(OperationType.UPDATE, UpdateExecutor, {
            UpdateExecutor.INIT: lambda p, remote: UpdatePhaseInit(config, p),
            ...
        })
        executor = table.dispatch(ExecutorParams(plan, phase), remote)
    """

    def __init__(
        self,
        operation_type: OperationType,
        kinds: type[Enum],
        constructors: Mapping[Enum, Constructor],
    ):
        missing = [k.value for k in kinds if k not in constructors]
        if missing:
            raise ValueError(f"No constructor for executors: {missing}")
        self._operation_type = operation_type
        self._kinds = kinds
        self._constructors = dict(constructors)

    @property
    def operation_type(self) -> OperationType:
        return self._operation_type

    def vocabulary(self) -> list[str]:
        """Executor names this table recognizes."""
        return [k.value for k in self._kinds]

    def resolve(self, plan: Plan, phase: Phase) -> Enum:
        """
        Validate a phase against this table without constructing anything.

        Raises:
            PlanIntegrityError: If the phase declares no executor
            UnsupportedOperationError: If the plan is for another operation type
            UnknownExecutorError: If the executor name is not in the vocabulary
        """
        if not phase.executor:
            raise PlanIntegrityError(
                f"error in plan, executor for phase {phase.id!r} was not specified"
            )
        if plan.operation_type != self._operation_type:
            raise UnsupportedOperationError(f"unsupported operation {plan.operation_type.value!r}")
        try:
            return self._kinds(phase.executor)
        except ValueError as e:
            raise UnknownExecutorError(
                f"phase {phase.id!r} requires executor {phase.executor!r} "
                f"(potential mismatch between upgrade versions)"
            ) from e

    def dispatch(self, params: ExecutorParams, remote: Optional[Remote] = None) -> PhaseExecutor:
        """
        Build the executor for a phase.

        Construction errors propagate unchanged.
        """
        kind = self.resolve(params.plan, params.phase)
        return self._constructors[kind](params, remote)

    __call__ = dispatch
