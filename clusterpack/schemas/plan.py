"""
Plan schemas - one orchestration run and its phases.

A Plan holds the phases of exactly one operation type. Phases declare the
phases they depend on via ``requires``; together they form a partial order
that the FSM engine follows. Phase.state is mutated only by the engine.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from clusterpack.errors import NotFoundError, PlanIntegrityError, UnsupportedOperationError


class OperationType(str, Enum):
    """Kind of cluster operation a plan belongs to."""
    UPDATE = "update"
    INSTALL = "install"
    EXPAND = "expand"


class PhaseState(str, Enum):
    """
    State of a phase.

    pending -> running -> completed | failed
    failed -> running (resume)
    completed | failed -> rolled_back
    """
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


@dataclass
class Phase:
    """
    One unit of orchestration work.

    Attributes:
        id: Unique identifier within the plan (e.g. "/masters/node-1/drain")
        executor: Executor name resolved by the dispatch table
        requires: IDs of phases that must be completed first
        state: Current state
        description: Human-readable summary
        data: Executor-specific parameters (server, package, ...)
        error: Error details from the last failed attempt
        started_at: When the phase last started running
        completed_at: When the phase last finished
    """
    id: str
    executor: str
    requires: tuple[str, ...] = ()
    state: PhaseState = PhaseState.PENDING
    description: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    error: Optional[dict[str, Any]] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "id": self.id,
            "executor": self.executor,
            "requires": list(self.requires),
            "state": self.state.value,
        }
        if self.description:
            result["description"] = self.description
        if self.data:
            result["data"] = self.data
        if self.error is not None:
            result["error"] = self.error
        if self.started_at is not None:
            result["started_at"] = self.started_at.isoformat()
        if self.completed_at is not None:
            result["completed_at"] = self.completed_at.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Phase":
        """Deserialize from dictionary."""
        if "id" not in data:
            raise PlanIntegrityError(f"phase without id: {data!r}")
        return cls(
            id=data["id"],
            executor=data.get("executor", ""),
            requires=tuple(data.get("requires", ())),
            state=PhaseState(data.get("state", "pending")),
            description=data.get("description", ""),
            data=dict(data.get("data") or {}),
            error=data.get("error"),
            started_at=datetime.fromisoformat(data["started_at"]) if data.get("started_at") else None,
            completed_at=datetime.fromisoformat(data["completed_at"]) if data.get("completed_at") else None,
        )


@dataclass
class Plan:
    """
    An orchestration run: phases of a single operation.

    Attributes:
        operation_id: Identifier of the operation (also the store key)
        operation_type: Kind of operation; selects the dispatch table
        phases: Phases in plan order
    """
    operation_id: str
    operation_type: OperationType
    phases: list[Phase] = field(default_factory=list)

    def get_phase(self, phase_id: str) -> Phase:
        for phase in self.phases:
            if phase.id == phase_id:
                return phase
        raise NotFoundError(f"phase {phase_id!r} not found in plan {self.operation_id}")

    def dependents(self, phase_id: str) -> list[Phase]:
        """Phases that directly require phase_id."""
        return [p for p in self.phases if phase_id in p.requires]

    def validate(self) -> None:
        """
        Check structural integrity.

        Raises:
            PlanIntegrityError: On duplicate IDs, unknown dependencies or cycles
        """
        seen: set[str] = set()
        for phase in self.phases:
            if not phase.id:
                raise PlanIntegrityError("error in plan, phase with empty id")
            if phase.id in seen:
                raise PlanIntegrityError(f"error in plan, duplicate phase id {phase.id!r}")
            seen.add(phase.id)
        for phase in self.phases:
            for dep in phase.requires:
                if dep not in seen:
                    raise PlanIntegrityError(
                        f"error in plan, phase {phase.id!r} requires unknown phase {dep!r}"
                    )
                if dep == phase.id:
                    raise PlanIntegrityError(f"error in plan, phase {phase.id!r} requires itself")
        self.topological_order()

    def topological_order(self) -> list[Phase]:
        """
        Order phases so that every phase comes after the ones it requires.

        Ties keep plan order.

        Raises:
            PlanIntegrityError: If the dependencies form a cycle
        """
        ordered: list[Phase] = []
        done: set[str] = set()
        remaining = list(self.phases)
        while remaining:
            ready = [p for p in remaining if all(dep in done for dep in p.requires)]
            if not ready:
                cycle = ", ".join(p.id for p in remaining)
                raise PlanIntegrityError(f"error in plan, dependency cycle among phases: {cycle}")
            for phase in ready:
                ordered.append(phase)
                done.add(phase.id)
            remaining = [p for p in remaining if p.id not in done]
        return ordered

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        return {
            "operation_id": self.operation_id,
            "operation_type": self.operation_type.value,
            "phases": [p.to_dict() for p in self.phases],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Plan":
        """Deserialize from dictionary."""
        try:
            operation_type = OperationType(data["operation_type"])
        except KeyError as e:
            raise PlanIntegrityError("error in plan, operation_type is missing") from e
        except ValueError as e:
            raise UnsupportedOperationError(
                f"unsupported operation {data['operation_type']!r}"
            ) from e
        if "operation_id" not in data:
            raise PlanIntegrityError("error in plan, operation_id is missing")
        return cls(
            operation_id=data["operation_id"],
            operation_type=operation_type,
            phases=[Phase.from_dict(p) for p in data.get("phases", [])],
        )
