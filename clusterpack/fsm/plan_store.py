"""
PlanStore - persist plan state between engine steps.

The engine saves the plan after every phase transition, so an operator
can resume or roll back from a fresh process.

Storage backends:
- In-memory (for testing)
- File-based (one JSON document per operation)
"""

import json
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional
from urllib.parse import quote

from clusterpack.errors import TransportError
from clusterpack.schemas import Plan


class PlanStore(ABC):
    """Abstract base class for plan storage."""

    @abstractmethod
    def save_plan(self, plan: Plan) -> None:
        """
        Store or replace a plan.

        Args:
            plan: The Plan to store
        """
        pass

    @abstractmethod
    def get_plan(self, operation_id: str) -> Optional[Plan]:
        """
        Retrieve a plan.

        Args:
            operation_id: Operation identifier

        Returns:
            The Plan if found, None otherwise
        """
        pass

    @abstractmethod
    def list_plans(self) -> list[str]:
        """List stored operation IDs."""
        pass


class InMemoryPlanStore(PlanStore):
    """
    In-memory implementation of PlanStore for testing.

    Plans are stored as serialized snapshots so later mutations of the
    caller's Plan object are not visible until saved again.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._plans: dict[str, dict] = {}

    def save_plan(self, plan: Plan) -> None:
        with self._lock:
            self._plans[plan.operation_id] = plan.to_dict()

    def get_plan(self, operation_id: str) -> Optional[Plan]:
        with self._lock:
            data = self._plans.get(operation_id)
        return Plan.from_dict(data) if data is not None else None

    def list_plans(self) -> list[str]:
        with self._lock:
            return sorted(self._plans)


class FilePlanStore(PlanStore):
    """
    File-based implementation of PlanStore.

    Stores plans as JSON files:
        store_dir/
            {operation_id}.json
    """

    def __init__(self, store_dir: Path | str):
        self._store_dir = Path(store_dir)
        self._store_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _path(self, operation_id: str) -> Path:
        return self._store_dir / f"{quote(operation_id, safe='')}.json"

    def save_plan(self, plan: Plan) -> None:
        path = self._path(plan.operation_id)
        temp_path = path.with_suffix(".tmp")
        with self._lock:
            try:
                temp_path.write_text(json.dumps(plan.to_dict(), indent=2))
                temp_path.rename(path)
            except OSError as e:
                raise TransportError(f"failed to save plan {plan.operation_id}: {e}") from e

    def get_plan(self, operation_id: str) -> Optional[Plan]:
        path = self._path(operation_id)
        if not path.exists():
            return None
        with open(path) as f:
            return Plan.from_dict(json.load(f))

    def list_plans(self) -> list[str]:
        plans = []
        for path in sorted(self._store_dir.glob("*.json")):
            with open(path) as f:
                plans.append(json.load(f)["operation_id"])
        return plans
