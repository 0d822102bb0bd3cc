"""
Package envelope and update descriptor.

Relationships between packages are expressed only through labels:
- ``installed`` marks the active package of a line
- ``config`` holds the zero-version string of the line a config package belongs to
- ``purpose`` is free-form descriptive metadata
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Optional

from clusterpack.loc import Locator

INSTALLED_LABEL = "installed"
CONFIG_LABEL = "config"
PURPOSE_LABEL = "purpose"


@dataclass(frozen=True)
class PackageEnvelope:
    """
    A discovered package instance.

    Attributes:
        locator: Package identity
        labels: Opaque key/value labels set by producers
        manifest: Raw manifest bytes recorded at creation (None if absent)
        sha256: Hex digest of the package archive
        size_bytes: Archive size
        created_at: When the package was created in the store
    """
    locator: Locator
    labels: Mapping[str, str] = field(default_factory=dict)
    manifest: Optional[bytes] = None
    sha256: str = ""
    size_bytes: int = 0
    created_at: Optional[datetime] = None

    def has_label(self, key: str, value: str) -> bool:
        return self.labels.get(key) == value

    def has_labels(self, labels: Mapping[str, str]) -> bool:
        """Check that every given label is present with the same value."""
        return all(self.has_label(k, v) for k, v in labels.items())

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output. Manifest bytes are omitted."""
        result: dict[str, Any] = {
            "locator": self.locator.to_dict(),
            "labels": dict(self.labels),
            "sha256": self.sha256,
            "size_bytes": self.size_bytes,
        }
        if self.created_at is not None:
            result["created_at"] = self.created_at.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any], manifest: Optional[bytes] = None) -> "PackageEnvelope":
        return cls(
            locator=Locator.from_dict(data["locator"]),
            labels=dict(data.get("labels", {})),
            manifest=manifest,
            sha256=data.get("sha256", ""),
            size_bytes=data.get("size_bytes", 0),
            created_at=datetime.fromisoformat(data["created_at"]) if data.get("created_at") else None,
        )


@dataclass(frozen=True)
class PackageUpdate:
    """A proposed transition of one application line to a newer version."""
    from_: Locator
    to: Locator

    def __str__(self) -> str:
        return f"{self.from_} -> {self.to}"
