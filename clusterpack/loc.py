"""
Locator - identity of one package version.

A Locator is ``repository/name:version``. ``(repository, name)`` identifies an
application line; the version is a semantic version string, or the sentinel
``latest`` which callers resolve to a concrete version before touching the
store (see ``clusterpack.pack.resolver.process_metadata``).

Locators are built without validating the version so that envelopes with
malformed historical versions can still be enumerated; ``sem_ver()`` is the
point where a version is parsed and rejected.
"""

from dataclasses import dataclass
from typing import Any

import semver

from clusterpack.errors import InvalidArgumentError, MalformedVersionError

# Placeholder version used when a Locator serves as a label value
ZERO_VERSION = "0.0.1"

# Sentinel resolved to the highest concrete version of a line
LATEST = "latest"


@dataclass(frozen=True)
class Locator:
    """
    Package identity.

    Attributes:
        repository: Repository the package lives in (e.g. "example.com")
        name: Package name within the repository
        version: Semantic version string or the ``latest`` sentinel
    """
    repository: str
    name: str
    version: str

    def sem_ver(self) -> semver.Version:
        """
        Parse the version.

        Raises:
            MalformedVersionError: If the version is not a semantic version
        """
        try:
            return semver.Version.parse(self.version)
        except (ValueError, TypeError) as e:
            raise MalformedVersionError(
                f"package {self} has malformed version {self.version!r}: {e}"
            ) from e

    def is_latest(self) -> bool:
        """Check whether this locator asks for the latest version of its line."""
        if self.version == LATEST:
            return True
        try:
            return semver.Version.parse(self.version).build == LATEST
        except (ValueError, TypeError):
            return False

    def zero_version(self) -> "Locator":
        """Return a locator for the same line with the placeholder version."""
        return Locator(self.repository, self.name, ZERO_VERSION)

    def with_version(self, version: str) -> "Locator":
        return Locator(self.repository, self.name, version)

    def same_line(self, other: "Locator") -> bool:
        """Check whether both locators belong to the same application line."""
        return self.repository == other.repository and self.name == other.name

    def __str__(self) -> str:
        return f"{self.repository}/{self.name}:{self.version}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "repository": self.repository,
            "name": self.name,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Locator":
        return cls(
            repository=data["repository"],
            name=data["name"],
            version=data["version"],
        )


def parse_locator(text: str) -> Locator:
    """
    Parse the textual form ``repository/name:version``.

    The repository may itself contain slashes; the name is the last path
    segment before the colon.

    Args:
        text: Locator string

    Returns:
        Parsed Locator

    Raises:
        InvalidArgumentError: If the string is not in locator form
        MalformedVersionError: If the version is neither semver nor ``latest``
    """
    head, sep, version = text.rpartition(":")
    if not sep or not version:
        raise InvalidArgumentError(
            f"invalid package locator {text!r}, expected repository/name:version"
        )
    repository, sep, name = head.rpartition("/")
    if not sep or not repository or not name:
        raise InvalidArgumentError(
            f"invalid package locator {text!r}, expected repository/name:version"
        )
    loc = Locator(repository, name, version)
    if version != LATEST:
        loc.sem_ver()
    return loc
