"""
PackageService - the package store capability the resolver depends on.

The PackageService manages:
- Repository enumeration
- Package envelope enumeration per repository
- Reading package archives
- Creating new (immutable) packages with labels

Storage backends:
- In-memory (for testing and embedding)
- Local directory tree (for a single node)

Packages are immutable once created: creating an existing locator fails
with AlreadyExistsError, so concurrent readers never observe a rewrite.
"""

import hashlib
import io
import json
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Mapping, Optional, Union
from urllib.parse import quote, unquote

from clusterpack.errors import AlreadyExistsError, NotFoundError, TransportError
from clusterpack.loc import Locator
from clusterpack.pack.envelope import PackageEnvelope
from clusterpack.pack.manifest import peek_manifest

logger = logging.getLogger(__name__)

PackageData = Union[bytes, BinaryIO]


def _read_all(data: PackageData) -> bytes:
    if isinstance(data, (bytes, bytearray)):
        return bytes(data)
    return data.read()


class PackageService(ABC):
    """
    Abstract base class for package stores.

    Implementations must provide methods to:
    - List repositories
    - List package envelopes in a repository
    - Read a package archive
    - Create a package
    """

    @abstractmethod
    def get_repositories(self) -> list[str]:
        """
        List repository names.

        Returns:
            Repository names in a stable order
        """
        pass

    @abstractmethod
    def get_packages(self, repository: str) -> list[PackageEnvelope]:
        """
        List package envelopes in a repository.

        Args:
            repository: Repository name

        Returns:
            Envelopes in store order (empty list for an unknown repository)
        """
        pass

    @abstractmethod
    def read_package(self, loc: Locator) -> tuple[PackageEnvelope, BinaryIO]:
        """
        Open a package archive for reading.

        Args:
            loc: Package locator

        Returns:
            Tuple of (envelope, binary stream). The caller closes the stream.

        Raises:
            NotFoundError: If the package does not exist
        """
        pass

    @abstractmethod
    def create_package(
        self,
        loc: Locator,
        data: PackageData,
        labels: Optional[Mapping[str, str]] = None,
    ) -> PackageEnvelope:
        """
        Create a new package.

        Args:
            loc: Locator of the new package
            data: Archive bytes or a readable binary stream
            labels: Labels to attach

        Returns:
            Envelope of the created package

        Raises:
            AlreadyExistsError: If a package with this locator exists
        """
        pass

    def get_package(self, loc: Locator) -> PackageEnvelope:
        """Return the envelope for loc without opening the archive."""
        for envelope in self.get_packages(loc.repository):
            if envelope.locator == loc:
                return envelope
        raise NotFoundError(f"package {loc} not found")


def _make_envelope(loc: Locator, content: bytes, labels: Optional[Mapping[str, str]]) -> PackageEnvelope:
    return PackageEnvelope(
        locator=loc,
        labels=dict(labels or {}),
        manifest=peek_manifest(content),
        sha256=hashlib.sha256(content).hexdigest(),
        size_bytes=len(content),
        created_at=datetime.now(timezone.utc),
    )


class InMemoryPackageService(PackageService):
    """
    In-memory implementation of PackageService.

    All data is lost when the instance is garbage collected.
    """

    def __init__(self):
        self._lock = threading.Lock()
        # repository -> locator -> (envelope, content)
        self._repos: dict[str, dict[Locator, tuple[PackageEnvelope, bytes]]] = {}

    def get_repositories(self) -> list[str]:
        with self._lock:
            return sorted(self._repos.keys())

    def get_packages(self, repository: str) -> list[PackageEnvelope]:
        with self._lock:
            return [env for env, _ in self._repos.get(repository, {}).values()]

    def read_package(self, loc: Locator) -> tuple[PackageEnvelope, BinaryIO]:
        with self._lock:
            entry = self._repos.get(loc.repository, {}).get(loc)
        if entry is None:
            raise NotFoundError(f"package {loc} not found")
        envelope, content = entry
        return envelope, io.BytesIO(content)

    def create_package(
        self,
        loc: Locator,
        data: PackageData,
        labels: Optional[Mapping[str, str]] = None,
    ) -> PackageEnvelope:
        content = _read_all(data)
        envelope = _make_envelope(loc, content, labels)
        with self._lock:
            repo = self._repos.setdefault(loc.repository, {})
            if loc in repo:
                raise AlreadyExistsError(f"package {loc} already exists")
            repo[loc] = (envelope, content)
        logger.debug(f"Created package {loc} ({envelope.size_bytes} bytes)")
        return envelope

    def clear(self) -> None:
        """Clear all stored data (for testing)."""
        with self._lock:
            self._repos.clear()


class LocalPackageService(PackageService):
    """
    Directory-backed implementation of PackageService.

    Stores packages in a directory tree:
        root/
            {repository}/          (percent-encoded)
                {name}/
                    {version}/
                        package.tar.gz
                        envelope.json
    """

    ARCHIVE_FILE = "package.tar.gz"
    ENVELOPE_FILE = "envelope.json"

    def __init__(self, root: Path | str):
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def _package_dir(self, loc: Locator) -> Path:
        return self._root / quote(loc.repository, safe="") / loc.name / loc.version

    def get_repositories(self) -> list[str]:
        return sorted(unquote(p.name) for p in self._root.iterdir() if p.is_dir())

    def get_packages(self, repository: str) -> list[PackageEnvelope]:
        repo_dir = self._root / quote(repository, safe="")
        if not repo_dir.is_dir():
            return []
        envelopes = []
        for envelope_path in sorted(repo_dir.glob(f"*/*/{self.ENVELOPE_FILE}")):
            envelopes.append(self._load_envelope(envelope_path))
        return envelopes

    def _load_envelope(self, envelope_path: Path) -> PackageEnvelope:
        try:
            with open(envelope_path) as f:
                data = json.load(f)
            manifest_path = envelope_path.parent / "manifest.yaml"
            manifest = manifest_path.read_bytes() if manifest_path.exists() else None
        except (OSError, json.JSONDecodeError) as e:
            raise TransportError(f"failed to read package envelope {envelope_path}: {e}") from e
        return PackageEnvelope.from_dict(data, manifest=manifest)

    def read_package(self, loc: Locator) -> tuple[PackageEnvelope, BinaryIO]:
        package_dir = self._package_dir(loc)
        envelope_path = package_dir / self.ENVELOPE_FILE
        if not envelope_path.exists():
            raise NotFoundError(f"package {loc} not found")
        envelope = self._load_envelope(envelope_path)
        try:
            return envelope, open(package_dir / self.ARCHIVE_FILE, "rb")
        except OSError as e:
            raise TransportError(f"failed to open package {loc}: {e}") from e

    def create_package(
        self,
        loc: Locator,
        data: PackageData,
        labels: Optional[Mapping[str, str]] = None,
    ) -> PackageEnvelope:
        package_dir = self._package_dir(loc)
        if (package_dir / self.ENVELOPE_FILE).exists():
            raise AlreadyExistsError(f"package {loc} already exists")

        content = _read_all(data)
        envelope = _make_envelope(loc, content, labels)
        try:
            package_dir.mkdir(parents=True, exist_ok=True)
            (package_dir / self.ARCHIVE_FILE).write_bytes(content)
            if envelope.manifest is not None:
                (package_dir / "manifest.yaml").write_bytes(envelope.manifest)
            # Envelope is written last: its presence marks the package as created
            temp_path = package_dir / (self.ENVELOPE_FILE + ".tmp")
            temp_path.write_text(json.dumps(envelope.to_dict(), indent=2))
            temp_path.rename(package_dir / self.ENVELOPE_FILE)
        except OSError as e:
            raise TransportError(f"failed to create package {loc}: {e}") from e

        logger.debug(f"Created package {loc} in {package_dir}")
        return envelope
