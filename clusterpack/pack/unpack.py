"""
Unpacking packages onto the local filesystem.
"""

import logging
import shutil
import tarfile
from pathlib import Path
from typing import Optional

from clusterpack.errors import InvalidArgumentError, TransportError
from clusterpack.loc import Locator
from clusterpack.pack.manifest import open_archive
from clusterpack.pack.service import PackageService

logger = logging.getLogger(__name__)


def package_path(base_dir: Path | str, loc: Locator) -> Path:
    """Path of a package under base_dir: base/repository/name/version."""
    return Path(base_dir) / loc.repository / loc.name / loc.version


def is_unpacked(target_dir: Path | str) -> bool:
    """
    Check whether a package has been unpacked at target_dir.

    Only checks that the directory exists.

    Raises:
        InvalidArgumentError: If target_dir exists but is not a directory
    """
    target = Path(target_dir)
    if not target.exists():
        return False
    if not target.is_dir():
        raise InvalidArgumentError(f"expected {target} to be a directory")
    return True


def unpack(service: PackageService, loc: Locator, target_dir: Optional[Path | str] = None) -> Path:
    """
    Read a package from the service and extract it into target_dir.

    If target_dir is not given, the package is unpacked under the configured
    unpacked-packages directory.

    Returns:
        The directory the package was unpacked into

    Raises:
        NotFoundError: If the package does not exist
        TransportError: If the archive cannot be read or extracted
    """
    if target_dir is None:
        from clusterpack.config import load_config

        target_dir = package_path(load_config().unpacked_dir, loc)
        logger.info(f"Unpacking {loc} into the default directory {target_dir}")

    target = Path(target_dir)
    created = not target.exists()
    try:
        target.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise TransportError(f"failed to create {target} for {loc}: {e}") from e

    try:
        _, reader = service.read_package(loc)
        with reader:
            with open_archive(reader) as tarball:
                try:
                    tarball.extractall(target, filter="data")
                except (tarfile.TarError, OSError) as e:
                    raise TransportError(f"failed to unpack {loc} into {target}: {e}") from e
    except Exception:
        # A half-written directory would otherwise count as unpacked
        if created:
            shutil.rmtree(target, ignore_errors=True)
        raise
    return target


def unpack_if_not_unpacked(service: PackageService, loc: Locator, target_dir: Path | str) -> bool:
    """
    Unpack a package only if target_dir does not exist yet.

    Returns:
        True if the package was extracted, False if it was already unpacked
    """
    if is_unpacked(target_dir):
        return False
    unpack(service, loc, target_dir)
    return True
