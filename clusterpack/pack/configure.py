"""
Configuration packages - derived artifacts holding resolved runtime
parameters for a package line.

The source package is only read; the result is committed as a brand new
package whose ``config`` label points at the source line's zero version.
Creating the same configuration package concurrently is a caller-level
race: the store rejects the second create with AlreadyExistsError.
"""

import io
import logging
from typing import Mapping, Optional

from clusterpack.errors import BadArgumentsError, InvalidManifestError
from clusterpack.loc import Locator
from clusterpack.pack.envelope import CONFIG_LABEL, PackageEnvelope
from clusterpack.pack.manifest import Manifest, open_archive, read_manifest, write_config_package
from clusterpack.pack.service import PackageService

logger = logging.getLogger(__name__)


def get_package_manifest(service: PackageService, loc: Locator) -> Manifest:
    """Read the manifest of a package without unpacking it."""
    _, reader = service.read_package(loc)
    with reader:
        with open_archive(reader) as tarball:
            return read_manifest(tarball)


def get_config_package(
    service: PackageService,
    loc: Locator,
    conf_loc: Locator,
    args: list[str],
) -> io.BytesIO:
    """
    Build the configuration package for loc without saving it.

    Args:
        service: Package store
        loc: Package whose manifest declares the configuration schema
        conf_loc: Locator the configuration package will be created under
        args: Configuration arguments, e.g. ["--role=master"]

    Returns:
        In-memory buffer with the configuration archive, positioned at 0

    Raises:
        InvalidManifestError: If the manifest declares no configuration
        BadArgumentsError: If args do not match the declared parameters
    """
    manifest = get_package_manifest(service, loc)
    if manifest.config is None or not manifest.config.params:
        raise InvalidManifestError(f"manifest of {loc} does not have configuration parameters")

    try:
        values = manifest.config.parse_args(args)
    except BadArgumentsError as e:
        logger.warning(f"Failed to parse arguments for {conf_loc}: {e}")
        raise

    buf = io.BytesIO()
    write_config_package(manifest, values, buf)
    buf.seek(0)
    return buf


def configure_package(
    service: PackageService,
    loc: Locator,
    conf_loc: Locator,
    args: list[str],
    labels: Optional[Mapping[str, str]] = None,
) -> PackageEnvelope:
    """
    Configure loc with args and create the result as conf_loc.

    Caller labels are merged over the canonical ``config`` ownership label.

    Returns:
        Envelope of the created configuration package
    """
    buf = get_config_package(service, loc, conf_loc, args)
    all_labels = {CONFIG_LABEL: str(loc.zero_version())}
    all_labels.update(labels or {})
    envelope = service.create_package(conf_loc, buf, labels=all_labels)
    logger.info(f"Created configuration package {conf_loc} for {loc}")
    return envelope
