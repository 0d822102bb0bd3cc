"""
clusterpack.pack - package store access, resolution and configuration.
"""

from .envelope import (
    CONFIG_LABEL,
    INSTALLED_LABEL,
    PURPOSE_LABEL,
    PackageEnvelope,
    PackageUpdate,
)
from .service import PackageService, InMemoryPackageService, LocalPackageService
from .resolver import (
    check_update_package,
    config_labels,
    find_config_package,
    find_installed_package,
    find_installed_package_with_config,
    find_latest_package,
    find_latest_package_by_name,
    find_latest_package_predicate,
    find_latest_package_with_labels,
    find_newer_packages,
    find_package,
    find_package_update,
    foreach_package,
    foreach_package_in_repo,
    iter_packages,
    process_metadata,
)
from .configure import configure_package, get_config_package, get_package_manifest
from .runner import CommandRunner, SubprocessRunner, execute_package_command
from .unpack import is_unpacked, package_path, unpack, unpack_if_not_unpacked

__all__ = [
    # Labels
    "CONFIG_LABEL",
    "INSTALLED_LABEL",
    "PURPOSE_LABEL",
    # Types
    "PackageEnvelope",
    "PackageUpdate",
    # Stores
    "PackageService",
    "InMemoryPackageService",
    "LocalPackageService",
    # Resolver
    "check_update_package",
    "config_labels",
    "find_config_package",
    "find_installed_package",
    "find_installed_package_with_config",
    "find_latest_package",
    "find_latest_package_by_name",
    "find_latest_package_predicate",
    "find_latest_package_with_labels",
    "find_newer_packages",
    "find_package",
    "find_package_update",
    "foreach_package",
    "foreach_package_in_repo",
    "iter_packages",
    "process_metadata",
    # Configuration
    "configure_package",
    "get_config_package",
    "get_package_manifest",
    # Commands
    "CommandRunner",
    "SubprocessRunner",
    "execute_package_command",
    # Unpacking
    "is_unpacked",
    "package_path",
    "unpack",
    "unpack_if_not_unpacked",
]
