"""
Package resolver - read-only queries over a PackageService.

All functions here are pure with respect to the store: they enumerate
envelopes and never mutate anything. Scans take no locks and are safe to
run concurrently against the same store.

Version policy during scans: an envelope whose version does not parse is
skipped (and logged at DEBUG) so that malformed historical artifacts never
block resolution. A malformed version on the caller's own locator is an
error.
"""

import logging
from typing import Callable, Iterable, Iterator, Mapping, Optional

import semver

from clusterpack.errors import InvalidArgumentError, MalformedVersionError, NotFoundError
from clusterpack.loc import Locator
from clusterpack.pack.envelope import (
    CONFIG_LABEL,
    INSTALLED_LABEL,
    PURPOSE_LABEL,
    PackageEnvelope,
    PackageUpdate,
)
from clusterpack.pack.service import PackageService

logger = logging.getLogger(__name__)

Predicate = Callable[[PackageEnvelope], bool]


def iter_packages(service: PackageService, repository: Optional[str] = None) -> Iterator[PackageEnvelope]:
    """
    Lazily yield envelopes, from one repository or from all of them.

    Each call produces a fresh iterator, so a scan can be restarted.
    """
    repositories = [repository] if repository else service.get_repositories()
    for repo in repositories:
        yield from service.get_packages(repo)


def foreach_package(service: PackageService, fn: Callable[[PackageEnvelope], None]) -> None:
    """Call fn for every package in every repository. An error from fn aborts the walk."""
    for envelope in iter_packages(service):
        fn(envelope)


def foreach_package_in_repo(
    service: PackageService,
    repository: str,
    fn: Callable[[PackageEnvelope], None],
) -> None:
    """Call fn for every package in repository. An error from fn aborts the walk."""
    for envelope in service.get_packages(repository):
        fn(envelope)


def find_package(service: PackageService, predicate: Predicate) -> PackageEnvelope:
    """
    Return the first envelope (in store order) satisfying predicate.

    Raises:
        NotFoundError: If nothing matches
    """
    for envelope in iter_packages(service):
        if predicate(envelope):
            return envelope
    raise NotFoundError("package not found")


def _versioned(envelopes: Iterable[PackageEnvelope]) -> Iterator[tuple[semver.Version, PackageEnvelope]]:
    for envelope in envelopes:
        try:
            yield envelope.locator.sem_ver(), envelope
        except MalformedVersionError:
            logger.debug(f"Skipping {envelope.locator}: unparsable version")


def latest_of(envelopes: Iterable[PackageEnvelope]) -> Optional[PackageEnvelope]:
    """
    Reduce envelopes to the one with the highest version.

    Envelopes with unparsable versions never take part, not even as the
    initial candidate. Among equal versions the first one seen wins.
    """
    best = max(_versioned(envelopes), key=lambda pair: pair[0], default=None)
    return best[1] if best is not None else None


def find_latest_package_predicate(
    service: PackageService,
    repository: str,
    predicate: Predicate,
) -> PackageEnvelope:
    """
    Return the highest-version envelope satisfying predicate.

    Args:
        service: Package store
        repository: Repository to scan, or "" for all repositories
        predicate: Filter applied before comparing versions

    Raises:
        NotFoundError: If no envelope with a valid version matches
    """
    latest = latest_of(e for e in iter_packages(service, repository or None) if predicate(e))
    if latest is None:
        raise NotFoundError("latest package not found")
    return latest


def find_latest_package(service: PackageService, filter: Locator) -> Locator:
    """Return the latest package of the filter's line."""
    try:
        envelope = find_latest_package_predicate(
            service, filter.repository, lambda e: e.locator.same_line(filter)
        )
    except NotFoundError as e:
        raise NotFoundError(f"latest package with filter {filter} not found") from e
    return envelope.locator


def find_latest_package_by_name(service: PackageService, name: str) -> Locator:
    """Return the latest package with the given name across all repositories."""
    try:
        envelope = find_latest_package_predicate(service, "", lambda e: e.locator.name == name)
    except NotFoundError as e:
        raise NotFoundError(f"latest package with name {name!r} not found") from e
    return envelope.locator


def find_latest_package_with_labels(
    service: PackageService,
    repository: str,
    labels: Mapping[str, str],
) -> Locator:
    """Return the latest package in repository carrying all of labels."""
    try:
        envelope = find_latest_package_predicate(service, repository, lambda e: e.has_labels(labels))
    except NotFoundError as e:
        raise NotFoundError(
            f"latest package in repo {repository!r} with labels {dict(labels)} not found"
        ) from e
    return envelope.locator


def find_installed_package(service: PackageService, filter: Locator) -> Locator:
    """
    Return the package of the filter's line that carries the installed label.

    Raises:
        NotFoundError: If no package of the line is installed
    """
    try:
        envelope = find_package(
            service,
            lambda e: e.locator.same_line(filter) and INSTALLED_LABEL in e.labels,
        )
    except NotFoundError as e:
        raise NotFoundError(f"no installed package for {filter} found") from e
    return envelope.locator


def find_config_package(service: PackageService, filter: Locator) -> Locator:
    """
    Return the configuration package that belongs to the filter's line.

    Ownership is expressed by the ``config`` label holding the line's
    zero-version locator string.
    """
    owner = str(filter.zero_version())
    try:
        envelope = find_package(service, lambda e: e.has_label(CONFIG_LABEL, owner))
    except NotFoundError as e:
        raise NotFoundError(f"no configuration package for {filter} found") from e
    return envelope.locator


def find_installed_package_with_config(service: PackageService, filter: Locator) -> tuple[Locator, Locator]:
    """Return (installed package, its configuration package)."""
    installed = find_installed_package(service, filter)
    config = find_config_package(service, installed)
    return installed, config


def find_newer_packages(service: PackageService, filter: Locator) -> list[PackageEnvelope]:
    """
    Return packages of the filter's line with a version above filter's.

    Raises:
        MalformedVersionError: If the filter's own version is malformed
    """
    current = filter.sem_ver()
    candidates = (e for e in service.get_packages(filter.repository) if e.locator.name == filter.name)
    return [envelope for version, envelope in _versioned(candidates) if version.compare(current) > 0]


def find_package_update(service: PackageService, pkg: Locator) -> PackageUpdate:
    """
    Determine whether a newer version of pkg exists.

    Returns:
        PackageUpdate from pkg to the latest version

    Raises:
        NotFoundError: If pkg is already at the latest version (or the line is empty)
    """
    latest = find_latest_package(service, pkg)
    current_version = pkg.sem_ver()
    latest_version = latest.sem_ver()
    if latest_version.compare(current_version) > 0:
        return PackageUpdate(from_=pkg, to=latest)
    raise NotFoundError(f"{pkg} is already at the latest version")


def check_update_package(from_: Locator, to: Locator) -> None:
    """
    Make sure that updating from ``from_`` to ``to`` is acceptable.

    Raises:
        InvalidArgumentError: On application mismatch or if ``to`` is not newer
    """
    if not from_.same_line(to):
        raise InvalidArgumentError(
            f"you are attempting to upgrade to {to.repository}/{to.name} {to.version}, "
            f"but different application is installed: {from_.repository}/{from_.name} {from_.version}"
        )
    from_version = from_.sem_ver()
    to_version = to.sem_ver()
    if from_version.compare(to_version) >= 0:
        raise InvalidArgumentError(
            f"update version ({to_version}) must be greater than the currently "
            f"installed version ({from_version})"
        )


def process_metadata(service: PackageService, loc: Locator) -> Locator:
    """
    Resolve the ``latest`` sentinel to a concrete locator.

    Locators with a concrete version are returned as-is after validating
    the version.
    """
    if loc.is_latest():
        return find_latest_package(service, loc)
    loc.sem_ver()
    return loc


def config_labels(loc: Locator, purpose: str) -> dict[str, str]:
    """Labels that mark a package as the configuration of loc's line."""
    return {
        CONFIG_LABEL: str(loc.zero_version()),
        PURPOSE_LABEL: purpose,
    }
