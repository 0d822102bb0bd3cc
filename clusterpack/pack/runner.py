"""
Running commands declared in package manifests.

Process execution sits behind the CommandRunner boundary so the logic of
execute_package_command can be exercised without spawning processes.
"""

import logging
import os
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Mapping, Optional

from clusterpack.errors import CommandError
from clusterpack.loc import Locator
from clusterpack.pack.manifest import open_manifest, read_config_package
from clusterpack.pack.service import PackageService
from clusterpack.pack.unpack import package_path, unpack_if_not_unpacked

logger = logging.getLogger(__name__)


class CommandRunner(ABC):
    """Runs an argument vector and returns its combined stdout/stderr."""

    @abstractmethod
    def run(self, args: list[str], env: Mapping[str, str], cwd: Path) -> bytes:
        """
        Run a command to completion.

        Args:
            args: Argument vector, program first
            env: Complete process environment
            cwd: Working directory

        Returns:
            Combined output

        Raises:
            CommandError: If the process cannot be spawned or exits non-zero.
                The output captured so far is attached to the error.
        """
        pass


class SubprocessRunner(CommandRunner):
    """CommandRunner backed by subprocess."""

    def __init__(self, timeout: Optional[float] = None):
        self._timeout = timeout

    def run(self, args: list[str], env: Mapping[str, str], cwd: Path) -> bytes:
        try:
            result = subprocess.run(
                args,
                cwd=cwd,
                env=dict(env),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                timeout=self._timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise CommandError(f"command {args[0]} timed out after {self._timeout}s", output=e.output or b"") from e
        except OSError as e:
            raise CommandError(f"failed to start {args[0]}: {e}") from e

        if result.returncode != 0:
            raise CommandError(
                f"command {args[0]} exited with code {result.returncode}",
                output=result.stdout,
                returncode=result.returncode,
            )
        return result.stdout


def execute_package_command(
    service: PackageService,
    cmd: str,
    loc: Locator,
    conf_loc: Optional[Locator],
    exec_args: list[str],
    storage_dir: Path | str,
    runner: Optional[CommandRunner] = None,
) -> bytes:
    """
    Run a command declared in a package's manifest.

    The package is unpacked under storage_dir (once; later calls reuse the
    directory) and the command runs from there. The environment holds PATH
    from the host plus every binding of the configuration package, if given.

    Args:
        service: Package store
        cmd: Command name declared in the manifest
        loc: Package providing the command
        conf_loc: Optional configuration package for environment bindings
        exec_args: Extra arguments appended to the declared argument vector
        storage_dir: Base directory for unpacked packages
        runner: CommandRunner to use (defaults to SubprocessRunner)

    Returns:
        Combined output of the command

    Raises:
        NotFoundError: If the command is not declared
        CommandError: If the command fails; carries the captured output
        TransportError: If the package cannot be unpacked
    """
    runner = runner or SubprocessRunner()
    logger.info(f"Exec {cmd} from {loc} with config {conf_loc}")

    unpacked_path = package_path(storage_dir, loc)
    unpack_if_not_unpacked(service, loc, unpacked_path)
    manifest = open_manifest(unpacked_path)
    spec = manifest.command(cmd)

    env = {"PATH": os.environ.get("PATH", "")}
    if conf_loc is not None and conf_loc.name:
        _, reader = service.read_package(conf_loc)
        with reader:
            env.update(read_config_package(reader))

    args = list(spec.args) + list(exec_args)
    logger.info(f"Running {args[0]} for command {cmd} {exec_args} (unpacked={unpacked_path})")
    return runner.run(args, env, unpacked_path)
