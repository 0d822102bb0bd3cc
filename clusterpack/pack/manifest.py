"""
Package manifest - commands and configuration schema embedded in a package.

A package archive is a (usually gzipped) tarball with ``manifest.yaml`` at
its root:

    commands:
      - name: start
        args: ["bin/app", "start"]
    config:
      params:
        - name: role
          env: APP_ROLE
          type: string        # string | int | bool
          required: true
        - name: debug
          env: APP_DEBUG
          type: bool

A configuration package is a gzipped tarball holding ``vars.json`` (the
resolved environment bindings) next to a copy of the source manifest.
"""

import io
import json
import logging
import tarfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, BinaryIO, Optional

import click
import yaml

from clusterpack.errors import (
    BadArgumentsError,
    InvalidManifestError,
    NotFoundError,
    TransportError,
)

logger = logging.getLogger(__name__)

MANIFEST_FILE = "manifest.yaml"
VARS_FILE = "vars.json"

PARAM_TYPES = {
    "string": click.STRING,
    "int": click.INT,
    "bool": click.BOOL,
}


@dataclass(frozen=True)
class CommandSpec:
    """A named argument vector declared by a package."""
    name: str
    args: tuple[str, ...]


@dataclass(frozen=True)
class ConfigParam:
    """One configurable parameter of a package."""
    name: str
    env: str
    type: str = "string"
    required: bool = False
    default: Any = None
    description: str = ""

    def to_click_option(self) -> click.Option:
        decls = [f"--{self.name}", self.env]
        if self.type == "bool":
            return click.Option(
                decls,
                is_flag=True,
                default=bool(self.default),
                help=self.description,
            )
        return click.Option(
            decls,
            type=PARAM_TYPES[self.type],
            required=self.required,
            default=self.default,
            help=self.description,
        )


@dataclass(frozen=True)
class ConfigSpec:
    """Declared configuration parameters of a package."""
    params: tuple[ConfigParam, ...] = ()

    def parse_args(self, args: list[str]) -> dict[str, str]:
        """
        Parse command line style arguments against the declared params.

        Args:
            args: Arguments such as ["--role=master", "--debug"]

        Returns:
            Mapping of environment variable name to string value. Params
            without a value and without a default are omitted.

        Raises:
            BadArgumentsError: If args do not match the schema
        """
        command = click.Command(
            "configure",
            params=[p.to_click_option() for p in self.params],
            add_help_option=False,
        )
        try:
            ctx = command.make_context("configure", list(args))
        except click.ClickException as e:
            raise BadArgumentsError(f"failed to parse arguments {args}: {e.format_message()}") from e

        values: dict[str, str] = {}
        for param in self.params:
            value = ctx.params.get(param.env)
            if value is None:
                continue
            if isinstance(value, bool):
                value = "true" if value else "false"
            values[param.env] = str(value)
        return values


@dataclass(frozen=True)
class Manifest:
    """Parsed package manifest."""
    commands: tuple[CommandSpec, ...] = ()
    config: Optional[ConfigSpec] = None
    raw: dict[str, Any] = field(default_factory=dict)

    def command(self, name: str) -> CommandSpec:
        """
        Look up a declared command.

        Raises:
            NotFoundError: If no command with this name is declared
        """
        for cmd in self.commands:
            if cmd.name == name:
                return cmd
        raise NotFoundError(f"command {name!r} not found in package manifest")

    def to_yaml(self) -> bytes:
        return yaml.safe_dump(self.raw, sort_keys=False).encode("utf-8")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Manifest":
        if not isinstance(data, dict):
            raise InvalidManifestError("manifest must be a mapping")

        commands = []
        for item in data.get("commands") or []:
            name = item.get("name") if isinstance(item, dict) else None
            args = item.get("args") if isinstance(item, dict) else None
            if not name or not isinstance(args, list) or not args:
                raise InvalidManifestError(f"invalid command spec in manifest: {item!r}")
            commands.append(CommandSpec(name=name, args=tuple(str(a) for a in args)))

        config = None
        config_data = data.get("config")
        if config_data:
            params = []
            for item in config_data.get("params") or []:
                try:
                    param = ConfigParam(
                        name=item["name"],
                        env=item["env"],
                        type=item.get("type", "string"),
                        required=bool(item.get("required", False)),
                        default=item.get("default"),
                        description=item.get("description", ""),
                    )
                except (KeyError, TypeError) as e:
                    raise InvalidManifestError(f"invalid config parameter in manifest: {item!r}") from e
                if param.type not in PARAM_TYPES:
                    raise InvalidManifestError(
                        f"config parameter {param.name!r} has unsupported type {param.type!r}"
                    )
                params.append(param)
            config = ConfigSpec(params=tuple(params))

        return cls(commands=tuple(commands), config=config, raw=data)

    @classmethod
    def from_yaml(cls, content: bytes | str) -> "Manifest":
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise InvalidManifestError(f"invalid manifest YAML: {e}") from e
        return cls.from_dict(data or {})


def _is_manifest_member(member: tarfile.TarInfo) -> bool:
    return member.isfile() and member.name.removeprefix("./") == MANIFEST_FILE


def read_manifest(tarball: tarfile.TarFile) -> Manifest:
    """
    Read the manifest out of an open package tarball.

    Raises:
        InvalidManifestError: If the archive has no manifest
    """
    for member in tarball:
        if _is_manifest_member(member):
            f = tarball.extractfile(member)
            return Manifest.from_yaml(f.read())
    raise InvalidManifestError(f"package archive has no {MANIFEST_FILE}")


def open_manifest(unpacked_dir: Path) -> Manifest:
    """Read the manifest of an unpacked package directory."""
    path = Path(unpacked_dir) / MANIFEST_FILE
    if not path.exists():
        raise InvalidManifestError(f"no {MANIFEST_FILE} in {unpacked_dir}")
    return Manifest.from_yaml(path.read_bytes())


def open_archive(reader: BinaryIO) -> tarfile.TarFile:
    """Open a package stream as a tarball, detecting compression."""
    try:
        return tarfile.open(fileobj=reader, mode="r:*")
    except (tarfile.TarError, OSError, EOFError) as e:
        raise TransportError(f"failed to decompress package archive: {e}") from e


def peek_manifest(content: bytes) -> Optional[bytes]:
    """Return raw manifest bytes from archive content, or None if it has none."""
    try:
        with tarfile.open(fileobj=io.BytesIO(content), mode="r:*") as tarball:
            for member in tarball:
                if _is_manifest_member(member):
                    return tarball.extractfile(member).read()
    except (tarfile.TarError, OSError, EOFError):
        return None
    return None


def _add_file(tarball: tarfile.TarFile, name: str, content: bytes) -> None:
    info = tarfile.TarInfo(name)
    info.size = len(content)
    info.mode = 0o644
    tarball.addfile(info, io.BytesIO(content))


def write_config_package(manifest: Manifest, values: dict[str, str], buf: BinaryIO) -> None:
    """Serialize a configuration package into buf."""
    with tarfile.open(fileobj=buf, mode="w:gz") as tarball:
        _add_file(tarball, VARS_FILE, json.dumps(values, indent=2, sort_keys=True).encode("utf-8"))
        _add_file(tarball, MANIFEST_FILE, manifest.to_yaml())


def read_config_package(reader: BinaryIO) -> dict[str, str]:
    """
    Read environment bindings from a configuration package stream.

    Raises:
        InvalidManifestError: If the archive has no vars file
        TransportError: If the archive cannot be read
    """
    with open_archive(reader) as tarball:
        for member in tarball:
            if member.isfile() and member.name.removeprefix("./") == VARS_FILE:
                data = json.loads(tarball.extractfile(member).read())
                return {str(k): str(v) for k, v in data.items()}
    raise InvalidManifestError(f"configuration package has no {VARS_FILE}")
