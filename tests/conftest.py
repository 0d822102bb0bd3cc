import io
import tarfile

import pytest
import yaml

from clusterpack.loc import Locator
from clusterpack.pack import InMemoryPackageService


APP_MANIFEST = {
    "commands": [
        {"name": "start", "args": ["bin/app", "start"]},
        {"name": "drain_node", "args": ["bin/app", "drain"]},
        {"name": "drain_node-rollback", "args": ["bin/app", "uncordon"]},
    ],
    "config": {
        "params": [
            {"name": "role", "env": "APP_ROLE", "type": "string", "required": True},
            {"name": "port", "env": "APP_PORT", "type": "int", "default": 8080},
            {"name": "debug", "env": "APP_DEBUG", "type": "bool"},
        ]
    },
}


def build_archive(manifest=None, files=None) -> bytes:
    """Build a gzipped package tarball with an optional manifest.yaml."""
    members = dict(files or {})
    if manifest is not None:
        members["manifest.yaml"] = yaml.safe_dump(manifest).encode("utf-8")
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tarball:
        for name, content in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(content)
            info.mode = 0o755 if name.startswith("bin/") else 0o644
            tarball.addfile(info, io.BytesIO(content))
    return buf.getvalue()


def loc(text: str) -> Locator:
    """Build a Locator from repo/name:version without validating the version."""
    head, _, version = text.rpartition(":")
    repository, _, name = head.rpartition("/")
    return Locator(repository, name, version)


@pytest.fixture(autouse=True)
def clusterpack_home(tmp_path, monkeypatch):
    """Keep configuration lookups away from the real home directory."""
    home = tmp_path / "clusterpack_home"
    monkeypatch.setenv("CLUSTERPACK_HOME", str(home))
    return home


@pytest.fixture
def packages():
    return InMemoryPackageService()


@pytest.fixture
def app_store(packages):
    """
    Store with an application line and an unrelated one:

        app/web:1.0.0 (installed), app/web:1.2.0, app/web:1.1.0, app/db:3.0.0
    """
    archive = build_archive(APP_MANIFEST, {"bin/app": b"#!/bin/sh\necho app\n"})
    packages.create_package(loc("app/web:1.0.0"), archive, labels={"installed": "installed"})
    packages.create_package(loc("app/web:1.2.0"), archive)
    packages.create_package(loc("app/web:1.1.0"), archive)
    packages.create_package(loc("app/db:3.0.0"), build_archive({"commands": []}))
    return packages
