"""Tests for package stores."""

import hashlib
import io

import pytest

from clusterpack.errors import AlreadyExistsError, NotFoundError
from clusterpack.pack import InMemoryPackageService, LocalPackageService
from clusterpack.pack.manifest import Manifest

from conftest import APP_MANIFEST, build_archive, loc


@pytest.fixture(params=["memory", "local"])
def service(request, tmp_path):
    if request.param == "memory":
        return InMemoryPackageService()
    return LocalPackageService(tmp_path / "store")


class TestPackageService:
    """Behaviour shared by all stores."""

    def test_create_and_read(self, service):
        archive = build_archive(APP_MANIFEST)
        env = service.create_package(loc("app/web:1.0.0"), archive, labels={"installed": "installed"})
        assert env.sha256 == hashlib.sha256(archive).hexdigest()
        assert env.size_bytes == len(archive)
        assert Manifest.from_yaml(env.manifest).command("start")

        read_env, reader = service.read_package(loc("app/web:1.0.0"))
        with reader:
            assert reader.read() == archive
        assert read_env.labels == {"installed": "installed"}

    def test_create_from_stream(self, service):
        archive = build_archive()
        env = service.create_package(loc("app/web:1.0.0"), io.BytesIO(archive))
        assert env.size_bytes == len(archive)
        assert env.manifest is None

    def test_duplicate_rejected(self, service):
        service.create_package(loc("app/web:1.0.0"), build_archive())
        with pytest.raises(AlreadyExistsError):
            service.create_package(loc("app/web:1.0.0"), build_archive())

    def test_read_missing(self, service):
        with pytest.raises(NotFoundError):
            service.read_package(loc("app/web:1.0.0"))

    def test_get_package(self, service):
        service.create_package(loc("app/web:1.0.0"), build_archive(), labels={"purpose": "x"})
        assert service.get_package(loc("app/web:1.0.0")).labels == {"purpose": "x"}
        with pytest.raises(NotFoundError):
            service.get_package(loc("app/web:2.0.0"))

    def test_repositories(self, service):
        service.create_package(loc("zeta/a:1.0.0"), build_archive())
        service.create_package(loc("alpha/b:1.0.0"), build_archive())
        assert service.get_repositories() == ["alpha", "zeta"]

    def test_packages_of_repository(self, service):
        service.create_package(loc("app/web:1.0.0"), build_archive())
        service.create_package(loc("app/db:1.0.0"), build_archive())
        service.create_package(loc("other/web:1.0.0"), build_archive())
        assert sorted(str(e.locator) for e in service.get_packages("app")) == ["app/db:1.0.0", "app/web:1.0.0"]
        assert service.get_packages("missing") == []


class TestLocalPackageService:

    def test_survives_reopen(self, tmp_path):
        LocalPackageService(tmp_path).create_package(
            loc("example.com/web:1.0.0"), build_archive(APP_MANIFEST), labels={"installed": "installed"}
        )
        reopened = LocalPackageService(tmp_path)
        assert reopened.get_repositories() == ["example.com"]
        env = reopened.get_package(loc("example.com/web:1.0.0"))
        assert env.labels == {"installed": "installed"}
        assert env.created_at is not None
        assert env.manifest is not None

    def test_repository_with_slash(self, tmp_path):
        service = LocalPackageService(tmp_path)
        service.create_package(loc("example.com/apps/web:1.0.0"), build_archive())
        assert service.get_repositories() == ["example.com/apps"]
        assert [e.locator for e in service.get_packages("example.com/apps")] == [loc("example.com/apps/web:1.0.0")]

    def test_incomplete_package_invisible(self, tmp_path):
        service = LocalPackageService(tmp_path)
        partial = tmp_path / "app" / "web" / "1.0.0"
        partial.mkdir(parents=True)
        (partial / LocalPackageService.ARCHIVE_FILE).write_bytes(b"half")
        assert service.get_packages("app") == []
        with pytest.raises(NotFoundError):
            service.read_package(loc("app/web:1.0.0"))
