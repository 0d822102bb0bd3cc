import json

import pytest
import yaml
from click.testing import CliRunner

from clusterpack.cli import main
from clusterpack.fsm import FilePlanStore
from clusterpack.pack import LocalPackageService
from clusterpack.schemas import PhaseState

from conftest import APP_MANIFEST, build_archive, loc


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def store(clusterpack_home):
    """Local store at the default location for the default configuration."""
    service = LocalPackageService(clusterpack_home / "state" / "packages")
    archive = build_archive(APP_MANIFEST, {"bin/app": b"#!/bin/sh\necho app\n"})
    service.create_package(loc("app/web:1.0.0"), archive, labels={"installed": "installed"})
    service.create_package(loc("app/web:1.2.0"), archive)
    return service


def test_init_command_creates_config(runner, clusterpack_home):
    result = runner.invoke(main, ["init"])
    assert result.exit_code == 0
    assert "Initialized clusterpack config" in result.output

    cfg = yaml.safe_load((clusterpack_home / "config.yaml").read_text())
    assert cfg["state_dir"] == str(clusterpack_home / "state")
    assert cfg["engine"]["max_workers"] == 4


def test_init_does_not_overwrite_without_force(runner, clusterpack_home):
    clusterpack_home.mkdir(parents=True)
    (clusterpack_home / "config.yaml").write_text("engine: {max_workers: 2}")

    result = runner.invoke(main, ["init"])
    assert result.exit_code == 1
    assert "Config already exists" in result.output
    assert (clusterpack_home / "config.yaml").read_text() == "engine: {max_workers: 2}"


def test_init_force_overwrites(runner, clusterpack_home):
    clusterpack_home.mkdir(parents=True)
    (clusterpack_home / "config.yaml").write_text("engine: {max_workers: 2}")

    result = runner.invoke(main, ["init", "--force"])
    assert result.exit_code == 0
    assert "state_dir" in yaml.safe_load((clusterpack_home / "config.yaml").read_text())


def test_broken_config_reported(runner, clusterpack_home):
    clusterpack_home.mkdir(parents=True)
    (clusterpack_home / "config.yaml").write_text("project: lifeos")

    result = runner.invoke(main, ["packages", "list"])
    assert result.exit_code == 1
    assert "Config not loaded" in result.output


class TestPackageCommands:

    def test_list(self, runner, store):
        result = runner.invoke(main, ["packages", "list"])
        assert result.exit_code == 0
        assert "app/web:1.0.0" in result.output
        assert "installed=installed" in result.output

    def test_list_empty(self, runner):
        result = runner.invoke(main, ["packages", "list"])
        assert result.exit_code == 0
        assert "No packages found" in result.output

    def test_import(self, runner, tmp_path):
        archive = tmp_path / "web.tar.gz"
        archive.write_bytes(build_archive(APP_MANIFEST))
        result = runner.invoke(main, ["packages", "import", "app/web:2.0.0", str(archive), "-l", "purpose=test"])
        assert result.exit_code == 0, result.output
        assert "Imported app/web:2.0.0" in result.output

    def test_import_bad_label(self, runner, tmp_path):
        archive = tmp_path / "web.tar.gz"
        archive.write_bytes(build_archive())
        result = runner.invoke(main, ["packages", "import", "app/web:2.0.0", str(archive), "-l", "nolabel"])
        assert result.exit_code == 2

    def test_latest(self, runner, store):
        result = runner.invoke(main, ["packages", "latest", "app/web:latest"])
        assert result.exit_code == 0
        assert result.output.strip() == "app/web:1.2.0"

    def test_installed(self, runner, store):
        result = runner.invoke(main, ["packages", "installed", "app/web:latest"])
        assert result.output.strip() == "app/web:1.0.0"

    def test_newer(self, runner, store):
        result = runner.invoke(main, ["packages", "newer", "app/web:1.0.0"])
        assert result.output.strip() == "app/web:1.2.0"

    def test_invalid_locator(self, runner, store):
        result = runner.invoke(main, ["packages", "latest", "web"])
        assert result.exit_code == 2

    def test_configure(self, runner, store):
        result = runner.invoke(
            main, ["packages", "configure", "app/web:latest", "app/web-config:1.2.0", "--purpose", "site", "--", "--role=master"]
        )
        assert result.exit_code == 0, result.output
        env = store.get_package(loc("app/web-config:1.2.0"))
        assert env.labels == {"config": "app/web:0.0.1", "purpose": "site"}

    def test_configure_bad_arguments(self, runner, store):
        result = runner.invoke(main, ["packages", "configure", "app/web:1.2.0", "app/web-config:1.2.0"])
        assert result.exit_code == 1


class TestUpdateCommands:

    def test_check_available(self, runner, store):
        result = runner.invoke(main, ["update", "check", "app/web:1.0.0"])
        assert result.exit_code == 0
        assert "app/web:1.0.0 -> app/web:1.2.0" in result.output

    def test_check_up_to_date(self, runner, store):
        result = runner.invoke(main, ["update", "check", "app/web:1.2.0"])
        assert result.exit_code == 0
        assert "already up to date" in result.output

    def test_validate(self, runner):
        result = runner.invoke(main, ["update", "validate", "app/web:1.0.0", "app/web:1.2.0"])
        assert result.exit_code == 0

    def test_validate_downgrade(self, runner):
        result = runner.invoke(main, ["update", "validate", "app/web:1.2.0", "app/web:1.0.0"])
        assert result.exit_code == 1
        assert "1.2.0" in result.output


class TestPlanCommands:

    @pytest.fixture
    def plan_file(self, tmp_path):
        path = tmp_path / "plan.yaml"
        path.write_text(yaml.safe_dump({
            "operation_id": "upgrade-1",
            "operation_type": "update",
            "phases": [
                {"id": "/init", "executor": "update_init", "data": {"package": "app/web:latest"}},
                {"id": "/drain", "executor": "drain_node", "requires": ["/init"],
                 "data": {"package": "app/web:latest", "server": "node-1"}},
            ],
        }))
        return path

    def test_create_and_show(self, runner, store, plan_file):
        result = runner.invoke(main, ["plan", "create", str(plan_file)])
        assert result.exit_code == 0, result.output

        result = runner.invoke(main, ["plan", "show", "upgrade-1", "--json"])
        data = json.loads(result.output)
        assert [p["state"] for p in data["phases"]] == ["pending", "pending"]

        assert runner.invoke(main, ["plan", "list"]).output.strip() == "upgrade-1"

    def test_create_twice_requires_force(self, runner, store, plan_file):
        runner.invoke(main, ["plan", "create", str(plan_file)])
        assert runner.invoke(main, ["plan", "create", str(plan_file)]).exit_code == 1
        assert runner.invoke(main, ["plan", "create", str(plan_file), "--force"]).exit_code == 0

    def test_create_invalid(self, runner, tmp_path):
        path = tmp_path / "plan.yaml"
        path.write_text(yaml.safe_dump({"operation_id": "x", "operation_type": "teleport"}))
        result = runner.invoke(main, ["plan", "create", str(path)])
        assert result.exit_code == 1
        assert "Invalid plan" in result.output

    def test_show_unknown(self, runner):
        result = runner.invoke(main, ["plan", "show", "nope"])
        assert result.exit_code == 1

    def test_run_fails_on_missing_command_and_rolls_back(self, runner, store, plan_file, clusterpack_home):
        runner.invoke(main, ["plan", "create", str(plan_file)])

        # update_init is not declared by the package manifest
        result = runner.invoke(main, ["plan", "run", "upgrade-1"])
        assert result.exit_code == 1

        plans = FilePlanStore(clusterpack_home / "state" / "plans")
        plan = plans.get_plan("upgrade-1")
        assert plan.get_phase("/init").state == PhaseState.FAILED
        assert plan.get_phase("/drain").state == PhaseState.PENDING

        result = runner.invoke(main, ["plan", "rollback", "upgrade-1"])
        assert result.exit_code == 0, result.output
        assert "Rolled back /init" in result.output
        assert plans.get_plan("upgrade-1").get_phase("/init").state == PhaseState.ROLLED_BACK

        # a rolled back plan is not reported as completed
        result = runner.invoke(main, ["plan", "run", "upgrade-1"])
        assert result.exit_code == 1
        assert "1 rolled back" in result.output
        assert "upgrade-1 completed" not in result.output
