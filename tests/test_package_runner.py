"""Tests for running commands declared in package manifests."""

import os
import sys

import pytest

from clusterpack.errors import CommandError, NotFoundError
from clusterpack.pack import CommandRunner, SubprocessRunner, configure_package, execute_package_command

from conftest import build_archive, loc


class FakeRunner(CommandRunner):
    """Records invocations instead of spawning processes."""

    def __init__(self, output=b"ok", error=None):
        self.calls = []
        self.output = output
        self.error = error

    def run(self, args, env, cwd):
        self.calls.append({"args": args, "env": dict(env), "cwd": cwd})
        if self.error is not None:
            raise self.error
        return self.output


class TestExecutePackageCommand:

    def test_runs_declared_command(self, app_store, tmp_path):
        runner = FakeRunner()
        output = execute_package_command(
            app_store, "start", loc("app/web:1.2.0"), None, ["--fast"], tmp_path, runner=runner
        )
        assert output == b"ok"
        call = runner.calls[0]
        assert call["args"] == ["bin/app", "start", "--fast"]
        assert call["cwd"] == tmp_path / "app" / "web" / "1.2.0"
        assert (call["cwd"] / "bin" / "app").exists()

    def test_environment_is_path_only_without_config(self, app_store, tmp_path):
        runner = FakeRunner()
        execute_package_command(app_store, "start", loc("app/web:1.2.0"), None, [], tmp_path, runner=runner)
        assert runner.calls[0]["env"] == {"PATH": os.environ.get("PATH", "")}

    def test_environment_includes_config_vars(self, app_store, tmp_path):
        configure_package(app_store, loc("app/web:1.2.0"), loc("app/web-config:1.2.0"), ["--role=master"])
        runner = FakeRunner()
        execute_package_command(
            app_store, "start", loc("app/web:1.2.0"), loc("app/web-config:1.2.0"), [], tmp_path, runner=runner
        )
        env = runner.calls[0]["env"]
        assert env["APP_ROLE"] == "master"
        assert env["APP_PORT"] == "8080"
        assert "PATH" in env

    def test_unknown_command(self, app_store, tmp_path):
        with pytest.raises(NotFoundError):
            execute_package_command(app_store, "stop", loc("app/web:1.2.0"), None, [], tmp_path, runner=FakeRunner())

    def test_unpacks_once(self, app_store, tmp_path):
        runner = FakeRunner()
        execute_package_command(app_store, "start", loc("app/web:1.2.0"), None, [], tmp_path, runner=runner)
        marker = tmp_path / "app" / "web" / "1.2.0" / "marker"
        marker.write_text("kept")
        execute_package_command(app_store, "start", loc("app/web:1.2.0"), None, [], tmp_path, runner=runner)
        assert marker.read_text() == "kept"
        assert len(runner.calls) == 2

    def test_failure_carries_output(self, app_store, tmp_path):
        runner = FakeRunner(error=CommandError("exit 3", output=b"boom", returncode=3))
        with pytest.raises(CommandError) as exc_info:
            execute_package_command(app_store, "start", loc("app/web:1.2.0"), None, [], tmp_path, runner=runner)
        assert exc_info.value.output == b"boom"
        assert exc_info.value.returncode == 3


class TestSubprocessRunner:

    def test_captures_combined_output(self, tmp_path):
        script = "import sys; print('out'); print('err', file=sys.stderr)"
        output = SubprocessRunner().run([sys.executable, "-c", script], dict(os.environ), tmp_path)
        assert b"out" in output
        assert b"err" in output

    def test_nonzero_exit(self, tmp_path):
        script = "import sys; print('partial'); sys.exit(4)"
        with pytest.raises(CommandError) as exc_info:
            SubprocessRunner().run([sys.executable, "-c", script], dict(os.environ), tmp_path)
        assert exc_info.value.returncode == 4
        assert b"partial" in exc_info.value.output

    def test_missing_program(self, tmp_path):
        with pytest.raises(CommandError):
            SubprocessRunner().run([str(tmp_path / "does-not-exist")], {}, tmp_path)

    def test_runs_in_package_directory(self, packages, tmp_path):
        manifest = {"commands": [{"name": "cat", "args": [sys.executable, "-c", "print(open('data.txt').read())"]}]}
        packages.create_package(loc("app/tool:1.0.0"), build_archive(manifest, {"data.txt": b"hello"}))
        output = execute_package_command(packages, "cat", loc("app/tool:1.0.0"), None, [], tmp_path)
        assert output.strip() == b"hello"
