"""
CLI interface for clusterpack.

Provides commands to inspect the package store, compute and validate
updates, and drive persisted upgrade plans through the FSM engine.

State lives under the configured state_dir (see `clusterpack init`):
packages in packages_dir, unpacked packages in unpacked_dir, plans in
plans_dir.
"""

import json
import sys
from pathlib import Path

import click
import yaml
from rich.table import Table

from clusterpack import __version__
from clusterpack.errors import ClusterpackError, is_not_found


def _config(ctx):
    if "config" not in ctx.obj:
        click.echo(f"✗ Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}", err=True)
        click.echo("Run 'clusterpack init' to create a configuration file.", err=True)
        raise SystemExit(1)
    return ctx.obj["config"]


def _packages(ctx):
    from clusterpack.pack import LocalPackageService

    return LocalPackageService(_config(ctx).packages_dir)


def _locator(text: str):
    from clusterpack.loc import parse_locator

    try:
        return parse_locator(text)
    except ClusterpackError as e:
        raise click.BadParameter(str(e))


def _fail(message: str) -> None:
    click.echo(f"✗ {message}", err=True)
    raise SystemExit(1)


def _parse_labels(labels: tuple[str, ...]) -> dict[str, str]:
    parsed = {}
    for label in labels:
        key, sep, value = label.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected key=value, got {label!r}", param_hint="--label")
        parsed[key] = value
    return parsed


@click.group()
@click.version_option(version=__version__, prog_name="clusterpack")
@click.option("-v", "--verbose", is_flag=True, help="Log at DEBUG level")
@click.pass_context
def main(ctx, verbose: bool):
    """
    clusterpack - package resolution and phased cluster upgrades.
    """
    from clusterpack.config import ConfigError, load_config
    from clusterpack.utils import setup_logging

    ctx.ensure_object(dict)
    try:
        config = load_config()
    except ConfigError as e:
        # init must still work with a broken config; other commands check ctx.obj
        ctx.obj["config_error"] = str(e)
        return

    ctx.obj["config"] = config
    setup_logging(
        log_file=config.get_log_file_path(),
        log_level="DEBUG" if verbose else config.get_log_level(),
        log_format=config.get_log_format(),
        console_output=config.should_log_to_console(),
    )


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize clusterpack configuration."""
    from clusterpack.config import ClusterpackConfig, get_clusterpack_home

    home = get_clusterpack_home()
    if not home.exists():
        home.mkdir(parents=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    default_cfg = ClusterpackConfig(state_dir=home / "state").to_dict()
    default_cfg["logging"] = {"level": "INFO", "format": "pretty", "console": True}
    default_cfg["engine"] = {"max_workers": 4, "max_attempts": 1}
    cfg_path.write_text(yaml.safe_dump(default_cfg, sort_keys=False))

    click.echo(f"Initialized clusterpack config at {cfg_path}")


# =============================================================================
# Package Commands
# =============================================================================

@main.group("packages")
def packages_group():
    """Inspect and manage packages."""
    pass


@packages_group.command("list")
@click.option("--repository", "-r", help="Only list packages of this repository")
@click.pass_context
def list_packages(ctx, repository: str | None):
    """List packages with their labels."""
    from clusterpack.pack import iter_packages
    from clusterpack.utils import console

    table = Table("Package", "Labels", "Size")
    count = 0
    for env in iter_packages(_packages(ctx), repository):
        labels = ", ".join(f"{k}={v}" for k, v in sorted(env.labels.items()))
        table.add_row(str(env.locator), labels, str(env.size_bytes))
        count += 1

    if not count:
        click.echo("No packages found.")
        return
    console.print(table)


@packages_group.command("import")
@click.argument("locator")
@click.argument("archive", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--label", "-l", "labels", multiple=True, help="Label as key=value (repeatable)")
@click.pass_context
def import_package(ctx, locator: str, archive: Path, labels: tuple[str, ...]):
    """Add a package archive to the store as LOCATOR."""
    loc = _locator(locator)
    try:
        with open(archive, "rb") as f:
            env = _packages(ctx).create_package(loc, f, labels=_parse_labels(labels))
    except ClusterpackError as e:
        _fail(str(e))
    click.echo(f"✓ Imported {env.locator} ({env.size_bytes} bytes, sha256 {env.sha256[:12]})")


@packages_group.command("latest")
@click.argument("locator")
@click.pass_context
def latest_package(ctx, locator: str):
    """Show the latest version in the line of LOCATOR."""
    from clusterpack.pack import find_latest_package

    try:
        click.echo(str(find_latest_package(_packages(ctx), _locator(locator))))
    except ClusterpackError as e:
        _fail(str(e))


@packages_group.command("installed")
@click.argument("locator")
@click.option("--with-config", is_flag=True, help="Also show its configuration package")
@click.pass_context
def installed_package(ctx, locator: str, with_config: bool):
    """Show the installed package in the line of LOCATOR."""
    from clusterpack.pack import find_installed_package, find_installed_package_with_config

    service = _packages(ctx)
    loc = _locator(locator)
    try:
        if with_config:
            installed, config = find_installed_package_with_config(service, loc)
            click.echo(f"{installed}\n{config}")
        else:
            click.echo(str(find_installed_package(service, loc)))
    except ClusterpackError as e:
        _fail(str(e))


@packages_group.command("newer")
@click.argument("locator")
@click.pass_context
def newer_packages(ctx, locator: str):
    """List packages in the line of LOCATOR newer than its version."""
    from clusterpack.pack import find_newer_packages

    try:
        newer = find_newer_packages(_packages(ctx), _locator(locator))
    except ClusterpackError as e:
        _fail(str(e))
    if not newer:
        click.echo(f"No packages newer than {locator}.")
        return
    for env in newer:
        click.echo(str(env.locator))


@packages_group.command("configure", context_settings={"ignore_unknown_options": True})
@click.argument("locator")
@click.argument("config_locator")
@click.argument("args", nargs=-1, type=click.UNPROCESSED)
@click.option("--purpose", default="", help="Purpose label of the configuration package")
@click.pass_context
def configure(ctx, locator: str, config_locator: str, args: tuple[str, ...], purpose: str):
    """
    Create configuration package CONFIG_LOCATOR for LOCATOR.

    ARGS are parsed against the configuration parameters declared in the
    package manifest.

    Example:

        clusterpack packages configure app/web:1.2.0 app/web-config:1.2.0 -- --port 8080
    """
    from clusterpack.pack import config_labels, configure_package, process_metadata

    service = _packages(ctx)
    try:
        loc = process_metadata(service, _locator(locator))
        labels = config_labels(loc, purpose) if purpose else None
        env = configure_package(service, loc, _locator(config_locator), list(args), labels=labels)
    except ClusterpackError as e:
        _fail(str(e))
    click.echo(f"✓ Created {env.locator}")


@packages_group.command("exec", context_settings={"ignore_unknown_options": True})
@click.argument("command")
@click.argument("locator")
@click.argument("args", nargs=-1, type=click.UNPROCESSED)
@click.option("--config", "config_locator", help="Configuration package to take variables from")
@click.pass_context
def exec_command(ctx, command: str, locator: str, args: tuple[str, ...], config_locator: str | None):
    """Run COMMAND declared in the manifest of LOCATOR."""
    from clusterpack.errors import CommandError
    from clusterpack.pack import execute_package_command, process_metadata

    config = _config(ctx)
    service = _packages(ctx)
    try:
        loc = process_metadata(service, _locator(locator))
        conf_loc = _locator(config_locator) if config_locator else None
        output = execute_package_command(service, command, loc, conf_loc, list(args), config.unpacked_dir)
    except CommandError as e:
        sys.stdout.buffer.write(e.output)
        _fail(str(e))
    except ClusterpackError as e:
        _fail(str(e))
    sys.stdout.buffer.write(output)


# =============================================================================
# Update Commands
# =============================================================================

@main.group("update")
def update_group():
    """Compute and validate package updates."""
    pass


@update_group.command("check")
@click.argument("locator")
@click.pass_context
def update_check(ctx, locator: str):
    """Check whether a newer version of LOCATOR is available."""
    from clusterpack.pack import find_package_update

    try:
        update = find_package_update(_packages(ctx), _locator(locator))
    except ClusterpackError as e:
        if not is_not_found(e):
            _fail(str(e))
        click.echo(f"{locator} is already up to date")
        return
    click.echo(f"Update available: {update}")


@update_group.command("validate")
@click.argument("from_locator")
@click.argument("to_locator")
def update_validate(from_locator: str, to_locator: str):
    """Check that FROM_LOCATOR may be updated to TO_LOCATOR."""
    from clusterpack.pack import check_update_package

    try:
        check_update_package(_locator(from_locator), _locator(to_locator))
    except ClusterpackError as e:
        _fail(str(e))
    click.echo(f"✓ {from_locator} -> {to_locator} is a valid update")


# =============================================================================
# Plan Commands
# =============================================================================

def _plan_store(ctx):
    from clusterpack.fsm import FilePlanStore

    return FilePlanStore(_config(ctx).plans_dir)


def _engine(ctx, operation_id: str):
    from clusterpack.fsm import FSMEngine
    from clusterpack.pack import SubprocessRunner
    from clusterpack.update import PackageCommandActions, UpdateConfig, fsm_spec

    config = _config(ctx)
    service = _packages(ctx)
    actions = PackageCommandActions(service, config.unpacked_dir, runner=SubprocessRunner())
    table = fsm_spec(UpdateConfig(packages=service, actions=actions, max_workers=config.get_max_workers()))
    try:
        return FSMEngine.from_store(
            _plan_store(ctx),
            operation_id,
            table,
            max_workers=config.get_max_workers(),
            max_attempts=config.get_max_attempts(),
        )
    except ClusterpackError as e:
        _fail(str(e))


def _print_plan(plan) -> None:
    from clusterpack.utils import console

    table = Table("Phase", "Executor", "Requires", "State", "Error", title=f"{plan.operation_id} ({plan.operation_type.value})")
    for phase in plan.phases:
        error = phase.error["message"] if phase.error else ""
        table.add_row(phase.id, phase.executor, ", ".join(phase.requires), phase.state.value, error)
    console.print(table)


def _report(engine) -> None:
    _print_plan(engine.plan)
    result = engine.result()
    if not result.success:
        click.echo(
            f"✗ {len(result.completed)} completed, {len(result.failed)} failed, "
            f"{len(result.pending)} pending, {len(result.running)} running, "
            f"{len(result.rolled_back)} rolled back",
            err=True,
        )
        raise SystemExit(1)
    click.echo(f"✓ {engine.plan.operation_id} completed")


@main.group("plan")
def plan_group():
    """Create and drive upgrade plans."""
    pass


@plan_group.command("create")
@click.argument("plan_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--force", is_flag=True, help="Replace a stored plan with the same operation ID")
@click.pass_context
def plan_create(ctx, plan_file: Path, force: bool):
    """Store the plan in PLAN_FILE (YAML or JSON)."""
    from clusterpack.schemas import Plan

    store = _plan_store(ctx)
    try:
        plan = Plan.from_dict(yaml.safe_load(plan_file.read_text()))
        plan.validate()
    except (ClusterpackError, KeyError, TypeError, ValueError, yaml.YAMLError) as e:
        _fail(f"Invalid plan {plan_file}: {e}")
    if store.get_plan(plan.operation_id) is not None and not force:
        _fail(f"Plan {plan.operation_id} already exists. Use --force to replace it.")
    store.save_plan(plan)
    click.echo(f"✓ Stored plan {plan.operation_id} ({len(plan.phases)} phases)")


@plan_group.command("list")
@click.pass_context
def plan_list(ctx):
    """List stored plans."""
    plans = _plan_store(ctx).list_plans()
    if not plans:
        click.echo("No plans found.")
        return
    for operation_id in plans:
        click.echo(operation_id)


@plan_group.command("show")
@click.argument("operation_id")
@click.option("--json", "as_json", is_flag=True, help="Print the stored plan as JSON")
@click.pass_context
def plan_show(ctx, operation_id: str, as_json: bool):
    """Show phase states of a plan."""
    plan = _plan_store(ctx).get_plan(operation_id)
    if plan is None:
        _fail(f"Unknown plan: {operation_id}")
    if as_json:
        click.echo(json.dumps(plan.to_dict(), indent=2))
        return
    _print_plan(plan)


@plan_group.command("run")
@click.argument("operation_id")
@click.pass_context
def plan_run(ctx, operation_id: str):
    """Run all runnable phases of a plan."""
    engine = _engine(ctx, operation_id)
    try:
        engine.run()
    except ClusterpackError as e:
        _fail(str(e))
    _report(engine)


@plan_group.command("step")
@click.argument("operation_id")
@click.option("--phase", "phase_id", help="Phase to run (default: first runnable)")
@click.option("--resume", is_flag=True, help="Allow re-running a failed phase")
@click.pass_context
def plan_step(ctx, operation_id: str, phase_id: str | None, resume: bool):
    """Run a single phase of a plan."""
    engine = _engine(ctx, operation_id)
    try:
        phase = engine.step(phase_id, resume=resume)
    except ClusterpackError as e:
        _fail(str(e))
    if phase.error:
        _fail(f"Phase {phase.id} {phase.state.value}: {phase.error['message']}")
    click.echo(f"Phase {phase.id}: {phase.state.value}")


@plan_group.command("resume")
@click.argument("operation_id")
@click.option("--recover", is_flag=True, help="Treat phases left running by a dead process as failed")
@click.pass_context
def plan_resume(ctx, operation_id: str, recover: bool):
    """Re-run failed phases and continue the plan."""
    engine = _engine(ctx, operation_id)
    try:
        if recover:
            for phase_id in engine.recover_interrupted():
                click.echo(f"Recovered interrupted phase {phase_id}")
        engine.resume()
    except ClusterpackError as e:
        _fail(str(e))
    _report(engine)


@plan_group.command("rollback")
@click.argument("operation_id")
@click.option("--phase", "phase_id", help="Roll back only this phase")
@click.pass_context
def plan_rollback(ctx, operation_id: str, phase_id: str | None):
    """Roll back completed and failed phases, dependents first."""
    engine = _engine(ctx, operation_id)
    try:
        rolled_back = engine.rollback(phase_id)
    except ClusterpackError as e:
        _fail(str(e))
    if not rolled_back:
        click.echo("Nothing to roll back.")
        return
    for phase_id in rolled_back:
        click.echo(f"Rolled back {phase_id}")


if __name__ == "__main__":
    main()
