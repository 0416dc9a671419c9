"""
edgeup command line.

Usage:
    edgeup install latest
    edgeup use 0.14.0
    edgeup plugin install wasi_nn-ggml
"""

import asyncio
import os
import sys
from pathlib import Path
from typing import Any, Coroutine, NoReturn, Optional, TypeVar

import click

from edgeup import __version__
from edgeup.config import ENV_PREFIX, Settings
from edgeup.errors import STAGE_COMMIT, EdgeupError
from edgeup.installs import InstallManager
from edgeup.logging import DEFAULT_LOG_LEVEL, configure_logging
from edgeup.platforms import detect
from edgeup.progress import NullProgress, RichProgress
from edgeup.shells import setup_shell
from edgeup.types import PlatformDescriptor

T = TypeVar("T")

# Details worth showing next to an error message
ERROR_DETAIL_KEYS = ("version", "constraint", "url", "status", "path", "archive", "plugin", "lock")


def _run(coro: Coroutine[Any, Any, T]) -> T:
    """Run a coroutine, turning edgeup errors into an error line and exit code 1."""
    return _call(asyncio.run, coro)


def _call(func, *args, **kwargs):
    try:
        return func(*args, **kwargs)
    except EdgeupError as e:
        _fail(e)
    except OSError as e:
        _fail(EdgeupError(str(e), stage=STAGE_COMMIT, details={"path": e.filename}))


def _fail(error: EdgeupError) -> NoReturn:
    click.secho(f"error [{error.stage}]: {error}", fg="red", err=True)
    for key in ERROR_DETAIL_KEYS:
        value = error.details.get(key)
        if value is not None:
            click.echo(f"  {key}: {value}", err=True)
    sys.exit(1)


def _platform(os_name: Optional[str], arch: Optional[str], libc: Optional[str]) -> Optional[PlatformDescriptor]:
    if not (os_name or arch or libc):
        return None
    return _call(detect, os_name, arch, libc)


def _manager(
    ctx: click.Context,
    platform: Optional[PlatformDescriptor] = None,
    **overrides: Any,
) -> InstallManager:
    settings: Settings = ctx.obj["settings"].with_overrides(**overrides)
    progress = NullProgress() if ctx.obj["quiet"] else RichProgress()
    return InstallManager(settings, progress=progress, platform=platform)


def _log_level(verbose: bool, quiet: bool) -> str:
    if verbose:
        return "DEBUG"
    if quiet:
        return "ERROR"
    return os.environ.get(f"{ENV_PREFIX}LOG_LEVEL", DEFAULT_LOG_LEVEL)


@click.group()
@click.version_option(version=__version__, prog_name="edgeup")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.option("--quiet", "-q", is_flag=True, help="Only print errors and results.")
@click.option("--connect-timeout", type=float, default=None, help="Connect timeout in seconds.")
@click.option("--request-timeout", type=float, default=None, help="Total request timeout in seconds.")
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    connect_timeout: Optional[float],
    request_timeout: Optional[float],
) -> None:
    """Install and switch between WasmEdge runtime versions."""
    ctx.ensure_object(dict)
    ctx.obj["quiet"] = quiet
    configure_logging(_log_level(verbose, quiet))
    ctx.obj["settings"] = Settings.load(
        connect_timeout=connect_timeout,
        request_timeout=request_timeout,
    )


def platform_options(func):
    func = click.option("--libc", default=None, help="Override the detected libc (gnu, musl).")(func)
    func = click.option("--arch", default=None, help="Override the detected CPU architecture.")(func)
    func = click.option("--os", "os_name", default=None, help="Override the detected OS.")(func)
    return func


def fetch_options(func):
    func = click.option("--retries", type=click.IntRange(min=0), default=None,
                        help="Retry transient network failures this many times.")(func)
    func = click.option("--tmpdir", type=click.Path(file_okay=False, path_type=Path), default=None,
                        help="Directory for downloaded archives.")(func)
    func = click.option("--path", "root", type=click.Path(file_okay=False, path_type=Path), default=None,
                        help="Install root (default ~/.wasmedge or $EDGEUP_HOME).")(func)
    return func


@cli.command()
@click.argument("version", default="latest")
@click.option("--activate", is_flag=True, help="Make this the active version.")
@click.option("--force", is_flag=True, help="Reinstall even if already installed.")
@click.option("--no-verify", is_flag=True, help="Skip checksum verification.")
@click.option("--pre", "include_prereleases", is_flag=True, help="Consider pre-releases.")
@click.option("--setup-shell", "configure_shell", is_flag=True, help="Source the env script from shell profiles.")
@platform_options
@fetch_options
@click.pass_context
def install(
    ctx: click.Context,
    version: str,
    activate: bool,
    force: bool,
    no_verify: bool,
    include_prereleases: bool,
    configure_shell: bool,
    os_name: Optional[str],
    arch: Optional[str],
    libc: Optional[str],
    root: Optional[Path],
    tmpdir: Optional[Path],
    retries: Optional[int],
) -> None:
    """Install VERSION (exact, range such as '^0.14.0' or 'latest')."""
    manager = _manager(
        ctx, _platform(os_name, arch, libc), root=root, tmpdir=tmpdir, fetch_retries=retries
    )
    record = _run(manager.install(
        version,
        activate=activate,
        force=force,
        verify=not no_verify,
        include_prereleases=include_prereleases,
    ))
    active = manager.active()
    marker = " (active)" if active and active.version == record.version else ""
    click.echo(f"{record.version} installed at {record.path}{marker}")

    if configure_shell:
        for rc_file in _call(setup_shell, manager.settings.root):
            click.echo(f"updated {rc_file}")


@cli.command()
@click.argument("version")
@click.option("--path", "root", type=click.Path(file_okay=False, path_type=Path), default=None,
              help="Install root.")
@click.pass_context
def use(ctx: click.Context, version: str, root: Optional[Path]) -> None:
    """Activate an installed VERSION."""
    manager = _manager(ctx, root=root)
    record = _run(manager.use(version))
    click.echo(f"{record.version} is now active")


@cli.command(name="list")
@click.option("--remote", is_flag=True, help="List versions available upstream.")
@click.option("--all", "show_all", is_flag=True, help="Include pre-releases (with --remote).")
@click.option("--path", "root", type=click.Path(file_okay=False, path_type=Path), default=None,
              help="Install root.")
@click.pass_context
def list_versions(ctx: click.Context, remote: bool, show_all: bool, root: Optional[Path]) -> None:
    """List installed versions, or upstream ones with --remote."""
    manager = _manager(ctx, root=root)
    installed = _call(manager.list_installed)
    active = _call(manager.active)

    if not remote:
        if not installed:
            click.echo("no versions installed")
            return
        for record in installed:
            prefix = "*" if active and active.version == record.version else " "
            click.echo(f"{prefix} {record.version}")
        return

    tags = _run(manager.list_remote(include_prereleases=show_all))
    installed_versions = {record.version for record in installed}
    latest_stable = next((t for t in tags if not t.is_prerelease), None)
    for tag in tags:
        labels = []
        if tag is latest_stable:
            labels.append("latest")
        if tag.name.lstrip("v") in installed_versions:
            labels.append("installed")
        suffix = f" ({', '.join(labels)})" if labels else ""
        click.echo(f"{tag.name}{suffix}")


@cli.command()
@click.argument("version")
@click.option("--path", "root", type=click.Path(file_okay=False, path_type=Path), default=None,
              help="Install root.")
@click.pass_context
def remove(ctx: click.Context, version: str, root: Optional[Path]) -> None:
    """Remove an installed VERSION."""
    manager = _manager(ctx, root=root)
    record = _run(manager.remove(version))
    click.echo(f"{record.version} removed")
    if _call(manager.active) is None:
        click.echo("no version is active; run 'edgeup use <version>'")


@cli.group()
def plugin() -> None:
    """Manage plugins of the active runtime."""


@plugin.command(name="install")
@click.argument("specs", nargs=-1, required=True)
@click.option("--runtime", default=None, help="Installed runtime version (default: active).")
@click.option("--force", is_flag=True, help="Reinstall even if already installed.")
@click.option("--no-verify", is_flag=True, help="Skip checksum verification.")
@platform_options
@fetch_options
@click.pass_context
def plugin_install(
    ctx: click.Context,
    specs: tuple,
    runtime: Optional[str],
    force: bool,
    no_verify: bool,
    os_name: Optional[str],
    arch: Optional[str],
    libc: Optional[str],
    root: Optional[Path],
    tmpdir: Optional[Path],
    retries: Optional[int],
) -> None:
    """Install plugins given as NAME or NAME@VERSION."""
    manager = _manager(
        ctx, _platform(os_name, arch, libc), root=root, tmpdir=tmpdir, fetch_retries=retries
    )
    for spec in specs:
        record = _run(manager.install_plugin(spec, runtime=runtime, force=force, verify=not no_verify))
        click.echo(f"{record.name}@{record.version} installed for runtime {record.runtime_version}")


@plugin.command(name="list")
@click.option("--remote", is_flag=True, help="List plugins published for the runtime's release.")
@click.option("--all", "all_platforms", is_flag=True, help="Include other platforms (with --remote).")
@click.option("--name", default=None, help="Only this plugin (with --remote).")
@click.option("--runtime", default=None,
              help="Runtime version (default: all installed, or the active one with --remote).")
@platform_options
@click.option("--path", "root", type=click.Path(file_okay=False, path_type=Path), default=None,
              help="Install root.")
@click.pass_context
def plugin_list(
    ctx: click.Context,
    remote: bool,
    all_platforms: bool,
    name: Optional[str],
    runtime: Optional[str],
    os_name: Optional[str],
    arch: Optional[str],
    libc: Optional[str],
    root: Optional[Path],
) -> None:
    """List installed plugins, or published ones with --remote."""
    if remote:
        manager = _manager(ctx, _platform(os_name, arch, libc), root=root)
        assets = _run(manager.list_available_plugins(runtime, name=name, all_platforms=all_platforms))
        if not assets:
            click.echo("no plugins published for this runtime and platform")
            return
        for asset in assets:
            click.echo(f"{asset.name}@{asset.version} ({asset.token})")
        return

    manager = _manager(ctx, root=root)
    records = _call(manager.list_plugins, runtime)
    if not records:
        click.echo("no plugins installed")
        return
    for record in records:
        click.echo(f"{record.name}@{record.version} (runtime {record.runtime_version})")


@plugin.command(name="remove")
@click.argument("names", nargs=-1, required=True)
@click.option("--runtime", default=None, help="Runtime version (default: active).")
@click.option("--path", "root", type=click.Path(file_okay=False, path_type=Path), default=None,
              help="Install root.")
@click.pass_context
def plugin_remove(ctx: click.Context, names: tuple, runtime: Optional[str], root: Optional[Path]) -> None:
    """Remove plugins by NAME."""
    manager = _manager(ctx, root=root)
    for name in names:
        record = _run(manager.remove_plugin(name, runtime))
        click.echo(f"{record.name} removed from runtime {record.runtime_version}")


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
