"""
rush — CLI entrypoint.

Usage:
    rush --help
    rush search ripgrep
    rush install ripgrep fd@9.0.0
    rush list --verify
"""

from __future__ import annotations

import functools
import json
import os
import sys
from collections.abc import Callable
from typing import Any

import click

from rush import __version__
from rush.core.config.settings import ConfigError, load_config
from rush.core.errors import RushError
from rush.core.observability.logging_config import (
    ENV_LOG_FILE,
    ENV_LOG_FILE_LEVEL,
    ENV_LOG_LEVEL,
    resolve_level,
    setup_logging,
)


@click.group()
@click.version_option(version=__version__, prog_name="rush")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, quiet: bool, debug: bool) -> None:
    """rush — install prebuilt static binaries from a registry."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet

    # ── Logging setup (once, at process start) ──────────────────
    setup_logging(
        level=resolve_level(
            debug=debug,
            verbose=verbose,
            quiet=quiet,
            env_level=os.environ.get(ENV_LOG_LEVEL),
        ),
        log_file=os.environ.get(ENV_LOG_FILE),
        log_file_level=os.environ.get(ENV_LOG_FILE_LEVEL),
    )

    try:
        ctx.obj["config"] = load_config(os.environ)
    except ConfigError as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        sys.exit(1)


# ── Helpers ─────────────────────────────────────────────────────


def _fail(error: RushError) -> None:
    prefix = f"{error.package}: " if error.package else ""
    click.secho(f"❌ {prefix}{error}", fg="red", err=True)
    sys.exit(error.exit_code)


def reports_errors(func: Callable[..., Any]) -> Callable[..., Any]:
    """Turn a ``RushError`` into one red line and its exit code."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except RushError as e:
            _fail(e)

    return wrapper


def get_installer(ctx: click.Context, *, show_progress: bool = False):
    """Installer for the configured directories and registry."""
    from rush.core.engine.installer import Installer

    on_event = None
    if show_progress and not ctx.obj.get("quiet"):
        on_event = _progress_printer(verbose=ctx.obj.get("verbose", False))
    return Installer(ctx.obj["config"], on_event=on_event)


def _progress_printer(verbose: bool):
    from rush.core.engine.installer import InstallPhase

    labels = {
        InstallPhase.FETCHING: "⬇️  Downloading",
        InstallPhase.VERIFYING: "🔐 Verifying",
        InstallPhase.EXTRACTING: "📦 Extracting",
    }

    def on_event(package: str, phase: InstallPhase, detail: str) -> None:
        label = labels.get(phase)
        if label is None and not verbose:
            return
        text = f"   {label or phase} {package}"
        if verbose and detail:
            text += f" ({detail})"
        click.secho(text, dim=True, err=True)

    return on_event


def _dump(data: Any) -> None:
    click.echo(json.dumps(data, indent=2))


# ── Query ───────────────────────────────────────────────────────


@cli.command()
@click.argument("query", required=False)
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
@reports_errors
def search(ctx: click.Context, query: str | None, as_json: bool) -> None:
    """Search the registry (all packages when QUERY is omitted)."""
    installer = get_installer(ctx)
    hits = installer.search(query)

    if as_json:
        _dump([h.to_dict() for h in hits])
        return

    if not hits:
        click.secho(f"⚠️  No packages matching '{query}'", fg="yellow")
        return

    width = max(len(h.name) for h in hits)
    for hit in hits:
        if hit.supported:
            version = hit.latest_version or ""
            click.secho(f"{hit.name:<{width}}  ", fg="cyan", bold=True, nl=False)
            click.echo(f"{version:<10}", nl=False)
        else:
            click.secho(f"{hit.name:<{width}}  ", fg="bright_black", nl=False)
            click.secho(f"{'—':<10}", fg="bright_black", nl=False)
        marker = ""
        if hit.installed_version:
            marker = f" [installed {hit.installed_version}]"
        click.echo(f"  {hit.description}", nl=False)
        click.secho(marker, fg="green")
        if not hit.supported and ctx.obj.get("verbose"):
            click.echo(f"      no build for {installer.host.slug} (has: {', '.join(hit.platforms)})")


@cli.command("list")
@click.option("--verify", is_flag=True, help="Re-hash installed binaries to detect drift.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
@reports_errors
def list_cmd(ctx: click.Context, verify: bool, as_json: bool) -> None:
    """List installed packages."""
    installer = get_installer(ctx)

    if verify:
        report = installer.verify_installed()
        if as_json:
            _dump(report.to_dict())
        else:
            icons = {"ok": ("✓", "green"), "modified": ("✗", "red"), "missing": ("✗", "yellow")}
            for entry in report.entries:
                icon, color = icons[str(entry.status)]
                click.secho(f"   {icon} {entry.name} {entry.version} ", fg=color, nl=False)
                click.echo(f"({entry.status})  → {entry.path}")
                if entry.detail and entry.status != "ok":
                    click.echo(f"       {entry.detail}")
            if not report.entries:
                click.echo("No packages installed.")
        sys.exit(0 if report.clean else 4)

    state = installer.installed()
    if as_json:
        _dump(state.model_dump(mode="json"))
        return

    if not state.packages:
        click.echo("No packages installed.")
        return

    click.secho(f"📦 Installed ({len(state.packages)}):", fg="cyan", bold=True)
    for record in state.packages.values():
        pin = " 📌" if record.pinned else ""
        click.echo(f"   • {record.name} {record.installed_version}{pin}  → {record.binary_path}")


# ── Install / remove ────────────────────────────────────────────


@cli.command()
@click.argument("specs", nargs=-1, required=True)
@click.option("--force", is_flag=True, help="Reinstall even if already installed.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
@reports_errors
def install(ctx: click.Context, specs: tuple[str, ...], force: bool, as_json: bool) -> None:
    """Install packages (NAME or NAME@VERSION)."""
    installer = get_installer(ctx, show_progress=not as_json)
    report = installer.install_many(specs, force=force)

    if as_json:
        _dump(report.to_dict())
        sys.exit(report.exit_code)

    for outcome in report.outcomes:
        result = outcome.result
        if not outcome.ok or result is None:
            click.secho(f"❌ {outcome.spec}: {outcome.error}", fg="red", err=True)
            continue
        if result.changed:
            upgraded = f" (was {result.previous_version})" if result.previous_version else ""
            click.secho(f"✅ Installed {result.name} {result.version}{upgraded}", fg="green")
            if ctx.obj.get("verbose"):
                for path in result.binaries:
                    click.echo(f"   → {path}")
        else:
            click.echo(f"✓ {result.name} {result.version} is already installed")

    sys.exit(report.exit_code)


@cli.command()
@click.argument("name")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
@reports_errors
def uninstall(ctx: click.Context, name: str, as_json: bool) -> None:
    """Remove an installed package."""
    result = get_installer(ctx).uninstall(name)

    if as_json:
        _dump(result.to_dict())
        return

    if result.removed:
        click.secho(f"🗑️  Uninstalled {name} {result.version}", fg="green")
    else:
        click.echo(f"{name} is not installed")


@cli.command()
@click.argument("names", nargs=-1)
@click.option("--include-pinned", is_flag=True, help="Also upgrade packages installed with @version.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
@reports_errors
def upgrade(ctx: click.Context, names: tuple[str, ...], include_pinned: bool, as_json: bool) -> None:
    """Upgrade installed packages to the newest registry version."""
    installer = get_installer(ctx, show_progress=not as_json)
    report = installer.upgrade(list(names) or None, include_pinned=include_pinned)

    if as_json:
        _dump(report.to_dict())
        sys.exit(report.exit_code)

    if not report.outcomes:
        click.echo("No packages installed.")
        return

    colors = {
        "upgraded": "green",
        "up_to_date": None,
        "pinned": "cyan",
        "skipped": "yellow",
        "not_installed": "yellow",
        "failed": "red",
    }
    for outcome in report.outcomes:
        status = str(outcome.status)
        if status == "up_to_date":
            text = f"✓ {outcome.name} {outcome.installed_version} is up to date"
        elif status == "upgraded":
            text = f"⬆️  {outcome.name} {outcome.detail}"
        elif status == "failed":
            text = f"❌ {outcome.name}: {outcome.detail}"
        else:
            text = f"•  {outcome.name}: {outcome.detail}"
        click.secho(text, fg=colors[status], err=status == "failed")

    sys.exit(report.exit_code)


# ── Maintenance ─────────────────────────────────────────────────


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
@reports_errors
def update(ctx: click.Context, as_json: bool) -> None:
    """Refresh the registry (re-download remote registries)."""
    result = get_installer(ctx).update_registry()

    if as_json:
        _dump(result.to_dict())
        return

    click.secho(f"🔄 Registry updated: {result.package_count} package(s)", fg="green")
    click.echo(f"   Source: {result.source}")


@cli.command()
@click.option("--cache", "include_cache", is_flag=True, help="Also remove cached registries.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
@reports_errors
def clean(ctx: click.Context, include_cache: bool, as_json: bool) -> None:
    """Remove leftovers of interrupted installs."""
    result = get_installer(ctx).clean(include_cache=include_cache)

    if as_json:
        _dump(result.to_dict())
        return

    if not result.total:
        click.echo("Nothing to clean.")
        return

    click.secho(f"🧹 Cleaned {result.total} item(s)", fg="green")
    if ctx.obj.get("verbose"):
        for name in result.files_cleaned + result.work_dirs_removed:
            click.echo(f"   • {name}")
        for key in result.cache_entries_removed:
            click.echo(f"   • registry cache {key}")


# ── Sub-groups ──────────────────────────────────────────────────

from rush.ui.cli.dev import dev  # noqa: E402

cli.add_command(dev)


if __name__ == "__main__":
    cli()
