"""
CLI commands for registry authoring.

Thin wrappers over ``rush.core.registry.authoring``. These edit a local
registry checkout, so RUSH_REGISTRY_URL must point at a directory.
"""

from __future__ import annotations

import json
import sys

import click

from rush.core.errors import RushError


@click.group()
def dev() -> None:
    """Registry authoring — add packages to a local registry."""


@dev.command("add")
@click.argument("name")
@click.argument("version")
@click.argument("target")
@click.argument("url")
@click.option("--bin", "bin_name", default=None, help="Binary inside the archive (default: NAME).")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def add(
    ctx: click.Context,
    name: str,
    version: str,
    target: str,
    url: str,
    bin_name: str | None,
    as_json: bool,
) -> None:
    """Add (or update) TARGET build of NAME VERSION downloaded from URL.

    TARGET is an ``<arch>-<os>`` slug such as ``x86_64-linux``.
    """
    from rush.core.registry.authoring import add_package_manual
    from rush.core.reliability.backoff import BackoffPolicy
    from rush.core.services.download import Fetcher

    config = ctx.obj["config"]
    fetcher = Fetcher(
        timeout=config.fetch_timeout,
        backoff=BackoffPolicy(max_attempts=config.fetch_attempts),
    )
    try:
        result = add_package_manual(
            config.registry_source,
            name,
            version,
            target,
            url,
            bin_name=bin_name,
            fetcher=fetcher,
        )
    except RushError as e:
        click.secho(f"❌ {name}: {e}", fg="red", err=True)
        available = getattr(e, "available", None)
        if available:
            click.echo("   Archive contains:", err=True)
            for member in available[:20]:
                click.echo(f"     • {member}", err=True)
        sys.exit(e.exit_code)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return

    verb = "Updated" if result.replaced else "Added"
    click.secho(f"✅ {verb} {result.name} {result.version} ({result.target})", fg="green")
    click.echo(f"   {result.checksum}")
    click.echo(f"   → {result.manifest}")
