"""
CLI commands for the package cache.

Thin wrappers over ``src.core.use_cases.cache``.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click


@click.group()
def cache() -> None:
    """Package cache — status, warm, clear."""


@cache.command()
@click.option("--target", "-t", type=click.Path(file_okay=False, path_type=Path), default=None)
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def status(ctx: click.Context, target: Path | None, as_json: bool) -> None:
    """Show cached package archives."""
    from src.core.use_cases.cache import cache_status

    result = cache_status(target, ctx.obj.get("config_path"))

    if as_json:
        click.echo(json.dumps(result, indent=2))
        return

    if "error" in result:
        click.secho(f"❌ {result['error']}", fg="red")
        sys.exit(1)

    click.secho(f"📦 Cache: {result['cache_dir']}", fg="cyan", bold=True)
    click.echo(f"   Entries: {result['entries']} ({result['total_size_mb']} MB)")
    for key in result["packages"]:
        click.echo(f"     • {key}")


@cache.command()
@click.option("--target", "-t", type=click.Path(file_okay=False, path_type=Path), default=None)
@click.option("--profile", "-p", default=None, help="Only packages of this profile's steps.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def warm(ctx: click.Context, target: Path | None, profile: str | None, as_json: bool) -> None:
    """Fetch archives for every package the selected steps declare."""
    from src.core.use_cases.cache import cache_warm

    result = cache_warm(target, profile, ctx.obj.get("config_path"))

    if as_json:
        click.echo(json.dumps(result, indent=2))
        sys.exit(0 if result.get("ok") else 1)

    if "error" in result:
        click.secho(f"❌ {result['error']}", fg="red")
        sys.exit(1)

    for key in result.get("cached", []):
        click.secho(f"   ✓ cached {key}", fg="green")
    for key in result.get("skipped", []):
        click.echo(f"   · {key} (already cached)")
    for key, err in result.get("failed", {}).items():
        click.secho(f"   ✗ {key}: {err}", fg="red")

    if not result.get("ok"):
        sys.exit(1)


@cache.command()
@click.argument("name", required=False)
@click.option("--target", "-t", type=click.Path(file_okay=False, path_type=Path), default=None)
@click.pass_context
def clear(ctx: click.Context, name: str | None, target: Path | None) -> None:
    """Remove cached archives for NAME, or everything."""
    from src.core.use_cases.cache import cache_clear

    result = cache_clear(name, target, ctx.obj.get("config_path"))

    if "error" in result:
        click.secho(f"❌ {result['error']}", fg="red")
        sys.exit(1)

    what = f" for {name}" if name else ""
    click.secho(f"🗑️  Removed {result['removed']} cache entries{what}", fg="green")
