"""
CLI commands for the resource ledger and deployment history.

Both read the stores under ``data_dir`` from the settings; with no
``data_dir`` configured there is nothing persisted to show.
"""

from __future__ import annotations

import json
import sys

import click

from cloudforge.core.errors import CloudForgeError
from cloudforge.ui.cli.deploy import load_settings_from


def _orchestrator(ctx: click.Context):  # type: ignore[no-untyped-def]
    from cloudforge.core.services.deploy_ops import build_orchestrator

    settings = load_settings_from(ctx)
    if settings.data_dir is None:
        click.secho("⚠️  No data_dir configured — the ledger is not persisted", fg="yellow", err=True)
    return build_orchestrator(settings)


@click.group("resources")
def resources() -> None:
    """Resource ledger — list and forget recorded resources."""


@resources.command("list")
@click.option("--user", "-u", "user_id", required=True, help="User id.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def list_cmd(ctx: click.Context, user_id: str, as_json: bool) -> None:
    """List a user's recorded resources."""
    orch = _orchestrator(ctx)
    try:
        records = orch.list_resources(user_id)
    finally:
        orch.shutdown()

    if as_json:
        click.echo(json.dumps([r.to_dict() for r in records], indent=2))
        return

    if not records:
        click.echo("📭 No resources recorded")
        return

    click.secho(f"📦 Resources ({len(records)}):", fg="cyan", bold=True)
    for r in records:
        status_color = "green" if r.status in ("available", "running") else "yellow"
        click.echo(f"   {r.id:<28} {r.type:<18} {r.name:<20} ", nl=False)
        click.secho(f"{r.status:<10}", fg=status_color, nl=False)
        click.echo(f" {r.region}  {r.created_at}")


@resources.command("delete")
@click.option("--user", "-u", "user_id", required=True, help="User id.")
@click.argument("resource_id")
@click.pass_context
def delete_cmd(ctx: click.Context, user_id: str, resource_id: str) -> None:
    """Forget a resource (the cloud resource itself is not destroyed)."""
    orch = _orchestrator(ctx)
    try:
        removed = orch.delete_resource(user_id, resource_id)
    except CloudForgeError as e:
        click.secho(f"❌ {e}", fg="red")
        sys.exit(1)
    finally:
        orch.shutdown()
    click.secho(f"✅ Removed {removed.id} ({removed.type})", fg="green")


@click.command("history")
@click.option("--user", "-u", "user_id", required=True, help="User id.")
@click.option("--limit", "-n", type=click.IntRange(min=1), default=20, show_default=True, help="Most recent N entries.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def history(ctx: click.Context, user_id: str, limit: int, as_json: bool) -> None:
    """Show a user's deployment history."""
    orch = _orchestrator(ctx)
    try:
        entries = orch.history(user_id, limit)
    finally:
        orch.shutdown()

    if as_json:
        click.echo(json.dumps([e.model_dump(mode="json") for e in entries], indent=2))
        return

    if not entries:
        click.echo("📭 No deployments")
        return

    click.secho(f"📜 Deployments ({len(entries)}):", fg="cyan", bold=True)
    for e in entries:
        marker = "✅" if e.status == "success" else "❌"
        kind = f" [{e.failure_kind}]" if e.failure_kind else ""
        click.echo(
            f"   {marker} {e.timestamp}  {e.deployment_id}  {e.provider:<6}"
            f" {', '.join(e.primitives)}{kind}  ({e.duration_ms} ms)"
        )
