"""
CloudForge — CLI entrypoint.

Usage:
    python -m cloudforge.main --help
    python -m cloudforge.main serve
    python -m cloudforge.main render -s network -s subnet
"""

from __future__ import annotations

import os
from pathlib import Path

import click

from cloudforge import __version__
from cloudforge.core.observability.logging_config import resolve_level, setup_logging


@click.group()
@click.version_option(version=__version__, prog_name="cloudforge")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False),
    default=None,
    help="Path to cloudforge.yml (default: auto-detect).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    config_path: str | None,
) -> None:
    """CloudForge — compile, deploy and track cloud infrastructure."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["debug"] = debug
    ctx.obj["config_path"] = Path(config_path) if config_path else None

    # ── Logging setup (once, at process start) ──────────────────
    setup_logging(
        level=resolve_level(debug=debug, verbose=verbose, quiet=quiet),
        log_file=os.environ.get("CF_LOG_FILE"),
        log_file_level=os.environ.get("CF_LOG_FILE_LEVEL"),
        quiet_third_party=not debug,
    )


@cli.command()
@click.option("--host", default=None, help="Bind address (default: from settings).")
@click.option("--port", "-p", default=None, type=int, help="Port number (default: from settings).")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None) -> None:
    """Start the deployment API server."""
    from cloudforge.ui.cli.deploy import load_settings_from
    from cloudforge.ui.web.server import create_app, run_server

    settings = load_settings_from(ctx)
    host = host or settings.host
    port = port or settings.port
    app = create_app(settings)

    debug = ctx.obj.get("debug", False)

    click.echo()
    click.secho("⚡ CloudForge — deployment API", bold=True)
    click.echo(f"   Listening: http://{host}:{port}")
    click.echo(f"   Terraform: {' '.join(settings.terraform_binary)}")
    click.echo(f"   Data dir:  {settings.data_dir or '(memory only)'}")
    if settings.deploy_timeout_s:
        click.echo(f"   Timeout:   {settings.deploy_timeout_s:g}s per deployment")
    if debug:
        click.secho("   Logging: DEBUG (all output)", fg="yellow")
    click.echo()

    run_server(app, host=host, port=port, debug=debug)


# ── Register sub-commands from cloudforge/ui/cli/ ─────────────────

from cloudforge.ui.cli.deploy import deploy, render  # noqa: E402
from cloudforge.ui.cli.resources import history, resources  # noqa: E402

cli.add_command(render)
cli.add_command(deploy)
cli.add_command(resources)
cli.add_command(history)


if __name__ == "__main__":
    cli()
