"""
CLI commands for compiling and running deployments.

Thin wrappers over ``cloudforge.core.services.deploy_ops``.  Without
``--server`` the orchestrator runs in this process; with ``--server``
the request goes to a running ``cloudforge serve`` and the response
stream is decoded incrementally.
"""

from __future__ import annotations

import json
import sys
import urllib.error
import urllib.request
from pathlib import Path
from typing import Any

import click
import yaml

from cloudforge.core.errors import CloudForgeError, ValidationError
from cloudforge.core.models.credentials import SUPPORTED_PROVIDERS, parse_credentials
from cloudforge.core.models.events import ErrorEvent, LogEvent, SuccessEvent
from cloudforge.core.services.event_stream import EventDecoder

_PLACEHOLDER_CREDENTIALS: dict[str, dict[str, str]] = {
    "aws": {"access_key": "<access-key>", "secret_key": "<secret-key>", "region": "us-east-1"},
    "azure": {
        "subscription_id": "<subscription-id>",
        "client_id": "<client-id>",
        "client_secret": "<client-secret>",
        "tenant_id": "<tenant-id>",
    },
}


def load_settings_from(ctx: click.Context):  # type: ignore[no-untyped-def]
    """Load settings for the current invocation, exiting on ConfigError."""
    from cloudforge.core.config.settings import ConfigError, load_settings

    try:
        return load_settings(ctx.obj.get("config_path"))
    except ConfigError as e:
        click.secho(f"❌ {e}", fg="red")
        sys.exit(1)


def _parse_params(pairs: tuple[str, ...]) -> dict[str, Any]:
    """``--param key=value`` pairs; values are parsed as YAML scalars."""
    params: dict[str, Any] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected key=value, got {pair!r}", param_hint="--param")
        params[key.strip()] = yaml.safe_load(value) if value else ""
    return params


def _read_credentials(path: str | None, provider: str) -> dict[str, Any]:
    if path is None:
        return {}
    try:
        data = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise click.BadParameter(f"cannot read {path}: {e}", param_hint="--credentials") from e
    if not isinstance(data, dict):
        raise click.BadParameter(f"{path} must contain a mapping", param_hint="--credentials")
    return {**data, "provider": data.get("provider", provider)}


def _print_event(event: LogEvent | ErrorEvent | SuccessEvent) -> None:
    if isinstance(event, SuccessEvent):
        click.secho(f"\n✅ {event.message}", fg="green", bold=True)
        for rid in event.resources:
            click.echo(f"   • {rid}")
    elif isinstance(event, ErrorEvent):
        click.secho(f"\n❌ [{event.kind.value}] {event.message}", fg="red", bold=True)
    elif event.stream == "system":
        click.secho(f"▶ {event.message}", fg="cyan")
    elif event.stream == "stderr":
        click.secho(event.message, fg="yellow", err=True)
    else:
        click.echo(event.message)


def _fail(e: CloudForgeError) -> None:
    click.secho(f"❌ {e}", fg="red")
    if isinstance(e, ValidationError) and len(e.problems) > 1:
        for problem in e.problems:
            click.echo(f"   • {problem}")
    sys.exit(1)


# ── Render ──────────────────────────────────────────────────────


@click.command("render")
@click.option("--provider", "-p", type=click.Choice(SUPPORTED_PROVIDERS), default="aws", show_default=True)
@click.option("--select", "-s", "selected", multiple=True, required=True,
              help="Primitive to include (network, subnet, instance, …). Repeatable.")
@click.option("--param", "params", multiple=True, help="Parameter as key=value. Repeatable.")
@click.option("--credentials", "creds_path", type=click.Path(exists=True, dir_okay=False), default=None,
              help="Credentials file (YAML/JSON). Placeholders are used if omitted.")
@click.option("--secrets", "show_secrets", is_flag=True, help="Also print the secrets file.")
def render(
    selected: tuple[str, ...],
    provider: str,
    params: tuple[str, ...],
    creds_path: str | None,
    show_secrets: bool,
) -> None:
    """Print the Terraform configuration for a selection."""
    from cloudforge.core.models.selection import DeploymentParams, ResourceSelection
    from cloudforge.core.services.tf_compiler import compile_config

    try:
        creds_data = _read_credentials(creds_path, provider) or {
            **_PLACEHOLDER_CREDENTIALS[provider], "provider": provider,
        }
        compiled = compile_config(
            provider,
            ResourceSelection.from_payload(list(selected)),
            DeploymentParams.from_payload(_parse_params(params)),
            parse_credentials(creds_data, provider),
        )
    except CloudForgeError as e:
        _fail(e)
        return

    click.echo(compiled.config_text, nl=False)
    if show_secrets:
        click.secho("\n# ── secrets.tfvars ──", fg="yellow", err=True)
        click.echo(compiled.secrets_text, nl=False, err=True)


# ── Deploy ──────────────────────────────────────────────────────


@click.command("deploy")
@click.option("--user", "-u", "user_id", required=True, help="User id to deploy as.")
@click.option("--provider", "-p", type=click.Choice(SUPPORTED_PROVIDERS), default="aws", show_default=True)
@click.option("--select", "-s", "selected", multiple=True, required=True,
              help="Primitive to include. Repeatable.")
@click.option("--param", "params", multiple=True, help="Parameter as key=value. Repeatable.")
@click.option("--credentials", "creds_path", type=click.Path(exists=True, dir_okay=False), default=None,
              help="Credentials file (YAML/JSON) stored for --user before deploying.")
@click.option("--server", default=None, help="Deploy through a running server (e.g. http://127.0.0.1:8000).")
@click.pass_context
def deploy(
    ctx: click.Context,
    user_id: str,
    provider: str,
    selected: tuple[str, ...],
    params: tuple[str, ...],
    creds_path: str | None,
    server: str | None,
) -> None:
    """Compile, init and apply a selection, streaming progress."""
    try:
        param_data = _parse_params(params)
        creds_data = _read_credentials(creds_path, provider)
    except click.BadParameter as e:
        click.secho(f"❌ {e.format_message()}", fg="red")
        sys.exit(1)

    if server:
        ok = _deploy_remote(server, user_id, provider, list(selected), param_data, creds_data)
    else:
        ok = _deploy_local(ctx, user_id, provider, list(selected), param_data, creds_data)
    sys.exit(0 if ok else 1)


def _deploy_local(
    ctx: click.Context,
    user_id: str,
    provider: str,
    selected: list[str],
    params: dict[str, Any],
    creds: dict[str, Any],
) -> bool:
    from cloudforge.core.services.deploy_ops import build_orchestrator

    orch = build_orchestrator(load_settings_from(ctx))
    try:
        if creds:
            orch.put_credentials(user_id, creds)
        handle = orch.deploy(user_id, provider, selected, params)
    except CloudForgeError as e:
        orch.shutdown()
        _fail(e)
        return False

    click.secho(f"🚀 Deployment {handle.deployment_id}", bold=True)
    try:
        for event in handle.events:
            _print_event(event)
        terminal = handle.wait()
    finally:
        orch.shutdown()
    return isinstance(terminal, SuccessEvent)


def _post_json(url: str, body: dict[str, Any]) -> urllib.request.Request:
    return urllib.request.Request(
        url,
        data=json.dumps(body).encode("utf-8"),
        headers={"Content-Type": "application/json"},
        method="POST",
    )


def _http_error(e: urllib.error.HTTPError) -> str:
    try:
        body = json.loads(e.read().decode("utf-8"))
        return f"HTTP {e.code}: {body.get('error', body)}"
    except ValueError:
        return f"HTTP {e.code}: {e.reason}"


def _deploy_remote(
    server: str,
    user_id: str,
    provider: str,
    selected: list[str],
    params: dict[str, Any],
    creds: dict[str, Any],
) -> bool:
    base = server.rstrip("/")
    try:
        if creds:
            with urllib.request.urlopen(_post_json(
                f"{base}/api/credentials", {"userId": user_id, "credentials": creds},
            ), timeout=30):
                pass

        request = _post_json(f"{base}/api/{provider}/deploy", {
            "resources": selected,
            "config": params,
            "auth": {"userId": user_id},
        })
        decoder = EventDecoder()
        terminal = None
        with urllib.request.urlopen(request) as resp:
            click.secho(f"🚀 Deployment {resp.headers.get('X-Deployment-Id', '?')}", bold=True)
            while True:
                chunk = resp.read1(4096)
                if not chunk:
                    break
                for event in decoder.feed(chunk):
                    _print_event(event)
                    if event.is_terminal:
                        terminal = event
        decoder.close()
    except urllib.error.HTTPError as e:
        click.secho(f"❌ {_http_error(e)}", fg="red")
        return False
    except (urllib.error.URLError, OSError) as e:
        click.secho(f"❌ Cannot reach {base}: {e}", fg="red")
        return False
    except ValueError as e:
        click.secho(f"❌ {e}", fg="red")
        return False

    if terminal is None:
        click.secho("❌ Stream ended without a result", fg="red")
        return False
    return isinstance(terminal, SuccessEvent)
