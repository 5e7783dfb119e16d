"""CLI for the action gate: validate config, run the expiry sweep, serve the API."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import click

from actiongate import __version__
from actiongate.config import GatewayConfig, load_config
from actiongate.core.logging import configure_logging
from actiongate.core.metrics import init_metrics
from actiongate.core.telemetry import init_telemetry
from actiongate.errors import ActionGateError, ConfigError
from actiongate.pipeline import build_pipeline

_CONFIG_OPTION = click.option(
    "--config",
    "config_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Path to the gateway TOML config",
)


def _load_or_exit(config_path: Path) -> GatewayConfig:
    try:
        return load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Invalid config: {exc}", err=True)
        sys.exit(2)


def _setup(config: GatewayConfig) -> None:
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_file=Path(config.logging.log_file) if config.logging.log_file else None,
        service_name=config.name,
    )
    init_telemetry(f"actiongate.{config.name}")
    init_metrics(f"actiongate.{config.name}")


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """Action gate: relevance verification and human approval for scheduled actions."""


@cli.command("check-config")
@click.argument("config_path", type=click.Path(path_type=Path))
def check_config(config_path: Path) -> None:
    """Validate a gateway config file and print the effective policy."""
    config = _load_or_exit(config_path)
    policy = config.policy
    click.echo(f"Gateway:        {config.name}")
    click.echo(f"Store:          {'postgres' if config.database_dsn else 'in-memory'}")
    click.echo(f"Semantic:       {config.semantic.endpoint if config.semantic else '(disabled)'}")
    click.echo(f"Override mode:  {policy.override_mode.value}")
    click.echo(f"On uncertainty: {policy.default_action_on_uncertainty.value}")
    click.echo(f"Min confidence: {policy.minimum_confidence:.2f}")
    click.echo(f"Approval TTL:   {policy.user_approval_timeout_minutes} min")
    click.echo("Config OK")


@cli.command()
@_CONFIG_OPTION
def sweep(config_path: Path) -> None:
    """Expire unanswered approval requests and overdue actions once."""
    config = _load_or_exit(config_path)
    _setup(config)
    try:
        expired = asyncio.run(_sweep(config))
    except ActionGateError as exc:
        click.echo(f"Sweep failed: {exc}", err=True)
        sys.exit(1)
    click.echo(f"Expired {len(expired)} action(s)")
    for action_id in expired:
        click.echo(f"  {action_id}")


async def _sweep(config: GatewayConfig) -> list:
    pipeline = await build_pipeline(config)
    try:
        return await pipeline.sweep_expired()
    finally:
        await pipeline.aclose()


@cli.command()
@_CONFIG_OPTION
@click.option("--host", default="127.0.0.1", show_default=True, help="Bind address")
@click.option("--port", type=int, default=8080, show_default=True, help="Bind port")
def serve(config_path: Path, host: str, port: int) -> None:
    """Serve the REST API with uvicorn."""
    import uvicorn

    from actiongate.api.app import create_app

    config = _load_or_exit(config_path)
    _setup(config)
    click.echo(f"Serving action gate {config.name} on http://{host}:{port}")
    uvicorn.run(create_app(config=config), host=host, port=port, log_config=None)


def main() -> None:
    cli()
