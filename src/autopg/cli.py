"""autopg operator CLI.

Usage:
    autopg run                # Run the daemon in the foreground
    autopg scan               # Reconcile all existing containers once
    autopg scan --dry-run     # Show what would be provisioned
    autopg check pg1          # Check admin credentials for a target
"""

from __future__ import annotations

import asyncio
import dataclasses
import sys

import click
from docker.errors import DockerException

from .config import Config, ConfigurationError
from .credentials import CredentialResolver, env_key
from .docker_platform import DockerPlatform
from .main import main as daemon_main
from .main import setup_logging
from .reconciler import OutcomeStatus, Reconciler
from .watcher import Watcher

_STATUS_COLORS: dict[OutcomeStatus, str] = {
    OutcomeStatus.PROVISIONED: "green",
    OutcomeStatus.ALREADY_PROVISIONED: "green",
    OutcomeStatus.DRY_RUN: "cyan",
    OutcomeStatus.UNAUTHORIZED: "white",
    OutcomeStatus.INCOMPLETE: "yellow",
    OutcomeStatus.CANCELLED: "yellow",
    OutcomeStatus.FAILED: "red",
}


def load_config(dry_run: bool = False) -> Config:
    """Load configuration, converting errors to click errors."""
    try:
        config = Config.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e
    if dry_run and not config.dry_run:
        config = dataclasses.replace(config, dry_run=True)
    return config


@click.group()
@click.version_option(version="0.1.0", prog_name="autopg")
def cli() -> None:
    """autopg: provision PostgreSQL databases declared in container labels.

    \b
    Label a container with:
        autopg.<target>.db, autopg.<target>.user, autopg.<target>.pass
    and give this instance credentials for <target> with:
        AUTOPG_<TARGET>_HOST, AUTOPG_<TARGET>_ADMIN, AUTOPG_<TARGET>_ADMIN_PASS
    """
    pass


@cli.command()
def run() -> None:
    """Run the daemon until SIGTERM or SIGINT."""
    sys.exit(asyncio.run(daemon_main()))


@cli.command()
@click.option("--dry-run", is_flag=True, help="Log plans without touching PostgreSQL")
@click.option("--verbose", "-v", is_flag=True, help="Emit JSON logs to stdout")
def scan(dry_run: bool, verbose: bool) -> None:
    """Reconcile all existing containers once and exit."""
    config = load_config(dry_run)
    if verbose:
        setup_logging(config.log_level)

    try:
        platform = DockerPlatform.from_env()
    except DockerException as e:
        raise click.ClickException(f"Could not create Docker client: {e}") from e

    try:
        reconciler = Reconciler(config, CredentialResolver.from_env(), platform)
        results = asyncio.run(Watcher(config, platform, reconciler).scan())
    finally:
        platform.close()

    failures = 0
    for result in results:
        for outcome in result.outcomes:
            line = f"{result.workload_id[:12]}  {outcome.target:<20} {outcome.status.value}"
            if outcome.error is not None:
                line += f"  {outcome.error}"
            click.secho(line, fg=_STATUS_COLORS[outcome.status])
            if outcome.status == OutcomeStatus.FAILED:
                failures += 1

    if not results:
        click.echo("No containers with provisioning labels found.")
    if failures:
        raise click.ClickException(f"{failures} target(s) failed to provision")


@cli.command()
@click.argument("target")
def check(target: str) -> None:
    """Check whether this environment holds admin credentials for TARGET."""
    credential = CredentialResolver.from_env().resolve(target)
    if credential is None:
        click.secho(f"✗ No usable admin credentials for target '{target}'", fg="red")
        click.echo("  Required environment variables:")
        for field_name in ("HOST", "ADMIN", "ADMIN_PASS"):
            click.echo(f"    {env_key(target, field_name)}")
        click.echo(f"  Optional: {env_key(target, 'PORT')} (default 5432)")
        sys.exit(1)

    click.secho(f"✓ Target '{target}' is managed by this instance", fg="green")
    click.echo(f"  Host:  {credential.address}")
    click.echo(f"  Admin: {credential.admin_user}")


if __name__ == "__main__":
    cli()
