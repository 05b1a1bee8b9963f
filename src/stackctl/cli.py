"""stackctl command line interface.

Usage:
    stackctl plan                  # Show what apply would change
    stackctl plan --format json    # Machine-readable plan
    stackctl apply                 # Apply the plan and commit the snapshot
    stackctl state                 # Print the committed snapshot
    stackctl force-unlock          # Remove a stale state lock
    stackctl boot -- bin/server    # Exec a command with the secret payload expanded

Options override the STACKCTL_* environment variables.
"""

from __future__ import annotations

import asyncio
import dataclasses
import os
import sys
from pathlib import Path
from typing import Any

import click

from .bootenv import SecretPayloadError, expand_secret_env
from .config import (
    MAX_MAX_ATTEMPTS,
    MAX_MAX_CONCURRENCY,
    MIN_MAX_CONCURRENCY,
    Config,
    ConfigurationError,
    ProviderName,
)
from .main import (
    EXIT_INVALID,
    run_apply,
    run_force_unlock,
    run_plan,
    run_state,
    setup_logging,
)

STACKCTL_VERSION = "0.1.0"


def load_config(ctx: click.Context, **overrides: Any) -> Config:
    """Build the configuration from the environment plus CLI overrides.

    Raises:
        click.exceptions.Exit: With exit code 2 on invalid configuration.
    """
    try:
        config = Config.from_env()
        changes = {key: value for key, value in overrides.items() if value is not None}
        if changes:
            config = dataclasses.replace(config, **changes)
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(EXIT_INVALID)

    setup_logging(config.log_level)
    return config


def common_options(func: Any) -> Any:
    """Options shared by commands that read the stack and the snapshot."""
    decorators = [
        click.option(
            "--file",
            "-f",
            "spec_file",
            type=click.Path(path_type=Path),
            help="Stack file [env: STACKCTL_SPEC_FILE]",
        ),
        click.option(
            "--state",
            "state_file",
            type=click.Path(path_type=Path),
            help="Snapshot file [env: STACKCTL_STATE_FILE]",
        ),
        click.option(
            "--provider",
            type=click.Choice([p.value for p in ProviderName]),
            help="Provisioning backend [env: STACKCTL_PROVIDER]",
        ),
    ]
    for decorator in reversed(decorators):
        func = decorator(func)
    return func


@click.group()
@click.version_option(version=STACKCTL_VERSION, prog_name="stackctl")
def cli() -> None:
    """Reconcile an application's cloud resources against a stack file."""
    pass


@cli.command()
@common_options
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["text", "json"]),
    default="text",
    show_default=True,
)
@click.option("--show-unchanged", is_flag=True, help="List no-op resources too")
@click.pass_context
def plan(
    ctx: click.Context,
    spec_file: Path | None,
    state_file: Path | None,
    provider: str | None,
    output_format: str,
    show_unchanged: bool,
) -> None:
    """Show the operations apply would perform."""
    config = load_config(
        ctx,
        spec_file=spec_file,
        state_file=state_file,
        provider=ProviderName(provider) if provider else None,
    )
    ctx.exit(run_plan(config, output_format, show_unchanged))


@cli.command()
@common_options
@click.option(
    "--concurrency",
    "max_concurrency",
    type=click.IntRange(MIN_MAX_CONCURRENCY, MAX_MAX_CONCURRENCY),
    help="Parallel operations [env: STACKCTL_MAX_CONCURRENCY]",
)
@click.option(
    "--max-attempts",
    type=click.IntRange(1, MAX_MAX_ATTEMPTS),
    help="Attempts per operation [env: STACKCTL_MAX_ATTEMPTS]",
)
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["text", "json"]),
    default="text",
    show_default=True,
)
@click.pass_context
def apply(
    ctx: click.Context,
    spec_file: Path | None,
    state_file: Path | None,
    provider: str | None,
    max_concurrency: int | None,
    max_attempts: int | None,
    output_format: str,
) -> None:
    """Apply the plan and commit the resulting snapshot."""
    config = load_config(
        ctx,
        spec_file=spec_file,
        state_file=state_file,
        provider=ProviderName(provider) if provider else None,
        max_concurrency=max_concurrency,
        max_attempts=max_attempts,
    )
    ctx.exit(asyncio.run(run_apply(config, output_format)))


@cli.command()
@click.option(
    "--state",
    "state_file",
    type=click.Path(path_type=Path),
    help="Snapshot file [env: STACKCTL_STATE_FILE]",
)
@click.pass_context
def state(ctx: click.Context, state_file: Path | None) -> None:
    """Print the committed snapshot."""
    config = load_config(ctx, state_file=state_file)
    ctx.exit(run_state(config))


@cli.command("force-unlock")
@click.option(
    "--state",
    "state_file",
    type=click.Path(path_type=Path),
    help="Snapshot file [env: STACKCTL_STATE_FILE]",
)
@click.confirmation_option(prompt="Remove the state lock? Only do this if no run is active.")
@click.pass_context
def force_unlock(ctx: click.Context, state_file: Path | None) -> None:
    """Remove a stale state lock."""
    config = load_config(ctx, state_file=state_file)
    ctx.exit(run_force_unlock(config))


@cli.command(context_settings={"ignore_unknown_options": True})
@click.option("--source-var", default="DB_SECRET", show_default=True, help="Variable holding the JSON payload")
@click.option(
    "--map",
    "field_map",
    multiple=True,
    metavar="FIELD=VAR",
    help="Payload field to variable mapping (repeatable) [default: username=DB_USERNAME, password=DB_PASSWORD]",
)
@click.option("--app-env-var", default="APP_ENV", show_default=True)
@click.option(
    "--active-env",
    "active_envs",
    multiple=True,
    help="Environment in which to expand (repeatable) [default: production]",
)
@click.argument("command", nargs=-1, required=True, type=click.UNPROCESSED)
def boot(
    source_var: str,
    field_map: tuple[str, ...],
    app_env_var: str,
    active_envs: tuple[str, ...],
    command: tuple[str, ...],
) -> None:
    """Exec COMMAND with the secret payload expanded into its environment."""
    mapping: dict[str, str] | None = None
    if field_map:
        mapping = {}
        for item in field_map:
            field_name, sep, target = item.partition("=")
            if not sep or not field_name or not target:
                raise click.BadParameter(f"expected FIELD=VAR, got '{item}'", param_hint="--map")
            mapping[field_name] = target

    try:
        env = expand_secret_env(
            os.environ,
            source_var=source_var,
            field_map=mapping,
            app_env_var=app_env_var,
            active_envs=active_envs or ("production",),
        )
    except SecretPayloadError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_INVALID)

    try:
        os.execvpe(command[0], list(command), env)
    except OSError as e:
        raise click.ClickException(f"Cannot exec {command[0]}: {e}") from e


def main() -> None:
    """Entry point for the stackctl CLI."""
    cli()


if __name__ == "__main__":
    main()
