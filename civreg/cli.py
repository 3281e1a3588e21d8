"""CLI entrypoint for civreg."""

import logging
import sys
from dataclasses import replace
from datetime import date
from pathlib import Path

import click
from rich.logging import RichHandler

from . import __version__
from .config import LOG_LEVELS, find_config, load_config


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(show_path=False, rich_tracebacks=True)],
        force=True,
    )


def _parse_date(value: str | None, param_hint: str) -> date | None:
    if value is None:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise click.BadParameter(f"'{value}' is not an ISO date (YYYY-MM-DD).", param_hint=param_hint) from None


def _registry(ctx: click.Context):
    from .service import Registry

    return Registry(config=ctx.obj["config"])


@click.group()
@click.version_option(__version__, prog_name="civreg")
@click.option(
    "--data-dir",
    "-d",
    type=click.Path(file_okay=False, dir_okay=True, path_type=Path),
    default=None,
    help="Registry data directory (overrides civreg.toml and CIVREG_DATA_DIR)",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Path to civreg.toml (defaults to auto-detected ./civreg.toml)",
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Logging level (defaults to [logging] level in civreg.toml)",
)
@click.pass_context
def cli(ctx: click.Context, data_dir: Path | None, config_path: Path | None, log_level: str | None) -> None:
    """civreg - Population registry consistency engine.

    Submit life events, query residents and households, and check the
    registry's invariants.
    """
    ctx.ensure_object(dict)
    if config_path is None:
        config_path = find_config(Path.cwd())
    try:
        config = load_config(config_path)
    except (OSError, ValueError) as e:
        raise click.ClickException(str(e)) from e

    if data_dir is not None:
        config = replace(config, data_dir=data_dir)
    if config.data_dir is None:
        raise click.ClickException("Data directory not set. Pass --data-dir, set CIVREG_DATA_DIR or add civreg.toml.")

    _configure_logging((log_level or config.log_level).upper())
    ctx.obj["config"] = config


@cli.command()
@click.argument("event_type")
@click.argument("effective_date")
@click.option(
    "--payload",
    "-p",
    type=str,
    default=None,
    help="Event payload as JSON, or @file.json",
)
@click.option("--applicant", type=str, default=None, help="Applicant recorded on the new application")
@click.option("--application-id", type=str, default=None, help="File the event under an existing application")
@click.option("--json", "output_json", is_flag=True, help="Output result as JSON")
@click.pass_context
def submit(
    ctx: click.Context,
    event_type: str,
    effective_date: str,
    payload: str | None,
    applicant: str | None,
    application_id: str | None,
    output_json: bool,
) -> None:
    """Submit a life event effective on EFFECTIVE_DATE.

    Example: civreg submit death 2024-06-01 -p '{"resident_id": "res_..."}'
    """
    from .commands.submit import run_submit

    exit_code = run_submit(
        _registry(ctx),
        event_type,
        effective_date,
        payload=payload,
        applicant=applicant,
        application_id=application_id,
        output_json=output_json,
    )
    sys.exit(exit_code)


@cli.command()
@click.argument("resident_id")
@click.option("--as-of", type=str, default=None, metavar="DATE", help="Show the state in force on DATE")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.pass_context
def resident(ctx: click.Context, resident_id: str, as_of: str | None, output_json: bool) -> None:
    """Show a resident, currently or as of a date."""
    from .commands.show import run_resident

    day = _parse_date(as_of, "--as-of")
    sys.exit(run_resident(_registry(ctx), resident_id, as_of=day, output_json=output_json))


@cli.command()
@click.argument("household_id")
@click.option("--as-of", type=str, default=None, metavar="DATE", help="Head on DATE instead of currently")
@click.pass_context
def head(ctx: click.Context, household_id: str, as_of: str | None) -> None:
    """Show the head and members of a household."""
    from .commands.show import run_head

    day = _parse_date(as_of, "--as-of")
    sys.exit(run_head(_registry(ctx), household_id, as_of=day))


@cli.command()
@click.argument("resident_id")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.pass_context
def events(ctx: click.Context, resident_id: str, output_json: bool) -> None:
    """List the life events recorded for a resident."""
    from .commands.show import run_events

    sys.exit(run_events(_registry(ctx), resident_id, output_json=output_json))


@cli.command()
@click.option(
    "--invariant",
    "invariant_filter",
    type=str,
    default=None,
    metavar="INVARIANT_ID",
    help="Only check rules for this invariant (e.g., --invariant single-head)",
)
@click.option("--json", "output_json", is_flag=True, help="Output results as JSON")
@click.pass_context
def check(ctx: click.Context, invariant_filter: str | None, output_json: bool) -> None:
    """Re-check every household and resident against the ruleset."""
    from .commands.check import run_check

    sys.exit(run_check(_registry(ctx), invariant_filter=invariant_filter, output_json=output_json))


@cli.command()
@click.option("--last", "last_n", type=int, default=None, help="Show only the last N entries")
@click.pass_context
def audit(ctx: click.Context, last_n: int | None) -> None:
    """Show the submission audit log."""
    from .commands.check import run_audit_log

    sys.exit(run_audit_log(_registry(ctx), last_n=last_n))


if __name__ == "__main__":
    cli()
