"""retry-annotations CLI: inspect retry configuration outside a pytest run."""
from __future__ import annotations

import sys
from pathlib import Path

import click

from retry_annotations.config import DEFAULT_RETRY_COUNT, ConfigError, resolve_config
from retry_annotations.engine.delay import DEFAULT_MAX_DELAY_SECONDS, MICROSECONDS, backoff_microseconds
from retry_annotations.logging import configure_logging
from retry_annotations_cli.inspection import inspect_module


def _table(headers: list[str], rows: list[list[str]], col_widths: list[int] | None = None) -> str:
    """Simple ASCII table formatter."""
    if not col_widths:
        col_widths = [max(len(h), max((len(str(r[i])) for r in rows), default=0)) for i, h in enumerate(headers)]

    header_line = "  ".join(h.ljust(w) for h, w in zip(headers, col_widths))
    sep_line = "  ".join("-" * w for w in col_widths)
    lines = [header_line, sep_line]
    for row in rows:
        lines.append("  ".join(str(c).ljust(w) for c, w in zip(row, col_widths)))
    return "\n".join(lines)


def _cell(value) -> str:
    if value is None:
        return "-"
    if isinstance(value, list):
        return ",".join(value) or "-"
    return str(value)


# ---------------------------------------------------------------------------
# CLI root
# ---------------------------------------------------------------------------

@click.group()
@click.option("--log-format", type=click.Choice(["text", "json"]), default=None, help="Enable diagnostic logging")
def cli(log_format):
    """retry-annotations: inspect retry markers and configuration."""
    if log_format:
        configure_logging(json_output=log_format == "json")


# ---------------------------------------------------------------------------
# Config command
# ---------------------------------------------------------------------------

@cli.command("config")
@click.option("--path", "config_path", default=None, type=click.Path(), help="Config file to read")
def show_config(config_path):
    """Show the project-wide default retry count."""
    try:
        cfg = resolve_config(config_path)
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    if cfg is None:
        click.echo("Config: none found (tests without retry markers are not retried)")
        return
    click.echo(f"Config: {cfg.source}")
    click.echo(f"  Base retry count: {cfg.base_retry_count}")
    if cfg.base_retry_count == DEFAULT_RETRY_COUNT:
        click.echo("  (matches the built-in default)")


# ---------------------------------------------------------------------------
# Inspect command
# ---------------------------------------------------------------------------

@cli.command("inspect")
@click.argument("test_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def inspect_cmd(test_file):
    """Parse every retry marker in TEST_FILE and report the resulting policies."""
    try:
        policies = inspect_module(test_file)
    except Exception as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    if not policies:
        click.echo(f"No retry markers found in {test_file}.")
        return

    headers = ["Test", "Attempts", "For (s)", "Delay (s)", "Delay method", "If exception", "If method"]
    rows = []
    invalid = []
    for p in policies:
        if p.error:
            invalid.append(p)
            continue
        rows.append([
            p.node_id,
            _cell(p.policy["retry_attempts"]),
            _cell(p.policy["retry_for_seconds"]),
            _cell(p.policy["retry_delay_seconds"]),
            _cell(p.policy["retry_delay_method"]),
            _cell(p.policy["retry_if_exception"]),
            _cell(p.policy["retry_if_method"]),
        ])
    if rows:
        click.echo(_table(headers, rows))
    for p in invalid:
        click.echo(f"INVALID {p.node_id}: {p.error}", err=True)
    if invalid:
        sys.exit(1)


# ---------------------------------------------------------------------------
# Backoff command
# ---------------------------------------------------------------------------

@cli.command("backoff")
@click.option("--attempts", default=6, show_default=True, type=click.IntRange(min=1), help="Attempts to show")
@click.option("--max-delay", default=DEFAULT_MAX_DELAY_SECONDS, show_default=True, type=click.IntRange(min=0),
              help="Cap in seconds")
def backoff(attempts, max_delay):
    """Show the sleep range of the built-in exponential_backoff delegate."""
    headers = ["Attempt", "Min (s)", "Max (s)"]
    rows = []
    for attempt in range(1, attempts + 1):
        low = backoff_microseconds(attempt, max_delay, rand=lambda a, b: a)
        high = backoff_microseconds(attempt, max_delay, rand=lambda a, b: b)
        rows.append([str(attempt), f"{low / MICROSECONDS:.2f}", f"{high / MICROSECONDS:.2f}"])
    click.echo(_table(headers, rows))


if __name__ == "__main__":
    cli()
