"""
Shared helpers for CLI commands — settings lookup and error reporting.
"""

from __future__ import annotations

import json
import sys
from typing import NoReturn

import click

from formulary.core.config.settings import Settings, load_settings
from formulary.core.errors import FormulaError

# Detail keys shown under a human-readable error, in this order
_ERROR_DETAIL_KEYS = (
    "url", "expected", "actual", "exit_code", "missing", "state", "operation_id", "lock_file",
)


def get_settings(ctx: click.Context, as_json: bool = False) -> Settings:
    """Load settings once per invocation."""
    ctx.ensure_object(dict)
    if "settings" not in ctx.obj:
        try:
            ctx.obj["settings"] = load_settings()
        except FormulaError as e:
            fail(e, as_json)
    return ctx.obj["settings"]


def fail(err: FormulaError, as_json: bool) -> NoReturn:
    """Report an error and exit with its category's exit code."""
    if as_json:
        click.echo(json.dumps(err.to_dict(), indent=2, default=str))
        sys.exit(err.cli_exit_code)

    click.secho(f"❌ {err.message}", fg="red")
    for key in _ERROR_DETAIL_KEYS:
        value = err.details.get(key)
        if value not in (None, "", []):
            click.echo(f"   {key}: {value}")
    tail = err.details.get("stderr_tail") or err.details.get("output_tail")
    if tail:
        click.echo("   ── output (tail) ──")
        for line in str(tail).rstrip().splitlines()[-20:]:
            click.echo(f"   {line}")
    sys.exit(err.cli_exit_code)
