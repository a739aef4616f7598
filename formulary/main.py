"""
formulary — CLI entrypoint.

Usage:
    formulary --help
    formulary install beast
    formulary install beast --head
    formulary test ~/.local/bin/beast
    formulary formula check

Exit codes: 0 success, 1 config/usage, 2 malformed descriptor,
3 network error, 4 not found, 5 checksum mismatch, 6 build failure,
7 smoke test failure, 8 install locked.
"""

from __future__ import annotations

import json
import os
from pathlib import Path

import click

from formulary import __version__
from formulary.core.errors import FormulaError, MalformedDescriptor
from formulary.core.observability.logging_config import (
    LOG_FILE_ENV,
    LOG_FILE_LEVEL_ENV,
    resolve_level,
    setup_logging,
)
from formulary.ui.cli.helpers import fail, get_settings


@click.group()
@click.version_option(version=__version__, prog_name="formulary")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, quiet: bool, debug: bool) -> None:
    """formulary — fetch, verify, build and install programs from formulas."""
    ctx.ensure_object(dict)
    ctx.obj["quiet"] = quiet

    setup_logging(
        level=resolve_level(debug=debug, verbose=verbose, quiet=quiet),
        log_file=os.environ.get(LOG_FILE_ENV),
        log_file_level=os.environ.get(LOG_FILE_LEVEL_ENV),
    )


# ── Install ─────────────────────────────────────────────────────


@cli.command()
@click.argument("name")
@click.option("--version", "version", default=None, help="Version to install (default: latest).")
@click.option("--head", is_flag=True, help="Build from the head branch (no checksum verification).")
@click.option(
    "--prefix",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Install prefix (default: FORMULARY_PREFIX or ~/.local).",
)
@click.option("--keep-scratch", is_flag=True, help="Keep the scratch directory for inspection.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def install(
    ctx: click.Context,
    name: str,
    version: str | None,
    head: bool,
    prefix: Path | None,
    keep_scratch: bool,
    as_json: bool,
) -> None:
    """Fetch, verify, build, smoke-test and install a formula."""
    from formulary.core.config.loader import resolve_formula
    from formulary.core.services.install import install as run_install

    settings = get_settings(ctx, as_json)
    try:
        if head and version:
            raise MalformedDescriptor(
                "--head and --version select different sources; pass only one", formula=name
            )
        formula = resolve_formula(name, settings.formula_paths)
        if not as_json and not ctx.obj.get("quiet"):
            label = "HEAD" if head else (version or formula.latest_version)
            click.secho(f"📦 Installing {formula.name} {label}...", fg="cyan")
        result = run_install(
            formula,
            version=version,
            head=head,
            prefix=prefix,
            settings=settings,
            keep_scratch=keep_scratch,
        )
    except FormulaError as e:
        fail(e, as_json)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return

    click.secho(
        f"✅ {result.formula} {result.version} → {result.installed_binary_path}",
        fg="green",
        bold=True,
    )
    if result.verified:
        click.echo(f"   🔒 sha256 {result.sha256}")
    else:
        click.secho("   ⚠️  Head build: checksum not verified", fg="yellow")
    if result.smoke_output:
        click.echo(f"   {result.smoke_output}")


# ── Smoke test ──────────────────────────────────────────────────


@cli.command("test")
@click.argument("binary", type=click.Path(dir_okay=False, path_type=Path))
@click.option("--arg", "args", multiple=True, help="Argument to pass (default: --version).")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
def smoke(binary: Path, args: tuple[str, ...], as_json: bool) -> None:
    """Smoke-test an installed binary."""
    from formulary.core.services.install import smoke_test
    from formulary.core.services.install.smoke import DEFAULT_ARGS

    argv = args or DEFAULT_ARGS
    try:
        output = smoke_test(binary, argv)
    except FormulaError as e:
        fail(e, as_json)

    if as_json:
        click.echo(json.dumps({"ok": True, "binary": str(binary), "args": list(argv), "output": output}))
        return
    click.secho(f"✅ {binary.name} runs", fg="green")
    if output:
        click.echo(f"   {output}")


# ── Fetch ───────────────────────────────────────────────────────


@cli.command()
@click.argument("name")
@click.option("--version", "version", default=None, help="Version to fetch (default: latest).")
@click.option(
    "--dest",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("."),
    help="Download directory (default: current directory).",
)
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def fetch(ctx: click.Context, name: str, version: str | None, dest: Path, as_json: bool) -> None:
    """Download and verify a release artifact without building it."""
    from formulary.core.config.loader import resolve_formula
    from formulary.core.services.install import fetch_only

    settings = get_settings(ctx, as_json)
    try:
        formula = resolve_formula(name, settings.formula_paths)
        path, digest = fetch_only(formula, version, dest)
    except FormulaError as e:
        fail(e, as_json)

    if as_json:
        click.echo(json.dumps({"ok": True, "path": str(path), "sha256": digest}))
        return
    click.secho(f"✅ {path}", fg="green")
    click.echo(f"   🔒 sha256 {digest}")


# ── History ─────────────────────────────────────────────────────


@cli.command()
@click.option("-n", "count", default=20, show_default=True, help="Number of runs to show.")
@click.option("--formula", "formula_name", default=None, help="Only runs of this formula.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def history(ctx: click.Context, count: int, formula_name: str | None, as_json: bool) -> None:
    """Show recent install runs."""
    from formulary.core.persistence.audit import AuditWriter

    settings = get_settings(ctx, as_json)
    entries = AuditWriter(settings.ledger_path).read_recent(count, formula=formula_name)

    if as_json:
        click.echo(json.dumps([e.model_dump(mode="json") for e in entries], indent=2))
        return

    if not entries:
        click.echo("No install runs recorded.")
        return

    for entry in entries:
        color = "green" if entry.status == "done" else "red"
        click.echo(f"{entry.timestamp[:19]}  {entry.formula} {entry.version} ({entry.mode}) ", nl=False)
        click.secho(entry.status, fg=color, nl=False)
        if entry.error:
            click.echo(f"  [{entry.error}] {entry.error_detail or ''}")
        else:
            click.echo()


# ── Sub-groups ──────────────────────────────────────────────────

from formulary.ui.cli.formula import formula  # noqa: E402

cli.add_command(formula)


if __name__ == "__main__":
    cli()
