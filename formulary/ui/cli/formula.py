"""
CLI commands for browsing and validating formulas.

Thin wrappers over ``formulary.core.config.loader`` and
``formulary.core.use_cases.formula_check``.
"""

from __future__ import annotations

import json
import sys

import click

from formulary.core.errors import FormulaError
from formulary.ui.cli.helpers import fail, get_settings


@click.group()
def formula() -> None:
    """Formulas — list, show, check."""


@formula.command("list")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def list_cmd(ctx: click.Context, as_json: bool) -> None:
    """List available formulas."""
    from formulary.core.config.loader import list_formulas

    settings = get_settings(ctx, as_json)
    found = list_formulas(settings.formula_paths)

    if as_json:
        click.echo(json.dumps({name: str(path) for name, path in found.items()}, indent=2))
        return

    if not found:
        click.secho("⚠️  No formulas found", fg="yellow")
        return

    click.secho(f"📜 Formulas ({len(found)}):", fg="cyan", bold=True)
    for name, path in sorted(found.items()):
        click.echo(f"   {name:<24} {path}")


@formula.command()
@click.argument("name")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def show(ctx: click.Context, name: str, as_json: bool) -> None:
    """Show a formula's versions, source and build recipe."""
    from formulary.core.config.loader import resolve_formula

    settings = get_settings(ctx, as_json)
    try:
        f = resolve_formula(name, settings.formula_paths)
    except FormulaError as e:
        fail(e, as_json)

    if as_json:
        click.echo(json.dumps(f.model_dump(mode="json", by_alias=True), indent=2))
        return

    click.secho(f"📜 {f.name}", fg="cyan", bold=True)
    if f.desc:
        click.echo(f"   {f.desc}")
    if f.homepage:
        click.echo(f"   🏠 {f.homepage}")
    click.echo(f"   ⚖️  {f.license}")
    click.echo()

    click.secho("   Versions:", bold=True)
    latest = f.latest_version
    for version in reversed(f.sorted_versions()):
        marker = " (default)" if version == latest else ""
        entry = f.versions[version]
        click.echo(f"     • {version}{marker}")
        click.echo(f"       {entry.url}")
        click.echo(f"       sha256 {entry.sha256}")
    if f.head:
        click.echo(f"     • HEAD  {f.head.repo_url} ({f.head.branch})")

    click.echo()
    click.secho("   Build:", bold=True)
    click.echo(f"     system: {f.build.system}   subdir: {f.build.subdir}   binary: bin/{f.build.binary}")
    if f.depends_on:
        deps = ", ".join(f"{d.name} ({', '.join(d.required_tools)})" for d in f.depends_on)
        click.echo(f"     build deps: {deps}")
    click.echo(f"     smoke test: {f.build.binary} {' '.join(f.test.args)}")
    click.echo()


@formula.command()
@click.argument("names", nargs=-1)
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def check(ctx: click.Context, names: tuple[str, ...], as_json: bool) -> None:
    """Validate formulas (all of them by default)."""
    from formulary.core.use_cases.formula_check import check_formulas

    settings = get_settings(ctx, as_json)
    result = check_formulas(list(names) or None, settings.formula_paths)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(0 if result.valid else 2)

    for report in result.reports:
        if report.valid:
            click.secho(f"✅ {report.name}", fg="green", nl=False)
            click.echo(f"  ({len(report.versions)} versions)")
        else:
            click.secho(f"❌ {report.name}", fg="red", bold=True)
            for err in report.errors:
                click.echo(f"   • {err}")
        for warn in report.warnings:
            click.secho(f"   ⚠️  {warn}", fg="yellow")

    if not result.valid:
        sys.exit(2)
