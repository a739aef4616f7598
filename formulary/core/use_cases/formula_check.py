"""
Formula check use case — validate formula files without installing.

Loads each formula, validates the descriptor of every version and of
the head reference, and reports suspicious data such as one checksum
shared by several versions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from formulary.core.config.loader import list_formulas, load_formula
from formulary.core.errors import FormulaError


@dataclass
class FormulaReport:
    """Validation outcome for one formula file."""

    name: str
    path: Path
    versions: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "path": str(self.path),
            "valid": self.valid,
            "versions": self.versions,
            "errors": self.errors,
            "warnings": self.warnings,
        }


@dataclass
class FormulaCheckResult:
    """Result of checking one or more formulas."""

    reports: list[FormulaReport] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return all(r.valid for r in self.reports)

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "formulas": [r.to_dict() for r in self.reports],
        }


def check_formula(name: str, path: Path) -> FormulaReport:
    report = FormulaReport(name=name, path=path)

    try:
        formula = load_formula(path)
    except FormulaError as e:
        report.errors.append(str(e))
        return report

    report.versions = formula.sorted_versions()
    if formula.name != path.stem:
        report.warnings.append(f"Formula name '{formula.name}' does not match file name '{path.stem}'")

    for version in report.versions:
        try:
            formula.descriptor(version=version).validate()
        except FormulaError as e:
            report.errors.append(f"{version}: {e}")

    if formula.head is not None:
        try:
            formula.descriptor(head=True).validate()
        except FormulaError as e:
            report.errors.append(f"HEAD: {e}")
    else:
        report.warnings.append("No head reference; head installs are unavailable.")

    # Each version's checksum must stand on its own
    seen: dict[str, str] = {}
    for version in report.versions:
        digest = formula.versions[version].sha256.lower()
        if digest in seen:
            report.warnings.append(
                f"Versions {seen[digest]} and {version} share the checksum {digest[:12]}…"
            )
        else:
            seen[digest] = version

    if formula.build.system in ("cargo", "go") and not formula.depends_on:
        report.warnings.append(f"Build system '{formula.build.system}' but no build dependency declared.")

    return report


def check_formulas(
    names: list[str] | None = None,
    paths: list[Path] | None = None,
) -> FormulaCheckResult:
    """Check the named formulas, or every reachable formula.

    Unknown names are reported as errors.
    """
    available = list_formulas(paths)
    result = FormulaCheckResult()

    for name in names or sorted(available):
        path = available.get(name)
        if path is None and Path(name).is_file():
            path = Path(name)
        if path is None:
            report = FormulaReport(name=name, path=Path(name))
            report.errors.append(f"No formula named '{name}'")
            result.reports.append(report)
            continue
        result.reports.append(check_formula(name, path))

    return result
