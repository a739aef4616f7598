"""
Formula loader — reads ``<name>.yml`` formula files into Formula models.

Formulas are looked up in the user's formula directories first, then
in the formulas bundled with the package. A name that points at an
existing ``.yml`` file is loaded directly.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from formulary.core.errors import ConfigError, MalformedDescriptor
from formulary.core.models.formula import Formula

logger = logging.getLogger(__name__)

FORMULA_SUFFIX = ".yml"

BUNDLED_FORMULA_DIR = Path(__file__).resolve().parents[2] / "data" / "formulas"


def search_paths(extra: list[Path] | None = None) -> list[Path]:
    """Formula directories in lookup order (user dirs shadow bundled ones)."""
    return [*(extra or []), BUNDLED_FORMULA_DIR]


def find_formula(name: str, paths: list[Path] | None = None) -> Path:
    """Locate a formula file by name or path.

    Args:
        name: Formula name (``beast``) or path to a formula file.
        paths: Extra formula directories searched before the bundled ones.

    Raises:
        ConfigError: If no formula with that name exists.
    """
    candidate = Path(name).expanduser()
    if candidate.suffix in (FORMULA_SUFFIX, ".yaml") and candidate.is_file():
        return candidate

    searched = search_paths(paths)
    for directory in searched:
        path = directory / f"{name}{FORMULA_SUFFIX}"
        if path.is_file():
            return path

    raise ConfigError(
        f"No formula named '{name}'",
        searched=[str(p) for p in searched],
    )


def load_formula(path: Path) -> Formula:
    """Load and validate one formula file.

    Raises:
        ConfigError: If the file is missing or unreadable.
        MalformedDescriptor: If the YAML or its schema is invalid.
    """
    if not path.is_file():
        raise ConfigError(f"Formula file not found: {path}")

    logger.debug("Loading formula from %s", path)

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise MalformedDescriptor(f"Invalid YAML in {path}: {e}", path=str(path)) from e

    if not isinstance(data, dict):
        raise MalformedDescriptor(
            f"Expected a YAML mapping in {path}, got {type(data).__name__}", path=str(path)
        )

    try:
        formula = Formula.model_validate(data)
    except ValidationError as e:
        raise MalformedDescriptor(f"Invalid formula {path}: {e}", path=str(path)) from e

    logger.info("Loaded formula '%s' (%d versions)", formula.name, len(formula.versions))
    return formula


def resolve_formula(name: str, paths: list[Path] | None = None) -> Formula:
    """Find and load a formula in one call."""
    return load_formula(find_formula(name, paths))


def list_formulas(paths: list[Path] | None = None) -> dict[str, Path]:
    """All reachable formula files keyed by name, first match wins."""
    found: dict[str, Path] = {}
    for directory in search_paths(paths):
        if not directory.is_dir():
            continue
        for path in sorted(directory.glob(f"*{FORMULA_SUFFIX}")):
            found.setdefault(path.stem, path)
    return found
