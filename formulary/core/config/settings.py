"""
Settings — where formulary keeps formulas, locks, scratch and installs.

Resolved in precedence order:
    CLI flags  >  FORMULARY_* env vars  >  <home>/config.yml  >  defaults

The home directory holds ``config.yml``, the ``locks/`` directory and
the ``installs.ndjson`` audit ledger.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field

from formulary.core.errors import ConfigError

logger = logging.getLogger(__name__)

HOME_ENV = "FORMULARY_HOME"
PREFIX_ENV = "FORMULARY_PREFIX"
SCRATCH_ENV = "FORMULARY_SCRATCH_DIR"
FORMULA_PATH_ENV = "FORMULARY_FORMULA_PATH"

SETTINGS_FILE = "config.yml"
LEDGER_FILE = "installs.ndjson"


def _default_home() -> Path:
    return Path.home() / ".local" / "share" / "formulary"


def _default_prefix() -> Path:
    return Path.home() / ".local"


class Settings(BaseModel):
    """Resolved runtime settings."""

    home: Path = Field(default_factory=_default_home)
    prefix: Path = Field(default_factory=_default_prefix)
    scratch_dir: Path | None = None       # None = system temp dir
    formula_paths: list[Path] = Field(default_factory=list)

    @property
    def lock_dir(self) -> Path:
        return self.home / "locks"

    @property
    def ledger_path(self) -> Path:
        return self.home / LEDGER_FILE

    def with_prefix(self, prefix: Path | None) -> Settings:
        if prefix is None:
            return self
        return self.model_copy(update={"prefix": prefix.expanduser().resolve()})


def load_settings(env: dict[str, str] | None = None) -> Settings:
    """Build settings from the environment and the optional config file.

    Args:
        env: Environment mapping (default: ``os.environ``).

    Raises:
        ConfigError: If ``config.yml`` exists but is not valid.
    """
    env = dict(os.environ if env is None else env)

    home = Path(env[HOME_ENV]).expanduser() if env.get(HOME_ENV) else _default_home()
    data = _read_settings_file(home / SETTINGS_FILE)
    data["home"] = home

    if env.get(PREFIX_ENV):
        data["prefix"] = env[PREFIX_ENV]
    if env.get(SCRATCH_ENV):
        data["scratch_dir"] = env[SCRATCH_ENV]
    if env.get(FORMULA_PATH_ENV):
        extra = [p for p in env[FORMULA_PATH_ENV].split(os.pathsep) if p]
        data["formula_paths"] = extra + list(data.get("formula_paths") or [])

    try:
        settings = Settings.model_validate(data)
    except Exception as e:
        raise ConfigError(f"Invalid settings: {e}") from e

    settings.prefix = settings.prefix.expanduser()
    settings.formula_paths = [p.expanduser() for p in settings.formula_paths]
    if settings.scratch_dir is not None:
        settings.scratch_dir = settings.scratch_dir.expanduser()

    logger.debug("Settings: home=%s prefix=%s", settings.home, settings.prefix)
    return settings


def _read_settings_file(path: Path) -> dict:
    if not path.is_file():
        return {}

    logger.debug("Loading settings from %s", path)
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")
    return data
