"""
Builder — turn a verified source tree into an installed binary.

The build command is fixed per build system; descriptor data (URLs,
checksums) never reaches the argv. Builds write into a staged prefix
inside the scratch directory, and ``commit_stage`` copies the staged
tree into the real prefix only once the run has passed its smoke test.
"""

from __future__ import annotations

import contextlib
import logging
import os
import shutil
import tarfile
from collections.abc import Iterator
from pathlib import Path

from formulary.core.errors import BuildFailure, ConfigError, MissingToolchain
from formulary.core.models.formula import BuildSpec, Dependency
from formulary.core.models.run import InstallResult, RunState
from formulary.core.services.install.subprocess_runner import run_command

logger = logging.getLogger(__name__)


# ── Toolchain ───────────────────────────────────────────────────


def check_toolchain(depends_on: list[Dependency]) -> None:
    """Make sure every build-time tool is on PATH.

    Raises:
        MissingToolchain: For the first dependency with missing tools.
    """
    for dep in depends_on:
        missing = [tool for tool in dep.required_tools if shutil.which(tool) is None]
        if missing:
            raise MissingToolchain(dep.name, missing)
        logger.debug("Build dependency %s satisfied (%s)", dep.name, ", ".join(dep.required_tools))


# ── Source tree ─────────────────────────────────────────────────


def unpack(artifact: Path, dest: Path) -> Path:
    """Extract ``artifact`` into ``dest`` and return the source root.

    Release tarballs usually wrap everything in one top-level directory
    (``beast-1.0.0/``); that directory becomes the source root. A
    directory artifact (a head checkout) is returned unchanged.

    Raises:
        BuildFailure: The archive cannot be read or has unsafe members.
    """
    if artifact.is_dir():
        return artifact

    dest.mkdir(parents=True, exist_ok=True)
    try:
        with tarfile.open(artifact, "r:*") as tar:
            tar.extractall(dest, filter="data")
    except (tarfile.TarError, OSError) as e:
        raise BuildFailure(f"Cannot unpack {artifact.name}: {e}", stderr_tail=str(e)) from e

    entries = list(dest.iterdir())
    if len(entries) == 1 and entries[0].is_dir():
        return entries[0]
    return dest


@contextlib.contextmanager
def build_directory(source_root: Path, subdir: str = ".") -> Iterator[Path]:
    """Work inside ``source_root/subdir`` for the duration of the block.

    The previous working directory is restored on every exit path.

    Raises:
        BuildFailure: The subdirectory is missing or outside the tree.
    """
    root = source_root.resolve()
    target = (root / subdir).resolve()
    if not target.is_relative_to(root):
        raise BuildFailure(f"Build directory {subdir!r} escapes the source tree")
    if not target.is_dir():
        raise BuildFailure(f"Build directory {subdir!r} not found in {root.name}")

    with contextlib.chdir(target):
        yield target


# ── Build ───────────────────────────────────────────────────────


def build_command(spec: BuildSpec, prefix: Path) -> list[str]:
    """The one external command for this build recipe, installing into ``prefix``."""
    if spec.system == "cargo":
        return ["cargo", "install", "--locked", "--root", str(prefix), "--path", "."]
    if spec.system == "go":
        return ["go", "build", "-trimpath", "-o", str(prefix / "bin" / spec.binary), "."]
    if spec.system == "make":
        return ["make", "install", f"PREFIX={prefix}"]
    if spec.system == "script":
        return ["sh", spec.script, str(prefix)]
    raise BuildFailure(f"Unknown build system {spec.system!r}")


def build(source_dir: Path, install_prefix: Path, spec: BuildSpec) -> InstallResult:
    """Build ``source_dir`` and install into ``install_prefix``.

    Args:
        source_dir: Unpacked, verified source root.
        install_prefix: Destination prefix (the run's staged prefix).
        spec: The formula's build recipe.

    Returns:
        InstallResult pointing at ``<prefix>/bin/<binary>``.

    Raises:
        BuildFailure: The command exited non-zero (exit code and stderr
            tail preserved), could not run, or produced no binary.
    """
    prefix = install_prefix.resolve()
    prefix.mkdir(parents=True, exist_ok=True)
    if spec.system == "go":
        (prefix / "bin").mkdir(exist_ok=True)

    with build_directory(source_dir, spec.subdir) as build_dir:
        if spec.system == "script" and not (build_dir / spec.script).is_file():
            raise BuildFailure(f"Build script {spec.script!r} not found in {spec.subdir!r}")

        cmd = build_command(spec, prefix)
        logger.info("Building with %s in %s", cmd[0], build_dir)
        result = run_command(cmd)

    if not result["ok"]:
        raise BuildFailure(
            f"{spec.system} build failed: {result.get('error', 'unknown error')}",
            exit_code=result["returncode"],
            stderr_tail=result.get("stderr", ""),
        )

    binary = prefix / "bin" / spec.binary
    if not binary.is_file():
        raise BuildFailure(
            f"Build succeeded but did not produce bin/{spec.binary}",
            exit_code=result["returncode"],
            stderr_tail=result.get("stderr", ""),
        )

    logger.debug("Build finished in %d ms", result["elapsed_ms"])
    return InstallResult(success=True, installed_binary_path=binary, state=RunState.BUILT)


# ── Commit ──────────────────────────────────────────────────────


def commit_stage(stage_dir: Path, install_prefix: Path) -> list[Path]:
    """Copy the staged tree into the install prefix.

    The prefix is created here, so a run that fails earlier leaves no
    trace of it. Each file is written next to its destination and moved
    into place with ``os.replace``, so no reader sees a half-written
    file. Dotfiles at the top of the stage are build-tool bookkeeping
    (``cargo install`` writes ``.crates.toml`` and ``.crates2.json``)
    and are never copied over the prefix's own.

    Returns:
        Installed file paths, in sorted order.

    Raises:
        ConfigError: The install prefix cannot be created.
        BuildFailure: A staged file cannot be written into the prefix.
    """
    try:
        install_prefix.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ConfigError(
            f"Cannot create install prefix {install_prefix}: {e}", prefix=str(install_prefix)
        ) from e

    installed: list[Path] = []
    for src in sorted(stage_dir.rglob("*")):
        rel = src.relative_to(stage_dir)
        if rel.parts[0].startswith("."):
            logger.debug("Not committing build metadata %s", rel)
            continue
        dest = install_prefix / rel
        if src.is_dir() and not src.is_symlink():
            dest.mkdir(parents=True, exist_ok=True)
            continue

        dest.parent.mkdir(parents=True, exist_ok=True)
        tmp = dest.with_name(f".{dest.name}.formulary-tmp")
        try:
            shutil.copy2(src, tmp, follow_symlinks=False)
            os.replace(tmp, dest)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise BuildFailure(f"Cannot install {rel} into {install_prefix}: {e}") from e
        installed.append(dest)

    logger.debug("Committed %d files to %s", len(installed), install_prefix)
    return installed
