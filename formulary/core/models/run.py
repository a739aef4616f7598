"""
Install run records — scratch context, run state and the result.

An install run moves strictly forward through

    pending → fetched → verified → built → tested → done

and any failure lands in the terminal ``failed`` state. There are no
partial-success states.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    PENDING = "pending"
    FETCHED = "fetched"
    VERIFIED = "verified"
    BUILT = "built"
    TESTED = "tested"
    DONE = "done"
    FAILED = "failed"


RUN_ORDER: tuple[RunState, ...] = (
    RunState.PENDING,
    RunState.FETCHED,
    RunState.VERIFIED,
    RunState.BUILT,
    RunState.TESTED,
    RunState.DONE,
)


def can_transition(current: RunState, target: RunState) -> bool:
    """Whether ``current → target`` is a legal step of an install run."""
    if current in (RunState.DONE, RunState.FAILED):
        return False
    if target is RunState.FAILED:
        return True
    return RUN_ORDER.index(target) == RUN_ORDER.index(current) + 1


@dataclass
class BuildContext:
    """Private scratch space for exactly one install run.

    ``work_dir`` is created fresh per run and removed when the context
    exits, on success and on failure alike. ``stage_dir`` is the staged
    install prefix the builder writes to. ``install_prefix`` is only
    recorded here; nothing creates it before the commit step.
    """

    work_dir: Path
    install_prefix: Path
    keep: bool = False

    @classmethod
    def create(
        cls,
        name: str,
        install_prefix: Path,
        scratch_root: Path | None = None,
        keep: bool = False,
    ) -> BuildContext:
        if scratch_root is not None:
            scratch_root.mkdir(parents=True, exist_ok=True)
        work_dir = Path(tempfile.mkdtemp(prefix=f"formulary-{name}-", dir=scratch_root))
        logger.debug("Scratch directory for %s: %s", name, work_dir)
        return cls(work_dir=work_dir, install_prefix=install_prefix, keep=keep)

    @property
    def download_dir(self) -> Path:
        path = self.work_dir / "download"
        path.mkdir(exist_ok=True)
        return path

    @property
    def source_dir(self) -> Path:
        return self.work_dir / "src"

    @property
    def stage_dir(self) -> Path:
        path = self.work_dir / "stage"
        path.mkdir(exist_ok=True)
        return path

    def cleanup(self) -> None:
        if self.keep:
            logger.warning("Keeping scratch directory %s", self.work_dir)
            return
        shutil.rmtree(self.work_dir, ignore_errors=True)

    def __enter__(self) -> BuildContext:
        return self

    def __exit__(self, *exc: object) -> None:
        self.cleanup()


@dataclass
class StepRecord:
    """Outcome of one pipeline step."""

    name: str
    status: str = "ok"           # ok, skipped, failed
    duration_ms: int = 0
    detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "duration_ms": self.duration_ms,
            "detail": self.detail,
        }


@dataclass
class InstallResult:
    """Outcome of an install run (or of the build step alone)."""

    success: bool
    installed_binary_path: Path | None = None
    error_detail: str | None = None

    formula: str = ""
    version: str = ""
    mode: str = ""
    state: RunState = RunState.PENDING
    operation_id: str = ""
    sha256: str | None = None
    verified: bool = False
    smoke_output: str = ""
    duration_ms: int = 0
    steps: list[StepRecord] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "installed_binary_path": (
                str(self.installed_binary_path) if self.installed_binary_path else None
            ),
            "error_detail": self.error_detail,
            "formula": self.formula,
            "version": self.version,
            "mode": self.mode,
            "state": self.state.value,
            "operation_id": self.operation_id,
            "sha256": self.sha256,
            "verified": self.verified,
            "smoke_output": self.smoke_output,
            "duration_ms": self.duration_ms,
            "steps": [s.to_dict() for s in self.steps],
        }
