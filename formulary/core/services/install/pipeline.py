"""
Install pipeline — one formula, one strictly sequential run.

Flow:
    validate → toolchain → lock → fetch → verify → build → smoke test → commit

State:
    pending → fetched → verified → built → tested → done   (else failed)

Every failure stops the run at once: the scratch directory is removed,
the install prefix is untouched (the staged tree is committed only
after the smoke test), the run is written to the ledger and the error
propagates to the caller unchanged.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import TypeVar

from formulary.core.config.settings import Settings, load_settings
from formulary.core.errors import ConfigError, FormulaError
from formulary.core.models.formula import ArtifactDescriptor, Formula
from formulary.core.models.run import (
    BuildContext,
    InstallResult,
    RunState,
    StepRecord,
    can_transition,
)
from formulary.core.persistence.audit import AuditEntry, AuditWriter
from formulary.core.persistence.lock import install_lock
from formulary.core.services.install.builder import (
    build,
    check_toolchain,
    commit_stage,
    unpack,
)
from formulary.core.services.install.fetcher import fetch, fetch_url
from formulary.core.services.install.smoke import smoke_test
from formulary.core.services.install.verifier import verify

logger = logging.getLogger(__name__)

T = TypeVar("T")


def generate_operation_id() -> str:
    """Unique id for one install run."""
    now = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
    return f"op-{now}-{uuid.uuid4().hex[:6]}"


class InstallRun:
    """A single install run and its state machine."""

    def __init__(
        self,
        formula: Formula,
        descriptor: ArtifactDescriptor,
        mode: str,
        settings: Settings,
    ):
        self.formula = formula
        self.descriptor = descriptor
        self.mode = mode
        self.settings = settings
        self.state = RunState.PENDING
        self._error_category: str | None = None
        self.result = InstallResult(
            success=False,
            formula=formula.name,
            version=descriptor.version,
            mode=mode,
            operation_id=generate_operation_id(),
        )

    # ── State machine ──────────────────────────────────────────

    def advance(self, target: RunState) -> None:
        if not can_transition(self.state, target):
            raise RuntimeError(f"Illegal install state transition {self.state.value} → {target.value}")
        logger.info("%s %s: %s → %s", self.formula.name, self.descriptor.version,
                    self.state.value, target.value)
        self.state = target
        self.result.state = target

    def _step(self, name: str, target: RunState, fn: Callable[[], T]) -> T:
        start = time.monotonic()
        try:
            value = fn()
        except Exception as e:
            self.result.steps.append(
                StepRecord(name=name, status="failed", duration_ms=_ms_since(start), detail=str(e))
            )
            raise
        self.result.steps.append(StepRecord(name=name, duration_ms=_ms_since(start)))
        self.advance(target)
        return value

    # ── Run ────────────────────────────────────────────────────

    def execute(self, keep_scratch: bool = False) -> InstallResult:
        """Run every step. Returns the result or raises the first error."""
        start = time.monotonic()
        prefix = self.settings.prefix
        binary_name = self.formula.build.binary

        try:
            with self._open_context(prefix, keep_scratch) as ctx:
                artifact = self._step(
                    "fetch", RunState.FETCHED,
                    lambda: fetch(self.descriptor, self.mode, ctx.download_dir),
                )
                self._verify(artifact)

                staged = self._step(
                    "build", RunState.BUILT,
                    lambda: build(
                        unpack(artifact, ctx.source_dir), ctx.stage_dir, self.formula.build
                    ),
                )
                assert staged.installed_binary_path is not None

                self.result.smoke_output = self._step(
                    "smoke_test", RunState.TESTED,
                    lambda: smoke_test(staged.installed_binary_path, self.formula.test.args),
                )

                self._step("commit", RunState.DONE, lambda: commit_stage(ctx.stage_dir, prefix))
        except Exception as e:
            self.result.error_detail = str(e)
            self._error_category = e.category if isinstance(e, FormulaError) else type(e).__name__
            if isinstance(e, FormulaError):
                e.details.setdefault("operation_id", self.result.operation_id)
                e.details.setdefault("state", self.state.value)
            self.advance(RunState.FAILED)
            raise
        finally:
            self.result.duration_ms = _ms_since(start)
            self._record(prefix)

        self.result.success = True
        self.result.installed_binary_path = prefix / "bin" / binary_name
        return self.result

    def _open_context(self, prefix: Path, keep_scratch: bool) -> BuildContext:
        scratch_root = self.settings.scratch_dir
        try:
            return BuildContext.create(
                self.formula.name,
                install_prefix=prefix,
                scratch_root=scratch_root,
                keep=keep_scratch,
            )
        except OSError as e:
            raise ConfigError(
                f"Cannot create a scratch directory under {scratch_root or 'the system temp dir'}: {e}",
                scratch_dir=str(scratch_root or ""),
            ) from e

    def _verify(self, artifact: Path) -> None:
        if self.mode == "head":
            logger.warning(
                "Head install of %s: checksum verification skipped, "
                "trusting the source-control transport", self.formula.name,
            )
            self.result.steps.append(
                StepRecord(name="verify", status="skipped", detail="head mode: reduced trust")
            )
            self.advance(RunState.VERIFIED)
            return

        self.result.sha256 = self._step(
            "verify", RunState.VERIFIED,
            lambda: verify(artifact, self.descriptor.checksum, self.descriptor.checksum_algorithm),
        )
        self.result.verified = True

    def _record(self, prefix: Path) -> None:
        failed = [s.name for s in self.result.steps if s.status == "failed"]
        AuditWriter(self.settings.ledger_path).write(
            AuditEntry(
                operation_id=self.result.operation_id,
                formula=self.formula.name,
                version=self.descriptor.version,
                mode=self.mode,
                install_prefix=str(prefix),
                status="done" if self.state is RunState.DONE else "failed",
                state=self.state.value,
                sha256=self.result.sha256,
                verified=self.result.verified,
                duration_ms=self.result.duration_ms,
                error=self._error_category,
                error_detail=self.result.error_detail,
                context={"failed_step": failed[-1]} if failed else {},
            )
        )


def install(
    formula: Formula,
    *,
    version: str | None = None,
    head: bool = False,
    prefix: Path | None = None,
    settings: Settings | None = None,
    keep_scratch: bool = False,
) -> InstallResult:
    """Install one formula.

    Runs rejected before the lock (bad descriptor, missing toolchain,
    unusable prefix, lock held) are written to the ledger with state
    ``pending``; every later failure is recorded by the run itself.

    Args:
        formula: The loaded formula.
        version: Version to install (default: the formula's default).
        head: Build from the head branch instead of a pinned release.
        prefix: Install prefix (default: from settings).
        settings: Runtime settings (default: ``load_settings()``).
        keep_scratch: Leave the scratch directory for inspection.

    Returns:
        InstallResult with the path of the installed binary.

    Raises:
        FormulaError: The first failure, with its structured detail.
    """
    settings = (settings or load_settings()).with_prefix(prefix)
    descriptor: ArtifactDescriptor | None = None
    run: InstallRun | None = None

    try:
        descriptor = formula.descriptor(version=version, head=head)
        mode = descriptor.validate()
        check_toolchain(formula.depends_on)
        _check_prefix(settings.prefix)

        with install_lock(settings.lock_dir, descriptor.identity):
            run = InstallRun(formula, descriptor, mode, settings)
            return run.execute(keep_scratch=keep_scratch)
    except FormulaError as e:
        if run is None:
            label = descriptor.version if descriptor else (version or ("HEAD" if head else ""))
            _record_rejected(formula.name, label, "head" if head else "pinned", settings, e)
        raise


def _check_prefix(prefix: Path) -> None:
    if prefix.exists() and not prefix.is_dir():
        raise ConfigError(f"Install prefix {prefix} exists and is not a directory", prefix=str(prefix))


def _record_rejected(name: str, version: str, mode: str, settings: Settings, error: FormulaError) -> None:
    operation_id = generate_operation_id()
    error.details.setdefault("operation_id", operation_id)
    error.details.setdefault("state", RunState.PENDING.value)
    AuditWriter(settings.ledger_path).write(
        AuditEntry(
            operation_id=operation_id,
            formula=name,
            version=version,
            mode=mode,
            install_prefix=str(settings.prefix),
            status="failed",
            state=RunState.PENDING.value,
            error=error.category,
            error_detail=str(error),
            context={"failed_step": "prepare"},
        )
    )


def fetch_only(formula: Formula, version: str | None, dest_dir: Path) -> tuple[Path, str]:
    """Download and verify one pinned artifact into ``dest_dir``.

    An artifact that fails verification is deleted.

    Returns:
        (artifact path, sha256)
    """
    descriptor = formula.descriptor(version=version)
    descriptor.validate()

    dest_dir.mkdir(parents=True, exist_ok=True)
    artifact = fetch_url(descriptor.source_url, dest_dir)
    try:
        digest = verify(artifact, descriptor.checksum, descriptor.checksum_algorithm)
    except FormulaError:
        artifact.unlink(missing_ok=True)
        raise
    return artifact, digest


def _ms_since(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
