"""
Tests for the install pipeline — full runs against local fake releases.

Every run uses the ``script`` build system, a ``file://`` artifact URL
and an isolated FORMULARY_HOME, so nothing touches the network or the
real install prefix.
"""

import json
import re
from pathlib import Path

import pytest

from formulary.core.config.loader import resolve_formula
from formulary.core.errors import (
    BuildFailure,
    ChecksumMismatch,
    ConfigError,
    InstallLocked,
    MalformedDescriptor,
    MissingToolchain,
    NotFound,
    SmokeTestFailure,
)
from formulary.core.models import RunState
from formulary.core.persistence.audit import AuditWriter
from formulary.core.persistence.lock import install_lock
from formulary.core.services.install import InstallRun, fetch_only, install
from formulary.core.services.install.pipeline import generate_operation_id


def _ledger(settings) -> list[dict]:
    return [e.model_dump() for e in AuditWriter(settings.ledger_path).read_all()]


def _prefix_files(prefix: Path) -> list[Path]:
    return sorted(p for p in prefix.rglob("*") if p.is_file()) if prefix.exists() else []


# ── Successful runs ─────────────────────────────────────────────


class TestInstall:
    """End-to-end install of a pinned release."""

    def test_happy_path(self, release, settings, env):
        formula = resolve_formula("beast", settings.formula_paths)
        result = install(formula, settings=settings)

        assert result.success is True
        assert result.state is RunState.DONE
        assert result.installed_binary_path == env.prefix / "bin" / "beast"
        assert result.installed_binary_path.is_file()
        assert result.version == "1.0.0"
        assert result.mode == "pinned"
        assert result.sha256 == release.sha256
        assert result.verified is True
        assert result.smoke_output == "beast 1.0.0"
        assert [s.name for s in result.steps] == ["fetch", "verify", "build", "smoke_test", "commit"]
        assert all(s.status == "ok" for s in result.steps)

    def test_scratch_removed(self, release, settings, env):
        install(resolve_formula("beast", settings.formula_paths), settings=settings)
        assert list(env.scratch.iterdir()) == []

    def test_keep_scratch(self, release, settings, env):
        install(resolve_formula("beast", settings.formula_paths), settings=settings, keep_scratch=True)
        kept = list(env.scratch.iterdir())
        assert len(kept) == 1
        assert kept[0].name.startswith("formulary-beast-")

    def test_idempotent(self, release, settings, env):
        """Two installs of the same descriptor leave byte-identical binaries."""
        formula = resolve_formula("beast", settings.formula_paths)
        first = install(formula, settings=settings).installed_binary_path.read_bytes()
        second = install(formula, settings=settings).installed_binary_path.read_bytes()
        assert first == second
        assert [e["status"] for e in _ledger(settings)] == ["done", "done"]

    def test_prefix_override(self, release, settings, tmp_path: Path):
        other = tmp_path / "elsewhere"
        result = install(resolve_formula("beast", settings.formula_paths), settings=settings, prefix=other)
        assert result.installed_binary_path == other.resolve() / "bin" / "beast"
        assert result.installed_binary_path.is_file()

    def test_ledger_entry(self, release, settings, env):
        result = install(resolve_formula("beast", settings.formula_paths), settings=settings)
        (entry,) = _ledger(settings)
        assert entry["operation_id"] == result.operation_id
        assert entry["formula"] == "beast"
        assert entry["version"] == "1.0.0"
        assert entry["status"] == "done"
        assert entry["state"] == "done"
        assert entry["sha256"] == release.sha256
        assert entry["verified"] is True
        assert entry["install_prefix"] == str(env.prefix)
        assert entry["error"] is None


class TestHeadInstall:
    """Head mode builds from a branch with no checksum."""

    def test_head(self, git_repo: Path, write_formula, settings, env):
        write_formula(head={"url": git_repo.as_uri(), "branch": "main"})
        formula = resolve_formula("beast", settings.formula_paths)

        result = install(formula, head=True, settings=settings)

        assert result.success is True
        assert result.mode == "head"
        assert result.version == "HEAD"
        assert result.verified is False
        assert result.sha256 is None
        assert result.smoke_output == "beast HEAD"
        verify_step = next(s for s in result.steps if s.name == "verify")
        assert verify_step.status == "skipped"

    def test_head_logs_reduced_trust(self, git_repo: Path, write_formula, settings, caplog):
        write_formula(head={"url": git_repo.as_uri(), "branch": "main"})
        with caplog.at_level("WARNING"):
            install(resolve_formula("beast", settings.formula_paths), head=True, settings=settings)
        assert "checksum verification skipped" in caplog.text

    def test_pinned_is_default_when_both_exist(self, release, git_repo, write_formula, settings):
        write_formula(
            versions={"1.0.0": {"url": release.url, "sha256": release.sha256}},
            head={"url": git_repo.as_uri()},
        )
        result = install(resolve_formula("beast", settings.formula_paths), settings=settings)
        assert result.mode == "pinned"
        assert result.verified is True


# ── Failing runs ────────────────────────────────────────────────


class TestInstallFailures:
    """Every failure stops the run and leaves the prefix untouched."""

    def test_checksum_mismatch_never_builds(self, make_release, settings, env):
        release = make_release(sha256="0" * 64)
        with pytest.raises(ChecksumMismatch) as exc:
            install(resolve_formula("beast", settings.formula_paths), settings=settings)

        assert exc.value.actual == release.sha256
        assert exc.value.details["state"] == "fetched"
        assert _prefix_files(env.prefix) == []

        (entry,) = _ledger(settings)
        assert entry["status"] == "failed"
        assert entry["state"] == "failed"
        assert entry["error"] == "checksum_mismatch"
        assert entry["context"] == {"failed_step": "verify"}

    def test_build_failure_leaves_prefix_untouched(self, make_release, scripts, settings, env):
        make_release(script=scripts.failing)
        (env.prefix / "bin").mkdir(parents=True)
        (env.prefix / "bin" / "beast").write_text("previous install\n")

        with pytest.raises(BuildFailure) as exc:
            install(resolve_formula("beast", settings.formula_paths), settings=settings)

        assert exc.value.exit_code == 101
        assert "mismatched types" in exc.value.stderr_tail
        assert (env.prefix / "bin" / "beast").read_text() == "previous install\n"
        assert list(env.scratch.iterdir()) == []
        assert _ledger(settings)[0]["context"] == {"failed_step": "build"}

    def test_smoke_failure_is_not_committed(self, make_release, scripts, settings, env):
        make_release(script=scripts.broken_binary)
        with pytest.raises(SmokeTestFailure) as exc:
            install(resolve_formula("beast", settings.formula_paths), settings=settings)
        assert exc.value.exit_code == 139
        assert "segfault" in exc.value.output_tail
        assert _prefix_files(env.prefix) == []
        assert _ledger(settings)[0]["error"] == "smoke_test_failure"

    def test_not_found(self, write_formula, settings, env, tmp_path: Path):
        write_formula(versions={"1.0.0": {
            "url": (tmp_path / "gone.tar.gz").as_uri(), "sha256": "a" * 64,
        }})
        with pytest.raises(NotFound):
            install(resolve_formula("beast", settings.formula_paths), settings=settings)
        assert list(env.scratch.iterdir()) == []
        assert _ledger(settings)[0]["error"] == "not_found"

    def test_malformed_descriptor_is_rejected_before_io(self, write_formula, settings, env):
        """A truncated checksum fails validation before any scratch is made."""
        write_formula(versions={"1.0.2": {
            "url": "https://github.com/dominikwilkowski/beast/archive/refs/tags/v1.0.2.tar.gz",
            "sha256": "c651ead8",
        }})
        with pytest.raises(MalformedDescriptor):
            install(resolve_formula("beast", settings.formula_paths), settings=settings)
        assert not env.scratch.exists()

        (entry,) = _ledger(settings)
        assert entry["state"] == "pending"
        assert entry["error"] == "malformed_descriptor"
        assert entry["context"] == {"failed_step": "prepare"}

    def test_unknown_version(self, release, settings):
        with pytest.raises(MalformedDescriptor):
            install(resolve_formula("beast", settings.formula_paths), version="2.0.0", settings=settings)

    def test_missing_toolchain_checked_first(self, write_formula, settings, env, tmp_path: Path):
        write_formula(
            versions={"1.0.0": {"url": (tmp_path / "gone.tar.gz").as_uri(), "sha256": "a" * 64}},
            depends_on=[{"name": "rust", "tools": ["cargo-not-installed-here"]}],
        )
        with pytest.raises(MissingToolchain) as exc:
            install(resolve_formula("beast", settings.formula_paths), settings=settings)
        assert exc.value.missing == ["cargo-not-installed-here"]
        assert not env.scratch.exists()
        assert _ledger(settings)[0]["error"] == "missing_toolchain"

    def test_locked(self, release, settings, env):
        formula = resolve_formula("beast", settings.formula_paths)
        with install_lock(settings.lock_dir, "beast"):
            with pytest.raises(InstallLocked) as exc:
                install(formula, settings=settings)
        assert _prefix_files(env.prefix) == []

        (entry,) = _ledger(settings)
        assert entry["error"] == "locked"
        assert entry["version"] == "1.0.0"
        assert entry["operation_id"] == exc.value.details["operation_id"]

    @pytest.mark.parametrize("script_name", ["failing", "broken_binary"])
    def test_failed_run_does_not_create_prefix(self, make_release, scripts, settings, env, script_name):
        make_release(script=getattr(scripts, script_name))
        assert not env.prefix.exists()
        with pytest.raises((BuildFailure, SmokeTestFailure)):
            install(resolve_formula("beast", settings.formula_paths), settings=settings)
        assert not env.prefix.exists()

    def test_checksum_mismatch_does_not_create_prefix(self, make_release, settings, env):
        make_release(sha256="0" * 64)
        with pytest.raises(ChecksumMismatch):
            install(resolve_formula("beast", settings.formula_paths), settings=settings)
        assert not env.prefix.exists()

    def test_prefix_is_a_file(self, release, settings, env):
        env.prefix.parent.mkdir(parents=True, exist_ok=True)
        env.prefix.write_text("not a directory\n")
        with pytest.raises(ConfigError, match="not a directory"):
            install(resolve_formula("beast", settings.formula_paths), settings=settings)
        assert not env.scratch.exists()
        assert _ledger(settings)[0]["error"] == "config"

    def test_scratch_root_is_a_file(self, release, settings, env):
        env.scratch.parent.mkdir(parents=True, exist_ok=True)
        env.scratch.write_text("not a directory\n")
        with pytest.raises(ConfigError, match="scratch directory") as exc:
            install(resolve_formula("beast", settings.formula_paths), settings=settings)
        assert exc.value.details["state"] == "pending"
        assert not env.prefix.exists()
        (entry,) = _ledger(settings)
        assert entry["state"] == "failed"
        assert entry["error"] == "config"

    def test_lock_released_after_failure(self, make_release, scripts, settings):
        make_release(script=scripts.failing)
        formula = resolve_formula("beast", settings.formula_paths)
        with pytest.raises(BuildFailure):
            install(formula, settings=settings)
        with install_lock(settings.lock_dir, "beast"):
            pass


# ── State machine ───────────────────────────────────────────────


class TestInstallRun:

    def test_illegal_transition(self, release, settings):
        formula = resolve_formula("beast", settings.formula_paths)
        run = InstallRun(formula, formula.descriptor(), "pinned", settings)
        with pytest.raises(RuntimeError, match="Illegal"):
            run.advance(RunState.BUILT)

    def test_failed_is_terminal(self, release, settings):
        formula = resolve_formula("beast", settings.formula_paths)
        run = InstallRun(formula, formula.descriptor(), "pinned", settings)
        run.advance(RunState.FAILED)
        with pytest.raises(RuntimeError):
            run.advance(RunState.FETCHED)

    def test_operation_id_format(self):
        assert re.fullmatch(r"op-\d{8}-\d{6}-[0-9a-f]{6}", generate_operation_id())

    def test_result_is_json_serialisable(self, release, settings):
        result = install(resolve_formula("beast", settings.formula_paths), settings=settings)
        data = json.loads(json.dumps(result.to_dict()))
        assert data["state"] == "done"


# ── Fetch only ──────────────────────────────────────────────────


class TestFetchOnly:

    def test_downloads_and_verifies(self, release, settings, tmp_path: Path):
        path, digest = fetch_only(resolve_formula("beast", settings.formula_paths), None, tmp_path / "dl")
        assert path.read_bytes() == release.tarball.read_bytes()
        assert digest == release.sha256

    def test_bad_artifact_deleted(self, make_release, settings, tmp_path: Path):
        make_release(sha256="f" * 64)
        with pytest.raises(ChecksumMismatch):
            fetch_only(resolve_formula("beast", settings.formula_paths), "1.0.0", tmp_path / "dl")
        assert list((tmp_path / "dl").iterdir()) == []
