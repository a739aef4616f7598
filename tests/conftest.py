"""
Shared test fixtures — an isolated formulary home and fake releases.

The fake ``beast`` release is a real tar.gz whose ``beast/install.sh``
writes a tiny shell program to ``<prefix>/bin/beast``. Formulas built
on it use the ``script`` build system, so a full install needs nothing
beyond ``sh``.
"""

from __future__ import annotations

import hashlib
import io
import shutil
import subprocess
import tarfile
import textwrap
from pathlib import Path
from types import SimpleNamespace

import pytest
import yaml

from formulary.core.config.settings import Settings, load_settings

INSTALL_SCRIPT = textwrap.dedent("""\
    #!/bin/sh
    set -e
    mkdir -p "$1/bin"
    cat > "$1/bin/beast" <<'EOF'
    #!/bin/sh
    echo "beast {version}"
    EOF
    chmod +x "$1/bin/beast"
""")

FAILING_SCRIPT = textwrap.dedent("""\
    #!/bin/sh
    echo "Compiling beast v1.0.0" >&2
    echo "error[E0308]: mismatched types" >&2
    exit 101
""")

BROKEN_BINARY_SCRIPT = textwrap.dedent("""\
    #!/bin/sh
    set -e
    mkdir -p "$1/bin"
    printf '#!/bin/sh\\necho "segfault" >&2\\nexit 139\\n' > "$1/bin/beast"
    chmod +x "$1/bin/beast"
""")


def sha256_of(path: Path) -> str:
    return hashlib.sha256(path.read_bytes()).hexdigest()


def _add_dir(tar: tarfile.TarFile, name: str) -> None:
    info = tarfile.TarInfo(name)
    info.type = tarfile.DIRTYPE
    info.mode = 0o755
    info.mtime = 0
    tar.addfile(info)


def _add_file(tar: tarfile.TarFile, name: str, content: str, mode: int = 0o644) -> None:
    data = content.encode()
    info = tarfile.TarInfo(name)
    info.size = len(data)
    info.mode = mode
    info.mtime = 0
    tar.addfile(info, io.BytesIO(data))


# ── Environment ─────────────────────────────────────────────────


@pytest.fixture
def env(tmp_path: Path, monkeypatch) -> SimpleNamespace:
    """Point every FORMULARY_* location into tmp_path."""
    ns = SimpleNamespace(
        home=tmp_path / "home",
        prefix=tmp_path / "prefix",
        scratch=tmp_path / "scratch",
        formulas=tmp_path / "formulas",
    )
    ns.formulas.mkdir()

    monkeypatch.setenv("FORMULARY_HOME", str(ns.home))
    monkeypatch.setenv("FORMULARY_PREFIX", str(ns.prefix))
    monkeypatch.setenv("FORMULARY_SCRATCH_DIR", str(ns.scratch))
    monkeypatch.setenv("FORMULARY_FORMULA_PATH", str(ns.formulas))
    for var in ("FORMULARY_LOG_LEVEL", "FORMULARY_LOG_FILE", "FORMULARY_LOG_FILE_LEVEL"):
        monkeypatch.delenv(var, raising=False)
    return ns


@pytest.fixture
def settings(env) -> Settings:
    return load_settings()


# ── Fake releases ───────────────────────────────────────────────


@pytest.fixture
def scripts() -> SimpleNamespace:
    """Build scripts for the success and failure paths."""
    return SimpleNamespace(
        install=INSTALL_SCRIPT.format(version="1.0.0"),
        failing=FAILING_SCRIPT,
        broken_binary=BROKEN_BINARY_SCRIPT,
    )


@pytest.fixture
def make_tarball(tmp_path: Path):
    """Factory: build a release tarball, return its path."""

    def _make(version: str = "1.0.0", script: str | None = None, filename: str | None = None) -> Path:
        out = tmp_path / "releases" / (filename or f"v{version}.tar.gz")
        out.parent.mkdir(parents=True, exist_ok=True)
        body = INSTALL_SCRIPT.format(version=version) if script is None else script
        root = f"beast-{version}"
        with tarfile.open(out, "w:gz") as tar:
            _add_dir(tar, root)
            _add_dir(tar, f"{root}/beast")
            _add_file(tar, f"{root}/beast/install.sh", body, mode=0o755)
            _add_file(tar, f"{root}/README.md", "# beast\n")
        return out

    return _make


@pytest.fixture
def write_formula(env):
    """Factory: write ``<name>.yml`` into the user formula directory."""

    def _write(
        name: str = "beast",
        *,
        versions: dict | None = None,
        head: dict | None = None,
        system: str = "script",
        subdir: str = "beast",
        depends_on: list | None = None,
        test_args: list[str] | None = None,
        **extra,
    ) -> Path:
        data: dict = {
            "name": name,
            "desc": "Test fixture formula",
            "homepage": "https://example.com/beast",
            "license": "GPL-3.0-or-later",
            "versions": versions or {},
            "depends_on": depends_on or [],
            "build": {"system": system, "binary": "beast", "subdir": subdir},
        }
        if head is not None:
            data["head"] = head
        if test_args is not None:
            data["test"] = {"args": test_args}
        data.update(extra)

        path = env.formulas / f"{name}.yml"
        path.write_text(yaml.safe_dump(data, sort_keys=False))
        return path

    return _write


@pytest.fixture
def make_release(make_tarball, write_formula):
    """Factory: tarball + formula for beast 1.0.0.

    ``sha256`` overrides the pinned checksum (default: the real one).
    Remaining keyword arguments go to ``write_formula``.
    """

    def _make(script: str | None = None, sha256: str | None = None, **formula_kwargs) -> SimpleNamespace:
        tarball = make_tarball("1.0.0", script=script)
        digest = sha256_of(tarball)
        path = write_formula(
            versions={"1.0.0": {"url": tarball.as_uri(), "sha256": sha256 or digest}},
            **formula_kwargs,
        )
        return SimpleNamespace(tarball=tarball, sha256=digest, url=tarball.as_uri(), formula_path=path)

    return _make


@pytest.fixture
def release(make_release) -> SimpleNamespace:
    """A buildable beast 1.0.0 release with a matching formula."""
    return make_release()


# ── Git ─────────────────────────────────────────────────────────


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """A local git repository whose ``main`` branch holds the beast sources."""
    if shutil.which("git") is None:
        pytest.skip("git not installed")

    repo = tmp_path / "beast-repo"
    (repo / "beast").mkdir(parents=True)
    script = repo / "beast" / "install.sh"
    script.write_text(INSTALL_SCRIPT.format(version="HEAD"))
    script.chmod(0o755)

    git = ["git", "-c", "user.name=Test", "-c", "user.email=test@example.com"]
    subprocess.run(["git", "init", "--quiet", "-b", "main", str(repo)], check=True)
    subprocess.run([*git, "-C", str(repo), "add", "."], check=True)
    subprocess.run([*git, "-C", str(repo), "commit", "--quiet", "-m", "init"], check=True)
    return repo
