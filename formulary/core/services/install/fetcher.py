"""
Fetcher — bring the artifact into the run's scratch directory.

Pinned mode downloads the exact descriptor URL; head mode makes a
shallow clone of the head branch. Failures raise NetworkError or
NotFound and leave no partial artifact behind. Nothing is retried:
retry policy belongs to the caller.
"""

from __future__ import annotations

import http.client
import logging
import re
import shutil
import urllib.error
import urllib.request
from pathlib import Path
from urllib.parse import unquote, urlsplit

from formulary import __version__
from formulary.core.errors import NetworkError, NotFound
from formulary.core.models.formula import ArtifactDescriptor
from formulary.core.services.install.subprocess_runner import run_command

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024
_USER_AGENT = f"formulary/{__version__}"

# HTTP statuses that mean "the resource does not exist"
_NOT_FOUND_STATUSES = {404, 410}

# git stderr fragments that mean the repository or branch does not exist
_GIT_NOT_FOUND_MARKERS = (
    "not found",
    "does not exist",
    "could not read username",
    "does not appear to be a git repository",
)


def fetch(descriptor: ArtifactDescriptor, mode: str, dest_dir: Path) -> Path:
    """Fetch the artifact selected by ``mode`` into ``dest_dir``.

    Args:
        descriptor: A validated descriptor.
        mode: ``"pinned"`` or ``"head"``.
        dest_dir: Scratch directory owned by this run.

    Returns:
        Path to the downloaded archive (pinned) or the checkout (head).

    Raises:
        NotFound: The remote artifact, repository or branch does not exist.
        NetworkError: Any other transport failure.
    """
    dest_dir.mkdir(parents=True, exist_ok=True)
    if mode == "head":
        assert descriptor.head_ref is not None
        return fetch_head(descriptor.head_ref.repo_url, descriptor.head_ref.branch, dest_dir)
    return fetch_url(descriptor.source_url, dest_dir)


def fetch_url(url: str, dest_dir: Path) -> Path:
    """Download ``url`` into ``dest_dir`` and return the file path."""
    target = dest_dir / artifact_filename(url)
    partial = target.with_name(target.name + ".part")

    logger.info("Downloading %s", url)
    request = urllib.request.Request(url, headers={"User-Agent": _USER_AGENT})
    try:
        with urllib.request.urlopen(request) as response, partial.open("wb") as out:  # noqa: S310 - checksum verified before use
            size = 0
            for chunk in iter(lambda: response.read(_CHUNK_SIZE), b""):
                out.write(chunk)
                size += len(chunk)
    except urllib.error.HTTPError as e:
        partial.unlink(missing_ok=True)
        if e.code in _NOT_FOUND_STATUSES:
            raise NotFound(f"Artifact not found (HTTP {e.code}): {url}", url=url, status=e.code) from e
        raise NetworkError(f"HTTP {e.code} while fetching {url}", url=url, status=e.code) from e
    except urllib.error.URLError as e:
        partial.unlink(missing_ok=True)
        if isinstance(e.reason, FileNotFoundError):
            raise NotFound(f"Artifact not found: {url}", url=url) from e
        raise NetworkError(f"Cannot fetch {url}: {e.reason}", url=url) from e
    except (OSError, http.client.HTTPException) as e:
        partial.unlink(missing_ok=True)
        raise NetworkError(f"Transfer of {url} failed: {e}", url=url) from e

    partial.replace(target)
    logger.debug("Downloaded %d bytes to %s", size, target)
    return target


def fetch_head(repo_url: str, branch: str, dest_dir: Path) -> Path:
    """Shallow-clone ``branch`` of ``repo_url`` into ``dest_dir/checkout``."""
    checkout = dest_dir / "checkout"
    logger.info("Cloning %s (branch %s)", repo_url, branch)
    result = run_command(
        [
            "git", "clone", "--quiet", "--depth", "1",
            "--branch", branch, "--single-branch",
            "--", repo_url, str(checkout),
        ],
        env_overrides={"GIT_TERMINAL_PROMPT": "0"},
    )
    if result["ok"]:
        return checkout

    shutil.rmtree(checkout, ignore_errors=True)
    stderr = result.get("stderr", "")
    if result["returncode"] == 127:
        raise NetworkError("git is required for head installs but was not found", url=repo_url)
    if any(marker in stderr.lower() for marker in _GIT_NOT_FOUND_MARKERS):
        raise NotFound(
            f"Repository or branch not found: {repo_url} ({branch})",
            url=repo_url,
            branch=branch,
            stderr=stderr.strip(),
        )
    raise NetworkError(
        f"git clone of {repo_url} failed (exit {result['returncode']})",
        url=repo_url,
        branch=branch,
        stderr=stderr.strip(),
    )


def artifact_filename(url: str) -> str:
    """File name for a downloaded artifact, derived from the URL path."""
    name = unquote(Path(urlsplit(url).path).name)
    name = re.sub(r"[^A-Za-z0-9._+-]", "_", name).lstrip(".")
    return name or "artifact"
