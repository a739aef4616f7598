"""
Formula model — the declarative install recipe for one program.

A formula file holds every released version of a program as a registry
(version → URL + checksum), plus the pieces shared by all versions:
license, head reference, build-time dependencies, build recipe and
smoke test. ``Formula.descriptor()`` turns one entry into the
``ArtifactDescriptor`` the install pipeline consumes.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Literal
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from formulary.core.errors import MalformedDescriptor

# Expected hex digest length per checksum algorithm
CHECKSUM_LENGTHS: dict[str, int] = {"sha256": 64}

BUILD_SYSTEMS = ("cargo", "go", "make", "script")

_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9._+-]*$")
_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")
_SCP_LIKE_RE = re.compile(r"^[\w.-]+@[\w.-]+:[\w./~-]+$")

_ARTIFACT_SCHEMES = {"http", "https", "file"}
_REPO_SCHEMES = {"http", "https", "ssh", "git", "file"}


# ── File schema ─────────────────────────────────────────────────


class VersionEntry(BaseModel):
    """One pinned release artifact."""

    url: str
    sha256: str


class HeadRef(BaseModel):
    """A live source-control branch to build from instead of a release."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    repo_url: str = Field(alias="url")
    branch: str = "main"


class Dependency(BaseModel):
    """A build-time dependency and the executables that prove it is installed."""

    name: str
    tools: list[str] = Field(default_factory=list)

    @property
    def required_tools(self) -> list[str]:
        return self.tools or [self.name]


class BuildSpec(BaseModel):
    """How the source tree is turned into an installed binary.

    The build command is chosen by ``system``; only the subdirectory,
    binary name and (for ``script``) the script path are configurable.
    """

    system: Literal["cargo", "go", "make", "script"]
    binary: str
    subdir: str = "."
    script: str = "install.sh"

    @field_validator("binary")
    @classmethod
    def _plain_binary_name(cls, value: str) -> str:
        if not value or "/" in value or value in (".", ".."):
            raise ValueError(f"binary must be a plain file name, got {value!r}")
        return value

    @field_validator("subdir", "script")
    @classmethod
    def _relative_path(cls, value: str) -> str:
        if value.startswith("/") or ".." in value.split("/"):
            raise ValueError(f"path must stay inside the source tree, got {value!r}")
        return value


class SmokeTestSpec(BaseModel):
    """Arguments for the post-install liveness check."""

    args: list[str] = Field(default_factory=lambda: ["--version"])


class Formula(BaseModel):
    """A formula file — loaded from ``<name>.yml``."""

    name: str
    desc: str = ""
    homepage: str = ""
    license: str

    default_version: str | None = None
    versions: dict[str, VersionEntry] = Field(default_factory=dict)
    head: HeadRef | None = None

    depends_on: list[Dependency] = Field(default_factory=list)
    build: BuildSpec
    test: SmokeTestSpec = Field(default_factory=SmokeTestSpec)

    @field_validator("name")
    @classmethod
    def _valid_name(cls, value: str) -> str:
        if not _NAME_RE.match(value):
            raise ValueError(f"invalid formula name {value!r}")
        return value

    @field_validator("default_version", mode="before")
    @classmethod
    def _version_as_str(cls, value: Any) -> Any:
        # YAML reads `1.0` as a float
        return None if value is None else str(value)

    @field_validator("versions", mode="before")
    @classmethod
    def _version_keys_as_str(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {str(k): v for k, v in value.items()}
        return value

    @model_validator(mode="after")
    def _has_source(self) -> Formula:
        if not self.versions and self.head is None:
            raise ValueError("formula needs at least one version or a head reference")
        if self.default_version is not None and self.default_version not in self.versions:
            raise ValueError(f"default_version {self.default_version!r} is not in versions")
        return self

    @property
    def latest_version(self) -> str | None:
        """The default version, else the highest version key."""
        if self.default_version:
            return self.default_version
        if not self.versions:
            return None
        return max(self.versions, key=_version_sort_key)

    def sorted_versions(self) -> list[str]:
        return sorted(self.versions, key=_version_sort_key)

    def descriptor(self, version: str | None = None, head: bool = False) -> ArtifactDescriptor:
        """Resolve one version (or the head reference) to a descriptor.

        Raises:
            MalformedDescriptor: Unknown version, or head requested
                from a formula without one.
        """
        if head:
            if self.head is None:
                raise MalformedDescriptor(
                    f"Formula '{self.name}' has no head reference", formula=self.name
                )
            return ArtifactDescriptor(
                name=self.name,
                version="HEAD",
                license=self.license,
                head_ref=self.head,
                mode="head",
            )

        resolved = version or self.latest_version
        if resolved is None or resolved not in self.versions:
            raise MalformedDescriptor(
                f"Formula '{self.name}' has no version {resolved!r}",
                formula=self.name,
                available=self.sorted_versions(),
            )
        entry = self.versions[resolved]
        return ArtifactDescriptor(
            name=self.name,
            version=resolved,
            source_url=entry.url,
            checksum=entry.sha256,
            license=self.license,
            head_ref=self.head,
            mode="pinned",
        )


# ── Runtime descriptor ──────────────────────────────────────────


@dataclass(frozen=True)
class ArtifactDescriptor:
    """Everything needed to fetch and trust one artifact.

    ``mode`` is the explicit selection between the pinned tarball and
    the head reference. It may only be left unset when exactly one of
    the two sources is present.
    """

    name: str
    version: str
    source_url: str = ""
    checksum: str = ""
    checksum_algorithm: str = "sha256"
    license: str = ""
    head_ref: HeadRef | None = None
    mode: Literal["pinned", "head"] | None = None

    @property
    def identity(self) -> str:
        """Lock key for install runs of this descriptor."""
        return self.name

    def validate(self) -> Literal["pinned", "head"]:
        """Statically validate the descriptor and return the active mode.

        Performs no I/O.

        Raises:
            MalformedDescriptor: Bad URL, bad checksum, or an ambiguous
                source selection.
        """
        has_pinned = bool(self.source_url)
        has_head = self.head_ref is not None

        mode = self.mode
        if mode is None:
            if has_pinned and has_head:
                raise self._malformed(
                    "Both a pinned tarball and a head reference are set; select one explicitly"
                )
            if not has_pinned and not has_head:
                raise self._malformed("Descriptor has neither a source URL nor a head reference")
            mode = "pinned" if has_pinned else "head"

        if mode == "pinned":
            if not has_pinned:
                raise self._malformed("Pinned mode selected but no source URL is set")
            _check_url(self.source_url, _ARTIFACT_SCHEMES, self)
            _check_checksum(self.checksum, self.checksum_algorithm, self)
        elif mode == "head":
            if not has_head:
                raise self._malformed("Head mode selected but no head reference is set")
            assert self.head_ref is not None
            if not _SCP_LIKE_RE.match(self.head_ref.repo_url):
                _check_url(self.head_ref.repo_url, _REPO_SCHEMES, self)
            if not self.head_ref.branch or self.head_ref.branch.startswith("-"):
                raise self._malformed(f"Invalid head branch {self.head_ref.branch!r}")
        else:
            raise self._malformed(f"Unknown mode {mode!r}")

        return mode

    def _malformed(self, message: str, **details: Any) -> MalformedDescriptor:
        return MalformedDescriptor(message, formula=self.name, version=self.version, **details)


def _check_url(url: str, schemes: set[str], descriptor: ArtifactDescriptor) -> None:
    if not url or any(ch.isspace() for ch in url):
        raise descriptor._malformed(f"Malformed URL {url!r}", url=url)
    parts = urlsplit(url)
    if parts.scheme not in schemes:
        raise descriptor._malformed(
            f"Unsupported URL scheme {parts.scheme!r} in {url!r}", url=url
        )
    if parts.scheme == "file":
        if not parts.path:
            raise descriptor._malformed(f"file URL without a path: {url!r}", url=url)
    elif not parts.netloc:
        raise descriptor._malformed(f"URL without a host: {url!r}", url=url)


def _check_checksum(checksum: str, algorithm: str, descriptor: ArtifactDescriptor) -> None:
    expected_len = CHECKSUM_LENGTHS.get(algorithm)
    if expected_len is None:
        raise descriptor._malformed(f"Unsupported checksum algorithm {algorithm!r}")
    if not checksum:
        raise descriptor._malformed("A checksum is required in pinned mode")
    if len(checksum) != expected_len or not _HEX_RE.match(checksum):
        raise descriptor._malformed(
            f"Checksum is not a {expected_len}-character hex {algorithm} digest",
            checksum=checksum,
        )


def _version_sort_key(version: str) -> tuple:
    """Numeric-aware sort key: ``1.10.0`` sorts after ``1.9.2``."""
    return tuple(
        (0, int(part)) if part.isdigit() else (1, part)
        for part in re.split(r"[.\-+]", version.lstrip("v"))
    )
