"""
Error taxonomy — every way an install run can fail.

Each error class carries a stable exit code and category so the CLI
can report failures to scripting consumers without parsing messages.
Errors always propagate to the caller: no step retries, downgrades
or swallows them.

    FormulaError
    ├── ConfigError            (1)  missing formula, unreadable settings
    ├── MalformedDescriptor    (2)  static, caught before any I/O
    ├── NetworkError           (3)  transport failure
    │   └── NotFound           (4)  remote resource does not exist
    ├── ChecksumMismatch       (5)  integrity failure, always fatal
    ├── BuildFailure           (6)  external build tool failed
    │   └── MissingToolchain   (6)  build-time tool not on PATH
    ├── SmokeTestFailure       (7)  installed binary did not run
    └── InstallLocked          (8)  another run holds the formula lock
"""

from __future__ import annotations

from typing import Any


class FormulaError(Exception):
    """Base class for all formulary errors."""

    cli_exit_code: int = 1
    category: str = "error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = details

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.category,
            "message": self.message,
            "cli_exit_code": self.cli_exit_code,
            **self.details,
        }


class ConfigError(FormulaError):
    """Raised when a formula or the settings cannot be found or read."""

    cli_exit_code = 1
    category = "config"


class MalformedDescriptor(FormulaError):
    """Raised when a descriptor fails static validation."""

    cli_exit_code = 2
    category = "malformed_descriptor"


class NetworkError(FormulaError):
    """Raised on transport failure while fetching an artifact."""

    cli_exit_code = 3
    category = "network"

    def __init__(self, message: str, *, url: str = "", **details: Any):
        super().__init__(message, url=url, **details)
        self.url = url


class NotFound(NetworkError):
    """Raised when the remote artifact, repository or branch does not exist."""

    cli_exit_code = 4
    category = "not_found"


class ChecksumMismatch(FormulaError):
    """Raised when fetched content does not match the pinned digest."""

    cli_exit_code = 5
    category = "checksum_mismatch"

    def __init__(self, expected: str, actual: str, *, path: str = "", reason: str = ""):
        message = reason or f"Checksum mismatch: expected {expected}, got {actual}"
        super().__init__(message, expected=expected, actual=actual, path=path)
        self.expected = expected
        self.actual = actual


class BuildFailure(FormulaError):
    """Raised when the external build command fails.

    ``stderr_tail`` is the end of the tool's stderr, verbatim.
    ``exit_code`` is the tool's exit status (None when the tool never
    ran), not the CLI's ``cli_exit_code``.
    """

    cli_exit_code = 6
    category = "build_failure"

    def __init__(self, message: str, *, exit_code: int | None = None, stderr_tail: str = ""):
        super().__init__(message, exit_code=exit_code, stderr_tail=stderr_tail)
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail


class MissingToolchain(BuildFailure):
    """Raised when a build-time dependency is not installed."""

    category = "missing_toolchain"

    def __init__(self, dependency: str, missing: list[str]):
        super().__init__(
            f"Build dependency '{dependency}' is missing: {', '.join(missing)} not found on PATH",
            exit_code=None,
            stderr_tail="",
        )
        self.details["dependency"] = dependency
        self.details["missing"] = list(missing)
        self.dependency = dependency
        self.missing = list(missing)


class SmokeTestFailure(FormulaError):
    """Raised when the installed binary fails its liveness check."""

    cli_exit_code = 7
    category = "smoke_test_failure"

    def __init__(self, message: str, *, exit_code: int | None = None, output_tail: str = ""):
        super().__init__(message, exit_code=exit_code, output_tail=output_tail)
        self.exit_code = exit_code
        self.output_tail = output_tail


class InstallLocked(FormulaError):
    """Raised when another install run for the same formula is in progress."""

    cli_exit_code = 8
    category = "locked"
