"""
Smoke tester — does the installed binary run at all?

Runs the binary with a side-effect-free flag and requires exit code 0.
This is a liveness check, not a functional test.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Sequence
from pathlib import Path

from formulary.core.errors import SmokeTestFailure
from formulary.core.services.install.subprocess_runner import run_command

logger = logging.getLogger(__name__)

DEFAULT_ARGS = ("--version",)


def smoke_test(binary: Path, args: Sequence[str] = DEFAULT_ARGS) -> str:
    """Run ``binary`` with ``args`` and return the first line of its output.

    Raises:
        SmokeTestFailure: The binary is missing, not executable, or
            exited non-zero.
    """
    if not binary.is_file():
        raise SmokeTestFailure(f"Binary not found: {binary}", exit_code=127)
    if not os.access(binary, os.X_OK):
        raise SmokeTestFailure(f"Binary is not executable: {binary}", exit_code=126)

    result = run_command([str(binary), *args])
    output = (result.get("stdout") or result.get("stderr") or "").strip()
    if not result["ok"]:
        raise SmokeTestFailure(
            f"{binary.name} {' '.join(args)} exited with {result['returncode']}",
            exit_code=result["returncode"],
            output_tail=output,
        )

    first_line = output.splitlines()[0] if output else ""
    logger.info("Smoke test passed: %s", first_line or binary.name)
    return first_line
