"""
Subprocess runner — the single place install steps call subprocess.run.

Commands are always argv lists, never shell strings. No timeout is
applied: builds may take arbitrarily long and the caller bounds overall
run time.
"""

from __future__ import annotations

import logging
import os
import subprocess
import time
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# How much of stdout/stderr is kept in results
OUTPUT_TAIL_CHARS = 2000


def run_command(
    cmd: list[str],
    *,
    cwd: Path | None = None,
    env_overrides: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Run one command and capture its output.

    Args:
        cmd: Command argv.
        cwd: Working directory (default: current directory).
        env_overrides: Extra environment variables.

    Returns:
        ``{"ok": bool, "returncode": N, "stdout": "...", "stderr": "...",
        "elapsed_ms": N}``. A missing executable yields returncode 127,
        one that cannot be executed 126, both with an ``error`` message.
    """
    env = os.environ.copy()
    if env_overrides:
        env.update(env_overrides)

    logger.debug("Running: %s (cwd=%s)", " ".join(cmd), cwd or os.getcwd())
    start = time.monotonic()
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            errors="replace",
            env=env,
            cwd=cwd,
        )
    except FileNotFoundError:
        return {
            "ok": False,
            "returncode": 127,
            "stdout": "",
            "stderr": f"command not found: {cmd[0]}",
            "error": f"Executable not found: {cmd[0]}",
            "elapsed_ms": int((time.monotonic() - start) * 1000),
        }
    except PermissionError as e:
        return {
            "ok": False,
            "returncode": 126,
            "stdout": "",
            "stderr": str(e),
            "error": f"Cannot execute {cmd[0]}: {e}",
            "elapsed_ms": int((time.monotonic() - start) * 1000),
        }

    elapsed_ms = int((time.monotonic() - start) * 1000)
    outcome: dict[str, Any] = {
        "ok": result.returncode == 0,
        "returncode": result.returncode,
        "stdout": result.stdout[-OUTPUT_TAIL_CHARS:] if result.stdout else "",
        "stderr": result.stderr[-OUTPUT_TAIL_CHARS:] if result.stderr else "",
        "elapsed_ms": elapsed_ms,
    }
    if result.returncode != 0:
        outcome["error"] = f"Command failed (exit {result.returncode})"
    return outcome
