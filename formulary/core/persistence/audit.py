"""
Install ledger — append-only record of every install run.

Each run, successful or failed, appends one JSON line to
``<home>/installs.ndjson``. Entries are never modified or deleted.
"""

from __future__ import annotations

import json
import logging
from collections import deque
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)


class AuditEntry(BaseModel):
    """A single install run."""

    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    operation_id: str = ""

    formula: str = ""
    version: str = ""
    mode: str = ""                 # pinned, head
    install_prefix: str = ""

    # Results
    status: str = ""               # done, failed
    state: str = ""                # last state reached
    sha256: str | None = None
    verified: bool = False
    duration_ms: int = 0

    # Failure detail
    error: str | None = None       # error category
    error_detail: str | None = None

    context: dict[str, Any] = Field(default_factory=dict)


class AuditWriter:
    """Append-only ledger of install runs, one JSON object per line."""

    def __init__(self, path: Path):
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def write(self, entry: AuditEntry) -> None:
        """Append ``entry``.

        Failures are logged, never raised: a ledger problem must not
        replace the outcome of the run being recorded.
        """
        record = json.dumps(entry.model_dump(mode="json"), ensure_ascii=False)
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as ledger:
                ledger.write(record + "\n")
        except OSError as e:
            logger.error("Cannot append to install ledger %s: %s", self._path, e)
            return
        logger.debug("Recorded run %s (%s %s)", entry.operation_id, entry.formula, entry.status)

    def read_all(self) -> list[AuditEntry]:
        """Every readable entry, oldest first."""
        return list(self._entries())

    def read_recent(self, n: int = 20, formula: str | None = None) -> list[AuditEntry]:
        """The last ``n`` entries, optionally only those for ``formula``."""
        entries = (e for e in self._entries() if formula is None or e.formula == formula)
        return list(deque(entries, maxlen=n)) if n > 0 else []

    def _entries(self) -> Iterator[AuditEntry]:
        if not self._path.is_file():
            return
        try:
            with self._path.open(encoding="utf-8") as ledger:
                for line_num, raw in enumerate(ledger, start=1):
                    if not raw.strip():
                        continue
                    try:
                        yield AuditEntry.model_validate_json(raw)
                    except ValidationError as e:
                        logger.warning("Install ledger line %d is unreadable, skipped: %s",
                                       line_num, e.errors()[0].get("msg", e))
        except OSError as e:
            logger.error("Cannot read install ledger %s: %s", self._path, e)
