"""
Deployment history — append-only log of every deployment.

Every deployment that reaches a terminal event writes one entry to an
NDJSON (newline-delimited JSON) file.  Entries are never modified or
deleted; removing a resource from the ledger leaves its history alone.
"""

from __future__ import annotations

import json
import logging
import threading
from collections import deque
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from cloudforge.core.errors import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_FILE = "deployments.ndjson"

# Entries kept when there is no history file; older ones are dropped
DEFAULT_MEMORY_ENTRIES = 1000


class DeploymentEntry(BaseModel):
    """A single deployment history entry."""

    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    deployment_id: str = ""
    user_id: str = ""
    provider: str = ""

    # What was asked for
    primitives: list[str] = Field(default_factory=list)

    # Results
    status: str = ""               # success, error
    failure_kind: str | None = None
    exit_code: int | None = None
    resources: list[str] = Field(default_factory=list)
    duration_ms: int = 0
    message: str = ""

    # Extensible context
    context: dict[str, Any] = Field(default_factory=dict)


class DeploymentHistory:
    """Append-only history writer.

    With ``path=None`` the newest ``max_memory_entries`` entries are
    kept in memory only.
    """

    def __init__(self, path: Path | None = None, max_memory_entries: int = DEFAULT_MEMORY_ENTRIES):
        self._path = path
        self._memory: deque[DeploymentEntry] = deque(maxlen=max_memory_entries)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path | None:
        return self._path

    def write(self, entry: DeploymentEntry) -> None:
        """Append an entry.  Write failures are logged, never raised."""
        with self._lock:
            if self._path is None:
                self._memory.append(entry)
                return

            line = json.dumps(entry.model_dump(mode="json"), ensure_ascii=False) + "\n"
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                with self._path.open("a", encoding="utf-8") as f:
                    f.write(line)
                logger.debug("History entry written: %s/%s", entry.user_id, entry.deployment_id)
            except OSError as e:
                logger.error("Failed to write history entry: %s", e)

    def read_all(self) -> list[DeploymentEntry]:
        """All entries, oldest first."""
        with self._lock:
            if self._path is None:
                return list(self._memory)
            if not self._path.is_file():
                return []

            entries = []
            try:
                with self._path.open("r", encoding="utf-8") as f:
                    for line_num, line in enumerate(f, start=1):
                        line = line.strip()
                        if not line:
                            continue
                        try:
                            entries.append(DeploymentEntry.model_validate(json.loads(line)))
                        except ValueError as e:
                            logger.warning("Skipping corrupt history entry at line %d: %s", line_num, e)
            except OSError as e:
                logger.error("Failed to read deployment history: %s", e)
            return entries

    def for_user(self, user_id: str, n: int | None = None) -> list[DeploymentEntry]:
        """A user's entries, oldest first; the last ``n`` when given.

        Raises:
            ValidationError: ``n`` is below 1.
        """
        if n is not None and n < 1:
            raise ValidationError(f"limit must be at least 1, got {n}")
        entries = [e for e in self.read_all() if e.user_id == user_id]
        return entries[-n:] if n is not None else entries
