"""
Resource ledger — which cloud resources each user has created.

Written after a successful apply, read by the resources panel, and
edited by explicit delete requests.  ``record`` is idempotent on
``(user_id, resource.id)``: recording the same id twice replaces the
fields, it never duplicates the entry.

The ledger is what CloudForge *believes* exists.  Nothing reconciles
it with the live cloud; resources changed outside CloudForge drift.

Backends:
  - ``MemoryLedgerBackend``     process-local dict
  - ``JsonFileLedgerBackend``   one JSON document, atomic writes
"""

from __future__ import annotations

import json
import logging
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path

from cloudforge.core.errors import NotFound
from cloudforge.core.models.resource import ResourceRecord

logger = logging.getLogger(__name__)

DEFAULT_LEDGER_FILE = "resources.json"

# user_id → resource id → record
LedgerData = dict[str, dict[str, ResourceRecord]]


class LedgerBackend(ABC):
    """Whole-document storage.  Called with the ledger lock held."""

    @abstractmethod
    def load(self) -> LedgerData:
        ...

    @abstractmethod
    def save(self, data: LedgerData) -> None:
        ...


class MemoryLedgerBackend(LedgerBackend):
    def __init__(self) -> None:
        self._data: LedgerData = {}

    def load(self) -> LedgerData:
        return self._data

    def save(self, data: LedgerData) -> None:
        self._data = data


class JsonFileLedgerBackend(LedgerBackend):
    """Ledger stored as JSON at ``<data_dir>/resources.json``.

    Format::

        {"users": {"<user_id>": [{"id": ..., "type": ..., "createdAt": ...}, ...]}}
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._cache: LedgerData | None = None

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> LedgerData:
        if self._cache is not None:
            return self._cache
        if not self._path.is_file():
            logger.info("No ledger file at %s — starting fresh", self._path)
            self._cache = {}
            return self._cache

        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
            data: LedgerData = {}
            for user_id, items in raw.get("users", {}).items():
                records = (ResourceRecord.model_validate(item) for item in items)
                data[user_id] = {r.id: r for r in records}
            self._cache = data
            logger.debug("Loaded ledger from %s (%d users)", self._path, len(data))
        except json.JSONDecodeError as e:
            logger.warning("Corrupt ledger file %s: %s — starting fresh", self._path, e)
            self._cache = {}
        except Exception as e:
            logger.warning("Cannot load ledger from %s: %s — starting fresh", self._path, e)
            self._cache = {}
        return self._cache

    def save(self, data: LedgerData) -> None:
        payload = {
            "users": {
                user_id: [r.to_dict() for r in _ordered(records.values())]
                for user_id, records in sorted(data.items())
                if records
            }
        }
        content = json.dumps(payload, indent=2, ensure_ascii=False) + "\n"

        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self._path.parent, prefix=".ledger_", suffix=".tmp")
        tmp = Path(tmp_path)
        try:
            with open(fd, "w", encoding="utf-8") as f:
                f.write(content)
            tmp.replace(self._path)
        except Exception:
            tmp.unlink(missing_ok=True)
            logger.error("Failed to save ledger to %s", self._path)
            raise
        self._cache = data


def _ordered(records) -> list[ResourceRecord]:
    return sorted(records, key=lambda r: (r.created_at, r.id))


class ResourceLedger:
    """Per-user record of created resources.  Thread-safe."""

    def __init__(self, backend: LedgerBackend | None = None) -> None:
        self._backend = backend or MemoryLedgerBackend()
        self._lock = threading.Lock()

    @property
    def backend(self) -> LedgerBackend:
        return self._backend

    def record(self, user_id: str, record: ResourceRecord) -> None:
        self.record_many(user_id, [record])

    def record_many(self, user_id: str, records: list[ResourceRecord]) -> None:
        """Record several resources in one write."""
        if not records:
            return
        with self._lock:
            data = {u: dict(r) for u, r in self._backend.load().items()}
            user = data.setdefault(user_id, {})
            for rec in records:
                user[rec.id] = rec
            self._backend.save(data)
        logger.info("Recorded %d resource(s) for user %s", len(records), user_id)

    def list(self, user_id: str) -> list[ResourceRecord]:
        with self._lock:
            return _ordered(self._backend.load().get(user_id, {}).values())

    def get(self, user_id: str, resource_id: str) -> ResourceRecord:
        with self._lock:
            record = self._backend.load().get(user_id, {}).get(resource_id)
        if record is None:
            raise NotFound(f"Resource {resource_id} not found")
        return record

    def remove(self, user_id: str, resource_id: str) -> ResourceRecord:
        """Remove one entry.

        Raises:
            NotFound: The user has no resource with this id.
        """
        with self._lock:
            data = {u: dict(r) for u, r in self._backend.load().items()}
            record = data.get(user_id, {}).pop(resource_id, None)
            if record is None:
                raise NotFound(f"Resource {resource_id} not found")
            self._backend.save(data)
        logger.info("Removed resource %s for user %s", resource_id, user_id)
        return record
