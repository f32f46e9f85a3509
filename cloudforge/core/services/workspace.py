"""
Deployment workspaces — one private directory per in-flight deployment.

Usage::

    with manager.workspace(deployment_id, config_text, secrets_text) as ws:
        supervisor.run(ws, on_line)
    # directory, main.tf, secrets.tfvars, .terraform/ and state are gone

Directories are created with ``tempfile.mkdtemp`` so two deployments
(even for the same user, even with the same deployment id prefix)
never share a directory.  The tree is removed on every exit path.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import tempfile
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from cloudforge.core.errors import WorkspaceError

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "main.tf"
SECRETS_FILENAME = "secrets.tfvars"

_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]+")


@dataclass(frozen=True)
class Workspace:
    deployment_id: str
    path: Path

    @property
    def config_path(self) -> Path:
        return self.path / CONFIG_FILENAME

    @property
    def secrets_path(self) -> Path:
        return self.path / SECRETS_FILENAME


class WorkspaceManager:
    """Allocates and reliably removes deployment workspaces.

    Args:
        root: Parent directory for workspaces.  Defaults to the system
            temp directory.
    """

    def __init__(self, root: Path | None = None) -> None:
        self._root = root
        self._lock = threading.Lock()
        self._active: dict[Path, str] = {}

    @property
    def root(self) -> Path:
        return self._root or Path(tempfile.gettempdir())

    def active(self) -> list[Path]:
        """Workspace directories that currently exist."""
        with self._lock:
            return sorted(self._active)

    @contextmanager
    def workspace(
        self,
        deployment_id: str,
        config_text: str,
        secrets_text: str,
    ) -> Iterator[Workspace]:
        """Create a workspace, write both artifacts, and always clean up.

        Raises:
            WorkspaceError: The directory could not be created or written,
                or (when the body succeeded) could not be removed.
        """
        prefix = f"cloudforge-{_UNSAFE.sub('-', deployment_id)[:40]}-"
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            path = Path(tempfile.mkdtemp(prefix=prefix, dir=self.root))
        except OSError as e:
            raise WorkspaceError(f"Cannot create workspace for {deployment_id}: {e}") from e

        ws = Workspace(deployment_id=deployment_id, path=path)
        with self._lock:
            self._active[path] = deployment_id
        logger.debug("Workspace %s allocated for %s", path, deployment_id)

        try:
            try:
                ws.config_path.write_text(config_text, encoding="utf-8")
                _write_private(ws.secrets_path, secrets_text)
            except OSError as e:
                raise WorkspaceError(f"Cannot write workspace files: {e}") from e
            yield ws
        except BaseException:
            self._remove(ws, strict=False)
            raise
        else:
            self._remove(ws, strict=True)

    def _remove(self, ws: Workspace, *, strict: bool) -> None:
        with self._lock:
            self._active.pop(ws.path, None)
        try:
            shutil.rmtree(ws.path)
            logger.debug("Workspace %s removed", ws.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error("Failed to remove workspace %s: %s", ws.path, e)
            if strict:
                raise WorkspaceError(f"Cannot remove workspace {ws.path}: {e}") from e


def _write_private(path: Path, text: str) -> None:
    """Write a file readable only by the current user."""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(text)
