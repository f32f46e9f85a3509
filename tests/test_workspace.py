"""
Tests for deployment workspaces.
"""

from pathlib import Path
from unittest.mock import patch

import pytest

from cloudforge.core.errors import WorkspaceError
from cloudforge.core.services.workspace import WorkspaceManager


class TestWorkspace:
    def test_files_written_and_removed(self, tmp_path: Path):
        manager = WorkspaceManager(tmp_path)
        with manager.workspace("dep-1", "config", "secret = 1\n") as ws:
            assert ws.config_path.read_text() == "config"
            assert ws.secrets_path.read_text() == "secret = 1\n"
            assert ws.secrets_path.stat().st_mode & 0o777 == 0o600
            assert manager.active() == [ws.path]
            path = ws.path
        assert not path.exists()
        assert manager.active() == []
        assert list(tmp_path.iterdir()) == []

    def test_removed_on_exception(self, tmp_path: Path):
        manager = WorkspaceManager(tmp_path)
        with pytest.raises(RuntimeError):
            with manager.workspace("dep-1", "config", "secrets") as ws:
                (ws.path / ".terraform").mkdir()
                (ws.path / "terraform.tfstate").write_text("{}")
                raise RuntimeError("boom")
        assert list(tmp_path.iterdir()) == []

    def test_unique_directories_for_same_id(self, tmp_path: Path):
        manager = WorkspaceManager(tmp_path)
        with manager.workspace("dep-1", "a", "s") as first:
            with manager.workspace("dep-1", "b", "s") as second:
                assert first.path != second.path
                assert first.config_path.read_text() == "a"
                assert second.config_path.read_text() == "b"

    def test_unsafe_id_is_sanitized(self, tmp_path: Path):
        manager = WorkspaceManager(tmp_path)
        with manager.workspace("../../etc/passwd", "c", "s") as ws:
            assert ws.path.parent == tmp_path
            assert ws.path.name.startswith("cloudforge-..-..-etc-passwd-")

    def test_root_is_created(self, tmp_path: Path):
        root = tmp_path / "nested" / "workspaces"
        with WorkspaceManager(root).workspace("dep-1", "c", "s") as ws:
            assert ws.path.parent == root

    def test_create_failure(self, tmp_path: Path):
        manager = WorkspaceManager(tmp_path)
        with patch("cloudforge.core.services.workspace.tempfile.mkdtemp", side_effect=OSError("disk full")):
            with pytest.raises(WorkspaceError, match="disk full"):
                with manager.workspace("dep-1", "c", "s"):
                    pass

    def test_removal_failure_after_success(self, tmp_path: Path):
        manager = WorkspaceManager(tmp_path)
        with patch("cloudforge.core.services.workspace.shutil.rmtree", side_effect=OSError("busy")):
            with pytest.raises(WorkspaceError, match="busy"):
                with manager.workspace("dep-1", "c", "s"):
                    pass

    def test_removal_failure_keeps_original_error(self, tmp_path: Path):
        manager = WorkspaceManager(tmp_path)
        with patch("cloudforge.core.services.workspace.shutil.rmtree", side_effect=OSError("busy")):
            with pytest.raises(ValueError, match="original"):
                with manager.workspace("dep-1", "c", "s"):
                    raise ValueError("original")
