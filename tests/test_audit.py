"""
Tests for the deployment history log.
"""

import json
from pathlib import Path

import pytest

from cloudforge.core.errors import ValidationError
from cloudforge.core.persistence.audit import DeploymentEntry, DeploymentHistory


def _entry(user: str, dep: str, status: str = "success") -> DeploymentEntry:
    return DeploymentEntry(deployment_id=dep, user_id=user, provider="aws", status=status)


class TestDeploymentEntry:
    def test_defaults(self):
        e = DeploymentEntry()
        assert e.timestamp != ""
        assert e.resources == []
        assert e.failure_kind is None


class TestDeploymentHistory:
    def test_memory(self):
        history = DeploymentHistory()
        history.write(_entry("u1", "dep-1"))
        history.write(_entry("u2", "dep-2"))
        assert [e.deployment_id for e in history.read_all()] == ["dep-1", "dep-2"]
        assert history.path is None

    def test_file_is_ndjson(self, tmp_path: Path):
        path = tmp_path / "logs" / "deployments.ndjson"
        history = DeploymentHistory(path)
        history.write(_entry("u1", "dep-1"))
        history.write(_entry("u1", "dep-2", status="error"))

        lines = path.read_text().splitlines()
        assert len(lines) == 2
        assert json.loads(lines[1])["status"] == "error"
        assert [e.deployment_id for e in DeploymentHistory(path).read_all()] == ["dep-1", "dep-2"]

    def test_missing_file(self, tmp_path: Path):
        assert DeploymentHistory(tmp_path / "none.ndjson").read_all() == []

    def test_corrupt_lines_skipped(self, tmp_path: Path):
        path = tmp_path / "deployments.ndjson"
        history = DeploymentHistory(path)
        history.write(_entry("u1", "dep-1"))
        with path.open("a") as f:
            f.write("garbage\n\n")
        history.write(_entry("u1", "dep-2"))
        assert [e.deployment_id for e in history.read_all()] == ["dep-1", "dep-2"]

    def test_for_user_last_n(self):
        history = DeploymentHistory()
        for i in range(5):
            history.write(_entry("u1", f"dep-{i}"))
        history.write(_entry("u2", "other"))
        assert [e.deployment_id for e in history.for_user("u1", 2)] == ["dep-3", "dep-4"]
        assert len(history.for_user("u1")) == 5
        assert history.for_user("nobody") == []

    def test_for_user_rejects_non_positive_limit(self):
        history = DeploymentHistory()
        history.write(_entry("u1", "dep-0"))
        for bad in (0, -1):
            with pytest.raises(ValidationError, match="at least 1"):
                history.for_user("u1", bad)

    def test_memory_is_bounded(self):
        history = DeploymentHistory(max_memory_entries=3)
        for i in range(5):
            history.write(_entry("u1", f"dep-{i}"))
        assert [e.deployment_id for e in history.read_all()] == ["dep-2", "dep-3", "dep-4"]
