"""
Tests for the deployment orchestrator, end to end against the fake
terraform script.
"""

import threading
from pathlib import Path

import pytest

from cloudforge.core.config.settings import ConfigError, Settings
from cloudforge.core.errors import (
    AuthenticationRequired,
    DeploymentInProgress,
    FailureKind,
    NotFound,
    ValidationError,
)
from cloudforge.core.models.events import ErrorEvent, LogEvent, SuccessEvent
from cloudforge.core.persistence.audit import DeploymentHistory
from cloudforge.core.persistence.resource_ledger import JsonFileLedgerBackend
from cloudforge.core.services.deploy_ops import build_orchestrator

from conftest import AWS_SECRET_KEY

_TIMEOUT = 60


def _deploy(orch, *names, user="u1", **kwargs):
    return orch.deploy(user, "aws", list(names), kwargs.pop("params", {}), **kwargs)


# ── Scenario: no credentials ─────────────────────────────────────────


class TestAuthentication:
    def test_no_credentials_no_side_effects(self, make_orchestrator, leftover_workspaces, tmp_path: Path):
        calls = tmp_path / "calls.txt"
        orch = make_orchestrator(env={"FAKE_TF_CALLS": str(calls)})
        with pytest.raises(AuthenticationRequired):
            _deploy(orch, "network")
        assert leftover_workspaces() == []
        assert not calls.exists()
        assert orch.active() == []
        assert orch.history_log.read_all() == []

    def test_credentials_for_other_provider(self, make_orchestrator, azure_creds):
        orch = make_orchestrator()
        orch.put_credentials("u1", azure_creds)
        with pytest.raises(AuthenticationRequired):
            _deploy(orch, "network")

    def test_validation_before_any_work(self, make_orchestrator, aws_creds, leftover_workspaces):
        orch = make_orchestrator()
        orch.put_credentials("u1", aws_creds)
        with pytest.raises(ValidationError, match="subnet requires network"):
            _deploy(orch, "subnet")
        assert leftover_workspaces() == []

    def test_put_credentials_from_payload(self, make_orchestrator):
        orch = make_orchestrator()
        provider = orch.put_credentials("u1", {
            "provider": "aws", "accessKey": "a", "secretKey": "b", "region": "eu-west-1",
        })
        assert provider == "aws"
        assert orch.vault.get("u1").region == "eu-west-1"

    def test_put_credentials_requires_user(self, make_orchestrator, aws_creds):
        with pytest.raises(ValidationError, match="userId"):
            make_orchestrator().put_credentials("", aws_creds)


# ── Successful deployment ───────────────────────────────────────────


class TestSuccess:
    def test_events_ledger_and_cleanup(self, make_orchestrator, aws_creds, leftover_workspaces):
        orch = make_orchestrator()
        orch.put_credentials("u1", aws_creds)
        handle = _deploy(orch, "network", "subnet")

        events = list(handle.events)
        terminal = handle.wait(_TIMEOUT)

        assert events[-1] is terminal
        assert isinstance(terminal, SuccessEvent)
        assert terminal.message == (
            "Deployment completed successfully! Resources: 2 added, 0 changed, 0 destroyed."
        )
        assert terminal.resources == ["vpc-main", "subnet-public"]
        assert all(isinstance(e, LogEvent) for e in events[:-1])

        messages = [e.message for e in events]
        assert messages[0] == "Initializing Terraform..."
        assert "Applying Terraform configuration..." in messages
        assert messages.index("Initializing Terraform...") < messages.index("Applying Terraform configuration...")
        assert "aws_vpc.main: Creation complete after 1s [id=vpc-main]" in messages

        records = orch.list_resources("u1")
        assert {r.id: r.type for r in records} == {"vpc-main": "vpc", "subnet-public": "subnet"}
        assert {r.region for r in records} == {"us-east-1"}
        assert {r.details["deployment_id"] for r in records} == {handle.deployment_id}

        assert leftover_workspaces() == []
        assert orch.active() == []

    def test_no_secret_in_events(self, make_orchestrator, aws_creds):
        orch = make_orchestrator()
        orch.put_credentials("u1", aws_creds)
        handle = _deploy(orch, "network")
        events = list(handle.events)
        assert not any(AWS_SECRET_KEY in e.message for e in events)
        assert AWS_SECRET_KEY not in repr(handle)

    def test_redeploy_is_idempotent_in_ledger(self, make_orchestrator, aws_creds):
        orch = make_orchestrator()
        orch.put_credentials("u1", aws_creds)
        _deploy(orch, "network").wait(_TIMEOUT)
        _deploy(orch, "network").wait(_TIMEOUT)
        assert [r.id for r in orch.list_resources("u1")] == ["vpc-main"]

    def test_caller_supplied_id(self, make_orchestrator, aws_creds):
        orch = make_orchestrator()
        orch.put_credentials("u1", aws_creds)
        handle = _deploy(orch, "network", deployment_id="dep-mine")
        assert handle.deployment_id == "dep-mine"
        handle.wait(_TIMEOUT)

    def test_generated_ids_are_unique(self, make_orchestrator, aws_creds):
        orch = make_orchestrator()
        orch.put_credentials("u1", aws_creds)
        a = _deploy(orch, "network")
        b = _deploy(orch, "network")
        assert a.deployment_id != b.deployment_id
        assert a.deployment_id.startswith("dep-")
        a.wait(_TIMEOUT)
        b.wait(_TIMEOUT)

    def test_history_written(self, make_orchestrator, aws_creds):
        orch = make_orchestrator()
        orch.put_credentials("u1", aws_creds)
        handle = _deploy(orch, "network", "subnet")
        handle.wait(_TIMEOUT)

        [entry] = orch.history("u1")
        assert entry.deployment_id == handle.deployment_id
        assert entry.status == "success"
        assert entry.exit_code == 0
        assert entry.primitives == ["network", "subnet"]
        assert entry.resources == ["vpc-main", "subnet-public"]
        assert entry.context == {"overflowed": False, "detached": False}


# ── Failures ─────────────────────────────────────────────────────────


class TestFailures:
    def test_init_failure(self, make_orchestrator, aws_creds, leftover_workspaces, tmp_path: Path):
        calls = tmp_path / "calls.txt"
        orch = make_orchestrator(env={"FAKE_TF_INIT_EXIT": "1", "FAKE_TF_CALLS": str(calls)})
        orch.put_credentials("u1", aws_creds)
        handle = _deploy(orch, "network")

        events = list(handle.events)
        terminal = events[-1]
        assert isinstance(terminal, ErrorEvent)
        assert terminal.kind == FailureKind.INIT_FAILURE
        assert terminal.exit_code == 1
        assert "Failed to query available provider packages" in terminal.message

        logs = [e for e in events if isinstance(e, LogEvent)]
        assert any(e.stream == "stderr" and "Failed to query" in e.message for e in logs)
        assert "Applying Terraform configuration..." not in [e.message for e in logs]

        assert calls.read_text().splitlines() == ["init"]
        assert orch.list_resources("u1") == []
        assert leftover_workspaces() == []

    def test_apply_failure(self, make_orchestrator, aws_creds, leftover_workspaces):
        orch = make_orchestrator(env={"FAKE_TF_APPLY_EXIT": "1"})
        orch.put_credentials("u1", aws_creds)
        handle = _deploy(orch, "network")

        terminal = handle.wait(_TIMEOUT)
        assert terminal.kind == FailureKind.APPLY_FAILURE
        assert "UnauthorizedOperation" in terminal.message
        assert orch.list_resources("u1") == []
        assert leftover_workspaces() == []

        [entry] = orch.history("u1")
        assert entry.status == "error"
        assert entry.failure_kind == "ApplyFailure"

    def test_partial_apply_records_created(self, make_orchestrator, aws_creds, leftover_workspaces):
        orch = make_orchestrator(env={"FAKE_TF_APPLY_EXIT": "1", "FAKE_TF_CREATED": "1"})
        orch.put_credentials("u1", aws_creds)
        handle = _deploy(orch, "network", "subnet")

        terminal = handle.wait(_TIMEOUT)
        assert isinstance(terminal, ErrorEvent)
        assert terminal.kind == FailureKind.APPLY_FAILURE
        assert [r.id for r in orch.list_resources("u1")] == ["vpc-main"]
        assert leftover_workspaces() == []

        [entry] = orch.history("u1")
        assert entry.status == "error"
        assert entry.resources == ["vpc-main"]

    def test_missing_binary(self, aws_creds, workspace_root, leftover_workspaces):
        from cloudforge.core.persistence.resource_ledger import ResourceLedger
        from cloudforge.core.services.credential_vault import CredentialVault
        from cloudforge.core.services.deploy_ops import DeploymentOrchestrator
        from cloudforge.core.services.tf_supervisor import TerraformSupervisor
        from cloudforge.core.services.workspace import WorkspaceManager

        orch = DeploymentOrchestrator(
            vault=CredentialVault(),
            ledger=ResourceLedger(),
            workspaces=WorkspaceManager(workspace_root),
            history=DeploymentHistory(),
            supervisor_factory=lambda: TerraformSupervisor(("/nonexistent/terraform-binary",)),
        )
        try:
            orch.put_credentials("u1", aws_creds)
            terminal = _deploy(orch, "network").wait(_TIMEOUT)
            assert terminal.kind == FailureKind.INTERNAL_ERROR
            assert leftover_workspaces() == []
        finally:
            orch.shutdown()

    def test_overflow_is_internal_error_but_still_recorded(self, make_orchestrator, aws_creds):
        orch = make_orchestrator(env={"FAKE_TF_FILLER": "200"}, queue_size=10)
        orch.put_credentials("u1", aws_creds)
        handle = _deploy(orch, "network")

        # Nobody reads until the deployment is over
        terminal = handle.wait(_TIMEOUT)
        assert terminal.kind == FailureKind.INTERNAL_ERROR
        assert "overflowed" in terminal.message
        assert handle.events.overflowed

        events = list(handle.events)
        assert len(events) == 11
        assert events[-1] is terminal
        assert [r.id for r in orch.list_resources("u1")] == ["vpc-main"]
        assert orch.history("u1")[0].context["overflowed"] is True

    def test_detached_consumer_still_recorded(self, make_orchestrator, aws_creds):
        orch = make_orchestrator(env={"FAKE_TF_SLEEP": "0.5"})
        orch.put_credentials("u1", aws_creds)
        handle = _deploy(orch, "network")
        handle.events.detach()

        terminal = handle.wait(_TIMEOUT)
        assert isinstance(terminal, SuccessEvent)
        assert [r.id for r in orch.list_resources("u1")] == ["vpc-main"]


# ── Concurrency ──────────────────────────────────────────────────────


class TestConcurrency:
    def test_same_id_rejected_while_running(self, make_orchestrator, aws_creds):
        orch = make_orchestrator(env={"FAKE_TF_SLEEP": "2"})
        orch.put_credentials("u1", aws_creds)
        first = _deploy(orch, "network", deployment_id="dep-same")
        assert orch.active() == ["dep-same"]
        with pytest.raises(DeploymentInProgress):
            _deploy(orch, "network", deployment_id="dep-same")
        first.wait(_TIMEOUT)

        # Free again once finished
        _deploy(orch, "network", deployment_id="dep-same").wait(_TIMEOUT)

    def test_users_deploy_in_parallel(self, make_orchestrator, aws_creds, leftover_workspaces):
        orch = make_orchestrator()
        results = {}

        def run(user: str) -> None:
            orch.put_credentials(user, aws_creds)
            results[user] = _deploy(orch, "network", "subnet", user=user).wait(_TIMEOUT)

        threads = [threading.Thread(target=run, args=(f"user-{i}",)) for i in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert all(isinstance(r, SuccessEvent) for r in results.values())
        for user in results:
            assert len(orch.list_resources(user)) == 2
        assert leftover_workspaces() == []


# ── Ledger operations ────────────────────────────────────────────────


class TestLedgerOps:
    def test_delete_resource(self, make_orchestrator, aws_creds):
        orch = make_orchestrator()
        orch.put_credentials("u1", aws_creds)
        _deploy(orch, "network", "subnet").wait(_TIMEOUT)

        removed = orch.delete_resource("u1", "vpc-main")
        assert removed.id == "vpc-main"
        assert [r.id for r in orch.list_resources("u1")] == ["subnet-public"]
        with pytest.raises(NotFound):
            orch.delete_resource("u1", "vpc-main")
        # History is untouched
        assert orch.history("u1")[0].resources == ["vpc-main", "subnet-public"]

    def test_delete_requires_id(self, make_orchestrator):
        with pytest.raises(ValidationError):
            make_orchestrator().delete_resource("u1", "")

    def test_list_requires_user(self, make_orchestrator):
        with pytest.raises(ValidationError):
            make_orchestrator().list_resources("")

    def test_render_needs_credentials(self, make_orchestrator, aws_creds):
        orch = make_orchestrator()
        with pytest.raises(AuthenticationRequired):
            orch.render("u1", "aws", ["network"])
        orch.put_credentials("u1", aws_creds)
        compiled = orch.render("u1", "aws", ["network"])
        assert 'resource "aws_vpc" "main"' in compiled.config_text


# ── Settings wiring ──────────────────────────────────────────────────


class TestBuildOrchestrator:
    def test_file_backed(self, tmp_path: Path, fake_tf, aws_creds):
        settings = Settings(
            terraform_binary=list(fake_tf),
            data_dir=tmp_path / "data",
            workspace_root=tmp_path / "ws",
        )
        orch = build_orchestrator(settings)
        try:
            assert isinstance(orch.ledger.backend, JsonFileLedgerBackend)
            orch.put_credentials("u1", aws_creds)
            assert isinstance(_deploy(orch, "network").wait(_TIMEOUT), SuccessEvent)
            assert (tmp_path / "data" / "resources.json").is_file()
            assert (tmp_path / "data" / "deployments.ndjson").is_file()
        finally:
            orch.shutdown()

    def test_encrypted_credentials(self, tmp_path: Path, aws_creds):
        settings = Settings(
            data_dir=tmp_path,
            credential_backend="encrypted-file",
            credential_passphrase="correct horse battery",
        )
        orch = build_orchestrator(settings)
        try:
            orch.put_credentials("u1", aws_creds)
            assert (tmp_path / "credentials.enc").is_file()
        finally:
            orch.shutdown()

    def test_encrypted_credentials_need_passphrase(self, tmp_path: Path):
        settings = Settings(data_dir=tmp_path, credential_backend="encrypted-file")
        with pytest.raises(ConfigError, match="CF_CREDENTIAL_PASSPHRASE"):
            build_orchestrator(settings)
