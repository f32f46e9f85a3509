"""
Shared test fixtures and configuration.
"""

import sys
from pathlib import Path

import pytest

from cloudforge.core.models.credentials import parse_credentials
from cloudforge.core.persistence.audit import DeploymentHistory
from cloudforge.core.persistence.resource_ledger import ResourceLedger
from cloudforge.core.services.credential_vault import CredentialVault
from cloudforge.core.services.deploy_ops import DeploymentOrchestrator
from cloudforge.core.services.tf_supervisor import TerraformSupervisor
from cloudforge.core.services.workspace import WorkspaceManager

AWS_ACCESS_KEY = "AKIAFAKEACCESSKEY0001"
AWS_SECRET_KEY = "fakeSecretKey/abcdefghijklmnop0123456789"


@pytest.fixture
def fixtures_dir() -> Path:
    """Return the test fixtures directory."""
    return Path(__file__).parent / "fixtures"


@pytest.fixture
def fake_tf(fixtures_dir: Path) -> tuple[str, str]:
    """Command prefix that runs the fake terraform script."""
    return (sys.executable, str(fixtures_dir / "fake_terraform.py"))


@pytest.fixture
def aws_creds():
    return parse_credentials({
        "provider": "aws",
        "accessKey": AWS_ACCESS_KEY,
        "secretKey": AWS_SECRET_KEY,
        "region": "us-east-1",
    })


@pytest.fixture
def azure_creds():
    return parse_credentials({
        "provider": "azure",
        "subscriptionId": "00000000-1111-2222-3333-444444444444",
        "clientId": "55555555-6666-7777-8888-999999999999",
        "clientSecret": "az-client-secret-value-xyz",
        "tenantId": "aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee",
        "location": "West Europe",
    })


@pytest.fixture
def workspace_root(tmp_path: Path) -> Path:
    """Where test workspaces are allocated (not created up front)."""
    return tmp_path / "workspaces"


@pytest.fixture
def make_orchestrator(fake_tf, workspace_root):
    """Factory for orchestrators wired to the fake terraform script.

    Usage: ``orch = make_orchestrator(env={"FAKE_TF_INIT_EXIT": "1"})``
    """
    created: list[DeploymentOrchestrator] = []

    def _make(env=None, timeout=None, queue_size=10_000, ledger=None, history=None):
        def factory() -> TerraformSupervisor:
            return TerraformSupervisor(fake_tf, env=env, timeout=timeout)

        orch = DeploymentOrchestrator(
            vault=CredentialVault(),
            ledger=ledger or ResourceLedger(),
            workspaces=WorkspaceManager(workspace_root),
            history=history or DeploymentHistory(),
            supervisor_factory=factory,
            event_queue_size=queue_size,
        )
        created.append(orch)
        return orch

    yield _make

    for orch in created:
        orch.shutdown(wait=True)


@pytest.fixture
def leftover_workspaces(workspace_root: Path):
    """Callable listing workspace directories still on disk."""

    def _list() -> list[Path]:
        if not workspace_root.exists():
            return []
        return list(workspace_root.iterdir())

    return _list
