"""
Deployment orchestrator — the one entry point the web and CLI layers use.

Control flow for ``deploy``::

    vault.get ─▶ compile_config ─▶ [worker thread]
                                     workspace ─▶ supervisor.run ─▶ ledger
                                     cleanup ─▶ history ─▶ terminal event

Everything before the worker is synchronous: authentication and
validation errors are raised to the caller before any directory or
process exists.  Everything after is asynchronous and ends in exactly
one terminal event on the deployment's :class:`EventStream`.

The orchestrator reads Terraform's output itself (``ApplyTranscript``)
instead of relying on the consumer, so an overflowed or detached
stream never changes what is written to the ledger.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

from cloudforge.core.config.settings import ConfigError, Settings
from cloudforge.core.errors import (
    CloudForgeError,
    DeploymentInProgress,
    FailureKind,
    ValidationError,
)
from cloudforge.core.models.credentials import (
    AwsCredentials,
    AzureCredentials,
    parse_credentials,
)
from cloudforge.core.models.events import ErrorEvent, LogEvent, SuccessEvent
from cloudforge.core.models.resource import ResourceRecord
from cloudforge.core.models.selection import DeploymentParams, ResourceSelection
from cloudforge.core.persistence.audit import (
    DEFAULT_HISTORY_FILE,
    DeploymentEntry,
    DeploymentHistory,
)
from cloudforge.core.persistence.resource_ledger import (
    DEFAULT_LEDGER_FILE,
    JsonFileLedgerBackend,
    MemoryLedgerBackend,
    ResourceLedger,
)
from cloudforge.core.services.credential_vault import (
    CredentialVault,
    EncryptedFileCredentialBackend,
    MemoryCredentialBackend,
)
from cloudforge.core.services.event_stream import DEFAULT_MAX_QUEUED, EventStream
from cloudforge.core.services.tf_compiler import PROVIDERS, CompiledConfig, compile_config
from cloudforge.core.services.tf_output import ApplyTranscript, to_records
from cloudforge.core.services.tf_supervisor import (
    OutputLine,
    Phase,
    SupervisorResult,
    TerraformSupervisor,
)
from cloudforge.core.services.workspace import WorkspaceManager

logger = logging.getLogger(__name__)

Credentials = AwsCredentials | AzureCredentials
TerminalEvent = ErrorEvent | SuccessEvent

CREDENTIALS_FILE = "credentials.enc"

_PHASE_BANNER = {
    Phase.INIT: "Initializing Terraform...",
    Phase.APPLY: "Applying Terraform configuration...",
}

# Lines of stderr echoed into a failure message
_ERROR_TAIL_LINES = 5


@dataclass
class DeploymentHandle:
    """A deployment that has been accepted and is running."""

    deployment_id: str
    user_id: str
    provider: str
    events: EventStream
    compiled: CompiledConfig = field(repr=False)
    _future: Future[TerminalEvent] = field(repr=False)

    def wait(self, timeout: float | None = None) -> TerminalEvent:
        """Block until the deployment ends; returns its terminal event."""
        return self._future.result(timeout)

    def done(self) -> bool:
        return self._future.done()


class DeploymentOrchestrator:
    """Wires the compiler, vault, workspaces, supervisor and ledger together.

    Args:
        vault: Credential store.
        ledger: Resource ledger written after successful applies.
        workspaces: Allocator for per-deployment directories.
        history: Append-only deployment history.
        supervisor_factory: Builds one supervisor per deployment.
        event_queue_size: Bound for each deployment's event queue.
        max_concurrent_deployments: Worker threads running deployments.
    """

    def __init__(
        self,
        *,
        vault: CredentialVault,
        ledger: ResourceLedger,
        workspaces: WorkspaceManager,
        history: DeploymentHistory,
        supervisor_factory: Callable[[], TerraformSupervisor] = TerraformSupervisor,
        event_queue_size: int = DEFAULT_MAX_QUEUED,
        max_concurrent_deployments: int = 4,
    ) -> None:
        self.vault = vault
        self.ledger = ledger
        self.workspaces = workspaces
        self.history_log = history
        self._supervisor_factory = supervisor_factory
        self._event_queue_size = event_queue_size
        self._executor = ThreadPoolExecutor(
            max_workers=max_concurrent_deployments,
            thread_name_prefix="cloudforge-deploy",
        )
        self._lock = threading.Lock()
        self._in_flight: dict[str, DeploymentHandle] = {}

    # ── Credentials ─────────────────────────────────────────────

    def put_credentials(self, user_id: str, credentials: Credentials | dict[str, Any]) -> str:
        """Store credentials for a user.  Returns the provider name."""
        _require_user(user_id)
        if not isinstance(credentials, (AwsCredentials, AzureCredentials)):
            credentials = parse_credentials(credentials)
        self.vault.put(user_id, credentials)
        return credentials.provider

    # ── Compile / deploy ────────────────────────────────────────

    def render(
        self,
        user_id: str,
        provider: str,
        selection: ResourceSelection | Any,
        params: DeploymentParams | Any = None,
    ) -> CompiledConfig:
        """Compile without deploying (preview).

        Raises:
            AuthenticationRequired: No credentials for this user/provider.
            ValidationError: The selection cannot be compiled.
        """
        credentials = self.vault.get(user_id, provider)
        return _compile(provider, selection, params, credentials)

    def deploy(
        self,
        user_id: str,
        provider: str,
        selection: ResourceSelection | Any,
        params: DeploymentParams | Any = None,
        *,
        deployment_id: str | None = None,
    ) -> DeploymentHandle:
        """Start a deployment and return its handle immediately.

        Raises:
            AuthenticationRequired: No credentials for this user/provider.
            ValidationError: The selection cannot be compiled.
            DeploymentInProgress: ``deployment_id`` is already running.
        """
        credentials = self.vault.get(user_id, provider)
        compiled = _compile(provider, selection, params, credentials)

        deployment_id = deployment_id or f"dep-{uuid.uuid4().hex[:12]}"
        stream = EventStream(max_queued=self._event_queue_size)

        with self._lock:
            if deployment_id in self._in_flight:
                raise DeploymentInProgress(f"Deployment {deployment_id} is already running")
            future: Future[TerminalEvent] = Future()
            handle = DeploymentHandle(
                deployment_id=deployment_id,
                user_id=user_id,
                provider=provider,
                events=stream,
                compiled=compiled,
                _future=future,
            )
            self._in_flight[deployment_id] = handle

        logger.info(
            "Deployment %s accepted (user=%s, provider=%s, resources=%d)",
            deployment_id, user_id, provider, len(compiled.resources),
        )
        try:
            self._executor.submit(self._run, handle, credentials.region)
        except RuntimeError:
            with self._lock:
                self._in_flight.pop(deployment_id, None)
            raise
        return handle

    def active(self) -> list[str]:
        """Deployment ids currently running."""
        with self._lock:
            return sorted(self._in_flight)

    def _run(self, handle: DeploymentHandle, region: str) -> None:
        stream = handle.events
        started = time.monotonic()
        transcript = ApplyTranscript()
        records: list[ResourceRecord] = []
        result: SupervisorResult | None = None

        def on_phase(phase: Phase) -> None:
            stream.publish(LogEvent(message=_PHASE_BANNER[phase], phase=phase.value))

        def on_line(line: OutputLine) -> None:
            if line.stream == "stdout" and line.phase == Phase.APPLY:
                transcript.feed(line.text)
            stream.publish(LogEvent(message=line.text, stream=line.stream, phase=line.phase.value))

        try:
            compiled = handle.compiled
            with self.workspaces.workspace(
                handle.deployment_id, compiled.config_text, compiled.secrets_text,
            ) as ws:
                result = self._supervisor_factory().run(ws, on_line, on_phase=on_phase)
                # Ledger write precedes workspace cleanup.  A failed apply
                # still records whatever Terraform reported as created.
                if transcript.created:
                    records = to_records(
                        transcript, compiled, region=region, deployment_id=handle.deployment_id,
                    )
                    self.ledger.record_many(handle.user_id, records)
                    if not result.ok:
                        logger.warning(
                            "Deployment %s failed after creating %d resources; recorded them",
                            handle.deployment_id, len(records),
                        )
            terminal = _terminal_for(result, transcript, records)
        except CloudForgeError as e:
            logger.error("Deployment %s failed internally: %s", handle.deployment_id, e)
            terminal = ErrorEvent(message=f"Internal error: {e}", kind=FailureKind.INTERNAL_ERROR)
        except Exception as e:
            logger.exception("Deployment %s crashed", handle.deployment_id)
            terminal = ErrorEvent(message=f"Internal error: {e}", kind=FailureKind.INTERNAL_ERROR)

        try:
            terminal = stream.finish(terminal)
            self.history_log.write(DeploymentEntry(
                deployment_id=handle.deployment_id,
                user_id=handle.user_id,
                provider=handle.provider,
                primitives=sorted({r.primitive for r in handle.compiled.resources} - {"base"}),
                status=terminal.type,
                failure_kind=terminal.kind.value if isinstance(terminal, ErrorEvent) else None,
                exit_code=result.exit_code if result is not None else None,
                resources=[r.id for r in records],
                duration_ms=int((time.monotonic() - started) * 1000),
                message=terminal.message,
                context={"overflowed": stream.overflowed, "detached": stream.detached},
            ))
            logger.info(
                "Deployment %s finished: %s (%d resources)",
                handle.deployment_id, terminal.type, len(records),
            )
        finally:
            with self._lock:
                self._in_flight.pop(handle.deployment_id, None)
            if not handle._future.done():
                handle._future.set_result(terminal)

    # ── Ledger / history ────────────────────────────────────────

    def list_resources(self, user_id: str) -> list[ResourceRecord]:
        _require_user(user_id)
        return self.ledger.list(user_id)

    def delete_resource(self, user_id: str, resource_id: str) -> ResourceRecord:
        """Forget a resource.

        Only the ledger entry is removed; the cloud resource is left as is.

        Raises:
            NotFound: Unknown resource id for this user.
        """
        _require_user(user_id)
        if not resource_id:
            raise ValidationError("resourceId is required")
        return self.ledger.remove(user_id, resource_id)

    def history(self, user_id: str, limit: int | None = None) -> list[DeploymentEntry]:
        _require_user(user_id)
        return self.history_log.for_user(user_id, limit)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


# ═══════════════════════════════════════════════════════════════════
#  Helpers
# ═══════════════════════════════════════════════════════════════════


def _require_user(user_id: str) -> None:
    if not user_id:
        raise ValidationError("userId is required")


def _compile(
    provider: str,
    selection: ResourceSelection | Any,
    params: DeploymentParams | Any,
    credentials: Credentials,
) -> CompiledConfig:
    if not isinstance(selection, ResourceSelection):
        selection = ResourceSelection.from_payload(selection)
    if not isinstance(params, DeploymentParams):
        params = DeploymentParams.from_payload(params or {})
    return compile_config(provider, selection, params, credentials)


def _terminal_for(
    result: SupervisorResult | None,
    transcript: ApplyTranscript,
    records: list[ResourceRecord],
) -> TerminalEvent:
    if result is None:
        return ErrorEvent(message="Internal error: deployment did not run", kind=FailureKind.INTERNAL_ERROR)

    if result.ok:
        message = "Deployment completed successfully!"
        if transcript.summary is not None:
            message += f" Resources: {transcript.summary.describe()}."
        return SuccessEvent(message=message, resources=[r.id for r in records])

    message = result.message
    tail = result.stderr_tail[-_ERROR_TAIL_LINES:]
    if tail:
        message += "\n" + "\n".join(tail)
    return ErrorEvent(
        message=message,
        kind=result.failure_kind or FailureKind.INTERNAL_ERROR,
        exit_code=result.exit_code,
    )


def build_orchestrator(settings: Settings) -> DeploymentOrchestrator:
    """Construct an orchestrator and its collaborators from settings."""
    data_dir = settings.data_dir

    if settings.credential_backend == "encrypted-file":
        if data_dir is None or settings.credential_passphrase is None:
            raise ConfigError(
                "credential_backend 'encrypted-file' needs data_dir and "
                "CF_CREDENTIAL_PASSPHRASE"
            )
        credential_backend = EncryptedFileCredentialBackend(
            data_dir / CREDENTIALS_FILE,
            settings.credential_passphrase.get_secret_value(),
        )
    else:
        credential_backend = MemoryCredentialBackend()

    if data_dir is not None:
        ledger_backend = JsonFileLedgerBackend(data_dir / DEFAULT_LEDGER_FILE)
        history = DeploymentHistory(data_dir / DEFAULT_HISTORY_FILE)
    else:
        ledger_backend = MemoryLedgerBackend()
        history = DeploymentHistory()

    plugin_cache = settings.plugin_cache_dir
    if plugin_cache is not None:
        plugin_cache.mkdir(parents=True, exist_ok=True)

    def supervisor_factory() -> TerraformSupervisor:
        return TerraformSupervisor(
            settings.terraform_binary,
            timeout=settings.deploy_timeout_s,
            plugin_cache_dir=str(plugin_cache) if plugin_cache else None,
        )

    logger.debug("Building orchestrator (providers: %s)", ", ".join(PROVIDERS))
    return DeploymentOrchestrator(
        vault=CredentialVault(credential_backend),
        ledger=ResourceLedger(ledger_backend),
        workspaces=WorkspaceManager(settings.workspace_root),
        history=history,
        supervisor_factory=supervisor_factory,
        event_queue_size=settings.event_queue_size,
        max_concurrent_deployments=settings.max_concurrent_deployments,
    )
