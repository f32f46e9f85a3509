"""
Terraform process supervisor — init, then apply, inside a workspace.

State machine per deployment::

    INIT ──exit 0──▶ APPLYING ──exit 0──▶ SUCCEEDED
      │                  │
      └─exit≠0─▶ FAILED  └─exit≠0─▶ FAILED
         (InitFailure)      (ApplyFailure)

Output handling: each child pipe (stdout, stderr) is read by its own
thread in raw chunks and pushed onto one shared queue.  A single
merger loop (the caller's thread) consumes that queue, reassembles
partial lines per stream, and hands every completed line to
``on_line`` in arrival order.  Lines are emitted while the phase is
still running; nothing waits for the phase to exit.

Terraform is never assumed to line-buffer: a chunk boundary may fall
anywhere, including inside a multi-byte UTF-8 character.
"""

from __future__ import annotations

import codecs
import io
import json
import logging
import os
import queue
import subprocess
import threading
import time
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum

from cloudforge.core.errors import FailureKind
from cloudforge.core.services.workspace import SECRETS_FILENAME, Workspace

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 4096
_STDERR_TAIL = 20
_KILL_GRACE_S = 10.0


class Phase(str, Enum):
    INIT = "init"
    APPLY = "apply"


class DeploymentState(str, Enum):
    INIT = "init"
    APPLYING = "applying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


_PHASE_FAILURE = {
    Phase.INIT: FailureKind.INIT_FAILURE,
    Phase.APPLY: FailureKind.APPLY_FAILURE,
}


@dataclass(frozen=True)
class OutputLine:
    phase: Phase
    stream: str          # "stdout" | "stderr"
    text: str


@dataclass
class SupervisorResult:
    state: DeploymentState
    failure_kind: FailureKind | None = None
    phase: Phase | None = None
    exit_code: int | None = None
    timed_out: bool = False
    stderr_tail: list[str] = field(default_factory=list)
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.state == DeploymentState.SUCCEEDED


# ═══════════════════════════════════════════════════════════════════
#  Line reassembly
# ═══════════════════════════════════════════════════════════════════


class LineAssembler:
    """Turns arbitrary byte chunks into complete text lines."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._partial = ""

    def feed(self, chunk: bytes) -> list[str]:
        text = self._partial + self._decoder.decode(chunk)
        *lines, self._partial = text.split("\n")
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> list[str]:
        """Return the trailing unterminated line, if any."""
        text = self._partial + self._decoder.decode(b"", final=True)
        self._partial = ""
        return [text.rstrip("\r")] if text else []


def _pump(pipe: io.BufferedReader, name: str, sink: queue.Queue[tuple[str, bytes | None]]) -> None:
    """Reader thread body: copy one pipe into the shared queue."""
    try:
        while True:
            chunk = pipe.read1(_CHUNK_SIZE)
            if not chunk:
                break
            sink.put((name, chunk))
    except (OSError, ValueError) as e:
        logger.warning("Reading %s failed: %s", name, e)
    finally:
        sink.put((name, None))


# ═══════════════════════════════════════════════════════════════════
#  Supervisor
# ═══════════════════════════════════════════════════════════════════


class TerraformSupervisor:
    """Runs the Terraform phases for one deployment.

    Args:
        binary: Command prefix for the provisioning tool.  Tests pass
            ``(sys.executable, "fake_terraform.py")``.
        env: Extra environment variables for the child.
        timeout: Optional wall-clock budget in seconds for the whole
            deployment (both phases).  None means no limit.
        plugin_cache_dir: Shared provider plugin cache, so fresh
            workspaces do not re-download providers.
    """

    def __init__(
        self,
        binary: Sequence[str] = ("terraform",),
        *,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
        plugin_cache_dir: str | None = None,
    ) -> None:
        self._binary = tuple(binary)
        self._env = dict(env or {})
        self._timeout = timeout
        self._plugin_cache_dir = plugin_cache_dir
        self.state = DeploymentState.INIT

    @property
    def binary(self) -> tuple[str, ...]:
        return self._binary

    def _child_env(self) -> dict[str, str]:
        env = dict(os.environ)
        env["TF_IN_AUTOMATION"] = "1"
        env["TF_INPUT"] = "0"
        if self._plugin_cache_dir:
            env["TF_PLUGIN_CACHE_DIR"] = self._plugin_cache_dir
        env.update(self._env)
        return env

    def run(
        self,
        workspace: Workspace,
        on_line: Callable[[OutputLine], None],
        *,
        on_phase: Callable[[Phase], None] | None = None,
    ) -> SupervisorResult:
        """Run init then apply.  Never raises for tool failures.

        Returns:
            SupervisorResult with the final state and, on failure, the
            failure kind, exit code and the last stderr lines.
        """
        deadline = time.monotonic() + self._timeout if self._timeout else None

        phases = (
            (Phase.INIT, DeploymentState.INIT, ["init", "-no-color", "-input=false"]),
            (
                Phase.APPLY,
                DeploymentState.APPLYING,
                ["apply", "-auto-approve", "-no-color", "-input=false",
                 f"-var-file={SECRETS_FILENAME}"],
            ),
        )

        for phase, state, args in phases:
            self.state = state
            if on_phase is not None:
                on_phase(phase)
            result = self._run_phase(phase, args, workspace, on_line, deadline)
            if result is not None:
                self.state = DeploymentState.FAILED
                return result

        self.state = DeploymentState.SUCCEEDED
        return SupervisorResult(state=DeploymentState.SUCCEEDED, exit_code=0)

    def _run_phase(
        self,
        phase: Phase,
        args: list[str],
        workspace: Workspace,
        on_line: Callable[[OutputLine], None],
        deadline: float | None,
    ) -> SupervisorResult | None:
        """Run one phase.  Returns None on success, a failed result otherwise."""
        cmd = [*self._binary, *args]
        logger.info("terraform %s (cwd=%s)", phase.value, workspace.path)

        try:
            proc = subprocess.Popen(
                cmd,
                cwd=str(workspace.path),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=self._child_env(),
            )
        except OSError as e:
            logger.error("Cannot start %s: %s", cmd[0], e)
            return SupervisorResult(
                state=DeploymentState.FAILED,
                failure_kind=FailureKind.INTERNAL_ERROR,
                phase=phase,
                message=f"Cannot start {cmd[0]}: {e}",
            )

        chunks: queue.Queue[tuple[str, bytes | None]] = queue.Queue()
        assert proc.stdout is not None and proc.stderr is not None
        readers = [
            threading.Thread(
                target=_pump, args=(pipe, name, chunks),
                name=f"tf-{workspace.deployment_id}-{phase.value}-{name}", daemon=True,
            )
            for name, pipe in (("stdout", proc.stdout), ("stderr", proc.stderr))
        ]
        for t in readers:
            t.start()

        assemblers = {"stdout": LineAssembler(), "stderr": LineAssembler()}
        stderr_tail: deque[str] = deque(maxlen=_STDERR_TAIL)
        open_streams = len(readers)
        timed_out = False
        kill_stage = 0

        def emit(stream: str, text: str) -> None:
            if stream == "stderr" and text.strip():
                stderr_tail.append(text)
            logger.debug("[%s %s] %s", phase.value, stream, text)
            on_line(OutputLine(phase=phase, stream=stream, text=text))

        while open_streams:
            wait = None if deadline is None else max(0.0, deadline - time.monotonic())
            try:
                name, chunk = chunks.get(timeout=wait)
            except queue.Empty:
                # Deadline passed; escalate one step per grace period
                timed_out = True
                kill_stage += 1
                if kill_stage == 1:
                    logger.warning("Deployment budget exceeded; terminating terraform %s", phase.value)
                    proc.terminate()
                elif kill_stage == 2:
                    proc.kill()
                else:
                    logger.error("terraform %s did not release its pipes; abandoning readers", phase.value)
                    break
                deadline = time.monotonic() + _KILL_GRACE_S
                continue

            if chunk is None:
                open_streams -= 1
                for line in assemblers[name].flush():
                    emit(name, line)
                continue
            for line in assemblers[name].feed(chunk):
                emit(name, line)

        returncode = proc.wait()
        for t in readers:
            t.join(timeout=1.0)
        for pipe in (proc.stdout, proc.stderr):
            pipe.close()

        logger.info("terraform %s exited with code %d", phase.value, returncode)

        if returncode == 0 and not timed_out:
            return None

        kind = _PHASE_FAILURE[phase]
        if timed_out:
            message = f"terraform {phase.value} exceeded the {self._timeout:g}s deployment budget"
        else:
            message = f"terraform {phase.value} failed with exit code {returncode}"
        return SupervisorResult(
            state=DeploymentState.FAILED,
            failure_kind=kind,
            phase=phase,
            exit_code=returncode,
            timed_out=timed_out,
            stderr_tail=list(stderr_tail),
            message=message,
        )


def terraform_available(binary: Sequence[str] = ("terraform",)) -> dict:
    """Probe the terraform CLI for ``/health``.

    Tries ``version -json`` and falls back to the first line of plain
    ``version``.  Any failure to start the binary means unavailable.
    """
    for args in (("version", "-json"), ("version",)):
        try:
            result = subprocess.run(
                [*binary, *args], capture_output=True, text=True, timeout=10,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug("terraform %s probe failed: %s", " ".join(args), e)
            continue
        if result.returncode != 0:
            continue
        if "-json" not in args:
            return {"available": True, "version": result.stdout.strip().split("\n")[0]}
        try:
            version = json.loads(result.stdout).get("terraform_version", "unknown")
        except ValueError:
            continue
        return {"available": True, "version": version}

    return {"available": False, "version": None}
