"""
Tests for the Terraform process supervisor.

The provisioning tool is replaced by tests/fixtures/fake_terraform.py.
"""

from pathlib import Path

from cloudforge.core.errors import FailureKind
from cloudforge.core.services.tf_supervisor import (
    DeploymentState,
    LineAssembler,
    OutputLine,
    Phase,
    TerraformSupervisor,
    terraform_available,
)
from cloudforge.core.services.workspace import WorkspaceManager

_CONFIG = '''resource "aws_vpc" "main" {
  cidr_block = "10.0.0.0/16"
}

resource "aws_subnet" "public" {
  vpc_id = aws_vpc.main.id
}
'''


def _run(fake_tf, tmp_path: Path, env=None, timeout=None):
    lines: list[OutputLine] = []
    phases: list[Phase] = []
    supervisor = TerraformSupervisor(fake_tf, env=env, timeout=timeout)
    with WorkspaceManager(tmp_path / "ws").workspace("dep-test", _CONFIG, 'access_key = "x"\n') as ws:
        result = supervisor.run(ws, lines.append, on_phase=phases.append)
    return supervisor, result, lines, phases


class TestLineAssembler:
    def test_split_lines(self):
        asm = LineAssembler()
        assert asm.feed(b"par") == []
        assert asm.feed(b"tial\nnext") == ["partial"]
        assert asm.feed(b" line\n") == ["next line"]
        assert asm.flush() == []

    def test_crlf(self):
        assert LineAssembler().feed(b"a\r\nb\r\n") == ["a", "b"]

    def test_multibyte_split(self):
        asm = LineAssembler()
        data = "✓ done\n".encode("utf-8")
        assert asm.feed(data[:1]) == []
        assert asm.feed(data[1:]) == ["✓ done"]

    def test_trailing_flush(self):
        asm = LineAssembler()
        asm.feed(b"one\ntwo")
        assert asm.flush() == ["two"]
        assert asm.flush() == []

    def test_empty_lines_preserved(self):
        assert LineAssembler().feed(b"a\n\nb\n") == ["a", "", "b"]


class TestSupervisorRun:
    def test_success(self, fake_tf, tmp_path: Path):
        supervisor, result, lines, phases = _run(fake_tf, tmp_path)
        assert result.ok
        assert result.exit_code == 0
        assert supervisor.state == DeploymentState.SUCCEEDED
        assert phases == [Phase.INIT, Phase.APPLY]

        texts = [l.text for l in lines]
        assert "Terraform has been successfully initialized!" in texts
        assert "aws_vpc.main: Creation complete after 1s [id=vpc-main]" in texts
        init_lines = [l for l in lines if l.phase == Phase.INIT]
        apply_lines = [l for l in lines if l.phase == Phase.APPLY]
        assert lines.index(init_lines[-1]) < lines.index(apply_lines[0])

    def test_trailing_line_without_newline(self, fake_tf, tmp_path: Path):
        _, _, lines, _ = _run(fake_tf, tmp_path)
        assert lines[-1].text == "Outputs: none"
        assert lines[-1].stream == "stdout"

    def test_init_failure_skips_apply(self, fake_tf, tmp_path: Path):
        calls = tmp_path / "calls.txt"
        supervisor, result, lines, phases = _run(
            fake_tf, tmp_path, env={"FAKE_TF_INIT_EXIT": "1", "FAKE_TF_CALLS": str(calls)},
        )
        assert not result.ok
        assert result.failure_kind == FailureKind.INIT_FAILURE
        assert result.phase == Phase.INIT
        assert result.exit_code == 1
        assert supervisor.state == DeploymentState.FAILED
        assert phases == [Phase.INIT]
        assert calls.read_text().splitlines() == ["init"]
        assert "Error: Failed to query available provider packages" in result.stderr_tail
        assert any(l.stream == "stderr" and "Failed to query" in l.text for l in lines)

    def test_apply_failure(self, fake_tf, tmp_path: Path):
        _, result, _, phases = _run(fake_tf, tmp_path, env={"FAKE_TF_APPLY_EXIT": "1"})
        assert result.failure_kind == FailureKind.APPLY_FAILURE
        assert result.phase == Phase.APPLY
        assert result.exit_code == 1
        assert phases == [Phase.INIT, Phase.APPLY]
        assert result.stderr_tail[-1] == "Error: creating EC2 VPC: UnauthorizedOperation"
        assert "exit code 1" in result.message

    def test_apply_gets_secrets_file(self, fake_tf, tmp_path: Path):
        # The fake exits 3 when -var-file is missing and 4 without -auto-approve
        _, result, _, _ = _run(fake_tf, tmp_path)
        assert result.exit_code == 0

    def test_interleaved_streams_in_arrival_order(self, fake_tf, tmp_path: Path):
        _, _, lines, _ = _run(fake_tf, tmp_path, env={"FAKE_TF_INTERLEAVE": "1"})
        tagged = [(l.stream, l.text) for l in lines if l.text[:4] in ("out-", "err-")]
        assert tagged == [
            ("stdout", "out-1"), ("stderr", "err-1"),
            ("stdout", "out-2"), ("stderr", "err-2"),
            ("stdout", "out-3"), ("stderr", "err-3"),
        ]

    def test_partial_writes_reassembled(self, fake_tf, tmp_path: Path):
        _, _, lines, _ = _run(fake_tf, tmp_path, env={"FAKE_TF_PARTIAL": "1"})
        texts = [l.text for l in lines]
        assert "partial-line" in texts
        assert "second line" in texts
        assert "partial-" not in texts

    def test_missing_binary_is_internal_error(self, tmp_path: Path):
        supervisor = TerraformSupervisor(("/nonexistent/terraform-binary",))
        with WorkspaceManager(tmp_path).workspace("dep-x", _CONFIG, "") as ws:
            result = supervisor.run(ws, lambda line: None)
        assert result.failure_kind == FailureKind.INTERNAL_ERROR
        assert result.phase == Phase.INIT
        assert "Cannot start" in result.message

    def test_timeout_terminates_apply(self, fake_tf, tmp_path: Path):
        _, result, _, _ = _run(fake_tf, tmp_path, env={"FAKE_TF_SLEEP": "30"}, timeout=3)
        assert result.timed_out
        assert result.failure_kind == FailureKind.APPLY_FAILURE
        assert "budget" in result.message

    def test_child_environment(self):
        env = TerraformSupervisor(env={"EXTRA": "1"}, plugin_cache_dir="/cache")._child_env()
        assert env["TF_IN_AUTOMATION"] == "1"
        assert env["TF_INPUT"] == "0"
        assert env["TF_PLUGIN_CACHE_DIR"] == "/cache"
        assert env["EXTRA"] == "1"


class TestTerraformAvailable:
    def test_fake_binary(self, fake_tf):
        info = terraform_available(fake_tf)
        assert info == {"available": True, "version": "1.6.0-fake"}

    def test_missing_binary(self):
        info = terraform_available(("/nonexistent/terraform-binary",))
        assert info == {"available": False, "version": None}

    def test_non_executable_binary(self, tmp_path: Path):
        binary = tmp_path / "terraform"
        binary.write_text("not a program\n")
        binary.chmod(0o644)
        info = terraform_available((str(binary),))
        assert info == {"available": False, "version": None}
