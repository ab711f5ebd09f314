"""Tests for the worker boundary: CommandWorker, output parsing and verification."""

import shutil

import pytest

from drydock.durable.heartbeat import HeartbeatRegistry
from drydock.pipeline.worker import (
    COMPLETION_SENTINEL,
    CommandWorker,
    WorkerRequest,
    WorkerResult,
    has_sentinel,
    parse_structured,
    run_verify,
)

pytestmark = pytest.mark.skipif(shutil.which("sh") is None, reason="needs a POSIX shell")


def _request(tmp_path, **overrides) -> WorkerRequest:
    defaults = dict(run_id="r1", stage="build", iteration=2, prompt="do the thing\n",
                    cwd=str(tmp_path), job_id="r1-build", work_item="ISSUE-7", timeout_s=30)
    defaults.update(overrides)
    return WorkerRequest(**defaults)


class TestParsing:
    def test_sentinel_must_be_its_own_line(self):
        assert has_sentinel(f"working\n  {COMPLETION_SENTINEL}  \n")
        assert not has_sentinel(f"not yet {COMPLETION_SENTINEL}")

    def test_structured_takes_last_object(self):
        out = 'log\n{"passed": false}\nmore\n{"passed": true, "findings": ["x"]}\n'
        assert parse_structured(out) == {"passed": True, "findings": ["x"]}

    def test_structured_ignores_garbage(self):
        assert parse_structured("{not json}\n[1, 2]\nplain") is None

    def test_result_ok(self):
        assert WorkerResult(0).ok
        assert not WorkerResult(1).ok
        assert not WorkerResult(0, timed_out=True).ok
        assert not WorkerResult(0, stalled=True).ok

    def test_result_summary(self):
        assert "stalled" in WorkerResult(0, stalled=True).summary()
        assert WorkerResult(3).summary() == "agent exited 3"
        assert WorkerResult(0, completed=True).summary() == "agent reported completion"


class TestCommandWorker:
    def test_prompt_on_stdin(self, tmp_path):
        result = CommandWorker(["cat"]).run(_request(tmp_path))
        assert result.exit_code == 0
        assert "do the thing" in result.output
        assert not result.completed

    def test_detects_completion(self, tmp_path):
        worker = CommandWorker(["sh", "-c", f"cat >/dev/null; echo working; echo {COMPLETION_SENTINEL}"])
        result = worker.run(_request(tmp_path))
        assert result.completed
        assert result.ok

    def test_exit_code(self, tmp_path):
        result = CommandWorker("sh -c 'cat >/dev/null; exit 3'").run(_request(tmp_path))
        assert result.exit_code == 3
        assert not result.ok

    def test_missing_command(self, tmp_path):
        result = CommandWorker(["definitely-not-a-real-agent"]).run(_request(tmp_path))
        assert result.exit_code == 127

    def test_empty_command(self):
        with pytest.raises(ValueError):
            CommandWorker("")

    def test_environment(self, tmp_path):
        worker = CommandWorker(["sh", "-c", 'cat >/dev/null; echo "$DRYDOCK_STAGE:$DRYDOCK_ITERATION:$EXTRA"'])
        result = worker.run(_request(tmp_path, env={"EXTRA": "yes"}))
        assert "build:2:yes" in result.output

    def test_structured_output(self, tmp_path):
        worker = CommandWorker(["sh", "-c", """cat >/dev/null; echo '{"passed": false}'"""])
        assert worker.run(_request(tmp_path)).structured == {"passed": False}

    def test_timeout_kills(self, tmp_path):
        result = CommandWorker(["sh", "-c", "exec sleep 30"]).run(_request(tmp_path, timeout_s=1))
        assert result.timed_out
        assert not result.ok

    def test_output_refreshes_heartbeat(self, tmp_path):
        registry = HeartbeatRegistry(tmp_path / "hb")
        worker = CommandWorker(["sh", "-c", "cat >/dev/null; echo compiling"], registry)
        worker.run(_request(tmp_path))
        hb = registry.get("r1-build")
        assert hb.stage == "build"
        assert hb.iteration == 2
        assert hb.issue == "ISSUE-7"

    def test_stalled_agent_is_killed(self, tmp_path):
        registry = HeartbeatRegistry(tmp_path / "hb")
        worker = CommandWorker(["sh", "-c", "exec sleep 30"], registry,
                               stall_timeout=0.2, watch_interval=0.05)
        result = worker.run(_request(tmp_path, timeout_s=20))
        assert result.stalled
        assert not result.timed_out
        assert "stalled" in result.summary()


class TestRunVerify:
    def test_pass(self, tmp_path):
        result = run_verify("echo ok", str(tmp_path))
        assert result.passed
        assert "ok" in result.output

    def test_fail_keeps_output(self, tmp_path):
        result = run_verify("echo broken >&2; exit 2", str(tmp_path))
        assert not result.passed
        assert result.exit_code == 2
        assert "broken" in result.output

    def test_timeout(self, tmp_path):
        result = run_verify("sleep 5", str(tmp_path), timeout_s=1)
        assert not result.passed
        assert result.exit_code == 124
