# Copyright 2026. Worker invocation boundary: prompt in, result plus completion sentinel out.

import json
import os
import shlex
import subprocess
import threading
import time
from dataclasses import dataclass, field
from typing import Protocol

from drydock.core.logging import PeriodicTask, log_activity
from drydock.durable.heartbeat import HeartbeatRegistry, HeartbeatStatus

COMPLETION_SENTINEL = "LOOP_COMPLETE"

_MAX_OUTPUT_LINES = 100_000
_HEARTBEAT_MIN_GAP_S = 1.0


@dataclass
class WorkerRequest:
    run_id: str
    stage: str
    iteration: int
    prompt: str
    cwd: str
    job_id: str = ""
    work_item: str = ""
    timeout_s: int = 3600
    env: dict[str, str] = field(default_factory=dict)


@dataclass
class WorkerResult:
    exit_code: int
    output: str = ""
    completed: bool = False
    timed_out: bool = False
    stalled: bool = False
    structured: dict | None = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.stalled

    def summary(self) -> str:
        if self.stalled:
            return "agent stalled (heartbeat went stale) and was killed"
        if self.timed_out:
            return "agent timed out"
        if self.exit_code != 0:
            return f"agent exited {self.exit_code}"
        return "agent reported completion" if self.completed else "agent finished"


class Worker(Protocol):
    def run(self, request: WorkerRequest) -> WorkerResult:
        ...


def parse_structured(output: str) -> dict | None:
    """The last line of `output` that parses as a JSON object, if any."""
    for line in reversed(output.splitlines()):
        line = line.strip()
        if not (line.startswith("{") and line.endswith("}")):
            continue
        try:
            value = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(value, dict):
            return value
    return None


def has_sentinel(output: str) -> bool:
    return any(line.strip() == COMPLETION_SENTINEL for line in output.splitlines())


class CommandWorker:
    """Runs an external agent command with the prompt on stdin.

    Every line of output refreshes the job's heartbeat. A watchdog kills the
    process once the heartbeat has been stale for `stall_timeout` seconds,
    which covers an agent that hangs without exiting.
    """

    def __init__(self, command: list[str] | str, heartbeats: HeartbeatRegistry | None = None,
                 stall_timeout: float = 900.0, watch_interval: float = 15.0,
                 activity_log: str = ""):
        self.command = shlex.split(command) if isinstance(command, str) else list(command)
        if not self.command:
            raise ValueError("worker command is empty")
        self._heartbeats = heartbeats
        self._stall_timeout = stall_timeout
        self._watch_interval = watch_interval
        self._activity_log = activity_log

    def run(self, request: WorkerRequest) -> WorkerResult:
        source = f"{request.stage}#{request.iteration}"
        env = os.environ.copy()
        env.update(request.env)
        env.update({
            "DRYDOCK_RUN_ID": request.run_id,
            "DRYDOCK_STAGE": request.stage,
            "DRYDOCK_ITERATION": str(request.iteration),
            "DRYDOCK_JOB_ID": request.job_id,
        })
        try:
            proc = subprocess.Popen(
                self.command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                cwd=request.cwd,
                env=env,
                text=True,
            )
        except FileNotFoundError:
            log_activity(self._activity_log, source, f"ERROR: '{self.command[0]}' not found")
            return WorkerResult(exit_code=127, output=f"{self.command[0]}: command not found")

        beat_lock = threading.Lock()
        last_beat = 0.0

        def _beat(activity: str) -> None:
            nonlocal last_beat
            if not (self._heartbeats and request.job_id):
                return
            with beat_lock:
                now = time.monotonic()
                if now - last_beat < _HEARTBEAT_MIN_GAP_S:
                    return
                last_beat = now
            self._heartbeats.write(
                request.job_id, pid=proc.pid, issue=request.work_item,
                stage=request.stage, iteration=request.iteration, activity=activity[:200],
            )

        _beat("started")
        try:
            proc.stdin.write(request.prompt)
            proc.stdin.close()
        except OSError:
            pass

        lines: list[str] = []

        def _reader():
            for raw_line in proc.stdout:
                line = raw_line.rstrip("\n")
                if len(lines) < _MAX_OUTPUT_LINES:
                    lines.append(line)
                if line.strip():
                    _beat(line)

        reader = threading.Thread(target=_reader, daemon=True)
        reader.start()

        stalled = threading.Event()

        def _watch():
            if not (self._heartbeats and request.job_id):
                return
            check = self._heartbeats.check(request.job_id, self._stall_timeout)
            if check.status is HeartbeatStatus.STALE and proc.poll() is None:
                log_activity(
                    self._activity_log, source,
                    f"STALL detected: no activity for {int(check.age_seconds or 0)}s, killing agent",
                )
                stalled.set()
                try:
                    proc.kill()
                except OSError:
                    pass

        watchdog = PeriodicTask(_watch, self._watch_interval, name=f"watchdog:{source}",
                                activity_log=self._activity_log)
        watchdog.start()

        timed_out = False
        try:
            proc.wait(timeout=request.timeout_s)
        except subprocess.TimeoutExpired:
            timed_out = True
            proc.kill()
            proc.wait()
            log_activity(self._activity_log, source, f"TIMEOUT after {request.timeout_s}s")
        finally:
            watchdog.stop()
        reader.join(timeout=5)

        output = "\n".join(lines)
        return WorkerResult(
            exit_code=proc.returncode if proc.returncode is not None else 0,
            output=output,
            completed=has_sentinel(output),
            timed_out=timed_out,
            stalled=stalled.is_set(),
            structured=parse_structured(output),
        )


@dataclass
class VerifyResult:
    passed: bool
    output: str
    exit_code: int


def run_verify(command: str, cwd: str, timeout_s: int = 1800) -> VerifyResult:
    """Run a stage's verification command (tests, build) through the shell."""
    try:
        result = subprocess.run(
            command, shell=True, capture_output=True, text=True,
            cwd=cwd, timeout=timeout_s,
        )
    except subprocess.TimeoutExpired:
        return VerifyResult(False, f"verification timed out after {timeout_s}s", 124)
    output = (result.stdout or "") + (result.stderr or "")
    return VerifyResult(result.returncode == 0, output, result.returncode)
