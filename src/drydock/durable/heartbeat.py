# Copyright 2026. Liveness beacons for running agent jobs.

from __future__ import annotations

import enum
import os
import re
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from drydock.core.errors import CorruptError, NotFoundError
from drydock.core.logging import PeriodicTask, log_activity
from drydock.core.state import atomic_write_json, iso_from_epoch, parse_iso, read_json

_VALID_JOB_RE = re.compile(r"^[A-Za-z0-9._@:-]+$")


class HeartbeatStatus(str, enum.Enum):
    ALIVE = "alive"
    STALE = "stale"
    NOT_FOUND = "not_found"


@dataclass
class Heartbeat:
    job_id: str
    pid: int = 0
    issue: str = ""
    stage: str = ""
    iteration: int = 0
    memory_mb: int = 0
    cpu_pct: float = 0.0
    last_activity: str = ""
    updated_at: str = ""
    updated_epoch: float = 0.0

    def age(self, now: float) -> float:
        epoch = self.updated_epoch or parse_iso(self.updated_at)
        if epoch is None:
            return float("inf")
        return max(now - epoch, 0.0)


@dataclass
class HeartbeatCheck:
    status: HeartbeatStatus
    age_seconds: float | None = None
    record: Heartbeat | None = None

    @property
    def alive(self) -> bool:
        return self.status is HeartbeatStatus.ALIVE


def _heartbeat_to_dict(hb: Heartbeat) -> dict:
    return {
        "job_id": hb.job_id,
        "pid": hb.pid,
        "issue": hb.issue,
        "stage": hb.stage,
        "iteration": hb.iteration,
        "memory_mb": hb.memory_mb,
        "cpu_pct": hb.cpu_pct,
        "last_activity": hb.last_activity,
        "updated_at": hb.updated_at,
        "updated_epoch": hb.updated_epoch,
    }


def _dict_to_heartbeat(d: dict) -> Heartbeat:
    return Heartbeat(
        job_id=d["job_id"],
        pid=int(d.get("pid", 0)),
        issue=str(d.get("issue", "")),
        stage=d.get("stage", ""),
        iteration=int(d.get("iteration", 0)),
        memory_mb=int(d.get("memory_mb", 0)),
        cpu_pct=float(d.get("cpu_pct", 0.0)),
        last_activity=d.get("last_activity", ""),
        updated_at=d.get("updated_at", ""),
        updated_epoch=float(d.get("updated_epoch", 0.0)),
    )


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def sample_process(pid: int) -> tuple[int, float]:
    """(resident memory in MB, cpu percent) for `pid`, zeros if unavailable."""
    try:
        result = subprocess.run(
            ["ps", "-o", "rss=,%cpu=", "-p", str(pid)],
            capture_output=True, text=True, timeout=5,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired):
        return 0, 0.0
    parts = result.stdout.split()
    if result.returncode != 0 or len(parts) < 2:
        return 0, 0.0
    try:
        return int(parts[0]) // 1024, float(parts[1])
    except ValueError:
        return 0, 0.0


class HeartbeatRegistry:
    """`heartbeats/<job_id>.json`, one record per job, overwritten on write."""

    def __init__(self, heartbeats_dir: Path, activity_log: str = "",
                 default_timeout: float = 120.0,
                 clock: Callable[[], float] = time.time,
                 sampler: Callable[[int], tuple[int, float]] = sample_process):
        self.heartbeats_dir = Path(heartbeats_dir)
        self._activity_log = activity_log
        self.default_timeout = default_timeout
        self._clock = clock
        self._sampler = sampler

    def _path(self, job_id: str) -> Path:
        if not job_id or not _VALID_JOB_RE.match(job_id) or job_id.startswith("."):
            raise ValueError(f"Invalid job id: {job_id!r}")
        return self.heartbeats_dir / f"{job_id}.json"

    def write(self, job_id: str, pid: int | None = None, issue: str = "",
              stage: str = "", iteration: int = 0, activity: str = "") -> Heartbeat:
        pid = os.getpid() if pid is None else pid
        memory_mb, cpu_pct = (0, 0.0)
        if pid_alive(pid):
            memory_mb, cpu_pct = self._sampler(pid)
        now = self._clock()
        hb = Heartbeat(
            job_id=job_id, pid=pid, issue=str(issue), stage=stage,
            iteration=iteration, memory_mb=memory_mb, cpu_pct=cpu_pct,
            last_activity=activity, updated_at=iso_from_epoch(now),
            updated_epoch=now,
        )
        atomic_write_json(self._path(job_id), _heartbeat_to_dict(hb))
        return hb

    def get(self, job_id: str) -> Heartbeat:
        path = self._path(job_id)
        try:
            return _dict_to_heartbeat(read_json(path, "heartbeat", job_id))
        except (KeyError, TypeError, ValueError) as e:
            raise CorruptError("heartbeat", job_id, str(path), str(e)) from None

    def check(self, job_id: str, timeout: float | None = None) -> HeartbeatCheck:
        timeout = self.default_timeout if timeout is None else timeout
        if timeout < 0:
            raise ValueError("timeout must be >= 0")
        try:
            hb = self.get(job_id)
        except CorruptError as e:
            log_activity(self._activity_log, "heartbeat", f"WARN: {e}")
            return HeartbeatCheck(HeartbeatStatus.NOT_FOUND)
        except NotFoundError:
            return HeartbeatCheck(HeartbeatStatus.NOT_FOUND)
        age = hb.age(self._clock())
        status = HeartbeatStatus.ALIVE if age <= timeout else HeartbeatStatus.STALE
        return HeartbeatCheck(status, age, hb)

    def list(self) -> list[Heartbeat]:
        if not self.heartbeats_dir.is_dir():
            return []
        out = []
        for p in sorted(self.heartbeats_dir.glob("*.json")):
            if p.name.startswith("."):
                continue
            try:
                out.append(self.get(p.stem))
            except NotFoundError:
                continue
        return out

    def clear(self, job_id: str) -> bool:
        try:
            self._path(job_id).unlink()
        except FileNotFoundError:
            return False
        return True


class HeartbeatPulse:
    """Keeps one job's heartbeat fresh from a background schedule.

    `touch(activity)` records progress immediately; the schedule re-writes
    the last known activity every `interval` seconds until `stop()`.
    """

    def __init__(self, registry: HeartbeatRegistry, job_id: str, pid: int | None = None,
                 issue: str = "", stage: str = "", iteration: int = 0,
                 interval: float = 30.0, activity_log: str = ""):
        self._registry = registry
        self.job_id = job_id
        self._pid = pid
        self._issue = issue
        self._stage = stage
        self._iteration = iteration
        self._activity = "started"
        self._task = PeriodicTask(self._beat, interval, name=f"heartbeat:{job_id}",
                                  activity_log=activity_log)

    def _beat(self) -> None:
        self._registry.write(
            self.job_id, pid=self._pid, issue=self._issue, stage=self._stage,
            iteration=self._iteration, activity=self._activity,
        )

    def touch(self, activity: str = "") -> None:
        if activity:
            self._activity = activity[:200]
        self._beat()

    def start(self) -> "HeartbeatPulse":
        self._beat()
        self._task.start()
        return self

    def stop(self, clear: bool = True) -> None:
        self._task.stop()
        if clear:
            self._registry.clear(self.job_id)

    def __enter__(self) -> "HeartbeatPulse":
        return self.start()

    def __exit__(self, *exc) -> None:
        self.stop()
