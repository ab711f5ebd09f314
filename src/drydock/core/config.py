# Copyright 2026. Injected configuration: storage paths and policy knobs.

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_HOME = Path.home() / ".drydock"


def _env_float(env: dict, key: str, default: float) -> float:
    raw = env.get(key, "")
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{key} must be a number, got {raw!r}") from None


def _env_bool(env: dict, key: str, default: bool) -> bool:
    raw = env.get(key, "")
    if not raw:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class DrydockConfig:
    """Every path and threshold a component needs, passed to its constructor."""

    home: Path
    checkpoints_dir: Path | None = None
    events_dir: Path | None = None
    locks_dir: Path | None = None
    heartbeats_dir: Path | None = None
    runs_dir: Path | None = None
    worktrees_dir: Path | None = None
    repo_root: Path = field(default_factory=Path.cwd)
    activity_log: str = ""
    main_branch: str = ""
    event_retention_hours: float = 168.0
    dlq_retention_hours: float = 0.0
    lock_ttl_seconds: float = 300.0
    lock_wait_seconds: float = 0.0
    heartbeat_timeout_seconds: float = 120.0
    heartbeat_interval_seconds: float = 30.0
    stall_timeout_seconds: float = 900.0
    merge_all_rollback: bool = False

    def __post_init__(self):
        self.home = Path(self.home)
        self.repo_root = Path(self.repo_root)
        if self.checkpoints_dir is None:
            self.checkpoints_dir = self.home / "checkpoints"
        if self.events_dir is None:
            self.events_dir = self.home / "events"
        if self.locks_dir is None:
            self.locks_dir = self.home / "locks"
        if self.heartbeats_dir is None:
            self.heartbeats_dir = self.home / "heartbeats"
        if self.runs_dir is None:
            self.runs_dir = self.home / "runs"
        for name in ("checkpoints_dir", "events_dir", "locks_dir",
                     "heartbeats_dir", "runs_dir"):
            setattr(self, name, Path(getattr(self, name)))
        if self.worktrees_dir is not None:
            self.worktrees_dir = Path(self.worktrees_dir)
        if not self.activity_log:
            self.activity_log = str(self.home / "activity.log")

    @classmethod
    def for_home(cls, home, **overrides) -> "DrydockConfig":
        return cls(home=Path(home), **overrides)

    @classmethod
    def from_env(cls, env: dict | None = None) -> "DrydockConfig":
        env = os.environ if env is None else env
        home = Path(env.get("DRYDOCK_HOME", "") or DEFAULT_HOME).expanduser()
        worktrees = env.get("DRYDOCK_WORKTREES", "")
        repo = env.get("DRYDOCK_REPO", "")
        return cls(
            home=home,
            repo_root=Path(repo).expanduser() if repo else Path.cwd(),
            worktrees_dir=Path(worktrees).expanduser() if worktrees else None,
            main_branch=env.get("DRYDOCK_MAIN_BRANCH", ""),
            event_retention_hours=_env_float(env, "DRYDOCK_EVENT_RETENTION_HOURS", 168.0),
            dlq_retention_hours=_env_float(env, "DRYDOCK_DLQ_RETENTION_HOURS", 0.0),
            lock_ttl_seconds=_env_float(env, "DRYDOCK_LOCK_TTL", 300.0),
            lock_wait_seconds=_env_float(env, "DRYDOCK_LOCK_WAIT", 0.0),
            heartbeat_timeout_seconds=_env_float(env, "DRYDOCK_HEARTBEAT_TIMEOUT", 120.0),
            heartbeat_interval_seconds=_env_float(env, "DRYDOCK_HEARTBEAT_INTERVAL", 30.0),
            stall_timeout_seconds=_env_float(env, "DRYDOCK_STALL_TIMEOUT", 900.0),
            merge_all_rollback=_env_bool(env, "DRYDOCK_MERGE_ALL_ROLLBACK", False),
        )

    def run_dir(self, run_id: str) -> Path:
        return self.runs_dir / run_id

    def run_checkpoints_dir(self, run_id: str) -> Path:
        return self.run_dir(run_id) / "checkpoints"

    def resolved_worktrees_dir(self) -> Path:
        if self.worktrees_dir is not None:
            return self.worktrees_dir
        return self.repo_root / ".worktrees"

    def ensure_dirs(self) -> None:
        for d in (self.home, self.checkpoints_dir, self.events_dir,
                  self.locks_dir, self.heartbeats_dir, self.runs_dir):
            Path(d).mkdir(parents=True, exist_ok=True)
