"""Shared factories for pipeline tests: configs, runs, templates and a scripted worker."""

import itertools
from pathlib import Path

from drydock.core.config import DrydockConfig
from drydock.core.vcs import Git
from drydock.pipeline.registry import PipelineTemplate, parse_template
from drydock.pipeline.state import PipelineRun, RunStateManager, new_run
from drydock.pipeline.worker import COMPLETION_SENTINEL, WorkerRequest, WorkerResult


def make_config(tmp_path: Path, **overrides) -> DrydockConfig:
    """Config rooted in `tmp_path`, with a non-git repo dir and short timers."""
    repo = tmp_path / "repo"
    repo.mkdir(exist_ok=True)
    defaults = dict(
        repo_root=repo,
        main_branch="main",
        heartbeat_interval_seconds=60.0,
        lock_ttl_seconds=60.0,
    )
    defaults.update(overrides)
    return DrydockConfig.for_home(tmp_path / "home", **defaults)


def make_template(*stages: dict, name: str = "test") -> PipelineTemplate:
    """Template from raw stage dicts; plain ids become auto single-shot stages."""
    raw = [s if isinstance(s, dict) else {"id": s} for s in stages]
    return parse_template({"name": name, "stages": raw})


def make_run(stages: tuple = ("plan", "build", "review"), run_id: str = "run-1",
             work_item: str = "ISSUE-7", goal: str = "add the widget") -> PipelineRun:
    run = new_run(make_template(*stages), work_item, goal, run_id)
    run.created_at = "2026-01-01T00:00:00Z"
    run.updated_at = "2026-01-01T00:00:00Z"
    return run


def save_run(run: PipelineRun, runs_dir: Path) -> RunStateManager:
    """Save a run to disk and return its manager."""
    mgr = RunStateManager.for_run(runs_dir, run.run_id)
    mgr.save(run)
    return mgr


def ok(completed: bool = True, output: str = "done") -> WorkerResult:
    text = output + ("\n" + COMPLETION_SENTINEL if completed else "")
    return WorkerResult(exit_code=0, output=text, completed=completed)


def failed(exit_code: int = 1, output: str = "boom") -> WorkerResult:
    return WorkerResult(exit_code=exit_code, output=output)


class ScriptedWorker:
    """Returns queued results per stage, recording every request.

    A stage with no queued result gets `default`. `on_run(request)` is called
    before the result is returned, which lets a test act mid-invocation.
    """

    def __init__(self, script: dict[str, list[WorkerResult]] | None = None,
                 default: WorkerResult | None = None, on_run=None):
        self._script = {k: list(v) for k, v in (script or {}).items()}
        self._default = default or ok()
        self._on_run = on_run
        self.requests: list[WorkerRequest] = []

    def run(self, request: WorkerRequest) -> WorkerResult:
        self.requests.append(request)
        if self._on_run is not None:
            self._on_run(request)
        queue = self._script.get(request.stage)
        if queue:
            return queue.pop(0)
        return self._default

    def calls(self, stage: str | None = None) -> list[tuple[str, int]]:
        return [(r.stage, r.iteration) for r in self.requests if stage is None or r.stage == stage]


class DriverCrashed(RuntimeError):
    pass


class CrashingWorker(ScriptedWorker):
    """Raises DriverCrashed on the Nth invocation to simulate a killed driver."""

    def __init__(self, crash_on: int, **kwargs):
        super().__init__(**kwargs)
        self._counter = itertools.count(1)
        self._crash_on = crash_on

    def run(self, request: WorkerRequest) -> WorkerResult:
        if next(self._counter) == self._crash_on:
            self.requests.append(request)
            raise DriverCrashed("driver killed")
        return super().run(request)


class FakeClock:
    def __init__(self, start: float = 1_800_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.now += seconds


def init_repo(path: Path, branch: str = "main") -> Git:
    """A throwaway git repository with one commit on `branch`."""
    path.mkdir(parents=True, exist_ok=True)
    git = Git(path)
    git.run("init", "-q")
    git.run("symbolic-ref", "HEAD", f"refs/heads/{branch}")
    git.run("config", "user.email", "dev@example.com")
    git.run("config", "user.name", "Dev")
    git.run("config", "commit.gpgsign", "false")
    (path / "README").write_text("hello\n")
    git.run("add", "README")
    git.run("commit", "-q", "-m", "init")
    return git


def commit_file(git: Git, name: str, content: str, message: str = "") -> None:
    path = Path(git.cwd) / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    git.run("add", name)
    git.run("commit", "-q", "-m", message or f"update {name}")
