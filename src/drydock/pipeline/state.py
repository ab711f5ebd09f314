"""Persistent PipelineRun state, mutated under an exclusive file lock."""

import enum
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from drydock.core.errors import NotFoundError
from drydock.core.state import LockedStateManager, now_iso
from drydock.pipeline.registry import PipelineTemplate, StageDefinition, parse_stage, stage_to_dict


class RunStatus(str, enum.Enum):
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"
    SUCCESS = "success"
    FAILURE = "failure"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.STOPPED, RunStatus.SUCCESS, RunStatus.FAILURE)


class StageStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    SKIPPED = "skipped"
    FAILED = "failed"

    @property
    def done(self) -> bool:
        return self in (StageStatus.PASSED, StageStatus.SKIPPED)


@dataclass
class StageState:
    status: StageStatus = StageStatus.PENDING
    iteration: int = 0
    retry_base: int = 0
    override: bool = False
    approved: bool = False
    last_error: str = ""
    started_at: str = ""
    completed_at: str = ""


@dataclass
class PipelineRun:
    run_id: str = ""
    work_item: str = ""
    goal: str = ""
    template: str = ""
    status: RunStatus = RunStatus.RUNNING
    current_stage: str = ""
    stage_order: list[str] = field(default_factory=list)
    stage_defs: dict[str, StageDefinition] = field(default_factory=dict)
    stages: dict[str, StageState] = field(default_factory=dict)
    awaiting_approval: str = ""
    stop_reason: str = ""
    driver_pid: int = 0
    created_at: str = ""
    updated_at: str = ""

    def next_stage(self) -> str | None:
        for name in self.stage_order:
            if not self.stages[name].status.done:
                return name
        return None

    def summary(self) -> dict:
        return {
            "run_id": self.run_id,
            "work_item": self.work_item,
            "status": self.status.value,
            "current_stage": self.current_stage,
            "awaiting_approval": self.awaiting_approval,
            "stages": {
                name: {
                    "status": self.stages[name].status.value,
                    "iteration": self.stages[name].iteration,
                    **({"override": True} if self.stages[name].override else {}),
                    **({"last_error": self.stages[name].last_error} if self.stages[name].last_error else {}),
                }
                for name in self.stage_order
            },
            "updated_at": self.updated_at,
        }


def _stage_state_to_dict(ss: StageState) -> dict:
    d: dict = {"status": ss.status.value, "iteration": ss.iteration}
    if ss.retry_base:
        d["retry_base"] = ss.retry_base
    if ss.override:
        d["override"] = True
    if ss.approved:
        d["approved"] = True
    if ss.last_error:
        d["last_error"] = ss.last_error
    if ss.started_at:
        d["started_at"] = ss.started_at
    if ss.completed_at:
        d["completed_at"] = ss.completed_at
    return d


def _run_to_dict(run: PipelineRun) -> dict:
    return {
        "run_id": run.run_id,
        "work_item": run.work_item,
        "goal": run.goal,
        "template": run.template,
        "status": run.status.value,
        "current_stage": run.current_stage,
        "stage_order": run.stage_order,
        "stage_defs": [stage_to_dict(run.stage_defs[n]) for n in run.stage_order],
        "stages": {n: _stage_state_to_dict(run.stages[n]) for n in run.stage_order},
        "awaiting_approval": run.awaiting_approval,
        "stop_reason": run.stop_reason,
        "driver_pid": run.driver_pid,
        "created_at": run.created_at,
        "updated_at": run.updated_at,
    }


def _dict_to_run(d: dict) -> PipelineRun:
    defs = [parse_stage(raw, d.get("template", "")) for raw in d.get("stage_defs", [])]
    stage_defs = {s.id: s for s in defs}
    order = d.get("stage_order") or [s.id for s in defs]
    stages: dict[str, StageState] = {}
    raw_stages = d.get("stages", {})
    for name in order:
        val = raw_stages.get(name, {})
        stages[name] = StageState(
            status=StageStatus(val.get("status", "pending")),
            iteration=val.get("iteration", 0),
            retry_base=val.get("retry_base", 0),
            override=val.get("override", False),
            approved=val.get("approved", False),
            last_error=val.get("last_error", ""),
            started_at=val.get("started_at", ""),
            completed_at=val.get("completed_at", ""),
        )
        if name not in stage_defs:
            stage_defs[name] = StageDefinition(id=name)
    return PipelineRun(
        run_id=d.get("run_id", ""),
        work_item=d.get("work_item", ""),
        goal=d.get("goal", ""),
        template=d.get("template", ""),
        status=RunStatus(d.get("status", "running")),
        current_stage=d.get("current_stage", ""),
        stage_order=list(order),
        stage_defs=stage_defs,
        stages=stages,
        awaiting_approval=d.get("awaiting_approval", ""),
        stop_reason=d.get("stop_reason", ""),
        driver_pid=d.get("driver_pid", 0),
        created_at=d.get("created_at", ""),
        updated_at=d.get("updated_at", ""),
    )


def new_run_id(work_item: str = "") -> str:
    ts = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
    prefix = "".join(c if c.isalnum() or c in "-_" else "-" for c in work_item)[:40] or "run"
    return f"{prefix}-{ts}-{secrets.token_hex(2)}"


def new_run(template: PipelineTemplate, work_item: str, goal: str, run_id: str = "") -> PipelineRun:
    order = [s.id for s in template.stages]
    now = now_iso()
    return PipelineRun(
        run_id=run_id or new_run_id(work_item),
        work_item=work_item,
        goal=goal,
        template=template.name,
        status=RunStatus.RUNNING,
        current_stage=order[0],
        stage_order=order,
        stage_defs={s.id: s for s in template.stages},
        stages={name: StageState() for name in order},
        created_at=now,
        updated_at=now,
    )


class RunStateManager:
    """`runs/<run_id>/run.json` with fcntl locking and atomic writes."""

    def __init__(self, state_file: Path):
        self.state_file = Path(state_file)
        self._mgr = LockedStateManager(self.state_file, _run_to_dict, _dict_to_run, kind="pipeline run")

    @classmethod
    def for_run(cls, runs_dir: Path, run_id: str) -> "RunStateManager":
        return cls(Path(runs_dir) / run_id / "run.json")

    def exists(self) -> bool:
        return self._mgr.exists()

    def load(self) -> PipelineRun:
        if not self.exists():
            raise NotFoundError("pipeline run", self.state_file.parent.name)
        return self._mgr.load()

    def save(self, run: PipelineRun) -> None:
        run.updated_at = now_iso()
        self._mgr.save(run)

    def update(self, mutator: Callable[[PipelineRun], None]) -> PipelineRun:
        if not self.exists():
            raise NotFoundError("pipeline run", self.state_file.parent.name)

        def _with_timestamp(run: PipelineRun) -> None:
            mutator(run)
            run.updated_at = now_iso()
        return self._mgr.update(_with_timestamp)


def list_runs(runs_dir: Path) -> list[PipelineRun]:
    runs_dir = Path(runs_dir)
    if not runs_dir.is_dir():
        return []
    out = []
    for d in sorted(runs_dir.iterdir()):
        mgr = RunStateManager(d / "run.json")
        if not mgr.exists():
            continue
        try:
            out.append(mgr.load())
        except NotFoundError:
            continue
    return out
