# Copyright 2026. Stage sequencer: advances a run through its stages with checkpoints, gates and self-healing.

import os
import threading
import time
from typing import Callable

from drydock.core.config import DrydockConfig
from drydock.core.errors import (
    ContendedError,
    CorruptError,
    InvalidTransitionError,
    MergeConflictError,
    NotFoundError,
)
from drydock.core.events import EventLog, EventType
from drydock.core.logging import PeriodicTask, log_activity
from drydock.core.state import now_iso
from drydock.core.vcs import Git, GitError
from drydock.durable.checkpoint import BuildContext, CheckpointStore
from drydock.durable.heartbeat import HeartbeatPulse, HeartbeatRegistry
from drydock.durable.locks import LockManager
from drydock.durable.worktree import WorktreeManager, branch_lock_name
from drydock.pipeline.registry import GateKind, PipelineTemplate, StageDefinition
from drydock.pipeline.state import PipelineRun, RunStateManager, RunStatus, StageStatus, new_run
from drydock.pipeline.worker import COMPLETION_SENTINEL, Worker, WorkerRequest, WorkerResult, run_verify

MAIN_BRANCH_LOCK = "@main-branch"
_MAX_FINDINGS = 20
_TEST_OUTPUT_TAIL = 4000


def build_prompt(run: PipelineRun, stage: StageDefinition, ctx: BuildContext,
                 iteration: int, last_iteration: int) -> str:
    """Prompt for one worker invocation, carrying the prior attempts' context."""
    lines = [
        f"# Stage: {stage.id} (iteration {iteration} of {last_iteration})",
        f"Work item: {run.work_item}" if run.work_item else "",
        "",
        "## Goal",
        run.goal or "(no goal given)",
    ]
    if stage.prompt:
        lines += ["", "## Instructions", stage.prompt]
    if stage.coverage_threshold:
        lines += ["", f"Test coverage must reach at least {stage.coverage_threshold}%."]
    if ctx.findings:
        lines += ["", "## Findings from previous attempts"]
        lines += [f"- {f}" for f in ctx.findings[-_MAX_FINDINGS:]]
    if ctx.test_output:
        lines += ["", "## Last test output", "```", ctx.test_output[-_TEST_OUTPUT_TAIL:], "```"]
    if ctx.modified_files:
        lines += ["", "## Files modified so far"]
        lines += [f"- {f}" for f in ctx.modified_files]
    if stage.self_healing:
        lines += [
            "",
            f"When the work for this stage is complete and verified, print {COMPLETION_SENTINEL} on its own line.",
        ]
    return "\n".join(lines) + "\n"


class _Halted(Exception):
    """The run left the running state while this driver was working."""

    def __init__(self, status: RunStatus):
        super().__init__(status.value)
        self.status = status


class StageSequencer:
    """Drives one PipelineRun. Only one sequencer may drive a run at a time."""

    def __init__(self, config: DrydockConfig, run_id: str, worker: Worker,
                 git: Git | None = None, events: EventLog | None = None,
                 locks: LockManager | None = None, heartbeats: HeartbeatRegistry | None = None,
                 worktrees: WorktreeManager | None = None,
                 clock: Callable[[], float] = time.time,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self.run_id = run_id
        self.worker = worker
        self.manager = RunStateManager.for_run(config.runs_dir, run_id)
        self.git = git or Git(config.repo_root)
        self.events = events or EventLog.from_config(config, clock)
        self.locks = locks or LockManager(config.locks_dir, config.activity_log, clock, sleep)
        self.heartbeats = heartbeats or HeartbeatRegistry(
            config.heartbeats_dir, config.activity_log,
            config.heartbeat_timeout_seconds, clock,
        )
        self.checkpoints = CheckpointStore(
            config.run_checkpoints_dir(run_id), self.git, config.activity_log, clock,
        )
        self.holder = f"driver:{run_id}:{os.getpid()}"
        self._worktrees = worktrees
        self._activity_log = config.activity_log
        # resource -> ttl for every lock this driver currently holds
        self._held: dict[str, float] = {}
        self._held_guard = threading.Lock()

    @classmethod
    def create_run(cls, config: DrydockConfig, template: PipelineTemplate, work_item: str,
                   goal: str, run_id: str = "", events: EventLog | None = None) -> PipelineRun:
        run = new_run(template, work_item, goal, run_id)
        manager = RunStateManager.for_run(config.runs_dir, run.run_id)
        if manager.exists():
            raise InvalidTransitionError(f"run {run.run_id} already exists")
        manager.save(run)
        events = events or EventLog.from_config(config)
        events.publish(EventType.PIPELINE_STARTED, {
            "run_id": run.run_id, "work_item": work_item, "template": template.name,
            "stages": run.stage_order,
        })
        return run

    @property
    def worktrees(self) -> WorktreeManager:
        if self._worktrees is None:
            self._worktrees = WorktreeManager(
                self.config.repo_root, self.config.resolved_worktrees_dir(),
                main_branch=self.config.main_branch, locks=self.locks,
                lock_ttl=self.config.lock_ttl_seconds, activity_log=self._activity_log,
                merge_all_rollback=self.config.merge_all_rollback, holder=self.holder,
            )
        return self._worktrees

    def _log(self, msg: str) -> None:
        log_activity(self._activity_log, f"run:{self.run_id}", msg)

    def _emit(self, event_type: EventType, **attrs) -> None:
        attrs["run_id"] = self.run_id
        self.events.publish(event_type, attrs)

    def _update_running(self, mutator: Callable[[PipelineRun], None]) -> PipelineRun:
        """Apply `mutator` only while the run is still running."""
        halted: list[RunStatus] = []

        def _guarded(run: PipelineRun) -> None:
            if run.status is not RunStatus.RUNNING:
                halted.append(run.status)
                return
            mutator(run)
        run = self.manager.update(_guarded)
        if halted:
            raise _Halted(halted[0])
        return run

    def _resolve_lock(self, name: str) -> str:
        if name != MAIN_BRANCH_LOCK:
            return name
        branch = self.config.main_branch
        if not branch:
            try:
                branch = self.git.current_branch()
            except GitError:
                branch = "main"
        return branch_lock_name(branch)

    def _hold(self, resource: str, ttl: float) -> None:
        with self._held_guard:
            self._held[resource] = ttl

    def _let_go(self, resource: str) -> None:
        with self._held_guard:
            self._held.pop(resource, None)
        self.locks.release(resource, self.holder)

    def _renew_held(self) -> None:
        """Refresh the TTL of every held lock. Runs on the keeper thread."""
        with self._held_guard:
            for resource, ttl in list(self._held.items()):
                try:
                    self.locks.acquire(resource, ttl, holder=self.holder)
                except ContendedError as e:
                    self._log(f"WARN: lost lock {resource} to {e.holder}")

    # -- Driving ---------------------------------------------------------------

    def drive(self) -> RunStatus:
        """Advance the run until it finishes, fails, pauses or is stopped.

        Raises ContendedError if another process drives the run or holds a
        stage's lock past the configured wait, and MergeConflictError when an
        isolated stage cannot be merged back. Run state is left resumable.
        """
        run = self.manager.load()
        if run.status.terminal:
            return run.status

        run_lock = f"run-{self.run_id}"
        ttl = self.config.lock_ttl_seconds
        self.locks.acquire(run_lock, ttl, holder=self.holder)
        self._hold(run_lock, ttl)
        keeper = PeriodicTask(
            self._renew_held, ttl / 3, name=f"locks:{self.run_id}", activity_log=self._activity_log,
        )
        pulse = HeartbeatPulse(
            self.heartbeats, f"{self.run_id}-driver", issue=run.work_item,
            interval=self.config.heartbeat_interval_seconds, activity_log=self._activity_log,
        )
        keeper.start()
        pulse.start()
        try:
            self.manager.update(lambda r: setattr(r, "driver_pid", os.getpid()))
            return self._drive_loop()
        finally:
            keeper.stop()
            pulse.stop()
            try:
                self.manager.update(lambda r: setattr(r, "driver_pid", 0))
            finally:
                self._let_go(run_lock)

    def _drive_loop(self) -> RunStatus:
        while True:
            run = self.manager.load()
            if run.status is not RunStatus.RUNNING:
                return run.status
            if run.awaiting_approval:
                return self._halt_for_approval(run.awaiting_approval, announce=False)

            name = run.next_stage()
            if name is None:
                return self._complete()
            stage = run.stage_defs[name]
            state = run.stages[name]

            try:
                if not stage.enabled:
                    self._skip_disabled(name)
                    continue
                if state.status is StageStatus.FAILED:
                    return self._fail(name, state.last_error or "stage failed")
                outcome = self._run_stage(run, stage)
            except _Halted as h:
                self._log(f"halted ({h.status.value}) at stage {name}")
                return h.status
            if outcome is not None:
                return outcome

    def _skip_disabled(self, name: str) -> None:
        def _mut(run: PipelineRun) -> None:
            ss = run.stages[name]
            ss.status = StageStatus.SKIPPED
            ss.completed_at = now_iso()
        self._update_running(_mut)
        self._emit(EventType.STAGE_SKIPPED, stage=name, reason="disabled")

    def _complete(self) -> RunStatus:
        def _mut(run: PipelineRun) -> None:
            run.status = RunStatus.SUCCESS
            run.current_stage = ""
        try:
            self._update_running(_mut)
        except _Halted as h:
            return h.status
        cleared = self.checkpoints.clear_all()
        self._emit(EventType.PIPELINE_COMPLETED, checkpoints_cleared=cleared)
        self._log("pipeline completed")
        return RunStatus.SUCCESS

    def _fail(self, name: str, error: str) -> RunStatus:
        def _mut(run: PipelineRun) -> None:
            ss = run.stages[name]
            ss.status = StageStatus.FAILED
            ss.last_error = error
            ss.completed_at = now_iso()
            run.status = RunStatus.FAILURE
        try:
            run = self._update_running(_mut)
        except _Halted as h:
            return h.status
        ss = run.stages[name]
        self._emit(EventType.STAGE_FAILED, stage=name, iteration=ss.iteration, error=error[:500])
        self._emit(EventType.PIPELINE_FAILED, stage=name)
        self._log(f"stage {name} failed after iteration {ss.iteration}: {error[:200]}")
        return RunStatus.FAILURE

    def _halt_for_approval(self, name: str, announce: bool = True) -> RunStatus:
        def _mut(run: PipelineRun) -> None:
            run.awaiting_approval = name
            run.status = RunStatus.PAUSED
        try:
            self._update_running(_mut)
        except _Halted as h:
            return h.status
        if announce:
            self._emit(EventType.STAGE_AWAITING_APPROVAL, stage=name)
            self._log(f"stage {name} passed; waiting for approval")
        return RunStatus.PAUSED

    # -- Stage execution -------------------------------------------------------

    def _run_stage(self, run: PipelineRun, stage: StageDefinition) -> RunStatus | None:
        acquired: list[str] = []
        ttl = self.config.lock_ttl_seconds
        try:
            for name in stage.locks:
                resource = self._resolve_lock(name)
                self.locks.wait_for(
                    resource, ttl, timeout=self.config.lock_wait_seconds, holder=self.holder,
                )
                self._hold(resource, ttl)
                acquired.append(resource)
            return self._iterate(run, stage)
        finally:
            for resource in reversed(acquired):
                self._let_go(resource)

    def _resume_point(self, run: PipelineRun, stage: StageDefinition) -> tuple[int, BuildContext, bool]:
        """(last completed iteration, context, passed) recovered from disk."""
        ss = run.stages[stage.id]
        last = ss.iteration
        passed = False
        try:
            cp = self.checkpoints.restore(stage.id)
            last = max(cp.iteration, ss.retry_base)
            passed = cp.loop_state == "passed" and cp.iteration > ss.retry_base
        except CorruptError:
            self._log(f"checkpoint for {stage.id} unreadable; restarting stage from scratch")
            last = ss.retry_base
        except NotFoundError:
            pass
        try:
            ctx = self.checkpoints.load_context(stage.id)
        except NotFoundError:
            ctx = BuildContext(stage=stage.id, goal=run.goal)
        return last, ctx, passed

    def _workspace(self, stage: StageDefinition) -> tuple[str, str]:
        """(cwd, worktree name or "") for the stage's worker."""
        if not stage.isolate:
            return str(self.config.repo_root), ""
        name = f"{self.run_id}-{stage.id}"
        info = self.worktrees.create(name)
        return info.path, name

    def _iterate(self, run: PipelineRun, stage: StageDefinition) -> RunStatus | None:
        name = stage.id
        last, ctx, already_passed = self._resume_point(run, stage)
        ss = run.stages[name]
        limit = ss.retry_base + stage.iteration_budget()
        cwd, worktree = self._workspace(stage)

        def _start(r: PipelineRun) -> None:
            s = r.stages[name]
            s.status = StageStatus.RUNNING
            if not s.started_at:
                s.started_at = now_iso()
            r.current_stage = name
        self._update_running(_start)
        if not already_passed:
            self._emit(EventType.STAGE_STARTED, stage=name, iteration=last + 1)

        passed = already_passed
        iteration = last
        while not passed:
            iteration += 1
            if iteration > limit:
                error = ctx.findings[-1] if ctx.findings else "iteration budget exhausted"
                return self._fail(name, f"exhausted {stage.iteration_budget()} iteration(s): {error}")

            current = self.manager.load()
            if current.status is not RunStatus.RUNNING:
                raise _Halted(current.status)

            passed = self._attempt(current, stage, ctx, iteration, limit, cwd)

        if worktree:
            self._merge_back(name, worktree, cwd)

        def _pass(r: PipelineRun) -> None:
            s = r.stages[name]
            s.status = StageStatus.PASSED
            s.last_error = ""
            s.completed_at = now_iso()
        final = self._update_running(_pass)
        self._emit(EventType.STAGE_PASSED, stage=name, iteration=final.stages[name].iteration)

        if stage.gate is GateKind.MANUAL and not final.stages[name].approved:
            return self._halt_for_approval(name)
        return None

    def _attempt(self, run: PipelineRun, stage: StageDefinition, ctx: BuildContext,
                 iteration: int, limit: int, cwd: str) -> bool:
        """One worker invocation plus verification, checkpointed. True on pass."""
        name = stage.id
        job_id = f"{self.run_id}-{name}"
        request = WorkerRequest(
            run_id=self.run_id, stage=name, iteration=iteration,
            prompt=build_prompt(run, stage, ctx, iteration, limit),
            cwd=cwd, job_id=job_id, work_item=run.work_item,
            timeout_s=stage.timeout, env=ctx.to_env(),
        )
        self.heartbeats.write(job_id, pid=os.getpid(), issue=run.work_item, stage=name,
                              iteration=iteration, activity="invoking worker")
        try:
            result = self.worker.run(request)
        finally:
            self.heartbeats.clear(job_id)
        if result.stalled:
            self._emit(EventType.AGENT_STALLED, stage=name, iteration=iteration)

        verify = None
        if stage.verify_command and result.ok:
            verify = run_verify(stage.verify_command, cwd, stage.timeout)
        passed = self._judge(stage, result, verify)

        # a stop issued during the call discards its result
        current = self.manager.load()
        if current.status is RunStatus.STOPPED:
            self._log(f"discarding {name} iteration {iteration}: run was stopped")
            raise _Halted(RunStatus.STOPPED)

        wt_git = self.git.at(cwd)
        modified = wt_git.modified_files()
        finding = f"iteration {iteration}: {result.summary()}"
        if verify is not None:
            finding += "; verification " + ("passed" if verify.passed else f"failed (exit {verify.exit_code})")
        ctx.findings.append(finding)
        if result.structured:
            extra = result.structured.get("findings", [])
            if isinstance(extra, list):
                ctx.findings.extend(str(f) for f in extra)
        ctx.findings = ctx.findings[-_MAX_FINDINGS:]
        ctx.test_output = (verify.output if verify is not None else result.output)[-_TEST_OUTPUT_TAIL:]
        ctx.modified_files = modified
        ctx.iteration = iteration
        ctx.status = "passed" if passed else "failed"

        self.checkpoints.save(
            name, iteration, revision=wt_git.head_revision(), modified_files=modified,
            tests_passing=verify.passed if verify is not None else passed,
            loop_state="passed" if passed else "failed",
        )
        self.checkpoints.save_context(ctx)

        def _record(r: PipelineRun) -> None:
            s = r.stages[name]
            s.iteration = iteration
            s.last_error = "" if passed else finding
        self.manager.update(_record)
        self._emit(EventType.STAGE_ITERATION, stage=name, iteration=iteration, passed=passed)
        return passed

    @staticmethod
    def _judge(stage: StageDefinition, result: WorkerResult, verify) -> bool:
        if not result.ok:
            return False
        if result.structured and "passed" in result.structured:
            if not result.structured["passed"]:
                return False
        if verify is not None:
            return verify.passed
        if stage.self_healing:
            return result.completed
        return True

    def _merge_back(self, name: str, worktree: str, cwd: str) -> None:
        wt_git = self.git.at(cwd)
        if wt_git.is_dirty():
            # the worker may leave edits uncommitted; they belong to the stage
            sha = wt_git.commit_all(f"{name}: uncommitted work from run {self.run_id}")
            self._log(f"committed pending changes in worktree {worktree} at {sha[:7]}")
        try:
            self.worktrees.merge(worktree)
        except MergeConflictError as e:
            def _mut(r: PipelineRun) -> None:
                r.stages[name].last_error = str(e)
            self.manager.update(_mut)
            self._emit(EventType.MERGE_CONFLICT, stage=name, worktree=worktree, files=e.files)
            raise
        self.worktrees.remove(worktree)
