# Copyright 2026. Operator controls for a running pipeline.

import enum
from typing import Callable

from drydock.core.errors import InvalidTransitionError
from drydock.core.events import EventLog, EventType
from drydock.core.state import now_iso
from drydock.pipeline.state import PipelineRun, RunStateManager, RunStatus, StageStatus


class ControlAction(str, enum.Enum):
    PAUSE = "pause"
    RESUME = "resume"
    STOP = "stop"
    SKIP = "skip"
    RETRY = "retry"
    APPROVE = "approve"


def _require_stage(run: PipelineRun, stage: str) -> None:
    if not stage:
        raise InvalidTransitionError("a stage is required for this action")
    if stage not in run.stages:
        raise InvalidTransitionError(f"run {run.run_id} has no stage '{stage}'")


def _pause(run: PipelineRun, stage: str, reason: str) -> EventType:
    if run.status is not RunStatus.RUNNING:
        raise InvalidTransitionError(f"cannot pause a {run.status.value} run")
    run.status = RunStatus.PAUSED
    return EventType.PIPELINE_PAUSED


def _resume(run: PipelineRun, stage: str, reason: str) -> EventType:
    if run.status is not RunStatus.PAUSED:
        raise InvalidTransitionError(f"cannot resume a {run.status.value} run")
    run.status = RunStatus.RUNNING
    return EventType.PIPELINE_RESUMED


def _stop(run: PipelineRun, stage: str, reason: str) -> EventType:
    if run.status.terminal:
        raise InvalidTransitionError(f"run is already {run.status.value}")
    run.status = RunStatus.STOPPED
    run.stop_reason = reason or "stopped by operator"
    run.awaiting_approval = ""
    return EventType.PIPELINE_STOPPED


def _skip(run: PipelineRun, stage: str, reason: str) -> EventType:
    _require_stage(run, stage)
    if run.status in (RunStatus.SUCCESS, RunStatus.STOPPED):
        raise InvalidTransitionError(f"cannot skip a stage of a {run.status.value} run")
    ss = run.stages[stage]
    if ss.status is StageStatus.SKIPPED:
        raise InvalidTransitionError(f"stage '{stage}' is already skipped")
    ss.status = StageStatus.SKIPPED
    ss.override = True
    ss.last_error = reason or ss.last_error
    ss.completed_at = now_iso()
    if run.awaiting_approval == stage:
        run.awaiting_approval = ""
        run.status = RunStatus.RUNNING
    if run.status is RunStatus.FAILURE:
        run.status = RunStatus.RUNNING
    return EventType.STAGE_SKIPPED


def _retry(run: PipelineRun, stage: str, reason: str) -> EventType:
    _require_stage(run, stage)
    if run.status in (RunStatus.SUCCESS, RunStatus.STOPPED):
        raise InvalidTransitionError(f"cannot retry a stage of a {run.status.value} run")
    ss = run.stages[stage]
    if ss.status not in (StageStatus.FAILED, StageStatus.RUNNING):
        raise InvalidTransitionError(f"stage '{stage}' is {ss.status.value}; only failed or running stages can be retried")
    ss.status = StageStatus.PENDING
    ss.retry_base = ss.iteration
    ss.completed_at = ""
    run.current_stage = stage
    if run.status in (RunStatus.FAILURE, RunStatus.PAUSED) and not run.awaiting_approval:
        run.status = RunStatus.RUNNING
    return EventType.STAGE_RETRIED


def _approve(run: PipelineRun, stage: str, reason: str) -> EventType:
    _require_stage(run, stage)
    if run.awaiting_approval != stage:
        waiting = run.awaiting_approval or "nothing"
        raise InvalidTransitionError(f"run is awaiting approval for {waiting}, not '{stage}'")
    run.stages[stage].approved = True
    run.awaiting_approval = ""
    if run.status is RunStatus.PAUSED:
        run.status = RunStatus.RUNNING
    return EventType.STAGE_APPROVED


_HANDLERS: dict[ControlAction, Callable[[PipelineRun, str, str], EventType]] = {
    ControlAction.PAUSE: _pause,
    ControlAction.RESUME: _resume,
    ControlAction.STOP: _stop,
    ControlAction.SKIP: _skip,
    ControlAction.RETRY: _retry,
    ControlAction.APPROVE: _approve,
}

_missing = set(ControlAction) - set(_HANDLERS)
if _missing:
    raise RuntimeError(f"control actions without a handler: {sorted(a.value for a in _missing)}")


def apply_control(manager: RunStateManager, events: EventLog | None, action: ControlAction,
                  stage: str = "", reason: str = "") -> PipelineRun:
    """Apply one operator action atomically and record it in the event log."""
    action = ControlAction(action)
    handler = _HANDLERS[action]
    emitted: list[EventType] = []

    def _mutate(run: PipelineRun) -> None:
        emitted.append(handler(run, stage, reason))

    run = manager.update(_mutate)
    if events is not None:
        attrs = {"run_id": run.run_id, "action": action.value, "status": run.status.value}
        if stage:
            attrs["stage"] = stage
        if reason:
            attrs["reason"] = reason
        if action is ControlAction.SKIP:
            attrs["override"] = True
        events.publish(emitted[0], attrs)
    return run
