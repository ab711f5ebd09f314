# Copyright 2026. drydock command line: one subcommand group per component.

import argparse
import enum
import json
import os
import shlex
import subprocess
import sys
from typing import Callable

from drydock.core.config import DrydockConfig
from drydock.core.errors import (
    ContendedError,
    DrydockError,
    MergeConflictError,
    NotFoundError,
    StorageError,
)
from drydock.core.events import EventLog
from drydock.core.vcs import Git, GitError
from drydock.durable.checkpoint import BuildContext, CheckpointStore
from drydock.durable.heartbeat import HeartbeatRegistry
from drydock.durable.locks import LockManager
from drydock.durable.worktree import WorktreeManager
from drydock.pipeline.control import ControlAction, apply_control
from drydock.pipeline.registry import resolve_template
from drydock.pipeline.sequencer import StageSequencer
from drydock.pipeline.state import RunStateManager, RunStatus, list_runs
from drydock.pipeline.worker import CommandWorker

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CONTENDED = 2
EXIT_STORAGE = 3


class Command(str, enum.Enum):
    CHECKPOINT_SAVE = "checkpoint.save"
    CHECKPOINT_RESTORE = "checkpoint.restore"
    CHECKPOINT_LIST = "checkpoint.list"
    CHECKPOINT_CLEAR = "checkpoint.clear"
    CHECKPOINT_EXPIRE = "checkpoint.expire"
    CHECKPOINT_SAVE_CONTEXT = "checkpoint.save-context"
    CHECKPOINT_RESTORE_CONTEXT = "checkpoint.restore-context"
    EVENTS_PUBLISH = "events.publish"
    EVENTS_CONSUME = "events.consume"
    EVENTS_COMMIT = "events.commit"
    EVENTS_STATUS = "events.status"
    EVENTS_COMPACT = "events.compact"
    EVENTS_DLQ = "events.dlq"
    EVENTS_RETRY_DLQ = "events.retry-dlq"
    LOCK_ACQUIRE = "lock.acquire"
    LOCK_RELEASE = "lock.release"
    LOCK_STATUS = "lock.status"
    HEARTBEAT_WRITE = "heartbeat.write"
    HEARTBEAT_CHECK = "heartbeat.check"
    HEARTBEAT_LIST = "heartbeat.list"
    HEARTBEAT_CLEAR = "heartbeat.clear"
    WORKTREE_CREATE = "worktree.create"
    WORKTREE_LIST = "worktree.list"
    WORKTREE_SYNC = "worktree.sync"
    WORKTREE_SYNC_ALL = "worktree.sync-all"
    WORKTREE_MERGE = "worktree.merge"
    WORKTREE_MERGE_ALL = "worktree.merge-all"
    WORKTREE_REMOVE = "worktree.remove"
    WORKTREE_CLEANUP = "worktree.cleanup"
    WORKTREE_STATUS = "worktree.status"
    PIPELINE_START = "pipeline.start"
    PIPELINE_DRIVE = "pipeline.drive"
    PIPELINE_STATUS = "pipeline.status"
    PIPELINE_LIST = "pipeline.list"
    PIPELINE_PAUSE = "pipeline.pause"
    PIPELINE_RESUME = "pipeline.resume"
    PIPELINE_STOP = "pipeline.stop"
    PIPELINE_SKIP = "pipeline.skip"
    PIPELINE_RETRY = "pipeline.retry"
    PIPELINE_APPROVE = "pipeline.approve"


def _print_json(data) -> None:
    print(json.dumps(data, indent=2))


# -- Component factories -------------------------------------------------------

def _checkpoints(args, config: DrydockConfig) -> CheckpointStore:
    run_id = getattr(args, "run", "")
    directory = config.run_checkpoints_dir(run_id) if run_id else config.checkpoints_dir
    return CheckpointStore(directory, Git(config.repo_root), config.activity_log)


def _events(config: DrydockConfig) -> EventLog:
    return EventLog.from_config(config)


def _locks(config: DrydockConfig) -> LockManager:
    return LockManager(config.locks_dir, config.activity_log)


def _heartbeats(config: DrydockConfig) -> HeartbeatRegistry:
    return HeartbeatRegistry(config.heartbeats_dir, config.activity_log,
                             config.heartbeat_timeout_seconds)


def _worktrees(config: DrydockConfig) -> WorktreeManager:
    return WorktreeManager(
        config.repo_root, config.resolved_worktrees_dir(),
        main_branch=config.main_branch, locks=_locks(config),
        lock_ttl=config.lock_ttl_seconds, activity_log=config.activity_log,
        merge_all_rollback=config.merge_all_rollback,
    )


def _worker_command(args) -> str:
    command = getattr(args, "worker_cmd", "") or os.environ.get("DRYDOCK_WORKER_CMD", "")
    if not command:
        raise ValueError("no worker command: pass --worker-cmd or set DRYDOCK_WORKER_CMD")
    return command


def _sequencer(args, config: DrydockConfig, run_id: str) -> StageSequencer:
    heartbeats = _heartbeats(config)
    worker = CommandWorker(
        _worker_command(args), heartbeats,
        stall_timeout=config.stall_timeout_seconds, activity_log=config.activity_log,
    )
    return StageSequencer(config, run_id, worker, heartbeats=heartbeats)


# -- checkpoint ----------------------------------------------------------------

def cmd_checkpoint_save(args, config):
    cp = _checkpoints(args, config).save(
        args.stage, args.iteration, revision=args.revision or None,
        modified_files=[f for f in args.files.split(",") if f],
        tests_passing=args.tests_passing, loop_state=args.state,
    )
    print(f"Saved: {cp.summary()}")
    return EXIT_OK


def cmd_checkpoint_restore(args, config):
    cp = _checkpoints(args, config).restore(args.stage)
    _print_json({
        "stage": cp.stage, "iteration": cp.iteration, "git_sha": cp.git_sha,
        "files_modified": cp.files_modified, "tests_passing": cp.tests_passing,
        "loop_state": cp.loop_state, "created_at": cp.created_at,
    })
    return EXIT_OK


def cmd_checkpoint_list(args, config):
    checkpoints = _checkpoints(args, config).list()
    if not checkpoints:
        print("No checkpoints.")
    for cp in checkpoints:
        print(cp.summary())
    return EXIT_OK


def cmd_checkpoint_clear(args, config):
    store = _checkpoints(args, config)
    if args.all:
        print(f"Cleared {store.clear_all()} checkpoint(s)")
        return EXIT_OK
    if not args.stage:
        raise ValueError("give a stage or --all")
    if store.clear(args.stage):
        print(f"Cleared {args.stage}")
    else:
        print(f"No checkpoint for {args.stage}")
    return EXIT_OK


def cmd_checkpoint_expire(args, config):
    expired = _checkpoints(args, config).expire(args.hours)
    print(f"Expired {len(expired)} checkpoint(s)" + (f": {', '.join(expired)}" if expired else ""))
    return EXIT_OK


def cmd_checkpoint_save_context(args, config):
    ctx = BuildContext(
        stage=args.stage, goal=args.goal,
        findings=list(args.finding or []),
        modified_files=[f for f in args.files.split(",") if f],
        test_output=args.test_output, iteration=args.iteration, status=args.status,
    )
    _checkpoints(args, config).save_context(ctx)
    print(f"Saved context for {args.stage}")
    return EXIT_OK


def cmd_checkpoint_restore_context(args, config):
    ctx = _checkpoints(args, config).load_context(args.stage)
    for key, value in ctx.to_env().items():
        print(f"export {key}={shlex.quote(value)}")
    return EXIT_OK


# -- events --------------------------------------------------------------------

def _parse_attrs(pairs: list[str], raw_json: str) -> dict:
    attrs: dict = {}
    if raw_json:
        loaded = json.loads(raw_json)
        if not isinstance(loaded, dict):
            raise ValueError("--json must be a JSON object")
        attrs.update(loaded)
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"--attr expects key=value, got {pair!r}")
        attrs[key] = value
    return attrs


def cmd_events_publish(args, config):
    event = _events(config).publish(args.type, _parse_attrs(args.attr, args.json))
    print(f"Published {event.type} seq={event.seq}")
    return EXIT_OK


def _consume_with_handler(log: EventLog, consumer: str, command: str) -> int:
    """Pipe each unconsumed event to `command` on stdin; non-zero exits are dead-lettered."""
    failed = []

    def _handle(event) -> None:
        line = json.dumps({"seq": event.seq, "event_id": event.event_id, "type": event.type,
                           "ts": event.ts, "attrs": event.attrs})
        result = subprocess.run(command, shell=True, input=line + "\n", text=True,
                                capture_output=True)
        if result.returncode != 0:
            failed.append(event.seq)
            raise subprocess.CalledProcessError(result.returncode, command, result.stdout, result.stderr)

    handled = log.process(consumer, _handle)
    print(f"Consumer {consumer}: processed={handled - len(failed)}, failed={len(failed)}")
    return EXIT_OK


def cmd_events_consume(args, config):
    log = _events(config)
    if args.handler:
        if not args.consumer:
            raise ValueError("--handler needs --consumer")
        return _consume_with_handler(log, args.consumer, args.handler)
    start = args.from_offset
    if start is None:
        start = log.offset(args.consumer) if args.consumer else 0
    last = start
    count = 0
    for event in log.consume(start):
        print(json.dumps({"seq": event.seq, "type": event.type, "ts": event.ts, "attrs": event.attrs}))
        last = event.seq
        count += 1
        if args.limit and count >= args.limit:
            break
    if args.commit:
        if not args.consumer:
            raise ValueError("--commit needs --consumer")
        log.commit_offset(args.consumer, last)
    return EXIT_OK


def cmd_events_commit(args, config):
    effective = _events(config).commit_offset(args.consumer, args.offset)
    print(f"{args.consumer} offset={effective}")
    return EXIT_OK


def cmd_events_status(args, config):
    _print_json(_events(config).status())
    return EXIT_OK


def cmd_events_compact(args, config):
    dropped = _events(config).compact(args.retention_hours)
    print(f"Compacted {dropped} event(s)")
    return EXIT_OK


def cmd_events_dlq(args, config):
    log = _events(config)
    if args.purge_hours is not None:
        print(f"Purged {log.purge_dead_letters(args.purge_hours)} dead letter(s)")
        return EXIT_OK
    _print_json(log.dead_letters())
    return EXIT_OK


def cmd_events_retry_dlq(args, config):
    event = _events(config).retry_dead_letter(args.name)
    print(f"Republished {event.type} seq={event.seq}")
    return EXIT_OK


# -- lock ----------------------------------------------------------------------

def cmd_lock_acquire(args, config):
    ttl = args.ttl if args.ttl is not None else config.lock_ttl_seconds
    rec = _locks(config).wait_for(args.resource, ttl, timeout=args.wait, holder=args.holder or None)
    print(f"Acquired {rec.resource} as {rec.holder} (ttl {int(rec.ttl_seconds)}s)")
    return EXIT_OK


def cmd_lock_release(args, config):
    if _locks(config).release(args.resource, args.holder or None):
        print(f"Released {args.resource}")
    else:
        print(f"{args.resource} is not held by this holder; nothing released")
    return EXIT_OK


def cmd_lock_status(args, config):
    locks = _locks(config)
    rows = []
    for rec, fresh in locks.list():
        if args.resource and rec.resource != args.resource:
            continue
        rows.append({
            "resource": rec.resource, "holder": rec.holder, "pid": rec.pid,
            "acquired_at": rec.acquired_at, "ttl_seconds": rec.ttl_seconds,
            "state": "held" if fresh else "expired",
        })
    _print_json(rows)
    return EXIT_OK


# -- heartbeat -----------------------------------------------------------------

def cmd_heartbeat_write(args, config):
    hb = _heartbeats(config).write(
        args.job_id, pid=args.pid, issue=args.issue, stage=args.stage,
        iteration=args.iteration, activity=args.activity,
    )
    print(f"Heartbeat {hb.job_id} at {hb.updated_at}")
    return EXIT_OK


def cmd_heartbeat_check(args, config):
    check = _heartbeats(config).check(args.job_id, args.timeout)
    age = "" if check.age_seconds is None else f" ({int(check.age_seconds)}s old)"
    print(f"{args.job_id}: {check.status.value}{age}")
    return EXIT_OK if check.alive else EXIT_ERROR


def cmd_heartbeat_list(args, config):
    registry = _heartbeats(config)
    rows = []
    for hb in registry.list():
        check = registry.check(hb.job_id)
        rows.append({
            "job_id": hb.job_id, "pid": hb.pid, "issue": hb.issue, "stage": hb.stage,
            "iteration": hb.iteration, "memory_mb": hb.memory_mb, "cpu_pct": hb.cpu_pct,
            "last_activity": hb.last_activity, "updated_at": hb.updated_at,
            "status": check.status.value,
        })
    _print_json(rows)
    return EXIT_OK


def cmd_heartbeat_clear(args, config):
    if _heartbeats(config).clear(args.job_id):
        print(f"Cleared {args.job_id}")
    else:
        print(f"No heartbeat for {args.job_id}")
    return EXIT_OK


# -- worktree ------------------------------------------------------------------

def _worktree_row(info) -> dict:
    row = {"name": info.name, "branch": info.branch, "path": info.path,
           "ahead": info.ahead, "behind": info.behind}
    if info.dirty is not None:
        row["dirty"] = info.dirty
    return row


def cmd_worktree_create(args, config):
    info = _worktrees(config).create(args.name, args.branch or None)
    print(f"{info.name}: {info.path} ({info.branch})")
    return EXIT_OK


def cmd_worktree_list(args, config):
    _print_json([_worktree_row(i) for i in _worktrees(config).list()])
    return EXIT_OK


def cmd_worktree_sync(args, config):
    _worktrees(config).sync(args.name)
    print(f"Synced {args.name}")
    return EXIT_OK


def cmd_worktree_sync_all(args, config):
    results = _worktrees(config).sync_all()
    _print_json(results)
    return EXIT_CONTENDED if "conflict" in results.values() else EXIT_OK


def cmd_worktree_merge(args, config):
    _worktrees(config).merge(args.name)
    print(f"Merged {args.name}")
    return EXIT_OK


def cmd_worktree_merge_all(args, config):
    merged = _worktrees(config).merge_all()
    print(f"Merged {len(merged)} worktree(s)" + (f": {', '.join(merged)}" if merged else ""))
    return EXIT_OK


def cmd_worktree_remove(args, config):
    _worktrees(config).remove(args.name)
    print(f"Removed {args.name}")
    return EXIT_OK


def cmd_worktree_cleanup(args, config):
    removed = _worktrees(config).cleanup()
    print(f"Removed {len(removed)} worktree(s)")
    return EXIT_OK


def cmd_worktree_status(args, config):
    _print_json([_worktree_row(i) for i in _worktrees(config).status()])
    return EXIT_OK


# -- pipeline ------------------------------------------------------------------

def _report_drive(run_id: str, status: RunStatus) -> int:
    print(f"Run {run_id}: {status.value}")
    return EXIT_ERROR if status is RunStatus.FAILURE else EXIT_OK


def cmd_pipeline_start(args, config):
    template = resolve_template(args.template)
    if not args.no_drive:
        _worker_command(args)
    config.ensure_dirs()
    run = StageSequencer.create_run(config, template, args.work_item, args.goal,
                                    run_id=args.run_id, events=_events(config))
    print(f"Started run {run.run_id} ({template.name}: {' → '.join(run.stage_order)})")
    if args.no_drive:
        return EXIT_OK
    return _report_drive(run.run_id, _sequencer(args, config, run.run_id).drive())


def cmd_pipeline_drive(args, config):
    return _report_drive(args.run_id, _sequencer(args, config, args.run_id).drive())


def cmd_pipeline_status(args, config):
    run = RunStateManager.for_run(config.runs_dir, args.run_id).load()
    _print_json(run.summary())
    return EXIT_OK


def cmd_pipeline_list(args, config):
    runs = list_runs(config.runs_dir)
    if not runs:
        print("No runs.")
    for run in runs:
        stage = run.awaiting_approval or run.current_stage or "-"
        print(f"{run.run_id}  {run.status.value:<8}  {stage}  {run.work_item}")
    return EXIT_OK


def _control(action: ControlAction) -> Callable:
    def _cmd(args, config):
        manager = RunStateManager.for_run(config.runs_dir, args.run_id)
        run = apply_control(manager, _events(config), action,
                            stage=getattr(args, "stage", ""), reason=getattr(args, "reason", ""))
        target = f" {args.stage}" if getattr(args, "stage", "") else ""
        print(f"{action.value}{target}: run {run.run_id} is {run.status.value}")
        return EXIT_OK
    _cmd.__name__ = f"cmd_pipeline_{action.value}"
    return _cmd


_HANDLERS: dict[Command, Callable] = {
    Command.CHECKPOINT_SAVE: cmd_checkpoint_save,
    Command.CHECKPOINT_RESTORE: cmd_checkpoint_restore,
    Command.CHECKPOINT_LIST: cmd_checkpoint_list,
    Command.CHECKPOINT_CLEAR: cmd_checkpoint_clear,
    Command.CHECKPOINT_EXPIRE: cmd_checkpoint_expire,
    Command.CHECKPOINT_SAVE_CONTEXT: cmd_checkpoint_save_context,
    Command.CHECKPOINT_RESTORE_CONTEXT: cmd_checkpoint_restore_context,
    Command.EVENTS_PUBLISH: cmd_events_publish,
    Command.EVENTS_CONSUME: cmd_events_consume,
    Command.EVENTS_COMMIT: cmd_events_commit,
    Command.EVENTS_STATUS: cmd_events_status,
    Command.EVENTS_COMPACT: cmd_events_compact,
    Command.EVENTS_DLQ: cmd_events_dlq,
    Command.EVENTS_RETRY_DLQ: cmd_events_retry_dlq,
    Command.LOCK_ACQUIRE: cmd_lock_acquire,
    Command.LOCK_RELEASE: cmd_lock_release,
    Command.LOCK_STATUS: cmd_lock_status,
    Command.HEARTBEAT_WRITE: cmd_heartbeat_write,
    Command.HEARTBEAT_CHECK: cmd_heartbeat_check,
    Command.HEARTBEAT_LIST: cmd_heartbeat_list,
    Command.HEARTBEAT_CLEAR: cmd_heartbeat_clear,
    Command.WORKTREE_CREATE: cmd_worktree_create,
    Command.WORKTREE_LIST: cmd_worktree_list,
    Command.WORKTREE_SYNC: cmd_worktree_sync,
    Command.WORKTREE_SYNC_ALL: cmd_worktree_sync_all,
    Command.WORKTREE_MERGE: cmd_worktree_merge,
    Command.WORKTREE_MERGE_ALL: cmd_worktree_merge_all,
    Command.WORKTREE_REMOVE: cmd_worktree_remove,
    Command.WORKTREE_CLEANUP: cmd_worktree_cleanup,
    Command.WORKTREE_STATUS: cmd_worktree_status,
    Command.PIPELINE_START: cmd_pipeline_start,
    Command.PIPELINE_DRIVE: cmd_pipeline_drive,
    Command.PIPELINE_STATUS: cmd_pipeline_status,
    Command.PIPELINE_LIST: cmd_pipeline_list,
    Command.PIPELINE_PAUSE: _control(ControlAction.PAUSE),
    Command.PIPELINE_RESUME: _control(ControlAction.RESUME),
    Command.PIPELINE_STOP: _control(ControlAction.STOP),
    Command.PIPELINE_SKIP: _control(ControlAction.SKIP),
    Command.PIPELINE_RETRY: _control(ControlAction.RETRY),
    Command.PIPELINE_APPROVE: _control(ControlAction.APPROVE),
}

_missing = set(Command) - set(_HANDLERS)
if _missing:
    raise RuntimeError(f"commands without a handler: {sorted(c.value for c in _missing)}")


# -- Parser --------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="drydock",
        description="Checkpoints, events, locks, heartbeats and worktrees for agent pipelines.",
    )
    groups = parser.add_subparsers(dest="group")

    # checkpoint
    g = groups.add_parser("checkpoint", help="Per-stage progress snapshots")
    g.add_argument("--run", default="", help="Use the checkpoints of this pipeline run")
    sub = g.add_subparsers(dest="action")

    p = sub.add_parser("save")
    p.add_argument("stage")
    p.add_argument("--iteration", type=int, default=0)
    p.add_argument("--revision", default="", help="Revision id (default: current HEAD)")
    p.add_argument("--files", default="", help="Comma-separated modified files")
    p.add_argument("--tests-passing", action="store_true")
    p.add_argument("--state", default="", help="Free-form loop state")
    p.set_defaults(command=Command.CHECKPOINT_SAVE)

    p = sub.add_parser("restore")
    p.add_argument("stage")
    p.set_defaults(command=Command.CHECKPOINT_RESTORE)

    sub.add_parser("list").set_defaults(command=Command.CHECKPOINT_LIST)

    p = sub.add_parser("clear")
    p.add_argument("stage", nargs="?", default="")
    p.add_argument("--all", action="store_true", help="Clear every checkpoint")
    p.set_defaults(command=Command.CHECKPOINT_CLEAR)

    p = sub.add_parser("expire")
    p.add_argument("--hours", type=float, default=24.0)
    p.set_defaults(command=Command.CHECKPOINT_EXPIRE)

    p = sub.add_parser("save-context")
    p.add_argument("stage")
    p.add_argument("--goal", default="")
    p.add_argument("--finding", action="append", help="Repeatable")
    p.add_argument("--files", default="")
    p.add_argument("--test-output", default="")
    p.add_argument("--iteration", type=int, default=0)
    p.add_argument("--status", default="")
    p.set_defaults(command=Command.CHECKPOINT_SAVE_CONTEXT)

    p = sub.add_parser("restore-context", help="Print the context as shell exports")
    p.add_argument("stage")
    p.set_defaults(command=Command.CHECKPOINT_RESTORE_CONTEXT)

    # events
    g = groups.add_parser("events", help="Durable event log")
    sub = g.add_subparsers(dest="action")

    p = sub.add_parser("publish")
    p.add_argument("type")
    p.add_argument("--attr", action="append", help="key=value, repeatable")
    p.add_argument("--json", default="", help="Attributes as a JSON object")
    p.set_defaults(command=Command.EVENTS_PUBLISH)

    p = sub.add_parser("consume")
    p.add_argument("--from", dest="from_offset", type=int, default=None)
    p.add_argument("--consumer", default="")
    p.add_argument("--limit", type=int, default=0)
    p.add_argument("--commit", action="store_true", help="Commit the last printed sequence")
    p.add_argument("--handler", default="",
                   help="Shell command run per event with its JSON on stdin (needs --consumer)")
    p.set_defaults(command=Command.EVENTS_CONSUME)

    p = sub.add_parser("commit")
    p.add_argument("consumer")
    p.add_argument("offset", type=int)
    p.set_defaults(command=Command.EVENTS_COMMIT)

    sub.add_parser("status").set_defaults(command=Command.EVENTS_STATUS)

    p = sub.add_parser("compact")
    p.add_argument("--retention-hours", type=float, default=None)
    p.set_defaults(command=Command.EVENTS_COMPACT)

    p = sub.add_parser("dlq", help="List or purge dead letters")
    p.add_argument("--purge-hours", type=float, default=None)
    p.set_defaults(command=Command.EVENTS_DLQ)

    p = sub.add_parser("retry-dlq")
    p.add_argument("name")
    p.set_defaults(command=Command.EVENTS_RETRY_DLQ)

    # lock
    g = groups.add_parser("lock", help="Named advisory locks with TTL")
    sub = g.add_subparsers(dest="action")

    p = sub.add_parser("acquire")
    p.add_argument("resource")
    p.add_argument("--ttl", type=float, default=None)
    p.add_argument("--holder", default="")
    p.add_argument("--wait", type=float, default=0.0, help="Seconds to wait for a contended lock")
    p.set_defaults(command=Command.LOCK_ACQUIRE)

    p = sub.add_parser("release")
    p.add_argument("resource")
    p.add_argument("--holder", default="")
    p.set_defaults(command=Command.LOCK_RELEASE)

    p = sub.add_parser("status")
    p.add_argument("resource", nargs="?", default="")
    p.set_defaults(command=Command.LOCK_STATUS)

    # heartbeat
    g = groups.add_parser("heartbeat", help="Agent liveness")
    sub = g.add_subparsers(dest="action")

    p = sub.add_parser("write")
    p.add_argument("job_id")
    p.add_argument("--pid", type=int, default=None)
    p.add_argument("--issue", default="")
    p.add_argument("--stage", default="")
    p.add_argument("--iteration", type=int, default=0)
    p.add_argument("--activity", default="")
    p.set_defaults(command=Command.HEARTBEAT_WRITE)

    p = sub.add_parser("check")
    p.add_argument("job_id")
    p.add_argument("--timeout", type=float, default=None)
    p.set_defaults(command=Command.HEARTBEAT_CHECK)

    sub.add_parser("list").set_defaults(command=Command.HEARTBEAT_LIST)

    p = sub.add_parser("clear")
    p.add_argument("job_id")
    p.set_defaults(command=Command.HEARTBEAT_CLEAR)

    # worktree
    g = groups.add_parser("worktree", help="Isolated git worktrees")
    sub = g.add_subparsers(dest="action")

    p = sub.add_parser("create")
    p.add_argument("name")
    p.add_argument("--branch", default="")
    p.set_defaults(command=Command.WORKTREE_CREATE)

    sub.add_parser("list").set_defaults(command=Command.WORKTREE_LIST)
    for action, command in (("sync", Command.WORKTREE_SYNC), ("merge", Command.WORKTREE_MERGE),
                            ("remove", Command.WORKTREE_REMOVE)):
        p = sub.add_parser(action)
        p.add_argument("name")
        p.set_defaults(command=command)
    sub.add_parser("sync-all").set_defaults(command=Command.WORKTREE_SYNC_ALL)
    sub.add_parser("merge-all").set_defaults(command=Command.WORKTREE_MERGE_ALL)
    sub.add_parser("cleanup").set_defaults(command=Command.WORKTREE_CLEANUP)
    sub.add_parser("status").set_defaults(command=Command.WORKTREE_STATUS)

    # pipeline
    g = groups.add_parser("pipeline", help="Stage sequencer")
    sub = g.add_subparsers(dest="action")

    p = sub.add_parser("start")
    p.add_argument("--template", default="standard", help="Built-in name or path to a JSON template")
    p.add_argument("--work-item", default="")
    p.add_argument("--goal", default="")
    p.add_argument("--run-id", default="")
    p.add_argument("--worker-cmd", default="", help="Agent command (default: $DRYDOCK_WORKER_CMD)")
    p.add_argument("--no-drive", action="store_true", help="Create the run without driving it")
    p.set_defaults(command=Command.PIPELINE_START)

    p = sub.add_parser("drive", help="Drive (or resume) an existing run")
    p.add_argument("run_id")
    p.add_argument("--worker-cmd", default="")
    p.set_defaults(command=Command.PIPELINE_DRIVE)

    p = sub.add_parser("status")
    p.add_argument("run_id")
    p.set_defaults(command=Command.PIPELINE_STATUS)

    sub.add_parser("list").set_defaults(command=Command.PIPELINE_LIST)

    for action, command in (("pause", Command.PIPELINE_PAUSE), ("resume", Command.PIPELINE_RESUME)):
        p = sub.add_parser(action)
        p.add_argument("run_id")
        p.set_defaults(command=command)

    p = sub.add_parser("stop")
    p.add_argument("run_id")
    p.add_argument("--reason", default="")
    p.set_defaults(command=Command.PIPELINE_STOP)

    for action, command in (("skip", Command.PIPELINE_SKIP), ("retry", Command.PIPELINE_RETRY),
                            ("approve", Command.PIPELINE_APPROVE)):
        p = sub.add_parser(action)
        p.add_argument("run_id")
        p.add_argument("stage")
        p.add_argument("--reason", default="")
        p.set_defaults(command=command)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    command = getattr(args, "command", None)
    if command is None:
        parser.print_help()
        return EXIT_ERROR

    try:
        config = DrydockConfig.from_env()
        return _HANDLERS[command](args, config)
    except ContendedError as e:
        print(f"CONTENDED: {e}", file=sys.stderr)
        return EXIT_CONTENDED
    except MergeConflictError as e:
        print(f"CONFLICT: {e}", file=sys.stderr)
        if e.merged:
            print(f"already merged: {', '.join(e.merged)}", file=sys.stderr)
        return EXIT_CONTENDED
    except StorageError as e:
        print(f"FATAL: {e}", file=sys.stderr)
        return EXIT_STORAGE
    except NotFoundError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_ERROR
    except (DrydockError, GitError, FileNotFoundError, ValueError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
