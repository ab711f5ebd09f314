# Copyright 2026. Per-stage resumable snapshots and build context.

from __future__ import annotations

import os
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, MutableMapping

from drydock.core.errors import CorruptError, NotFoundError
from drydock.core.logging import log_activity
from drydock.core.state import atomic_write_json, iso_from_epoch, parse_iso, read_json
from drydock.core.vcs import UNKNOWN_REVISION, Git

_VALID_STAGE_RE = re.compile(r"^[A-Za-z0-9._-]+$")
CONTEXT_SUFFIX = "-context"
ENV_PREFIX = "DRYDOCK_RESTORED_"


def validate_stage_name(stage: str) -> None:
    if not stage or not _VALID_STAGE_RE.match(stage) or stage.startswith("."):
        raise ValueError(f"Invalid stage name: {stage!r} (allowed: [A-Za-z0-9._-])")
    if stage.endswith(CONTEXT_SUFFIX):
        raise ValueError(f"Invalid stage name: {stage!r} (reserved suffix '{CONTEXT_SUFFIX}')")


@dataclass
class StageCheckpoint:
    stage: str
    iteration: int = 0
    git_sha: str = UNKNOWN_REVISION
    files_modified: list[str] = field(default_factory=list)
    tests_passing: bool = False
    loop_state: str = ""
    created_at: str = ""

    def summary(self) -> str:
        tests = "✓" if self.tests_passing else "✗"
        sha = self.git_sha[:7] if self.git_sha != UNKNOWN_REVISION else self.git_sha
        line = f"{self.stage}  iter:{self.iteration}  tests:{tests}  sha:{sha}"
        if self.loop_state:
            line += f"  state:{self.loop_state}"
        if self.files_modified:
            line += f"  files:{len(self.files_modified)}"
        return line


@dataclass
class BuildContext:
    stage: str
    goal: str = ""
    findings: list[str] = field(default_factory=list)
    modified_files: list[str] = field(default_factory=list)
    test_output: str = ""
    iteration: int = 0
    status: str = ""
    saved_at: str = ""

    def to_env(self) -> dict[str, str]:
        return {
            f"{ENV_PREFIX}GOAL": self.goal,
            f"{ENV_PREFIX}FINDINGS": "\n".join(self.findings),
            f"{ENV_PREFIX}MODIFIED_FILES": ",".join(self.modified_files),
            f"{ENV_PREFIX}TEST_OUTPUT": self.test_output,
            f"{ENV_PREFIX}ITERATION": str(self.iteration),
            f"{ENV_PREFIX}STATUS": self.status,
        }


def _checkpoint_to_dict(cp: StageCheckpoint) -> dict:
    return {
        "stage": cp.stage,
        "iteration": cp.iteration,
        "git_sha": cp.git_sha,
        "files_modified": cp.files_modified,
        "tests_passing": cp.tests_passing,
        "loop_state": cp.loop_state,
        "created_at": cp.created_at,
    }


def _dict_to_checkpoint(d: dict) -> StageCheckpoint:
    files = d.get("files_modified", [])
    if isinstance(files, str):
        files = [f for f in files.split(",") if f]
    return StageCheckpoint(
        stage=d["stage"],
        iteration=int(d.get("iteration", 0)),
        git_sha=d.get("git_sha") or UNKNOWN_REVISION,
        files_modified=list(files),
        tests_passing=bool(d.get("tests_passing", False)),
        loop_state=d.get("loop_state", ""),
        created_at=d.get("created_at", ""),
    )


def _context_to_dict(ctx: BuildContext) -> dict:
    return {
        "stage": ctx.stage,
        "goal": ctx.goal,
        "findings": ctx.findings,
        "modified_files": ctx.modified_files,
        "test_output": ctx.test_output,
        "iteration": ctx.iteration,
        "status": ctx.status,
        "saved_at": ctx.saved_at,
    }


def _dict_to_context(d: dict) -> BuildContext:
    return BuildContext(
        stage=d["stage"],
        goal=d.get("goal", ""),
        findings=list(d.get("findings", [])),
        modified_files=list(d.get("modified_files", [])),
        test_output=d.get("test_output", ""),
        iteration=int(d.get("iteration", 0)),
        status=d.get("status", ""),
        saved_at=d.get("saved_at", ""),
    )


class CheckpointStore:
    """One snapshot file per stage, last write wins.

    `<stage>.json` holds the StageCheckpoint and `<stage>-context.json` the
    BuildContext. Corrupt files surface as CorruptError (a NotFoundError)
    so a caller can restart the stage from scratch.
    """

    def __init__(self, checkpoints_dir: Path, git: Git | None = None,
                 activity_log: str = "", clock: Callable[[], float] = time.time):
        self.checkpoints_dir = Path(checkpoints_dir)
        self._git = git or Git()
        self._activity_log = activity_log
        self._clock = clock

    def _path(self, stage: str) -> Path:
        validate_stage_name(stage)
        return self.checkpoints_dir / f"{stage}.json"

    def _context_path(self, stage: str) -> Path:
        validate_stage_name(stage)
        return self.checkpoints_dir / f"{stage}{CONTEXT_SUFFIX}.json"

    def _log(self, msg: str) -> None:
        log_activity(self._activity_log, "checkpoint", msg)

    # -- Checkpoints -----------------------------------------------------------

    def save(self, stage: str, iteration: int = 0, revision: str | None = None,
             modified_files: list[str] | None = None, tests_passing: bool = False,
             loop_state: str = "") -> StageCheckpoint:
        if iteration < 0:
            raise ValueError("iteration must be >= 0")
        path = self._path(stage)
        cp = StageCheckpoint(
            stage=stage,
            iteration=iteration,
            git_sha=revision or self._git.head_revision(),
            files_modified=list(modified_files or []),
            tests_passing=tests_passing,
            loop_state=loop_state,
            created_at=iso_from_epoch(self._clock()),
        )
        atomic_write_json(path, _checkpoint_to_dict(cp))
        self._log(f"saved {stage} (iteration {iteration})")
        return cp

    def restore(self, stage: str) -> StageCheckpoint:
        path = self._path(stage)
        try:
            data = read_json(path, "checkpoint", stage)
            return _dict_to_checkpoint(data)
        except CorruptError as e:
            self._log(f"WARN: {e}")
            raise
        except (KeyError, TypeError, ValueError) as e:
            err = CorruptError("checkpoint", stage, str(path), str(e))
            self._log(f"WARN: {err}")
            raise err from None

    def list(self) -> list[StageCheckpoint]:
        if not self.checkpoints_dir.is_dir():
            return []
        result = []
        for p in sorted(self.checkpoints_dir.glob("*.json")):
            stage = p.stem
            if stage.endswith(CONTEXT_SUFFIX) or stage.startswith("."):
                continue
            try:
                result.append(self.restore(stage))
            except NotFoundError:
                continue
        return result

    def clear(self, stage: str) -> bool:
        removed = False
        for path in (self._path(stage), self._context_path(stage)):
            try:
                path.unlink()
                removed = True
            except FileNotFoundError:
                pass
        if removed:
            self._log(f"cleared {stage}")
        return removed

    def clear_all(self) -> int:
        """Remove every checkpoint and context. Returns checkpoints removed."""
        if not self.checkpoints_dir.is_dir():
            return 0
        count = 0
        for p in self.checkpoints_dir.glob("*.json"):
            if not p.stem.endswith(CONTEXT_SUFFIX):
                count += 1
            p.unlink(missing_ok=True)
        if count:
            self._log(f"cleared {count} checkpoint(s)")
        return count

    def expire(self, max_age_hours: float = 24.0) -> list[str]:
        """Delete snapshots created more than `max_age_hours` ago.

        Uses the recorded timestamp, or file mtime when that is missing or
        unparsable. Returns the expired stage names.
        """
        if max_age_hours < 0:
            raise ValueError("max_age_hours must be >= 0")
        if not self.checkpoints_dir.is_dir():
            return []
        now = self._clock()
        max_secs = max_age_hours * 3600
        expired = []
        for p in sorted(self.checkpoints_dir.glob("*.json")):
            is_context = p.stem.endswith(CONTEXT_SUFFIX)
            stamp_key = "saved_at" if is_context else "created_at"
            try:
                data = read_json(p, "checkpoint", p.stem)
                created = parse_iso(data.get(stamp_key, ""))
            except NotFoundError:
                created = None
            if created is None:
                try:
                    created = p.stat().st_mtime
                except FileNotFoundError:
                    continue
            if now - created > max_secs:
                p.unlink(missing_ok=True)
                if not is_context:
                    expired.append(p.stem)
        if expired:
            self._log(f"expired {len(expired)} checkpoint(s) older than {max_age_hours}h")
        return expired

    # -- Build context ---------------------------------------------------------

    def save_context(self, context: BuildContext) -> BuildContext:
        path = self._context_path(context.stage)
        context.saved_at = iso_from_epoch(self._clock())
        atomic_write_json(path, _context_to_dict(context))
        return context

    def load_context(self, stage: str) -> BuildContext:
        path = self._context_path(stage)
        try:
            return _dict_to_context(read_json(path, "build context", stage))
        except CorruptError as e:
            self._log(f"WARN: {e}")
            raise
        except (KeyError, TypeError, ValueError) as e:
            err = CorruptError("build context", stage, str(path), str(e))
            self._log(f"WARN: {err}")
            raise err from None

    def restore_context(self, stage: str,
                        env: MutableMapping[str, str] | None = None) -> BuildContext:
        """Load the stage's BuildContext and export it into `env`."""
        ctx = self.load_context(stage)
        target = os.environ if env is None else env
        target.update(ctx.to_env())
        return ctx
