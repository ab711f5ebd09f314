# Copyright 2026. Per-agent git worktrees on dedicated branches.

from __future__ import annotations

import os
import re
import shutil
from contextlib import nullcontext
from dataclasses import dataclass
from pathlib import Path

from drydock.core.errors import InvalidTransitionError, MergeConflictError, NotFoundError
from drydock.core.logging import log_activity
from drydock.core.vcs import Git, GitError
from drydock.durable.locks import LockManager, default_holder

BRANCH_PREFIX = "loop/"
_VALID_NAME_RE = re.compile(r"^[A-Za-z0-9._-]+$")


def branch_for(name: str) -> str:
    return f"{BRANCH_PREFIX}{name}"


def branch_lock_name(branch: str) -> str:
    return "branch-" + branch.replace("/", "-")


@dataclass
class WorktreeInfo:
    name: str
    branch: str
    path: str
    ahead: int = 0
    behind: int = 0
    dirty: bool | None = None


class WorktreeManager:
    """Creates, syncs, merges and removes worktrees under one directory.

    The main line is the branch checked out in `repo_root` unless
    `main_branch` names one. Merges into it take the branch lock when a
    LockManager is supplied.
    """

    def __init__(self, repo_root: Path, worktrees_dir: Path | None = None,
                 main_branch: str = "", locks: LockManager | None = None,
                 lock_ttl: float = 300.0, activity_log: str = "",
                 merge_all_rollback: bool = False, holder: str = ""):
        self.repo_root = Path(repo_root).resolve()
        self.worktrees_dir = Path(worktrees_dir) if worktrees_dir else self.repo_root / ".worktrees"
        self._git = Git(self.repo_root)
        self._main_branch = main_branch
        self._locks = locks
        self._lock_ttl = lock_ttl
        self._activity_log = activity_log
        self.merge_all_rollback = merge_all_rollback
        self._holder = holder or default_holder()

    @property
    def main_branch(self) -> str:
        if not self._main_branch:
            self._main_branch = self._git.current_branch()
        return self._main_branch

    def _log(self, msg: str) -> None:
        log_activity(self._activity_log, "worktree", msg)

    def path_for(self, name: str) -> Path:
        if not name or not _VALID_NAME_RE.match(name) or name.startswith("."):
            raise ValueError(f"Invalid worktree name: {name!r} (allowed: [A-Za-z0-9._-])")
        return self.worktrees_dir / name

    def _branch_of(self, path: Path) -> str | None:
        """Branch checked out at `path`, or None if git does not know it."""
        target = os.path.realpath(path)
        for entry in self._git.worktree_list():
            if os.path.realpath(entry.path) == target:
                return entry.branch
        return None

    def _require(self, name: str) -> tuple[Path, str]:
        path = self.path_for(name)
        branch = self._branch_of(path) if path.is_dir() else None
        if branch is None:
            raise NotFoundError("worktree", name)
        return path, branch

    def _ensure_gitignore(self) -> None:
        try:
            rel = self.worktrees_dir.resolve().relative_to(self.repo_root)
        except ValueError:
            return
        entry = f"{rel.as_posix()}/"
        gitignore = self.repo_root / ".gitignore"
        existing = gitignore.read_text(encoding="utf-8") if gitignore.is_file() else ""
        if entry in existing.splitlines():
            return
        prefix = "" if not existing or existing.endswith("\n") else "\n"
        with open(gitignore, "a", encoding="utf-8") as f:
            f.write(f"{prefix}{entry}\n")

    def _merge_guard(self):
        if self._locks is None:
            return nullcontext()
        resource = branch_lock_name(self.main_branch)
        rec = self._locks.get(resource)
        if rec is not None and rec.holder == self._holder and self._locks.is_held(resource):
            # already ours for a wider scope; leave the release to that scope
            return nullcontext()
        return self._locks.held(resource, self._lock_ttl, holder=self._holder)

    # -- Lifecycle -------------------------------------------------------------

    def create(self, name: str, branch: str | None = None) -> WorktreeInfo:
        path = self.path_for(name)
        branch = branch or branch_for(name)
        if path.exists():
            existing = self._branch_of(path)
            self._log(f"WARN: worktree '{name}' already exists at {path}")
            return WorktreeInfo(name=name, branch=existing or branch, path=str(path))

        self.worktrees_dir.mkdir(parents=True, exist_ok=True)
        self._ensure_gitignore()
        if self._git.branch_exists(branch):
            self._git.worktree_add(str(path), branch, new_branch=False)
        else:
            self._git.worktree_add(str(path), branch, new_branch=True)
        self._log(f"created worktree '{name}' on {branch}")
        return WorktreeInfo(name=name, branch=branch, path=str(path))

    def remove(self, name: str) -> None:
        path, branch = self._require(name)
        if not self._git.worktree_remove(str(path)):
            shutil.rmtree(path, ignore_errors=True)
            self._git.worktree_prune()
        if branch:
            self._git.delete_branch(branch)
        self._log(f"removed worktree '{name}' and branch {branch}")

    def cleanup(self) -> list[str]:
        removed = []
        for info in self.list():
            self.remove(info.name)
            removed.append(info.name)
        self._git.worktree_prune()
        try:
            self.worktrees_dir.rmdir()
        except OSError:
            pass
        return removed

    # -- Sync & merge ----------------------------------------------------------

    def sync(self, name: str) -> None:
        """Merge the main line into the worktree branch."""
        path, _branch = self._require(name)
        wt_git = Git(path)
        if not wt_git.merge(self.main_branch):
            files = wt_git.conflicted_files()
            self._log(f"CONFLICT syncing '{name}': {', '.join(files)}")
            raise MergeConflictError(name, files, direction="sync")
        self._log(f"synced '{name}' with {self.main_branch}")

    def sync_all(self) -> dict[str, str]:
        """Sync every worktree. Returns name -> "ok" | "conflict"."""
        results = {}
        for info in self.list():
            try:
                self.sync(info.name)
                results[info.name] = "ok"
            except MergeConflictError:
                results[info.name] = "conflict"
        return results

    def merge(self, name: str) -> None:
        """Merge the worktree branch into the main line."""
        _path, branch = self._require(name)
        with self._merge_guard():
            self._check_on_main()
            self._merge_branch(name, branch)

    def _check_on_main(self) -> None:
        current = self._git.current_branch()
        if current != self.main_branch:
            raise InvalidTransitionError(
                f"{self.repo_root} has {current} checked out, not {self.main_branch}; "
                f"check out {self.main_branch} before merging"
            )

    def _merge_branch(self, name: str, branch: str) -> None:
        if not self._git.merge(branch, message=f"Merge {branch}"):
            files = self._git.conflicted_files()
            self._log(f"CONFLICT merging '{name}': {', '.join(files)}")
            raise MergeConflictError(name, files, direction="merge")
        self._log(f"merged {branch} into {self.main_branch}")

    def merge_all(self) -> list[str]:
        """Merge every worktree in name order, stopping at the first conflict.

        With `merge_all_rollback` the main line is reset to where it stood
        before the batch; otherwise earlier merges stay.
        """
        infos = self.list()
        merged: list[str] = []
        with self._merge_guard():
            self._check_on_main()
            start = self._git.head_revision()
            for info in infos:
                try:
                    self._merge_branch(info.name, info.branch)
                except MergeConflictError as e:
                    if self.merge_all_rollback:
                        self._git.merge_abort()
                        self._git.reset_hard(start)
                        self._log(f"rolled back merge-all to {start[:7]}")
                        merged = []
                    raise MergeConflictError(e.name, e.files, merged, direction="merge") from None
                merged.append(info.name)
        return merged

    # -- Inspection ------------------------------------------------------------

    def list(self, with_dirty: bool = False) -> list[WorktreeInfo]:
        if not self.worktrees_dir.is_dir():
            return []
        base = os.path.realpath(self.worktrees_dir)
        main = self.main_branch
        out = []
        for entry in self._git.worktree_list():
            real = os.path.realpath(entry.path)
            if os.path.dirname(real) != base:
                continue
            info = WorktreeInfo(name=os.path.basename(real), branch=entry.branch, path=entry.path)
            if entry.branch:
                info.ahead, info.behind = self._git.ahead_behind(entry.branch, main)
            if with_dirty:
                try:
                    info.dirty = Git(entry.path).is_dirty()
                except GitError:
                    info.dirty = None
            out.append(info)
        return sorted(out, key=lambda i: i.name)

    def status(self) -> list[WorktreeInfo]:
        return self.list(with_dirty=True)
