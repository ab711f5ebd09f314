# Copyright 2026. Thin git adapter used by checkpoints, worktrees and the sequencer.

import subprocess
from dataclasses import dataclass
from pathlib import Path

UNKNOWN_REVISION = "unknown"


class GitError(RuntimeError):
    def __init__(self, args: list[str], returncode: int, output: str):
        self.git_args = args
        self.returncode = returncode
        self.output = output
        super().__init__(f"git {' '.join(args)} failed ({returncode}): {output.strip()[:500]}")


@dataclass
class WorktreeEntry:
    path: str
    head: str = ""
    branch: str = ""


class Git:
    """Runs git in a fixed working directory."""

    def __init__(self, cwd: str | Path = "."):
        self.cwd = str(cwd)

    def at(self, cwd: str | Path) -> "Git":
        return Git(cwd)

    def run(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        try:
            result = subprocess.run(
                ["git", *args], capture_output=True, text=True, cwd=self.cwd,
            )
        except FileNotFoundError as e:
            raise GitError(list(args), 127, str(e)) from None
        if check and result.returncode != 0:
            raise GitError(list(args), result.returncode, result.stderr or result.stdout)
        return result

    def _out(self, *args: str) -> str:
        return self.run(*args).stdout.strip()

    def available(self) -> bool:
        try:
            return self.run("rev-parse", "--git-dir", check=False).returncode == 0
        except GitError:
            return False

    def head_revision(self) -> str:
        """Current HEAD sha, or the "unknown" sentinel if git is unusable."""
        try:
            return self._out("rev-parse", "HEAD") or UNKNOWN_REVISION
        except (GitError, OSError):
            return UNKNOWN_REVISION

    def current_branch(self) -> str:
        return self._out("rev-parse", "--abbrev-ref", "HEAD")

    def branch_exists(self, branch: str) -> bool:
        return self.run("show-ref", "--verify", "--quiet", f"refs/heads/{branch}", check=False).returncode == 0

    def delete_branch(self, branch: str) -> bool:
        return self.run("branch", "-D", branch, check=False).returncode == 0

    def worktree_add(self, path: str, branch: str, new_branch: bool = True) -> None:
        if new_branch:
            self.run("worktree", "add", "-b", branch, path)
        else:
            self.run("worktree", "add", path, branch)

    def worktree_remove(self, path: str) -> bool:
        return self.run("worktree", "remove", "--force", path, check=False).returncode == 0

    def worktree_prune(self) -> None:
        self.run("worktree", "prune", check=False)

    def worktree_list(self) -> list[WorktreeEntry]:
        entries: list[WorktreeEntry] = []
        current: WorktreeEntry | None = None
        for line in self._out("worktree", "list", "--porcelain").splitlines():
            if line.startswith("worktree "):
                current = WorktreeEntry(path=line[len("worktree "):])
                entries.append(current)
            elif current is not None and line.startswith("HEAD "):
                current.head = line[len("HEAD "):]
            elif current is not None and line.startswith("branch "):
                current.branch = line[len("branch "):].removeprefix("refs/heads/")
        return entries

    def merge(self, ref: str, message: str = "") -> bool:
        """Merge `ref` into the current branch. False on conflict."""
        args = ["merge", "--no-edit"]
        if message:
            args += ["-m", message]
        result = self.run(*args, ref, check=False)
        if result.returncode == 0:
            return True
        if self.conflicted_files():
            return False
        raise GitError(args + [ref], result.returncode, result.stderr or result.stdout)

    def merge_abort(self) -> None:
        self.run("merge", "--abort", check=False)

    def reset_hard(self, revision: str) -> None:
        self.run("reset", "--hard", revision)

    def conflicted_files(self) -> list[str]:
        result = self.run("diff", "--name-only", "--diff-filter=U", check=False)
        return [l.strip() for l in result.stdout.splitlines() if l.strip()]

    def ahead_behind(self, branch: str, base: str) -> tuple[int, int]:
        """(commits on branch not on base, commits on base not on branch)."""
        result = self.run("rev-list", "--left-right", "--count", f"{branch}...{base}", check=False)
        if result.returncode != 0:
            return 0, 0
        parts = result.stdout.split()
        if len(parts) != 2:
            return 0, 0
        return int(parts[0]), int(parts[1])

    def is_dirty(self) -> bool:
        return bool(self.run("status", "--porcelain", check=False).stdout.strip())

    def commit_all(self, message: str) -> str:
        """Stage everything (untracked files included) and commit. Returns the new HEAD."""
        self.run("add", "-A")
        self.run("commit", "-q", "--no-verify", "-m", message)
        return self.head_revision()

    def modified_files(self) -> list[str]:
        files: set[str] = set()
        for args in (
            ("diff", "--name-only"),
            ("diff", "--name-only", "--cached"),
            ("ls-files", "--others", "--exclude-standard"),
        ):
            try:
                result = self.run(*args, check=False)
            except GitError:
                return []
            if result.returncode == 0:
                for line in result.stdout.splitlines():
                    if line.strip():
                        files.add(line.strip())
        return sorted(files)
