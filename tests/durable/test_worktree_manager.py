"""Tests for WorktreeManager against a throwaway git repository."""

import shutil

import pytest

from drydock.core.errors import (
    ContendedError, InvalidTransitionError, MergeConflictError, NotFoundError,
)
from drydock.core.vcs import Git
from drydock.durable.locks import LockManager
from drydock.durable.worktree import WorktreeManager, branch_for, branch_lock_name
from tests.pipeline.helpers import commit_file, init_repo

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


@pytest.fixture
def repo(tmp_path):
    return init_repo(tmp_path / "repo")


@pytest.fixture
def manager(repo, tmp_path):
    return WorktreeManager(tmp_path / "repo", main_branch="main",
                           locks=LockManager(tmp_path / "locks"))


def test_branch_naming():
    assert branch_for("agent-1") == "loop/agent-1"
    assert branch_lock_name("loop/agent-1") == "branch-loop-agent-1"


class TestLifecycle:
    def test_create_then_list(self, manager, tmp_path):
        info = manager.create("agent-1")
        assert info.branch == "loop/agent-1"
        assert (tmp_path / "repo" / ".worktrees" / "agent-1" / "README").is_file()
        listed = manager.list()
        assert [(i.name, i.branch) for i in listed] == [("agent-1", "loop/agent-1")]

    def test_remove_then_list(self, manager, repo):
        manager.create("agent-1")
        manager.remove("agent-1")
        assert manager.list() == []
        assert not repo.branch_exists("loop/agent-1")

    def test_create_adds_gitignore_entry_once(self, manager, tmp_path):
        manager.create("a")
        manager.create("b")
        lines = (tmp_path / "repo" / ".gitignore").read_text().splitlines()
        assert lines.count(".worktrees/") == 1

    def test_create_existing_is_noop(self, manager):
        first = manager.create("agent-1")
        again = manager.create("agent-1")
        assert again.path == first.path
        assert len(manager.list()) == 1

    def test_create_reuses_existing_branch(self, manager, repo):
        repo.run("branch", "loop/agent-1")
        info = manager.create("agent-1")
        assert info.branch == "loop/agent-1"

    def test_remove_unknown(self, manager):
        with pytest.raises(NotFoundError):
            manager.remove("ghost")

    @pytest.mark.parametrize("name", ["", "../up", "a/b", ".hidden"])
    def test_invalid_names(self, manager, name):
        with pytest.raises(ValueError):
            manager.create(name)

    def test_cleanup_removes_all(self, manager, tmp_path):
        manager.create("a")
        manager.create("b")
        assert sorted(manager.cleanup()) == ["a", "b"]
        assert manager.list() == []
        assert not (tmp_path / "repo" / ".worktrees").exists()

    def test_external_worktrees_dir(self, repo, tmp_path):
        mgr = WorktreeManager(tmp_path / "repo", tmp_path / "elsewhere", main_branch="main")
        mgr.create("agent-1")
        assert (tmp_path / "elsewhere" / "agent-1").is_dir()
        assert not (tmp_path / "repo" / ".gitignore").exists()


class TestMerge:
    def test_merge_brings_changes_to_main(self, manager, repo, tmp_path):
        info = manager.create("agent-1")
        commit_file(Git(info.path), "feature.txt", "new\n")
        assert manager.list()[0].ahead == 1
        manager.merge("agent-1")
        assert (tmp_path / "repo" / "feature.txt").read_text() == "new\n"

    def test_merge_conflict_names_files(self, manager, repo):
        info = manager.create("agent-1")
        commit_file(Git(info.path), "README", "agent\n")
        commit_file(repo, "README", "main\n")
        with pytest.raises(MergeConflictError) as exc:
            manager.merge("agent-1")
        assert exc.value.files == ["README"]
        assert exc.value.direction == "merge"

    def test_merge_refuses_when_another_branch_is_checked_out(self, manager, repo, tmp_path):
        info = manager.create("agent-1")
        commit_file(Git(info.path), "feature.txt", "new\n")
        repo.run("checkout", "-q", "-b", "side")
        with pytest.raises(InvalidTransitionError):
            manager.merge("agent-1")
        with pytest.raises(InvalidTransitionError):
            manager.merge_all()
        assert not (tmp_path / "repo" / "feature.txt").exists()
        assert LockManager(tmp_path / "locks").get(branch_lock_name("main")) is None

    def test_merge_takes_branch_lock(self, manager, tmp_path):
        manager.create("agent-1")
        LockManager(tmp_path / "locks").acquire(branch_lock_name("main"), 60, holder="someone-else")
        with pytest.raises(ContendedError):
            manager.merge("agent-1")

    def test_merge_releases_branch_lock(self, manager, tmp_path):
        info = manager.create("agent-1")
        commit_file(Git(info.path), "f.txt", "x")
        manager.merge("agent-1")
        assert LockManager(tmp_path / "locks").get(branch_lock_name("main")) is None

    def test_merge_all_in_name_order(self, manager, tmp_path):
        for name in ("b", "a"):
            info = manager.create(name)
            commit_file(Git(info.path), f"{name}.txt", name)
        assert manager.merge_all() == ["a", "b"]
        assert (tmp_path / "repo" / "a.txt").exists()
        assert (tmp_path / "repo" / "b.txt").exists()

    def _conflicting_pair(self, manager, repo):
        a = manager.create("a")
        commit_file(Git(a.path), "a.txt", "a")
        b = manager.create("b")
        commit_file(Git(b.path), "README", "from b\n")
        commit_file(repo, "README", "from main\n")

    def test_merge_all_leaves_earlier_merges_by_default(self, manager, repo, tmp_path):
        self._conflicting_pair(manager, repo)
        with pytest.raises(MergeConflictError) as exc:
            manager.merge_all()
        assert exc.value.name == "b"
        assert exc.value.merged == ["a"]
        repo.merge_abort()
        assert (tmp_path / "repo" / "a.txt").exists()

    def test_merge_all_rollback(self, repo, tmp_path):
        manager = WorktreeManager(tmp_path / "repo", main_branch="main", merge_all_rollback=True)
        self._conflicting_pair(manager, repo)
        before = repo.head_revision()
        with pytest.raises(MergeConflictError) as exc:
            manager.merge_all()
        assert exc.value.merged == []
        assert repo.head_revision() == before
        assert not (tmp_path / "repo" / "a.txt").exists()
        assert not repo.conflicted_files()


class TestSync:
    def test_sync_pulls_main(self, manager, repo, tmp_path):
        manager.create("agent-1")
        commit_file(repo, "upstream.txt", "u")
        assert manager.list()[0].behind == 1
        manager.sync("agent-1")
        assert (tmp_path / "repo" / ".worktrees" / "agent-1" / "upstream.txt").exists()
        assert manager.list()[0].behind == 0

    def test_sync_conflict(self, manager, repo):
        info = manager.create("agent-1")
        commit_file(Git(info.path), "README", "agent\n")
        commit_file(repo, "README", "main\n")
        with pytest.raises(MergeConflictError) as exc:
            manager.sync("agent-1")
        assert exc.value.direction == "sync"

    def test_sync_all_reports_each(self, manager, repo):
        manager.create("clean")
        bad = manager.create("bad")
        commit_file(Git(bad.path), "README", "agent\n")
        commit_file(repo, "README", "main\n")
        assert manager.sync_all() == {"bad": "conflict", "clean": "ok"}


class TestStatus:
    def test_status_reports_dirty(self, manager, tmp_path):
        info = manager.create("agent-1")
        (tmp_path / "repo" / ".worktrees" / "agent-1" / "scratch.txt").write_text("x")
        (row,) = manager.status()
        assert row.dirty is True
        assert row.name == "agent-1"
        assert row.branch == info.branch

    def test_list_without_worktrees_dir(self, manager):
        assert manager.list() == []
