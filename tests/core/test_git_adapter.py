"""Tests for the git adapter, against a throwaway repository."""

import shutil
import unittest
from unittest.mock import patch

import pytest

from drydock.core.vcs import UNKNOWN_REVISION, Git, GitError
from tests.pipeline.helpers import commit_file, init_repo

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


class TestGit:
    def test_head_revision(self, tmp_path):
        git = init_repo(tmp_path / "repo")
        sha = git.head_revision()
        assert len(sha) == 40

    def test_head_revision_outside_repo(self, tmp_path):
        assert Git(tmp_path).head_revision() == UNKNOWN_REVISION

    def test_head_revision_missing_directory(self, tmp_path):
        assert Git(tmp_path / "gone").head_revision() == UNKNOWN_REVISION

    def test_current_branch_and_exists(self, tmp_path):
        git = init_repo(tmp_path / "repo")
        assert git.current_branch() == "main"
        assert git.branch_exists("main")
        assert not git.branch_exists("nope")

    def test_modified_files(self, tmp_path):
        git = init_repo(tmp_path / "repo")
        (tmp_path / "repo" / "README").write_text("changed\n")
        (tmp_path / "repo" / "new.txt").write_text("x\n")
        assert git.modified_files() == ["README", "new.txt"]
        assert git.is_dirty()

    def test_modified_files_outside_repo(self, tmp_path):
        assert Git(tmp_path).modified_files() == []

    def test_merge_conflict_reports_files(self, tmp_path):
        git = init_repo(tmp_path / "repo")
        git.run("checkout", "-q", "-b", "side")
        commit_file(git, "README", "side\n")
        git.run("checkout", "-q", "main")
        commit_file(git, "README", "main\n")
        assert git.merge("side") is False
        assert git.conflicted_files() == ["README"]
        git.merge_abort()
        assert not git.is_dirty()

    def test_ahead_behind(self, tmp_path):
        git = init_repo(tmp_path / "repo")
        git.run("branch", "feature")
        commit_file(git, "a.txt", "a")
        assert git.ahead_behind("feature", "main") == (0, 1)
        assert git.ahead_behind("nope", "main") == (0, 0)

    def test_run_raises_with_output(self, tmp_path):
        git = init_repo(tmp_path / "repo")
        with pytest.raises(GitError) as exc:
            git.run("checkout", "no-such-branch")
        assert exc.value.returncode != 0
        assert "checkout" in str(exc.value)


class TestGitMissing(unittest.TestCase):
    @patch("drydock.core.vcs.subprocess.run", side_effect=FileNotFoundError("git"))
    def test_missing_binary_is_git_error(self, _run):
        with self.assertRaises(GitError) as ctx:
            Git(".").run("status")
        self.assertEqual(ctx.exception.returncode, 127)

    @patch("drydock.core.vcs.subprocess.run", side_effect=FileNotFoundError("git"))
    def test_missing_binary_revision_is_sentinel(self, _run):
        self.assertEqual(Git(".").head_revision(), UNKNOWN_REVISION)
        self.assertFalse(Git(".").available())
