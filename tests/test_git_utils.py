"""
Unit tests for agent_recall.git_utils against a throwaway repository.
"""

from __future__ import annotations

import shutil
import subprocess

import pytest

from agent_recall.git_utils import (
    get_current_branch,
    get_modified_files,
    get_recent_commits,
    is_git_repo,
)

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def _git(repo, *args):
    subprocess.run(["git", *args], cwd=repo, check=True, capture_output=True)


@pytest.fixture
def repo(tmp_path):
    _git(tmp_path, "init", "-q")
    _git(tmp_path, "checkout", "-q", "-b", "feat/issue-84-proof-verification")
    _git(tmp_path, "config", "user.email", "dev@example.com")
    _git(tmp_path, "config", "user.name", "Dev")
    (tmp_path / "a.py").write_text("x = 1\n")
    _git(tmp_path, "add", "a.py")
    _git(tmp_path, "commit", "-q", "-m", "feat: first")
    (tmp_path / "b.py").write_text("y = 2\n")
    _git(tmp_path, "add", "b.py")
    _git(tmp_path, "commit", "-q", "-m", "fix(db): second")
    return tmp_path


class TestGitUtils:

    def test_not_a_repo(self, tmp_path):
        assert is_git_repo(str(tmp_path)) is False
        assert get_current_branch(str(tmp_path)) is None
        assert get_recent_commits(cwd=str(tmp_path)) == []
        assert get_modified_files(cwd=str(tmp_path)) == []

    def test_branch(self, repo):
        assert is_git_repo(str(repo))
        assert get_current_branch(str(repo)) == "feat/issue-84-proof-verification"

    def test_recent_commits_newest_first(self, repo):
        commits = get_recent_commits(cwd=str(repo))
        assert [c.message for c in commits] == ["fix(db): second", "feat: first"]
        assert len(commits[0].sha) == 40

    def test_limit(self, repo):
        assert len(get_recent_commits(limit=1, cwd=str(repo))) == 1

    def test_modified_files(self, repo):
        assert get_modified_files(cwd=str(repo)) == ["b.py"]
        (repo / "a.py").write_text("x = 3\n")
        assert sorted(get_modified_files(cwd=str(repo))) == ["a.py", "b.py"]
