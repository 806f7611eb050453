"""
Git integration — branch lookup and recent commit history.
"""

import subprocess
from dataclasses import dataclass


@dataclass
class GitCommit:
    sha: str
    message: str


def _run_git(args: list[str], cwd: str | None = None) -> tuple[bool, str]:
    """Run a git command and return ``(success, output)``."""
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=cwd,
            capture_output=True,
            text=True,
            check=False,
            timeout=10,
        )
        output = (result.stdout if result.returncode == 0 else result.stderr).strip()
        return result.returncode == 0, output
    except (OSError, subprocess.SubprocessError) as e:
        return False, str(e)


def is_git_repo(cwd: str | None = None) -> bool:
    """Return ``True`` if *cwd* is inside a git repository."""
    ok, _ = _run_git(["rev-parse", "--is-inside-work-tree"], cwd)
    return ok


def get_current_branch(cwd: str | None = None) -> str | None:
    """Return the current branch name, or ``None`` on detached HEAD / no repo."""
    ok, output = _run_git(["branch", "--show-current"], cwd)
    return (output or None) if ok else None


def get_recent_commits(since: str | None = None, limit: int = 20,
                       cwd: str | None = None) -> list[GitCommit]:
    """Return up to *limit* commits on HEAD, newest first.

    *since* is anything ``git log --since`` accepts (e.g. an ISO timestamp).
    """
    args = ["log", f"-n{limit}", "--format=%H%x1f%s"]
    if since:
        args.append(f"--since={since}")
    ok, output = _run_git(args, cwd)
    if not ok or not output:
        return []
    commits = []
    for line in output.splitlines():
        sha, _, message = line.partition("\x1f")
        if sha:
            commits.append(GitCommit(sha=sha, message=message))
    return commits


def get_modified_files(since_ref: str = "HEAD~1", cwd: str | None = None) -> list[str]:
    """Return paths changed between *since_ref* and the working tree."""
    ok, output = _run_git(["diff", "--name-only", since_ref], cwd)
    if not ok:
        return []
    return [line for line in output.splitlines() if line.strip()]
