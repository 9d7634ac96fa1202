"""Git and GitHub CLI subprocess wrappers for branch, commit, push and PR operations."""

import json
import subprocess
from dataclasses import dataclass
from pathlib import Path


class GitError(Exception):
    """Raised when a git or gh command fails."""


@dataclass
class PullRequest:
    number: int
    url: str
    title: str = ""


def run_git(args: list[str], cwd: str | Path | None = None) -> str:
    """Run a git command and return stdout. Raises GitError on failure."""
    cmd = ["git"] + args
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
        )
        return result.stdout.strip()
    except subprocess.CalledProcessError as e:
        raise GitError(f"git {' '.join(args)} failed: {e.stderr.strip()}") from e
    except FileNotFoundError as e:
        raise GitError(f"git not available: {e}") from e


def run_gh(args: list[str], cwd: str | Path | None = None) -> str:
    """Run a GitHub CLI command and return stdout. Raises GitError on failure."""
    cmd = ["gh"] + args
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
        )
        return result.stdout.strip()
    except subprocess.CalledProcessError as e:
        raise GitError(f"gh {' '.join(args)} failed: {e.stderr.strip()}") from e
    except FileNotFoundError as e:
        raise GitError(f"gh not available: {e}") from e


def is_git_repo(path: str | Path) -> bool:
    """Check whether a path is inside a git work tree."""
    if not Path(path).is_dir():
        return False
    try:
        return run_git(["rev-parse", "--is-inside-work-tree"], cwd=path) == "true"
    except GitError:
        return False


def branch_exists(repo_path: str | Path, branch: str) -> bool:
    """Check if a branch exists."""
    try:
        run_git(["rev-parse", "--verify", f"refs/heads/{branch}"], cwd=repo_path)
        return True
    except GitError:
        return False


def create_branch(repo_path: str | Path, branch: str, base_branch: str = "main") -> str:
    """Create a branch from a base branch without checking it out."""
    return run_git(["branch", branch, base_branch], cwd=repo_path)


def get_current_branch(cwd: str | Path) -> str:
    """Get the current branch name."""
    return run_git(["branch", "--show-current"], cwd=cwd)


def changed_files(cwd: str | Path) -> list[str]:
    """Paths with uncommitted changes, from ``git status --porcelain``."""
    output = run_git(["status", "--porcelain"], cwd=cwd)
    files = []
    for line in output.splitlines():
        if len(line) < 4:
            continue
        path = line[3:]
        # Renames are reported as "old -> new"
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        files.append(path)
    return files


def stage_all(cwd: str | Path) -> str:
    return run_git(["add", "-A"], cwd=cwd)


def commit(cwd: str | Path, message: str) -> str:
    """Commit staged changes. Returns the new commit SHA."""
    run_git(["commit", "-m", message], cwd=cwd)
    return run_git(["rev-parse", "HEAD"], cwd=cwd)


def push(cwd: str | Path, branch: str, remote: str = "origin") -> str:
    return run_git(["push", "-u", remote, branch], cwd=cwd)


def find_pr_for_branch(cwd: str | Path, branch: str) -> PullRequest | None:
    """Look up an open pull request whose head is ``branch``."""
    output = run_gh(
        ["pr", "list", "--head", branch, "--state", "open", "--json", "number,url,title"],
        cwd=cwd,
    )
    prs = json.loads(output or "[]")
    if not prs:
        return None
    pr = prs[0]
    return PullRequest(number=pr["number"], url=pr["url"], title=pr.get("title", ""))


def create_pull_request(
    cwd: str | Path,
    title: str,
    body: str,
    head_branch: str,
    base_branch: str = "main",
) -> PullRequest:
    """Open a pull request with ``gh pr create``."""
    url = run_gh(
        [
            "pr", "create",
            "--title", title,
            "--body", body,
            "--head", head_branch,
            "--base", base_branch,
        ],
        cwd=cwd,
    )
    url = url.splitlines()[-1].strip() if url else ""
    number = 0
    tail = url.rstrip("/").rsplit("/", 1)[-1]
    if tail.isdigit():
        number = int(tail)
    return PullRequest(number=number, url=url, title=title)
