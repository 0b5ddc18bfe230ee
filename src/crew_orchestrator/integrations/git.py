"""Git subprocess wrappers for repository, worktree and branch operations."""

import os
import subprocess
from pathlib import Path

GIT_IDENTITY = {
    "GIT_AUTHOR_NAME": "crew-orchestrator",
    "GIT_AUTHOR_EMAIL": "crew@localhost",
    "GIT_COMMITTER_NAME": "crew-orchestrator",
    "GIT_COMMITTER_EMAIL": "crew@localhost",
}


class GitError(Exception):
    """Raised when a git command fails."""


def run_git(args: list[str], cwd: str | Path | None = None, timeout: float = 60) -> str:
    """Run a git command and return stdout. Raises GitError on failure."""
    cmd = ["git"] + args
    env = {**os.environ, **GIT_IDENTITY}
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
            env=env,
            timeout=timeout,
        )
        return result.stdout.strip()
    except subprocess.CalledProcessError as e:
        detail = e.stderr.strip() or e.stdout.strip()
        raise GitError(f"git {' '.join(args)} failed: {detail}") from e
    except subprocess.TimeoutExpired as e:
        raise GitError(f"git {' '.join(args)} timed out after {timeout}s") from e


def init_repo(repo_path: str | Path, branch: str = "main") -> str:
    """Initialise a repository with an empty root commit on ``branch``."""
    Path(repo_path).mkdir(parents=True, exist_ok=True)
    run_git(["init", "-b", branch], cwd=repo_path)
    return run_git(["commit", "--allow-empty", "-m", "Initial commit"], cwd=repo_path)


def is_repo(path: str | Path) -> bool:
    if not Path(path).is_dir():
        return False
    try:
        run_git(["rev-parse", "--git-dir"], cwd=path)
        return True
    except GitError:
        return False


def worktree_add(
    repo_path: str | Path,
    worktree_path: str | Path,
    branch: str,
    base_branch: str = "main",
    create_branch: bool = True,
) -> str:
    """Create a new git worktree."""
    args = ["worktree", "add"]
    if create_branch:
        args += ["-b", branch]
    args += [str(worktree_path)]
    if not create_branch:
        args.append(branch)
    else:
        args.append(base_branch)
    return run_git(args, cwd=repo_path)


def worktree_remove(repo_path: str | Path, worktree_path: str | Path, force: bool = False) -> str:
    """Remove a git worktree."""
    args = ["worktree", "remove", str(worktree_path)]
    if force:
        args.append("--force")
    return run_git(args, cwd=repo_path)


def worktree_prune(repo_path: str | Path) -> str:
    return run_git(["worktree", "prune"], cwd=repo_path)


def branch_exists(repo_path: str | Path, branch: str) -> bool:
    """Check if a branch exists."""
    try:
        run_git(["rev-parse", "--verify", f"refs/heads/{branch}"], cwd=repo_path)
        return True
    except GitError:
        return False


def delete_branch(repo_path: str | Path, branch: str, force: bool = False) -> str:
    """Delete a branch."""
    flag = "-D" if force else "-d"
    return run_git(["branch", flag, branch], cwd=repo_path)


def get_status(cwd: str | Path) -> str:
    """Get git status of a working directory."""
    return run_git(["status", "--short"], cwd=cwd)


def commit_all(cwd: str | Path, message: str) -> bool:
    """Stage and commit everything in a working tree.

    Returns False when there was nothing to commit.
    """
    run_git(["add", "-A"], cwd=cwd)
    if not get_status(cwd):
        return False
    run_git(["commit", "-m", message], cwd=cwd)
    return True


def ahead_behind(repo_path: str | Path, branch: str, base: str = "main") -> tuple[int, int]:
    """Commits ``branch`` is (ahead of, behind) ``base``."""
    output = run_git(
        ["rev-list", "--left-right", "--count", f"{base}...{branch}"], cwd=repo_path
    )
    behind, ahead = (int(n) for n in output.split())
    return ahead, behind


def diff_stat(repo_path: str | Path, branch: str, base: str = "main") -> str:
    """Summary of changes on ``branch`` since it diverged from ``base``."""
    return run_git(["diff", "--stat", f"{base}...{branch}"], cwd=repo_path)


def merge(repo_path: str | Path, branch: str, message: str) -> str:
    """Merge ``branch`` into the checked-out branch with a merge commit."""
    return run_git(["merge", "--no-ff", "-m", message, branch], cwd=repo_path)


def merge_abort(repo_path: str | Path) -> str:
    return run_git(["merge", "--abort"], cwd=repo_path)


def rebase(cwd: str | Path, onto: str = "main") -> str:
    return run_git(["rebase", onto], cwd=cwd)


def rebase_abort(cwd: str | Path) -> str:
    return run_git(["rebase", "--abort"], cwd=cwd)


def conflict_files(cwd: str | Path) -> list[str]:
    """Paths with unresolved merge conflicts."""
    output = run_git(["diff", "--name-only", "--diff-filter=U"], cwd=cwd)
    return [line for line in output.split("\n") if line]
