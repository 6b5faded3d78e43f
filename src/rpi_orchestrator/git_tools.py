"""Git worktree lifecycle for isolated runs.

Each run works in a sibling worktree ``../<repo>-rpi-<runID>`` on branch
``rpi/<runID>``, created from the current branch.  After the last phase
the branch is merged back with ``--no-ff`` and the worktree removed.
"""

from __future__ import annotations

import logging
import os
import secrets
import shutil
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from rpi_orchestrator.schemas import RUN_DIR

logger = logging.getLogger(__name__)

WORKTREE_TIMEOUT_SECONDS = 30
WORKTREE_SUFFIX = "rpi"
BRANCH_PREFIX = "rpi/"
CREATE_MAX_ATTEMPTS = 3
CLEAN_CHECK_ATTEMPTS = 5
CLEAN_CHECK_BACKOFF_SECONDS = 2.0


class GitError(RuntimeError):
    """Raised when a git command fails unexpectedly."""


class WorktreeTimeoutError(GitError):
    """Raised when a git worktree operation exceeds its time bound."""


class WorktreeValidationError(GitError):
    """Raised when a worktree path does not match the run naming convention."""


class MergeConflictError(GitError):
    """Raised when merging a run branch conflicts; the merge has been aborted."""

    def __init__(self, message: str, conflicts: list[str]) -> None:
        super().__init__(message)
        self.conflicts = conflicts


def _run_git(
    *args: str,
    cwd: Path,
    check: bool = True,
    timeout: int = WORKTREE_TIMEOUT_SECONDS,
) -> subprocess.CompletedProcess[str]:
    """Run a git command and return the CompletedProcess."""
    cmd = ["git", *args]
    logger.debug("git %s (cwd=%s)", " ".join(args), cwd)
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as exc:
        raise WorktreeTimeoutError(f"`git {' '.join(args)}` timed out after {timeout}s") from exc
    except OSError as exc:
        raise GitError(f"git not available: {exc}") from exc
    if check and result.returncode != 0:
        raise GitError(
            f"`git {' '.join(args)}` failed (rc={result.returncode}): {result.stderr.strip()}"
        )
    return result


def generate_run_id() -> str:
    """Return a 12-character lowercase hex run id from a CSPRNG."""
    return secrets.token_hex(6)


def repo_root(cwd: str | Path) -> Path:
    """Return the top-level directory of the repository containing *cwd*."""
    return Path(_run_git("rev-parse", "--show-toplevel", cwd=Path(cwd)).stdout.strip())


def current_branch(repo: str | Path) -> str:
    """Return the checked-out branch name; detached HEAD is an error."""
    branch = _run_git("rev-parse", "--abbrev-ref", "HEAD", cwd=Path(repo)).stdout.strip()
    if branch == "HEAD":
        raise GitError("detached HEAD: worktree requires a named branch")
    return branch


def branch_name(run_id: str) -> str:
    return f"{BRANCH_PREFIX}{run_id}"


def worktree_path_for(root: str | Path, run_id: str) -> Path:
    """Sibling path ``<parent>/<repo>-rpi-<runID>`` for *root*."""
    root = Path(root)
    return root.parent / f"{root.name}-{WORKTREE_SUFFIX}-{run_id}"


def _resolve(path: str | Path) -> Path:
    return Path(os.path.realpath(os.path.abspath(path)))


@dataclass(frozen=True, slots=True)
class Worktree:
    """A created run worktree."""

    path: Path
    run_id: str
    root: Path

    @property
    def branch(self) -> str:
        return branch_name(self.run_id)


class WorktreeManager:
    """Creates, merges, and removes run worktrees."""

    def __init__(
        self,
        *,
        run_id_factory: Callable[[], str] = generate_run_id,
        sleep: Callable[[float], None] = time.sleep,
        timeout: int = WORKTREE_TIMEOUT_SECONDS,
    ) -> None:
        self._run_id_factory = run_id_factory
        self._sleep = sleep
        self._timeout = timeout

    def create(self, cwd: str | Path) -> Worktree:
        """Create a sibling worktree on a fresh ``rpi/<runID>`` branch.

        Retries with a new run id when git reports the branch or path
        already exists.
        """
        root = repo_root(cwd)
        base_branch = current_branch(root)

        for attempt in range(1, CREATE_MAX_ATTEMPTS + 1):
            run_id = self._run_id_factory()
            path = worktree_path_for(root, run_id)
            branch = branch_name(run_id)
            result = _run_git(
                "worktree", "add", "-b", branch, str(path), base_branch,
                cwd=root,
                check=False,
                timeout=self._timeout,
            )
            if result.returncode == 0:
                try:
                    (path / RUN_DIR).mkdir(parents=True, exist_ok=True)
                except OSError as exc:
                    logger.debug("Could not create %s in worktree: %s", RUN_DIR, exc)
                logger.info("Created worktree %s on %s (from %s)", path, branch, base_branch)
                return Worktree(path=path, run_id=run_id, root=root)

            output = f"{result.stdout}\n{result.stderr}"
            if "already exists" in output:
                logger.debug(
                    "Worktree branch collision on %s, retrying (%d/%d)",
                    branch, attempt, CREATE_MAX_ATTEMPTS,
                )
                continue
            raise GitError(f"git worktree add failed (rc={result.returncode}): {output.strip()}")

        raise GitError(f"failed to create unique worktree branch after {CREATE_MAX_ATTEMPTS} attempts")

    def merge(self, root: str | Path, run_id: str) -> None:
        """Merge ``rpi/<runID>`` into the checked-out branch of *root*.

        The clean-tree check is retried because a concurrent run may be
        mid-merge.  A conflicting merge is aborted and reported.
        """
        root = Path(root)
        for attempt in range(1, CLEAN_CHECK_ATTEMPTS + 1):
            check = _run_git("diff-index", "--quiet", "HEAD", cwd=root, check=False, timeout=self._timeout)
            if check.returncode == 0:
                break
            if attempt < CLEAN_CHECK_ATTEMPTS:
                logger.debug(
                    "Repo dirty (another merge in progress?), retrying in %.0fs (%d/%d)",
                    CLEAN_CHECK_BACKOFF_SECONDS, attempt, CLEAN_CHECK_ATTEMPTS,
                )
                self._sleep(CLEAN_CHECK_BACKOFF_SECONDS)
        else:
            raise GitError(
                f"original repo has uncommitted changes after {CLEAN_CHECK_ATTEMPTS} retries: "
                "commit or stash before merge"
            )

        branch = branch_name(run_id)
        result = _run_git(
            "merge", "--no-ff", "-m", f"Merge {branch} (rpi phased worktree)", branch,
            cwd=root,
            check=False,
            timeout=self._timeout,
        )
        if result.returncode == 0:
            logger.info("Merged %s into %s", branch, root)
            return

        conflict_out = _run_git(
            "diff", "--name-only", "--diff-filter=U", cwd=root, check=False, timeout=self._timeout
        ).stdout
        abort = _run_git("merge", "--abort", cwd=root, check=False, timeout=self._timeout)
        if abort.returncode != 0:
            logger.debug("git merge --abort: %s", abort.stderr.strip())
        conflicts = [line.strip() for line in conflict_out.splitlines() if line.strip()]
        if conflicts:
            raise MergeConflictError(
                f"merge conflict in {branch}.\n"
                "Conflicting files:\n" + "\n".join(conflicts) + "\n"
                f"Resolve manually: cd {root} && git merge {branch}",
                conflicts,
            )
        raise GitError(f"git merge failed (rc={result.returncode}): {result.stderr.strip()}")

    def remove(self, root: str | Path, path: str | Path, run_id: str) -> None:
        """Remove the run worktree at *path* and delete its branch.

        Refuses unless *path*, after resolving symlinks, is exactly the
        sibling ``<repo>-rpi-<runID>`` of *root*.
        """
        resolved_path = _resolve(path)
        resolved_root = _resolve(root)
        expected = worktree_path_for(resolved_root, run_id)
        if not run_id or resolved_path != expected:
            raise WorktreeValidationError(
                f"refusing to remove {resolved_path}: expected {expected} (path validation failed)"
            )

        result = _run_git(
            "worktree", "remove", str(resolved_path), "--force",
            cwd=resolved_root,
            check=False,
            timeout=self._timeout,
        )
        if result.returncode != 0:
            logger.debug("git worktree remove failed, deleting directly: %s", result.stderr.strip())
            shutil.rmtree(resolved_path, ignore_errors=True)

        branch_result = _run_git(
            "branch", "-D", branch_name(run_id), cwd=resolved_root, check=False, timeout=self._timeout
        )
        if branch_result.returncode != 0:
            logger.debug("git branch -D %s: %s", branch_name(run_id), branch_result.stderr.strip())
        logger.info("Removed worktree %s", resolved_path)
