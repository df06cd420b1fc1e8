import asyncio
import logging
import shutil
from pathlib import Path

from common.errors import SyncError
from workspace.git_client import GitCommandError, run_git

logger = logging.getLogger(__name__)


class RepositorySynchronizer:
    """
    Keeps one working copy per repository under ``projects_dir``.

    First reference clones the source branch; every later reference fetches
    all remotes, hard-resets to ``origin/<source_branch>`` and cleans out
    untracked and ignored files, so stray commits or files left by a previous
    run never leak into the next review.
    Working copies are never deleted once they exist.
    """

    def __init__(self, projects_dir: str, git_timeout: float = 300):
        self.projects_dir = Path(projects_dir)
        self.git_timeout = git_timeout

    def working_copy_path(self, repository_name: str) -> Path:
        root = self.projects_dir.resolve()
        path = (root / repository_name).resolve()
        if path.parent != root:
            raise SyncError(f"Repository name {repository_name!r} escapes the projects directory")
        return path

    def exists(self, repository_name: str) -> bool:
        return self.working_copy_path(repository_name).exists()

    async def ensure(self, repository_name: str, clone_url: str, source_branch: str) -> Path:
        """Return the working copy path, checked out at ``origin/<source_branch>``."""
        if not source_branch:
            raise SyncError("Source branch is required")

        path = self.working_copy_path(repository_name)
        return await asyncio.to_thread(self._ensure_sync, repository_name, clone_url, source_branch, path)

    def _ensure_sync(self, repository_name: str, clone_url: str, source_branch: str, path: Path) -> Path:
        if not path.exists():
            logger.info(f"Project {repository_name} does not exist, cloning...")
            self._clone(clone_url, source_branch, path)
            return path

        if not (path / ".git").exists():
            raise SyncError(f"{path} exists but is not a git working copy")

        logger.info(f"Project {repository_name} already exists, resetting to origin/{source_branch}")
        try:
            run_git(["fetch", "--all", "--prune"], cwd=path, timeout=self.git_timeout)
            run_git(["reset", "--hard", f"origin/{source_branch}"], cwd=path, timeout=self.git_timeout)
            run_git(["clean", "-ffdx"], cwd=path, timeout=self.git_timeout)
        except GitCommandError as exc:
            # Left in place for inspection.
            raise SyncError(f"Failed to update repository {repository_name}: {exc}") from exc

        return path

    def _clone(self, clone_url: str, source_branch: str, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            run_git(
                ["clone", "--branch", source_branch, "--", clone_url, str(path)],
                timeout=self.git_timeout,
            )
        except GitCommandError as exc:
            # A half-written clone would be mistaken for a valid working copy next time.
            if path.exists():
                shutil.rmtree(path, ignore_errors=True)
            raise SyncError(f"Failed to clone repository: {exc}") from exc

        logger.info(f"Successfully cloned to {path}")
