import asyncio
import logging
from pathlib import Path

from common.diff_parser import summarize_diff
from common.errors import DiffError
from common.job_models import DiffResult
from workspace.git_client import GitCommandError, run_git

logger = logging.getLogger(__name__)


class DiffExtractor:
    """
    Computes the change set a pull request introduces.

    The diff always runs from merge-base(destination, source) to the source
    tip, so commits merged into the destination after the PR was opened are
    not attributed to the PR author.
    """

    def __init__(self, size_threshold_bytes: int, git_timeout: float = 300):
        self.size_threshold_bytes = size_threshold_bytes
        self.git_timeout = git_timeout

    async def diff(self, working_copy: Path, source_branch: str, destination_branch: str) -> DiffResult:
        return await asyncio.to_thread(self._diff_sync, working_copy, source_branch, destination_branch)

    def _diff_sync(self, working_copy: Path, source_branch: str, destination_branch: str) -> DiffResult:
        logger.info(f"Getting diff from merge-base for {source_branch} -> {destination_branch}")
        source_ref = f"origin/{source_branch}"
        destination_ref = f"origin/{destination_branch}"

        try:
            run_git(
                ["fetch", "origin", source_branch, destination_branch],
                cwd=working_copy,
                timeout=self.git_timeout,
            )
        except GitCommandError as exc:
            raise DiffError(f"Failed to fetch {source_branch} and {destination_branch}: {exc}") from exc

        merge_base_found = True
        try:
            merge_base = run_git(
                ["merge-base", destination_ref, source_ref],
                cwd=working_copy,
                timeout=self.git_timeout,
            ).strip()
            logger.debug(f"Merge base found: {merge_base}")
        except GitCommandError as exc:
            logger.warning(
                f"Could not find merge-base, using destination branch as base (degraded diff): {exc}"
            )
            merge_base = destination_ref
            merge_base_found = False

        try:
            diff_text = run_git(
                ["diff", f"{merge_base}..{source_ref}"],
                cwd=working_copy,
                timeout=self.git_timeout,
            )
        except GitCommandError as exc:
            raise DiffError(f"Failed to get diff from merge-base: {exc}") from exc

        size = len(diff_text.encode("utf-8"))
        files = summarize_diff(diff_text)
        logger.info(
            f"Diff size: {size / 1024:.2f} KB across {len(files)} files "
            f"(+{sum(f.lines_added for f in files)}/-{sum(f.lines_removed for f in files)})"
        )

        return DiffResult(
            diff_text=diff_text,
            size_in_bytes=size,
            merge_base_commit=merge_base,
            merge_base_found=merge_base_found,
            size_too_large=size > self.size_threshold_bytes,
        )
