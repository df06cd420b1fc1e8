"""Thin wrapper around the ``git`` executable.

Every call passes a discrete argument vector (never a shell string) and runs
non-interactively so a credential prompt can't hang the worker.
"""

import logging
import os
import subprocess
from pathlib import Path
from typing import Optional, Sequence, Union

logger = logging.getLogger(__name__)


class GitCommandError(Exception):
    """A git invocation failed or timed out."""

    def __init__(self, args: Sequence[str], message: str, stderr: str = ""):
        self.args_vector = list(args)
        self.stderr = stderr
        super().__init__(message)


def run_git(
    args: Sequence[str],
    *,
    cwd: Optional[Union[str, Path]] = None,
    timeout: float = 300,
) -> str:
    """Run ``git <args>`` and return stdout. Raises GitCommandError on failure."""
    cmd = ["git", *args]
    logger.debug("Running %s (cwd=%s)", " ".join(cmd), cwd)

    try:
        result = subprocess.run(
            cmd,
            cwd=str(cwd) if cwd is not None else None,
            capture_output=True,
            text=True,
            timeout=timeout,
            env={**os.environ, "GIT_TERMINAL_PROMPT": "0"},
        )
    except subprocess.TimeoutExpired as exc:
        raise GitCommandError(cmd, f"git {args[0]} timed out after {timeout}s") from exc
    except OSError as exc:
        raise GitCommandError(cmd, f"git {args[0]} could not be started: {exc}") from exc

    if result.returncode != 0:
        stderr = result.stderr.strip()
        raise GitCommandError(
            cmd,
            f"git {args[0]} exited with code {result.returncode}: {stderr}",
            stderr=stderr,
        )

    return result.stdout
