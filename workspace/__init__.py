"""
Working copy management

Clones and hard-resets repositories on disk and extracts the merge-base diff
of a pull request.
"""

from .diff_extractor import DiffExtractor
from .git_client import GitCommandError, run_git
from .synchronizer import RepositorySynchronizer

__all__ = ["DiffExtractor", "GitCommandError", "RepositorySynchronizer", "run_git"]
