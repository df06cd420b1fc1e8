from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ReviewStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class ReviewRequest(BaseModel):
    """A validated pull request waiting for review. Immutable once enqueued."""

    model_config = ConfigDict(frozen=True)

    repository_name: str
    clone_url: str
    source_branch: str
    destination_branch: str
    title: str
    description: str = ""
    author: str
    pull_request_url: str


@dataclass(frozen=True)
class DiffResult:
    """Merge-base diff of a pull request, computed fresh for every job."""

    diff_text: str
    size_in_bytes: int
    merge_base_commit: str
    merge_base_found: bool = True
    size_too_large: bool = False


@dataclass(frozen=True)
class AgentRunResult:
    stdout: str
    stderr: str
    exit_status: int
    duration_seconds: float
    stdout_truncated: bool = False


class ReviewVerdict(BaseModel):
    """Parsed outcome of one review run."""

    is_approved: bool = False
    issue_count: int = Field(default=0, ge=0)
    is_failed: bool = False
    failure_reason: Optional[str] = None
    raw_output: str = ""
    duration_seconds: float = 0.0
    interpretation_warning: Optional[str] = None
