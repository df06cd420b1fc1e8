"""Pydantic models for the review agent's final metrics block."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class AgentMetricsBlock(BaseModel):
    """
    The fenced JSON block the agent prints at the end of its review.

    Types are strict (``"true"`` is not a bool, ``"3"`` is not an int); absent
    fields fall back to the conservative defaults.
    """

    model_config = ConfigDict(strict=True, extra="ignore", populate_by_name=True)

    is_lgtm: bool = Field(default=False, alias="isLgtm")
    issue_count: int = Field(default=0, ge=0, alias="issueCount")
    is_review_failed: bool = Field(default=False, alias="isReviewFailed")
    failed_review_reason: Optional[str] = Field(default=None, alias="failedReviewReason")
