"""Error taxonomy for webhook ingress and the review pipeline."""

from typing import Optional


class ReviewBotError(Exception):
    """Base class for all errors raised by the service."""


# ── Ingress errors (surfaced synchronously in the HTTP response) ──────────


class SchemaError(ReviewBotError):
    """Webhook body is malformed; ``errors`` lists every violated field."""

    def __init__(self, errors: list[dict[str, str]]):
        self.errors = errors
        fields = ", ".join(e["field"] for e in errors) or "body"
        super().__init__(f"Invalid webhook payload: {fields}")


class AuthError(ReviewBotError):
    """Missing or invalid webhook signature."""


class ForbiddenError(ReviewBotError):
    """Webhook sent from a workspace that is not on the allow-list."""


# ── Pipeline errors (caught at the worker boundary, reflected in metrics) ─


class ReviewPipelineError(ReviewBotError):
    error_type = "unknown"


class SyncError(ReviewPipelineError):
    """Clone, fetch or reset of a working copy failed."""

    error_type = "git_error"


class DiffError(SyncError):
    """The merge-base diff could not be computed."""


class TemplateError(ReviewPipelineError):
    """Prompt template missing or invalid."""

    error_type = "template_error"


class ReviewTimeoutError(ReviewPipelineError):
    """The review agent exceeded its time budget and was terminated."""

    error_type = "timeout"

    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Review agent timed out after {timeout_seconds:g}s. "
            "The PR might be too large or complex."
        )


class ProcessError(ReviewPipelineError):
    """The review agent exited with a non-zero status."""

    error_type = "unknown"

    def __init__(
        self,
        message: str,
        *,
        exit_status: Optional[int] = None,
        stdout: str = "",
        stderr: str = "",
    ):
        self.exit_status = exit_status
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(message)
