"""
PR Review Service
=================
Runs one queued review end to end:
  1. Sync the working copy to origin/<source branch>
  2. Compute the merge-base diff against the destination branch
  3. Render the repository's prompt template (diff or large-diff instructions)
  4. Run the review agent inside the working copy
  5. Interpret the agent's final JSON metrics block
  6. Record the outcome

Every failure is caught here, logged and counted; nothing propagates to the
queue worker.
"""

import logging
import time

from common.config import Settings
from common.errors import ReviewPipelineError
from common.job_models import ReviewRequest, ReviewStatus, ReviewVerdict
from reviewagent.interpreter import interpret
from reviewagent.invoker import ReviewInvoker
from reviewagent.prompts import TemplateManager
from telemetry.metrics import MetricsRecorder
from workspace.diff_extractor import DiffExtractor
from workspace.synchronizer import RepositorySynchronizer

logger = logging.getLogger(__name__)

AGENT_REPORTED_FAILURE = "review_failed"


class ReviewPipeline:
    def __init__(
        self,
        *,
        synchronizer: RepositorySynchronizer,
        diff_extractor: DiffExtractor,
        template_manager: TemplateManager,
        invoker: ReviewInvoker,
        recorder: MetricsRecorder,
        model: str,
        timeout_seconds: float,
    ):
        self.synchronizer = synchronizer
        self.diff_extractor = diff_extractor
        self.template_manager = template_manager
        self.invoker = invoker
        self.recorder = recorder
        self.model = model
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings, recorder: MetricsRecorder) -> "ReviewPipeline":
        return cls(
            synchronizer=RepositorySynchronizer(settings.projects_dir, settings.git_timeout_seconds),
            diff_extractor=DiffExtractor(settings.diff_size_threshold_bytes, settings.git_timeout_seconds),
            template_manager=TemplateManager(settings.templates_dir, settings.template_config_path),
            invoker=ReviewInvoker(
                settings.claude_command,
                shell=settings.agent_shell,
                path=settings.agent_path,
                home=settings.agent_home,
                passthrough_env=settings.agent_env_passthrough_names,
                mcp_config_path=settings.mcp_config_path,
                max_buffer_bytes=settings.claude_max_buffer_bytes,
                terminate_grace_seconds=settings.claude_terminate_grace_seconds,
            ),
            recorder=recorder,
            model=settings.claude_model,
            timeout_seconds=settings.claude_timeout_seconds,
        )

    async def review(self, request: ReviewRequest) -> ReviewVerdict:
        """Run the review and return the verdict. Raises ReviewPipelineError subclasses."""
        logger.info(
            f"Starting review pipeline for {request.repository_name}: {request.title} "
            f"by {request.author} ({request.source_branch} -> {request.destination_branch})"
        )

        path = await self.synchronizer.ensure(
            request.repository_name, request.clone_url, request.source_branch
        )
        diff = await self.diff_extractor.diff(path, request.source_branch, request.destination_branch)
        prompt = self.template_manager.get_prompt_for_pr(request, diff)

        result = await self.invoker.invoke(prompt, path, self.model, self.timeout_seconds)
        return interpret(result.stdout, result.duration_seconds)

    async def __call__(self, request: ReviewRequest) -> None:
        repository = request.repository_name
        started = time.monotonic()

        try:
            verdict = await self.review(request)
        except ReviewPipelineError as exc:
            self._record_failure(repository, exc.error_type, started)
            logger.error(f"Review of {repository} failed ({exc.error_type}): {exc}")
            return
        except Exception:
            self._record_failure(repository, "unknown", started)
            logger.exception(f"Review of {repository} failed unexpectedly")
            return

        if verdict.is_failed:
            self._record_failure(repository, AGENT_REPORTED_FAILURE, started)
            logger.error(f"Agent reported failed review for {repository}: {verdict.failure_reason}")
            return

        self.recorder.record_success(repository)
        self.recorder.record_duration(repository, ReviewStatus.SUCCESS.value, time.monotonic() - started)
        if verdict.is_approved:
            self.recorder.record_approval(repository)
        self.recorder.record_issues(repository, verdict.issue_count)

        outcome = "LGTM" if verdict.is_approved else f"{verdict.issue_count} issue(s)"
        if verdict.interpretation_warning:
            outcome = "unknown outcome"
        logger.info(f"Review of {repository} completed: {outcome}")

    def _record_failure(self, repository: str, error_type: str, started: float) -> None:
        self.recorder.record_failure(repository, error_type)
        self.recorder.record_duration(repository, ReviewStatus.FAILURE.value, time.monotonic() - started)
