import json
import logging
import re

from pydantic import ValidationError

from common.job_models import ReviewVerdict
from reviewagent.models.agent_schemas import AgentMetricsBlock

logger = logging.getLogger(__name__)

_JSON_FENCE = re.compile(r"```json[ \t]*\r?\n(.*?)\r?\n[ \t]*```", re.DOTALL)


def extract_last_json_block(output: str) -> str | None:
    """Return the body of the last ```json fenced block, or None."""
    blocks = _JSON_FENCE.findall(output)
    return blocks[-1].strip() if blocks else None


def _unknown_verdict(output: str, duration_seconds: float, warning: str) -> ReviewVerdict:
    logger.warning(f"Could not interpret review output: {warning}")
    return ReviewVerdict(
        is_approved=False,
        issue_count=0,
        is_failed=False,
        raw_output=output,
        duration_seconds=duration_seconds,
        interpretation_warning=warning,
    )


def interpret(output: str, duration_seconds: float = 0.0) -> ReviewVerdict:
    """
    Turn the agent's captured stdout into a ReviewVerdict.

    Never raises: a missing or malformed metrics block yields an unknown
    (not approved, zero issues, not failed) verdict carrying a warning.
    An agent-reported failure wins over the LGTM and issue fields.
    """
    block = extract_last_json_block(output)
    if block is None:
        return _unknown_verdict(output, duration_seconds, "no JSON metrics block found in agent output")

    try:
        data = json.loads(block)
    except json.JSONDecodeError as exc:
        return _unknown_verdict(output, duration_seconds, f"metrics block is not valid JSON: {exc}")

    if not isinstance(data, dict):
        return _unknown_verdict(output, duration_seconds, "metrics block is not a JSON object")

    try:
        metrics = AgentMetricsBlock.model_validate(data)
    except ValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
        return _unknown_verdict(output, duration_seconds, f"metrics block has invalid fields: {fields}")

    if metrics.is_review_failed:
        logger.warning(f"Agent reported a failed review: {metrics.failed_review_reason or 'no reason given'}")
        return ReviewVerdict(
            is_approved=False,
            issue_count=metrics.issue_count,
            is_failed=True,
            failure_reason=metrics.failed_review_reason,
            raw_output=output,
            duration_seconds=duration_seconds,
        )

    logger.info(f"Parsed metrics from JSON: isLgtm={metrics.is_lgtm}, issueCount={metrics.issue_count}")
    return ReviewVerdict(
        is_approved=metrics.is_lgtm,
        issue_count=metrics.issue_count,
        is_failed=False,
        raw_output=output,
        duration_seconds=duration_seconds,
    )
