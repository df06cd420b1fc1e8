import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from api.dependencies import (
    EVENT_HEADER,
    check_workspace,
    get_metrics_recorder,
    get_review_queue,
    get_settings,
    verify_webhook_signature,
)
from api.models.schemas import (
    WebhookAcceptedResponse,
    WebhookIgnoredResponse,
    extract_workspace,
    parse_json_body,
    validate_pull_request_payload,
)

logger = logging.getLogger(__name__)

router = APIRouter()

SUPPORTED_PROVIDERS = {"bitbucket"}
CREATED_EVENT = "pullrequest:created"
UPDATED_EVENT = "pullrequest:updated"


def should_process_event(event_key: str, process_only_created: bool) -> bool:
    if process_only_created:
        return event_key == CREATED_EVENT
    return event_key in (CREATED_EVENT, UPDATED_EVENT)


@router.post("/webhook/{provider}/pr")
async def pull_request_webhook(
    provider: str,
    request: Request,
    body: bytes = Depends(verify_webhook_signature),
):
    """
    Receive a pull request webhook and queue it for review.

    Order of checks: signature (401), workspace allow-list (403), event
    filter (200, ignored), payload schema (400). The response is sent as
    soon as the job is queued; the review itself runs in the background.
    """
    if provider not in SUPPORTED_PROVIDERS:
        raise HTTPException(status_code=404, detail=f"Unsupported provider: {provider}")

    settings = get_settings(request)
    payload = parse_json_body(body)
    check_workspace(extract_workspace(payload), settings)

    event_key = request.headers.get(EVENT_HEADER, "")
    logger.info(f"Received {provider} PR webhook: {event_key}")

    if not should_process_event(event_key, settings.process_only_created):
        reason = "only processing PR creation" if settings.process_only_created else "not a PR create/update"
        logger.info(f"Event ignored ({reason}): {event_key}")
        return WebhookIgnoredResponse(message=f"Event ignored ({reason})", event=event_key)

    review_request = validate_pull_request_payload(payload)

    get_metrics_recorder(request).record_pr_event(review_request.repository_name, event_key)
    position = get_review_queue(request).enqueue(review_request)

    return WebhookAcceptedResponse(
        message="Webhook received successfully",
        pr_title=review_request.title,
        queue_position=position,
    )
