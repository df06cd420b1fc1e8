import hashlib
import hmac
import logging
from typing import Optional

from fastapi import Request

from api.services.review_queue import ReviewQueue
from common.config import Settings
from common.errors import AuthError, ForbiddenError
from telemetry.metrics import MetricsRecorder

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Hub-Signature"
EVENT_HEADER = "X-Event-Key"


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_review_queue(request: Request) -> ReviewQueue:
    return request.app.state.review_queue


def get_metrics_recorder(request: Request) -> MetricsRecorder:
    return request.app.state.metrics


def compute_signature(body: bytes, secret: str) -> str:
    return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """Constant-time check of a ``sha256=<hex>`` HMAC over the raw body."""
    if not signature:
        return False
    expected = compute_signature(body, secret)
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))


async def verify_webhook_signature(request: Request) -> bytes:
    """Authenticate the webhook and return the raw body it was signed over."""
    settings = get_settings(request)
    body = await request.body()

    if not settings.bitbucket_webhook_secret:
        logger.warning("BITBUCKET_WEBHOOK_SECRET not configured - signature validation disabled")
        return body

    signature = request.headers.get(SIGNATURE_HEADER)
    if not signature:
        logger.warning(f"Webhook rejected: Missing {SIGNATURE_HEADER} header")
        raise AuthError("Missing webhook signature")

    if not verify_signature(body, signature, settings.bitbucket_webhook_secret):
        logger.warning("Webhook rejected: Invalid signature")
        raise AuthError("Invalid webhook signature")

    logger.info("Webhook signature verified")
    return body


def check_workspace(workspace: Optional[str], settings: Settings) -> None:
    allowed = settings.allowed_workspaces
    if not allowed:
        logger.warning("ALLOWED_WORKSPACE not configured - accepting webhooks from any workspace")
        return

    if workspace not in allowed:
        logger.warning(
            f'Webhook rejected: Unauthorized workspace "{workspace}" (expected one of {allowed})'
        )
        raise ForbiddenError(f"Webhooks only accepted from {', '.join(allowed)} workspace")

    logger.info(f"Workspace verified: {workspace}")
