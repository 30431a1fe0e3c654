"""Webhook router -- receives GitHub repository events."""

import json
import logging

from fastapi import APIRouter, HTTPException, Request, status

from autodidact.api.deps import client_ip
from autodidact.api.rate_limit import webhook_limiter
from autodidact.config import settings
from autodidact.errors import AuthError, BadRequestError
from autodidact.services import webhook_service
from autodidact.webhooks import verify_github_signature

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


@router.post("/webhooks/github")
async def github_webhook(request: Request) -> dict:
    """Receive a GitHub webhook delivery.

    Rate-limited, then the ``X-Hub-Signature-256`` header is checked before
    the payload is handed to the webhook service.
    """
    if not webhook_limiter.is_allowed(client_ip(request)):
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Rate limit exceeded",
        )

    event_type = request.headers.get("X-GitHub-Event", "")
    if not event_type:
        raise BadRequestError("Missing X-GitHub-Event header")

    body = await request.body()
    signature = request.headers.get("X-Hub-Signature-256", "")
    if not verify_github_signature(body, signature, settings.GITHUB_WEBHOOK_SECRET):
        raise AuthError("Invalid webhook signature")

    if event_type == "ping":
        return {"status": "pong"}

    try:
        payload = json.loads(body)
    except ValueError:
        raise BadRequestError("Payload is not valid JSON")
    if not isinstance(payload, dict):
        raise BadRequestError("Payload must be a JSON object")

    try:
        return await webhook_service.handle_event(event_type, payload)
    except Exception:
        logger.exception("Error processing %s webhook", event_type)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal error processing webhook",
        )
