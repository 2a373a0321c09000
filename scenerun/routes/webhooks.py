"""Inbound webhooks from the render pipeline."""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.orm import Session

from scenerun.database import get_db
from scenerun.dependencies import get_context
from scenerun.errors import NotFoundError, UnauthorizedError, ValidationError
from scenerun.models.video_build import BUILD_STATUS_RANK, FINAL_BUILD_STATUSES, VideoBuild
from scenerun.orchestrator.context import OrchestratorContext
from scenerun.schemas.webhook import VideoBuildEvent, WebhookAck
from scenerun.services.signatures import verify_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/video-build", response_model=WebhookAck)
async def video_build_webhook(
    request: Request,
    x_webhook_signature: Optional[str] = Header(default=None),
    x_webhook_timestamp: Optional[str] = Header(default=None),
    x_webhook_event_id: Optional[str] = Header(default=None),
    ctx: OrchestratorContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    """Apply a signed build status update to the local mirror."""
    body = await request.body()
    secret = ctx.settings.VIDEO_BUILD_WEBHOOK_SECRET
    if not secret:
        raise UnauthorizedError("Webhook secret not configured")
    if not verify_signature(
        secret,
        x_webhook_signature,
        x_webhook_timestamp,
        body,
        window_seconds=ctx.settings.WEBHOOK_REPLAY_WINDOW_SECONDS,
    ):
        logger.warning(f"Rejected video-build webhook (event={x_webhook_event_id}, ts={x_webhook_timestamp})")
        raise UnauthorizedError("Invalid or expired signature")

    try:
        event = VideoBuildEvent(**json.loads(body))
    except (ValueError, TypeError) as e:
        raise ValidationError("video_build_id and status required") from e

    build = db.get(VideoBuild, event.video_build_id)
    if build is None:
        raise NotFoundError(f"Video build {event.video_build_id} not found")

    previous = build.status
    if x_webhook_event_id and build.last_event_id == x_webhook_event_id:
        return WebhookAck(message="Already processed", previous_status=previous, status=previous)
    if previous in FINAL_BUILD_STATUSES:
        # Forward-only: a finished build never moves again
        message = "Already processed" if previous == event.status else f"Ignored; build already {previous}"
        return WebhookAck(message=message, previous_status=previous, status=previous)
    if BUILD_STATUS_RANK.get(event.status, 0) < BUILD_STATUS_RANK.get(previous, 0):
        logger.info(f"Video build {build.id}: ignored late {event.status} event (already {previous})")
        return WebhookAck(message=f"Ignored; build already {previous}", previous_status=previous, status=previous)

    build.status = event.status
    if event.progress_percent is not None:
        build.progress_percent = event.progress_percent
    if event.download_url:
        build.download_url = event.download_url
    if event.error_message or event.error_code:
        build.error_message = ": ".join(p for p in (event.error_code, event.error_message) if p)
    if x_webhook_event_id:
        build.last_event_id = x_webhook_event_id
    db.commit()

    logger.info(f"Video build {build.id} updated: {previous} -> {event.status} (event={x_webhook_event_id})")
    return WebhookAck(message="Updated", previous_status=previous, status=event.status)
