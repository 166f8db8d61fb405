"""Twitch EventSub webhook endpoint.

``POST /webhooks/twitch`` answers:

- ``200`` with the challenge as ``text/plain`` for a verification handshake,
- ``200`` with an empty body for accepted notifications and revocations,
- ``400`` when EventSub headers are missing or the payload is malformed,
- ``401`` when the signature does not match or the message is stale.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, Request, Response

from stream_speculator.api.dependencies import get_context
from stream_speculator.context import AppContext
from stream_speculator.core.exceptions import WebhookVerificationError
from stream_speculator.webhooks import MESSAGE_ID_HEADER, MESSAGE_TYPE_HEADER, process_webhook

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["webhooks"])


@router.post("/webhooks/twitch")
async def twitch_webhook(request: Request, ctx: AppContext = Depends(get_context)) -> Response:
    """Receive one EventSub message.  The raw body is needed for the signature."""
    body = await request.body()
    try:
        reply = await process_webhook(ctx, request.headers, body)
    except WebhookVerificationError as exc:
        logger.warning(
            "webhook_rejected",
            status_code=exc.status_code,
            reason=str(exc),
            message_id=request.headers.get(MESSAGE_ID_HEADER),
            message_type=request.headers.get(MESSAGE_TYPE_HEADER),
        )
        return Response(status_code=exc.status_code)
    return Response(content=reply.content, status_code=reply.status_code, media_type=reply.media_type)
