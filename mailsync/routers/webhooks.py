"""Webhooks router - Microsoft Graph mail change notifications."""

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from mailsync.core.deps import get_sync_queue
from mailsync.schemas.mailbox import WebhookAcceptedResponse
from mailsync.services.notification_queue import NotificationCoalescingQueue
from mailsync.services.subscription_service import decode_client_state

router = APIRouter()
logger = logging.getLogger(__name__)

MAX_PAYLOAD_BYTES = 1_000_000


@router.post("/graph/mail")
async def receive_graph_mail_notification(
    request: Request,
    validation_token: str | None = Query(None, alias="validationToken"),
    queue: NotificationCoalescingQueue = Depends(get_sync_queue),
):
    """
    Receive Graph change notifications for subscribed mailboxes.

    - Subscription creation: Graph POSTs ?validationToken=... which must be
      echoed back as PLAIN TEXT.
    - Notifications: each event's clientState maps to a user; the user is
      enqueued for a debounced sync and we return 202 immediately.
    """
    # 1. Subscription validation handshake
    if validation_token is not None:
        return PlainTextResponse(validation_token)

    # 2. Check payload size
    body = await request.body()
    if len(body) > MAX_PAYLOAD_BYTES:
        raise HTTPException(413, "Payload too large")

    # 3. Parse payload
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        raise HTTPException(400, "Invalid JSON")
    if not isinstance(data, dict) or not isinstance(data.get("value"), list):
        raise HTTPException(400, "Invalid notification payload")

    # 4. Enqueue one event per notification
    accepted = 0
    rejected = 0
    for event in data["value"]:
        if not isinstance(event, dict):
            rejected += 1
            continue
        user_id = decode_client_state(event.get("clientState"))
        if not user_id:
            rejected += 1
            logger.warning(
                "Graph notification with unverifiable clientState (subscription=%s)",
                event.get("subscriptionId"),
            )
            continue
        queue.enqueue(
            user_id,
            {
                "subscription_id": event.get("subscriptionId"),
                "change_type": event.get("changeType"),
                "resource": event.get("resource"),
            },
        )
        accepted += 1

    return JSONResponse(
        status_code=202,
        content=WebhookAcceptedResponse(accepted=accepted, rejected=rejected).model_dump(),
    )
