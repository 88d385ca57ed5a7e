"""
Webhook Routes

Carrier tracking webhooks. The carrier comes from the path
(/webhooks/{carrier}) or, for carriers configured with a single URL,
from the ?carrier= query parameter.

Status codes: 400 missing carrier or undecodable body, 401 bad signature,
404 unknown carrier, 503 processing disabled, 500 anything unexpected.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from parcelgate.core.database import get_db
from parcelgate.core.exceptions import ValidationError, WebhookError
from parcelgate.services.email_provider import NotificationSender, default_sender
from parcelgate.services.notification_service import NotificationDispatcher
from parcelgate.services.tracking_repository import (
    TrackingEventRepository,
    WebhookSubscriptionRepository,
)
from parcelgate.services.webhook_gateway import WebhookGateway
from parcelgate.services.webhook_processors import ProcessorPool

logger = logging.getLogger(__name__)

router = APIRouter()


def get_processor_pool(request: Request) -> ProcessorPool:
    pool = getattr(request.app.state, "processor_pool", None)
    return pool or ProcessorPool.default()


def get_notification_sender(request: Request) -> NotificationSender:
    """
    The app-wide sender. Built once and kept on app.state when the lifespan
    has not already set one.
    """
    sender = getattr(request.app.state, "notification_sender", None)
    if sender is None:
        sender = default_sender()
        request.app.state.notification_sender = sender
    return sender


def get_gateway(
    request: Request,
    db: AsyncSession = Depends(get_db),
    processors: ProcessorPool = Depends(get_processor_pool),
) -> WebhookGateway:
    """
    Wire a gateway for one request.

    Notifications are only dispatched inline when the host registered a
    track lookup on app.state; otherwise events stay pending for the
    notification job.
    """
    events = TrackingEventRepository(db)
    dispatcher = None
    track_lookup = getattr(request.app.state, "track_lookup", None)
    if track_lookup is not None:
        dispatcher = NotificationDispatcher(events, get_notification_sender(request), track_lookup)
    return WebhookGateway(
        processors,
        events,
        dispatcher=dispatcher,
        subscriptions=WebhookSubscriptionRepository(db),
    )


async def _receive(carrier: Optional[str], request: Request, gateway: WebhookGateway):
    # Signatures cover the exact bytes received
    body = await request.body()

    try:
        result = await gateway.receive(carrier, request.headers, body)
    except ValidationError as e:
        return JSONResponse(status_code=400, content={"success": False, "message": e.message})
    except WebhookError as e:
        logger.warning(f"[WEBHOOK] Rejected {carrier} webhook: {e.message}")
        return JSONResponse(status_code=e.status_code, content={"success": False, "message": e.message})
    except Exception as e:
        logger.error(f"[WEBHOOK] Error processing {carrier} webhook: {e}")
        return JSONResponse(status_code=500, content={"success": False, "message": "Internal error"})

    return {"success": True, "events_processed": result.events_processed}


@router.post("/webhooks/{carrier}")
async def handle_carrier_webhook(
    carrier: str,
    request: Request,
    gateway: WebhookGateway = Depends(get_gateway),
):
    """Receive a tracking webhook for the carrier named in the path."""
    return await _receive(carrier, request, gateway)


@router.post("/webhooks")
async def handle_webhook(
    request: Request,
    carrier: Optional[str] = None,
    gateway: WebhookGateway = Depends(get_gateway),
):
    return await _receive(carrier, request, gateway)
