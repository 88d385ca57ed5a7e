"""
Notification collaborators

The dispatcher fills in template variables; sending and order lookup belong
to the host. SendGridSender is the default sender when an API key is
configured, LoggingSender otherwise.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import httpx

from parcelgate.core.config import settings

logger = logging.getLogger(__name__)


@dataclass
class SendResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class TrackContext:
    """What the host knows about the shipment behind a track id."""
    track_id: int
    order_increment_id: str
    customer_email: str
    customer_name: Optional[str] = None
    store_id: Optional[int] = None
    pod_photo_opt_out: bool = False


class TrackLookup(Protocol):
    async def get_track_context(self, track_id: int) -> Optional[TrackContext]:
        ...


class NotificationSender(Protocol):
    async def send(
        self,
        template: str,
        to_email: str,
        to_name: Optional[str],
        variables: Dict[str, Any],
        sender: str,
        store_id: Optional[int] = None,
    ) -> SendResult:
        ...


class LoggingSender:
    """Logs instead of sending. Used when no email provider is configured."""

    async def send(
        self,
        template: str,
        to_email: str,
        to_name: Optional[str],
        variables: Dict[str, Any],
        sender: str,
        store_id: Optional[int] = None,
    ) -> SendResult:
        logger.info(
            f"[EMAIL] Would send '{template}' to {to_email} "
            f"({variables.get('tracking_number')}: {variables.get('event_type_label')})"
        )
        return SendResult(success=True)


class SendGridSender:
    """SendGrid dynamic-template sender."""

    BASE_URL = "https://api.sendgrid.com/v3"

    def __init__(self, http_transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_key = settings.SENDGRID_API_KEY
        self.from_email = settings.SENDGRID_FROM_EMAIL
        self.from_name = settings.SENDGRID_FROM_NAME
        self._http_transport = http_transport
        self._http_client: Optional[httpx.AsyncClient] = None

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=30.0,
                transport=self._http_transport,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
            )
        return self._http_client

    async def close(self):
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    async def send(
        self,
        template: str,
        to_email: str,
        to_name: Optional[str],
        variables: Dict[str, Any],
        sender: str,
        store_id: Optional[int] = None,
    ) -> SendResult:
        if not self.api_key:
            logger.warning("SendGrid API key not configured")
            return SendResult(success=False, error="Email not configured")

        recipient = {"email": to_email}
        if to_name:
            recipient["name"] = to_name
        payload = {
            "personalizations": [{
                "to": [recipient],
                "dynamic_template_data": variables,
            }],
            "from": {"email": self.from_email, "name": self.from_name or sender},
            "template_id": template,
            "categories": [sender],
        }

        http = await self._get_http_client()
        try:
            resp = await http.post(f"{self.BASE_URL}/mail/send", json=payload)
        except httpx.HTTPError as e:
            return SendResult(success=False, error=str(e))

        if resp.status_code in (200, 202):
            return SendResult(success=True, message_id=resp.headers.get("X-Message-Id"))
        return SendResult(success=False, error=resp.text)


def default_sender() -> NotificationSender:
    if settings.SENDGRID_API_KEY:
        return SendGridSender()
    return LoggingSender()


async def close_sender(sender: Optional[NotificationSender]) -> None:
    """Release a sender's HTTP pool, if it keeps one."""
    close = getattr(sender, "close", None)
    if close is not None:
        await close()
