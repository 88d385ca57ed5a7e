"""
Tests for tracking notifications and email senders.
"""
import json
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from parcelgate.core.config import settings
from parcelgate.services.email_provider import (
    LoggingSender,
    SendGridSender,
    SendResult,
    TrackContext,
    default_sender,
)
from parcelgate.services.notification_service import (
    DispatchOutcome,
    NotificationDispatcher,
    format_event_timestamp,
)

from tests.conftest import make_tracking_event

CONTEXT = TrackContext(
    track_id=42,
    order_increment_id="100000123",
    customer_email="jane@example.com",
    customer_name="Jane Doe",
    store_id=1,
)


def notify_config(**overrides):
    values = {
        "TRACKING_NOTIFICATIONS_ENABLED": True,
        "TRACKING_NOTIFICATION_EVENTS": [],
        "POD_PHOTOS_ENABLED": False,
    }
    values.update(overrides)
    return settings.model_copy(update=values)


def make_lookup(context=CONTEXT):
    lookup = MagicMock()
    lookup.get_track_context = AsyncMock(return_value=context)
    return lookup


def make_sender(result=None):
    sender = MagicMock()
    sender.send = AsyncMock(return_value=result or SendResult(success=True, message_id="m-1"))
    return sender


@pytest.fixture
def sender():
    return make_sender()


@pytest.fixture
def dispatcher(events_repo, sender):
    return NotificationDispatcher(events_repo, sender, make_lookup(), config=notify_config())


class TestFormatting:
    def test_event_timestamp(self):
        assert format_event_timestamp(datetime(2024, 3, 1, 14, 0)) == "March 1, 2024 at 2:00 PM"
        assert format_event_timestamp(datetime(2024, 12, 25, 0, 5)) == "December 25, 2024 at 12:05 AM"

    def test_build_variables(self, dispatcher):
        variables = dispatcher.build_variables(make_tracking_event(), CONTEXT)

        assert variables["customer_name"] == "Jane Doe"
        assert variables["carrier_name"] == "UPS"
        assert variables["event_type"] == "delivered"
        assert variables["event_type_label"] == "Delivered"
        assert variables["event_timestamp"] == "March 5, 2024 at 2:30 PM"
        assert variables["location"] == "NEW YORK, NY, US"
        assert variables["tracking_url"] == "https://www.ups.com/track?tracknum=1Z999AA10123456784"
        assert variables["signature_name"] == "DOE"
        assert variables["delivery_photo_url"] is None

    def test_customer_name_fallback(self, dispatcher):
        context = TrackContext(track_id=42, order_increment_id="1", customer_email="a@b.c")
        assert dispatcher.build_variables(make_tracking_event(), context)["customer_name"] == "Customer"

    def test_unknown_event_type_label(self, dispatcher):
        variables = dispatcher.build_variables(make_tracking_event(event_type="weird"), CONTEXT)
        assert variables["event_type"] == "unknown"
        assert variables["event_type_label"] == "Unknown"


class TestDeliveryPhotos:
    """Test proof-of-delivery photo gating."""

    def _dispatcher(self, events_repo, **config):
        return NotificationDispatcher(events_repo, make_sender(), make_lookup(), config=notify_config(**config))

    def test_included_when_enabled(self, events_repo):
        dispatcher = self._dispatcher(events_repo, POD_PHOTOS_ENABLED=True)
        assert dispatcher.delivery_photo_url(make_tracking_event(), CONTEXT) == "https://ups.example.com/pod/1.jpg"

    def test_customer_opt_out(self, events_repo):
        dispatcher = self._dispatcher(events_repo, POD_PHOTOS_ENABLED=True)
        context = TrackContext(track_id=42, order_increment_id="1", customer_email="a@b.c", pod_photo_opt_out=True)
        assert dispatcher.delivery_photo_url(make_tracking_event(), context) is None

    def test_no_image(self, events_repo):
        dispatcher = self._dispatcher(events_repo, POD_PHOTOS_ENABLED=True)
        assert dispatcher.delivery_photo_url(make_tracking_event(image_url=None), CONTEXT) is None


class TestShouldNotify:
    def test_requires_track_id(self, dispatcher):
        assert dispatcher.should_notify(make_tracking_event(track_id=None)) is False

    def test_disabled_globally(self, events_repo, sender):
        dispatcher = NotificationDispatcher(
            events_repo, sender, make_lookup(), config=notify_config(TRACKING_NOTIFICATIONS_ENABLED=False)
        )
        assert dispatcher.should_notify(make_tracking_event()) is False

    def test_event_allowlist(self, events_repo, sender):
        dispatcher = NotificationDispatcher(
            events_repo, sender, make_lookup(), config=notify_config(TRACKING_NOTIFICATION_EVENTS=["delivered"])
        )
        assert dispatcher.should_notify(make_tracking_event()) is True
        assert dispatcher.should_notify(make_tracking_event(event_type="in_transit")) is False


class TestQueueNotification:
    """Test inline notification after a webhook event is stored."""

    @pytest.mark.asyncio
    async def test_sent_and_marked(self, dispatcher, events_repo, sender):
        event = make_tracking_event()
        events_repo.rows.append(event)

        await dispatcher.queue_notification(event)

        sender.send.assert_awaited_once()
        args, kwargs = sender.send.call_args
        assert args[0] == "tracking_update"
        assert args[1] == "jane@example.com"
        assert kwargs["store_id"] == 1
        assert event.email_sent is True

    @pytest.mark.asyncio
    async def test_no_track_id_never_sends(self, dispatcher, events_repo, sender):
        """Test that an unlinked event sends nothing and stays pending."""
        event = make_tracking_event(track_id=None)

        await dispatcher.queue_notification(event)

        sender.send.assert_not_awaited()
        assert events_repo.marked == []

    @pytest.mark.asyncio
    async def test_failed_send_stays_pending(self, events_repo):
        sender = make_sender(SendResult(success=False, error="mailbox full"))
        dispatcher = NotificationDispatcher(events_repo, sender, make_lookup(), config=notify_config())

        await dispatcher.queue_notification(make_tracking_event())

        assert events_repo.marked == []

    @pytest.mark.asyncio
    async def test_missing_order_is_marked(self, events_repo, sender):
        """An event whose order is gone is skipped once and not retried."""
        dispatcher = NotificationDispatcher(events_repo, sender, make_lookup(None), config=notify_config())
        event = make_tracking_event()

        assert await dispatcher.dispatch(event) == DispatchOutcome.SKIPPED
        await dispatcher.queue_notification(event)

        sender.send.assert_not_awaited()
        assert events_repo.marked == [1]

    @pytest.mark.asyncio
    async def test_sender_exception_swallowed(self, events_repo):
        sender = MagicMock()
        sender.send = AsyncMock(side_effect=RuntimeError("smtp down"))
        dispatcher = NotificationDispatcher(events_repo, sender, make_lookup(), config=notify_config())

        await dispatcher.queue_notification(make_tracking_event())

        assert events_repo.marked == []


class TestProcessPending:
    """Test the retry sweep over unsent events."""

    @pytest.mark.asyncio
    async def test_marks_every_attempted_event(self, events_repo):
        """Sent, failed and unlinked events are all marked after one attempt."""
        results = [SendResult(success=True), SendResult(success=False, error="bounce")]
        sender = MagicMock()
        sender.send = AsyncMock(side_effect=results)
        dispatcher = NotificationDispatcher(events_repo, sender, make_lookup(), config=notify_config())
        events_repo.rows.extend([
            make_tracking_event(id=1),
            make_tracking_event(id=2, event_code="OT", event_type="in_transit"),
            make_tracking_event(id=3, event_code="MP", track_id=None),
            make_tracking_event(id=4, event_code="XX", email_sent=True),
        ])

        processed = await dispatcher.process_pending()

        assert processed == 3
        assert events_repo.marked == [1, 2, 3]
        assert sender.send.await_count == 2
        assert await events_repo.get_pending_email_events() == []

    @pytest.mark.asyncio
    async def test_exception_leaves_event_pending(self, events_repo):
        sender = MagicMock()
        sender.send = AsyncMock(side_effect=RuntimeError("timeout"))
        dispatcher = NotificationDispatcher(events_repo, sender, make_lookup(), config=notify_config())
        events_repo.rows.append(make_tracking_event())

        assert await dispatcher.process_pending() == 0
        assert len(await events_repo.get_pending_email_events()) == 1

    @pytest.mark.asyncio
    async def test_failed_order_lookup_is_marked(self, events_repo, sender):
        """An order that cannot be loaded is skipped once, not retried every sweep."""
        lookup = MagicMock()
        lookup.get_track_context = AsyncMock(side_effect=LookupError("order 42 deleted"))
        dispatcher = NotificationDispatcher(events_repo, sender, lookup, config=notify_config())
        events_repo.rows.append(make_tracking_event())

        assert await dispatcher.process_pending() == 1
        assert await dispatcher.process_pending() == 0

        sender.send.assert_not_awaited()
        assert events_repo.marked == [1]
        assert lookup.get_track_context.await_count == 1

    @pytest.mark.asyncio
    async def test_limit(self, dispatcher, events_repo):
        events_repo.rows.extend(make_tracking_event(id=i, event_code=f"E{i}") for i in range(1, 6))

        assert await dispatcher.process_pending(limit=2) == 2
        assert len(await events_repo.get_pending_email_events()) == 3


class TestSenders:
    """Test the bundled email senders."""

    @pytest.mark.asyncio
    async def test_logging_sender(self):
        result = await LoggingSender().send("tracking_update", "a@b.c", None, {}, "sales")
        assert result.success is True

    def test_default_sender_without_key(self):
        with patch.object(settings, "SENDGRID_API_KEY", ""):
            assert isinstance(default_sender(), LoggingSender)

    @pytest.mark.asyncio
    async def test_sendgrid_posts_template(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(202, headers={"X-Message-Id": "sg-1"})

        with patch.object(settings, "SENDGRID_API_KEY", "SG.test"):
            sender = SendGridSender(http_transport=httpx.MockTransport(handler))
            result = await sender.send(
                "d-template", "jane@example.com", "Jane", {"tracking_number": "1Z"}, "sales"
            )
            await sender.close()

        assert result == SendResult(success=True, message_id="sg-1")
        assert seen["url"] == "https://api.sendgrid.com/v3/mail/send"
        assert seen["auth"] == "Bearer SG.test"
        personalization = seen["body"]["personalizations"][0]
        assert personalization["to"] == [{"email": "jane@example.com", "name": "Jane"}]
        assert personalization["dynamic_template_data"] == {"tracking_number": "1Z"}
        assert seen["body"]["template_id"] == "d-template"

    @pytest.mark.asyncio
    async def test_sendgrid_rejection(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(400, text="bad template"))
        with patch.object(settings, "SENDGRID_API_KEY", "SG.test"):
            sender = SendGridSender(http_transport=transport)
            result = await sender.send("d-x", "a@b.c", None, {}, "sales")

        assert result.success is False
        assert result.error == "bad template"

    @pytest.mark.asyncio
    async def test_sendgrid_without_key(self):
        with patch.object(settings, "SENDGRID_API_KEY", ""):
            result = await SendGridSender().send("d-x", "a@b.c", None, {}, "sales")
        assert result.error == "Email not configured"
