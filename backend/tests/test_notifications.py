"""
Notification Gateway Tests

- channel routing and GatewayError folding
- Twilio error classification (permanent vs transient)
- SMTP and Socket.IO senders
"""

import asyncio
import smtplib
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from twilio.base.exceptions import TwilioRestException

from donorlink.config import Settings
from donorlink.exceptions import PermanentGatewayError, TransientGatewayError
from donorlink.models.alert_delivery import DeliveryChannel
from donorlink.notifications.email import SmtpEmailSender, build_message
from donorlink.notifications.gateway import AlertPayload, ChannelRouter, DonorContact, GatewayResult
from donorlink.notifications.push import SocketIOPushSender
from donorlink.notifications.sms import TwilioSmsSender, status_callback_url

CONTACT = DonorContact(donor_id="d1", name="Sita", phone="+9779800000001", email="sita@donors.example")
PAYLOAD = AlertPayload(
    alert_id="a1",
    hospital_id="hosp-1",
    title="O- needed at Bir Hospital",
    message="Please come to the blood bank.",
    urgency_level="critical",
    blood_groups=("O-",),
)


def _run(coro):
    return asyncio.run(coro)


class TestPayload:

    def test_render_text(self):
        assert PAYLOAD.render_text() == (
            "[CRITICAL] O- needed at Bir Hospital\nNeeded: O-\nPlease come to the blood bank."
        )

    def test_email_message(self):
        message = build_message(CONTACT, PAYLOAD, "alerts@donorlink.local")
        assert message["To"] == "sita@donors.example"
        assert message["Subject"] == "[CRITICAL] O- needed at Bir Hospital"
        assert message.get_content().startswith("Hello Sita,")


class TestChannelRouter:

    def test_routes_by_channel(self):
        sms = MagicMock(send=AsyncMock(return_value=GatewayResult.ok("SM1")))
        router = ChannelRouter({DeliveryChannel.SMS: sms})

        result = _run(router.send("sms", CONTACT, PAYLOAD))

        assert result == GatewayResult.ok("SM1")
        sms.send.assert_awaited_once_with(CONTACT, PAYLOAD)

    def test_unconfigured_channel_is_permanent(self):
        result = _run(ChannelRouter({}).send(DeliveryChannel.EMAIL, CONTACT, PAYLOAD))
        assert not result.accepted
        assert result.permanent

    @pytest.mark.parametrize("error,permanent", [
        (PermanentGatewayError("bad number"), True),
        (TransientGatewayError("rate limited"), False),
    ])
    def test_gateway_errors_become_rejections(self, error, permanent):
        sender = MagicMock(send=AsyncMock(side_effect=error))
        result = _run(ChannelRouter({DeliveryChannel.PUSH: sender}).send("push", CONTACT, PAYLOAD))
        assert result == GatewayResult.rejected(str(error), permanent=permanent)

    def test_other_exceptions_propagate(self):
        sender = MagicMock(send=AsyncMock(side_effect=RuntimeError("boom")))
        with pytest.raises(RuntimeError):
            _run(ChannelRouter({DeliveryChannel.PUSH: sender}).send("push", CONTACT, PAYLOAD))


class TestTwilioSmsSender:

    @pytest.fixture
    def client(self):
        client = MagicMock()
        client.messages.create.return_value = MagicMock(sid="SM123")
        return client

    def test_sends_with_status_callback(self, client):
        result = _run(TwilioSmsSender(client).send(CONTACT, PAYLOAD))

        assert result == GatewayResult.ok("SM123")
        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["to"] == CONTACT.phone
        assert kwargs["status_callback"] == status_callback_url("a1", "d1")
        assert kwargs["status_callback"].endswith("/deliveries/callback/twilio?alert_id=a1&donor_id=d1")

    def test_missing_phone_is_permanent(self, client):
        contact = DonorContact(donor_id="d2")
        with pytest.raises(PermanentGatewayError):
            _run(TwilioSmsSender(client).send(contact, PAYLOAD))
        client.messages.create.assert_not_called()

    @pytest.mark.parametrize("status,code,error", [
        (400, 21211, PermanentGatewayError),
        (400, 21610, PermanentGatewayError),
        (400, None, PermanentGatewayError),
        (429, 20429, TransientGatewayError),
        (503, None, TransientGatewayError),
    ])
    def test_rest_errors_are_classified(self, client, status, code, error):
        client.messages.create.side_effect = TwilioRestException(status, "/Messages.json", "rejected", code)
        with pytest.raises(error):
            _run(TwilioSmsSender(client).send(CONTACT, PAYLOAD))


class TestSmtpEmailSender:

    def test_missing_address_is_permanent(self):
        with pytest.raises(PermanentGatewayError):
            _run(SmtpEmailSender().send(DonorContact(donor_id="d2"), PAYLOAD))

    def test_unconfigured_host_is_permanent(self):
        with patch("donorlink.notifications.email.get_settings", return_value=Settings(SMTP_HOST="")):
            with pytest.raises(PermanentGatewayError):
                _run(SmtpEmailSender().send(CONTACT, PAYLOAD))

    def test_delivers_in_worker_thread(self):
        sender = SmtpEmailSender()
        with patch("donorlink.notifications.email.get_settings", return_value=Settings(SMTP_HOST="smtp.test")), \
             patch.object(sender, "_deliver") as deliver:
            result = _run(sender.send(CONTACT, PAYLOAD))

        assert result.accepted
        assert result.provider_message_id == deliver.call_args.args[0]["Message-ID"]

    @pytest.mark.parametrize("error,expected", [
        (smtplib.SMTPRecipientsRefused({"sita@donors.example": (550, b"no such user")}), PermanentGatewayError),
        (smtplib.SMTPServerDisconnected("gone"), TransientGatewayError),
        (ConnectionRefusedError(), TransientGatewayError),
    ])
    def test_smtp_errors_are_classified(self, error, expected):
        sender = SmtpEmailSender()
        with patch("donorlink.notifications.email.get_settings", return_value=Settings(SMTP_HOST="smtp.test")), \
             patch.object(sender, "_deliver", side_effect=error):
            with pytest.raises(expected):
                _run(sender.send(CONTACT, PAYLOAD))


class TestSocketIOPushSender:

    def test_emits_to_donor_room(self):
        with patch("donorlink.notifications.push.push_donor_alert", new=AsyncMock()) as push:
            result = _run(SocketIOPushSender().send(CONTACT, PAYLOAD))

        donor_id, data = push.await_args.args
        assert donor_id == "d1"
        assert data["alert_id"] == "a1"
        assert data["message_id"] == result.provider_message_id

    def test_bus_failure_is_transient(self):
        failing = AsyncMock(side_effect=RedisConnectionError("redis down"))
        with patch("donorlink.notifications.push.push_donor_alert", new=failing):
            with pytest.raises(TransientGatewayError):
                _run(SocketIOPushSender().send(CONTACT, PAYLOAD))
