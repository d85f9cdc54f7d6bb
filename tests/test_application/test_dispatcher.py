"""
Tests for NotificationDispatcher and the webhook channel senders.

Covers:
  - Retry with backoff on transient failures (sleep injected)
  - Permanent failures are not retried
  - One failing channel does not affect the others
  - Webhook payloads and HTTP status handling (requests.post patched)
"""
from types import SimpleNamespace
from unittest.mock import Mock, patch

import pytest
import requests

from estatecrm.application.dispatcher import (
    ChannelFailure, InAppSender, NotificationDispatcher, WebhookSender,
)
from estatecrm.domain.deadline import Tier
from estatecrm.domain.errors import DispatchError
from estatecrm.domain.notification import Category, Channel, NotificationRequest

MESSAGE = {"title": "Deadline within 24 hours", "body": "Offer is due.", "severity": "warn"}


def _recipient(**kw):
    defaults = {"id": 1, "email": "agent@example.com", "phone_number": "+15550100"}
    defaults.update(kw)
    return SimpleNamespace(**defaults)


def _request(*channels):
    return NotificationRequest(
        recipient_id=1, category=Category.DEADLINE, tier=Tier.URGENT, channels=set(channels), deadline_id=7,
    )


class TestRetry:
    def test_succeeds_after_transient_failures(self):
        sender = Mock()
        sender.send.side_effect = [ChannelFailure("503"), requests.ConnectionError("reset"), None]
        sleeps = []
        dispatcher = NotificationDispatcher(
            {Channel.EMAIL: sender}, max_attempts=3, base_delay=1.0, max_delay=8.0, sleep=sleeps.append,
        )
        assert dispatcher.send(Channel.EMAIL, _recipient(), MESSAGE) == 3
        assert sender.send.call_count == 3
        assert len(sleeps) == 2
        # exponential base with up to 50% jitter
        assert 1.0 <= sleeps[0] <= 1.5
        assert 2.0 <= sleeps[1] <= 3.0

    def test_delay_is_capped(self):
        dispatcher = NotificationDispatcher({}, base_delay=1.0, max_delay=4.0, sleep=lambda s: None)
        assert dispatcher._delay(10) <= 6.0

    def test_gives_up_after_max_attempts(self):
        sender = Mock()
        sender.send.side_effect = ChannelFailure("provider down")
        dispatcher = NotificationDispatcher({Channel.SMS: sender}, max_attempts=3, sleep=lambda s: None)
        with pytest.raises(DispatchError) as exc_info:
            dispatcher.send(Channel.SMS, _recipient(), MESSAGE)
        assert exc_info.value.attempts == 3
        assert sender.send.call_count == 3

    def test_permanent_failure_is_not_retried(self):
        sender = Mock()
        sender.send.side_effect = ChannelFailure("no phone number", retryable=False)
        dispatcher = NotificationDispatcher({Channel.SMS: sender}, max_attempts=5, sleep=lambda s: None)
        with pytest.raises(DispatchError) as exc_info:
            dispatcher.send(Channel.SMS, _recipient(), MESSAGE)
        assert exc_info.value.attempts == 1
        assert sender.send.call_count == 1

    def test_unregistered_channel(self):
        dispatcher = NotificationDispatcher({}, sleep=lambda s: None)
        with pytest.raises(DispatchError):
            dispatcher.send(Channel.EMAIL, _recipient(), MESSAGE)


class TestDispatch:
    def test_failing_channel_is_isolated(self):
        email = Mock()
        sms = Mock()
        sms.send.side_effect = ChannelFailure("provider down")
        dispatcher = NotificationDispatcher(
            {Channel.EMAIL: email, Channel.SMS: sms, Channel.INAPP: InAppSender()},
            max_attempts=2,
            sleep=lambda s: None,
        )
        outcomes = dispatcher.dispatch(_request(Channel.EMAIL, Channel.SMS, Channel.INAPP), _recipient(), MESSAGE)

        assert outcomes[Channel.EMAIL].ok
        assert outcomes[Channel.INAPP].ok
        assert not outcomes[Channel.SMS].ok
        assert outcomes[Channel.SMS].attempts == 2
        assert "provider down" in outcomes[Channel.SMS].error
        email.send.assert_called_once()

    def test_only_requested_channels(self):
        email = Mock()
        sms = Mock()
        dispatcher = NotificationDispatcher({Channel.EMAIL: email, Channel.SMS: sms}, sleep=lambda s: None)
        outcomes = dispatcher.dispatch(_request(Channel.EMAIL), _recipient(), MESSAGE)
        assert set(outcomes) == {Channel.EMAIL}
        sms.send.assert_not_called()


class TestWebhookSender:
    def test_email_payload(self):
        sender = WebhookSender(Channel.EMAIL, "https://mail.example.com/send", api_key="k", timeout=2.0)
        with patch("estatecrm.application.dispatcher.requests.post") as post:
            post.return_value = Mock(status_code=202)
            sender.send(_recipient(), MESSAGE)
        post.assert_called_once_with(
            "https://mail.example.com/send",
            json={"to": "agent@example.com", "subject": MESSAGE["title"], "text": MESSAGE["body"]},
            headers={"Authorization": "Bearer k"},
            timeout=2.0,
        )

    def test_sms_payload(self):
        sender = WebhookSender(Channel.SMS, "https://sms.example.com/send")
        with patch("estatecrm.application.dispatcher.requests.post") as post:
            post.return_value = Mock(status_code=200)
            sender.send(_recipient(), MESSAGE)
        _, kwargs = post.call_args
        assert kwargs["json"] == {"to": "+15550100", "text": "Deadline within 24 hours: Offer is due."}
        assert kwargs["headers"] == {}

    def test_server_error_is_retryable(self):
        sender = WebhookSender(Channel.EMAIL, "https://mail.example.com/send")
        with patch("estatecrm.application.dispatcher.requests.post") as post:
            post.return_value = Mock(status_code=503)
            with pytest.raises(ChannelFailure) as exc_info:
                sender.send(_recipient(), MESSAGE)
        assert exc_info.value.retryable is True

    def test_client_error_is_permanent(self):
        sender = WebhookSender(Channel.EMAIL, "https://mail.example.com/send")
        with patch("estatecrm.application.dispatcher.requests.post") as post:
            post.return_value = Mock(status_code=400)
            with pytest.raises(ChannelFailure) as exc_info:
                sender.send(_recipient(), MESSAGE)
        assert exc_info.value.retryable is False

    def test_missing_phone_number(self):
        sender = WebhookSender(Channel.SMS, "https://sms.example.com/send")
        with patch("estatecrm.application.dispatcher.requests.post") as post:
            with pytest.raises(ChannelFailure) as exc_info:
                sender.send(_recipient(phone_number=None), MESSAGE)
        assert exc_info.value.retryable is False
        post.assert_not_called()

    def test_unconfigured_provider(self):
        sender = WebhookSender(Channel.EMAIL, "")
        with pytest.raises(ChannelFailure, match="not configured"):
            sender.send(_recipient(), MESSAGE)

    def test_retried_through_dispatcher(self):
        dispatcher = NotificationDispatcher(
            {Channel.EMAIL: WebhookSender(Channel.EMAIL, "https://mail.example.com/send")},
            max_attempts=3,
            sleep=lambda s: None,
        )
        with patch("estatecrm.application.dispatcher.requests.post") as post:
            post.side_effect = [Mock(status_code=502), requests.Timeout("slow"), Mock(status_code=200)]
            assert dispatcher.send(Channel.EMAIL, _recipient(), MESSAGE) == 3


def test_from_settings(settings):
    settings.EMAIL_WEBHOOK_URL = "https://mail.example.com/send"
    dispatcher = NotificationDispatcher.from_settings(settings)
    assert set(dispatcher.senders) == {Channel.EMAIL, Channel.SMS, Channel.INAPP}
    assert dispatcher.max_attempts == settings.DISPATCH_MAX_ATTEMPTS
    assert dispatcher.senders[Channel.EMAIL].url == "https://mail.example.com/send"
