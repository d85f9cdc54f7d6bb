"""
Notification dispatcher: per-channel senders with bounded retries.

Email and SMS are handed to provider webhooks over HTTP (requests). In-app
notifications are the stored NotificationModel rows themselves, so their
sender has nothing to transmit.

Each channel is retried independently with exponential backoff plus jitter;
once the attempts are spent the channel raises DispatchError, which
dispatch() records as that channel's failure without touching the others.
"""
import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Protocol

import requests

from estatecrm.config import Settings, get_settings
from estatecrm.domain.errors import DispatchError
from estatecrm.domain.notification import Channel, NotificationRequest
from estatecrm.infrastructure.db.models import User

logger = logging.getLogger(__name__)

RETRY_STATUSES = {429, 500, 502, 503, 504}


class ChannelFailure(Exception):
    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class ChannelSender(Protocol):
    def send(self, recipient: User, message: dict) -> None:
        """Deliver or raise (ChannelFailure / requests.RequestException)."""


class InAppSender:
    def send(self, recipient: User, message: dict) -> None:
        return None


class WebhookSender:
    """POSTs JSON to a provider webhook; empty URL means the channel is off."""

    def __init__(self, channel: Channel, url: str, api_key: str = "", timeout: float = 5.0):
        self.channel = channel
        self.url = url
        self.api_key = api_key
        self.timeout = timeout

    def _payload(self, recipient: User, message: dict) -> dict:
        if self.channel is Channel.SMS:
            if not recipient.phone_number:
                raise ChannelFailure(f"user_id={recipient.id} has no phone number", retryable=False)
            return {"to": recipient.phone_number, "text": f"{message['title']}: {message['body']}"}
        if not recipient.email:
            raise ChannelFailure(f"user_id={recipient.id} has no email", retryable=False)
        return {"to": recipient.email, "subject": message["title"], "text": message["body"]}

    def send(self, recipient: User, message: dict) -> None:
        if not self.url:
            raise ChannelFailure(f"{self.channel.value} provider is not configured", retryable=False)
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        resp = requests.post(
            self.url,
            json=self._payload(recipient, message),
            headers=headers,
            timeout=self.timeout,
        )
        if resp.status_code >= 400:
            raise ChannelFailure(
                f"{self.channel.value} provider returned {resp.status_code}",
                retryable=resp.status_code in RETRY_STATUSES,
            )


@dataclass
class DeliveryOutcome:
    channel: Channel
    ok: bool
    attempts: int
    error: str | None = None


class NotificationDispatcher:
    def __init__(
        self,
        senders: dict[Channel, ChannelSender],
        max_attempts: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 8.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.senders = senders
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "NotificationDispatcher":
        settings = settings or get_settings()
        return cls(
            senders={
                Channel.INAPP: InAppSender(),
                Channel.EMAIL: WebhookSender(
                    Channel.EMAIL, settings.EMAIL_WEBHOOK_URL,
                    settings.PROVIDER_API_KEY, settings.DISPATCH_HTTP_TIMEOUT,
                ),
                Channel.SMS: WebhookSender(
                    Channel.SMS, settings.SMS_WEBHOOK_URL,
                    settings.PROVIDER_API_KEY, settings.DISPATCH_HTTP_TIMEOUT,
                ),
            },
            max_attempts=settings.DISPATCH_MAX_ATTEMPTS,
            base_delay=settings.DISPATCH_BASE_DELAY,
            max_delay=settings.DISPATCH_MAX_DELAY,
        )

    def _delay(self, attempt: int) -> float:
        delay = min(self.max_delay, self.base_delay * (2 ** attempt))
        if delay:
            delay = delay + random.uniform(0, delay / 2)
        return delay

    def send(self, channel: Channel, recipient: User, message: dict) -> int:
        """
        Send one message on one channel. Returns the attempts used.

        Raises:
            DispatchError: retries exhausted or a permanent failure
        """
        sender = self.senders.get(channel)
        if sender is None:
            raise DispatchError(channel.value, 0, "no sender registered")

        for attempt in range(self.max_attempts):
            try:
                sender.send(recipient, message)
                return attempt + 1
            except (ChannelFailure, requests.RequestException) as exc:
                retryable = getattr(exc, "retryable", True)
                if not retryable or attempt >= self.max_attempts - 1:
                    raise DispatchError(channel.value, attempt + 1, str(exc)) from exc
                delay = self._delay(attempt)
                logger.warning(
                    "%s delivery to user_id=%s failed (attempt %d), retrying in %.2fs: %s",
                    channel.value, recipient.id, attempt + 1, delay, exc,
                )
                if delay:
                    self.sleep(delay)
        raise DispatchError(channel.value, self.max_attempts)

    def dispatch(self, request: NotificationRequest, recipient: User, message: dict) -> dict[Channel, DeliveryOutcome]:
        """Send on every requested channel; a failing channel never affects the others."""
        outcomes: dict[Channel, DeliveryOutcome] = {}
        for channel in sorted(request.channels, key=lambda c: c.value):
            try:
                attempts = self.send(channel, recipient, message)
                outcomes[channel] = DeliveryOutcome(channel, True, attempts)
            except DispatchError as exc:
                logger.error(
                    "Channel %s failed for user_id=%s deadline_id=%s: %s",
                    channel.value, request.recipient_id, request.deadline_id, exc,
                )
                outcomes[channel] = DeliveryOutcome(channel, False, exc.attempts, str(exc))
        return outcomes
