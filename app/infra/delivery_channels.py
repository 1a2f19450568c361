# app/infra/delivery_channels.py
"""
Delivery channels for stored notifications.

Once the notification engine has accepted (deduped and stored) an entry it
hands it to exactly one channel.  Delivery is fire-and-forget: a channel
returns False or raises, the engine logs and counts it, the stored entry
stays.

Channels:
- ``log``      - local delivery, written to the app log (in-app toasts poll the store)
- ``webhook``  - POST to a push gateway (web push / mobile push relay)
- ``telegram`` - admin inbox mirrored into a Telegram chat
- ``sms``      - Twilio SMS when the notification carries a contact phone
- ``fanout``   - every configured channel above
- ``disabled`` - store only

Usage:
    channel = get_delivery_channel()
    await channel.deliver(recipient, notification)
"""
from __future__ import annotations

import abc
import asyncio
import html
from typing import Optional

import aiohttp

from app.config import settings
from app.core.notifications.models import Notification, Recipient, recipient_key
from app.infra.http_client import get_default_session, get_push_session
from app.infra.logging_config import get_logger, mask_phone
from app.infra.metrics import inc_counter

logger = get_logger(__name__)


class DeliveryChannel(abc.ABC):
    """Abstract base class for delivery channels"""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Channel name for logging/metrics"""

    @abc.abstractmethod
    def is_configured(self) -> bool:
        """Check if channel is properly configured"""

    @abc.abstractmethod
    async def deliver(self, recipient: Recipient, notification: Notification) -> bool:
        """
        Deliver one stored notification.

        Returns:
            True if delivered (or intentionally skipped), False otherwise
        """


class LogChannel(DeliveryChannel):
    @property
    def name(self) -> str:
        return "log"

    def is_configured(self) -> bool:
        return True

    async def deliver(self, recipient: Recipient, notification: Notification) -> bool:
        logger.info(
            "Notify %s: [%s] %s",
            recipient_key(recipient), notification.severity, notification.title,
            extra={"recipient": recipient_key(recipient)},
        )
        return True


class WebhookPushChannel(DeliveryChannel):
    """POSTs the notification JSON to a push gateway."""

    def __init__(self, url: Optional[str] = None, token: Optional[str] = None) -> None:
        self._url = url or settings.push_webhook_url
        self._token = token or settings.push_webhook_token

    @property
    def name(self) -> str:
        return "webhook"

    def is_configured(self) -> bool:
        return bool(self._url)

    async def deliver(self, recipient: Recipient, notification: Notification) -> bool:
        if not self.is_configured():
            logger.warning("Webhook push channel not configured")
            return False

        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        payload = {
            "recipient": {"role": recipient.role, "id": recipient.id},
            "notification": notification.model_dump(mode="json"),
        }

        session = get_push_session()
        async with session.post(self._url, json=payload, headers=headers) as resp:
            if resp.status >= 300:
                logger.error(
                    "Push gateway rejected notification: status=%s id=%s",
                    resp.status, notification.id,
                    extra={"recipient": recipient_key(recipient)},
                )
                return False
        return True


class TelegramChannel(DeliveryChannel):
    """
    Mirrors the admin inbox into a Telegram chat.
    Other roles are skipped (they have no chat).
    """

    TELEGRAM_API_URL = "https://api.telegram.org/bot{token}/{method}"

    @property
    def name(self) -> str:
        return "telegram"

    def is_configured(self) -> bool:
        return settings.telegram_enabled

    async def deliver(self, recipient: Recipient, notification: Notification) -> bool:
        if recipient.role != "admin":
            return True
        if not self.is_configured():
            logger.warning("Telegram channel not configured")
            return False

        url = self.TELEGRAM_API_URL.format(token=settings.telegram_bot_token, method="sendMessage")
        text = f"<b>{html.escape(notification.title)}</b>"
        if notification.body:
            text += f"\n{html.escape(notification.body)}"
        payload = {
            "chat_id": settings.telegram_chat_id,
            "text": text,
            "parse_mode": "HTML",
        }

        session = get_default_session()
        async with session.post(url, json=payload, timeout=aiohttp.ClientTimeout(total=30)) as resp:
            if resp.status != 200:
                logger.error(f"Telegram API error: status={resp.status}")
                return False

            result = await resp.json()
            if not result.get("ok"):
                logger.error(f"Telegram API error: ok=false, error_code={result.get('error_code')}")
                return False

            return True


_twilio_client = None


def _get_twilio_client():
    """Lazy-init Twilio client"""
    global _twilio_client
    if _twilio_client is None:
        if not settings.twilio_account_sid or not settings.twilio_auth_token:
            logger.warning("Twilio credentials not configured")
            return None
        from twilio.rest import Client
        _twilio_client = Client(settings.twilio_account_sid, settings.twilio_auth_token)
    return _twilio_client


class SmsChannel(DeliveryChannel):
    """
    Twilio SMS to customers and vendors.

    Only notifications whose meta carries ``contact_phone`` are sent;
    everything else is skipped as delivered.
    """

    @property
    def name(self) -> str:
        return "sms"

    def is_configured(self) -> bool:
        return settings.twilio_enabled

    async def deliver(self, recipient: Recipient, notification: Notification) -> bool:
        phone = notification.meta.contact_phone
        if not phone or recipient.role not in ("customer", "vendor"):
            return True

        client = _get_twilio_client()
        if client is None or not settings.twilio_phone_number:
            return False

        body = notification.title if not notification.body else f"{notification.title}: {notification.body}"
        loop = asyncio.get_running_loop()
        # twilio's REST client is blocking
        result = await loop.run_in_executor(
            None,
            lambda: client.messages.create(
                from_=settings.twilio_phone_number,
                to=phone,
                body=body[:1500],
            ),
        )
        logger.info(
            f"SMS sent: sid={result.sid[:8]}***, to={mask_phone(phone)}",
            extra={"recipient": recipient_key(recipient)},
        )
        return True


class FanoutChannel(DeliveryChannel):
    """Delivers through every child; succeeds when at least one child did."""

    def __init__(self, channels: list[DeliveryChannel]) -> None:
        self._channels = channels

    @property
    def name(self) -> str:
        return "fanout"

    def is_configured(self) -> bool:
        return any(channel.is_configured() for channel in self._channels)

    async def deliver(self, recipient: Recipient, notification: Notification) -> bool:
        delivered = False
        for channel in self._channels:
            try:
                ok = await channel.deliver(recipient, notification)
            except Exception:
                logger.error(
                    "Channel %s failed for notification %s",
                    channel.name, notification.id,
                    exc_info=True,
                    extra={"recipient": recipient_key(recipient)},
                )
                inc_counter("notifications_channel_failed", channel=channel.name)
                continue
            delivered = delivered or ok
        return delivered


class DisabledChannel(DeliveryChannel):
    """Store-only mode"""

    @property
    def name(self) -> str:
        return "disabled"

    def is_configured(self) -> bool:
        return True

    async def deliver(self, recipient: Recipient, notification: Notification) -> bool:
        logger.debug(f"Delivery disabled, skipping: id={notification.id}")
        return True


def get_delivery_channel() -> DeliveryChannel:
    """
    Build the configured delivery channel.

    A channel that is selected but not configured falls back to ``log`` so
    notifications are still visible during setup.
    """
    choice = settings.delivery_channel

    if choice == "disabled":
        return DisabledChannel()
    if choice == "fanout":
        children: list[DeliveryChannel] = [LogChannel()]
        for extra in (WebhookPushChannel(), TelegramChannel(), SmsChannel()):
            if extra.is_configured():
                children.append(extra)
        return FanoutChannel(children)

    channel: DeliveryChannel
    if choice == "webhook":
        channel = WebhookPushChannel()
    elif choice == "telegram":
        channel = TelegramChannel()
    elif choice == "sms":
        channel = SmsChannel()
    else:
        channel = LogChannel()

    if not channel.is_configured():
        logger.warning(
            "Delivery channel '%s' not configured, falling back to log", channel.name,
        )
        return LogChannel()
    return channel
