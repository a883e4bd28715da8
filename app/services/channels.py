"""
Delivery channels for notifications and daily reports.

Every channel implements the same contract:

    result = await channel.send(context, message)
    result.success, result.detail

The set of channels is closed (CHANNEL_REGISTRY). Which of them a hotel uses
is decided by the notify.<channel>.enabled settings, never by branching at
call sites. dispatch_to_channels() sends to several channels concurrently with
a per-channel timeout; a failure or timeout in one channel is recorded and
never affects the others.
"""
import asyncio
import logging
import smtplib
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from email.mime.text import MIMEText
from typing import Dict, Optional, Sequence, Tuple
from uuid import UUID

import httpx

from app.config import settings
from app.services.settings_service import SettingsService, SettingsContext, SettingsKey

logger = logging.getLogger(__name__)


class ChannelDispatchError(Exception):
    """A channel could not deliver a message."""


@dataclass(frozen=True)
class DeliveryContext:
    """Where a message for one hotel goes."""
    hotel_id: UUID
    hotel_name: str
    subject: str
    telegram_chat_ids: Tuple[str, ...] = ()
    email_recipients: Tuple[str, ...] = ()


@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    detail: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


class DeliveryChannel(ABC):
    """Base class for delivery channels."""

    name: str = ""

    @abstractmethod
    async def send(self, context: DeliveryContext, message: str) -> DeliveryResult:
        """Deliver one message to the recipients in ``context``."""
        pass


class TelegramChannel(DeliveryChannel):
    """Sends messages through the Telegram Bot API."""

    name = "telegram"

    def __init__(
        self,
        bot_token: str = "",
        api_url: str = "https://api.telegram.org",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.bot_token = bot_token
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls) -> "TelegramChannel":
        return cls(
            bot_token=settings.TELEGRAM_BOT_TOKEN,
            api_url=settings.TELEGRAM_API_URL,
            timeout=settings.CHANNEL_DISPATCH_TIMEOUT_SECONDS,
        )

    async def _send_one(self, client: httpx.AsyncClient, chat_id: str, text: str) -> None:
        response = await client.post(
            f"{self.api_url}/bot{self.bot_token}/sendMessage",
            json={"chat_id": chat_id, "text": text, "disable_web_page_preview": True},
        )
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if response.status_code != 200 or not payload.get("ok"):
            description = payload.get("description") or response.text[:200]
            raise ChannelDispatchError(f"chat {chat_id}: HTTP {response.status_code} {description}")

    async def send(self, context: DeliveryContext, message: str) -> DeliveryResult:
        if not self.bot_token:
            return DeliveryResult(False, "Telegram bot token not configured")
        if not context.telegram_chat_ids:
            return DeliveryResult(False, "No Telegram chats configured for hotel")

        errors = []
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            for chat_id in context.telegram_chat_ids:
                try:
                    await self._send_one(client, str(chat_id), message)
                except (ChannelDispatchError, httpx.HTTPError) as e:
                    logger.warning(f"Telegram delivery failed for hotel '{context.hotel_name}': {e}")
                    errors.append(str(e))

        sent = len(context.telegram_chat_ids) - len(errors)
        if errors:
            return DeliveryResult(False, f"Sent to {sent}/{len(context.telegram_chat_ids)} chats; " + "; ".join(errors))
        return DeliveryResult(True, f"Sent to {sent} chat(s)")


class EmailChannel(DeliveryChannel):
    """Sends plain text emails over SMTP."""

    name = "email"

    def __init__(
        self,
        smtp_host: str = "smtp.gmail.com",
        smtp_port: int = 587,
        smtp_user: str = "",
        smtp_password: str = "",
        from_email: str = "",
        from_name: str = "FreshTrack",
        use_tls: bool = True,
        timeout: int = 30,
    ):
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.use_tls = use_tls
        self.timeout = timeout

    @classmethod
    def from_settings(cls) -> "EmailChannel":
        return cls(
            smtp_host=settings.SMTP_HOST,
            smtp_port=settings.SMTP_PORT,
            smtp_user=settings.SMTP_USER,
            smtp_password=settings.SMTP_PASSWORD,
            from_email=settings.SMTP_FROM_EMAIL,
            from_name=settings.SMTP_FROM_NAME,
            use_tls=settings.SMTP_USE_TLS,
            timeout=settings.SMTP_TIMEOUT,
        )

    def _send_sync(self, recipients: Sequence[str], subject: str, text: str) -> None:
        msg = MIMEText(text, "plain", "utf-8")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = ", ".join(recipients)

        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
            if self.use_tls:
                server.starttls()
            if self.smtp_user:
                server.login(self.smtp_user, self.smtp_password)
            server.sendmail(self.from_email, list(recipients), msg.as_string())

    async def send(self, context: DeliveryContext, message: str) -> DeliveryResult:
        if not self.from_email:
            return DeliveryResult(False, "Email not configured. SMTP sender missing.")
        if not context.email_recipients:
            return DeliveryResult(False, "No email recipients configured for hotel")

        try:
            await asyncio.to_thread(self._send_sync, context.email_recipients, context.subject, message)
        except smtplib.SMTPAuthenticationError:
            logger.error("SMTP Authentication failed. Check email credentials.")
            return DeliveryResult(False, "SMTP authentication failed")
        except smtplib.SMTPException as e:
            logger.error(f"SMTP error: {e}")
            return DeliveryResult(False, f"SMTP error: {e}")
        except OSError as e:
            logger.error(f"Network error sending email: {e}")
            return DeliveryResult(False, f"Network error: {e}")

        return DeliveryResult(True, f"Sent to {len(context.email_recipients)} recipient(s)")


# Channel name -> setting that enables it for a hotel
CHANNEL_ENABLED_KEYS = {
    TelegramChannel.name: SettingsKey.NOTIFY_TELEGRAM_ENABLED,
    EmailChannel.name: SettingsKey.NOTIFY_EMAIL_ENABLED,
}


def build_channel_registry() -> Dict[str, DeliveryChannel]:
    """One instance of every channel, configured from app settings."""
    return {
        TelegramChannel.name: TelegramChannel.from_settings(),
        EmailChannel.name: EmailChannel.from_settings(),
    }


async def select_enabled_channels(
    settings_service: SettingsService,
    hotel_id: UUID,
    registry: Dict[str, DeliveryChannel],
) -> Dict[str, DeliveryChannel]:
    """Channels from ``registry`` whose enabled flag resolves to true for the hotel."""
    ctx = SettingsContext(hotel_id=hotel_id)
    enabled = {}
    for name, channel in registry.items():
        key = CHANNEL_ENABLED_KEYS.get(name)
        if key is None:
            # Channels without a flag (e.g. injected in tests) are always on
            enabled[name] = channel
        elif await settings_service.get_value(key, ctx) is True:
            enabled[name] = channel
    return enabled


async def dispatch_with_timeout(
    channel: DeliveryChannel,
    context: DeliveryContext,
    message: str,
    timeout: float,
) -> DeliveryResult:
    """Send through one channel. Timeouts and errors become failed results."""
    try:
        return await asyncio.wait_for(channel.send(context, message), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Channel '{channel.name}' timed out after {timeout}s for hotel '{context.hotel_name}'")
        return DeliveryResult(False, f"Timed out after {timeout}s")
    except Exception as e:
        logger.error(f"Channel '{channel.name}' failed for hotel '{context.hotel_name}': {e}")
        return DeliveryResult(False, f"{type(e).__name__}: {e}")


async def dispatch_to_channels(
    channels: Dict[str, DeliveryChannel],
    context: DeliveryContext,
    message: str,
    timeout: float,
) -> Dict[str, dict]:
    """Send to all channels concurrently. Returns {channel_name: {"success", "detail"}}."""
    names = list(channels)
    results = await asyncio.gather(*[
        dispatch_with_timeout(channels[name], context, message, timeout)
        for name in names
    ])
    return {name: result.to_dict() for name, result in zip(names, results)}
