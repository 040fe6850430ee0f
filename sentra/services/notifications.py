from __future__ import annotations

import asyncio
from typing import Any, Iterable, Protocol, runtime_checkable

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_random_exponential

from ..core.config import NotificationSettings
from ..core.logging import get_logger
from ..core.metrics import record_notification_delivery
from ..orchestration.enums import Urgency

logger = get_logger(name=__name__)

PUSHOVER_PRIORITY = {
    Urgency.LOW: -1,
    Urgency.NORMAL: 0,
    Urgency.HIGH: 1,
    Urgency.EMERGENCY: 2,
}


@runtime_checkable
class NotificationChannel(Protocol):
    name: str

    async def send(self, title: str, body: str, urgency: Urgency) -> None:
        ...


class LogChannel:
    """Mirrors every notification into the structured log."""

    name = "log"

    async def send(self, title: str, body: str, urgency: Urgency) -> None:
        logger.info("notification_logged", title=title, body=body, urgency=urgency.value)


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500 or exc.response.status_code == 429
    return False


class HttpChannel:
    """Base for channels delivering over HTTP with bounded retries."""

    name = "http"

    def __init__(
        self,
        *,
        timeout_seconds: float = 10.0,
        max_retries: int = 2,
        retry_backoff_seconds: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout = timeout_seconds
        self._attempts = max_retries + 1
        self._backoff = retry_backoff_seconds
        self._transport = transport

    async def send(self, title: str, body: str, urgency: Urgency) -> None:
        wait = wait_random_exponential(multiplier=self._backoff, max=max(self._backoff * 8, 0.001))
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._attempts),
            wait=wait,
            retry=retry_if_exception(_is_transient),
            reraise=True,
        ):
            with attempt:
                async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                    response = await self._deliver(client, title, body, urgency)
                    response.raise_for_status()

    async def _deliver(self, client: httpx.AsyncClient, title: str, body: str, urgency: Urgency) -> httpx.Response:
        raise NotImplementedError


class PushoverChannel(HttpChannel):
    name = "pushover"

    def __init__(self, *, token: str, user: str, base_url: str = "https://api.pushover.net/1", **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._token = token
        self._user = user
        self._base_url = base_url.rstrip("/")

    async def _deliver(self, client: httpx.AsyncClient, title: str, body: str, urgency: Urgency) -> httpx.Response:
        payload = {
            "token": self._token,
            "user": self._user,
            "title": title,
            "message": body,
            "priority": str(PUSHOVER_PRIORITY[urgency]),
        }
        if urgency is Urgency.EMERGENCY:
            # emergency priority must carry a re-notify interval and an expiry
            payload["retry"] = "30"
            payload["expire"] = "300"
            payload["sound"] = "siren"
        return await client.post(f"{self._base_url}/messages.json", data=payload)


class TwilioChannel(HttpChannel):
    name = "twilio"

    def __init__(
        self,
        *,
        account_sid: str,
        auth_token: str,
        from_number: str,
        to_number: str,
        base_url: str = "https://api.twilio.com/2010-04-01",
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._from_number = from_number
        self._to_number = to_number
        self._base_url = base_url.rstrip("/")

    async def _deliver(self, client: httpx.AsyncClient, title: str, body: str, urgency: Urgency) -> httpx.Response:
        return await client.post(
            f"{self._base_url}/Accounts/{self._account_sid}/Messages.json",
            data={"From": self._from_number, "To": self._to_number, "Body": f"{title}\n\n{body}"},
            auth=(self._account_sid, self._auth_token),
        )


class WebhookChannel(HttpChannel):
    name = "webhook"

    def __init__(self, *, url: str, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._url = url

    async def _deliver(self, client: httpx.AsyncClient, title: str, body: str, urgency: Urgency) -> httpx.Response:
        return await client.post(
            self._url,
            json={"title": title, "body": body, "urgency": urgency.value},
            headers={"Content-Type": "application/json"},
        )


class NotificationService:
    """Fans a notification out to every configured channel.

    Each channel send is bounded by ``channel_timeout_seconds``. A failing or
    slow channel is logged and counted but never affects the others.
    """

    def __init__(self, channels: Iterable[NotificationChannel], *, settings: NotificationSettings) -> None:
        self._channels = list(channels)
        self._settings = settings

    @property
    def channels(self) -> list[NotificationChannel]:
        return list(self._channels)

    async def notify(self, title: str, body: str, urgency: Urgency = Urgency.NORMAL) -> dict[str, bool]:
        if not self._settings.enabled or not self._channels:
            logger.debug("notification_skipped", title=title)
            return {}
        results = await asyncio.gather(
            *(self._send(channel, title, body, urgency) for channel in self._channels),
            return_exceptions=True,
        )
        outcomes: dict[str, bool] = {}
        for channel, result in zip(self._channels, results):
            delivered = result is True
            if isinstance(result, BaseException):
                logger.warning(
                    "notification_channel_failed",
                    channel=channel.name,
                    title=title,
                    error=str(result) or type(result).__name__,
                )
            record_notification_delivery(channel=channel.name, outcome="delivered" if delivered else "failed")
            outcomes[channel.name] = delivered
        return outcomes

    async def _send(self, channel: NotificationChannel, title: str, body: str, urgency: Urgency) -> bool:
        await asyncio.wait_for(channel.send(title, body, urgency), timeout=self._settings.channel_timeout_seconds)
        return True


def build_channels(
    settings: NotificationSettings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> list[NotificationChannel]:
    """Instantiate the channels whose credentials are configured."""
    http_options: dict[str, Any] = {
        "timeout_seconds": settings.channel_timeout_seconds,
        "max_retries": settings.max_retries,
        "retry_backoff_seconds": settings.retry_backoff_seconds,
        "transport": transport,
    }
    channels: list[NotificationChannel] = []
    if settings.log_channel_enabled:
        channels.append(LogChannel())
    if settings.pushover_token and settings.pushover_user:
        channels.append(
            PushoverChannel(
                token=settings.pushover_token,
                user=settings.pushover_user,
                base_url=settings.pushover_base_url,
                **http_options,
            )
        )
    if (
        settings.twilio_account_sid
        and settings.twilio_auth_token
        and settings.twilio_from_number
        and settings.twilio_to_number
    ):
        channels.append(
            TwilioChannel(
                account_sid=settings.twilio_account_sid,
                auth_token=settings.twilio_auth_token,
                from_number=settings.twilio_from_number,
                to_number=settings.twilio_to_number,
                base_url=settings.twilio_base_url,
                **http_options,
            )
        )
    if settings.webhook_url:
        channels.append(WebhookChannel(url=settings.webhook_url, **http_options))
    logger.info("notification_channels_configured", channels=[channel.name for channel in channels])
    return channels


__all__ = [
    "HttpChannel",
    "LogChannel",
    "NotificationChannel",
    "NotificationService",
    "PushoverChannel",
    "TwilioChannel",
    "WebhookChannel",
    "build_channels",
]
