from __future__ import annotations

from urllib.parse import parse_qs

import httpx
import pytest
from prometheus_client import REGISTRY

from sentra.core.config import NotificationSettings
from sentra.orchestration.enums import Urgency
from sentra.services.notifications import (
    LogChannel,
    NotificationService,
    PushoverChannel,
    TwilioChannel,
    WebhookChannel,
    build_channels,
)
from tests.helpers.stubs import FailingChannel, RecordingChannel, SlowChannel


@pytest.mark.asyncio
async def test_pushover_channel_maps_urgency_to_priority() -> None:
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, json={"status": 1})

    channel = PushoverChannel(token="tok", user="usr", transport=httpx.MockTransport(handler))

    await channel.send("Approval needed", "rm -rf /", Urgency.EMERGENCY)

    assert len(captured) == 1
    assert captured[0].url.path == "/1/messages.json"
    form = parse_qs(captured[0].content.decode())
    assert form["priority"] == ["2"]
    assert form["retry"] == ["30"]
    assert form["expire"] == ["300"]
    assert form["title"] == ["Approval needed"]


@pytest.mark.asyncio
async def test_http_channel_retries_transient_failures() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        if calls < 3:
            return httpx.Response(503)
        return httpx.Response(200, json={"ok": True})

    channel = WebhookChannel(
        url="https://hooks.example.com/sentra",
        max_retries=2,
        retry_backoff_seconds=0.0,
        transport=httpx.MockTransport(handler),
    )

    await channel.send("title", "body", Urgency.NORMAL)

    assert calls == 3


@pytest.mark.asyncio
async def test_http_channel_does_not_retry_client_errors() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(401)

    channel = TwilioChannel(
        account_sid="AC123",
        auth_token="secret",
        from_number="+15550000000",
        to_number="+15551111111",
        retry_backoff_seconds=0.0,
        transport=httpx.MockTransport(handler),
    )

    with pytest.raises(httpx.HTTPStatusError):
        await channel.send("title", "body", Urgency.HIGH)
    assert calls == 1


@pytest.mark.asyncio
async def test_service_isolates_failing_and_slow_channels() -> None:
    recording = RecordingChannel()
    settings = NotificationSettings(channel_timeout_seconds=0.05)
    service = NotificationService([FailingChannel(), SlowChannel(delay=1.0), recording], settings=settings)
    failed_before = REGISTRY.get_sample_value(
        "sentra_notification_deliveries_total", {"channel": "failing", "outcome": "failed"}
    ) or 0.0

    outcomes = await service.notify("title", "body", Urgency.NORMAL)

    assert outcomes == {"failing": False, "slow": False, "recording": True}
    assert recording.sent == [("title", "body", Urgency.NORMAL)]
    failed_after = REGISTRY.get_sample_value(
        "sentra_notification_deliveries_total", {"channel": "failing", "outcome": "failed"}
    )
    assert failed_after == pytest.approx(failed_before + 1.0)


@pytest.mark.asyncio
async def test_disabled_service_sends_nothing() -> None:
    recording = RecordingChannel()
    service = NotificationService([recording], settings=NotificationSettings(enabled=False))

    assert await service.notify("title", "body") == {}
    assert recording.sent == []


def test_build_channels_only_includes_configured_channels() -> None:
    assert [channel.name for channel in build_channels(NotificationSettings())] == ["log"]

    settings = NotificationSettings(
        log_channel_enabled=False,
        pushover_token="tok",
        pushover_user="usr",
        twilio_account_sid="AC1",
        twilio_auth_token="secret",
        twilio_from_number="+1",
        webhook_url="https://hooks.example.com/x",
    )
    channels = build_channels(settings)

    # twilio needs a destination number as well
    assert [channel.name for channel in channels] == ["pushover", "webhook"]
    assert not any(isinstance(channel, LogChannel) for channel in channels)
