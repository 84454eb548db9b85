from __future__ import annotations

import json

import httpx
import pytest

from checkmon.check import ConfigError
from checkmon.notifiers import (
    TELEGRAM_MAX_MESSAGE_LEN,
    NotificationError,
    NtfyNotifier,
    PushoverNotifier,
    TelegramNotifier,
    build_notifier,
)


def _telegram(client: httpx.AsyncClient, **kwargs) -> TelegramNotifier:
    return TelegramNotifier(client, bot_token=kwargs.pop("bot_token", "TOKEN123"), chat_id="42", **kwargs)


def test_telegram_chunks_break_between_lines() -> None:
    notifier = _telegram(httpx.AsyncClient(), max_message_len=20)
    text = "check a down\ncheck b down\ncheck c down"
    assert notifier.chunks(text) == ["check a down", "check b down", "check c down"]
    assert notifier.chunks("short") == ["short"]


def test_telegram_chunks_hard_cut_overlong_line() -> None:
    notifier = _telegram(httpx.AsyncClient())
    parts = notifier.chunks("x" * (TELEGRAM_MAX_MESSAGE_LEN * 2 + 5))
    assert [len(p) for p in parts] == [TELEGRAM_MAX_MESSAGE_LEN, TELEGRAM_MAX_MESSAGE_LEN, 5]


@pytest.mark.asyncio
async def test_telegram_notify_and_clear_messages() -> None:
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/botTOKEN123/sendMessage"
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"ok": True, "result": {"message_id": len(seen)}})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        notifier = _telegram(client)
        await notifier.notify("DNS check, server 9.9.9.9:53", "server unreachable")
        await notifier.clear("DNS check, server 9.9.9.9:53", "server unreachable")

    assert [m["chat_id"] for m in seen] == ["42", "42"]
    assert seen[0]["text"].startswith("ALERT")
    assert "server unreachable" in seen[0]["text"]
    assert seen[1]["text"].startswith("RESOLVED")


@pytest.mark.asyncio
async def test_telegram_failure_raises_without_leaking_token() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError(f"cannot reach {request.url}")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        notifier = _telegram(client, bot_token="SECRET")
        with pytest.raises(NotificationError) as excinfo:
            await notifier.notify("x", "y")

    assert "SECRET" not in str(excinfo.value)
    assert "<redacted>" in str(excinfo.value)


@pytest.mark.asyncio
async def test_ntfy_posts_to_topic() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": "abc"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        notifier = NtfyNotifier(client, topic="alerts", url="https://ntfy.example/", auth_token="tk")
        await notifier.notify("TCP closed check", "ports open: 192.0.2.1:23")

    assert str(seen[0].url) == "https://ntfy.example/alerts"
    assert seen[0].headers["authorization"] == "Bearer tk"
    assert "ports open" in seen[0].content.decode("utf-8")


@pytest.mark.asyncio
async def test_ntfy_http_error_raises() -> None:
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(503))) as client:
        with pytest.raises(NotificationError, match="http_503"):
            await NtfyNotifier(client, topic="alerts").send("hi")


@pytest.mark.asyncio
async def test_pushover_status_checked() -> None:
    async with httpx.AsyncClient(
        transport=httpx.MockTransport(lambda r: httpx.Response(400, json={"status": 0, "errors": ["user invalid"]}))
    ) as client:
        with pytest.raises(NotificationError, match="user invalid"):
            await PushoverNotifier(client, user="u", token="t").send("hi")


@pytest.mark.asyncio
async def test_build_notifier_from_config(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "env-token")
    monkeypatch.setenv("TELEGRAM_CHAT_ID", "7")
    async with httpx.AsyncClient() as client:
        tg = build_notifier({"type": "telegram"}, client)
        assert isinstance(tg, TelegramNotifier)
        assert (tg.bot_token, tg.chat_id) == ("env-token", "7")

        ntfy = build_notifier({"type": "ntfy", "topic": "t"}, client)
        assert isinstance(ntfy, NtfyNotifier)

        with pytest.raises(ConfigError):
            build_notifier({"type": "carrier-pigeon"}, client)
        with pytest.raises(ConfigError):
            build_notifier({"type": "ntfy"}, client)

        monkeypatch.delenv("PUSHOVER_USER", raising=False)
        monkeypatch.delenv("PUSHOVER_TOKEN", raising=False)
        with pytest.raises(ConfigError):
            build_notifier({"type": "pushover"}, client)
