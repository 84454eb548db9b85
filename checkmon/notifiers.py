from __future__ import annotations

import os
from abc import ABC, abstractmethod
from typing import Any

import httpx

from checkmon.check import ConfigError


TELEGRAM_MAX_MESSAGE_LEN = 3900
TELEGRAM_API_URL = "https://api.telegram.org"
PUSHOVER_API_URL = "https://api.pushover.net/1/messages.json"
DEFAULT_NTFY_URL = "https://ntfy.sh"


class NotificationError(RuntimeError):
    pass


def format_raised_message(description: str, reason: str) -> str:
    return f"ALERT ❌ {description}\nReason: {reason}"


def format_cleared_message(description: str, reason: str) -> str:
    return f"RESOLVED ✅ {description}\nWas: {reason}"


class Notifier(ABC):
    """
    Delivery channel for alert edges. notify() is called once when a (check, reason)
    starts alerting and clear() once when it stops.
    """

    name = "notifier"

    async def notify(self, description: str, reason: str) -> None:
        await self.send(format_raised_message(description, reason))

    async def clear(self, description: str, reason: str) -> None:
        await self.send(format_cleared_message(description, reason))

    @abstractmethod
    async def send(self, text: str) -> None:
        ...


class TelegramNotifier(Notifier):
    """Posts to one chat through the Bot API; long texts go out as several messages."""

    name = "telegram"

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        bot_token: str,
        chat_id: str,
        max_message_len: int = TELEGRAM_MAX_MESSAGE_LEN,
    ) -> None:
        if not bot_token or not chat_id:
            raise ValueError("telegram notifier needs bot_token and chat_id")
        self.client = client
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.max_message_len = max(1, int(max_message_len))

    def chunks(self, text: str) -> list[str]:
        # Break between lines where possible; a single overlong line is hard-cut.
        limit = self.max_message_len
        out: list[str] = []
        current = ""
        for line in (text or "").splitlines(keepends=True):
            while len(line) > limit:
                out.extend([current, line[:limit]])
                current, line = "", line[limit:]
            if len(current) + len(line) > limit:
                out.append(current)
                current = ""
            current += line
        out.append(current)
        return [c.strip("\n") for c in out if c.strip()] or [""]

    def _redact(self, text: str) -> str:
        return text.replace(self.bot_token, "<redacted>")

    async def send(self, text: str) -> None:
        url = f"{TELEGRAM_API_URL}/bot{self.bot_token}/sendMessage"
        for part in self.chunks(text):
            try:
                resp = await self.client.post(url, json={"chat_id": self.chat_id, "text": part}, timeout=15.0)
                data = resp.json()
            except (httpx.HTTPError, ValueError) as e:
                # The token is part of the URL, so it must not leak via the exception chain.
                raise NotificationError(self._redact(f"telegram delivery failed: {type(e).__name__}: {e}")) from None
            if not data.get("ok"):
                detail = data.get("description") or f"http_{resp.status_code}"
                raise NotificationError(self._redact(f"telegram delivery failed: {detail}"))


class NtfyNotifier(Notifier):
    name = "ntfy"

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        topic: str,
        url: str = DEFAULT_NTFY_URL,
        auth_token: str | None = None,
    ) -> None:
        if not topic:
            raise ValueError("ntfy notifier needs a topic")
        self.client = client
        self.topic = topic
        self.url = url.rstrip("/")
        self.auth_token = auth_token

    async def send(self, text: str) -> None:
        headers = {"Title": "checkmon"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        try:
            resp = await self.client.post(
                f"{self.url}/{self.topic}", content=text.encode("utf-8"), headers=headers, timeout=15.0
            )
        except httpx.HTTPError as e:
            raise NotificationError(f"ntfy delivery failed: {type(e).__name__}: {e}") from e
        if not resp.is_success:
            raise NotificationError(f"ntfy delivery failed: http_{resp.status_code}")


class PushoverNotifier(Notifier):
    name = "pushover"

    def __init__(self, client: httpx.AsyncClient, *, user: str, token: str) -> None:
        if not user or not token:
            raise ValueError("pushover notifier needs user and token")
        self.client = client
        self.user = user
        self.token = token

    async def send(self, text: str) -> None:
        payload = {"token": self.token, "user": self.user, "message": text}
        try:
            resp = await self.client.post(PUSHOVER_API_URL, data=payload, timeout=15.0)
            data = resp.json()
        except Exception as e:
            msg = f"{type(e).__name__}: {e}".replace(self.token, "<redacted>")
            raise NotificationError(f"pushover delivery failed: {msg}") from e
        if int(data.get("status") or 0) != 1:
            raise NotificationError(f"pushover delivery failed: errors={data.get('errors')}")


def build_notifier(entry: dict[str, Any], client: httpx.AsyncClient) -> Notifier:
    """
    Build one notifier from a config entry. Credentials fall back to the environment
    so they can stay out of the YAML file.
    """
    kind = str(entry.get("type") or "").strip().lower()
    if kind == "telegram":
        bot_token = str(entry.get("bot_token") or os.getenv("TELEGRAM_BOT_TOKEN") or "").strip()
        chat_id = str(entry.get("chat_id") or os.getenv("TELEGRAM_CHAT_ID") or "").strip()
        if not bot_token or not chat_id:
            raise ConfigError("telegram notifier: missing bot_token/chat_id (or TELEGRAM_BOT_TOKEN/TELEGRAM_CHAT_ID)")
        return TelegramNotifier(client, bot_token=bot_token, chat_id=chat_id)
    if kind == "ntfy":
        topic = str(entry.get("topic") or "").strip()
        if not topic:
            raise ConfigError("ntfy notifier: missing topic")
        return NtfyNotifier(
            client,
            topic=topic,
            url=str(entry.get("url") or DEFAULT_NTFY_URL),
            auth_token=entry.get("auth_token") or os.getenv("NTFY_TOKEN"),
        )
    if kind == "pushover":
        user = str(entry.get("user") or os.getenv("PUSHOVER_USER") or "").strip()
        token = str(entry.get("token") or os.getenv("PUSHOVER_TOKEN") or "").strip()
        if not user or not token:
            raise ConfigError("pushover notifier: missing user/token (or PUSHOVER_USER/PUSHOVER_TOKEN)")
        return PushoverNotifier(client, user=user, token=token)
    raise ConfigError(f"unknown notifier type {kind!r}")
