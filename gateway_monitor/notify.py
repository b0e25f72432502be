from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
import structlog

from gateway_monitor.errors import ConfigError, DeliveryFailure
from gateway_monitor.settings import MonitorSettings


logger = structlog.get_logger(__name__)

TELEGRAM_MAX_MESSAGE_LEN = 3900
TELEGRAM_API_BASE_URL = "https://api.telegram.org"


class Notifier(Protocol):
    async def deliver(self, text: str) -> None: ...


@dataclass(frozen=True)
class TelegramConfig:
    bot_token: str
    chat_id: str
    api_base_url: str = TELEGRAM_API_BASE_URL


@dataclass(frozen=True)
class WebhookConfig:
    url: str
    token: str = ""
    number: str = ""


def split_message(text: str, *, max_len: int = TELEGRAM_MAX_MESSAGE_LEN) -> list[str]:
    """Cut a report into parts of at most max_len chars, preferring service block boundaries."""
    remaining = (text or "").strip()
    limit = max(1, int(max_len))
    parts: list[str] = []
    while len(remaining) > limit:
        cut = _cut_point(remaining, limit)
        parts.append(remaining[:cut].rstrip())
        remaining = remaining[cut:].lstrip()
    if remaining or not parts:
        parts.append(remaining)
    return parts


def _cut_point(text: str, limit: int) -> int:
    floor = int(limit * 0.6)
    for sep in ("\n\n", "\n"):
        idx = text.rfind(sep, 0, limit + 1)
        if idx > 0 and idx >= floor:
            return idx
    return limit


def _redact(text: str, *secrets: str) -> str:
    for secret in secrets:
        if secret:
            text = text.replace(secret, "<redacted>")
    return text


def summarize_telegram_response(data: Any) -> str:
    """Loggable view of a bot API reply; never includes the echoed message text."""
    if not isinstance(data, dict):
        return json.dumps({"ok": False, "error": f"unexpected reply type {type(data).__name__}"})
    safe: dict[str, Any] = {k: data[k] for k in ("ok", "error_code", "description") if k in data}
    result = data.get("result")
    if isinstance(result, dict) and "message_id" in result:
        safe["message_id"] = result["message_id"]
    return json.dumps(safe, ensure_ascii=False)


class TelegramNotifier:
    """Delivers reports through the Telegram bot API, one sendMessage call per part."""

    def __init__(
        self,
        config: TelegramConfig,
        *,
        client: httpx.AsyncClient | None = None,
        max_len: int = TELEGRAM_MAX_MESSAGE_LEN,
    ) -> None:
        self.config = config
        self.max_len = max_len
        self._client = client

    @property
    def send_url(self) -> str:
        return f"{self.config.api_base_url.rstrip('/')}/bot{self.config.bot_token}/sendMessage"

    async def _send_part(self, client: httpx.AsyncClient, text: str) -> dict:
        try:
            resp = await client.post(self.send_url, json={"chat_id": self.config.chat_id, "text": text}, timeout=15.0)
            data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            # The bot token is part of the URL and shows up in httpx error messages.
            raise DeliveryFailure(_redact(f"{type(exc).__name__}: {exc}", self.config.bot_token)) from exc
        if not isinstance(data, dict) or not data.get("ok"):
            raise DeliveryFailure(f"Telegram rejected the report telegram={summarize_telegram_response(data)}")
        return data

    async def _send_all(self, client: httpx.AsyncClient, text: str) -> None:
        parts = split_message(text, max_len=self.max_len)
        last: dict = {}
        for idx, part in enumerate(parts):
            try:
                last = await self._send_part(client, part)
            except DeliveryFailure as exc:
                raise DeliveryFailure(f"part {idx + 1}/{len(parts)}: {exc}") from exc
        logger.info(
            "Report delivered",
            channel="telegram",
            chunks=len(parts),
            telegram=summarize_telegram_response(last),
        )

    async def deliver(self, text: str) -> None:
        if self._client is not None:
            await self._send_all(self._client, text)
            return
        async with httpx.AsyncClient() as client:
            await self._send_all(client, text)


class WebhookNotifier:
    """Delivers reports to a chat gateway's send_message webhook."""

    def __init__(self, config: WebhookConfig, *, client: httpx.AsyncClient | None = None) -> None:
        self.config = config
        self._client = client

    async def _post(self, client: httpx.AsyncClient, text: str) -> httpx.Response:
        headers = {"Authorization": self.config.token} if self.config.token else {}
        return await client.post(
            self.config.url,
            json={"message": text, "number": self.config.number},
            headers=headers,
            timeout=30.0,
        )

    async def deliver(self, text: str) -> None:
        try:
            if self._client is not None:
                resp = await self._post(self._client, text)
            else:
                async with httpx.AsyncClient() as client:
                    resp = await self._post(client, text)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise DeliveryFailure(_redact(f"{type(exc).__name__}: {exc}", self.config.token)) from exc
        logger.info("Report delivered", channel="webhook", status_code=resp.status_code)


class NullNotifier:
    """Logs the report instead of sending it."""

    async def deliver(self, text: str) -> None:
        logger.info("Report not sent (notifier disabled)", length=len(text))


def build_notifier(settings: MonitorSettings) -> Notifier:
    cfg = settings.notifier
    if cfg.kind == "telegram":
        if not cfg.telegram_bot_token or not cfg.telegram_chat_id:
            raise ConfigError("Missing TELEGRAM_BOT_TOKEN and/or TELEGRAM_CHAT_ID")
        return TelegramNotifier(TelegramConfig(bot_token=cfg.telegram_bot_token, chat_id=cfg.telegram_chat_id))
    if cfg.kind == "webhook":
        if not cfg.webhook_url:
            raise ConfigError("Missing notifier.webhook_url")
        return WebhookNotifier(WebhookConfig(url=cfg.webhook_url, token=cfg.webhook_token, number=cfg.webhook_number))
    return NullNotifier()
