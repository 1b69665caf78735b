from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx
import structlog


logger = structlog.get_logger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"
BOT_TOKEN_PREFIX = "bot"


@dataclass(frozen=True)
class TelegramConfig:
    bot_token: str
    chat_id: str
    api_base: str = TELEGRAM_API_BASE


def normalize_bot_token(token: str | None) -> str:
    """Tokens are accepted with or without the `bot` prefix the API path needs."""
    t = (token or "").strip()
    if not t:
        return ""
    return t if t.startswith(BOT_TOKEN_PREFIX) else f"{BOT_TOKEN_PREFIX}{t}"


def build_payment_link_message(payment_url: str) -> str:
    return (
        f"1. Please click the link below to proceed with payment: {payment_url}\n"
        " 2. Complete the payment by scanning the displayed QR code."
    )


def _redact(text: str, config: TelegramConfig) -> str:
    raw = (config.bot_token or "").strip()
    for secret in {raw, normalize_bot_token(raw)}:
        if secret:
            text = text.replace(secret, "<redacted>")
    return text


async def send_telegram_message(
    client: httpx.AsyncClient, config: TelegramConfig, text: str
) -> tuple[bool, dict]:
    url = f"{config.api_base.rstrip('/')}/{normalize_bot_token(config.bot_token)}/sendMessage"
    params = {"chat_id": config.chat_id, "text": text}
    try:
        resp = await client.get(url, params=params, timeout=15.0)
        try:
            data = resp.json()
        except ValueError:
            data = {"ok": False, "error": f"HTTP {resp.status_code}: non-JSON response"}
        if not isinstance(data, dict):
            data = {"ok": False, "error": f"HTTP {resp.status_code}: unexpected response"}
        return bool(data.get("ok")) and resp.is_success, data
    except Exception as e:
        return False, {"ok": False, "error": _redact(f"{type(e).__name__}: {e}", config)}


def response_log_fields(data: dict) -> dict[str, Any]:
    """The parts of a Bot API reply worth logging; message text and chat details are left out."""
    fields: dict[str, Any] = {"telegram_ok": bool(data.get("ok"))}
    result = data.get("result")
    if isinstance(result, dict) and result.get("message_id") is not None:
        fields["message_id"] = result["message_id"]
    for key in ("error_code", "description", "error"):
        if data.get(key):
            fields[f"telegram_{key}"] = data[key]
    return fields


async def notify(client: httpx.AsyncClient, config: TelegramConfig | None, text: str) -> bool:
    """Send `text`, or log it when no channel is configured. Never raises."""
    if config is None:
        logger.info("Telegram channel not configured; message not sent", message=text)
        return False
    ok, data = await send_telegram_message(client, config, text)
    if ok:
        logger.info("Telegram message sent", chat_id=config.chat_id, **response_log_fields(data))
    else:
        logger.warning("Telegram message delivery failed", chat_id=config.chat_id, **response_log_fields(data))
    return ok
