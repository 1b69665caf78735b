from __future__ import annotations

import json
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from cashin_monitor.telegram import (
    TelegramConfig,
    build_payment_link_message,
    normalize_bot_token,
    notify,
    response_log_fields,
    send_telegram_message,
)


def test_response_log_fields_keeps_ids_and_errors_only() -> None:
    ok = {"ok": True, "result": {"message_id": 7, "text": "secret body", "chat": {"id": -100}}}
    assert response_log_fields(ok) == {"telegram_ok": True, "message_id": 7}

    rejected = {"ok": False, "error_code": 400, "description": "Bad Request: chat not found"}
    assert response_log_fields(rejected) == {
        "telegram_ok": False,
        "telegram_error_code": 400,
        "telegram_description": "Bad Request: chat not found",
    }


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("123:ABC", "bot123:ABC"),
        ("bot123:ABC", "bot123:ABC"),
        (" 123:ABC \n", "bot123:ABC"),
        ("", ""),
        (None, ""),
    ],
)
def test_normalize_bot_token(raw, expected: str) -> None:
    assert normalize_bot_token(raw) == expected


def test_payment_link_message() -> None:
    msg = build_payment_link_message("https://pay.example/p/1")
    assert msg.startswith("1. Please click the link below to proceed with payment: https://pay.example/p/1\n")
    assert "2. Complete the payment by scanning the displayed QR code." in msg


class _FakeTelegramHandler(BaseHTTPRequestHandler):
    calls: list = []

    def log_message(self, format: str, *args) -> None:  # noqa: A002
        return

    def do_GET(self) -> None:  # noqa: N802
        parsed = urlparse(self.path)
        qs = parse_qs(parsed.query)
        type(self).calls.append({"path": parsed.path, "chat_id": qs.get("chat_id"), "text": qs.get("text")})
        ok = parsed.path == "/bot123:ABC/sendMessage"
        payload = {"ok": True, "result": {"message_id": 7}} if ok else {"ok": False, "description": "Not Found"}
        body = json.dumps(payload).encode("utf-8")
        self.send_response(200 if ok else 404)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)


@pytest.fixture(scope="module")
def fake_telegram_base_url() -> str:
    httpd = HTTPServer(("127.0.0.1", 0), _FakeTelegramHandler)
    host, port = httpd.server_address
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"http://{host}:{port}"
    finally:
        httpd.shutdown()
        thread.join(timeout=5)
        httpd.server_close()


@pytest.mark.asyncio
async def test_send_uses_get_with_query_params_and_prefixed_token(fake_telegram_base_url: str) -> None:
    _FakeTelegramHandler.calls = []
    cfg = TelegramConfig(bot_token="123:ABC", chat_id="-100", api_base=fake_telegram_base_url)
    async with httpx.AsyncClient() as client:
        ok, data = await send_telegram_message(client, cfg, "hello & bye\nline 2")

    assert ok is True
    assert data["result"]["message_id"] == 7
    assert _FakeTelegramHandler.calls == [
        {"path": "/bot123:ABC/sendMessage", "chat_id": ["-100"], "text": ["hello & bye\nline 2"]}
    ]


@pytest.mark.asyncio
async def test_send_reports_api_rejection(fake_telegram_base_url: str) -> None:
    cfg = TelegramConfig(bot_token="999:XYZ", chat_id="1", api_base=fake_telegram_base_url)
    async with httpx.AsyncClient() as client:
        ok, data = await send_telegram_message(client, cfg, "hi")
    assert ok is False
    assert response_log_fields(data)["telegram_description"] == "Not Found"


@pytest.mark.asyncio
async def test_send_never_raises_and_redacts_token() -> None:
    cfg = TelegramConfig(bot_token="123:SECRET", chat_id="1", api_base="http://127.0.0.1:1")
    async with httpx.AsyncClient() as client:
        ok, data = await send_telegram_message(client, cfg, "hi")
    assert ok is False
    assert "SECRET" not in data["error"]


@pytest.mark.asyncio
async def test_notify_without_channel_returns_false() -> None:
    async with httpx.AsyncClient() as client:
        assert await notify(client, None, "would have sent") is False


@pytest.mark.asyncio
async def test_notify_sends_long_message_in_one_call(fake_telegram_base_url: str) -> None:
    _FakeTelegramHandler.calls = []
    cfg = TelegramConfig(bot_token="bot123:ABC", chat_id="-100", api_base=fake_telegram_base_url)
    text = "\n".join(f"line {i}" for i in range(800))
    async with httpx.AsyncClient() as client:
        assert await notify(client, cfg, text) is True

    assert len(_FakeTelegramHandler.calls) == 1
    assert _FakeTelegramHandler.calls[0]["text"] == [text]
