from __future__ import annotations

import json
import random
import time
from dataclasses import dataclass, field
from typing import Any

import httpx

from cashin_monitor.signer import SignedEnvelope, build_signed_envelope


INITIATE_PATH = "/api/v1/payments/v2/initiate/"
STATUS_PATH = "/api/v1/payments/payment-status/{external_payment_id}/"
API_KEY_HEADER = "X-PPAY-APIKEY"

TERMINAL_STATUSES = frozenset({"COMPLETED", "EXPIRED", "FAILED"})
ACCEPTED_STATUS_CODES = frozenset({200, 201})


@dataclass(frozen=True)
class ProviderConfig:
    base_url: str
    api_key: str
    api_secret: str
    merchant_id: str
    timeout_seconds: float = 30.0


@dataclass(frozen=True)
class LineItem:
    name: str
    description: str
    amount: Any
    currency: str = "PHP"
    quantity: int = 1


@dataclass(frozen=True)
class CashInRequest:
    unique_id: str
    external_payment_id: str
    merchant_id: str
    line_items: tuple[LineItem, ...] = ()
    payment_methods: tuple[str, ...] = ("qrph",)

    def to_payload(self) -> dict[str, Any]:
        # Key order is part of the signed body.
        return {
            "unique_id": self.unique_id,
            "externalPaymentId": self.external_payment_id,
            "line_items": [
                {
                    "name": item.name,
                    "description": item.description,
                    "amount": item.amount,
                    "currency": item.currency,
                    "quantity": item.quantity,
                }
                for item in self.line_items
            ],
            "payment_methods": list(self.payment_methods),
            "merchant_id": self.merchant_id,
        }


@dataclass(frozen=True)
class PaymentStatusObservation:
    status_text: str
    http_status: int
    raw: Any = field(default=None, compare=False)

    @property
    def is_terminal(self) -> bool:
        return self.status_text in TERMINAL_STATUSES


@dataclass(frozen=True)
class InitiateSuccess:
    external_payment_id: str | None
    payment_url: str | None
    qr_code: str | None


@dataclass(frozen=True)
class InitiateFailure:
    http_status: int
    error_code: Any
    error_message: str
    error_reason: str
    body: Any = field(default=None, compare=False)

    @property
    def error_code_message(self) -> str:
        return f"{self.error_code} {self.error_message}"


def generate_unique_id(rng: random.Random | None = None) -> str:
    r = rng or random
    return "+63" + "".join(str(r.randrange(10)) for _ in range(10))


def build_cashin_request(
    *,
    merchant_id: str,
    amount: Any,
    now_ms: int | None = None,
    rng: random.Random | None = None,
) -> CashInRequest:
    """A fresh request per run; ids derive from the clock so runs never collide."""
    ts = int(time.time() * 1000) if now_ms is None else int(now_ms)
    return CashInRequest(
        unique_id=generate_unique_id(rng),
        external_payment_id=f"ext-{ts}",
        merchant_id=merchant_id,
        line_items=(
            LineItem(
                name="testing cashin",
                description="testing cashin payment initiate test",
                amount=amount,
            ),
        ),
    )


def _now_timestamp() -> str:
    return str(int(time.time() * 1000))


async def _post_signed(
    client: httpx.AsyncClient,
    cfg: ProviderConfig,
    path: str,
    payload: Any,
    *,
    timestamp: str | None = None,
) -> httpx.Response:
    envelope: SignedEnvelope = build_signed_envelope(cfg.api_secret, payload, timestamp or _now_timestamp())
    url = f"{cfg.base_url.rstrip('/')}{path}"
    return await client.post(
        url,
        params={"timestamp": envelope.timestamp, "signature": envelope.signature},
        headers={API_KEY_HEADER: cfg.api_key, "Content-Type": "application/json"},
        content=envelope.raw_body.encode("utf-8"),
        timeout=cfg.timeout_seconds,
    )


async def initiate_cashin(
    client: httpx.AsyncClient,
    cfg: ProviderConfig,
    request: CashInRequest,
    *,
    timestamp: str | None = None,
) -> httpx.Response:
    return await _post_signed(client, cfg, INITIATE_PATH, request.to_payload(), timestamp=timestamp)


async def get_payment_status(
    client: httpx.AsyncClient,
    cfg: ProviderConfig,
    external_payment_id: str,
    *,
    timestamp: str | None = None,
) -> httpx.Response:
    body = {"merchant_id": cfg.merchant_id, "type": "cashin"}
    path = STATUS_PATH.format(external_payment_id=external_payment_id)
    return await _post_signed(client, cfg, path, body, timestamp=timestamp)


def _json_or_none(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None


def _data(body: Any) -> dict[str, Any]:
    if isinstance(body, dict) and isinstance(body.get("data"), dict):
        return body["data"]
    return {}


def parse_status_observation(resp: httpx.Response) -> PaymentStatusObservation:
    try:
        body = resp.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValueError(f"Payment status response is not JSON (http_status={resp.status_code})") from exc
    status = _data(body).get("status")
    status_text = str(status).strip().upper() if status is not None else ""
    return PaymentStatusObservation(status_text=status_text, http_status=resp.status_code, raw=body)


def is_accepted(resp: httpx.Response) -> bool:
    return resp.status_code in ACCEPTED_STATUS_CODES


def parse_initiate_success(resp: httpx.Response) -> InitiateSuccess:
    data = _data(_json_or_none(resp))
    return InitiateSuccess(
        external_payment_id=data.get("external_payment_id"),
        payment_url=data.get("payment_url"),
        qr_code=data.get("qr_code"),
    )


def parse_initiate_failure(resp: httpx.Response) -> InitiateFailure:
    body = _json_or_none(resp)
    if not isinstance(body, dict):
        body = {}
    data = _data(body)
    code = body.get("error_code")
    if code is None:
        code = resp.status_code if resp.status_code else "Unknown"
    message = body.get("message")
    if message is None:
        message = data.get("error")
    if message is None:
        message = "Unknown error"
    reason = data.get("error")
    if reason is None:
        reason = "Unknown error"
    return InitiateFailure(
        http_status=resp.status_code,
        error_code=code,
        error_message=str(message),
        error_reason=str(reason),
        body=body,
    )
