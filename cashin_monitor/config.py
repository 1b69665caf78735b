"""Configuration for the cash-in monitor."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from cashin_monitor.artifacts import ArtifactPaths
from cashin_monitor.payment_client import ProviderConfig
from cashin_monitor.telegram import TELEGRAM_API_BASE, TelegramConfig


DEFAULT_CONFIG_PATH = "config/monitor.yaml"

# Highest priority first.
STATUS_TOKEN_SOURCES = ("TELEGRAM_STATUS_BOT_TOKEN", "TELEGRAM_BOT_TOKEN")
STATUS_CHAT_SOURCES = ("TELEGRAM_FRIEND_CHAT_ID", "TELEGRAM_STATUS_CHAT_ID", "TELEGRAM_CHAT_ID")
QR_TOKEN_SOURCES = ("TELEGRAM_BOT_TOKEN",)
QR_CHAT_SOURCES = ("TELEGRAM_QR_CHAT_ID", "TELEGRAM_CHAT_ID")

REQUIRED_ENV = ("TELEGRAM_BOT_TOKEN", "TELEGRAM_CHAT_ID")


class ConfigError(ValueError):
    pass


class ProviderSettings(BaseModel):
    """Payment provider credentials and endpoint."""
    base_url: str = Field(default="", description="Provider base URL")
    api_key: str = Field(default="", description="X-PPAY-APIKEY header value")
    api_secret: str = Field(default="", description="Signing secret")
    merchant_id: str = Field(default="", description="Merchant id sent in every request")
    amount: Any = Field(default=1, description="Cash-in amount for the test payment")
    request_timeout_seconds: float = Field(default=30.0, description="Per-request HTTP timeout")


class PollingSettings(BaseModel):
    interval_ms: int = Field(default=10_000, description="Delay before the first check and between checks")
    max_wait_ms: int = Field(default=6 * 60 * 1000, description="Polling ceiling")


class AggregatorSettings(BaseModel):
    report_wait_seconds: float = Field(default=60.0, description="How long to wait for a fresh harness report")
    report_freshness_seconds: float = Field(default=30.0, description="Max report age to count as fresh")


class MonitorConfig(BaseModel):
    """Main configuration for the monitor."""

    log_level: str = Field(default="INFO", description="Logging level")
    artifacts_dir: str = Field(default="artifacts", description="Directory for run artifacts")
    report_path: Optional[str] = Field(default=None, description="Harness report path override")
    telegram_api_base: str = Field(default=TELEGRAM_API_BASE, description="Telegram Bot API base URL")

    provider: ProviderSettings = Field(default_factory=ProviderSettings)
    polling: PollingSettings = Field(default_factory=PollingSettings)
    aggregator: AggregatorSettings = Field(default_factory=AggregatorSettings)

    def artifact_paths(self) -> ArtifactPaths:
        override = Path(self.report_path) if self.report_path else None
        return ArtifactPaths(root=Path(self.artifacts_dir), report_override=override)

    def provider_config(self) -> ProviderConfig:
        missing = [
            name
            for name, value in (
                ("API_BASE_URL_CASHIN", self.provider.base_url),
                ("API_KEY", self.provider.api_key),
                ("API_SECRET", self.provider.api_secret),
                ("MERCHANT_ID", self.provider.merchant_id),
            )
            if not str(value or "").strip()
        ]
        if missing:
            raise ConfigError(f"Missing provider settings: {', '.join(missing)}")
        return ProviderConfig(
            base_url=self.provider.base_url,
            api_key=self.provider.api_key,
            api_secret=self.provider.api_secret,
            merchant_id=self.provider.merchant_id,
            timeout_seconds=self.provider.request_timeout_seconds,
        )


@dataclass(frozen=True)
class ResolvedValue:
    value: str
    source: str


def resolve_first(env: Mapping[str, str], sources: tuple[str, ...]) -> ResolvedValue | None:
    """First non-blank value among `sources`, in order, with the variable that supplied it."""
    for name in sources:
        raw = env.get(name)
        if raw is not None and str(raw).strip():
            return ResolvedValue(value=str(raw).strip(), source=name)
    return None


def resolve_telegram_channel(
    env: Mapping[str, str],
    *,
    token_sources: tuple[str, ...],
    chat_sources: tuple[str, ...],
    api_base: str = TELEGRAM_API_BASE,
) -> TelegramConfig | None:
    token = resolve_first(env, token_sources)
    chat = resolve_first(env, chat_sources)
    if token is None or chat is None:
        return None
    return TelegramConfig(bot_token=token.value, chat_id=chat.value, api_base=api_base)


def status_channel(env: Mapping[str, str], config: MonitorConfig) -> TelegramConfig | None:
    return resolve_telegram_channel(
        env,
        token_sources=STATUS_TOKEN_SOURCES,
        chat_sources=STATUS_CHAT_SOURCES,
        api_base=config.telegram_api_base,
    )


def qr_channel(env: Mapping[str, str], config: MonitorConfig) -> TelegramConfig | None:
    return resolve_telegram_channel(
        env,
        token_sources=QR_TOKEN_SOURCES,
        chat_sources=QR_CHAT_SOURCES,
        api_base=config.telegram_api_base,
    )


def missing_env(env: Mapping[str, str], names: tuple[str, ...] = REQUIRED_ENV) -> list[str]:
    return [name for name in names if not str(env.get(name) or "").strip()]


def _set(data: dict[str, Any], dotted: str, value: Any) -> None:
    cur = data
    keys = dotted.split(".")
    for key in keys[:-1]:
        nxt = cur.get(key)
        if not isinstance(nxt, dict):
            nxt = {}
            cur[key] = nxt
        cur = nxt
    cur[keys[-1]] = value


_ENV_OVERRIDES = {
    "LOG_LEVEL": ("log_level", str),
    "ARTIFACTS_DIR": ("artifacts_dir", str),
    "METRICS_PATH": ("report_path", str),
    "TELEGRAM_API_BASE": ("telegram_api_base", str),
    "API_BASE_URL_CASHIN": ("provider.base_url", str),
    "API_KEY": ("provider.api_key", str),
    "API_SECRET": ("provider.api_secret", str),
    "MERCHANT_ID": ("provider.merchant_id", str),
    "AMOUNT": ("provider.amount", str),
    "PAYMENT_STATUS_INTERVAL_MS": ("polling.interval_ms", int),
    "PAYMENT_STATUS_MAX_WAIT_MS": ("polling.max_wait_ms", int),
    "REPORT_WAIT_SECONDS": ("aggregator.report_wait_seconds", float),
}


def _coerce_amount(raw: str) -> Any:
    try:
        return int(raw)
    except ValueError:
        pass
    try:
        return float(raw)
    except ValueError:
        return raw


def load_config(config_path: Optional[str] = None, env: Optional[Mapping[str, str]] = None) -> MonitorConfig:
    """Load configuration from an optional YAML file, then apply environment overrides."""
    environ = os.environ if env is None else env
    if config_path is None:
        config_path = environ.get("MONITOR_CONFIG", DEFAULT_CONFIG_PATH)

    config_data: dict[str, Any] = {}
    path = Path(config_path)
    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ConfigError(f"Config YAML must be a mapping: {path}")
        config_data = loaded

    for name, (dotted, kind) in _ENV_OVERRIDES.items():
        raw = environ.get(name)
        if raw is None or not str(raw).strip():
            continue
        value: Any = str(raw).strip()
        if name == "AMOUNT":
            value = _coerce_amount(value)
        else:
            try:
                value = kind(value)
            except ValueError as exc:
                raise ConfigError(f"Invalid value for {name}: {raw!r}") from exc
        _set(config_data, dotted, value)

    try:
        return MonitorConfig(**config_data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc
