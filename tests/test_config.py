from __future__ import annotations

from pathlib import Path

import pytest

from cashin_monitor.config import (
    ConfigError,
    load_config,
    missing_env,
    qr_channel,
    resolve_first,
    status_channel,
)


def test_defaults_without_file_or_env(tmp_path: Path) -> None:
    cfg = load_config(str(tmp_path / "missing.yaml"), env={})
    assert cfg.polling.interval_ms == 10_000
    assert cfg.polling.max_wait_ms == 360_000
    assert cfg.artifacts_dir == "artifacts"
    paths = cfg.artifact_paths()
    assert paths.result == Path("artifacts/cashin_result.json")
    assert paths.report == Path("artifacts/metrics.json")


def test_yaml_then_env_overrides(tmp_path: Path) -> None:
    path = tmp_path / "monitor.yaml"
    path.write_text(
        "provider:\n  base_url: https://from-yaml\n  merchant_id: m-yaml\npolling:\n  interval_ms: 5000\n",
        encoding="utf-8",
    )
    env = {
        "API_BASE_URL_CASHIN": "https://from-env",
        "API_KEY": "k",
        "API_SECRET": "s",
        "AMOUNT": "150",
        "PAYMENT_STATUS_INTERVAL_MS": "2500",
        "METRICS_PATH": "out/report.json",
    }
    cfg = load_config(str(path), env=env)
    assert cfg.provider.base_url == "https://from-env"
    assert cfg.provider.merchant_id == "m-yaml"
    assert cfg.provider.amount == 150
    assert cfg.polling.interval_ms == 2500
    assert cfg.artifact_paths().report == Path("out/report.json")

    provider = cfg.provider_config()
    assert provider.api_key == "k"
    assert provider.merchant_id == "m-yaml"


def test_config_path_from_env(tmp_path: Path) -> None:
    path = tmp_path / "c.yaml"
    path.write_text("artifacts_dir: /tmp/x\n", encoding="utf-8")
    cfg = load_config(None, env={"MONITOR_CONFIG": str(path)})
    assert cfg.artifacts_dir == "/tmp/x"


def test_invalid_values_raise_config_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_config(str(tmp_path / "none.yaml"), env={"PAYMENT_STATUS_INTERVAL_MS": "soon"})
    bad = tmp_path / "bad.yaml"
    bad.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(str(bad), env={})


def test_provider_config_lists_missing_settings(tmp_path: Path) -> None:
    cfg = load_config(str(tmp_path / "none.yaml"), env={"API_KEY": "k"})
    with pytest.raises(ConfigError) as exc:
        cfg.provider_config()
    assert "API_BASE_URL_CASHIN" in str(exc.value)
    assert "API_KEY" not in str(exc.value)


def test_resolve_first_reports_source() -> None:
    got = resolve_first({"A": " ", "B": "two", "C": "three"}, ("A", "B", "C"))
    assert got is not None
    assert (got.value, got.source) == ("two", "B")
    assert resolve_first({}, ("A",)) is None


def test_status_channel_priority(tmp_path: Path) -> None:
    cfg = load_config(str(tmp_path / "none.yaml"), env={})
    env = {
        "TELEGRAM_BOT_TOKEN": "generic",
        "TELEGRAM_STATUS_BOT_TOKEN": "status",
        "TELEGRAM_CHAT_ID": "c-generic",
        "TELEGRAM_FRIEND_CHAT_ID": "c-friend",
    }
    ch = status_channel(env, cfg)
    assert ch is not None
    assert (ch.bot_token, ch.chat_id) == ("status", "c-friend")

    ch = status_channel({"TELEGRAM_BOT_TOKEN": "generic", "TELEGRAM_CHAT_ID": "c-generic"}, cfg)
    assert (ch.bot_token, ch.chat_id) == ("generic", "c-generic")

    assert status_channel({"TELEGRAM_BOT_TOKEN": "generic"}, cfg) is None


def test_qr_channel_priority(tmp_path: Path) -> None:
    cfg = load_config(str(tmp_path / "none.yaml"), env={})
    env = {"TELEGRAM_BOT_TOKEN": "t", "TELEGRAM_CHAT_ID": "c", "TELEGRAM_QR_CHAT_ID": "qr"}
    ch = qr_channel(env, cfg)
    assert (ch.bot_token, ch.chat_id) == ("t", "qr")


def test_missing_env() -> None:
    assert missing_env({"TELEGRAM_BOT_TOKEN": "t"}) == ["TELEGRAM_CHAT_ID"]
    assert missing_env({"TELEGRAM_BOT_TOKEN": "t", "TELEGRAM_CHAT_ID": "c"}) == []
