from __future__ import annotations

import argparse
import asyncio
import logging
import os
from typing import Mapping, Optional

import httpx
import structlog

from cashin_monitor.aggregator import aggregate
from cashin_monitor.check import run_check_pass
from cashin_monitor.config import ConfigError, MonitorConfig, load_config, missing_env, qr_channel, status_channel
from cashin_monitor.telegram import notify


logger = structlog.get_logger(__name__)


def configure_logging(level_name: str) -> None:
    level = getattr(logging, str(level_name).upper(), logging.INFO)
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    # The Telegram token is part of the Bot API URL; keep request logs out.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


async def run_check(config: MonitorConfig, env: Mapping[str, str]) -> int:
    provider = config.provider_config()
    async with httpx.AsyncClient() as client:
        return await run_check_pass(
            client,
            provider,
            config.artifact_paths(),
            amount=config.provider.amount,
            qr_channel=qr_channel(env, config),
            interval_seconds=config.polling.interval_ms / 1000.0,
            max_wait_seconds=config.polling.max_wait_ms / 1000.0,
        )


async def run_aggregate(config: MonitorConfig, env: Mapping[str, str]) -> int:
    channel = status_channel(env, config)
    async with httpx.AsyncClient() as client:

        async def _notify(text: str) -> bool:
            return await notify(client, channel, text)

        result = await aggregate(
            config.artifact_paths(),
            _notify,
            report_wait_seconds=config.aggregator.report_wait_seconds,
            report_freshness_seconds=config.aggregator.report_freshness_seconds,
        )
    if result.preflight:
        logger.info("Pre-flight pass complete; no notification sent")
    else:
        logger.info("Combined message sent to Telegram?", delivered=result.delivered)
    return 0


def validate_env(env: Mapping[str, str]) -> int:
    missing = missing_env(env)
    if missing:
        logger.error("Missing required environment variables", missing=", ".join(missing))
        return 1
    logger.info("All required environment variables are present")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Cash-in API end-to-end monitor")
    parser.add_argument("--config", default=None, help="Path to YAML config (default: $MONITOR_CONFIG)")
    parser.add_argument("--log-level", default=None, help="Logging level (INFO, WARNING, ...)")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("check", help="Initiate a cash-in, poll it and record the result")
    sub.add_parser("aggregate", help="Reconcile run artifacts and send the combined notification")
    sub.add_parser("validate-env", help="Verify required environment variables are set")
    args = parser.parse_args(argv)

    env = os.environ
    try:
        config = load_config(args.config, env)
    except ConfigError as exc:
        configure_logging(args.log_level or "INFO")
        logger.error("Invalid configuration", error=str(exc))
        return 1
    configure_logging(args.log_level or config.log_level)

    if args.command == "validate-env":
        return validate_env(env)

    if args.command == "check":
        try:
            return asyncio.run(run_check(config, env))
        except ConfigError as exc:
            logger.error("Invalid configuration", error=str(exc))
            return 1

    try:
        return asyncio.run(run_aggregate(config, env))
    except Exception:
        logger.exception("Aggregator failed")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
