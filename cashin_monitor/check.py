from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import httpx
import structlog

from cashin_monitor.artifacts import (
    ArtifactPaths,
    CashInFailure,
    CashInSuccess,
    RunResult,
    record_run_result,
    utc_now_iso,
    write_exit_code,
)
from cashin_monitor.harness_report import build_report, write_report
from cashin_monitor.payment_client import (
    ProviderConfig,
    build_cashin_request,
    get_payment_status,
    initiate_cashin,
    is_accepted,
    parse_initiate_failure,
    parse_initiate_success,
    parse_status_observation,
)
from cashin_monitor.poller import (
    DEFAULT_MAX_WAIT_SECONDS,
    DEFAULT_POLL_INTERVAL_SECONDS,
    PollOutcome,
    poll_until_terminal,
)
from cashin_monitor.telegram import TelegramConfig, build_payment_link_message, notify


logger = structlog.get_logger(__name__)

SUITE_TITLE = "Hourly Cash-in Flow Monitoring"
CHECK_TITLE = "should perform cash-in API call and collect metrics"


@dataclass(frozen=True)
class CheckOutcome:
    passed: bool
    result: RunResult
    poll: PollOutcome | None = None
    http_status: int | None = None


async def run_cashin_check(
    client: httpx.AsyncClient,
    cfg: ProviderConfig,
    paths: ArtifactPaths,
    *,
    amount: Any,
    qr_channel: TelegramConfig | None = None,
    interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    max_wait_seconds: float = DEFAULT_MAX_WAIT_SECONDS,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rng: random.Random | None = None,
) -> CheckOutcome:
    """
    Initiate one cash-in, poll it to a terminal status and record the result.

    A non-2xx initiate response is a failed check with the provider's error
    recorded. HTTP success is the happy path even if polling later times out.
    """
    request = build_cashin_request(merchant_id=cfg.merchant_id, amount=amount, rng=rng)
    logger.info("Initiating cash-in", external_payment_id=request.external_payment_id)

    resp = await initiate_cashin(client, cfg, request)
    if not is_accepted(resp):
        failure = parse_initiate_failure(resp)
        logger.warning(
            "Cash-in initiate rejected",
            http_status=resp.status_code,
            error_code=failure.error_code,
            error_message=failure.error_message,
        )
        result = CashInFailure(
            external_id=request.external_payment_id,
            error_code=failure.error_code,
            error_message=failure.error_message,
            error_code_message=failure.error_code_message,
            error_reason=failure.error_reason,
        )
        record_run_result(paths.result, result)
        return CheckOutcome(passed=False, result=result, http_status=resp.status_code)

    accepted = parse_initiate_success(resp)
    external_id = accepted.external_payment_id or request.external_payment_id
    logger.info("Cash-in initiated", external_payment_id=external_id, payment_url=accepted.payment_url)

    if accepted.payment_url:
        await notify(client, qr_channel, build_payment_link_message(accepted.payment_url))

    async def fetch_status():
        status_resp = await get_payment_status(client, cfg, external_id)
        return parse_status_observation(status_resp)

    poll = await poll_until_terminal(
        fetch_status,
        interval_seconds=interval_seconds,
        max_wait_seconds=max_wait_seconds,
        sleep=sleep,
    )

    result = CashInSuccess(
        external_id=external_id,
        final_status=poll.final_status,
        timestamp=utc_now_iso(),
        payment_url=accepted.payment_url,
        qr_code=accepted.qr_code,
    )
    record_run_result(paths.result, result)
    return CheckOutcome(passed=True, result=result, poll=poll, http_status=resp.status_code)


async def run_check_pass(
    client: httpx.AsyncClient,
    cfg: ProviderConfig,
    paths: ArtifactPaths,
    **kwargs: Any,
) -> int:
    """
    Run the check as the harness would: write the JSON report and the exit
    code file next to the run result. Returns the process exit code.
    """
    started_at = datetime.now(timezone.utc)
    error: str | None = None
    try:
        outcome = await run_cashin_check(client, cfg, paths, **kwargs)
        passed = outcome.passed
        if not passed and isinstance(outcome.result, CashInFailure):
            error = f"Initiate returned HTTP {outcome.http_status}: {outcome.result.error_code_message}"
    except Exception as exc:
        logger.exception("Cash-in check crashed", error=str(exc))
        passed = False
        error = f"{type(exc).__name__}: {exc}"

    status = "passed" if passed else "failed"
    report = build_report(
        suite_title=SUITE_TITLE,
        spec_title=CHECK_TITLE,
        status=status,
        started_at=started_at,
        ended_at=datetime.now(timezone.utc),
        error=error,
    )
    write_report(paths.report, report)
    exit_code = 0 if passed else 1
    write_exit_code(paths.exit_code, exit_code)
    logger.info("Check pass finished", status=status, exit_code=exit_code)
    return exit_code
